"""Buyback Service - swaps collected SOL into platform tokens.

This service:
- Decides whether the wallet holds enough SOL above the reserve to buy back
- Splits the budget over migrated pools by marketcap weight
- Quotes through Jupiter Ultra, signs with the chain client and executes
- Records each buyback and queues retries for pools whose swap failed

Every swap re-reads the wallet balance, so a retried buyback can only
spend what is actually there.
"""

import itertools
from decimal import ROUND_DOWN, Decimal
from typing import Optional

import structlog

from flywheel.core.retry import InsufficientFundsError, ValidationError, error_message
from flywheel.core.settings import ThresholdSettings
from flywheel.domain.operations import (
    BuybackResult,
    LogOperationType,
    LogStatus,
    MultiBuybackResult,
    OperationType,
)
from flywheel.domain.pool import Pool
from flywheel.domain.retry_queue import BuybackPayload
from flywheel.integrations.chain import LAMPORTS_PER_SOL, WSOL_MINT, ChainClient
from flywheel.integrations.jupiter import JupiterClient
from flywheel.services.marketcap import MarketcapService
from flywheel.services.metrics import MetricsEmitter
from flywheel.services.retry_queue import RetryQueue
from flywheel.services.state_store import StateStore

log = structlog.get_logger()

DEFAULT_TOKEN_DECIMALS = 9


class BuybackService:
    """Executes single and marketcap-weighted multi-pool buybacks."""

    def __init__(
        self,
        store: StateStore,
        chain: ChainClient,
        jupiter: JupiterClient,
        marketcap: MarketcapService,
        thresholds: Optional[ThresholdSettings] = None,
        retry_queue: Optional[RetryQueue] = None,
        metrics: Optional[MetricsEmitter] = None,
        dry_run: bool = True,
        token_decimals: int = DEFAULT_TOKEN_DECIMALS,
    ) -> None:
        """Initialize the buyback service.

        Args:
            store: StateStore for buyback records and operation logs.
            chain: Wallet balance and transaction signing.
            jupiter: Swap order and execution API.
            marketcap: Source of per-pool budget allocations.
            thresholds: Reserve, minimums and slippage.
            retry_queue: Queue for failed per-pool buybacks.
            metrics: MetricsEmitter for SOL spent.
            dry_run: Quote only; never submit a swap.
            token_decimals: Decimals used to convert swap output to UI amounts.
        """
        self._store = store
        self._chain = chain
        self._jupiter = jupiter
        self._marketcap = marketcap
        self._thresholds = thresholds or ThresholdSettings()
        self._retry_queue = retry_queue
        self._metrics = metrics
        self._dry_run = dry_run
        self._token_unit = Decimal(10) ** token_decimals
        self._dry_run_counter = itertools.count(1)
        self._log = log.bind(component="buyback", dry_run=dry_run)

    @property
    def thresholds(self) -> ThresholdSettings:
        return self._thresholds

    async def get_available_sol(self) -> Decimal:
        """Wallet balance above the reserve, never negative."""
        balance = await self._chain.get_sol_balance()
        return max(balance - self._thresholds.reserve_sol, Decimal("0"))

    async def compute_budget(self, total_sol: Optional[Decimal] = None) -> Decimal:
        available = await self.get_available_sol()
        budget = available * self._thresholds.buyback_percentage / Decimal("100")
        if total_sol is not None:
            budget = min(budget, total_sol)
        return budget

    async def should_execute_buyback(self) -> bool:
        try:
            budget = await self.compute_budget()
        except Exception as e:
            self._log.warning("buyback_check_failed", error=error_message(e))
            return False

        if budget < self._thresholds.min_buyback_sol:
            self._log.info(
                "buyback_below_threshold",
                budget_sol=str(budget),
                min_buyback_sol=str(self._thresholds.min_buyback_sol),
            )
            return False
        return True

    async def execute_buyback(self, pool: Pool, sol_amount: Decimal) -> BuybackResult:
        """Buy ``pool``'s token with up to ``sol_amount`` SOL."""
        try:
            available = await self.get_available_sol()
            amount = min(sol_amount, available)
            if amount < self._thresholds.min_allocation_sol:
                raise InsufficientFundsError(
                    f"Buyback amount {amount} SOL below minimum {self._thresholds.min_allocation_sol} "
                    f"(requested {sol_amount}, available {available})"
                )

            lamports = int((amount * LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_DOWN))
            order = await self._jupiter.get_order(
                input_mint=WSOL_MINT,
                output_mint=pool.base_mint,
                amount=lamports,
                taker=self._chain.wallet_address,
                slippage_bps=self._thresholds.slippage_bps,
            )

            if self._dry_run:
                signature = f"dry_run_buyback_{next(self._dry_run_counter)}"
                output_amount = order.out_amount
            else:
                if not order.transaction:
                    raise ValidationError("Jupiter order has no transaction to sign")
                signed = await self._chain.sign_transaction(order.transaction)
                execution = await self._jupiter.execute_order(signed, order.request_id)
                if not execution.success:
                    raise ValidationError(
                        f"Swap {execution.status}: {execution.error or 'no error detail'}"
                        + (f" (code {execution.code})" if execution.code is not None else "")
                    )
                signature = execution.signature
                output_amount = execution.output_amount or order.out_amount

            tokens_received = Decimal(output_amount) / self._token_unit
        except Exception as e:
            error = error_message(e)
            self._log.error(
                "buyback_failed",
                pool_address=pool.pool_address,
                sol_amount=str(sol_amount),
                error=error,
            )
            await self._store.log_operation(
                LogOperationType.BUYBACK,
                LogStatus.FAILED,
                pool_address=pool.pool_address,
                details={"sol_amount": str(sol_amount)},
                error_message=error,
            )
            return BuybackResult(success=False, pool_address=pool.pool_address, sol_amount=sol_amount, error=error)

        buyback_id: Optional[int] = None
        try:
            buyback_id = await self._store.record_buyback(pool.pool_address, amount, tokens_received, signature)
        except Exception as e:
            self._log.error(
                "buyback_record_failed",
                pool_address=pool.pool_address,
                tx_signature=signature,
                error=error_message(e),
            )

        await self._store.log_operation(
            LogOperationType.BUYBACK,
            LogStatus.COMPLETED,
            pool_address=pool.pool_address,
            details={"sol_amount": str(amount), "tokens_received": str(tokens_received)},
            tx_signature=signature,
        )
        if self._metrics:
            self._metrics.record_buyback_spent(amount)
        self._log.info(
            "buyback_executed",
            pool_address=pool.pool_address,
            symbol=pool.symbol,
            sol_amount=str(amount),
            tokens_received=str(tokens_received),
            tx_signature=signature,
        )
        return BuybackResult(
            success=True,
            pool_address=pool.pool_address,
            sol_amount=amount,
            tokens_received=tokens_received,
            tx_signature=signature,
            buyback_id=buyback_id,
        )

    async def execute_multi_buyback(self, total_sol: Optional[Decimal] = None) -> MultiBuybackResult:
        """Spread a buyback over migrated pools, weighted by marketcap."""
        await self._store.log_operation(LogOperationType.BUYBACK, LogStatus.STARTED, details={"scope": "multi"})

        try:
            budget = await self.compute_budget(total_sol)
            allocations = await self._marketcap.get_buyback_allocations()
        except Exception as e:
            return await self._multi_failed(MultiBuybackResult(), error_message(e))

        result = MultiBuybackResult(budget_sol=budget)
        if budget < self._thresholds.min_buyback_sol:
            return await self._multi_failed(
                result, f"Budget {budget} SOL below minimum {self._thresholds.min_buyback_sol}"
            )
        if not allocations:
            return await self._multi_failed(result, "No migrated pools to buy back")

        self._log.info("multi_buyback_started", budget_sol=str(budget), pool_count=len(allocations))

        for allocation in allocations:
            amount = allocation.amount_of(budget)
            if amount < self._thresholds.min_allocation_sol:
                self._log.debug(
                    "allocation_below_minimum",
                    pool_address=allocation.pool.pool_address,
                    amount_sol=str(amount),
                )
                continue

            buyback = await self.execute_buyback(allocation.pool, amount)
            result.results.append(buyback)
            if not buyback.success and self._retry_queue:
                await self._retry_queue.enqueue(
                    OperationType.BUYBACK,
                    allocation.pool.pool_address,
                    BuybackPayload(sol_amount=amount),
                )

        self._log.info(
            "multi_buyback_completed",
            budget_sol=str(budget),
            spent_sol=str(result.total_spent_sol),
            succeeded=len(result.results) - result.failed,
            failed=result.failed,
        )
        return result

    async def _multi_failed(self, result: MultiBuybackResult, error: str) -> MultiBuybackResult:
        result.error = error
        self._log.info("multi_buyback_skipped", reason=error)
        await self._store.log_operation(LogOperationType.BUYBACK, LogStatus.FAILED, error_message=error)
        return result

    async def retry_buyback(self, pool: Optional[Pool], payload: BuybackPayload) -> BuybackResult:
        """Retry queue entry point."""
        return await self.execute_buyback(pool, payload.sol_amount)
