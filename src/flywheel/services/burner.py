"""Burner - destroys bought-back tokens held by the flywheel wallet."""

from decimal import Decimal
from typing import Optional

import structlog

from flywheel.core.retry import error_message
from flywheel.core.settings import BurnSettings
from flywheel.domain.operations import (
    BurnAllResult,
    BurnResult,
    LogOperationType,
    LogStatus,
    OperationType,
)
from flywheel.domain.pool import Pool
from flywheel.domain.retry_queue import BurnPayload
from flywheel.integrations.chain import ChainClient
from flywheel.services.metrics import MetricsEmitter
from flywheel.services.registry import PoolRegistry
from flywheel.services.retry_queue import RetryQueue
from flywheel.services.state_store import StateStore

log = structlog.get_logger()


class Burner:
    """Burns the wallet's balance of migrated pool tokens."""

    def __init__(
        self,
        store: StateStore,
        chain: ChainClient,
        registry: PoolRegistry,
        settings: Optional[BurnSettings] = None,
        retry_queue: Optional[RetryQueue] = None,
        metrics: Optional[MetricsEmitter] = None,
    ) -> None:
        self._store = store
        self._chain = chain
        self._registry = registry
        self._settings = settings or BurnSettings()
        self._retry_queue = retry_queue
        self._metrics = metrics
        self._log = log.bind(component="burner")

    def is_excluded(self, pool: Pool) -> bool:
        return pool.base_mint in self._settings.excluded

    async def burn_tokens(
        self,
        pool: Pool,
        amount: Optional[Decimal] = None,
        buyback_id: Optional[int] = None,
    ) -> BurnResult:
        """Burn ``amount`` (default: the whole balance) of ``pool``'s token.

        The balance is re-read first; an empty balance is a zero-amount
        success.
        """
        try:
            balance = await self._chain.get_token_balance(pool.base_mint)
            to_burn = balance if amount is None else min(amount, balance)
            if to_burn <= 0:
                self._log.info("nothing_to_burn", pool_address=pool.pool_address, balance=str(balance))
                return BurnResult(success=True, pool_address=pool.pool_address)

            signature = await self._chain.burn_tokens(pool.base_mint, to_burn)
        except Exception as e:
            error = error_message(e)
            self._log.error("burn_failed", pool_address=pool.pool_address, error=error)
            await self._store.log_operation(
                LogOperationType.BURN,
                LogStatus.FAILED,
                pool_address=pool.pool_address,
                error_message=error,
            )
            return BurnResult(success=False, pool_address=pool.pool_address, error=error)

        try:
            await self._store.record_burn(pool.pool_address, to_burn, signature, buyback_id)
        except Exception as e:
            self._log.error(
                "burn_record_failed",
                pool_address=pool.pool_address,
                tx_signature=signature,
                error=error_message(e),
            )

        await self._store.log_operation(
            LogOperationType.BURN,
            LogStatus.COMPLETED,
            pool_address=pool.pool_address,
            details={"amount": str(to_burn), "buyback_id": buyback_id},
            tx_signature=signature,
        )
        if self._metrics:
            self._metrics.record_tokens_burned(to_burn)
        self._log.info(
            "tokens_burned",
            pool_address=pool.pool_address,
            mint=pool.base_mint,
            amount=str(to_burn),
            tx_signature=signature,
        )
        return BurnResult(success=True, pool_address=pool.pool_address, amount=to_burn, tx_signature=signature)

    async def burn_all_tokens(self) -> BurnAllResult:
        """Burn every migrated pool token the wallet holds, minus exclusions."""
        result = BurnAllResult()
        await self._store.log_operation(LogOperationType.BURN, LogStatus.STARTED, details={"scope": "all_pools"})

        try:
            pools = await self._registry.get_migrated_pools()
        except Exception as e:
            error = error_message(e)
            self._log.error("burn_pool_load_failed", error=error)
            await self._store.log_operation(LogOperationType.BURN, LogStatus.FAILED, error_message=error)
            return result

        for pool in pools:
            if self.is_excluded(pool):
                result.skipped.append(pool.pool_address)
                continue

            burn = await self.burn_tokens(pool)
            if burn.success and burn.amount <= 0:
                result.skipped.append(pool.pool_address)
                continue

            result.results.append(burn)
            if not burn.success and self._retry_queue:
                await self._retry_queue.enqueue(OperationType.BURN, pool.pool_address, BurnPayload())

        self._log.info(
            "burn_sweep_completed",
            burned=len(result.results) - result.failed,
            failed=result.failed,
            skipped=len(result.skipped),
            total_burned=str(result.total_burned),
        )
        return result

    async def retry_burn(self, pool: Optional[Pool], payload: BurnPayload) -> BurnResult:
        """Retry queue entry point."""
        return await self.burn_tokens(pool, payload.amount)
