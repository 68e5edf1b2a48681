"""Fee Collector - claims trading fees from tracked pools.

Two sources are swept:
- partner fees, owed by every active or migrated pool
- LP fees, earned by the wallet's liquidity position in a migrated pool

Each claim re-reads the claimable amount from the chain, so a retried
claim that finds nothing left reports a zero-amount success instead of
claiming twice.
"""

import asyncio
from decimal import Decimal
from typing import Optional

import structlog

from flywheel.core.retry import error_message
from flywheel.domain.operations import (
    CollectionResult,
    FeeClaimResult,
    FeeType,
    LogOperationType,
    LogStatus,
    OperationType,
)
from flywheel.domain.pool import Pool
from flywheel.domain.retry_queue import FeeClaimPayload
from flywheel.integrations.chain import ChainClient
from flywheel.services.metrics import MetricsEmitter
from flywheel.services.registry import PoolRegistry
from flywheel.services.retry_queue import RetryQueue
from flywheel.services.state_store import StateStore

log = structlog.get_logger()

DEFAULT_CLAIM_DELAY_SECONDS = 0.5


class FeeCollector:
    """Claims partner and LP fees pool by pool."""

    def __init__(
        self,
        store: StateStore,
        chain: ChainClient,
        registry: PoolRegistry,
        retry_queue: Optional[RetryQueue] = None,
        metrics: Optional[MetricsEmitter] = None,
        claim_delay_seconds: float = DEFAULT_CLAIM_DELAY_SECONDS,
    ) -> None:
        self._store = store
        self._chain = chain
        self._registry = registry
        self._retry_queue = retry_queue
        self._metrics = metrics
        self._claim_delay = claim_delay_seconds
        self._log = log.bind(component="fee_collector")

    async def claim_fees(self, pool: Pool) -> FeeClaimResult:
        """Claim whatever partner fees ``pool`` currently owes."""
        try:
            claimable = await self._chain.get_claimable_fees(pool)
            if claimable <= 0:
                self._log.info("no_fees_to_claim", pool_address=pool.pool_address)
                return FeeClaimResult(success=True, pool_address=pool.pool_address)

            signature = await self._chain.claim_partner_fees(pool, claimable)
        except Exception as e:
            return await self._claim_failed(pool, FeeType.PARTNER, e)

        return await self._claim_succeeded(pool, FeeType.PARTNER, claimable, Decimal("0"), signature)

    async def claim_lp_fees(self, pool: Pool) -> Optional[FeeClaimResult]:
        """Claim the fees on the wallet's LP position in a migrated pool.

        Returns:
            None when the wallet has no position in the pool.
        """
        try:
            fees = await self._chain.get_claimable_lp_fees(pool)
            if fees is None:
                self._log.debug("no_lp_position", pool_address=pool.pool_address)
                return None
            if fees.is_empty:
                self._log.info("no_lp_fees_to_claim", pool_address=pool.pool_address)
                return FeeClaimResult(success=True, pool_address=pool.pool_address, fee_type=FeeType.LP)

            signature = await self._chain.claim_lp_fees(pool)
        except Exception as e:
            return await self._claim_failed(pool, FeeType.LP, e)

        return await self._claim_succeeded(pool, FeeType.LP, fees.sol, fees.tokens, signature)

    async def _claim_failed(self, pool: Pool, fee_type: FeeType, exc: Exception) -> FeeClaimResult:
        error = error_message(exc)
        self._log.error("fee_claim_failed", pool_address=pool.pool_address, fee_type=fee_type.value, error=error)
        await self._store.log_operation(
            LogOperationType.FEE_CLAIM,
            LogStatus.FAILED,
            pool_address=pool.pool_address,
            details={"fee_type": fee_type.value},
            error_message=error,
        )
        return FeeClaimResult(success=False, pool_address=pool.pool_address, error=error, fee_type=fee_type)

    async def _claim_succeeded(
        self,
        pool: Pool,
        fee_type: FeeType,
        amount_sol: Decimal,
        token_amount: Decimal,
        signature: str,
    ) -> FeeClaimResult:
        # The claim landed; a bookkeeping failure must not turn it into a retry.
        try:
            await self._store.record_fee_claim(
                pool.pool_address,
                amount_sol,
                signature,
                fee_type=fee_type,
                token_amount=token_amount,
            )
        except Exception as e:
            self._log.error(
                "fee_claim_record_failed",
                pool_address=pool.pool_address,
                fee_type=fee_type.value,
                tx_signature=signature,
                error=error_message(e),
            )

        details = {"fee_type": fee_type.value, "amount_sol": str(amount_sol)}
        if fee_type == FeeType.LP:
            details["token_amount"] = str(token_amount)
        await self._store.log_operation(
            LogOperationType.FEE_CLAIM,
            LogStatus.COMPLETED,
            pool_address=pool.pool_address,
            details=details,
            tx_signature=signature,
        )
        if self._metrics:
            self._metrics.record_fees_collected(amount_sol)
        self._log.info(
            "fees_claimed",
            pool_address=pool.pool_address,
            fee_type=fee_type.value,
            amount_sol=str(amount_sol),
            token_amount=str(token_amount),
            tx_signature=signature,
        )
        return FeeClaimResult(
            success=True,
            pool_address=pool.pool_address,
            amount_sol=amount_sol,
            tx_signature=signature,
            fee_type=fee_type,
            token_amount=token_amount,
        )

    async def collect_all_fees(self) -> CollectionResult:
        """Claim partner fees from every collectable pool, queueing retries for failures."""
        result = CollectionResult()
        await self._store.log_operation(
            LogOperationType.FEE_CLAIM,
            LogStatus.STARTED,
            details={"scope": "all_pools"},
        )

        pools = await self._registry.get_collectable_pools()
        self._log.info("fee_collection_started", pool_count=len(pools))

        for index, pool in enumerate(pools):
            if index > 0 and self._claim_delay > 0:
                await asyncio.sleep(self._claim_delay)

            claim = await self.claim_fees(pool)
            result.results.append(claim)
            if not claim.success:
                await self._enqueue_retry(pool, FeeType.PARTNER)

        self._log.info(
            "fee_collection_completed",
            pools=len(pools),
            succeeded=result.succeeded,
            failed=result.failed,
            total_claimed_sol=str(result.total_claimed_sol),
        )
        return result

    async def collect_all_lp_fees(self) -> CollectionResult:
        """Claim LP fees from every migrated pool the wallet has a position in."""
        result = CollectionResult()
        pools = await self._registry.get_migrated_pools()
        self._log.info("lp_fee_collection_started", pool_count=len(pools))

        skipped = 0
        for index, pool in enumerate(pools):
            if index > 0 and self._claim_delay > 0:
                await asyncio.sleep(self._claim_delay)

            claim = await self.claim_lp_fees(pool)
            if claim is None:
                skipped += 1
                continue
            result.results.append(claim)
            if not claim.success:
                await self._enqueue_retry(pool, FeeType.LP)

        self._log.info(
            "lp_fee_collection_completed",
            pools=len(pools),
            skipped=skipped,
            succeeded=result.succeeded,
            failed=result.failed,
            total_claimed_sol=str(result.total_claimed_sol),
        )
        return result

    async def _enqueue_retry(self, pool: Pool, fee_type: FeeType) -> None:
        if self._retry_queue:
            await self._retry_queue.enqueue(
                OperationType.FEE_CLAIM,
                pool.pool_address,
                FeeClaimPayload(fee_type=fee_type),
            )

    async def retry_claim(self, pool: Optional[Pool], payload: Optional[FeeClaimPayload]) -> FeeClaimResult:
        """Retry queue entry point.

        An LP retry for a pool where the position has since disappeared is
        a zero-amount success: there is nothing left to claim.
        """
        if payload is not None and payload.fee_type == FeeType.LP:
            claim = await self.claim_lp_fees(pool)
            if claim is None:
                return FeeClaimResult(success=True, pool_address=pool.pool_address, fee_type=FeeType.LP)
            return claim
        return await self.claim_fees(pool)
