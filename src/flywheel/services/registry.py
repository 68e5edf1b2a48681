"""Pool Registry - tracked pool bookkeeping.

Registering an already tracked pool is a success that returns the existing
row, so replayed registrations from the retry queue are harmless.
"""

from typing import Optional

import structlog

from flywheel.core.retry import error_message
from flywheel.domain.operations import LogOperationType, LogStatus, RegisterResult
from flywheel.domain.pool import Pool, PoolStatus, RegisterPoolParams
from flywheel.domain.retry_queue import RegisterPayload
from flywheel.services.state_store import StateStore

log = structlog.get_logger()


class PoolRegistry:
    """Registers pools and answers pool queries for the task operations."""

    def __init__(self, store: StateStore) -> None:
        self._store = store
        self._log = log.bind(component="pool_registry")

    async def register_pool(self, params: RegisterPoolParams) -> RegisterResult:
        try:
            existing = await self._store.get_pool_by_address(params.pool_address)
            if existing is not None:
                self._log.debug("pool_already_registered", pool_address=params.pool_address)
                return RegisterResult(success=True, pool_address=params.pool_address, pool=existing)

            pool = await self._store.insert_pool(params)
        except Exception as e:
            error = error_message(e)
            self._log.error("pool_registration_failed", pool_address=params.pool_address, error=error)
            await self._store.log_operation(
                LogOperationType.REGISTER,
                LogStatus.FAILED,
                pool_address=params.pool_address,
                error_message=error,
            )
            return RegisterResult(success=False, pool_address=params.pool_address, error=error)

        await self._store.log_operation(
            LogOperationType.REGISTER,
            LogStatus.COMPLETED,
            pool_address=pool.pool_address,
            details={
                "base_mint": pool.base_mint,
                "symbol": pool.symbol,
                "source": pool.discovery_source,
            },
        )
        self._log.info(
            "pool_registered",
            pool_address=pool.pool_address,
            symbol=pool.symbol,
            is_migrated=pool.is_migrated,
        )
        return RegisterResult(success=True, pool_address=pool.pool_address, pool=pool, created=True)

    async def get_pool_by_address(self, pool_address: str) -> Optional[Pool]:
        return await self._store.get_pool_by_address(pool_address)

    async def get_active_pools(self) -> list[Pool]:
        return await self._store.get_pools([PoolStatus.ACTIVE])

    async def get_collectable_pools(self) -> list[Pool]:
        """Active and migrated pools; both accrue partner fees."""
        return await self._store.get_pools([PoolStatus.ACTIVE, PoolStatus.MIGRATED])

    async def get_migrated_pools(self) -> list[Pool]:
        return await self._store.get_migrated_pools()

    async def update_pool_status(self, pool_address: str, status: PoolStatus) -> bool:
        fields = {"status": PoolStatus(status)}
        if status == PoolStatus.MIGRATED:
            fields["is_migrated"] = True
        updated = await self._store.update_pool(pool_address, **fields)
        if updated:
            self._log.info("pool_status_updated", pool_address=pool_address, status=PoolStatus(status).value)
        return updated

    async def retry_register(self, pool: Optional[Pool], payload: RegisterPayload) -> RegisterResult:
        """Retry queue entry point; the pool row does not exist yet."""
        return await self.register_pool(
            RegisterPoolParams(
                pool_address=payload.pool_address,
                base_mint=payload.base_mint,
                quote_mint=payload.quote_mint,
                config_key=payload.config_key,
                creator=payload.creator,
                name=payload.name,
                symbol=payload.symbol,
                discovery_source=payload.discovery_source,
            )
        )
