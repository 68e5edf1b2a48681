"""Discovery Service - finds platform pools on chain and tracks migrations."""

from typing import Optional

import structlog

from flywheel.core.retry import error_message
from flywheel.core.settings import DiscoverySettings
from flywheel.domain.operations import DiscoveryResult, LogOperationType, LogStatus, OperationType
from flywheel.domain.pool import PoolStatus, RegisterPoolParams
from flywheel.domain.retry_queue import RegisterPayload
from flywheel.integrations.chain import ChainClient, DiscoveredPool
from flywheel.services.registry import PoolRegistry
from flywheel.services.retry_queue import RetryQueue
from flywheel.services.state_store import StateStore

log = structlog.get_logger()


class DiscoveryService:
    """Registers newly launched pools for each platform config key."""

    def __init__(
        self,
        store: StateStore,
        chain: ChainClient,
        registry: PoolRegistry,
        settings: Optional[DiscoverySettings] = None,
        retry_queue: Optional[RetryQueue] = None,
    ) -> None:
        self._store = store
        self._chain = chain
        self._registry = registry
        self._settings = settings or DiscoverySettings()
        self._retry_queue = retry_queue
        self._log = log.bind(component="discovery")

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    async def discover_platform_pools(self) -> DiscoveryResult:
        result = DiscoveryResult()
        if not self._settings.config_keys:
            self._log.info("discovery_no_config_keys")
            return result

        await self._store.log_operation(
            LogOperationType.DISCOVERY,
            LogStatus.STARTED,
            details={"config_keys": list(self._settings.config_keys)},
        )

        for config_key in self._settings.config_keys:
            try:
                found = await self._chain.discover_pools(config_key)
            except Exception as e:
                self._log.error("pool_discovery_failed", config_key=config_key, error=error_message(e))
                result.failed += 1
                continue

            result.discovered += len(found)
            for discovered in found:
                await self._register_discovered(discovered, config_key, result)

        await self._store.log_operation(
            LogOperationType.DISCOVERY,
            LogStatus.COMPLETED if result.failed == 0 else LogStatus.FAILED,
            details={
                "discovered": result.discovered,
                "registered": result.registered,
                "failed": result.failed,
            },
        )
        self._log.info(
            "discovery_completed",
            discovered=result.discovered,
            registered=result.registered,
            failed=result.failed,
        )
        return result

    async def _register_discovered(
        self,
        discovered: DiscoveredPool,
        config_key: str,
        result: DiscoveryResult,
    ) -> None:
        registered = await self._registry.register_pool(
            RegisterPoolParams(
                pool_address=discovered.pool_address,
                base_mint=discovered.base_mint,
                quote_mint=discovered.quote_mint,
                config_key=discovered.config_key or config_key,
                creator=discovered.creator,
                name=discovered.name,
                symbol=discovered.symbol,
                is_migrated=discovered.is_migrated,
                discovery_source="discovery",
            )
        )
        if registered.success:
            if registered.created:
                result.registered += 1
            return

        result.failed += 1
        if self._retry_queue:
            await self._retry_queue.enqueue(
                OperationType.REGISTER,
                discovered.pool_address,
                RegisterPayload(
                    pool_address=discovered.pool_address,
                    base_mint=discovered.base_mint,
                    quote_mint=discovered.quote_mint,
                    config_key=discovered.config_key or config_key,
                    creator=discovered.creator,
                    name=discovered.name,
                    symbol=discovered.symbol,
                ),
            )

    async def update_migration_status(self) -> int:
        """Flip active pools the chain reports as migrated. Returns the count."""
        try:
            pools = await self._registry.get_active_pools()
        except Exception as e:
            self._log.error("migration_check_failed", error=error_message(e))
            return 0

        migrated = 0
        for pool in pools:
            try:
                if not await self._chain.is_pool_migrated(pool):
                    continue
                if await self._registry.update_pool_status(pool.pool_address, PoolStatus.MIGRATED):
                    migrated += 1
            except Exception as e:
                self._log.warning("migration_check_failed", pool_address=pool.pool_address, error=error_message(e))

        if migrated:
            self._log.info("pools_migrated", count=migrated)
        return migrated
