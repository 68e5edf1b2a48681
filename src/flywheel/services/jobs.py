"""Scheduled job bodies.

Each job is a thin coroutine over the task operation services; the
scheduler supplies the single-flight guard and error isolation.
"""

from typing import Optional

import structlog

from flywheel.core.settings import RetrySettings, SchedulerSettings
from flywheel.domain.operations import (
    BurnAllResult,
    CollectionResult,
    DiscoveryResult,
    MarketcapUpdateResult,
    MultiBuybackResult,
)
from flywheel.domain.retry_queue import DrainResult
from flywheel.services.buyback import BuybackService
from flywheel.services.burner import Burner
from flywheel.services.collector import FeeCollector
from flywheel.services.discovery import DiscoveryService
from flywheel.services.marketcap import MarketcapService
from flywheel.services.retry_queue import RetryQueue
from flywheel.services.scheduler import Scheduler

log = structlog.get_logger()

FEE_COLLECTION = "fee_collection"
BUYBACK = "buyback"
MARKETCAP = "marketcap"
DISCOVERY = "discovery"
RETRY = "retry"

TASK_NAMES = (FEE_COLLECTION, BUYBACK, MARKETCAP, DISCOVERY, RETRY)


class FlywheelJobs:
    """The five recurring flywheel jobs."""

    def __init__(
        self,
        collector: FeeCollector,
        buyback: BuybackService,
        burner: Burner,
        marketcap: MarketcapService,
        discovery: DiscoveryService,
        retry_queue: RetryQueue,
        scheduler_settings: Optional[SchedulerSettings] = None,
        retry_settings: Optional[RetrySettings] = None,
    ) -> None:
        self._collector = collector
        self._buyback = buyback
        self._burner = burner
        self._marketcap = marketcap
        self._discovery = discovery
        self._retry_queue = retry_queue
        self._scheduler_settings = scheduler_settings or SchedulerSettings()
        self._retry_settings = retry_settings or RetrySettings()
        self._log = log.bind(component="jobs")

    def register(self, scheduler: Scheduler) -> None:
        s = self._scheduler_settings
        scheduler.add_job(FEE_COLLECTION, s.fee_collection_cron, self.fee_collection, "Claim partner and LP fees")
        scheduler.add_job(BUYBACK, s.buyback_cron, self.buyback, "Marketcap-weighted buyback, then burn")
        scheduler.add_job(MARKETCAP, s.marketcap_cron, self.marketcap, "Refresh pool prices and marketcaps")
        scheduler.add_job(DISCOVERY, s.discovery_cron, self.discovery, "Discover new pools and migrations")
        scheduler.add_job(RETRY, s.retry_cron, self.retry, "Drain and clean up the retry queue")

    async def fee_collection(self) -> CollectionResult:
        """Partner sweep first, then LP fees from migrated pools."""
        partner = await self._collector.collect_all_fees()
        lp = await self._collector.collect_all_lp_fees()
        return CollectionResult(results=partner.results + lp.results)

    async def buyback(self) -> Optional[MultiBuybackResult]:
        if not await self._buyback.should_execute_buyback():
            self._log.info("buyback_job_skipped", reason="below_threshold")
            return None

        result = await self._buyback.execute_multi_buyback()
        if result.success and self._scheduler_settings.burn_after_buyback:
            burned: BurnAllResult = await self._burner.burn_all_tokens()
            self._log.info(
                "post_buyback_burn",
                burned=str(burned.total_burned),
                failed=burned.failed,
            )
        return result

    async def marketcap(self) -> MarketcapUpdateResult:
        return await self._marketcap.update_all_marketcaps()

    async def discovery(self) -> DiscoveryResult:
        if not self._discovery.enabled:
            self._log.debug("discovery_job_disabled")
            return DiscoveryResult()

        result = await self._discovery.discover_platform_pools()
        result.migrated = await self._discovery.update_migration_status()
        return result

    async def retry(self) -> DrainResult:
        result = await self._retry_queue.drain()
        deleted = await self._retry_queue.cleanup(self._retry_settings.cleanup_after_days)
        self._log.info("retry_job_completed", deleted=deleted, **result.to_dict())
        return result
