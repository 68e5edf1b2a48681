"""Tests for the scheduled job bodies."""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from flywheel.core.settings import RetrySettings, SchedulerSettings
from flywheel.domain.operations import (
    BurnAllResult,
    BuybackResult,
    CollectionResult,
    DiscoveryResult,
    FeeClaimResult,
    FeeType,
    MarketcapUpdateResult,
    MultiBuybackResult,
)
from flywheel.domain.retry_queue import DrainResult
from flywheel.services.jobs import TASK_NAMES, FlywheelJobs
from flywheel.services.scheduler import Scheduler


@pytest.fixture
def services():
    collector = MagicMock()
    collector.collect_all_fees = AsyncMock(return_value=CollectionResult())
    collector.collect_all_lp_fees = AsyncMock(return_value=CollectionResult())
    buyback = MagicMock()
    buyback.should_execute_buyback = AsyncMock(return_value=True)
    buyback.execute_multi_buyback = AsyncMock(
        return_value=MultiBuybackResult(results=[BuybackResult(success=True, pool_address="P")])
    )
    burner = MagicMock()
    burner.burn_all_tokens = AsyncMock(return_value=BurnAllResult())
    marketcap = MagicMock()
    marketcap.update_all_marketcaps = AsyncMock(return_value=MarketcapUpdateResult(updated=2))
    discovery = MagicMock()
    discovery.enabled = True
    discovery.discover_platform_pools = AsyncMock(return_value=DiscoveryResult(discovered=3, registered=1))
    discovery.update_migration_status = AsyncMock(return_value=2)
    retry_queue = MagicMock()
    retry_queue.drain = AsyncMock(return_value=DrainResult(processed=1, succeeded=1))
    retry_queue.cleanup = AsyncMock(return_value=4)
    return {
        "collector": collector,
        "buyback": buyback,
        "burner": burner,
        "marketcap": marketcap,
        "discovery": discovery,
        "retry_queue": retry_queue,
    }


def make_jobs(services, **kwargs):
    return FlywheelJobs(**services, **kwargs)


class TestRegister:
    def test_registers_all_tasks_with_configured_cron(self, services):
        settings = SchedulerSettings(buyback_cron="*/10 * * * *")
        scheduler = Scheduler()

        make_jobs(services, scheduler_settings=settings).register(scheduler)

        assert scheduler.job_names == list(TASK_NAMES)
        assert scheduler._jobs["buyback"].cron_expression == "*/10 * * * *"


class TestJobs:
    """Tests for each job body."""

    @pytest.mark.asyncio
    async def test_fee_collection_sweeps_partner_then_lp(self, services):
        services["collector"].collect_all_fees.return_value = CollectionResult(
            results=[FeeClaimResult(success=True, pool_address="P", amount_sol=Decimal("0.2"))]
        )
        services["collector"].collect_all_lp_fees.return_value = CollectionResult(
            results=[FeeClaimResult(success=True, pool_address="M", amount_sol=Decimal("0.1"), fee_type=FeeType.LP)]
        )

        result = await make_jobs(services).fee_collection()

        services["collector"].collect_all_fees.assert_awaited_once()
        services["collector"].collect_all_lp_fees.assert_awaited_once()
        assert [r.pool_address for r in result.results] == ["P", "M"]
        assert result.total_claimed_sol == Decimal("0.3")

    @pytest.mark.asyncio
    async def test_buyback_then_burn(self, services):
        result = await make_jobs(services).buyback()

        assert result.success
        services["buyback"].execute_multi_buyback.assert_awaited_once()
        services["burner"].burn_all_tokens.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_buyback_below_threshold_does_nothing(self, services):
        services["buyback"].should_execute_buyback.return_value = False

        assert await make_jobs(services).buyback() is None

        services["buyback"].execute_multi_buyback.assert_not_awaited()
        services["burner"].burn_all_tokens.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_buyback_skips_burn(self, services):
        services["buyback"].execute_multi_buyback.return_value = MultiBuybackResult(error="No migrated pools")

        await make_jobs(services).buyback()

        services["burner"].burn_all_tokens.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_burn_after_buyback_can_be_disabled(self, services):
        jobs = make_jobs(services, scheduler_settings=SchedulerSettings(burn_after_buyback=False))

        await jobs.buyback()

        services["burner"].burn_all_tokens.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_marketcap(self, services):
        result = await make_jobs(services).marketcap()

        assert result.updated == 2

    @pytest.mark.asyncio
    async def test_discovery_includes_migrations(self, services):
        result = await make_jobs(services).discovery()

        assert (result.discovered, result.registered, result.migrated) == (3, 1, 2)

    @pytest.mark.asyncio
    async def test_discovery_disabled(self, services):
        services["discovery"].enabled = False

        result = await make_jobs(services).discovery()

        assert result == DiscoveryResult()
        services["discovery"].discover_platform_pools.assert_not_awaited()
        services["discovery"].update_migration_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retry_drains_then_cleans_up(self, services):
        jobs = make_jobs(services, retry_settings=RetrySettings(cleanup_after_days=3))

        result = await jobs.retry()

        assert result.succeeded == 1
        services["retry_queue"].drain.assert_awaited_once()
        services["retry_queue"].cleanup.assert_awaited_once_with(3)

    @pytest.mark.asyncio
    async def test_job_errors_propagate_to_scheduler(self, services):
        services["collector"].collect_all_fees.side_effect = RuntimeError("boom")
        scheduler = Scheduler()
        make_jobs(services).register(scheduler)

        assert await scheduler.trigger_task("fee_collection") is True
