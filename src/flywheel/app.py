"""
Flywheel application lifecycle and component wiring.

Startup order:
1. State store (schema applied on connect)
2. HTTP clients (Jupiter, DexScreener)
3. Scheduler (one loop per valid cron line)
4. Health server

Shutdown runs in reverse so in-flight jobs finish against a live store.
"""
import asyncio
import signal
from decimal import Decimal
from typing import Optional

import structlog

from flywheel import __version__
from flywheel.core.config import ConfigManager
from flywheel.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus
from flywheel.core.logging import setup_logging
from flywheel.core.retry import ValidationError
from flywheel.core.settings import (
    BurnSettings,
    DiscoverySettings,
    RetrySettings,
    SchedulerSettings,
    ThresholdSettings,
)
from flywheel.integrations.chain import DRY_RUN_WALLET, ChainClient, DryRunChainClient
from flywheel.integrations.dexscreener import DEFAULT_API_URL as DEXSCREENER_API_URL
from flywheel.integrations.dexscreener import DexScreenerClient
from flywheel.integrations.jupiter import DEFAULT_API_URL as JUPITER_API_URL
from flywheel.integrations.jupiter import JupiterClient
from flywheel.services.buyback import BuybackService
from flywheel.services.burner import Burner
from flywheel.services.collector import FeeCollector
from flywheel.services.discovery import DiscoveryService
from flywheel.services.fallback import LocalFallbackStore
from flywheel.services.health import HealthServer, HealthStatusCollector
from flywheel.services.jobs import FlywheelJobs
from flywheel.services.marketcap import MarketcapService
from flywheel.services.metrics import MetricsEmitter
from flywheel.services.operations import register_flywheel_operations
from flywheel.services.registry import PoolRegistry
from flywheel.services.retry_queue import RetryQueue
from flywheel.services.scheduler import Scheduler
from flywheel.services.state_store import StateStore


class FlywheelApp(BaseComponent):
    """Main flywheel application.

    Usage:
        app = FlywheelApp(ConfigManager(Path("config/flywheel.toml")))
        await app.run_forever()  # until SIGTERM/SIGINT
    """

    def __init__(
        self,
        config: Optional[ConfigManager] = None,
        chain: Optional[ChainClient] = None,
        jupiter: Optional[JupiterClient] = None,
        market_data: Optional[DexScreenerClient] = None,
        configure_logging: bool = True,
    ) -> None:
        """Build every component from config.

        Args:
            config: Configuration manager (defaults only when omitted).
            chain: Chain client. Required unless ``flywheel.dry_run`` is set.
            jupiter: Swap client override.
            market_data: DexScreener client override.
            configure_logging: Set up structlog from ``flywheel.log_*`` keys.

        Raises:
            ValidationError: If live mode is configured without a chain client.
        """
        super().__init__(name="FlywheelApp")
        self._config = config or ConfigManager()
        self._dry_run = self._config.get_bool("flywheel.dry_run", True)

        if configure_logging:
            setup_logging(
                level=self._config.get_str("flywheel.log_level", "INFO"),
                json_output=self._config.get_bool("flywheel.log_json", False),
                log_file=self._config.get("flywheel.log_file"),
                dry_run=self._dry_run,
            )
        self._log = structlog.get_logger("flywheel.app")

        if chain is None:
            if not self._dry_run:
                raise ValidationError("Live mode requires a chain client; set flywheel.dry_run = true to simulate")
            chain = DryRunChainClient(
                wallet_address=self._config.get_str("wallet.address", DRY_RUN_WALLET),
                sol_balance=self._config.get_decimal("wallet.dry_run_sol_balance", Decimal("0")),
            )
        self._chain = chain

        self._scheduler_settings = SchedulerSettings.from_config(self._config)
        retry_settings = RetrySettings.from_config(self._config)

        self._metrics = MetricsEmitter()
        self._store = StateStore(config=self._config)
        self._jupiter = jupiter or JupiterClient(
            api_url=self._config.get_str("jupiter.api_url", JUPITER_API_URL),
            api_key=self._config.get("jupiter.api_key") or None,
        )
        self._market_data = market_data or DexScreenerClient(
            api_url=self._config.get_str("dexscreener.api_url", DEXSCREENER_API_URL),
        )

        self._retry_queue = RetryQueue(
            self._store,
            settings=retry_settings,
            fallback=LocalFallbackStore(retry_settings.fallback_dir),
            metrics=self._metrics,
        )
        self._registry = PoolRegistry(self._store)
        self._collector = FeeCollector(
            self._store,
            chain,
            self._registry,
            retry_queue=self._retry_queue,
            metrics=self._metrics,
        )
        self._marketcap = MarketcapService(self._store, self._registry, self._market_data, chain=chain)
        self._buyback = BuybackService(
            self._store,
            chain,
            self._jupiter,
            self._marketcap,
            thresholds=ThresholdSettings.from_config(self._config),
            retry_queue=self._retry_queue,
            metrics=self._metrics,
            dry_run=self._dry_run,
            token_decimals=self._config.get_int("token.decimals", 9),
        )
        self._burner = Burner(
            self._store,
            chain,
            self._registry,
            settings=BurnSettings.from_config(self._config),
            retry_queue=self._retry_queue,
            metrics=self._metrics,
        )
        self._discovery = DiscoveryService(
            self._store,
            chain,
            self._registry,
            settings=DiscoverySettings.from_config(self._config),
            retry_queue=self._retry_queue,
        )
        register_flywheel_operations(
            self._retry_queue, self._registry, self._collector, self._buyback, self._burner
        )

        self._scheduler = Scheduler(self._scheduler_settings, metrics=self._metrics)
        self._jobs = FlywheelJobs(
            self._collector,
            self._buyback,
            self._burner,
            self._marketcap,
            self._discovery,
            self._retry_queue,
            scheduler_settings=self._scheduler_settings,
            retry_settings=retry_settings,
        )
        self._jobs.register(self._scheduler)

        self._health_collector = HealthStatusCollector(
            store=self._store,
            scheduler=self._scheduler,
            retry_queue=self._retry_queue,
            get_uptime_seconds=lambda: self.uptime_seconds,
            dry_run=self._dry_run,
        )
        self._health_server: Optional[HealthServer] = None
        if self._config.get_bool("health.enabled", True):
            self._health_server = HealthServer(
                port=self._config.get_int("health.port", 9090),
                host=self._config.get_str("health.host", "0.0.0.0"),
                health_provider=self._health_collector.get_health_status,
                metrics_provider=self._metrics.get_metrics,
                scheduler=self._scheduler,
                retry_stats_provider=self._retry_queue.get_stats,
            )

        self._shutdown_event = asyncio.Event()

    @property
    def config(self) -> ConfigManager:
        return self._config

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    @property
    def metrics(self) -> MetricsEmitter:
        return self._metrics

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def chain(self) -> ChainClient:
        return self._chain

    @property
    def registry(self) -> PoolRegistry:
        return self._registry

    @property
    def retry_queue(self) -> RetryQueue:
        return self._retry_queue

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def jobs(self) -> FlywheelJobs:
        return self._jobs

    async def _do_start(self) -> None:
        self._log.info("starting_flywheel", version=__version__, dry_run=self._dry_run)

        await self._store.connect()
        await self._jupiter.connect()
        await self._market_data.connect()
        await self._scheduler.start()
        if self._health_server:
            await self._health_server.start()

        self._log.info(
            "flywheel_started",
            dry_run=self._dry_run,
            wallet=self._chain.wallet_address,
            tasks=self._scheduler.job_names,
        )

    async def _do_stop(self) -> None:
        self._log.info("stopping_flywheel")

        if self._health_server:
            await self._health_server.stop()
        await self._scheduler.stop()
        await self._market_data.close()
        await self._jupiter.close()
        self._metrics.update_uptime(self.uptime_seconds)
        await self._store.close()

        self._log.info("flywheel_stopped")

    async def _do_health_check(self) -> HealthCheckResult:
        status = await self._health_collector.get_health_status()
        details = {k: v for k, v in status.items() if k != "status"}
        return HealthCheckResult(
            status=HealthStatus(status["status"]),
            message=", ".join(status["issues"]) or "OK",
            details=details,
        )

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._on_signal, sig)
        self._log.info("signal_handlers_installed", signals=["SIGTERM", "SIGINT"])

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except (ValueError, RuntimeError):
                pass

    def _on_signal(self, sig: signal.Signals) -> None:
        self._log.info("shutdown_signal_received", signal=sig.name)
        self._shutdown_event.set()

    async def run_forever(self) -> None:
        """Run until SIGTERM/SIGINT or request_shutdown()."""
        await self.start()
        self._install_signal_handlers()

        try:
            while not self._shutdown_event.is_set():
                self._metrics.update_uptime(self.uptime_seconds)
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=1.0)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._remove_signal_handlers()
            await self.stop()
