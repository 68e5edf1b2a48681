"""
HTTP health and control endpoints for the flywheel.

Endpoints:
- GET  /health                    aggregated status (503 when unhealthy)
- GET  /metrics                   Prometheus exposition
- GET  /scheduler                 scheduled task snapshot
- POST /scheduler/{name}/trigger  run a task now (404 unknown, 409 already running)
- GET  /retry-queue               retry item counts per status

/health response format:
{
    "status": "healthy" | "degraded" | "unhealthy",
    "store_connected": bool,
    "scheduler_running": bool,
    "running_tasks": ["buyback"],
    "retry_queue": {"pending": 0, "processing": 0, "completed": 0, "failed": 0, "total": 0},
    "fallback_files": int,
    "dry_run": bool,
    "uptime_seconds": float
}
"""

import asyncio
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

import structlog
from aiohttp import web

from flywheel import __version__
from flywheel.core.lifecycle import BaseComponent, HealthCheckResult
from flywheel.core.retry import UnknownTaskError

if TYPE_CHECKING:
    from flywheel.domain.retry_queue import RetryQueueStats
    from flywheel.services.retry_queue import RetryQueue
    from flywheel.services.scheduler import Scheduler
    from flywheel.services.state_store import StateStore

log = structlog.get_logger()

ENDPOINTS = ["/health", "/metrics", "/scheduler", "/scheduler/{name}/trigger", "/retry-queue"]


class HealthServer(BaseComponent):
    """HTTP server for health checks, metrics and manual task triggers.

    Usage:
        server = HealthServer(
            port=9090,
            health_provider=collector.get_health_status,
            metrics_provider=metrics.get_metrics,
            scheduler=scheduler,
            retry_stats_provider=retry_queue.get_stats,
        )
        await server.start()
        # Server runs on http://localhost:9090/health
        await server.stop()
    """

    def __init__(
        self,
        port: int = 9090,
        host: str = "0.0.0.0",
        health_provider: Optional[Callable[[], Awaitable[dict[str, Any]]]] = None,
        metrics_provider: Optional[Callable[[], str]] = None,
        scheduler: Optional["Scheduler"] = None,
        retry_stats_provider: Optional[Callable[[], Awaitable["RetryQueueStats"]]] = None,
    ) -> None:
        """Initialize the health server.

        Args:
            port: Port to listen on.
            host: Host to bind to.
            health_provider: Async callable that returns health status dict.
            metrics_provider: Callable that returns Prometheus metrics text.
            scheduler: Scheduler backing /scheduler routes.
            retry_stats_provider: Async callable returning retry queue stats.
        """
        super().__init__(name="HealthServer")
        self._port = port
        self._host = host
        self._health_provider = health_provider
        self._metrics_provider = metrics_provider
        self._scheduler = scheduler
        self._retry_stats_provider = retry_stats_provider
        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._log = log.bind(component="health_server")

    @property
    def port(self) -> int:
        return self._port

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._handle_root)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_get("/scheduler", self._handle_scheduler_status)
        app.router.add_post("/scheduler/{name}/trigger", self._handle_trigger)
        app.router.add_get("/retry-queue", self._handle_retry_queue)
        return app

    async def _do_start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()

        self._log.info(
            "health_server_started",
            host=self._host,
            port=self._port,
            endpoints=ENDPOINTS,
        )

    async def _do_stop(self) -> None:
        """Stop the HTTP server."""
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()
        self._app = None
        self._runner = None
        self._site = None
        self._log.info("health_server_stopped")

    async def _do_health_check(self) -> HealthCheckResult:
        if self._site is None:
            return HealthCheckResult.unhealthy("Server not running")
        return HealthCheckResult.healthy(uptime_seconds=self.uptime_seconds, port=self._port)

    async def _handle_root(self, request: web.Request) -> web.Response:
        return web.json_response({
            "service": "flywheel",
            "version": __version__,
            "endpoints": ENDPOINTS,
        })

    async def _handle_health(self, request: web.Request) -> web.Response:
        try:
            if self._health_provider is None:
                return web.json_response(
                    {"status": "unknown", "error": "No health provider configured"},
                    status=503,
                )

            health_data = await self._health_provider()

            # Degraded is still "up"
            status_code = 503 if health_data.get("status") == "unhealthy" else 200
            return web.json_response(health_data, status=status_code)

        except Exception as e:
            self._log.error("health_check_error", error=str(e))
            return web.json_response(
                {"status": "unhealthy", "error": str(e)},
                status=503,
            )

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        try:
            if self._metrics_provider is None:
                return web.Response(
                    text="# No metrics provider configured\n",
                    content_type="text/plain",
                )

            return web.Response(text=self._metrics_provider(), content_type="text/plain")

        except Exception as e:
            self._log.error("metrics_error", error=str(e))
            return web.Response(
                text=f"# Error: {e}\n",
                content_type="text/plain",
                status=500,
            )

    async def _handle_scheduler_status(self, request: web.Request) -> web.Response:
        if self._scheduler is None:
            return web.json_response({"error": "Scheduler not configured"}, status=503)
        return web.json_response({
            "running": self._scheduler.is_running,
            "tasks": self._scheduler.status(),
        })

    async def _handle_trigger(self, request: web.Request) -> web.Response:
        if self._scheduler is None:
            return web.json_response({"error": "Scheduler not configured"}, status=503)

        name = request.match_info["name"]
        try:
            ran = await self._scheduler.trigger_task(name)
        except UnknownTaskError as e:
            return web.json_response({"task": name, "error": str(e)}, status=404)

        if not ran:
            return web.json_response(
                {"task": name, "triggered": False, "reason": "already_running"},
                status=409,
            )
        return web.json_response({"task": name, "triggered": True})

    async def _handle_retry_queue(self, request: web.Request) -> web.Response:
        if self._retry_stats_provider is None:
            return web.json_response({"error": "Retry queue not configured"}, status=503)
        try:
            stats = await self._retry_stats_provider()
        except Exception as e:
            self._log.error("retry_stats_error", error=str(e))
            return web.json_response({"error": str(e)}, status=503)
        return web.json_response(stats.to_dict())


class HealthStatusCollector:
    """Aggregates component health into the /health payload."""

    def __init__(
        self,
        store: Optional["StateStore"] = None,
        scheduler: Optional["Scheduler"] = None,
        retry_queue: Optional["RetryQueue"] = None,
        get_uptime_seconds: Optional[Callable[[], float]] = None,
        dry_run: bool = True,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._retry_queue = retry_queue
        self._get_uptime_seconds = get_uptime_seconds
        self._dry_run = dry_run
        self._log = log.bind(component="health_collector")

    async def get_health_status(self) -> dict[str, Any]:
        """Get aggregated health status.

        The store is the only hard dependency: without it the service is
        unhealthy. A stopped scheduler, unscheduled jobs or parked fallback
        files make it degraded.
        """
        issues: list[str] = []

        store_connected = self._store.is_connected if self._store else False
        if not store_connected:
            issues.append("store_disconnected")

        scheduler_running = False
        running_tasks: list[str] = []
        if self._scheduler:
            scheduler_running = self._scheduler.is_running
            running_tasks = [t["name"] for t in self._scheduler.status() if t["is_running"]]
            scheduler_health = await self._scheduler.health_check()
            if scheduler_health.status.value != "healthy":
                issues.append("scheduler_" + scheduler_health.status.value)

        retry_queue: dict[str, int] = {}
        fallback_files = 0
        if self._retry_queue:
            if store_connected:
                try:
                    retry_queue = (await self._retry_queue.get_stats()).to_dict()
                except Exception as e:
                    self._log.warning("retry_stats_error", error=str(e))
                    issues.append("retry_stats_unavailable")
            try:
                fallback_files = await asyncio.to_thread(self._retry_queue.fallback.count)
            except OSError as e:
                self._log.warning("fallback_count_error", error=str(e))
            if fallback_files:
                issues.append("fallback_records_pending")

        uptime_seconds = 0.0
        if self._get_uptime_seconds:
            try:
                uptime_seconds = self._get_uptime_seconds()
            except Exception as e:
                self._log.warning("uptime_error", error=str(e))

        if not store_connected:
            status = "unhealthy"
        elif issues:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "issues": issues,
            "store_connected": store_connected,
            "scheduler_running": scheduler_running,
            "running_tasks": running_tasks,
            "retry_queue": retry_queue,
            "fallback_files": fallback_files,
            "dry_run": self._dry_run,
            "uptime_seconds": uptime_seconds,
        }
