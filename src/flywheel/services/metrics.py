"""
Prometheus metrics emission for the flywheel service.

All metrics use the 'flywheel_' prefix.
"""
from decimal import Decimal
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from flywheel import __version__
from flywheel.domain.retry_queue import RetryQueueStats


class MetricsEmitter:
    """Prometheus metrics emission (emit only, no reading).

    Usage:
        emitter = MetricsEmitter()
        emitter.record_task_run("buyback", "success")
        emitter.record_retry_attempt("burn", "failed")
        metrics_output = emitter.get_metrics()
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        """Initialize MetricsEmitter.

        Args:
            registry: Optional custom registry (a private one by default)
        """
        self._registry = registry or CollectorRegistry()

        self._info = Info(
            "flywheel",
            "Flywheel service information",
            registry=self._registry,
        )
        self._info.info({
            "version": __version__,
            "component": "flywheel",
        })

        self._uptime = Gauge(
            "flywheel_uptime_seconds",
            "Process uptime in seconds",
            registry=self._registry,
        )

        # Scheduler
        self._task_runs = Counter(
            "flywheel_task_runs_total",
            "Scheduled task invocations by outcome (success, error, skipped)",
            ["task", "outcome"],
            registry=self._registry,
        )

        self._task_duration = Histogram(
            "flywheel_task_duration_seconds",
            "Scheduled task handler duration in seconds",
            ["task"],
            buckets=[0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 900.0],
            registry=self._registry,
        )

        # Retry queue
        self._retry_attempts = Counter(
            "flywheel_retry_attempts_total",
            "Retry queue processing attempts by outcome",
            ["operation_type", "outcome"],
            registry=self._registry,
        )

        self._retry_enqueued = Counter(
            "flywheel_retry_enqueued_total",
            "Retry requests written, by backend (store or fallback)",
            ["operation_type", "backend"],
            registry=self._registry,
        )

        self._retry_queue_items = Gauge(
            "flywheel_retry_queue_items",
            "Retry queue items by status",
            ["status"],
            registry=self._registry,
        )

        # Flywheel economics
        self._sol_collected = Counter(
            "flywheel_fees_collected_sol_total",
            "SOL collected from fee claims",
            registry=self._registry,
        )

        self._sol_spent = Counter(
            "flywheel_buyback_sol_total",
            "SOL spent on buybacks",
            registry=self._registry,
        )

        self._tokens_burned = Counter(
            "flywheel_tokens_burned_total",
            "Tokens burned across all pools",
            registry=self._registry,
        )

    def record_task_run(self, task: str, outcome: str, duration_seconds: Optional[float] = None) -> None:
        """Record one scheduled task invocation.

        Args:
            task: Task name (fee_collection, buyback, ...)
            outcome: success, error or skipped
            duration_seconds: Handler duration, omitted for skipped runs
        """
        self._task_runs.labels(task=task, outcome=outcome).inc()
        if duration_seconds is not None:
            self._task_duration.labels(task=task).observe(duration_seconds)

    def record_retry_attempt(self, operation_type: str, outcome: str) -> None:
        """outcome is one of succeeded, rescheduled, failed."""
        self._retry_attempts.labels(operation_type=operation_type, outcome=outcome).inc()

    def record_retry_enqueued(self, operation_type: str, backend: str) -> None:
        self._retry_enqueued.labels(operation_type=operation_type, backend=backend).inc()

    def update_retry_queue(self, stats: RetryQueueStats) -> None:
        self._retry_queue_items.labels(status="pending").set(stats.pending)
        self._retry_queue_items.labels(status="processing").set(stats.processing)
        self._retry_queue_items.labels(status="completed").set(stats.completed)
        self._retry_queue_items.labels(status="failed").set(stats.failed)

    def record_fees_collected(self, amount_sol: Decimal) -> None:
        if amount_sol > 0:
            self._sol_collected.inc(float(amount_sol))

    def record_buyback_spent(self, amount_sol: Decimal) -> None:
        if amount_sol > 0:
            self._sol_spent.inc(float(amount_sol))

    def record_tokens_burned(self, amount: Decimal) -> None:
        if amount > 0:
            self._tokens_burned.inc(float(amount))

    def update_uptime(self, seconds: float) -> None:
        self._uptime.set(seconds)

    def get_metrics(self) -> str:
        """Get Prometheus metrics output.

        Returns:
            Metrics in Prometheus text format
        """
        return generate_latest(self._registry).decode("utf-8")

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry
