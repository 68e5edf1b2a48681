"""Scheduler - cron-driven job runner with a per-job single-flight guard.

This service:
- Validates each job's cron expression with croniter and skips invalid ones
- Runs one asyncio loop per job that sleeps until the next UTC fire time
- Launches the job handler without awaiting it, so an overrunning run makes
  the next tick observe it and skip
- Shares the same guarded handler between scheduled ticks and trigger_task()

Task state machine:
- idle -> running -> idle (handler returned)
- idle -> running -> idle (handler raised; error logged and kept in last_error)
- idle -> skipped (a run of the same job is already in flight)
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import structlog
from croniter import croniter

from flywheel.core.clock import format_timestamp, utcnow
from flywheel.core.lifecycle import BaseComponent, HealthCheckResult
from flywheel.core.retry import UnknownTaskError, ValidationError, error_message
from flywheel.core.settings import SchedulerSettings
from flywheel.services.metrics import MetricsEmitter

log = structlog.get_logger()

TaskHandler = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class JobDefinition:
    """A named job and the cron line it runs on."""

    name: str
    cron_expression: str
    handler: TaskHandler
    description: str = ""


@dataclass
class ScheduledTask:
    """Live state of a started job."""

    name: str
    cron_expression: str
    description: str = ""
    is_running: bool = False
    next_run_at: Optional[datetime] = None
    last_started_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "cron_expression": self.cron_expression,
            "is_running": self.is_running,
            "next_run_at": format_timestamp(self.next_run_at) if self.next_run_at else None,
            "last_started_at": format_timestamp(self.last_started_at) if self.last_started_at else None,
            "last_error": self.last_error,
        }


def is_valid_cron(expression: str) -> bool:
    try:
        return bool(croniter.is_valid(expression))
    except Exception:
        return False


def next_fire_time(expression: str, base: datetime) -> datetime:
    """First fire time strictly after ``base``."""
    return croniter(expression, base).get_next(datetime)


class Scheduler(BaseComponent):
    """Runs registered jobs on their cron schedules.

    State is owned by the instance, so tests can build as many schedulers
    as they like.
    """

    def __init__(
        self,
        settings: Optional[SchedulerSettings] = None,
        metrics: Optional[MetricsEmitter] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        super().__init__(name="scheduler")
        self._settings = settings or SchedulerSettings()
        self._metrics = metrics
        self._clock = clock
        self._sleep = sleep
        self._jobs: dict[str, JobDefinition] = {}
        self._tasks: dict[str, ScheduledTask] = {}
        self._in_flight: set[str] = set()
        self._loops: dict[str, asyncio.Task] = {}
        self._handler_tasks: set[asyncio.Task] = set()
        self._log = log.bind(component="scheduler")

    # ============ Registration ============

    def add_job(
        self,
        name: str,
        cron_expression: str,
        handler: TaskHandler,
        description: str = "",
    ) -> None:
        """Register a job. Must be called before start()."""
        if self.is_running:
            raise ValidationError("Cannot add jobs to a running scheduler")
        if name in self._jobs:
            raise ValidationError(f"Job already registered: {name}")
        self._jobs[name] = JobDefinition(name, cron_expression, handler, description)

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs)

    def is_task_running(self, name: str) -> bool:
        return name in self._in_flight

    # ============ Lifecycle ============

    async def _do_start(self) -> None:
        now = self._clock()
        for job in self._jobs.values():
            if not is_valid_cron(job.cron_expression):
                self._log.error(
                    "invalid_cron_expression",
                    task=job.name,
                    cron_expression=job.cron_expression,
                )
                continue

            self._tasks[job.name] = ScheduledTask(
                name=job.name,
                cron_expression=job.cron_expression,
                description=job.description,
                next_run_at=next_fire_time(job.cron_expression, now),
            )
            self._loops[job.name] = asyncio.create_task(self._schedule_loop(job), name=f"schedule:{job.name}")
            self._log.info(
                "task_scheduled",
                task=job.name,
                cron_expression=job.cron_expression,
                next_run_at=format_timestamp(self._tasks[job.name].next_run_at),
            )

        self._log.info("scheduler_started", scheduled=len(self._tasks), registered=len(self._jobs))

    async def stop(self) -> None:
        """Stop every schedule loop. Safe before start() or after a partial start."""
        await self._do_stop()
        self._running = False

    async def _do_stop(self) -> None:
        loops = list(self._loops.values())
        for loop_task in loops:
            loop_task.cancel()
        if loops:
            await asyncio.gather(*loops, return_exceptions=True)
        self._loops.clear()

        pending = set(self._handler_tasks)
        if pending:
            self._log.info("waiting_for_running_tasks", count=len(pending))
            _, still_running = await asyncio.wait(pending, timeout=self._settings.stop_timeout_seconds)
            for handler_task in still_running:
                handler_task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
                self._log.warning("running_tasks_cancelled", count=len(still_running))

        self._tasks.clear()
        self._log.info("scheduler_stopped")

    async def _do_health_check(self) -> HealthCheckResult:
        skipped = len(self._jobs) - len(self._tasks)
        details = {
            "scheduled": len(self._tasks),
            "running": sorted(self._in_flight),
            "uptime_seconds": self.uptime_seconds,
        }
        if skipped:
            return HealthCheckResult.degraded(f"{skipped} job(s) not scheduled", **details)
        return HealthCheckResult.healthy("Scheduler running", **details)

    # ============ Execution ============

    async def _schedule_loop(self, job: JobDefinition) -> None:
        last_fire: Optional[datetime] = None
        while True:
            now = self._clock()
            base = max(now, last_fire) if last_fire else now
            fire_at = next_fire_time(job.cron_expression, base)
            task = self._tasks.get(job.name)
            if task is not None:
                task.next_run_at = fire_at

            await self._sleep(max((fire_at - now).total_seconds(), 0.0))
            last_fire = fire_at

            handler_task = asyncio.create_task(self._run_guarded(job), name=f"task:{job.name}")
            self._handler_tasks.add(handler_task)
            handler_task.add_done_callback(self._handler_tasks.discard)

    async def _run_guarded(self, job: JobDefinition) -> bool:
        """Run ``job`` unless a run is already in flight.

        Returns:
            True if the handler ran (whether or not it raised), False if skipped.
        """
        if job.name in self._in_flight:
            self._log.warning("task_skipped_already_running", task=job.name)
            if self._metrics:
                self._metrics.record_task_run(job.name, "skipped")
            return False

        self._in_flight.add(job.name)
        task = self._tasks.get(job.name)
        if task is not None:
            task.is_running = True
            task.last_started_at = self._clock()

        started = time.monotonic()
        outcome = "success"
        error: Optional[str] = None
        self._log.info("task_started", task=job.name)
        try:
            await job.handler()
        except Exception as e:
            outcome = "error"
            error = error_message(e)
            self._log.error("task_failed", task=job.name, error=error, exc_info=True)
        finally:
            self._in_flight.discard(job.name)
            duration = time.monotonic() - started
            task = self._tasks.get(job.name)
            if task is not None:
                task.is_running = False
                task.last_error = error
            if self._metrics:
                self._metrics.record_task_run(job.name, outcome, duration)

        if outcome == "success":
            self._log.info("task_completed", task=job.name, duration_seconds=round(duration, 3))
        return True

    # ============ Public API ============

    def status(self) -> list[dict[str, Any]]:
        """Snapshot of scheduled tasks."""
        return [task.to_dict() for task in self._tasks.values()]

    async def trigger_task(self, name: str) -> bool:
        """Run a job now through the same single-flight guard as its schedule.

        Raises:
            UnknownTaskError: If no job has this name.
        """
        job = self._jobs.get(name)
        if job is None:
            raise UnknownTaskError(f"Unknown task: {name}. Known tasks: {', '.join(self._jobs) or 'none'}")
        self._log.info("task_triggered_manually", task=name)
        return await self._run_guarded(job)
