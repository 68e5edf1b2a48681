"""Retry Queue - durable exponential-backoff retries for flywheel operations.

This service:
- Enqueues failed fee claims, buybacks, burns and pool registrations
- Falls back to local JSON files when the state store is unreachable
- Drains due items sequentially, oldest first, with a pause between items
- Moves items to a terminal state on success or after max_retries failures
- Deletes old terminal items during cleanup

Item state machine:
- pending -> processing -> completed
- pending -> processing -> pending (next_retry_at pushed back)
- pending -> processing -> failed (retry_count reached max_retries)
- processing -> pending (attempt abandoned for longer than processing_timeout_seconds)
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from flywheel.core.clock import utcnow
from flywheel.core.retry import (
    InvalidPayloadError,
    ResourceNotFoundError,
    StoreUnavailableError,
    classify_error,
    error_message,
)
from flywheel.core.settings import RetrySettings
from flywheel.domain.operations import OperationType
from flywheel.domain.pool import Pool
from flywheel.domain.retry_queue import (
    DrainResult,
    FallbackRecord,
    RetryPayload,
    RetryQueueItem,
    RetryQueueStats,
    RetryStatus,
    clamp_max_retries,
    compute_backoff,
    encode_payload,
)
from flywheel.services.fallback import LocalFallbackStore, RetrySink, StoreRetrySink
from flywheel.services.metrics import MetricsEmitter
from flywheel.services.state_store import StateStore

log = structlog.get_logger()

RetryHandlerFunc = Callable[[Optional[Pool], RetryPayload], Awaitable[Any]]


@dataclass(frozen=True)
class RetryHandler:
    """A task operation the queue can re-run.

    The handler returns a result object with ``success`` and ``error``
    attributes. When ``requires_pool`` is set the item's pool address is
    resolved to a Pool before the call.
    """

    func: RetryHandlerFunc
    requires_pool: bool = True


class RetryQueue:
    """Durable retry queue over the state store with a local-disk fallback."""

    def __init__(
        self,
        store: StateStore,
        settings: Optional[RetrySettings] = None,
        fallback: Optional[LocalFallbackStore] = None,
        metrics: Optional[MetricsEmitter] = None,
        primary: Optional[RetrySink] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the retry queue.

        Args:
            store: StateStore that owns the retry_queue table.
            settings: Backoff, batch and cleanup parameters.
            fallback: Secondary backend for store outages.
            metrics: MetricsEmitter for observability metrics.
            primary: Primary backend override (defaults to the store).
            clock: Source of the current UTC time.
            sleep: Awaitable used for the pause between items.
        """
        self._store = store
        self._settings = settings or RetrySettings()
        self._fallback = fallback or LocalFallbackStore(self._settings.fallback_dir)
        self._primary: RetrySink = primary or StoreRetrySink(store)
        self._metrics = metrics
        self._clock = clock
        self._sleep = sleep
        self._handlers: dict[OperationType, RetryHandler] = {}
        self._log = log.bind(component="retry_queue")

    @property
    def settings(self) -> RetrySettings:
        return self._settings

    @property
    def fallback(self) -> LocalFallbackStore:
        return self._fallback

    def register_handler(
        self,
        operation_type: OperationType,
        func: RetryHandlerFunc,
        requires_pool: bool = True,
    ) -> None:
        """Bind a task operation to an operation type."""
        self._handlers[OperationType(operation_type)] = RetryHandler(func, requires_pool)

    def has_handler(self, operation_type: OperationType) -> bool:
        return OperationType(operation_type) in self._handlers

    def backoff_seconds(self, retry_count: int) -> int:
        return compute_backoff(
            retry_count,
            base_seconds=self._settings.backoff_base_seconds,
            multiplier=self._settings.backoff_multiplier,
            max_seconds=self._settings.backoff_max_seconds,
        )

    # ============ Enqueue ============

    async def enqueue(
        self,
        operation_type: Union[OperationType, str],
        pool_address: Optional[str] = None,
        payload: Union[RetryPayload, dict[str, Any], None] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        """Record an operation for later retry. Never raises.

        The store is tried first; if it cannot be written the request is
        parked as a local fallback file. If both fail the loss is logged.
        """
        try:
            op_type = OperationType(operation_type)
        except ValueError:
            self._log.error("retry_enqueue_invalid_type", operation_type=str(operation_type))
            return

        limit = max_retries if max_retries is not None else self._settings.max_retries
        if limit != clamp_max_retries(limit):
            self._log.warning(
                "retry_max_retries_clamped",
                operation_type=op_type.value,
                requested=limit,
                max_retries=clamp_max_retries(limit),
            )
            limit = clamp_max_retries(limit)
        now = self._clock()
        record = FallbackRecord(
            operation_type=op_type,
            pool_address=pool_address,
            payload=encode_payload(payload),
            created_at=now,
            max_retries=limit,
        )

        try:
            await self._primary.write(record, limit, now=now)
            self._record_enqueued(op_type, self._primary.backend)
            self._log.info(
                "retry_enqueued",
                operation_type=op_type.value,
                pool_address=pool_address,
                max_retries=limit,
            )
            return
        except Exception as e:
            self._log.warning(
                "retry_enqueue_store_failed",
                operation_type=op_type.value,
                pool_address=pool_address,
                error=error_message(e),
            )

        try:
            path = self._fallback.write_record(record, limit)
            self._record_enqueued(op_type, self._fallback.backend)
            self._log.warning(
                "retry_fallback_written",
                operation_type=op_type.value,
                pool_address=pool_address,
                path=str(path),
            )
        except Exception as e:
            self._log.error(
                "retry_enqueue_lost",
                operation_type=op_type.value,
                pool_address=pool_address,
                payload=record.payload,
                error=error_message(e),
            )

    def _record_enqueued(self, operation_type: OperationType, backend: str) -> None:
        if self._metrics:
            self._metrics.record_retry_enqueued(operation_type.value, backend)

    # ============ Fallback recovery ============

    async def drain_fallbacks(self) -> int:
        """Re-submit local fallback records to the store.

        Returns:
            Number of records moved into the store (and deleted from disk).
        """
        try:
            files = self._fallback.list_files()
        except OSError as e:
            self._log.warning("retry_fallback_scan_failed", error=str(e))
            return 0

        if not files:
            return 0

        recovered = 0
        for index, path in enumerate(files):
            try:
                record = self._fallback.read(path)
            except Exception as e:
                # Left on disk for inspection; one bad file must not block the rest
                self._log.warning("retry_fallback_unreadable", path=str(path), error=error_message(e))
                continue

            try:
                await self._primary.write(record, self._settings.max_retries, now=self._clock())
            except StoreUnavailableError as e:
                self._log.warning(
                    "retry_fallback_store_unavailable",
                    remaining=len(files) - index,
                    error=error_message(e),
                )
                break
            except Exception as e:
                self._log.warning("retry_fallback_resubmit_failed", path=str(path), error=error_message(e))
                continue

            try:
                self._fallback.delete(path)
            except OSError as e:
                # Already in the store; leaving the file would enqueue it twice.
                self._log.error("retry_fallback_delete_failed", path=str(path), error=str(e))
            recovered += 1

        if recovered:
            self._log.info("retry_fallbacks_recovered", count=recovered)
        return recovered

    # ============ Processing ============

    async def fetch_due(self, limit: Optional[int] = None) -> list[RetryQueueItem]:
        """Pending items whose retry time has come, oldest first."""
        try:
            return await self._store.get_due_retry_items(
                now=self._clock(),
                limit=limit if limit is not None else self._settings.batch_size,
            )
        except StoreUnavailableError as e:
            self._log.error("retry_fetch_due_failed", error=error_message(e))
            return []

    async def process_one(self, item: RetryQueueItem) -> bool:
        """Run one attempt for ``item`` and persist the outcome.

        Returns:
            True if the operation succeeded.
        """
        now = self._clock()
        try:
            claimed = await self._store.claim_retry_item(item.id, now=now)
        except StoreUnavailableError as e:
            self._log.error("retry_mark_processing_failed", item_id=item.id, error=error_message(e))
            return False

        if not claimed:
            # Finished, failed or picked up by another drain since it was fetched
            self._log.warning(
                "retry_item_not_claimable",
                item_id=item.id,
                operation_type=item.operation_type.value,
            )
            return False

        self._log.info(
            "retry_processing",
            item_id=item.id,
            operation_type=item.operation_type.value,
            pool_address=item.pool_address,
            attempt=item.retry_count + 1,
            max_retries=item.max_retries,
        )

        error: Optional[str] = None
        category: Optional[str] = None
        try:
            result = await self._dispatch(item)
            success = bool(getattr(result, "success", False))
            if not success:
                error = getattr(result, "error", None) or "Operation reported failure"
        except Exception as e:
            success = False
            error = error_message(e)
            category = classify_error(e).value

        try:
            if success:
                await self._mark_completed(item)
            else:
                await self._mark_failed_attempt(item, error or "Unknown error", now, category)
        except StoreUnavailableError as e:
            self._log.error(
                "retry_item_update_failed",
                item_id=item.id,
                success=success,
                error=error_message(e),
            )
        return success

    async def _dispatch(self, item: RetryQueueItem) -> Any:
        handler = self._handlers.get(item.operation_type)
        if handler is None:
            raise ResourceNotFoundError(f"No handler registered for {item.operation_type.value}")

        payload = item.typed_payload()

        pool: Optional[Pool] = None
        if handler.requires_pool:
            if not item.pool_address:
                raise InvalidPayloadError(f"{item.operation_type.value} retry has no pool address")
            pool = await self._store.get_pool_by_address(item.pool_address)
            if pool is None:
                raise ResourceNotFoundError(f"Pool not found: {item.pool_address}")

        return await handler.func(pool, payload)

    async def _mark_completed(self, item: RetryQueueItem) -> None:
        await self._store.update_retry_item(item.id, status=RetryStatus.COMPLETED)
        if self._metrics:
            self._metrics.record_retry_attempt(item.operation_type.value, "succeeded")
        self._log.info(
            "retry_succeeded",
            item_id=item.id,
            operation_type=item.operation_type.value,
            pool_address=item.pool_address,
            attempts=item.retry_count + 1,
        )

    async def _mark_failed_attempt(
        self,
        item: RetryQueueItem,
        error: str,
        now: datetime,
        error_category: Optional[str] = None,
    ) -> None:
        """Record a failed attempt.

        ``error_category`` is only known when the handler raised; a result
        with ``success=False`` leaves it unset.
        """
        retry_count = item.retry_count + 1

        if retry_count >= item.max_retries:
            await self._store.update_retry_item(
                item.id,
                status=RetryStatus.FAILED,
                retry_count=retry_count,
                last_error=error,
            )
            if self._metrics:
                self._metrics.record_retry_attempt(item.operation_type.value, "failed")
            self._log.error(
                "retry_permanently_failed",
                item_id=item.id,
                operation_type=item.operation_type.value,
                pool_address=item.pool_address,
                retry_count=retry_count,
                error=error,
                error_category=error_category,
            )
            return

        backoff = self.backoff_seconds(retry_count)
        next_retry_at = now + timedelta(seconds=backoff)
        if item.next_retry_at and item.next_retry_at > next_retry_at:
            next_retry_at = item.next_retry_at

        await self._store.update_retry_item(
            item.id,
            status=RetryStatus.PENDING,
            retry_count=retry_count,
            last_error=error,
            next_retry_at=next_retry_at,
        )
        if self._metrics:
            self._metrics.record_retry_attempt(item.operation_type.value, "rescheduled")
        self._log.warning(
            "retry_rescheduled",
            item_id=item.id,
            operation_type=item.operation_type.value,
            pool_address=item.pool_address,
            retry_count=retry_count,
            max_retries=item.max_retries,
            backoff_seconds=backoff,
            next_retry_at=next_retry_at.isoformat(),
            error=error,
            error_category=error_category,
        )

    async def drain(self) -> DrainResult:
        """Recover fallbacks, then process every due item in order.

        One item's failure never aborts the batch.
        """
        result = DrainResult()
        result.fallbacks_recovered = await self.drain_fallbacks()
        result.stale_released = await self.release_stale()

        items = await self.fetch_due()
        if not items:
            return result

        self._log.info("retry_drain_started", due=len(items))
        for index, item in enumerate(items):
            if index > 0 and self._settings.item_delay_seconds > 0:
                await self._sleep(self._settings.item_delay_seconds)

            try:
                ok = await self.process_one(item)
            except Exception as e:
                self._log.error("retry_process_unexpected_error", item_id=item.id, error=error_message(e))
                ok = False

            result.processed += 1
            if ok:
                result.succeeded += 1
            else:
                result.failed += 1

        self._log.info("retry_drain_completed", **result.to_dict())
        await self._refresh_gauge()
        return result

    async def release_stale(self) -> int:
        """Hand items left in processing by an interrupted attempt back to pending.

        An attempt that outlives ``processing_timeout_seconds`` is assumed
        dead (crash or kill mid-dispatch). Its retry_count is unchanged.
        """
        now = self._clock()
        cutoff = now - timedelta(seconds=self._settings.processing_timeout_seconds)
        try:
            released = await self._store.release_stale_retry_items(cutoff, now=now)
        except StoreUnavailableError as e:
            self._log.error("retry_release_stale_failed", error=error_message(e))
            return 0
        if released:
            self._log.warning(
                "retry_stale_items_released",
                count=released,
                timeout_seconds=self._settings.processing_timeout_seconds,
            )
        return released

    async def cleanup(self, older_than_days: Optional[int] = None) -> int:
        """Delete completed/failed items not touched for ``older_than_days``."""
        days = older_than_days if older_than_days is not None else self._settings.cleanup_after_days
        cutoff = self._clock() - timedelta(days=days)
        try:
            deleted = await self._store.delete_finished_retry_items(cutoff)
        except StoreUnavailableError as e:
            self._log.error("retry_cleanup_failed", error=error_message(e))
            return 0
        if deleted:
            self._log.info("retry_cleanup_completed", deleted=deleted, older_than_days=days)
        return deleted

    async def get_stats(self) -> RetryQueueStats:
        """Counts per status. Raises StoreUnavailableError if the store is down."""
        stats = await self._store.get_retry_queue_stats()
        if self._metrics:
            self._metrics.update_retry_queue(stats)
        return stats

    async def _refresh_gauge(self) -> None:
        if not self._metrics:
            return
        try:
            await self.get_stats()
        except StoreUnavailableError as e:
            self._log.debug("retry_stats_unavailable", error=error_message(e))
