"""
Unit tests for the durable retry queue.

Tests:
- enqueue to the store and to the local fallback during an outage
- fallback recovery
- process_one state transitions and the max_retries boundary
- drain ordering, isolation and empty-queue behavior
- cleanup of finished items
"""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from flywheel.core.clock import utcnow
from flywheel.core.retry import NetworkError, StoreUnavailableError
from flywheel.domain.operations import BuybackResult, FeeClaimResult, OperationType, RegisterResult
from flywheel.domain.retry_queue import BuybackPayload, FeeClaimPayload, RegisterPayload, RetryStatus
from flywheel.services.retry_queue import RetryQueue
from tests.conftest import MINT_A, POOL_A, POOL_B, WSOL, pool_params


def failing_handler(error: str = "swap failed"):
    return AsyncMock(return_value=BuybackResult(success=False, pool_address=POOL_A, error=error))


def succeeding_handler():
    return AsyncMock(return_value=FeeClaimResult(success=True, pool_address=POOL_A))


class TestEnqueue:
    """Tests for RetryQueue.enqueue."""

    @pytest.mark.asyncio
    async def test_enqueue_writes_pending_item(self, store, retry_queue):
        """A new item is pending, untried and due immediately."""
        before = utcnow()
        await retry_queue.enqueue(OperationType.BUYBACK, POOL_A, BuybackPayload(sol_amount=Decimal("0.05")))

        items = await store.get_retry_items()
        assert len(items) == 1
        item = items[0]
        assert item.status == RetryStatus.PENDING
        assert item.retry_count == 0
        assert item.max_retries == 5
        assert item.payload == {"solAmount": 0.05}
        assert item.next_retry_at >= before - timedelta(seconds=1)
        assert item.next_retry_at <= utcnow()

    @pytest.mark.asyncio
    async def test_enqueue_accepts_mapping_and_custom_max_retries(self, store, retry_queue):
        await retry_queue.enqueue("burn", POOL_A, {"amount": 10}, max_retries=2)

        item = (await store.get_retry_items())[0]
        assert item.operation_type == OperationType.BURN
        assert item.payload == {"amount": 10}
        assert item.max_retries == 2

    @pytest.mark.asyncio
    async def test_enqueue_invalid_operation_type_is_dropped(self, store, retry_queue):
        await retry_queue.enqueue("not_an_operation", POOL_A)

        assert await store.get_retry_items() == []

    @pytest.mark.asyncio
    async def test_enqueue_during_outage_writes_one_fallback_file(self, store, retry_queue, fallback, metrics):
        """Store outage degrades to exactly one local file and never raises."""
        await store.close()

        await retry_queue.enqueue(OperationType.FEE_CLAIM, POOL_A, FeeClaimPayload())

        files = fallback.list_files()
        assert len(files) == 1
        assert files[0].name.endswith("-fee_claim.json")
        record = fallback.read(files[0])
        assert record.operation_type == OperationType.FEE_CLAIM
        assert record.pool_address == POOL_A
        assert record.max_retries == 5
        assert metrics.registry.get_sample_value(
            "flywheel_retry_enqueued_total",
            {"operation_type": "fee_claim", "backend": "fallback"},
        ) == 1.0

    @pytest.mark.asyncio
    async def test_enqueue_never_raises_when_both_backends_fail(self, store, retry_settings):
        broken_fallback = MagicMock()
        broken_fallback.write_record.side_effect = OSError("disk full")
        queue = RetryQueue(store, settings=retry_settings, fallback=broken_fallback)
        await store.close()

        await queue.enqueue(OperationType.BURN, POOL_A)

        broken_fallback.write_record.assert_called_once()

    @pytest.mark.asyncio
    async def test_zero_max_retries_still_gets_one_attempt(self, store, retry_queue, registry):
        """A ceiling below one is raised to one, so retry_count never passes it."""
        await registry.register_pool(pool_params())
        retry_queue.register_handler(OperationType.BURN, failing_handler())

        await retry_queue.enqueue(OperationType.BURN, POOL_A, max_retries=0)

        item = (await store.get_retry_items())[0]
        assert item.max_retries == 1
        await retry_queue.process_one(item)
        updated = await store.get_retry_item(item.id)
        assert updated.status == RetryStatus.FAILED
        assert updated.retry_count == 1

    @pytest.mark.asyncio
    async def test_enqueue_stamps_times_from_queue_clock(self, store, retry_settings, fallback):
        fixed = utcnow() - timedelta(hours=2)
        queue = RetryQueue(store, settings=retry_settings, fallback=fallback, clock=lambda: fixed)

        await queue.enqueue(OperationType.BURN, POOL_A)

        item = (await store.get_retry_items())[0]
        assert item.created_at == fixed
        assert item.next_retry_at == fixed
        assert item.updated_at == fixed


class TestDrainFallbacks:
    """Tests for fallback recovery."""

    @pytest.mark.asyncio
    async def test_drain_fallbacks_without_directory_is_noop(self, retry_queue, fallback):
        assert not fallback.directory.exists()

        assert await retry_queue.drain_fallbacks() == 0

    @pytest.mark.asyncio
    async def test_outage_then_recovery_leaves_no_files(self, tmp_path, retry_settings, fallback):
        """Enqueue while down, reconnect, drain: the item is in the store and the file is gone."""
        from flywheel.services.state_store import StateStore

        store = StateStore(db_path=str(tmp_path / "outage.db"))
        queue = RetryQueue(store, settings=retry_settings, fallback=fallback)

        await queue.enqueue(OperationType.BUYBACK, POOL_A, BuybackPayload(sol_amount=Decimal("0.05")), max_retries=3)
        assert len(fallback.list_files()) == 1

        await store.connect()
        try:
            recovered = await queue.drain_fallbacks()

            assert recovered == 1
            assert fallback.list_files() == []
            items = await store.get_retry_items()
            assert len(items) == 1
            assert items[0].operation_type == OperationType.BUYBACK
            assert items[0].payload == {"solAmount": 0.05}
            assert items[0].max_retries == 3
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_drain_fallbacks_keeps_files_while_store_down(self, store, retry_queue, fallback):
        await store.close()
        await retry_queue.enqueue(OperationType.BURN, POOL_A)
        await retry_queue.enqueue(OperationType.BURN, POOL_B)

        assert await retry_queue.drain_fallbacks() == 0
        assert len(fallback.list_files()) == 2

    @pytest.mark.asyncio
    async def test_unreadable_file_is_left_in_place(self, store, retry_queue, fallback):
        fallback.directory.mkdir(parents=True)
        bad = fallback.directory / "1000-burn.json"
        bad.write_text("{not json")

        assert await retry_queue.drain_fallbacks() == 0
        assert bad.exists()
        assert await store.get_retry_items() == []

    @pytest.mark.asyncio
    async def test_mistyped_file_does_not_block_due_items(self, store, retry_queue, fallback, registry):
        """A record with a numeric createdAt is skipped; the drain still runs due items."""
        await registry.register_pool(pool_params())
        handler = succeeding_handler()
        retry_queue.register_handler(OperationType.FEE_CLAIM, handler)
        await retry_queue.enqueue(OperationType.FEE_CLAIM, POOL_A)
        fallback.directory.mkdir(parents=True)
        bad = fallback.directory / "1000-burn.json"
        bad.write_text(
            '{"operationType": "burn", "poolAddress": "P", "payload": {}, "createdAt": 1700000000000}'
        )

        result = await retry_queue.drain()

        assert result.fallbacks_recovered == 0
        assert result.succeeded == 1
        handler.assert_awaited_once()
        assert bad.exists()

    @pytest.mark.asyncio
    async def test_outage_mid_recovery_reports_files_left(self, store, retry_settings, fallback):
        """A skipped bad file does not shrink the count of files still on disk."""
        from flywheel.domain.retry_queue import FallbackRecord

        fallback.directory.mkdir(parents=True)
        (fallback.directory / "1-burn.json").write_text("{not json")
        fallback.write_record(FallbackRecord(operation_type=OperationType.BURN, pool_address=POOL_A))
        fallback.write_record(FallbackRecord(operation_type=OperationType.BURN, pool_address=POOL_B))
        primary = MagicMock()
        primary.backend = "store"
        primary.write = AsyncMock(side_effect=StoreUnavailableError("db locked"))
        queue = RetryQueue(store, settings=retry_settings, fallback=fallback, primary=primary)
        queue._log = MagicMock()

        assert await queue.drain_fallbacks() == 0

        queue._log.warning.assert_any_call(
            "retry_fallback_store_unavailable", remaining=2, error="db locked"
        )
        assert len(fallback.list_files()) == 3


class TestProcessOne:
    """Tests for single-attempt state transitions."""

    @pytest.mark.asyncio
    async def test_success_marks_completed(self, store, retry_queue, registry):
        await registry.register_pool(pool_params())
        handler = succeeding_handler()
        retry_queue.register_handler(OperationType.FEE_CLAIM, handler)
        await retry_queue.enqueue(OperationType.FEE_CLAIM, POOL_A)
        item = (await store.get_retry_items())[0]

        assert await retry_queue.process_one(item) is True

        updated = await store.get_retry_item(item.id)
        assert updated.status == RetryStatus.COMPLETED
        assert updated.retry_count == 0
        assert updated.last_attempt_at is not None
        pool_arg, payload_arg = handler.await_args.args
        assert pool_arg.pool_address == POOL_A
        assert isinstance(payload_arg, FeeClaimPayload)

    @pytest.mark.asyncio
    async def test_buyback_end_to_end_reaches_failed_at_max_retries(self, store, retry_queue, registry):
        """maxRetries=2: first failure reschedules ~120s out, second is terminal."""
        await registry.register_pool(pool_params(is_migrated=True))
        handler = failing_handler("simulated swap error")
        retry_queue.register_handler(OperationType.BUYBACK, handler)
        await retry_queue.enqueue(
            OperationType.BUYBACK, POOL_A, BuybackPayload(sol_amount=Decimal("0.05")), max_retries=2
        )
        item = (await store.get_retry_items())[0]

        before = utcnow()
        assert await retry_queue.process_one(item) is False
        after_first = await store.get_retry_item(item.id)
        assert after_first.retry_count == 1
        assert after_first.status == RetryStatus.PENDING
        assert after_first.last_error == "simulated swap error"
        delay = (after_first.next_retry_at - before).total_seconds()
        assert 119 <= delay <= 122
        assert handler.await_args.args[1] == BuybackPayload(sol_amount=Decimal("0.05"))

        assert await retry_queue.process_one(after_first) is False
        after_second = await store.get_retry_item(item.id)
        assert after_second.retry_count == 2
        assert after_second.status == RetryStatus.FAILED
        assert after_second.last_error == "simulated swap error"

    @pytest.mark.asyncio
    async def test_fifth_failure_is_terminal_with_default_ceiling(self, store, retry_queue, registry):
        """retry_count after N failures is N; failed exactly when N reaches 5."""
        await registry.register_pool(pool_params())
        retry_queue.register_handler(OperationType.BURN, failing_handler())
        await retry_queue.enqueue(OperationType.BURN, POOL_A)
        item = (await store.get_retry_items())[0]

        for attempt in range(1, 6):
            await retry_queue.process_one(item)
            item = await store.get_retry_item(item.id)
            assert item.retry_count == attempt
            expected = RetryStatus.FAILED if attempt == 5 else RetryStatus.PENDING
            assert item.status == expected

    @pytest.mark.asyncio
    async def test_handler_exception_counts_as_failed_attempt(self, store, retry_queue, registry):
        await registry.register_pool(pool_params())
        retry_queue.register_handler(OperationType.BURN, AsyncMock(side_effect=RuntimeError("rpc exploded")))
        await retry_queue.enqueue(OperationType.BURN, POOL_A)
        item = (await store.get_retry_items())[0]

        assert await retry_queue.process_one(item) is False

        updated = await store.get_retry_item(item.id)
        assert updated.retry_count == 1
        assert updated.status == RetryStatus.PENDING
        assert updated.last_error == "rpc exploded"

    @pytest.mark.asyncio
    async def test_missing_pool_is_unsuccessful_not_fatal(self, store, retry_queue):
        handler = succeeding_handler()
        retry_queue.register_handler(OperationType.FEE_CLAIM, handler)
        await retry_queue.enqueue(OperationType.FEE_CLAIM, "UnknownPool")
        item = (await store.get_retry_items())[0]

        assert await retry_queue.process_one(item) is False

        handler.assert_not_awaited()
        updated = await store.get_retry_item(item.id)
        assert updated.status == RetryStatus.PENDING
        assert "Pool not found" in updated.last_error

    @pytest.mark.asyncio
    async def test_unregistered_operation_counts_as_failure(self, store, retry_queue):
        await retry_queue.enqueue(OperationType.BURN, POOL_A)
        item = (await store.get_retry_items())[0]

        assert await retry_queue.process_one(item) is False

        updated = await store.get_retry_item(item.id)
        assert updated.retry_count == 1
        assert "No handler registered" in updated.last_error

    @pytest.mark.asyncio
    async def test_invalid_payload_counts_as_failure(self, store, retry_queue, registry):
        await registry.register_pool(pool_params())
        handler = failing_handler()
        retry_queue.register_handler(OperationType.BUYBACK, handler)
        await retry_queue.enqueue(OperationType.BUYBACK, POOL_A, {"solAmount": "lots"})
        item = (await store.get_retry_items())[0]

        assert await retry_queue.process_one(item) is False

        handler.assert_not_awaited()
        updated = await store.get_retry_item(item.id)
        assert updated.retry_count == 1

    @pytest.mark.asyncio
    async def test_register_handler_runs_without_pool_row(self, store, retry_queue):
        handler = AsyncMock(return_value=RegisterResult(success=True, pool_address=POOL_B))
        retry_queue.register_handler(OperationType.REGISTER, handler, requires_pool=False)
        payload = RegisterPayload(pool_address=POOL_B, base_mint=MINT_A, quote_mint=WSOL)
        await retry_queue.enqueue(OperationType.REGISTER, POOL_B, payload)
        item = (await store.get_retry_items())[0]

        assert await retry_queue.process_one(item) is True

        pool_arg, payload_arg = handler.await_args.args
        assert pool_arg is None
        assert payload_arg == payload

    @pytest.mark.asyncio
    async def test_next_retry_at_never_moves_backwards(self, store, retry_queue, registry):
        await registry.register_pool(pool_params())
        retry_queue.register_handler(OperationType.BURN, failing_handler())
        await retry_queue.enqueue(OperationType.BURN, POOL_A)
        item = (await store.get_retry_items())[0]
        far_future = utcnow() + timedelta(days=1)
        await store.update_retry_item(item.id, next_retry_at=far_future)
        item = await store.get_retry_item(item.id)

        await retry_queue.process_one(item)

        updated = await store.get_retry_item(item.id)
        assert updated.next_retry_at == far_future

    @pytest.mark.asyncio
    async def test_completed_item_is_not_reopened(self, store, retry_queue, registry):
        """A stale copy of a finished item is neither dispatched nor moved back to pending."""
        await registry.register_pool(pool_params())
        handler = failing_handler()
        retry_queue.register_handler(OperationType.BURN, handler)
        await retry_queue.enqueue(OperationType.BURN, POOL_A)
        stale_copy = (await store.get_retry_items())[0]
        await store.update_retry_item(stale_copy.id, status=RetryStatus.COMPLETED)

        assert await retry_queue.process_one(stale_copy) is False

        handler.assert_not_awaited()
        updated = await store.get_retry_item(stale_copy.id)
        assert updated.status == RetryStatus.COMPLETED
        assert updated.retry_count == 0

    @pytest.mark.asyncio
    async def test_item_claimed_elsewhere_is_skipped(self, store, retry_queue, registry):
        await registry.register_pool(pool_params())
        handler = succeeding_handler()
        retry_queue.register_handler(OperationType.FEE_CLAIM, handler)
        await retry_queue.enqueue(OperationType.FEE_CLAIM, POOL_A)
        item = (await store.get_retry_items())[0]
        assert await store.claim_retry_item(item.id) is True

        assert await retry_queue.process_one(item) is False

        handler.assert_not_awaited()
        assert (await store.get_retry_item(item.id)).status == RetryStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_failure_is_logged_with_error_category(self, store, retry_queue, registry):
        await registry.register_pool(pool_params())
        retry_queue.register_handler(OperationType.BURN, AsyncMock(side_effect=NetworkError("rpc timeout")))
        await retry_queue.enqueue(OperationType.BURN, POOL_A)
        item = (await store.get_retry_items())[0]
        retry_queue._log = MagicMock()

        await retry_queue.process_one(item)

        _, kwargs = retry_queue._log.warning.call_args
        assert retry_queue._log.warning.call_args.args == ("retry_rescheduled",)
        assert kwargs["error_category"] == "transient"


class TestBackoff:
    """Tests for the configured backoff schedule."""

    def test_default_schedule(self, retry_queue):
        assert retry_queue.backoff_seconds(0) == 60
        assert retry_queue.backoff_seconds(1) == 120
        assert retry_queue.backoff_seconds(3) == 480
        assert retry_queue.backoff_seconds(6) == 3600

    def test_multiplier_is_honoured(self, store):
        from flywheel.core.settings import RetrySettings

        queue = RetryQueue(store, settings=RetrySettings(backoff_multiplier=3))

        assert queue.backoff_seconds(2) == 540


class TestDrain:
    """Tests for RetryQueue.drain."""

    @pytest.mark.asyncio
    async def test_drain_with_nothing_due_returns_zero_counts(self, store, retry_queue):
        result = await retry_queue.drain()

        assert (result.processed, result.succeeded, result.failed) == (0, 0, 0)
        assert await store.get_retry_items() == []

    @pytest.mark.asyncio
    async def test_abandoned_processing_item_is_retried(self, store, retry_queue, registry):
        """An attempt interrupted mid-dispatch goes back to pending without using up a retry."""
        await registry.register_pool(pool_params())
        handler = succeeding_handler()
        retry_queue.register_handler(OperationType.FEE_CLAIM, handler)
        await retry_queue.enqueue(OperationType.FEE_CLAIM, POOL_A)
        item = (await store.get_retry_items())[0]
        await store.claim_retry_item(item.id, now=utcnow() - timedelta(hours=1))

        result = await retry_queue.drain()

        assert result.stale_released == 1
        assert result.succeeded == 1
        updated = await store.get_retry_item(item.id)
        assert updated.status == RetryStatus.COMPLETED
        assert updated.retry_count == 0

    @pytest.mark.asyncio
    async def test_recent_processing_item_is_left_alone(self, store, retry_queue):
        item = await store.insert_retry_item(OperationType.BURN, POOL_A, {})
        await store.claim_retry_item(item.id)

        result = await retry_queue.drain()

        assert result.stale_released == 0
        assert (await store.get_retry_item(item.id)).status == RetryStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_drain_processes_oldest_first_and_isolates_failures(self, store, retry_queue, registry):
        await registry.register_pool(pool_params())
        await registry.register_pool(pool_params(POOL_B, symbol="BBB"))
        calls = []

        async def handler(pool, payload):
            calls.append(pool.pool_address)
            if pool.pool_address == POOL_A:
                raise RuntimeError("first one breaks")
            return FeeClaimResult(success=True, pool_address=pool.pool_address)

        retry_queue.register_handler(OperationType.FEE_CLAIM, handler)
        now = utcnow()
        await store.insert_retry_item(OperationType.FEE_CLAIM, POOL_B, {}, created_at=now - timedelta(minutes=1))
        await store.insert_retry_item(OperationType.FEE_CLAIM, POOL_A, {}, created_at=now - timedelta(minutes=5))

        result = await retry_queue.drain()

        assert calls == [POOL_A, POOL_B]
        assert (result.processed, result.succeeded, result.failed) == (2, 1, 1)
        stats = await retry_queue.get_stats()
        assert stats.pending == 1
        assert stats.completed == 1

    @pytest.mark.asyncio
    async def test_drain_respects_batch_size(self, store, registry, retry_settings, fallback):
        from dataclasses import replace

        queue = RetryQueue(store, settings=replace(retry_settings, batch_size=2), fallback=fallback)
        await registry.register_pool(pool_params())
        queue.register_handler(OperationType.FEE_CLAIM, succeeding_handler())
        for _ in range(3):
            await queue.enqueue(OperationType.FEE_CLAIM, POOL_A)

        result = await queue.drain()

        assert result.processed == 2
        assert (await queue.get_stats()).pending == 1

    @pytest.mark.asyncio
    async def test_drain_sleeps_between_items(self, store, registry, retry_settings, fallback):
        from dataclasses import replace

        sleep = AsyncMock()
        queue = RetryQueue(
            store,
            settings=replace(retry_settings, item_delay_seconds=1.0),
            fallback=fallback,
            sleep=sleep,
        )
        await registry.register_pool(pool_params())
        queue.register_handler(OperationType.FEE_CLAIM, succeeding_handler())
        for _ in range(3):
            await queue.enqueue(OperationType.FEE_CLAIM, POOL_A)

        await queue.drain()

        assert sleep.await_count == 2
        sleep.assert_awaited_with(1.0)

    @pytest.mark.asyncio
    async def test_drain_recovers_fallbacks_first(self, store, retry_queue, fallback, registry):
        from flywheel.domain.retry_queue import FallbackRecord

        await registry.register_pool(pool_params())
        retry_queue.register_handler(OperationType.FEE_CLAIM, succeeding_handler())
        fallback.write_record(FallbackRecord(operation_type=OperationType.FEE_CLAIM, pool_address=POOL_A))

        result = await retry_queue.drain()

        assert result.fallbacks_recovered == 1
        assert result.succeeded == 1
        assert fallback.list_files() == []

    @pytest.mark.asyncio
    async def test_drain_survives_store_outage(self, store, retry_queue):
        await store.close()

        result = await retry_queue.drain()

        assert result.processed == 0

    @pytest.mark.asyncio
    async def test_drain_updates_queue_gauge(self, store, retry_queue, registry, metrics):
        await registry.register_pool(pool_params())
        retry_queue.register_handler(OperationType.FEE_CLAIM, succeeding_handler())
        await retry_queue.enqueue(OperationType.FEE_CLAIM, POOL_A)

        await retry_queue.drain()

        assert metrics.registry.get_sample_value("flywheel_retry_queue_items", {"status": "completed"}) == 1.0
        assert metrics.registry.get_sample_value(
            "flywheel_retry_attempts_total", {"operation_type": "fee_claim", "outcome": "succeeded"}
        ) == 1.0


class TestCleanup:
    """Tests for RetryQueue.cleanup."""

    @pytest.mark.asyncio
    async def test_cleanup_deletes_only_old_finished_items(self, store, retry_queue):
        old = utcnow() - timedelta(days=8)
        recent = utcnow() - timedelta(days=1)
        ids = {}
        for name, status, updated_at in [
            ("old_completed", RetryStatus.COMPLETED, old),
            ("old_failed", RetryStatus.FAILED, old),
            ("old_pending", RetryStatus.PENDING, old),
            ("old_processing", RetryStatus.PROCESSING, old),
            ("recent_completed", RetryStatus.COMPLETED, recent),
        ]:
            item = await store.insert_retry_item(OperationType.BURN, POOL_A, {})
            await store.update_retry_item(item.id, status=status, updated_at=updated_at)
            ids[name] = item.id

        deleted = await retry_queue.cleanup(7)

        assert deleted == 2
        assert await store.get_retry_item(ids["old_completed"]) is None
        assert await store.get_retry_item(ids["old_failed"]) is None
        assert await store.get_retry_item(ids["old_pending"]) is not None
        assert await store.get_retry_item(ids["old_processing"]) is not None
        assert await store.get_retry_item(ids["recent_completed"]) is not None

    @pytest.mark.asyncio
    async def test_cleanup_returns_zero_when_store_down(self, store, retry_queue):
        await store.close()

        assert await retry_queue.cleanup() == 0

    @pytest.mark.asyncio
    async def test_get_stats_raises_when_store_down(self, store, retry_queue):
        await store.close()

        with pytest.raises(StoreUnavailableError):
            await retry_queue.get_stats()
