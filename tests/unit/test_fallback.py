"""Tests for the local-disk retry fallback."""
import json
from datetime import datetime, timezone

import pytest

from flywheel.core.retry import InvalidPayloadError
from flywheel.domain.operations import OperationType
from flywheel.domain.retry_queue import FallbackRecord
from flywheel.services.fallback import LocalFallbackStore, StoreRetrySink
from tests.conftest import POOL_A


def make_record(operation_type=OperationType.BUYBACK, payload=None):
    return FallbackRecord(
        operation_type=operation_type,
        pool_address=POOL_A,
        payload=payload if payload is not None else {"solAmount": 0.05},
        created_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )


class TestLocalFallbackStore:
    """Tests for file naming, reading and listing."""

    def test_write_creates_directory_and_named_file(self, tmp_path):
        fallback = LocalFallbackStore(tmp_path / "fb")

        path = fallback.write_record(make_record(), max_retries=5)

        assert path.parent == tmp_path / "fb"
        stamp, suffix = path.name.split("-", 1)
        assert stamp.isdigit()
        assert suffix == "buyback.json"
        data = json.loads(path.read_text())
        assert data["operationType"] == "buyback"
        assert data["poolAddress"] == POOL_A
        assert data["payload"] == {"solAmount": 0.05}
        assert data["maxRetries"] == 5

    def test_record_max_retries_wins(self, tmp_path):
        fallback = LocalFallbackStore(tmp_path)
        record = make_record()
        record.max_retries = 2

        path = fallback.write_record(record, max_retries=5)

        assert fallback.read(path).max_retries == 2

    def test_same_millisecond_writes_do_not_collide(self, tmp_path):
        fallback = LocalFallbackStore(tmp_path)

        paths = {fallback.write_record(make_record()) for _ in range(5)}

        assert len(paths) == 5
        assert fallback.count() == 5

    def test_list_files_sorted_oldest_first(self, tmp_path):
        fallback = LocalFallbackStore(tmp_path)
        for name in ("300-burn.json", "20-burn.json", "1000-burn.json", "notes.txt", "odd-burn.json"):
            (tmp_path / name).write_text("{}")

        names = [p.name for p in fallback.list_files()]

        assert names == ["20-burn.json", "300-burn.json", "1000-burn.json", "odd-burn.json"]

    def test_missing_directory_lists_nothing(self, tmp_path):
        assert LocalFallbackStore(tmp_path / "absent").list_files() == []

    def test_read_round_trip(self, tmp_path):
        fallback = LocalFallbackStore(tmp_path)
        path = fallback.write_record(make_record(OperationType.FEE_CLAIM, payload={}))

        record = fallback.read(path)

        assert record.operation_type == OperationType.FEE_CLAIM
        assert record.pool_address == POOL_A
        assert record.created_at == datetime(2024, 5, 1, tzinfo=timezone.utc)

    def test_read_rejects_non_object(self, tmp_path):
        path = tmp_path / "1-burn.json"
        path.write_text("[1, 2]")

        with pytest.raises(InvalidPayloadError):
            LocalFallbackStore(tmp_path).read(path)

    def test_delete_is_idempotent(self, tmp_path):
        fallback = LocalFallbackStore(tmp_path)
        path = fallback.write_record(make_record())

        fallback.delete(path)
        fallback.delete(path)

        assert fallback.count() == 0


class TestStoreRetrySink:
    @pytest.mark.asyncio
    async def test_write_inserts_item_with_default_limit(self, store):
        sink = StoreRetrySink(store)

        await sink.write(make_record(), 4)

        items = await store.get_retry_items()
        assert len(items) == 1
        assert items[0].max_retries == 4
        assert items[0].created_at == datetime(2024, 5, 1, tzinfo=timezone.utc)
