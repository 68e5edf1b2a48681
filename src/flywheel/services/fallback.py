"""Two-tier write path for retry requests.

The primary backend is the state store. When it cannot be written, the
retry queue parks the request as a JSON file under the fallback directory
(``<epoch-ms>-<operation_type>.json``) and re-submits it on the next drain.
"""

import json
import os
import time
from pathlib import Path
from datetime import datetime
from typing import Optional, Protocol

import structlog

from flywheel.core.retry import InvalidPayloadError
from flywheel.domain.retry_queue import FallbackRecord, clamp_max_retries
from flywheel.services.state_store import StateStore

log = structlog.get_logger()


class RetrySink(Protocol):
    """A place a retry request can be durably written to."""

    backend: str

    async def write(self, record: FallbackRecord, max_retries: int, now: Optional[datetime] = None) -> None:
        ...


class StoreRetrySink:
    """Primary backend: a row in the retry_queue table."""

    backend = "store"

    def __init__(self, store: StateStore) -> None:
        self._store = store

    async def write(self, record: FallbackRecord, max_retries: int, now: Optional[datetime] = None) -> None:
        limit = record.max_retries if record.max_retries is not None else max_retries
        await self._store.insert_retry_item(
            operation_type=record.operation_type,
            pool_address=record.pool_address,
            payload=record.payload,
            max_retries=clamp_max_retries(limit),
            created_at=record.created_at,
            now=now,
        )


class LocalFallbackStore:
    """Secondary backend: one JSON file per retry request.

    Files are created exclusively so two writes in the same millisecond do
    not overwrite each other; the timestamp is bumped until a free name is
    found.
    """

    backend = "fallback"

    def __init__(self, directory: str | Path = "data/retry-fallback") -> None:
        self._dir = Path(directory)
        self._log = log.bind(component="retry_fallback")

    @property
    def directory(self) -> Path:
        return self._dir

    async def write(self, record: FallbackRecord, max_retries: int, now: Optional[datetime] = None) -> None:
        self.write_record(record, max_retries)

    def write_record(self, record: FallbackRecord, max_retries: Optional[int] = None) -> Path:
        """Write one record and return its path."""
        if record.max_retries is None and max_retries is not None:
            record.max_retries = max_retries
        self._dir.mkdir(parents=True, exist_ok=True)
        body = json.dumps(record.to_dict(), indent=2)

        stamp = int(time.time() * 1000)
        while True:
            path = self._dir / f"{stamp}-{record.operation_type.value}.json"
            try:
                with open(path, "x", encoding="utf-8") as f:
                    f.write(body)
                return path
            except FileExistsError:
                stamp += 1

    def list_files(self) -> list[Path]:
        """Pending fallback files, oldest first. Missing directory means none."""
        if not self._dir.is_dir():
            return []
        files = [p for p in self._dir.iterdir() if p.is_file() and p.suffix == ".json"]
        return sorted(files, key=_file_sort_key)

    def read(self, path: Path) -> FallbackRecord:
        """Parse one file.

        Raises:
            OSError: If the file cannot be read.
            ValueError: If the content is not JSON.
            InvalidPayloadError: If the JSON is not a valid record.
        """
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise InvalidPayloadError(f"{path.name} does not contain a JSON object")
        return FallbackRecord.from_dict(data)

    def delete(self, path: Path) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass

    def count(self) -> int:
        return len(self.list_files())


def _file_sort_key(path: Path) -> tuple[int, str]:
    # Foreign names sort last
    prefix = path.name.split("-", 1)[0]
    try:
        return int(prefix), path.name
    except ValueError:
        return 2**63, path.name
