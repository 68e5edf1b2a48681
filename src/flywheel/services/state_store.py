"""State Store Service - Async SQLite persistence layer.

This service:
- Persists tracked pools and their running totals
- Records fee claims, buybacks and burns
- Keeps the append-only operation log
- Owns the durable retry queue table
"""

import asyncio
import json
import time
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import aiosqlite
import structlog

from flywheel.core.clock import format_timestamp, parse_timestamp, utcnow
from flywheel.core.config import ConfigManager
from flywheel.core.retry import StoreUnavailableError, ValidationError
from flywheel.domain.operations import FeeType, LogOperationType, LogStatus, OperationLog, OperationType
from flywheel.domain.pool import Pool, PoolStatus, RegisterPoolParams
from flywheel.domain.retry_queue import (
    DEFAULT_MAX_RETRIES,
    MIN_MAX_RETRIES,
    RetryQueueItem,
    RetryQueueStats,
    RetryStatus,
)

log = structlog.get_logger()

SCHEMA_VERSION = 2

SCHEMA_SQL = """
-- Tracked pools
CREATE TABLE IF NOT EXISTS pools (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pool_address TEXT NOT NULL UNIQUE,
    base_mint TEXT NOT NULL,
    quote_mint TEXT NOT NULL,
    config_key TEXT,
    creator TEXT,
    name TEXT,
    symbol TEXT,
    is_migrated INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK (status IN ('active', 'inactive', 'migrated')),
    price_usd REAL,
    marketcap_usd REAL,
    marketcap_updated_at TEXT,
    total_fees_collected_sol REAL NOT NULL DEFAULT 0,
    total_tokens_bought REAL NOT NULL DEFAULT 0,
    total_tokens_burned REAL NOT NULL DEFAULT 0,
    last_fee_claim_at TEXT,
    last_buyback_at TEXT,
    last_burn_at TEXT,
    discovery_source TEXT NOT NULL DEFAULT 'manual',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Fee claims
CREATE TABLE IF NOT EXISTS fee_claims (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pool_address TEXT NOT NULL,
    amount_sol REAL NOT NULL,
    token_amount REAL NOT NULL DEFAULT 0,
    fee_type TEXT NOT NULL DEFAULT 'partner' CHECK (fee_type IN ('partner', 'lp')),
    tx_signature TEXT,
    created_at TEXT NOT NULL
);

-- Buybacks
CREATE TABLE IF NOT EXISTS buybacks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pool_address TEXT NOT NULL,
    sol_amount REAL NOT NULL,
    tokens_received REAL NOT NULL DEFAULT 0,
    tx_signature TEXT,
    created_at TEXT NOT NULL
);

-- Burns
CREATE TABLE IF NOT EXISTS burns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pool_address TEXT NOT NULL,
    amount REAL NOT NULL,
    tx_signature TEXT,
    buyback_id INTEGER REFERENCES buybacks(id),
    created_at TEXT NOT NULL
);

-- Append-only operation log
CREATE TABLE IF NOT EXISTS operation_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operation_type TEXT NOT NULL
        CHECK (operation_type IN ('fee_claim', 'buyback', 'burn', 'register',
                                  'discovery', 'marketcap', 'error')),
    pool_address TEXT,
    status TEXT NOT NULL CHECK (status IN ('started', 'completed', 'failed')),
    details TEXT,
    error_message TEXT,
    tx_signature TEXT,
    created_at TEXT NOT NULL
);

-- Durable retry queue
CREATE TABLE IF NOT EXISTS retry_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operation_type TEXT NOT NULL
        CHECK (operation_type IN ('fee_claim', 'buyback', 'burn', 'register')),
    pool_address TEXT,
    payload TEXT NOT NULL DEFAULT '{}',
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 5,
    last_error TEXT,
    last_attempt_at TEXT,
    next_retry_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_pools_status ON pools(status);
CREATE INDEX IF NOT EXISTS idx_fee_claims_pool ON fee_claims(pool_address);
CREATE INDEX IF NOT EXISTS idx_buybacks_pool ON buybacks(pool_address);
CREATE INDEX IF NOT EXISTS idx_burns_pool ON burns(pool_address);
CREATE INDEX IF NOT EXISTS idx_operation_logs_type ON operation_logs(operation_type, created_at);
CREATE INDEX IF NOT EXISTS idx_retry_queue_due ON retry_queue(status, next_retry_at);
CREATE INDEX IF NOT EXISTS idx_retry_queue_updated ON retry_queue(status, updated_at);

-- Schema version
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);
INSERT OR IGNORE INTO schema_version (version) VALUES (2);
"""

# Columns added after version 1; CREATE TABLE IF NOT EXISTS leaves old tables alone
_ADDED_COLUMNS = (
    ("fee_claims", "token_amount", "REAL NOT NULL DEFAULT 0"),
    ("fee_claims", "fee_type", "TEXT NOT NULL DEFAULT 'partner'"),
)

_RETRY_COLUMNS = frozenset({
    "retry_count",
    "max_retries",
    "last_error",
    "last_attempt_at",
    "next_retry_at",
    "status",
    "payload",
    "updated_at",
})

_POOL_COLUMNS = frozenset({
    "config_key",
    "creator",
    "name",
    "symbol",
    "is_migrated",
    "status",
    "price_usd",
    "marketcap_usd",
    "marketcap_updated_at",
    "discovery_source",
})


def _to_db(value: Any) -> Any:
    """Convert a Python value to its SQLite column representation."""
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, dict):
        return json.dumps(value)
    return value


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


class ConnectionPool:
    """Single aiosqlite connection guarded by a lock.

    SQLite serializes writers anyway; WAL mode lets reads proceed while a
    write is in progress.
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._connected = False

    async def connect(self) -> None:
        async with self._lock:
            if self._connected:
                return

            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

            self._connection = await aiosqlite.connect(self._db_path)
            self._connection.row_factory = aiosqlite.Row

            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=NORMAL")
            await self._connection.execute("PRAGMA busy_timeout=5000")

            self._connected = True

    async def close(self) -> None:
        async with self._lock:
            if self._connection:
                await self._connection.close()
                self._connection = None
            self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def acquire(self) -> aiosqlite.Connection:
        """Return the shared connection.

        Raises:
            StoreUnavailableError: If the pool is not connected.
        """
        if not self._connected or not self._connection:
            raise StoreUnavailableError("State store not connected")
        return self._connection

    @property
    def lock(self) -> asyncio.Lock:
        """Lock held for the duration of each write transaction."""
        return self._lock


class StateStore:
    """SQLite-based persistence for pools, operations and the retry queue.

    Every public method raises StoreUnavailableError when the database is
    not connected or the driver reports an operational error, so callers
    can degrade (the retry queue falls back to local disk).
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        config: Optional[ConfigManager] = None,
    ):
        """Initialize the state store.

        Args:
            db_path: Direct path to database file (takes precedence).
            config: Configuration manager for default settings.
        """
        self._log = log.bind(component="state_store")

        if db_path:
            self._db_path = db_path
        elif config:
            self._db_path = config.get_str("database.path", "./data/flywheel.db")
        else:
            self._db_path = "./data/flywheel.db"

        self._pool = ConnectionPool(self._db_path)
        self._start_time: Optional[float] = None

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def is_connected(self) -> bool:
        return self._pool.is_connected

    async def connect(self) -> None:
        """Connect to database and apply the schema."""
        self._start_time = time.time()
        self._log.info("connecting_state_store", db_path=str(self._db_path))

        try:
            await self._pool.connect()
            conn = await self._pool.acquire()
            async with self._pool.lock:
                await conn.executescript(SCHEMA_SQL)
                await self._add_missing_columns(conn)
                await conn.commit()
        except aiosqlite.Error as e:
            raise StoreUnavailableError(f"Cannot open database {self._db_path}", cause=e)

        self._log.info("state_store_connected")

    async def _add_missing_columns(self, conn: aiosqlite.Connection) -> None:
        for table, column, definition in _ADDED_COLUMNS:
            async with conn.execute(f"PRAGMA table_info({table})") as cursor:
                existing = {row["name"] for row in await cursor.fetchall()}
            if column not in existing:
                await conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
                self._log.info("schema_column_added", table=table, column=column)

    async def close(self) -> None:
        await self._pool.close()
        self._log.info("state_store_closed")

    # ============ Low-level helpers ============

    async def _write(self, sql: str, params: Iterable[Any] = ()) -> aiosqlite.Cursor:
        conn = await self._pool.acquire()
        try:
            async with self._pool.lock:
                cursor = await conn.execute(sql, tuple(params))
                await conn.commit()
                return cursor
        except aiosqlite.IntegrityError as e:
            raise ValidationError(str(e), cause=e)
        except aiosqlite.Error as e:
            raise StoreUnavailableError("State store write failed", cause=e)

    async def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        conn = await self._pool.acquire()
        try:
            async with conn.execute(sql, tuple(params)) as cursor:
                return list(await cursor.fetchall())
        except aiosqlite.Error as e:
            raise StoreUnavailableError("State store read failed", cause=e)

    async def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[aiosqlite.Row]:
        rows = await self._fetchall(sql, params)
        return rows[0] if rows else None

    # ============ Retry Queue ============

    async def insert_retry_item(
        self,
        operation_type: OperationType,
        pool_address: Optional[str],
        payload: dict[str, Any],
        max_retries: int = DEFAULT_MAX_RETRIES,
        created_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> RetryQueueItem:
        """Insert a new pending retry item, eligible immediately.

        ``now`` stamps next_retry_at and updated_at; callers with their own
        clock pass it so the item is due on that clock.
        """
        if max_retries < MIN_MAX_RETRIES:
            raise ValueError(f"max_retries must be >= {MIN_MAX_RETRIES}, got {max_retries}")
        now = now or utcnow()
        created = created_at or now
        cursor = await self._write(
            """
            INSERT INTO retry_queue
            (operation_type, pool_address, payload, retry_count, max_retries,
             next_retry_at, status, created_at, updated_at)
            VALUES (?, ?, ?, 0, ?, ?, 'pending', ?, ?)
            """,
            (
                OperationType(operation_type).value,
                pool_address,
                json.dumps(payload),
                max_retries,
                format_timestamp(now),
                format_timestamp(created),
                format_timestamp(now),
            ),
        )
        item_id = cursor.lastrowid
        self._log.debug("retry_item_inserted", item_id=item_id, operation_type=OperationType(operation_type).value)
        return RetryQueueItem(
            id=item_id,
            operation_type=OperationType(operation_type),
            pool_address=pool_address,
            payload=dict(payload),
            max_retries=max_retries,
            next_retry_at=now,
            created_at=created,
            updated_at=now,
        )

    async def get_retry_item(self, item_id: int) -> Optional[RetryQueueItem]:
        row = await self._fetchone("SELECT * FROM retry_queue WHERE id = ?", (item_id,))
        if row is None:
            return None
        return self._row_to_retry_item(row)

    async def get_due_retry_items(self, now: Optional[datetime] = None, limit: int = 10) -> list[RetryQueueItem]:
        """Pending items whose next_retry_at has passed, oldest first."""
        cutoff = format_timestamp(now or utcnow())
        rows = await self._fetchall(
            """
            SELECT * FROM retry_queue
            WHERE status = 'pending' AND next_retry_at <= ?
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (cutoff, limit),
        )
        return [self._row_to_retry_item(row) for row in rows]

    async def get_retry_items(
        self,
        status: Optional[RetryStatus] = None,
        limit: int = 100,
    ) -> list[RetryQueueItem]:
        query = "SELECT * FROM retry_queue"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(RetryStatus(status).value)
        query += " ORDER BY created_at ASC, id ASC LIMIT ?"
        params.append(limit)
        rows = await self._fetchall(query, params)
        return [self._row_to_retry_item(row) for row in rows]

    async def update_retry_item(self, item_id: int, **fields: Any) -> bool:
        """Update selected columns of one retry item.

        ``updated_at`` is stamped automatically unless given explicitly.

        Returns:
            True if a row was updated.
        """
        unknown = set(fields) - _RETRY_COLUMNS
        if unknown:
            raise ValueError(f"Unknown retry_queue columns: {sorted(unknown)}")
        fields.setdefault("updated_at", utcnow())

        assignments = ", ".join(f"{column} = ?" for column in fields)
        params = [_to_db(value) for value in fields.values()]
        params.append(item_id)
        cursor = await self._write(f"UPDATE retry_queue SET {assignments} WHERE id = ?", params)
        return cursor.rowcount > 0

    async def claim_retry_item(self, item_id: int, now: Optional[datetime] = None) -> bool:
        """Move a pending item to processing.

        The status check and the update are one statement, so an item that
        is already terminal or claimed by another drain is left untouched.

        Returns:
            True if this call claimed the item.
        """
        stamp = format_timestamp(now or utcnow())
        cursor = await self._write(
            """
            UPDATE retry_queue
            SET status = 'processing', last_attempt_at = ?, updated_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (stamp, stamp, item_id),
        )
        return cursor.rowcount > 0

    async def release_stale_retry_items(self, cutoff: datetime, now: Optional[datetime] = None) -> int:
        """Return items stuck in processing since before ``cutoff`` to pending.

        retry_count is not touched: the interrupted attempt never reported
        an outcome. Items are due again immediately.
        """
        stamp = format_timestamp(now or utcnow())
        cursor = await self._write(
            """
            UPDATE retry_queue
            SET status = 'pending', next_retry_at = MAX(next_retry_at, ?), updated_at = ?
            WHERE status = 'processing'
              AND (last_attempt_at IS NULL OR last_attempt_at < ?)
            """,
            (stamp, stamp, format_timestamp(cutoff)),
        )
        return max(cursor.rowcount, 0)

    async def delete_finished_retry_items(self, cutoff: datetime) -> int:
        """Delete completed/failed items last updated before ``cutoff``."""
        cursor = await self._write(
            """
            DELETE FROM retry_queue
            WHERE status IN ('completed', 'failed') AND updated_at < ?
            """,
            (format_timestamp(cutoff),),
        )
        return max(cursor.rowcount, 0)

    async def get_retry_queue_stats(self) -> RetryQueueStats:
        rows = await self._fetchall("SELECT status, COUNT(*) AS n FROM retry_queue GROUP BY status")
        stats = RetryQueueStats()
        for row in rows:
            setattr(stats, row["status"], row["n"])
        return stats

    def _row_to_retry_item(self, row: aiosqlite.Row) -> RetryQueueItem:
        try:
            payload = json.loads(row["payload"]) if row["payload"] else {}
        except json.JSONDecodeError:
            payload = {"_raw": row["payload"]}
        return RetryQueueItem(
            id=row["id"],
            operation_type=OperationType(row["operation_type"]),
            pool_address=row["pool_address"],
            payload=payload,
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            last_error=row["last_error"],
            last_attempt_at=parse_timestamp(row["last_attempt_at"]),
            next_retry_at=parse_timestamp(row["next_retry_at"]),
            status=RetryStatus(row["status"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    # ============ Pools ============

    async def insert_pool(self, params: RegisterPoolParams) -> Pool:
        """Insert a new pool row.

        Raises:
            ValidationError: If the pool address is already tracked.
        """
        now = utcnow()
        status = PoolStatus.MIGRATED if params.is_migrated else PoolStatus.ACTIVE
        cursor = await self._write(
            """
            INSERT INTO pools
            (pool_address, base_mint, quote_mint, config_key, creator, name, symbol,
             is_migrated, status, discovery_source, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                params.pool_address,
                params.base_mint,
                params.quote_mint,
                params.config_key,
                params.creator,
                params.name,
                params.symbol,
                int(params.is_migrated),
                status.value,
                params.discovery_source,
                format_timestamp(now),
                format_timestamp(now),
            ),
        )
        self._log.info("pool_inserted", pool_address=params.pool_address, symbol=params.symbol)
        return Pool(
            id=cursor.lastrowid,
            pool_address=params.pool_address,
            base_mint=params.base_mint,
            quote_mint=params.quote_mint,
            config_key=params.config_key,
            creator=params.creator,
            name=params.name,
            symbol=params.symbol,
            is_migrated=params.is_migrated,
            status=status,
            discovery_source=params.discovery_source,
            created_at=now,
            updated_at=now,
        )

    async def get_pool_by_address(self, pool_address: str) -> Optional[Pool]:
        row = await self._fetchone("SELECT * FROM pools WHERE pool_address = ?", (pool_address,))
        if row is None:
            return None
        return self._row_to_pool(row)

    async def get_pools(self, statuses: Optional[Iterable[PoolStatus]] = None) -> list[Pool]:
        query = "SELECT * FROM pools"
        params: list[Any] = []
        if statuses is not None:
            values = [PoolStatus(s).value for s in statuses]
            if not values:
                return []
            query += f" WHERE status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY created_at ASC, id ASC"
        rows = await self._fetchall(query, params)
        return [self._row_to_pool(row) for row in rows]

    async def get_migrated_pools(self) -> list[Pool]:
        rows = await self._fetchall(
            """
            SELECT * FROM pools
            WHERE is_migrated = 1 AND status != 'inactive'
            ORDER BY created_at ASC, id ASC
            """
        )
        return [self._row_to_pool(row) for row in rows]

    async def update_pool(self, pool_address: str, **fields: Any) -> bool:
        unknown = set(fields) - _POOL_COLUMNS
        if unknown:
            raise ValueError(f"Unknown pools columns: {sorted(unknown)}")
        fields["updated_at"] = utcnow()
        assignments = ", ".join(f"{column} = ?" for column in fields)
        params = [_to_db(value) for value in fields.values()]
        params.append(pool_address)
        cursor = await self._write(f"UPDATE pools SET {assignments} WHERE pool_address = ?", params)
        return cursor.rowcount > 0

    def _row_to_pool(self, row: aiosqlite.Row) -> Pool:
        return Pool(
            id=row["id"],
            pool_address=row["pool_address"],
            base_mint=row["base_mint"],
            quote_mint=row["quote_mint"],
            config_key=row["config_key"],
            creator=row["creator"],
            name=row["name"],
            symbol=row["symbol"],
            is_migrated=bool(row["is_migrated"]),
            status=PoolStatus(row["status"]),
            price_usd=_decimal(row["price_usd"]),
            marketcap_usd=_decimal(row["marketcap_usd"]),
            marketcap_updated_at=parse_timestamp(row["marketcap_updated_at"]),
            total_fees_collected_sol=_decimal(row["total_fees_collected_sol"]) or Decimal("0"),
            total_tokens_bought=_decimal(row["total_tokens_bought"]) or Decimal("0"),
            total_tokens_burned=_decimal(row["total_tokens_burned"]) or Decimal("0"),
            last_fee_claim_at=parse_timestamp(row["last_fee_claim_at"]),
            last_buyback_at=parse_timestamp(row["last_buyback_at"]),
            last_burn_at=parse_timestamp(row["last_burn_at"]),
            discovery_source=row["discovery_source"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    # ============ Operation records ============

    async def _record(
        self,
        insert_sql: str,
        insert_params: tuple[Any, ...],
        pool_sql: str,
        pool_params: tuple[Any, ...],
    ) -> int:
        """Insert a domain record and bump the pool totals in one transaction."""
        conn = await self._pool.acquire()
        async with self._pool.lock:
            try:
                cursor = await conn.execute(insert_sql, insert_params)
                await conn.execute(pool_sql, pool_params)
                await conn.commit()
                return cursor.lastrowid
            except aiosqlite.Error as e:
                await conn.rollback()
                raise StoreUnavailableError("State store write failed", cause=e)

    async def record_fee_claim(
        self,
        pool_address: str,
        amount_sol: Decimal,
        tx_signature: Optional[str] = None,
        fee_type: FeeType = FeeType.PARTNER,
        token_amount: Decimal = Decimal("0"),
    ) -> int:
        """Record a claim; only the SOL side counts toward pool fee totals."""
        now = format_timestamp(utcnow())
        return await self._record(
            """
            INSERT INTO fee_claims (pool_address, amount_sol, token_amount, fee_type, tx_signature, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (pool_address, float(amount_sol), float(token_amount), FeeType(fee_type).value, tx_signature, now),
            """
            UPDATE pools
            SET total_fees_collected_sol = total_fees_collected_sol + ?,
                last_fee_claim_at = ?, updated_at = ?
            WHERE pool_address = ?
            """,
            (float(amount_sol), now, now, pool_address),
        )

    async def record_buyback(
        self,
        pool_address: str,
        sol_amount: Decimal,
        tokens_received: Decimal,
        tx_signature: Optional[str] = None,
    ) -> int:
        now = format_timestamp(utcnow())
        return await self._record(
            """
            INSERT INTO buybacks (pool_address, sol_amount, tokens_received, tx_signature, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (pool_address, float(sol_amount), float(tokens_received), tx_signature, now),
            """
            UPDATE pools
            SET total_tokens_bought = total_tokens_bought + ?,
                last_buyback_at = ?, updated_at = ?
            WHERE pool_address = ?
            """,
            (float(tokens_received), now, now, pool_address),
        )

    async def record_burn(
        self,
        pool_address: str,
        amount: Decimal,
        tx_signature: Optional[str] = None,
        buyback_id: Optional[int] = None,
    ) -> int:
        now = format_timestamp(utcnow())
        return await self._record(
            """
            INSERT INTO burns (pool_address, amount, tx_signature, buyback_id, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (pool_address, float(amount), tx_signature, buyback_id, now),
            """
            UPDATE pools
            SET total_tokens_burned = total_tokens_burned + ?,
                last_burn_at = ?, updated_at = ?
            WHERE pool_address = ?
            """,
            (float(amount), now, now, pool_address),
        )

    async def count_records(self, table: str, pool_address: Optional[str] = None) -> int:
        """Row count for one of the domain record tables."""
        if table not in ("fee_claims", "buybacks", "burns"):
            raise ValueError(f"Unknown record table: {table}")
        query = f"SELECT COUNT(*) AS n FROM {table}"
        params: list[Any] = []
        if pool_address:
            query += " WHERE pool_address = ?"
            params.append(pool_address)
        row = await self._fetchone(query, params)
        return row["n"] if row else 0

    async def get_fee_claim_totals(self, pool_address: Optional[str] = None) -> dict[FeeType, Decimal]:
        """Claimed SOL per fee source."""
        query = "SELECT fee_type, SUM(amount_sol) AS total FROM fee_claims"
        params: list[Any] = []
        if pool_address:
            query += " WHERE pool_address = ?"
            params.append(pool_address)
        query += " GROUP BY fee_type"
        rows = await self._fetchall(query, params)
        return {FeeType(row["fee_type"]): Decimal(str(row["total"] or 0)) for row in rows}

    # ============ Operation log ============

    async def append_operation_log(
        self,
        operation_type: LogOperationType,
        status: LogStatus,
        pool_address: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
        tx_signature: Optional[str] = None,
    ) -> int:
        cursor = await self._write(
            """
            INSERT INTO operation_logs
            (operation_type, pool_address, status, details, error_message, tx_signature, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                LogOperationType(operation_type).value,
                pool_address,
                LogStatus(status).value,
                json.dumps(details, default=str) if details else None,
                error_message,
                tx_signature,
                format_timestamp(utcnow()),
            ),
        )
        return cursor.lastrowid

    async def log_operation(
        self,
        operation_type: LogOperationType,
        status: LogStatus,
        pool_address: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
        tx_signature: Optional[str] = None,
    ) -> Optional[int]:
        """Best-effort audit entry; a store outage is logged, not raised."""
        try:
            return await self.append_operation_log(
                operation_type,
                status,
                pool_address=pool_address,
                details=details,
                error_message=error_message,
                tx_signature=tx_signature,
            )
        except (StoreUnavailableError, ValidationError) as e:
            self._log.warning(
                "operation_log_write_failed",
                operation_type=getattr(operation_type, "value", operation_type),
                status=getattr(status, "value", status),
                error=str(e),
            )
            return None

    async def get_operation_logs(
        self,
        limit: int = 100,
        operation_type: Optional[LogOperationType] = None,
        status: Optional[LogStatus] = None,
        pool_address: Optional[str] = None,
    ) -> list[OperationLog]:
        """Most recent log entries first."""
        query = "SELECT * FROM operation_logs WHERE 1=1"
        params: list[Any] = []

        if operation_type:
            query += " AND operation_type = ?"
            params.append(LogOperationType(operation_type).value)

        if status:
            query += " AND status = ?"
            params.append(LogStatus(status).value)

        if pool_address:
            query += " AND pool_address = ?"
            params.append(pool_address)

        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        rows = await self._fetchall(query, params)
        return [
            OperationLog(
                id=row["id"],
                operation_type=LogOperationType(row["operation_type"]),
                status=LogStatus(row["status"]),
                pool_address=row["pool_address"],
                details=json.loads(row["details"]) if row["details"] else {},
                error_message=row["error_message"],
                tx_signature=row["tx_signature"],
                created_at=parse_timestamp(row["created_at"]),
            )
            for row in rows
        ]

    # ============ Health Check ============

    async def health_check(self) -> dict[str, Any]:
        """Check database health."""
        if not self.is_connected:
            return {
                "status": "unhealthy",
                "message": "Database not connected",
            }

        try:
            await self._fetchone("SELECT 1")
            return {
                "status": "healthy",
                "message": "Database connected",
                "db_path": self._db_path,
            }
        except StoreUnavailableError as e:
            return {
                "status": "unhealthy",
                "message": f"Database error: {e}",
            }
