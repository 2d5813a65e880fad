"""
GasWatch Database Module
========================

SQLite Record Store for per-block gas prices.
Uses aiosqlite for async operations.

One row per block height.  All mutations run inside a transaction under a
single asyncio lock so that a batch flush, a backfill insert and a
retention sweep never interleave, and a concurrent read sees either the
state before or after a batch, never part of one.
"""

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

import aiosqlite

from .errors import PersistenceFailure, StartupFailure
from .models import RECORD_COLUMNS, BlockRecord

logger = logging.getLogger('gaswatch.database')

_COLUMN_LIST = ", ".join(RECORD_COLUMNS)
_PLACEHOLDERS = ", ".join("?" for _ in RECORD_COLUMNS)

# Field-level merge: provided non-null prices overwrite, observed_at keeps
# the first stored value.
_UPSERT_SQL = f"""
    INSERT INTO gas_prices ({_COLUMN_LIST})
    VALUES ({_PLACEHOLDERS})
    ON CONFLICT(height) DO UPDATE SET
        observed_at   = COALESCE(gas_prices.observed_at, excluded.observed_at),
        base_fee      = COALESCE(excluded.base_fee, gas_prices.base_fee),
        confidence_50 = COALESCE(excluded.confidence_50, gas_prices.confidence_50),
        confidence_70 = COALESCE(excluded.confidence_70, gas_prices.confidence_70),
        confidence_90 = COALESCE(excluded.confidence_90, gas_prices.confidence_90),
        confidence_99 = COALESCE(excluded.confidence_99, gas_prices.confidence_99),
        actual_price  = COALESCE(excluded.actual_price, gas_prices.actual_price)
"""

_PLACEHOLDER_SQL = """
    INSERT OR IGNORE INTO gas_prices (height, observed_at)
    VALUES (?, ?)
"""


class RecordStore:
    """
    Async SQLite store for :class:`BlockRecord` rows.

    Handles:
    - Batched field-level upserts from the Write-Back Batcher
    - Insert-if-absent placeholders from the backfiller
    - Time-ranged scans for the query path
    - Retention deletes and VACUUM
    """

    def __init__(self, db_path: str):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ``:memory:``
        """
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._tx_lock = asyncio.Lock()

    async def connect(self) -> None:
        """
        Open the connection and create the schema.

        Raises:
            StartupFailure: if the database cannot be opened or initialised
        """
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection = await aiosqlite.connect(str(self.db_path))
            self._connection.row_factory = aiosqlite.Row
            await self._create_tables()
            # Enable WAL mode for long-running app
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=NORMAL")
        except (sqlite3.Error, OSError) as exc:
            await self.close()
            raise StartupFailure(f"Cannot open record store {self.db_path}: {exc}") from exc
        logger.info(f"Database connected: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")

    @property
    def connected(self) -> bool:
        return self._connection is not None

    async def _create_tables(self) -> None:
        """Create the gas_prices table and its indexes if they don't exist."""
        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS gas_prices (
                height INTEGER PRIMARY KEY,
                observed_at TEXT NOT NULL,
                base_fee REAL,
                confidence_50 REAL,
                confidence_70 REAL,
                confidence_90 REAL,
                confidence_99 REAL,
                actual_price REAL
            )
        """)
        await self._connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_gas_prices_observed_at ON gas_prices(observed_at)"
        )
        await self._connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_gas_prices_height ON gas_prices(height)"
        )
        await self._connection.commit()

    def _require_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise PersistenceFailure("Record store is not connected")
        return self._connection

    # =========================================================================
    # Write Operations
    # =========================================================================

    async def _run_transaction(self, sql: str, params_list: List[tuple]) -> int:
        """Execute ``sql`` for every parameter set in one transaction.

        Returns the number of rows changed.  Rolls back and raises
        :class:`PersistenceFailure` on any database error.
        """
        conn = self._require_connection()
        async with self._tx_lock:
            before = conn.total_changes
            try:
                await conn.executemany(sql, params_list)
                await conn.commit()
            except sqlite3.Error as exc:
                await conn.rollback()
                raise PersistenceFailure(f"Transaction failed: {exc}") from exc
            return conn.total_changes - before

    async def upsert_records(self, records: Iterable[BlockRecord]) -> int:
        """
        Upsert a batch of (partial) records as a single transaction.

        A new height is created with whichever fields are known; an existing
        row only has the provided non-null fields overwritten.

        Rows without ``observed_at`` cannot be created and are rejected
        before the transaction starts.

        Returns:
            Number of rows inserted or updated
        """
        rows = [record.to_row() for record in records]
        if not rows:
            return 0
        missing = [row[0] for row in rows if row[1] is None]
        if missing:
            raise PersistenceFailure(f"Records without observed_at: {missing[:5]}")
        return await self._run_transaction(_UPSERT_SQL, rows)

    async def insert_placeholders(self, records: Iterable[BlockRecord]) -> int:
        """
        Insert timestamp-only rows for heights that have no row yet.

        Existing rows are never touched.

        Returns:
            Number of rows actually inserted
        """
        rows = [(record.height, record.observed_at) for record in records]
        if not rows:
            return 0
        return await self._run_transaction(_PLACEHOLDER_SQL, rows)

    async def delete_older_than(self, cutoff: str) -> int:
        """Delete all rows observed strictly before ``cutoff`` (canonical ISO)."""
        conn = self._require_connection()
        async with self._tx_lock:
            try:
                cursor = await conn.execute(
                    "DELETE FROM gas_prices WHERE observed_at < ?", (cutoff,)
                )
                deleted = cursor.rowcount
                await conn.commit()
            except sqlite3.Error as exc:
                await conn.rollback()
                raise PersistenceFailure(f"Retention delete failed: {exc}") from exc
        return max(deleted, 0)

    async def vacuum(self) -> None:
        """Optimize database by reclaiming space."""
        conn = self._require_connection()
        async with self._tx_lock:
            await conn.execute("VACUUM")
        logger.info("Database vacuumed")

    # =========================================================================
    # Read Operations
    # =========================================================================

    async def fetch_since(self, cutoff: str) -> List[BlockRecord]:
        """All rows observed at or after ``cutoff``, ascending by height."""
        conn = self._require_connection()
        cursor = await conn.execute(
            f"SELECT {_COLUMN_LIST} FROM gas_prices WHERE observed_at >= ? ORDER BY height ASC",
            (cutoff,),
        )
        rows = await cursor.fetchall()
        return [BlockRecord.from_row(row) for row in rows]

    async def get_record(self, height: int) -> Optional[BlockRecord]:
        """Point lookup by height."""
        conn = self._require_connection()
        cursor = await conn.execute(
            f"SELECT {_COLUMN_LIST} FROM gas_prices WHERE height = ?", (height,)
        )
        row = await cursor.fetchone()
        return BlockRecord.from_row(row) if row else None

    async def existing_heights(self, low: int, high: int) -> Set[int]:
        """Heights in ``[low, high]`` that already have a row."""
        conn = self._require_connection()
        cursor = await conn.execute(
            "SELECT height FROM gas_prices WHERE height BETWEEN ? AND ?",
            (low, high),
        )
        return {row[0] for row in await cursor.fetchall()}

    async def count(self) -> int:
        conn = self._require_connection()
        cursor = await conn.execute("SELECT COUNT(*) FROM gas_prices")
        return (await cursor.fetchone())[0]

    async def get_db_stats(self) -> Dict[str, Any]:
        """Row count and height span, for the status endpoint."""
        conn = self._require_connection()
        cursor = await conn.execute(
            "SELECT COUNT(*), MIN(height), MAX(height), MIN(observed_at), MAX(observed_at) "
            "FROM gas_prices"
        )
        total, low, high, oldest, newest = await cursor.fetchone()
        return {
            'rows': total,
            'min_height': low,
            'max_height': high,
            'oldest_observed_at': oldest,
            'newest_observed_at': newest,
        }
