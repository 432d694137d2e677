"""SQLite-backed event storage for hearthcal."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Optional, Union

import aiosqlite
from pydantic import ValidationError

from hearthcal.calendar.models import EventRow, Household
from hearthcal.calendar.protocols import BackfillCheckpoint, RawEventRow, RowUpdate
from hearthcal.core.timezone_utils import now_utc_ms, sanitize_tz

logger = logging.getLogger(__name__)

CHECKPOINT_TABLE = "events_backfill_checkpoint"
BUSY_RETRY_MAX_ATTEMPTS = 5
BUSY_RETRY_BASE_DELAY_MS = 150

# Columns the normalizer is allowed to rewrite
WRITABLE_COLUMNS = frozenset(
    {"start_at", "end_at", "tz", "exdates", "start_at_utc", "end_at_utc"}
)

EVENT_COLUMNS = (
    "id",
    "household_id",
    "title",
    "start_at",
    "end_at",
    "tz",
    "rrule",
    "exdates",
    "start_at_utc",
    "end_at_utc",
    "reminder",
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS household (
        id TEXT PRIMARY KEY,
        name TEXT,
        tz TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        id TEXT PRIMARY KEY,
        household_id TEXT NOT NULL REFERENCES household(id),
        title TEXT,
        start_at INTEGER,
        end_at INTEGER,
        tz TEXT,
        rrule TEXT,
        exdates TEXT,
        start_at_utc INTEGER,
        end_at_utc INTEGER,
        reminder INTEGER,
        deleted_at INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_household_start ON events(household_id, start_at_utc)",
    f"""
    CREATE TABLE IF NOT EXISTS {CHECKPOINT_TABLE} (
        household_id TEXT PRIMARY KEY,
        last_rowid INTEGER NOT NULL DEFAULT 0,
        processed INTEGER NOT NULL DEFAULT 0,
        updated INTEGER NOT NULL DEFAULT 0,
        skipped INTEGER NOT NULL DEFAULT 0,
        total INTEGER NOT NULL DEFAULT 0,
        updated_at INTEGER NOT NULL DEFAULT 0
    )
    """,
)


def is_sqlite_locked(error: BaseException) -> bool:
    """True for SQLITE_BUSY/SQLITE_LOCKED style errors."""
    if not isinstance(error, sqlite3.OperationalError):
        return False
    message = str(error).lower()
    return "database is locked" in message or "database table is locked" in message or "busy" in message


class SQLiteEventStore:
    """Event repository on a SQLite file.

    Each operation opens its own connection. Batches written by the backfill
    use an explicit ``BEGIN IMMEDIATE`` transaction, retried with linear
    backoff while another writer holds the lock.
    """

    def __init__(self, database_path: Union[Path, str]):
        """Initialize the store.

        Args:
            database_path: Path to the SQLite database file
        """
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False
        self._initialization_lock: Optional[asyncio.Lock] = None

        logger.debug("Event store configured (lazy): %s", self.database_path)

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(str(self.database_path), isolation_level=None)

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        if self._initialization_lock is None:
            self._initialization_lock = asyncio.Lock()
        async with self._initialization_lock:
            if self._initialized:
                return
            async with self._connect() as db:
                # WAL keeps readers unblocked while a backfill batch commits
                await db.execute("PRAGMA journal_mode=WAL")
                await db.execute("PRAGMA synchronous=NORMAL")
                for statement in _SCHEMA:
                    await db.execute(statement)
            self._initialized = True
            logger.debug("Event store schema ready: %s", self.database_path)

    async def initialize(self) -> None:
        """Create the schema if needed."""
        await self._ensure_initialized()

    async def _begin_with_retry(self, db: aiosqlite.Connection, scope: str) -> None:
        attempt = 0
        while True:
            try:
                await db.execute("BEGIN IMMEDIATE")
                return
            except sqlite3.OperationalError as e:
                if not is_sqlite_locked(e) or attempt >= BUSY_RETRY_MAX_ATTEMPTS:
                    raise
                attempt += 1
                wait_ms = BUSY_RETRY_BASE_DELAY_MS * attempt
                logger.warning(
                    "Database is locked (scope=%s); retrying in %d ms (attempt %d/%d)",
                    scope,
                    wait_ms,
                    attempt,
                    BUSY_RETRY_MAX_ATTEMPTS,
                )
                await asyncio.sleep(wait_ms / 1000)

    # Households

    async def upsert_household(self, household: Household) -> None:
        await self._ensure_initialized()
        async with self._connect() as db:
            await db.execute(
                "INSERT INTO household (id, name, tz) VALUES (?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET name=excluded.name, tz=excluded.tz",
                (household.id, household.name, household.tz),
            )

    async def get_household_tz(self, household_id: str) -> Optional[str]:
        await self._ensure_initialized()
        async with self._connect() as db:
            cursor = await db.execute("SELECT tz FROM household WHERE id = ?", (household_id,))
            row = await cursor.fetchone()
        return sanitize_tz(row[0]) if row else None

    async def list_household_tzs(self) -> dict[str, Optional[str]]:
        await self._ensure_initialized()
        async with self._connect() as db:
            cursor = await db.execute("SELECT id, tz FROM household ORDER BY id")
            rows = await cursor.fetchall()
        return {row[0]: sanitize_tz(row[1]) for row in rows}

    # Events

    async def insert_event(self, event: Union[EventRow, RawEventRow]) -> None:
        """Insert an event; raw mappings are stored verbatim (legacy fixtures)."""
        await self._ensure_initialized()
        data = event.model_dump() if isinstance(event, EventRow) else dict(event)
        columns = [column for column in EVENT_COLUMNS if column in data]
        if "deleted_at" in data:
            columns.append("deleted_at")
        placeholders = ", ".join("?" for _ in columns)
        async with self._connect() as db:
            await db.execute(
                f"INSERT INTO events ({', '.join(columns)}) VALUES ({placeholders})",
                tuple(data[column] for column in columns),
            )

    async def list_events(self, household_id: str) -> list[EventRow]:
        """Return the canonical, non-deleted events of a household.

        Rows that still hold legacy encodings cannot be represented as
        ``EventRow`` and are left out with a warning until the backfill has
        normalized them.
        """
        await self._ensure_initialized()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                f"SELECT {', '.join(EVENT_COLUMNS)} FROM events "
                "WHERE household_id = ? AND deleted_at IS NULL ORDER BY rowid",
                (household_id,),
            )
            rows = await cursor.fetchall()

        events: list[EventRow] = []
        for row in rows:
            try:
                events.append(EventRow.model_validate(dict(row), strict=True))
            except ValidationError as e:
                logger.warning(
                    "Event %s in household %s is not canonical yet (%d field error(s))",
                    row["id"],
                    household_id,
                    e.error_count(),
                )
        return events

    async def get_raw_event(self, event_id: str) -> Optional[RawEventRow]:
        await self._ensure_initialized()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT rowid, * FROM events WHERE id = ?", (event_id,)
            )
            row = await cursor.fetchone()
        return dict(row) if row else None

    async def dump_events(self) -> list[RawEventRow]:
        """Every event row in rowid order, values as stored."""
        await self._ensure_initialized()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT rowid, * FROM events ORDER BY rowid")
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def count_rows(self, household_id: Optional[str] = None) -> int:
        await self._ensure_initialized()
        sql = "SELECT COUNT(*) FROM events WHERE deleted_at IS NULL"
        params: tuple[Any, ...] = ()
        if household_id is not None:
            sql += " AND household_id = ?"
            params = (household_id,)
        async with self._connect() as db:
            cursor = await db.execute(sql, params)
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def fetch_rows_after(
        self, after_rowid: int, limit: int, household_id: Optional[str] = None
    ) -> list[RawEventRow]:
        await self._ensure_initialized()
        sql = (
            f"SELECT e.rowid AS rowid, {', '.join('e.' + c for c in EVENT_COLUMNS)}, "
            "h.tz AS household_tz "
            "FROM events e LEFT JOIN household h ON h.id = e.household_id "
            "WHERE e.rowid > ? AND e.deleted_at IS NULL"
        )
        params: list[Any] = [after_rowid]
        if household_id is not None:
            sql += " AND e.household_id = ?"
            params.append(household_id)
        sql += " ORDER BY e.rowid LIMIT ?"
        params.append(limit)

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(sql, tuple(params))
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def apply_batch(
        self, updates: Sequence[RowUpdate], checkpoint: Optional[BackfillCheckpoint]
    ) -> None:
        """Write updates and the checkpoint atomically.

        Raises:
            ValueError: If an update touches a column outside ``WRITABLE_COLUMNS``
            sqlite3.OperationalError: If the lock is still held after all retries
        """
        for update in updates:
            illegal = set(update.changes) - WRITABLE_COLUMNS
            if illegal:
                raise ValueError(f"Refusing to write columns {sorted(illegal)} for {update.event_id}")

        await self._ensure_initialized()
        scope = checkpoint.scope if checkpoint is not None else "-"
        async with self._connect() as db:
            await self._begin_with_retry(db, scope)
            try:
                for update in updates:
                    if not update.changes:
                        continue
                    columns = sorted(update.changes)
                    assignments = ", ".join(f"{column} = ?" for column in columns)
                    await db.execute(
                        f"UPDATE events SET {assignments} WHERE id = ?",
                        (*(update.changes[column] for column in columns), update.event_id),
                    )
                if checkpoint is not None:
                    await db.execute(
                        f"""
                        INSERT INTO {CHECKPOINT_TABLE}
                            (household_id, last_rowid, processed, updated, skipped, total, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(household_id) DO UPDATE SET
                            last_rowid=excluded.last_rowid,
                            processed=excluded.processed,
                            updated=excluded.updated,
                            skipped=excluded.skipped,
                            total=excluded.total,
                            updated_at=excluded.updated_at
                        """,
                        (
                            checkpoint.scope,
                            checkpoint.last_rowid,
                            checkpoint.processed,
                            checkpoint.updated,
                            checkpoint.skipped,
                            checkpoint.total,
                            checkpoint.updated_at or now_utc_ms(),
                        ),
                    )
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise
        logger.debug("Committed batch of %d update(s) for scope %s", len(updates), scope)

    async def load_checkpoint(self, scope: str) -> Optional[BackfillCheckpoint]:
        await self._ensure_initialized()
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT last_rowid, processed, updated, skipped, total, updated_at "
                f"FROM {CHECKPOINT_TABLE} WHERE household_id = ?",
                (scope,),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return BackfillCheckpoint(
            scope=scope,
            last_rowid=row[0],
            processed=row[1],
            updated=row[2],
            skipped=row[3],
            total=row[4],
            updated_at=row[5],
        )

    async def reset_checkpoint(self, scope: str) -> None:
        await self._ensure_initialized()
        async with self._connect() as db:
            await db.execute(f"DELETE FROM {CHECKPOINT_TABLE} WHERE household_id = ?", (scope,))
        logger.info("Backfill checkpoint reset for scope %s", scope)
