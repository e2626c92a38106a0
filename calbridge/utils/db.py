"""Database utilities for calendar sync state, pending conflicts and run logs."""

import json
import logging
from datetime import datetime
from pathlib import Path

import aiosqlite

from calbridge.core.models import Calendar, Conflict
from calbridge.utils.datetime_utils import from_iso, to_iso, utcnow

logger = logging.getLogger(__name__)


def _row_to_calendar(row: aiosqlite.Row) -> Calendar:
    return Calendar(
        calendar_id=row["calendar_id"],
        account_id=row["account_id"],
        display_name=row["display_name"] or "",
        sync_token=row["sync_token"],
        last_sync_at=from_iso(row["last_sync_at"]),
        sync_enabled=bool(row["sync_enabled"]),
        read_only=bool(row["read_only"]),
        interval_minutes=row["interval_minutes"],
        scheduled=bool(row["scheduled"]),
    )


class CalendarsDB:
    """
    Manages SQLite database for per-calendar sync state.

    Each registered calendar carries its sync token and the timestamp of the
    last successful run. Conflicts that could not be applied automatically are
    kept in ``sync_conflicts`` until they are resolved.
    """

    def __init__(self, db_path: Path):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    async def initialize(self) -> None:
        """Initialize database schema if it doesn't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS calendars (
                    calendar_id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL DEFAULT 'default',
                    display_name TEXT,
                    sync_token TEXT,
                    last_sync_at TEXT,
                    sync_enabled INTEGER NOT NULL DEFAULT 1,
                    read_only INTEGER NOT NULL DEFAULT 0,
                    interval_minutes INTEGER,
                    scheduled INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_conflicts (
                    calendar_id TEXT NOT NULL,
                    uid TEXT NOT NULL,
                    conflict_type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    detected_at TEXT NOT NULL,
                    PRIMARY KEY (calendar_id, uid)
                )
                """
            )

            await db.commit()
            logger.debug(f"Sync state database initialized at {self.db_path}")

    async def register_calendar(self, calendar: Calendar) -> None:
        """
        Add a calendar or refresh its settings.

        Sync state (token, last sync time) of an existing row is left alone.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO calendars
                (calendar_id, account_id, display_name, sync_enabled, read_only, interval_minutes, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(calendar_id) DO UPDATE SET
                    account_id = excluded.account_id,
                    display_name = excluded.display_name,
                    sync_enabled = excluded.sync_enabled,
                    read_only = excluded.read_only,
                    interval_minutes = COALESCE(excluded.interval_minutes, calendars.interval_minutes)
                """,
                (
                    calendar.calendar_id,
                    calendar.account_id,
                    calendar.display_name,
                    int(calendar.sync_enabled),
                    int(calendar.read_only),
                    calendar.interval_minutes,
                    to_iso(utcnow()),
                ),
            )
            await db.commit()
            logger.debug(f"Registered calendar: {calendar.calendar_id}")

    async def get_calendar(self, calendar_id: str) -> Calendar | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM calendars WHERE calendar_id = ?", (calendar_id,)
            ) as cursor:
                row = await cursor.fetchone()
                return _row_to_calendar(row) if row else None

    async def find_calendar(self, name_or_id: str) -> Calendar | None:
        """Look a calendar up by collection URL or, failing that, display name."""
        calendar = await self.get_calendar(name_or_id)
        if calendar is not None:
            return calendar

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM calendars WHERE display_name = ? COLLATE NOCASE",
                (name_or_id,),
            ) as cursor:
                row = await cursor.fetchone()
                return _row_to_calendar(row) if row else None

    async def list_calendars(self, enabled_only: bool = False) -> list[Calendar]:
        query = "SELECT * FROM calendars"
        if enabled_only:
            query += " WHERE sync_enabled = 1"
        query += " ORDER BY display_name"

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query) as cursor:
                rows = await cursor.fetchall()
                return [_row_to_calendar(row) for row in rows]

    async def remove_calendar(self, calendar_id: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM calendars WHERE calendar_id = ?", (calendar_id,))
            await db.execute("DELETE FROM sync_conflicts WHERE calendar_id = ?", (calendar_id,))
            await db.commit()
            logger.debug(f"Removed calendar: {calendar_id}")

    async def save_sync_state(
        self,
        calendar_id: str,
        sync_token: str | None,
        last_sync_at: datetime,
    ) -> None:
        """
        Persist the sync cursor of a successful run.

        Both fields are written in a single transaction; a failure leaves the
        previous cursor in place.
        """
        async with aiosqlite.connect(self.db_path) as db:
            try:
                await db.execute("BEGIN")
                cursor = await db.execute(
                    """
                    UPDATE calendars
                    SET sync_token = ?, last_sync_at = ?
                    WHERE calendar_id = ?
                    """,
                    (sync_token, to_iso(last_sync_at), calendar_id),
                )
                if cursor.rowcount == 0:
                    raise KeyError(f"Calendar not registered: {calendar_id}")
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        logger.debug(f"Saved sync state for {calendar_id} (token={sync_token})")

    async def set_schedule(
        self,
        calendar_id: str,
        scheduled: bool,
        interval_minutes: int | None = None,
    ) -> None:
        """Persist the periodic sync settings of a calendar."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE calendars SET scheduled = ?, interval_minutes = COALESCE(?, interval_minutes)
                WHERE calendar_id = ?
                """,
                (int(scheduled), interval_minutes, calendar_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise KeyError(f"Calendar not registered: {calendar_id}")

    async def clear_sync_token(self, calendar_id: str) -> None:
        """Force the next run to do a full listing."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE calendars SET sync_token = NULL WHERE calendar_id = ?",
                (calendar_id,),
            )
            await db.commit()

    async def record_conflicts(self, calendar_id: str, conflicts: list[Conflict]) -> None:
        """Store or refresh unresolved conflicts (one row per uid)."""
        if not conflicts:
            return
        async with aiosqlite.connect(self.db_path) as db:
            await db.executemany(
                """
                INSERT INTO sync_conflicts (calendar_id, uid, conflict_type, payload, detected_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(calendar_id, uid) DO UPDATE SET
                    conflict_type = excluded.conflict_type,
                    payload = excluded.payload,
                    detected_at = excluded.detected_at
                """,
                [
                    (
                        calendar_id,
                        conflict.uid,
                        conflict.conflict_type.value,
                        json.dumps(conflict.to_dict()),
                        to_iso(conflict.detected_at),
                    )
                    for conflict in conflicts
                ],
            )
            await db.commit()
            logger.debug(f"Recorded {len(conflicts)} conflicts for {calendar_id}")

    async def get_conflicts(self, calendar_id: str) -> list[Conflict]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT payload FROM sync_conflicts WHERE calendar_id = ? ORDER BY detected_at",
                (calendar_id,),
            ) as cursor:
                rows = await cursor.fetchall()
                return [Conflict.from_dict(json.loads(row["payload"])) for row in rows]

    async def get_conflict(self, calendar_id: str, uid: str) -> Conflict | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT payload FROM sync_conflicts WHERE calendar_id = ? AND uid = ?",
                (calendar_id, uid),
            ) as cursor:
                row = await cursor.fetchone()
                return Conflict.from_dict(json.loads(row["payload"])) if row else None

    async def clear_conflict(self, calendar_id: str, uid: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "DELETE FROM sync_conflicts WHERE calendar_id = ? AND uid = ?",
                (calendar_id, uid),
            )
            await db.commit()
            logger.debug(f"Cleared conflict {uid} for {calendar_id}")


class SyncLogsDB:
    """Run history for every sync, manual or scheduled."""

    def __init__(self, db_path: Path):
        self.db_path = db_path

    async def initialize(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    calendar_id TEXT NOT NULL,
                    sync_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at REAL NOT NULL,
                    completed_at REAL,
                    duration_seconds REAL,
                    stats_json TEXT,
                    error_message TEXT
                )
                """
            )
            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_sync_logs_calendar
                ON sync_logs(calendar_id, started_at)
                """
            )
            await db.commit()

    async def create_log(self, calendar_id: str, sync_type: str, status: str = "running") -> int:
        """
        Open a log entry for a run.

        Args:
            calendar_id: Calendar being synced
            sync_type: 'manual', 'scheduled' or 'resolve'
            status: Initial status

        Returns:
            ID of the new log row
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO sync_logs (calendar_id, sync_type, status, started_at)
                VALUES (?, ?, ?, ?)
                """,
                (calendar_id, sync_type, status, utcnow().timestamp()),
            )
            await db.commit()
            return cursor.lastrowid

    async def update_log(
        self,
        log_id: int,
        status: str,
        duration_seconds: float | None = None,
        stats_json: str | None = None,
        error_message: str | None = None,
    ) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE sync_logs
                SET status = ?, completed_at = ?, duration_seconds = ?,
                    stats_json = ?, error_message = ?
                WHERE id = ?
                """,
                (
                    status,
                    utcnow().timestamp(),
                    duration_seconds,
                    stats_json,
                    error_message,
                    log_id,
                ),
            )
            await db.commit()

    async def get_logs(self, calendar_id: str | None = None, limit: int = 50) -> list[dict]:
        """
        Most recent runs first.

        Args:
            calendar_id: Restrict to one calendar
            limit: Maximum number of rows
        """
        query = "SELECT * FROM sync_logs"
        params: list = []
        if calendar_id:
            query += " WHERE calendar_id = ?"
            params.append(calendar_id)
        query += " ORDER BY started_at DESC, id DESC LIMIT ?"
        params.append(limit)

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [dict(row) for row in rows]
