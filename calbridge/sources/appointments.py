"""SQLite-backed local appointment store."""

import logging
from datetime import datetime
from pathlib import Path

import aiosqlite

from calbridge.core.models import AppointmentRecord
from calbridge.utils.datetime_utils import from_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

_COLUMNS = (
    "calendar_id, remote_uid, title, description, start_time, end_time, location, "
    "updated_at, etag, remote_href, synced_at, deleted"
)


def _row_to_record(row: aiosqlite.Row) -> AppointmentRecord:
    return AppointmentRecord(
        id=row["id"],
        calendar_id=row["calendar_id"],
        remote_uid=row["remote_uid"],
        title=row["title"],
        description=row["description"],
        start_time=from_iso(row["start_time"]),
        end_time=from_iso(row["end_time"]),
        location=row["location"],
        updated_at=from_iso(row["updated_at"]),
        etag=row["etag"],
        remote_href=row["remote_href"],
        synced_at=from_iso(row["synced_at"]),
        deleted=bool(row["deleted"]),
    )


def _record_params(record: AppointmentRecord) -> tuple:
    return (
        record.calendar_id,
        record.remote_uid,
        record.title,
        record.description,
        to_iso(record.start_time),
        to_iso(record.end_time),
        record.location,
        to_iso(record.updated_at),
        record.etag,
        record.remote_href,
        to_iso(record.synced_at),
        int(record.deleted),
    )


class AppointmentStore:
    """
    Adapter over the local appointments table.

    The owning application bumps ``updated_at`` on every edit (see ``create``,
    ``update`` and ``mark_deleted``). The sync engine only reads, upserts rows
    matched by ``(calendar_id, remote_uid)`` and stamps ``synced_at`` once a
    version has been reconciled with the server.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    async def initialize(self) -> None:
        """Create the appointments table if it doesn't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS appointments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    calendar_id TEXT NOT NULL,
                    remote_uid TEXT,
                    title TEXT NOT NULL,
                    description TEXT,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    location TEXT,
                    updated_at TEXT NOT NULL,
                    etag TEXT,
                    remote_href TEXT,
                    synced_at TEXT,
                    deleted INTEGER NOT NULL DEFAULT 0,
                    UNIQUE(calendar_id, remote_uid)
                )
                """
            )
            await db.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_appointments_updated
                ON appointments(calendar_id, updated_at)
                """
            )
            await db.commit()
            logger.debug(f"Appointments table initialized at {self.db_path}")

    # ------------------------------------------------------------------
    # Sync engine contract
    # ------------------------------------------------------------------

    async def list_changed_since(
        self, calendar_id: str, timestamp: datetime | None
    ) -> list[AppointmentRecord]:
        """
        Records edited after ``timestamp`` whose current version is not yet synced.

        With ``timestamp=None`` (first run) every unsynced record of the calendar
        is returned.
        """
        query = """
            SELECT * FROM appointments
            WHERE calendar_id = ?
              AND (synced_at IS NULL OR synced_at != updated_at)
        """
        params: list = [calendar_id]
        if timestamp is not None:
            query += " AND updated_at > ?"
            params.append(to_iso(timestamp))

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [_row_to_record(row) for row in rows]

    async def find_by_remote_uid(self, calendar_id: str, uid: str) -> AppointmentRecord | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM appointments WHERE calendar_id = ? AND remote_uid = ?",
                (calendar_id, uid),
            ) as cursor:
                row = await cursor.fetchone()
                return _row_to_record(row) if row else None

    async def get(self, record_id: int) -> AppointmentRecord | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM appointments WHERE id = ?", (record_id,)
            ) as cursor:
                row = await cursor.fetchone()
                return _row_to_record(row) if row else None

    async def upsert(self, record: AppointmentRecord) -> AppointmentRecord:
        """
        Insert or update a record, matching on ``(calendar_id, remote_uid)``.

        Falls back to the primary key for records not yet linked to a remote
        object. Calling twice with identical input leaves a single identical row.
        """
        async with aiosqlite.connect(self.db_path) as db:
            existing_id = None
            if record.remote_uid:
                async with db.execute(
                    "SELECT id FROM appointments WHERE calendar_id = ? AND remote_uid = ?",
                    (record.calendar_id, record.remote_uid),
                ) as cursor:
                    row = await cursor.fetchone()
                    existing_id = row[0] if row else None
            if existing_id is None and record.id is not None:
                async with db.execute(
                    "SELECT id FROM appointments WHERE id = ?", (record.id,)
                ) as cursor:
                    row = await cursor.fetchone()
                    existing_id = row[0] if row else None

            if existing_id is not None:
                await db.execute(
                    """
                    UPDATE appointments SET
                        calendar_id = ?, remote_uid = ?, title = ?, description = ?,
                        start_time = ?, end_time = ?, location = ?, updated_at = ?,
                        etag = ?, remote_href = ?, synced_at = ?, deleted = ?
                    WHERE id = ?
                    """,
                    (*_record_params(record), existing_id),
                )
                record.id = existing_id
            else:
                cursor = await db.execute(
                    f"INSERT INTO appointments ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    _record_params(record),
                )
                record.id = cursor.lastrowid
            await db.commit()

        logger.debug(f"Upserted appointment {record.id} (uid={record.remote_uid})")
        return record

    async def mark_synced(
        self,
        record: AppointmentRecord,
        remote_uid: str,
        etag: str | None,
        href: str | None = None,
    ) -> AppointmentRecord:
        """
        Write the remote linkage back and stamp the pushed version as synced.

        ``synced_at`` is set to the ``updated_at`` of the version that was pushed,
        so an edit made while the push was in flight stays pending.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE appointments
                SET remote_uid = ?, etag = ?, remote_href = COALESCE(?, remote_href), synced_at = ?
                WHERE id = ?
                """,
                (remote_uid, etag, href, to_iso(record.updated_at), record.id),
            )
            await db.commit()

        record.remote_uid = remote_uid
        record.etag = etag
        if href:
            record.remote_href = href
        record.synced_at = record.updated_at
        logger.debug(f"Marked appointment {record.id} synced (uid={remote_uid}, etag={etag})")
        return record

    async def delete(self, record: AppointmentRecord) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM appointments WHERE id = ?", (record.id,))
            await db.commit()
        logger.debug(f"Deleted appointment {record.id} (uid={record.remote_uid})")

    # ------------------------------------------------------------------
    # Application-side helpers
    # ------------------------------------------------------------------

    async def create(
        self,
        calendar_id: str,
        title: str,
        start_time: datetime,
        end_time: datetime,
        description: str | None = None,
        location: str | None = None,
    ) -> AppointmentRecord:
        """Create a local appointment (not yet known to the server)."""
        record = AppointmentRecord(
            id=None,
            calendar_id=calendar_id,
            title=title,
            start_time=start_time,
            end_time=end_time,
            description=description,
            location=location,
            updated_at=utcnow(),
        )
        return await self.upsert(record)

    async def update(self, record_id: int, **fields) -> AppointmentRecord:
        """Edit a local appointment and bump ``updated_at``."""
        record = await self.get(record_id)
        if record is None:
            raise KeyError(f"Appointment not found: {record_id}")
        for name, value in fields.items():
            if not hasattr(record, name):
                raise AttributeError(f"Unknown appointment field: {name}")
            setattr(record, name, value)
        record.updated_at = fields.get("updated_at", utcnow())
        return await self.upsert(record)

    async def mark_deleted(self, record_id: int) -> AppointmentRecord:
        """Soft-delete a local appointment so the deletion can be pushed."""
        return await self.update(record_id, deleted=True)

    async def list_all(self, calendar_id: str, include_deleted: bool = False) -> list[AppointmentRecord]:
        query = "SELECT * FROM appointments WHERE calendar_id = ?"
        if not include_deleted:
            query += " AND deleted = 0"
        query += " ORDER BY start_time"
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, (calendar_id,)) as cursor:
                rows = await cursor.fetchall()
                return [_row_to_record(row) for row in rows]

    async def list_linked(self, calendar_id: str) -> list[AppointmentRecord]:
        """Records already linked to a remote object (used for full-snapshot diffs)."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM appointments WHERE calendar_id = ? AND remote_uid IS NOT NULL",
                (calendar_id,),
            ) as cursor:
                rows = await cursor.fetchall()
                return [_row_to_record(row) for row in rows]
