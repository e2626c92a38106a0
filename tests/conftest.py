"""Shared fixtures: an in-memory CalDAV server and real SQLite stores in tmp_path."""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from textwrap import dedent

import pytest
import pytest_asyncio

from calbridge.core.errors import RemoteConflict, SyncTokenInvalid
from calbridge.core.models import (
    Calendar,
    ListErr,
    ListOk,
    RemoteCalendarObject,
)
from calbridge.core.sync import SyncCoordinator
from calbridge.sources.appointments import AppointmentStore
from calbridge.utils.datetime_utils import utcnow
from calbridge.utils.db import CalendarsDB, SyncLogsDB

CALENDAR_ID = "https://caldav.example.com/calendars/me/work/"

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_ical(
    uid: str,
    summary: str = "Site Visit",
    start: str = "20240301T100000Z",
    end: str = "20240301T110000Z",
    last_modified: str = "20240301T090000Z",
    description: str | None = None,
    location: str | None = None,
) -> str:
    """Minimal VCALENDAR with a single VEVENT."""
    extra = ""
    if description:
        extra += f"DESCRIPTION:{description}\n"
    if location:
        extra += f"LOCATION:{location}\n"
    text = dedent(
        f"""\
        BEGIN:VCALENDAR
        VERSION:2.0
        PRODID:-//tests//EN
        BEGIN:VEVENT
        UID:{uid}
        SUMMARY:{summary}
        DTSTART:{start}
        DTEND:{end}
        DTSTAMP:{last_modified}
        LAST-MODIFIED:{last_modified}
        """
    )
    text += extra + "END:VEVENT\nEND:VCALENDAR\n"
    return text.replace("\n", "\r\n")


def remote_event(
    uid: str,
    summary: str = "Site Visit",
    last_modified: datetime | None = T0,
    **fields,
) -> RemoteCalendarObject:
    start = fields.pop("dtstart", T0 + timedelta(hours=1))
    return RemoteCalendarObject(
        uid=uid,
        etag=fields.pop("etag", None),
        last_modified=last_modified,
        summary=summary,
        dtstart=start,
        dtend=fields.pop("dtend", start + timedelta(hours=1)),
        **fields,
    )


class FakeRemoteClient:
    """
    In-memory stand-in for ``RemoteCalendarClient``.

    Every mutation bumps a version counter; sync tokens are ``tok-<version>``
    so incremental listings can replay what changed after a token. Failures
    can be injected per operation.
    """

    def __init__(self):
        self.objects: dict[str, RemoteCalendarObject] = {}
        self.version = 0
        self._changes: list[tuple[int, str]] = []
        self._deleted_hrefs: dict[str, str] = {}
        self._etag_counter = 0
        self.reject_tokens = False
        self.list_error = None
        self.list_exception: BaseException | None = None
        self.put_errors: dict[str, Exception] = {}
        self.puts: list[dict] = []
        self.deletes: list[dict] = []
        self.list_calls: list[str] = []
        self.listing_started = asyncio.Event()
        self.gate: asyncio.Event | None = None

    # Server-side helpers (another client editing the calendar)

    def _next_etag(self, uid: str) -> str:
        self._etag_counter += 1
        return f'"{uid}-{self._etag_counter}"'

    def _bump(self, uid: str) -> None:
        self.version += 1
        self._changes.append((self.version, uid))

    def server_put(self, obj: RemoteCalendarObject) -> RemoteCalendarObject:
        stored = replace(
            obj,
            etag=self._next_etag(obj.uid),
            href=obj.href or f"{CALENDAR_ID}{obj.uid}.ics",
            deleted=False,
        )
        self.objects[obj.uid] = stored
        self._bump(obj.uid)
        return replace(stored)

    def server_delete(self, uid: str) -> None:
        self._deleted_hrefs[uid] = self.objects.pop(uid).href
        self._bump(uid)

    @property
    def token(self) -> str:
        return f"tok-{self.version}"

    # RemoteCalendarClient interface

    async def _before_listing(self, kind: str) -> None:
        self.list_calls.append(kind)
        self.listing_started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.list_exception is not None:
            raise self.list_exception

    async def list_full(self, calendar: Calendar):
        await self._before_listing("full")
        if self.list_error is not None:
            return ListErr(self.list_error)
        return ListOk(
            objects=[replace(obj) for obj in self.objects.values()],
            sync_token=self.token,
            full_snapshot=True,
        )

    async def list_incremental(self, calendar: Calendar, sync_token: str):
        await self._before_listing("incremental")
        if self.list_error is not None:
            return ListErr(self.list_error)
        if self.reject_tokens or not sync_token.startswith("tok-"):
            return ListErr(SyncTokenInvalid(f"invalid token {sync_token}"))

        since = int(sync_token.split("-", 1)[1])
        changed = []
        for uid in dict.fromkeys(uid for version, uid in self._changes if version > since):
            if uid in self.objects:
                changed.append(replace(self.objects[uid]))
            else:
                # Servers only report the href of a removed object
                href = self._deleted_hrefs.get(uid, f"{CALENDAR_ID}{uid}.ics")
                name = href.rsplit("/", 1)[-1].removesuffix(".ics")
                changed.append(RemoteCalendarObject.tombstone(name, href=href))
        return ListOk(objects=changed, sync_token=self.token, full_snapshot=False)

    async def fetch_object(self, calendar: Calendar, uid: str):
        obj = self.objects.get(uid)
        return replace(obj) if obj else None

    async def put_object(self, calendar, obj, etag=None, create=False):
        self.puts.append({"uid": obj.uid, "etag": etag, "create": create})
        if obj.uid in self.put_errors:
            raise self.put_errors[obj.uid]

        existing = self.objects.get(obj.uid)
        if create and existing is not None:
            raise RemoteConflict(obj.uid)
        if etag is not None and (existing is None or existing.etag != etag):
            raise RemoteConflict(obj.uid)
        return self.server_put(obj)

    async def delete_object(self, calendar, uid, etag=None, href=None):
        self.deletes.append({"uid": uid, "etag": etag})
        existing = self.objects.get(uid)
        if existing is None:
            return
        if etag is not None and existing.etag != etag:
            raise RemoteConflict(uid)
        self.server_delete(uid)


@pytest.fixture
def remote() -> FakeRemoteClient:
    return FakeRemoteClient()


@pytest_asyncio.fixture
async def store(tmp_path) -> AppointmentStore:
    store = AppointmentStore(tmp_path / "appointments.db")
    await store.initialize()
    return store


@pytest_asyncio.fixture
async def calendars_db(tmp_path) -> CalendarsDB:
    db = CalendarsDB(tmp_path / "sync.db")
    await db.initialize()
    return db


@pytest_asyncio.fixture
async def logs_db(tmp_path) -> SyncLogsDB:
    db = SyncLogsDB(tmp_path / "sync_logs.db")
    await db.initialize()
    return db


@pytest_asyncio.fixture
async def calendar(calendars_db) -> Calendar:
    calendar = Calendar(calendar_id=CALENDAR_ID, display_name="Work")
    await calendars_db.register_calendar(calendar)
    return calendar


@pytest_asyncio.fixture
async def coordinator(remote, store, calendars_db, logs_db, calendar) -> SyncCoordinator:
    return SyncCoordinator(
        remote=remote,
        store=store,
        calendars_db=calendars_db,
        sync_logs_db=logs_db,
        tolerance_seconds=60,
    )


async def linked_record(store, remote, uid, title="Site Visit", updated_at=None):
    """A record already in sync with a matching remote object."""
    stored = remote.server_put(remote_event(uid, summary=title))
    when = updated_at or utcnow()
    record = await store.create(
        CALENDAR_ID, title, stored.dtstart, stored.dtend
    )
    record.remote_uid = uid
    record.etag = stored.etag
    record.remote_href = stored.href
    record.updated_at = when
    record.synced_at = when
    return await store.upsert(record)
