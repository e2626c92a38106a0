"""Data model for calendar synchronization."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from calbridge.core.errors import CalBridgeError
from calbridge.utils.datetime_utils import from_iso, to_iso, utcnow


class ConflictType(str, Enum):
    """Why an entity could not be applied automatically."""

    MODIFIED = "modified"  # both sides edited
    LOCAL_ONLY = "local_only"  # local edited, remote deleted
    REMOTE_ONLY = "remote_only"  # remote edited, local deleted


class ResolutionMode(str, Enum):
    """Explicit strategy for settling a conflict."""

    KEEP_LOCAL = "keep-local"
    KEEP_REMOTE = "keep-remote"
    MERGE = "merge"


class SyncState(str, Enum):
    """Per-calendar coordinator state."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SyncStatus(str, Enum):
    """Outcome of a single run_sync invocation."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ALREADY_IN_PROGRESS = "already_in_progress"


@dataclass
class CalendarAccount:
    """Credentials and server URL for one remote calendar provider."""

    account_id: str
    server_url: str
    username: str
    email: str | None = None


@dataclass
class Calendar:
    """A single remote collection plus its persisted sync cursor."""

    calendar_id: str  # collection URL
    account_id: str = "default"
    display_name: str = ""
    sync_token: str | None = None
    last_sync_at: datetime | None = None
    sync_enabled: bool = True
    read_only: bool = False
    # Periodic sync settings; None interval means the configured default
    interval_minutes: int | None = None
    scheduled: bool = True


@dataclass
class AppointmentRecord:
    """Local appointment row."""

    id: int | None
    calendar_id: str
    title: str
    start_time: datetime
    end_time: datetime
    description: str | None = None
    location: str | None = None
    remote_uid: str | None = None
    updated_at: datetime = field(default_factory=utcnow)
    etag: str | None = None
    remote_href: str | None = None
    synced_at: datetime | None = None
    deleted: bool = False

    @property
    def in_sync(self) -> bool:
        """True when the current version has already been reconciled with the server."""
        return self.synced_at is not None and self.synced_at == self.updated_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "calendar_id": self.calendar_id,
            "title": self.title,
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "description": self.description,
            "location": self.location,
            "remote_uid": self.remote_uid,
            "updated_at": to_iso(self.updated_at),
            "etag": self.etag,
            "remote_href": self.remote_href,
            "synced_at": to_iso(self.synced_at),
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppointmentRecord:
        return cls(
            id=data.get("id"),
            calendar_id=data["calendar_id"],
            title=data["title"],
            start_time=from_iso(data["start_time"]),
            end_time=from_iso(data["end_time"]),
            description=data.get("description"),
            location=data.get("location"),
            remote_uid=data.get("remote_uid"),
            updated_at=from_iso(data.get("updated_at")) or utcnow(),
            etag=data.get("etag"),
            remote_href=data.get("remote_href"),
            synced_at=from_iso(data.get("synced_at")),
            deleted=bool(data.get("deleted", False)),
        )


@dataclass
class RemoteCalendarObject:
    """Provider-side VEVENT plus its entity tag."""

    uid: str
    etag: str | None
    last_modified: datetime | None
    summary: str = ""
    description: str | None = None
    dtstart: datetime | None = None
    dtend: datetime | None = None
    location: str | None = None
    href: str | None = None
    deleted: bool = False

    @classmethod
    def tombstone(cls, uid: str, href: str | None = None) -> RemoteCalendarObject:
        """Marker for an object the server no longer has."""
        return cls(uid=uid, etag=None, last_modified=None, href=href, deleted=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "etag": self.etag,
            "last_modified": to_iso(self.last_modified),
            "summary": self.summary,
            "description": self.description,
            "dtstart": to_iso(self.dtstart),
            "dtend": to_iso(self.dtend),
            "location": self.location,
            "href": self.href,
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemoteCalendarObject:
        return cls(
            uid=data["uid"],
            etag=data.get("etag"),
            last_modified=from_iso(data.get("last_modified")),
            summary=data.get("summary") or "",
            description=data.get("description"),
            dtstart=from_iso(data.get("dtstart")),
            dtend=from_iso(data.get("dtend")),
            location=data.get("location"),
            href=data.get("href"),
            deleted=bool(data.get("deleted", False)),
        )


@dataclass
class ListOk:
    """Successful listing response."""

    objects: list[RemoteCalendarObject]
    sync_token: str | None
    full_snapshot: bool


@dataclass
class ListErr:
    """Failed listing response carrying the classified error."""

    error: CalBridgeError


ListResult = ListOk | ListErr


@dataclass
class ChangeSet:
    """Both deltas for one sync run, keyed by remote uid."""

    local_changes: dict[str, AppointmentRecord] = field(default_factory=dict)
    remote_changes: dict[str, RemoteCalendarObject] = field(default_factory=dict)
    pending_creates: list[AppointmentRecord] = field(default_factory=list)
    full_snapshot: bool = False
    new_sync_token: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.local_changes or self.remote_changes or self.pending_creates)


@dataclass
class Conflict:
    """An entity changed on both sides since the last successful sync."""

    uid: str
    calendar_id: str
    conflict_type: ConflictType
    local_entity: AppointmentRecord | None
    remote_entity: RemoteCalendarObject | None
    detected_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "calendar_id": self.calendar_id,
            "conflict_type": self.conflict_type.value,
            "local_entity": self.local_entity.to_dict() if self.local_entity else None,
            "remote_entity": self.remote_entity.to_dict() if self.remote_entity else None,
            "detected_at": to_iso(self.detected_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conflict:
        local = data.get("local_entity")
        remote = data.get("remote_entity")
        return cls(
            uid=data["uid"],
            calendar_id=data["calendar_id"],
            conflict_type=ConflictType(data["conflict_type"]),
            local_entity=AppointmentRecord.from_dict(local) if local else None,
            remote_entity=RemoteCalendarObject.from_dict(remote) if remote else None,
            detected_at=from_iso(data.get("detected_at")) or utcnow(),
        )


@dataclass
class Classification:
    """Conflict detector output."""

    to_push: list[AppointmentRecord] = field(default_factory=list)
    to_pull: list[RemoteCalendarObject] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)


@dataclass
class ResolvedChange:
    """One-sided change emitted by the resolver.

    ``push`` is force-written to the server (a tombstone force-deletes it);
    ``pull`` overwrites the local store (a tombstone deletes the local row).
    """

    uid: str
    mode: ResolutionMode
    push: AppointmentRecord | None = None
    pull: RemoteCalendarObject | None = None


@dataclass
class ApplyReport:
    """Counters and findings from one pass of the change applier."""

    synced: int = 0
    conflicts: list[Conflict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class SyncResult:
    """Aggregate result of a run; always returned, even on partial failure."""

    calendar_id: str
    success: bool
    synced: int = 0
    conflicts: list[Conflict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    status: SyncStatus = SyncStatus.SUCCEEDED
    full_resync: bool = False
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "calendar_id": self.calendar_id,
            "success": self.success,
            "synced": self.synced,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "errors": list(self.errors),
            "status": self.status.value,
            "full_resync": self.full_resync,
            "duration_seconds": self.duration_seconds,
        }
