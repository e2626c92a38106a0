"""Pydantic models for API request/response validation."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from calbridge.core.models import Calendar, ResolutionMode, SyncResult, SyncStatus


class CalendarResponse(BaseModel):
    """Response model for a registered calendar."""

    calendar_id: str
    display_name: str = ""
    account_id: str = "default"
    sync_enabled: bool = True
    read_only: bool = False
    has_sync_token: bool = False
    last_sync_at: datetime | None = None
    scheduled: bool = False
    interval_minutes: int | None = None
    state: str = "idle"

    @classmethod
    def from_calendar(cls, calendar: Calendar, state: str, scheduled: bool) -> "CalendarResponse":
        return cls(
            calendar_id=calendar.calendar_id,
            display_name=calendar.display_name,
            account_id=calendar.account_id,
            sync_enabled=calendar.sync_enabled,
            read_only=calendar.read_only,
            has_sync_token=calendar.sync_token is not None,
            last_sync_at=calendar.last_sync_at,
            scheduled=scheduled,
            interval_minutes=calendar.interval_minutes,
            state=state,
        )


class ConflictResponse(BaseModel):
    """Response model for an unresolved conflict."""

    uid: str
    calendar_id: str
    conflict_type: str
    local_entity: dict[str, Any] | None = None
    remote_entity: dict[str, Any] | None = None
    detected_at: datetime | None = None


class SyncResponse(BaseModel):
    """Response model for synchronization operations."""

    calendar_id: str
    status: SyncStatus
    success: bool
    synced: int = 0
    conflicts: list[ConflictResponse] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    full_resync: bool = False
    duration_seconds: float = 0.0
    timestamp: datetime = Field(default_factory=datetime.now)

    @classmethod
    def from_result(cls, result: SyncResult) -> "SyncResponse":
        data = result.to_dict()
        data["conflicts"] = [ConflictResponse(**c) for c in data["conflicts"]]
        return cls(**data)


class ResolveRequest(BaseModel):
    """Request model for resolving a conflict."""

    mode: ResolutionMode = Field(description="keep-local, keep-remote or merge")


class ScheduleUpdate(BaseModel):
    """Request model for adding or changing a calendar's schedule."""

    interval_minutes: int | None = Field(default=None, gt=0)


class ScheduleResponse(BaseModel):
    """Response model for a calendar schedule."""

    calendar_id: str
    scheduled: bool
    interval_minutes: int | None = None
    next_run: float | None = None
    failures: int = 0


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str = "healthy"
    version: str
    timestamp: str
    scheduler_running: bool = False
    active_schedules: int = 0


class ErrorResponse(BaseModel):
    """Response model for errors."""

    error: str
    detail: str | None = None
