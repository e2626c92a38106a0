"""Calendar sync and conflict endpoints."""

import logging

from fastapi import APIRouter, HTTPException, status

from calbridge.api.dependencies import CalendarDep, CoordinatorDep, SchedulerDep
from calbridge.api.models import (
    CalendarResponse,
    ConflictResponse,
    ResolveRequest,
    SyncResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=list[CalendarResponse])
async def list_calendars(coordinator: CoordinatorDep, scheduler: SchedulerDep):
    """List registered calendars with their sync state."""
    calendars = await coordinator.calendars_db.list_calendars()
    return [
        CalendarResponse.from_calendar(
            calendar,
            state=coordinator.state(calendar.calendar_id).value,
            scheduled=scheduler.is_scheduled(calendar.calendar_id),
        )
        for calendar in calendars
    ]


@router.post("/{calendar_id:path}/sync", response_model=SyncResponse)
async def sync_calendar(calendar: CalendarDep, coordinator: CoordinatorDep):
    """Run a sync for one calendar now.

    An overlapping run is reported with status ``already_in_progress``.
    """
    logger.info(f"Manual sync requested for {calendar.calendar_id}")
    result = await coordinator.run_sync(calendar.calendar_id, sync_type="manual")
    return SyncResponse.from_result(result)


@router.get("/{calendar_id:path}/conflicts", response_model=list[ConflictResponse])
async def list_conflicts(calendar: CalendarDep, coordinator: CoordinatorDep):
    """List unresolved conflicts for a calendar."""
    conflicts = await coordinator.get_conflicts(calendar.calendar_id)
    return [ConflictResponse(**conflict.to_dict()) for conflict in conflicts]


@router.post("/{calendar_id:path}/conflicts/{uid}/resolve", response_model=SyncResponse)
async def resolve_conflict(
    uid: str,
    request: ResolveRequest,
    calendar: CalendarDep,
    coordinator: CoordinatorDep,
):
    """Resolve one conflict with keep-local, keep-remote or merge."""
    conflict = await coordinator.calendars_db.get_conflict(calendar.calendar_id, uid)
    if conflict is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No unresolved conflict {uid} in {calendar.calendar_id}",
        )

    result = await coordinator.resolve_conflict(conflict, request.mode)
    return SyncResponse.from_result(result)
