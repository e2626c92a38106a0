"""Schedule management endpoints."""

import logging

from fastapi import APIRouter

from calbridge.api.dependencies import CalendarDep, CoordinatorDep, SchedulerDep
from calbridge.api.models import ScheduleResponse, ScheduleUpdate
from calbridge.core.errors import CalendarDisabled

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=list[ScheduleResponse])
async def list_schedules(scheduler: SchedulerDep):
    """List active calendar jobs."""
    return [ScheduleResponse(scheduled=True, **job) for job in scheduler.get_jobs()]


@router.put("/{calendar_id:path}", response_model=ScheduleResponse)
async def set_schedule(
    update: ScheduleUpdate,
    calendar: CalendarDep,
    coordinator: CoordinatorDep,
    scheduler: SchedulerDep,
):
    """Add or replace a calendar's periodic sync job. Disabled calendars are refused."""
    if not calendar.sync_enabled:
        raise CalendarDisabled(calendar.calendar_id)
    interval = update.interval_minutes or calendar.interval_minutes
    job = scheduler.schedule(calendar.calendar_id, interval)
    await coordinator.calendars_db.set_schedule(
        calendar.calendar_id, scheduled=True, interval_minutes=update.interval_minutes
    )
    return ScheduleResponse(
        calendar_id=calendar.calendar_id,
        scheduled=True,
        interval_minutes=scheduler.interval_for(calendar.calendar_id),
        next_run=scheduler.next_run_timestamp(job),
    )


@router.delete("/{calendar_id:path}", response_model=ScheduleResponse)
async def delete_schedule(
    calendar: CalendarDep,
    coordinator: CoordinatorDep,
    scheduler: SchedulerDep,
):
    """Cancel a calendar's periodic sync job; other calendars keep running."""
    scheduler.unschedule(calendar.calendar_id)
    await coordinator.calendars_db.set_schedule(calendar.calendar_id, scheduled=False)
    return ScheduleResponse(calendar_id=calendar.calendar_id, scheduled=False)
