"""Dependency injection for FastAPI endpoints.

The coordinator and scheduler are created once in the app lifespan and shared
by every request, so manual and scheduled runs contend for the same guard.
"""

import logging
from typing import Annotated

from fastapi import Depends, Request

from calbridge.api.scheduler import SyncScheduler
from calbridge.core.errors import CalendarNotFound
from calbridge.core.models import Calendar
from calbridge.core.sync import SyncCoordinator

logger = logging.getLogger(__name__)


def get_coordinator(request: Request) -> SyncCoordinator:
    """Get the shared sync coordinator."""
    return request.app.state.coordinator


def get_scheduler(request: Request) -> SyncScheduler:
    """Get the shared sync scheduler."""
    return request.app.state.scheduler


async def get_calendar(
    calendar_id: str,
    coordinator: Annotated[SyncCoordinator, Depends(get_coordinator)],
) -> Calendar:
    """Resolve a calendar path parameter (collection URL or display name).

    Raises:
        CalendarNotFound: No such calendar is registered
    """
    calendar = await coordinator.calendars_db.find_calendar(calendar_id)
    if calendar is None:
        raise CalendarNotFound(f"Calendar not registered: {calendar_id}")
    return calendar


# Type aliases for dependency injection
CoordinatorDep = Annotated[SyncCoordinator, Depends(get_coordinator)]
SchedulerDep = Annotated[SyncScheduler, Depends(get_scheduler)]
CalendarDep = Annotated[Calendar, Depends(get_calendar)]
