"""Health check endpoint."""

import logging
from datetime import datetime

from fastapi import APIRouter

from calbridge import __version__
from calbridge.api.dependencies import SchedulerDep
from calbridge.api.models import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(scheduler: SchedulerDep):
    """Health check endpoint.

    Returns basic health status of the API server.
    """
    return HealthResponse(
        status="healthy",
        version=__version__,
        timestamp=datetime.now().isoformat(),
        scheduler_running=scheduler.is_running,
        active_schedules=len(scheduler.get_jobs()),
    )
