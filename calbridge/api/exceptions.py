"""Exception handlers mapping sync errors to JSON responses."""

import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

from calbridge.core.errors import (
    AlreadyInProgress,
    CalBridgeError,
    CalendarDisabled,
    CalendarNotFound,
    ConfigurationError,
    RemoteConflict,
    RemoteTimeout,
    RemoteUnavailable,
)

logger = logging.getLogger(__name__)

# Most specific first
_STATUS_MAP: list[tuple[type[CalBridgeError], int]] = [
    (CalendarNotFound, status.HTTP_404_NOT_FOUND),
    (ConfigurationError, status.HTTP_400_BAD_REQUEST),
    (RemoteTimeout, status.HTTP_504_GATEWAY_TIMEOUT),
    (RemoteUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (RemoteConflict, status.HTTP_409_CONFLICT),
    (AlreadyInProgress, status.HTTP_409_CONFLICT),
    (CalendarDisabled, status.HTTP_409_CONFLICT),
]


def status_for(exc: CalBridgeError) -> int:
    for exc_type, code in _STATUS_MAP:
        if isinstance(exc, exc_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def calbridge_exception_handler(request: Request, exc: CalBridgeError) -> JSONResponse:
    code = status_for(exc)
    logger.warning(f"{request.method} {request.url.path} failed ({code}): {exc}")
    return JSONResponse(
        status_code=code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "InternalServerError", "detail": str(exc)},
    )
