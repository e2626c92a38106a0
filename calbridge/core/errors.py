"""Exception taxonomy for the sync engine."""


class CalBridgeError(Exception):
    """Base class for all calbridge errors."""


class ConfigurationError(CalBridgeError):
    """Fatal setup problem (missing credentials, unreachable server on first contact).

    Propagates out of a sync run and leaves the calendar's sync state untouched.
    """


class RemoteUnavailable(CalBridgeError):
    """Retryable network/server failure (connection error, 5xx)."""


class RemoteTimeout(RemoteUnavailable):
    """A remote call exceeded its timeout."""


class SyncTokenInvalid(CalBridgeError):
    """The server rejected the sync token; caller should fall back to a full listing."""


class RemoteConflict(CalBridgeError):
    """An If-Match / If-None-Match precondition failed (HTTP 412)."""

    def __init__(self, uid: str, message: str | None = None):
        self.uid = uid
        super().__init__(message or f"Precondition failed for remote object {uid}")


class AlreadyInProgress(CalBridgeError):
    """A sync run for this calendar already holds the guard."""

    def __init__(self, calendar_id: str):
        self.calendar_id = calendar_id
        super().__init__(f"Sync already in progress for calendar {calendar_id}")


class CalendarNotFound(ConfigurationError):
    """The calendar is not registered in the sync state database."""


class CalendarDisabled(CalBridgeError):
    """The calendar is registered but has syncing switched off."""

    def __init__(self, calendar_id: str):
        self.calendar_id = calendar_id
        super().__init__(f"Sync is disabled for calendar {calendar_id}")
