"""Sync coordinator: per-calendar state machine and single-flight guard."""

import asyncio
import json
import logging
import time
from contextlib import contextmanager

from calbridge.core.applier import ChangeApplier
from calbridge.core.config import AppConfig
from calbridge.core.detector import ConflictDetector
from calbridge.core.errors import (
    AlreadyInProgress,
    CalBridgeError,
    CalendarDisabled,
    CalendarNotFound,
    ConfigurationError,
)
from calbridge.core.fetcher import ChangeFetcher
from calbridge.core.models import (
    Calendar,
    CalendarAccount,
    Conflict,
    RemoteCalendarObject,
    ResolutionMode,
    SyncResult,
    SyncState,
    SyncStatus,
)
from calbridge.core.resolver import ConflictResolver, MergePolicy
from calbridge.sources.appointments import AppointmentStore
from calbridge.sources.caldav_client import RemoteCalendarClient
from calbridge.utils.datetime_utils import utcnow
from calbridge.utils.db import CalendarsDB, SyncLogsDB
from calbridge.utils.logging import calendar_log_context

logger = logging.getLogger(__name__)


class SyncGuard:
    """In-memory set of calendars with a run in flight."""

    def __init__(self):
        self._held: set[str] = set()

    def is_held(self, calendar_id: str) -> bool:
        return calendar_id in self._held

    @contextmanager
    def hold(self, calendar_id: str):
        """
        Raises:
            AlreadyInProgress: Another run holds the calendar
        """
        if calendar_id in self._held:
            raise AlreadyInProgress(calendar_id)
        self._held.add(calendar_id)
        try:
            yield
        finally:
            self._held.discard(calendar_id)


class SyncCoordinator:
    """
    Runs fetch, detect and apply for one calendar at a time.

    The sync token and last-sync time are only advanced after a run that
    finished without errors. Anything else (retryable remote failure,
    per-entity error, unexpected exception, cancellation) leaves the previous
    cursor in place so the next run re-processes the same window.
    """

    def __init__(
        self,
        remote: RemoteCalendarClient,
        store: AppointmentStore,
        calendars_db: CalendarsDB,
        sync_logs_db: SyncLogsDB | None = None,
        tolerance_seconds: int = 60,
        uid_domain: str = "calbridge",
        merge_policy: MergePolicy | None = None,
    ):
        self.remote = remote
        self.store = store
        self.calendars_db = calendars_db
        self.sync_logs_db = sync_logs_db
        self.fetcher = ChangeFetcher(remote, store, calendars_db)
        self.detector = ConflictDetector(tolerance_seconds)
        self.applier = ChangeApplier(remote, store, uid_domain=uid_domain)
        self.resolver = ConflictResolver(merge_policy)
        self.guard = SyncGuard()
        self._states: dict[str, SyncState] = {}

    @classmethod
    def from_config(cls, config: AppConfig) -> "SyncCoordinator":
        """Wire up the CalDAV client and databases from application config."""
        account = CalendarAccount(
            account_id="default",
            server_url=config.caldav.url or "",
            username=config.caldav.username or "",
            email=config.caldav.email,
        )
        remote = RemoteCalendarClient(
            account,
            config.caldav.get_password(),
            ssl_verify_cert=config.caldav.ssl_verify_cert,
            timeout=config.caldav.request_timeout,
        )
        return cls(
            remote=remote,
            store=AppointmentStore(config.appointments_db_path),
            calendars_db=CalendarsDB(config.sync_db_path),
            sync_logs_db=SyncLogsDB(config.sync_logs_db_path),
            tolerance_seconds=config.sync.conflict_tolerance_seconds,
            uid_domain=config.sync.uid_domain,
            merge_policy=MergePolicy.from_config(config.sync.merge),
        )

    async def initialize(self) -> None:
        await self.store.initialize()
        await self.calendars_db.initialize()
        if self.sync_logs_db is not None:
            await self.sync_logs_db.initialize()

    async def register_configured_calendars(self, config: AppConfig) -> int:
        """Register (or refresh) every calendar listed in the config file."""
        for name, cal in config.calendars.items():
            await self.calendars_db.register_calendar(
                Calendar(
                    calendar_id=cal.url,
                    display_name=cal.display_name or name,
                    sync_enabled=cal.enabled,
                    read_only=cal.read_only,
                    interval_minutes=cal.interval_minutes,
                )
            )
        return len(config.calendars)

    def state(self, calendar_id: str) -> SyncState:
        return self._states.get(calendar_id, SyncState.IDLE)

    async def _load_calendar(self, calendar_id: str) -> Calendar:
        calendar = await self.calendars_db.get_calendar(calendar_id)
        if calendar is None:
            raise CalendarNotFound(f"Calendar not registered: {calendar_id}")
        return calendar

    async def run_sync(self, calendar_id: str, sync_type: str = "manual") -> SyncResult:
        """
        Synchronize one calendar.

        Returns:
            SyncResult; an overlapping call gets ``status=already_in_progress``,
            a disabled calendar a failed result without touching the server

        Raises:
            ConfigurationError: Fatal setup problem (unknown calendar, bad credentials)
        """
        try:
            with self.guard.hold(calendar_id), calendar_log_context(calendar_id):
                return await self._run_locked(calendar_id, sync_type)
        except AlreadyInProgress:
            logger.debug(f"Sync already in progress for {calendar_id}, skipping")
            return SyncResult(
                calendar_id=calendar_id,
                success=False,
                status=SyncStatus.ALREADY_IN_PROGRESS,
            )

    async def _run_locked(self, calendar_id: str, sync_type: str) -> SyncResult:
        started = time.monotonic()
        self._states[calendar_id] = SyncState.RUNNING
        result = SyncResult(calendar_id=calendar_id, success=False, status=SyncStatus.FAILED)
        log_id = await self._open_log(calendar_id, sync_type)

        try:
            calendar = await self._load_calendar(calendar_id)
            if not calendar.sync_enabled:
                raise CalendarDisabled(calendar_id)
            # Edits landing while this run is in flight belong to the next window
            run_started_at = utcnow()

            changes = await self.fetcher.fetch(calendar)
            result.full_resync = changes.full_snapshot

            pending = {c.uid: c for c in await self.calendars_db.get_conflicts(calendar_id)}
            classification = self.detector.classify(changes, calendar_id, pending)
            report = await self.applier.apply(calendar, changes, classification)

            await self.calendars_db.record_conflicts(
                calendar_id, classification.conflicts + report.conflicts
            )
            for uid in classification.unchanged:
                if uid in pending:
                    await self.calendars_db.clear_conflict(calendar_id, uid)

            result.synced = report.synced
            result.errors.extend(report.errors)

            if not result.errors:
                await self.calendars_db.save_sync_state(
                    calendar_id, changes.new_sync_token, run_started_at
                )
                result.success = True
                result.status = SyncStatus.SUCCEEDED
        except CalendarDisabled as e:
            logger.warning(f"Sync of {calendar_id} skipped: {e}")
            result.errors.append(str(e))
        except ConfigurationError as e:
            self._states[calendar_id] = SyncState.FAILED
            logger.error(f"Sync of {calendar_id} failed: {e}")
            await self._close_log(log_id, result, started, error=str(e))
            raise
        except CalBridgeError as e:
            logger.warning(f"Sync of {calendar_id} failed, will retry: {e}")
            result.errors.append(str(e))
        except asyncio.CancelledError:
            self._states[calendar_id] = SyncState.FAILED
            logger.warning(f"Sync of {calendar_id} cancelled")
            result.errors.append("Sync cancelled")
            await self._close_log(log_id, result, started)
            raise
        except Exception as e:  # pylint: disable=broad-except
            logger.exception(f"Unexpected error syncing {calendar_id}")
            result.errors.append(f"Unexpected error: {e}")

        result.conflicts = await self.calendars_db.get_conflicts(calendar_id)
        result.duration_seconds = time.monotonic() - started
        self._states[calendar_id] = SyncState.SUCCEEDED if result.success else SyncState.FAILED
        await self._close_log(log_id, result, started)

        logger.info(
            f"Sync of {calendar_id} {result.status.value}: {result.synced} synced, "
            f"{len(result.conflicts)} conflicts, {len(result.errors)} errors "
            f"({result.duration_seconds:.2f}s)"
        )
        return result

    async def get_conflicts(self, calendar_id: str) -> list[Conflict]:
        """Unresolved conflicts for a calendar."""
        return await self.calendars_db.get_conflicts(calendar_id)

    async def resolve_conflict(self, conflict: Conflict, mode: ResolutionMode | str) -> SyncResult:
        """
        Settle one conflict with an explicit mode, under the calendar's guard.

        Both sides are re-read first so the decision applies to current data.
        The conflict is cleared only if the resolution was written cleanly.
        """
        mode = ResolutionMode(mode)
        calendar_id = conflict.calendar_id
        try:
            with self.guard.hold(calendar_id), calendar_log_context(calendar_id):
                return await self._resolve_locked(conflict, mode)
        except AlreadyInProgress:
            logger.debug(f"Cannot resolve {conflict.uid}: sync in progress for {calendar_id}")
            return SyncResult(
                calendar_id=calendar_id,
                success=False,
                status=SyncStatus.ALREADY_IN_PROGRESS,
                conflicts=[conflict],
            )

    async def _resolve_locked(self, conflict: Conflict, mode: ResolutionMode) -> SyncResult:
        started = time.monotonic()
        calendar_id = conflict.calendar_id
        calendar = await self._load_calendar(calendar_id)
        self._states[calendar_id] = SyncState.RUNNING
        log_id = await self._open_log(calendar_id, "resolve")
        result = SyncResult(calendar_id=calendar_id, success=False, status=SyncStatus.FAILED)

        try:
            current = await self._refresh(calendar, conflict)
            change = self.resolver.resolve(current, mode)
            report = await self.applier.apply_resolution(calendar, change)
            result.synced = report.synced
            result.errors.extend(report.errors)
            if not result.errors:
                await self.calendars_db.clear_conflict(calendar_id, conflict.uid)
                result.success = True
                result.status = SyncStatus.SUCCEEDED
                logger.info(f"Resolved conflict {conflict.uid} in {calendar_id} with {mode.value}")
        except ConfigurationError:
            self._states[calendar_id] = SyncState.FAILED
            raise
        except CalBridgeError as e:
            result.errors.append(f"{conflict.uid}: {e}")

        result.conflicts = await self.calendars_db.get_conflicts(calendar_id)
        result.duration_seconds = time.monotonic() - started
        self._states[calendar_id] = SyncState.SUCCEEDED if result.success else SyncState.FAILED
        await self._close_log(log_id, result, started)
        return result

    async def _refresh(self, calendar: Calendar, conflict: Conflict) -> Conflict:
        local = await self.store.find_by_remote_uid(calendar.calendar_id, conflict.uid)
        remote = await self.remote.fetch_object(calendar, conflict.uid)
        return Conflict(
            uid=conflict.uid,
            calendar_id=conflict.calendar_id,
            conflict_type=conflict.conflict_type,
            local_entity=local or conflict.local_entity,
            remote_entity=remote or RemoteCalendarObject.tombstone(conflict.uid),
            detected_at=conflict.detected_at,
        )

    async def _open_log(self, calendar_id: str, sync_type: str) -> int | None:
        if self.sync_logs_db is None:
            return None
        return await self.sync_logs_db.create_log(calendar_id, sync_type)

    async def _close_log(
        self,
        log_id: int | None,
        result: SyncResult,
        started: float,
        error: str | None = None,
    ) -> None:
        if self.sync_logs_db is None or log_id is None:
            return
        stats = {
            "synced": result.synced,
            "conflicts": len(result.conflicts),
            "errors": len(result.errors),
            "full_resync": result.full_resync,
        }
        await self.sync_logs_db.update_log(
            log_id=log_id,
            status="success" if result.success else "error",
            duration_seconds=time.monotonic() - started,
            stats_json=json.dumps(stats),
            error_message=error or ("; ".join(result.errors) or None),
        )
