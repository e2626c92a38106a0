"""Applies classified changes to the local store and the CalDAV server."""

import logging

from calbridge.core.errors import ConfigurationError, RemoteConflict
from calbridge.core.models import (
    ApplyReport,
    AppointmentRecord,
    Calendar,
    ChangeSet,
    Classification,
    Conflict,
    RemoteCalendarObject,
    ResolutionMode,
    ResolvedChange,
)
from calbridge.core.detector import conflict_type_for
from calbridge.sources.appointments import AppointmentStore
from calbridge.sources.caldav_client import RemoteCalendarClient
from calbridge.utils.converters import record_to_remote, remote_to_record

logger = logging.getLogger(__name__)


class ChangeApplier:
    """
    Writes non-conflicting changes in both directions.

    Every step re-reads the store before writing, so applying the same change
    set twice leaves the same state as applying it once. A failure on one
    entity is recorded in the report and the batch carries on.
    """

    def __init__(
        self,
        remote: RemoteCalendarClient,
        store: AppointmentStore,
        uid_domain: str = "calbridge",
    ):
        self.remote = remote
        self.store = store
        self.uid_domain = uid_domain

    def uid_for(self, record: AppointmentRecord) -> str:
        """Deterministic UID for a locally created appointment."""
        return f"{record.id}@{self.uid_domain}"

    async def apply(
        self,
        calendar: Calendar,
        changes: ChangeSet,
        classification: Classification,
    ) -> ApplyReport:
        report = ApplyReport()

        # Creations first so their uids exist before anything else runs
        for record in changes.pending_creates:
            await self._guarded(report, f"local:{record.id}", self._create(calendar, record, report))

        for obj in classification.to_pull:
            # Within-tolerance pulls were weighed against the local edit already
            weighed = obj.uid in changes.local_changes
            await self._guarded(
                report, obj.uid, self._pull(calendar, obj, report, overwrite_unsynced=weighed)
            )

        for record in classification.to_push:
            await self._guarded(report, record.remote_uid, self._push(calendar, record, report))

        for uid in classification.unchanged:
            local = changes.local_changes.get(uid)
            if local is not None and local.deleted:
                # Deleted on both sides; drop the local tombstone row
                await self._guarded(report, uid, self.store.delete(local))

        logger.info(
            f"Applied changes to {calendar.calendar_id}: {report.synced} synced, "
            f"{len(report.conflicts)} write conflicts, {len(report.errors)} errors"
        )
        return report

    async def apply_resolution(self, calendar: Calendar, change: ResolvedChange) -> ApplyReport:
        """
        Apply a resolver decision.

        Pushes are force-writes without an etag precondition; pulls overwrite
        the local row.
        """
        report = ApplyReport()

        if change.push is not None:
            if calendar.read_only:
                report.errors.append(f"{change.uid}: calendar is read-only, cannot push")
                return report
            await self._guarded(report, change.uid, self._force_push(calendar, change, report))

        if change.pull is not None:
            await self._guarded(report, change.uid, self._pull(calendar, change.pull, report, force=True))

        return report

    async def _guarded(self, report: ApplyReport, key: str | None, step) -> None:
        try:
            await step
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(f"Failed to apply change for {key}: {e}")
            report.errors.append(f"{key}: {e}")

    async def _create(self, calendar: Calendar, record: AppointmentRecord, report: ApplyReport) -> None:
        current = await self.store.get(record.id)
        if current is None or current.remote_uid:
            # Gone, or linked by an earlier pass
            return

        if current.deleted:
            # Never reached the server
            await self.store.delete(current)
            return

        if calendar.read_only:
            logger.debug(f"Skipping create of {current.id}: calendar is read-only")
            return

        uid = self.uid_for(current)
        obj = record_to_remote(current, uid=uid)
        obj.href = None
        try:
            stored = await self.remote.put_object(calendar, obj, create=True)
        except RemoteConflict:
            # An earlier attempt created it but never got to link it
            existing = await self.remote.fetch_object(calendar, uid)
            if existing is None:
                raise
            logger.info(f"Remote object {uid} already exists, linking and updating it")
            obj.href = existing.href
            stored = await self.remote.put_object(calendar, obj, etag=existing.etag)

        await self.store.mark_synced(current, uid, stored.etag, stored.href)
        report.synced += 1
        logger.debug(f"Created remote object {uid} for appointment {current.id}")

    async def _pull(
        self,
        calendar: Calendar,
        obj: RemoteCalendarObject,
        report: ApplyReport,
        force: bool = False,
        overwrite_unsynced: bool = False,
    ) -> None:
        existing = await self.store.find_by_remote_uid(calendar.calendar_id, obj.uid)

        if (
            not force
            and not overwrite_unsynced
            and existing is not None
            and not existing.in_sync
            and not (obj.deleted and existing.deleted)
        ):
            # Local edit still pending (e.g. never pushed to a read-only calendar)
            conflict = Conflict(
                uid=obj.uid,
                calendar_id=calendar.calendar_id,
                conflict_type=conflict_type_for(existing, obj),
                local_entity=existing,
                remote_entity=obj,
            )
            report.conflicts.append(conflict)
            logger.info(
                f"Remote change to {obj.uid} meets an unsynced local edit, "
                f"recorded as {conflict.conflict_type.value} conflict"
            )
            return

        if obj.deleted:
            if existing is not None:
                await self.store.delete(existing)
                report.synced += 1
                logger.debug(f"Deleted local appointment {existing.id} (remote {obj.uid} removed)")
            return

        if (
            not force
            and existing is not None
            and existing.in_sync
            and existing.etag
            and existing.etag == obj.etag
        ):
            return

        record = remote_to_record(obj, calendar.calendar_id, existing)
        record.synced_at = record.updated_at
        await self.store.upsert(record)
        report.synced += 1
        logger.debug(f"Pulled remote object {obj.uid} into appointment {record.id}")

    async def _push(self, calendar: Calendar, record: AppointmentRecord, report: ApplyReport) -> None:
        current = await self.store.get(record.id)
        if current is None or current.in_sync:
            return

        if calendar.read_only:
            logger.debug(f"Skipping push of {current.remote_uid}: calendar is read-only")
            return

        uid = current.remote_uid
        try:
            if current.deleted:
                await self.remote.delete_object(
                    calendar, uid, etag=current.etag, href=current.remote_href
                )
                await self.store.delete(current)
            else:
                stored = await self.remote.put_object(
                    calendar, record_to_remote(current), etag=current.etag
                )
                await self.store.mark_synced(current, uid, stored.etag, stored.href)
        except RemoteConflict:
            await self._reclassify(calendar, current, report)
            return

        report.synced += 1
        logger.debug(f"Pushed appointment {current.id} to remote object {uid}")

    async def _reclassify(self, calendar: Calendar, record: AppointmentRecord, report: ApplyReport) -> None:
        """Turn a failed write precondition into a conflict with the current remote copy."""
        uid = record.remote_uid
        remote = await self.remote.fetch_object(calendar, uid)
        if remote is None:
            if record.deleted:
                await self.store.delete(record)
                return
            remote = RemoteCalendarObject.tombstone(uid, href=record.remote_href)

        conflict = Conflict(
            uid=uid,
            calendar_id=calendar.calendar_id,
            conflict_type=conflict_type_for(record, remote),
            local_entity=record,
            remote_entity=remote,
        )
        report.conflicts.append(conflict)
        logger.info(f"Remote object {uid} changed during sync, recorded as {conflict.conflict_type.value} conflict")

    async def _force_push(self, calendar: Calendar, change: ResolvedChange, report: ApplyReport) -> None:
        record = change.push
        if change.mode == ResolutionMode.MERGE:
            record = await self.store.upsert(record)

        if record.deleted:
            await self.remote.delete_object(calendar, change.uid, href=record.remote_href)
            if record.id is not None:
                await self.store.delete(record)
        else:
            stored = await self.remote.put_object(calendar, record_to_remote(record, uid=change.uid))
            await self.store.mark_synced(record, change.uid, stored.etag, stored.href)

        report.synced += 1
        logger.debug(f"Force-pushed {change.uid} ({change.mode.value})")
