"""Collects the remote and local deltas for one sync run."""

import logging

from calbridge.core.errors import SyncTokenInvalid
from calbridge.core.models import (
    AppointmentRecord,
    Calendar,
    ChangeSet,
    ListErr,
    ListOk,
    RemoteCalendarObject,
)
from calbridge.sources.appointments import AppointmentStore
from calbridge.sources.caldav_client import RemoteCalendarClient
from calbridge.utils.db import CalendarsDB

logger = logging.getLogger(__name__)


class ChangeFetcher:
    """
    Builds a ``ChangeSet`` for a calendar.

    Remote changes come from an incremental listing when a sync token is known,
    falling back to a full listing when the server rejects the token. Local
    changes are the records edited since the last successful run.
    """

    def __init__(
        self,
        remote: RemoteCalendarClient,
        store: AppointmentStore,
        calendars_db: CalendarsDB | None = None,
    ):
        self.remote = remote
        self.store = store
        self.calendars_db = calendars_db

    async def fetch(self, calendar: Calendar) -> ChangeSet:
        """
        Raises:
            RemoteUnavailable: Listing failed for a retryable reason
            ConfigurationError: Credentials or server setup is broken
        """
        listing = await self._list_remote(calendar)

        linked = await self.store.list_linked(calendar.calendar_id)
        linked_by_uid = {record.remote_uid: record for record in linked}
        linked_by_href = {record.remote_href: record for record in linked if record.remote_href}

        changes = ChangeSet(
            full_snapshot=listing.full_snapshot,
            new_sync_token=listing.sync_token,
        )

        for obj in listing.objects:
            if obj.deleted:
                # Servers name objects freely; map the href back to the uid we linked
                known = linked_by_href.get(obj.href) or linked_by_uid.get(obj.uid)
                if known is None:
                    continue
                changes.remote_changes[known.remote_uid] = RemoteCalendarObject.tombstone(
                    known.remote_uid, href=obj.href
                )
                continue

            existing = linked_by_uid.get(obj.uid)
            if existing is not None and existing.etag and existing.etag == obj.etag:
                # Same version we last synced (possibly our own push echoed back)
                continue
            changes.remote_changes[obj.uid] = obj

        if listing.full_snapshot:
            present = {obj.uid for obj in listing.objects}
            for uid, record in linked_by_uid.items():
                if uid not in present:
                    changes.remote_changes[uid] = RemoteCalendarObject.tombstone(
                        uid, href=record.remote_href
                    )

        local = await self.store.list_changed_since(calendar.calendar_id, calendar.last_sync_at)
        self._split_local(local, changes)

        logger.info(
            f"Fetched changes for {calendar.calendar_id}: "
            f"{len(changes.remote_changes)} remote, {len(changes.local_changes)} local, "
            f"{len(changes.pending_creates)} new local"
            + (" (full snapshot)" if changes.full_snapshot else "")
        )
        return changes

    async def _list_remote(self, calendar: Calendar) -> ListOk:
        if calendar.sync_token:
            result = await self.remote.list_incremental(calendar, calendar.sync_token)
            if isinstance(result, ListErr) and isinstance(result.error, SyncTokenInvalid):
                logger.warning(
                    f"Sync token for {calendar.calendar_id} rejected, falling back to full listing: "
                    f"{result.error}"
                )
                if self.calendars_db is not None:
                    # A dead token must not be retried if the full listing fails too
                    await self.calendars_db.clear_sync_token(calendar.calendar_id)
                result = await self.remote.list_full(calendar)
        else:
            result = await self.remote.list_full(calendar)

        if isinstance(result, ListErr):
            raise result.error
        return result

    @staticmethod
    def _split_local(records: list[AppointmentRecord], changes: ChangeSet) -> None:
        for record in records:
            if record.remote_uid:
                changes.local_changes[record.remote_uid] = record
            else:
                changes.pending_creates.append(record)
