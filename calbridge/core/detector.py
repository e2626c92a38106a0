"""Classifies the entities of a change set."""

import logging

from calbridge.core.models import (
    AppointmentRecord,
    ChangeSet,
    Classification,
    Conflict,
    ConflictType,
    RemoteCalendarObject,
)

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 60


def conflict_type_for(local: AppointmentRecord, remote: RemoteCalendarObject) -> ConflictType:
    if remote.deleted:
        return ConflictType.LOCAL_ONLY
    if local.deleted:
        return ConflictType.REMOTE_ONLY
    return ConflictType.MODIFIED


class ConflictDetector:
    """
    Sorts keyed entities into push, pull, conflict or unchanged.

    Timestamps are the only conflict signal at read time: a local edit and a
    remote edit further apart than ``tolerance_seconds`` are a conflict, closer
    than that the remote copy wins and the local push is dropped.
    """

    def __init__(self, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS):
        self.tolerance_seconds = tolerance_seconds

    def classify(
        self,
        changes: ChangeSet,
        calendar_id: str,
        pending: dict[str, Conflict] | None = None,
    ) -> Classification:
        """
        Args:
            changes: Deltas from the change fetcher
            calendar_id: Calendar the deltas belong to
            pending: Unresolved conflicts from earlier runs, keyed by uid. Any
                     new change to one of these entities refreshes the conflict
                     instead of being applied.
        """
        pending = pending or {}
        result = Classification()

        for uid, local in changes.local_changes.items():
            remote = changes.remote_changes.get(uid)

            if remote is None:
                if uid in pending:
                    result.conflicts.append(self._refresh(pending[uid], local=local))
                else:
                    result.to_push.append(local)
                continue

            if remote.deleted and local.deleted:
                result.unchanged.append(uid)
                continue

            if remote.deleted or local.deleted:
                result.conflicts.append(
                    Conflict(
                        uid=uid,
                        calendar_id=calendar_id,
                        conflict_type=conflict_type_for(local, remote),
                        local_entity=local,
                        remote_entity=remote,
                    )
                )
                continue

            if uid in pending or self._diverged(local, remote):
                result.conflicts.append(
                    Conflict(
                        uid=uid,
                        calendar_id=calendar_id,
                        conflict_type=ConflictType.MODIFIED,
                        local_entity=local,
                        remote_entity=remote,
                    )
                )
            else:
                result.to_pull.append(remote)

        for uid, remote in changes.remote_changes.items():
            if uid in changes.local_changes:
                continue
            if uid in pending:
                result.conflicts.append(self._refresh(pending[uid], remote=remote))
            else:
                result.to_pull.append(remote)

        if result.conflicts:
            logger.info(f"Detected {len(result.conflicts)} conflicts in {calendar_id}")
        logger.debug(
            f"Classified {calendar_id}: push={len(result.to_push)} pull={len(result.to_pull)} "
            f"conflicts={len(result.conflicts)} unchanged={len(result.unchanged)}"
        )
        return result

    def _diverged(self, local: AppointmentRecord, remote: RemoteCalendarObject) -> bool:
        if remote.last_modified is None:
            # Nothing to compare against; let a human decide
            return True
        delta = abs((local.updated_at - remote.last_modified).total_seconds())
        return delta > self.tolerance_seconds

    @staticmethod
    def _refresh(
        conflict: Conflict,
        local: AppointmentRecord | None = None,
        remote: RemoteCalendarObject | None = None,
    ) -> Conflict:
        local = local or conflict.local_entity
        remote = remote or conflict.remote_entity
        conflict_type = conflict.conflict_type
        if local is not None and remote is not None:
            conflict_type = conflict_type_for(local, remote)
        return Conflict(
            uid=conflict.uid,
            calendar_id=conflict.calendar_id,
            conflict_type=conflict_type,
            local_entity=local,
            remote_entity=remote,
        )
