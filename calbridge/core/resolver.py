"""Turns a conflict plus an explicit resolution mode into a one-sided change."""

import logging
from dataclasses import dataclass, replace

from calbridge.core.models import (
    AppointmentRecord,
    Conflict,
    RemoteCalendarObject,
    ResolutionMode,
    ResolvedChange,
)
from calbridge.utils.datetime_utils import to_iso, utcnow

logger = logging.getLogger(__name__)

ANNOTATION_HEADER = "[calbridge merge] values not kept:"

# AppointmentRecord field -> RemoteCalendarObject field
_MERGE_FIELDS = {
    "title": "summary",
    "location": "location",
    "start_time": "dtstart",
    "end_time": "dtend",
}


@dataclass
class MergePolicy:
    """
    Field-level rules for ``merge``.

    Each of ``title``, ``location``, ``start_time`` and ``end_time`` names the
    winning side ('local' or 'remote'). Differing descriptions are joined with
    ``description_separator``, local text first. With ``annotate`` on, every
    losing value is appended to the description so nothing is silently lost.
    """

    title: str = "local"
    location: str = "local"
    start_time: str = "local"
    end_time: str = "local"
    description_separator: str = "\n\n---\n\n"
    annotate: bool = True

    @classmethod
    def from_config(cls, merge_config) -> "MergePolicy":
        return cls(
            title=merge_config.title,
            location=merge_config.location,
            start_time=merge_config.start_time,
            end_time=merge_config.end_time,
            description_separator=merge_config.description_separator,
            annotate=merge_config.annotate,
        )

    def winner(self, field_name: str) -> str:
        return getattr(self, field_name)


def _render(value) -> str:
    if value is None:
        return "(none)"
    if hasattr(value, "isoformat"):
        return to_iso(value)
    return str(value)


class ConflictResolver:
    def __init__(self, policy: MergePolicy | None = None):
        self.policy = policy or MergePolicy()

    def resolve(self, conflict: Conflict, mode: ResolutionMode | str) -> ResolvedChange:
        """
        Args:
            conflict: Conflict with current local and remote entities
            mode: 'keep-local', 'keep-remote' or 'merge'

        Raises:
            ValueError: Unknown mode, or the side to keep is missing
        """
        mode = ResolutionMode(mode)
        local = conflict.local_entity
        remote = conflict.remote_entity or RemoteCalendarObject.tombstone(conflict.uid)

        if mode == ResolutionMode.KEEP_LOCAL:
            if local is None:
                raise ValueError(f"Conflict {conflict.uid} has no local entity to keep")
            return ResolvedChange(uid=conflict.uid, mode=mode, push=local)

        if mode == ResolutionMode.KEEP_REMOTE:
            return ResolvedChange(uid=conflict.uid, mode=mode, pull=remote)

        # Merge: a deletion on one side means the other side survives as-is
        if local is None or local.deleted:
            return ResolvedChange(uid=conflict.uid, mode=mode, pull=remote)
        if remote.deleted:
            return ResolvedChange(uid=conflict.uid, mode=mode, push=local)

        merged = self.merge(local, remote)
        logger.debug(f"Merged conflict {conflict.uid}")
        return ResolvedChange(uid=conflict.uid, mode=mode, push=merged)

    def merge(self, local: AppointmentRecord, remote: RemoteCalendarObject) -> AppointmentRecord:
        """Build the derived record written to both sides."""
        values = {}
        lost = []
        for field_name, remote_name in _MERGE_FIELDS.items():
            local_value = getattr(local, field_name)
            remote_value = getattr(remote, remote_name)
            if self.policy.winner(field_name) == "remote" and remote_value is not None:
                values[field_name] = remote_value
                loser, loser_value = "local", local_value
            else:
                values[field_name] = local_value
                loser, loser_value = "remote", remote_value
            if loser_value != values[field_name]:
                lost.append(f"{loser} {field_name}: {_render(loser_value)}")

        description = self._merge_descriptions(local.description, remote.description)
        if self.policy.annotate and lost:
            block = "\n".join([ANNOTATION_HEADER, *lost])
            description = f"{description}\n\n{block}" if description else block

        return replace(
            local,
            **values,
            description=description,
            remote_uid=local.remote_uid or remote.uid,
            updated_at=utcnow(),
            deleted=False,
        )

    def _merge_descriptions(self, local: str | None, remote: str | None) -> str | None:
        if not local or not remote:
            return local or remote
        if local == remote or remote in local:
            return local
        return f"{local}{self.policy.description_separator}{remote}"
