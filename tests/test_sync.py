"""End-to-end runs of the sync coordinator against the in-memory server."""

import asyncio
import json
import logging
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from calbridge.core.errors import ConfigurationError, RemoteUnavailable
from calbridge.core.models import (
    Calendar,
    ConflictType,
    ListErr,
    ResolutionMode,
    SyncState,
    SyncStatus,
)
from calbridge.utils.datetime_utils import utcnow
from calbridge.utils.logging import NO_CALENDAR, CalendarContextFilter

from conftest import CALENDAR_ID, linked_record, remote_event


async def _mark_synced_now(calendars_db, remote):
    await calendars_db.save_sync_state(CALENDAR_ID, remote.token, utcnow())


class TestScenarios:
    async def test_empty_calendar_first_run(self, coordinator, calendars_db, remote):
        result = await coordinator.run_sync(CALENDAR_ID)

        assert result.success is True
        assert result.status == SyncStatus.SUCCEEDED
        assert result.synced == 0
        assert result.conflicts == []
        assert result.errors == []
        calendar = await calendars_db.get_calendar(CALENDAR_ID)
        assert calendar.sync_token == "tok-0"
        assert calendar.last_sync_at is not None

    async def test_remote_only_object_is_pulled(self, coordinator, store, remote):
        remote.server_put(remote_event("A", summary="Site Visit"))

        result = await coordinator.run_sync(CALENDAR_ID)

        assert result.synced == 1
        records = await store.list_all(CALENDAR_ID)
        assert len(records) == 1
        assert records[0].remote_uid == "A"
        assert records[0].title == "Site Visit"
        assert records[0].etag == remote.objects["A"].etag
        assert records[0].in_sync

    async def test_local_only_change_is_pushed_with_etag(
        self, coordinator, store, calendars_db, remote
    ):
        record = await linked_record(store, remote, "B", title="Standup")
        captured_etag = record.etag
        await _mark_synced_now(calendars_db, remote)
        await store.update(record.id, title="Standup (moved)", updated_at=utcnow() + timedelta(seconds=1))

        result = await coordinator.run_sync(CALENDAR_ID)

        assert result.success is True
        assert result.synced == 1
        assert result.conflicts == []
        assert remote.puts == [{"uid": "B", "etag": captured_etag, "create": False}]
        assert remote.objects["B"].summary == "Standup (moved)"
        stored = await store.find_by_remote_uid(CALENDAR_ID, "B")
        assert stored.etag == remote.objects["B"].etag
        assert stored.in_sync

    async def test_skewed_edits_become_a_conflict(self, coordinator, store, calendars_db, remote):
        record = await linked_record(store, remote, "C", title="Review")
        await _mark_synced_now(calendars_db, remote)
        t2 = utcnow() + timedelta(seconds=1)
        await store.update(record.id, title="Review (local)", updated_at=t2)
        remote.server_put(
            remote_event("C", summary="Review (remote)", last_modified=t2 + timedelta(minutes=5))
        )

        result = await coordinator.run_sync(CALENDAR_ID)

        assert [c.uid for c in result.conflicts] == ["C"]
        assert result.conflicts[0].conflict_type == ConflictType.MODIFIED
        assert remote.puts == []
        assert remote.objects["C"].summary == "Review (remote)"
        local = await store.find_by_remote_uid(CALENDAR_ID, "C")
        assert local.title == "Review (local)"

    async def test_keep_remote_resolution_then_clean_run(
        self, coordinator, store, calendars_db, remote
    ):
        record = await linked_record(store, remote, "C", title="Review")
        await _mark_synced_now(calendars_db, remote)
        t2 = utcnow() + timedelta(seconds=1)
        await store.update(record.id, title="Review (local)", updated_at=t2)
        remote.server_put(
            remote_event("C", summary="Review (remote)", last_modified=t2 + timedelta(minutes=5))
        )
        first = await coordinator.run_sync(CALENDAR_ID)
        conflict = first.conflicts[0]

        resolved = await coordinator.resolve_conflict(conflict, ResolutionMode.KEEP_REMOTE)

        assert resolved.success is True
        local = await store.find_by_remote_uid(CALENDAR_ID, "C")
        assert local.title == "Review (remote)"
        assert local.etag == remote.objects["C"].etag

        after = await coordinator.run_sync(CALENDAR_ID)
        assert after.success is True
        assert after.conflicts == []
        assert await calendars_db.get_conflicts(CALENDAR_ID) == []


class TestIdempotenceAndEchoes:
    async def test_second_run_after_pull_is_a_no_op(self, coordinator, store, remote):
        remote.server_put(remote_event("A"))
        await coordinator.run_sync(CALENDAR_ID)

        result = await coordinator.run_sync(CALENDAR_ID)

        assert result.synced == 0
        assert len(await store.list_all(CALENDAR_ID)) == 1

    async def test_own_push_is_not_pulled_back(self, coordinator, store, calendars_db, remote):
        record = await linked_record(store, remote, "B")
        await _mark_synced_now(calendars_db, remote)
        await store.update(record.id, title="Edited", updated_at=utcnow() + timedelta(seconds=1))
        await coordinator.run_sync(CALENDAR_ID)
        puts_before = len(remote.puts)

        result = await coordinator.run_sync(CALENDAR_ID)

        assert result.synced == 0
        assert len(remote.puts) == puts_before
        local = await store.find_by_remote_uid(CALENDAR_ID, "B")
        assert local.title == "Edited"

    async def test_local_create_is_pushed_once(self, coordinator, store, remote):
        record = await store.create(CALENDAR_ID, "Dentist", utcnow(), utcnow() + timedelta(hours=1))

        first = await coordinator.run_sync(CALENDAR_ID)
        second = await coordinator.run_sync(CALENDAR_ID)

        assert first.synced == 1
        assert second.synced == 0
        uid = f"{record.id}@calbridge"
        assert list(remote.objects) == [uid]
        linked = await store.get(record.id)
        assert linked.remote_uid == uid
        assert remote.puts[0] == {"uid": uid, "etag": None, "create": True}


class TestDeletions:
    async def test_full_snapshot_removes_vanished_objects(self, coordinator, store, remote):
        await linked_record(store, remote, "A")
        await linked_record(store, remote, "B")
        remote.objects.pop("B")

        result = await coordinator.run_sync(CALENDAR_ID)

        assert result.full_resync is True
        assert await store.find_by_remote_uid(CALENDAR_ID, "B") is None
        assert await store.find_by_remote_uid(CALENDAR_ID, "A") is not None

    async def test_incremental_tombstone_deletes_local_row(
        self, coordinator, store, calendars_db, remote
    ):
        await linked_record(store, remote, "A")
        await _mark_synced_now(calendars_db, remote)
        remote.server_delete("A")

        result = await coordinator.run_sync(CALENDAR_ID)

        assert result.success is True
        assert result.synced == 1
        assert await store.find_by_remote_uid(CALENDAR_ID, "A") is None

    async def test_local_deletion_is_pushed(self, coordinator, store, calendars_db, remote):
        record = await linked_record(store, remote, "A")
        etag = record.etag
        await _mark_synced_now(calendars_db, remote)
        await store.update(record.id, deleted=True, updated_at=utcnow() + timedelta(seconds=1))

        result = await coordinator.run_sync(CALENDAR_ID)

        assert result.synced == 1
        assert remote.deletes == [{"uid": "A", "etag": etag}]
        assert "A" not in remote.objects
        assert await store.get(record.id) is None

    async def test_remote_deletion_of_locally_edited_record_is_local_only_conflict(
        self, coordinator, store, calendars_db, remote
    ):
        record = await linked_record(store, remote, "A")
        await _mark_synced_now(calendars_db, remote)
        await store.update(record.id, title="Still needed", updated_at=utcnow() + timedelta(seconds=1))
        remote.server_delete("A")

        result = await coordinator.run_sync(CALENDAR_ID)

        assert [(c.uid, c.conflict_type) for c in result.conflicts] == [
            ("A", ConflictType.LOCAL_ONLY)
        ]
        assert await store.get(record.id) is not None


class TestConflictPersistence:
    async def _make_conflict(self, coordinator, store, calendars_db, remote):
        record = await linked_record(store, remote, "C", title="Review")
        await _mark_synced_now(calendars_db, remote)
        t2 = utcnow() + timedelta(seconds=1)
        await store.update(record.id, title="Review (local)", updated_at=t2)
        remote.server_put(
            remote_event("C", summary="Review (remote)", last_modified=t2 + timedelta(minutes=5))
        )
        return await coordinator.run_sync(CALENDAR_ID)

    async def test_conflict_reported_exactly_once_until_resolved(
        self, coordinator, store, calendars_db, remote
    ):
        first = await self._make_conflict(coordinator, store, calendars_db, remote)
        second = await coordinator.run_sync(CALENDAR_ID)

        assert [c.uid for c in first.conflicts] == ["C"]
        assert [c.uid for c in second.conflicts] == ["C"]

    async def test_new_remote_edit_refreshes_pending_conflict(
        self, coordinator, store, calendars_db, remote
    ):
        await self._make_conflict(coordinator, store, calendars_db, remote)
        remote.server_put(remote_event("C", summary="Review (remote, again)"))

        result = await coordinator.run_sync(CALENDAR_ID)

        assert [c.uid for c in result.conflicts] == ["C"]
        assert result.conflicts[0].remote_entity.summary == "Review (remote, again)"
        local = await store.find_by_remote_uid(CALENDAR_ID, "C")
        assert local.title == "Review (local)"

    async def test_keep_local_resolution_force_pushes(
        self, coordinator, store, calendars_db, remote
    ):
        result = await self._make_conflict(coordinator, store, calendars_db, remote)

        resolved = await coordinator.resolve_conflict(result.conflicts[0], "keep-local")

        assert resolved.success is True
        assert remote.puts[-1] == {"uid": "C", "etag": None, "create": False}
        assert remote.objects["C"].summary == "Review (local)"
        local = await store.find_by_remote_uid(CALENDAR_ID, "C")
        assert local.in_sync
        assert local.etag == remote.objects["C"].etag

    async def test_merge_resolution_writes_both_sides(
        self, coordinator, store, calendars_db, remote
    ):
        result = await self._make_conflict(coordinator, store, calendars_db, remote)

        resolved = await coordinator.resolve_conflict(result.conflicts[0], ResolutionMode.MERGE)

        assert resolved.success is True
        local = await store.find_by_remote_uid(CALENDAR_ID, "C")
        assert local.title == "Review (local)"
        assert "remote title: Review (remote)" in local.description
        assert remote.objects["C"].description == local.description
        assert await calendars_db.get_conflicts(CALENDAR_ID) == []


class TestFailureHandling:
    async def test_invalid_token_falls_back_to_full_listing(
        self, coordinator, store, calendars_db, remote
    ):
        remote.server_put(remote_event("A"))
        await calendars_db.save_sync_state(CALENDAR_ID, "expired", utcnow() - timedelta(days=1))

        result = await coordinator.run_sync(CALENDAR_ID)

        assert result.success is True
        assert result.full_resync is True
        assert remote.list_calls == ["incremental", "full"]
        calendar = await calendars_db.get_calendar(CALENDAR_ID)
        assert calendar.sync_token == remote.token
        assert await store.find_by_remote_uid(CALENDAR_ID, "A") is not None

    async def test_retryable_error_keeps_sync_state(self, coordinator, calendars_db, remote):
        remote.list_error = RemoteUnavailable("503 Service Unavailable")

        result = await coordinator.run_sync(CALENDAR_ID)

        assert result.success is False
        assert result.status == SyncStatus.FAILED
        assert result.errors == ["503 Service Unavailable"]
        calendar = await calendars_db.get_calendar(CALENDAR_ID)
        assert calendar.sync_token is None
        assert calendar.last_sync_at is None

    async def test_per_entity_failure_is_isolated(self, coordinator, store, calendars_db, remote):
        start = utcnow()
        failing = await store.create(CALENDAR_ID, "Broken", start, start + timedelta(hours=1))
        working = await store.create(CALENDAR_ID, "Fine", start, start + timedelta(hours=1))
        remote.put_errors[f"{failing.id}@calbridge"] = RemoteUnavailable("502 Bad Gateway")

        result = await coordinator.run_sync(CALENDAR_ID)

        assert result.success is False
        assert result.synced == 1
        assert result.errors == [f"local:{failing.id}: 502 Bad Gateway"]
        assert f"{working.id}@calbridge" in remote.objects
        calendar = await calendars_db.get_calendar(CALENDAR_ID)
        assert calendar.sync_token is None

    async def test_configuration_error_propagates(self, coordinator, logs_db, remote):
        remote.list_error = ConfigurationError("CalDAV authentication failed")

        with pytest.raises(ConfigurationError):
            await coordinator.run_sync(CALENDAR_ID)

        assert not coordinator.guard.is_held(CALENDAR_ID)
        assert coordinator.state(CALENDAR_ID) == SyncState.FAILED
        logs = await logs_db.get_logs(CALENDAR_ID)
        assert logs[0]["status"] == "error"
        assert logs[0]["error_message"] == "CalDAV authentication failed"

    async def test_unknown_calendar_is_a_configuration_error(self, coordinator):
        with pytest.raises(ConfigurationError):
            await coordinator.run_sync("https://caldav.example.com/calendars/me/nope/")

    async def test_exception_mid_run_releases_guard(self, coordinator, calendars_db, remote):
        remote.list_exception = RuntimeError("boom")

        failed = await coordinator.run_sync(CALENDAR_ID)

        assert failed.success is False
        assert failed.errors == ["Unexpected error: boom"]
        assert not coordinator.guard.is_held(CALENDAR_ID)

        remote.list_exception = None
        recovered = await coordinator.run_sync(CALENDAR_ID)
        assert recovered.success is True

    async def test_cancellation_releases_guard_and_keeps_state(
        self, coordinator, calendars_db, logs_db, remote
    ):
        remote.gate = asyncio.Event()
        task = asyncio.create_task(coordinator.run_sync(CALENDAR_ID))
        await remote.listing_started.wait()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not coordinator.guard.is_held(CALENDAR_ID)
        calendar = await calendars_db.get_calendar(CALENDAR_ID)
        assert calendar.sync_token is None
        logs = await logs_db.get_logs(CALENDAR_ID)
        assert [(log["status"], log["error_message"]) for log in logs] == [
            ("error", "Sync cancelled")
        ]

    async def test_rejected_token_is_dropped_even_if_full_listing_fails(
        self, coordinator, calendars_db, remote
    ):
        last_sync = utcnow() - timedelta(days=1)
        await calendars_db.save_sync_state(CALENDAR_ID, "expired", last_sync)
        remote.list_full = AsyncMock(
            return_value=ListErr(RemoteUnavailable("503 Service Unavailable"))
        )

        result = await coordinator.run_sync(CALENDAR_ID)

        assert result.success is False
        calendar = await calendars_db.get_calendar(CALENDAR_ID)
        assert calendar.sync_token is None
        assert calendar.last_sync_at == last_sync

    async def test_disabled_calendar_is_not_synced(self, coordinator, calendars_db, remote):
        await calendars_db.register_calendar(
            Calendar(calendar_id=CALENDAR_ID, display_name="Work", sync_enabled=False)
        )
        remote.server_put(remote_event("A"))

        result = await coordinator.run_sync(CALENDAR_ID)

        assert result.success is False
        assert result.status == SyncStatus.FAILED
        assert result.errors == [f"Sync is disabled for calendar {CALENDAR_ID}"]
        assert remote.list_calls == []
        assert coordinator.state(CALENDAR_ID) == SyncState.FAILED
        assert not coordinator.guard.is_held(CALENDAR_ID)

class TestExclusiveExecution:
    async def test_overlapping_run_reports_already_in_progress(self, coordinator, remote):
        remote.gate = asyncio.Event()
        first = asyncio.create_task(coordinator.run_sync(CALENDAR_ID))
        await remote.listing_started.wait()

        second = await coordinator.run_sync(CALENDAR_ID)

        assert second.status == SyncStatus.ALREADY_IN_PROGRESS
        assert second.success is False
        assert second.errors == []
        assert coordinator.state(CALENDAR_ID) == SyncState.RUNNING

        remote.gate.set()
        result = await first
        assert result.status == SyncStatus.SUCCEEDED
        assert remote.list_calls == ["full"]

    async def test_other_calendars_are_not_blocked(self, coordinator, calendars_db, remote):
        other_id = "https://caldav.example.com/calendars/me/home/"
        await calendars_db.register_calendar(Calendar(calendar_id=other_id, display_name="Home"))
        remote.gate = asyncio.Event()
        first = asyncio.create_task(coordinator.run_sync(CALENDAR_ID))
        await remote.listing_started.wait()

        second = asyncio.create_task(coordinator.run_sync(other_id))
        await asyncio.sleep(0)
        remote.gate.set()
        results = await asyncio.gather(first, second)

        assert [r.status for r in results] == [SyncStatus.SUCCEEDED, SyncStatus.SUCCEEDED]


async def test_runs_are_logged(coordinator, logs_db, remote):
    remote.server_put(remote_event("A"))

    await coordinator.run_sync(CALENDAR_ID, sync_type="scheduled")

    logs = await logs_db.get_logs(CALENDAR_ID)
    assert len(logs) == 1
    assert logs[0]["sync_type"] == "scheduled"
    assert logs[0]["status"] == "success"
    assert json.loads(logs[0]["stats_json"])["synced"] == 1


class TestReadOnlyCalendars:
    async def test_pending_local_edit_is_not_overwritten_by_later_remote_edit(
        self, coordinator, store, calendars_db, remote
    ):
        await calendars_db.register_calendar(
            Calendar(calendar_id=CALENDAR_ID, display_name="Work", read_only=True)
        )
        record = await linked_record(store, remote, "R", title="Original")
        await calendars_db.save_sync_state(
            CALENDAR_ID, remote.token, utcnow() - timedelta(minutes=5)
        )
        await store.update(record.id, title="Local edit", updated_at=utcnow() - timedelta(minutes=1))

        first = await coordinator.run_sync(CALENDAR_ID)

        assert first.success is True
        assert remote.puts == []
        assert not (await store.get(record.id)).in_sync

        remote.server_put(
            remote_event("R", summary="Remote edit", last_modified=utcnow() + timedelta(minutes=10))
        )
        second = await coordinator.run_sync(CALENDAR_ID)

        assert [(c.uid, c.conflict_type) for c in second.conflicts] == [
            ("R", ConflictType.MODIFIED)
        ]
        assert (await store.get(record.id)).title == "Local edit"

    async def test_remote_deletion_of_pending_local_edit_is_a_conflict(
        self, coordinator, store, calendars_db, remote
    ):
        await calendars_db.register_calendar(
            Calendar(calendar_id=CALENDAR_ID, display_name="Work", read_only=True)
        )
        record = await linked_record(store, remote, "R", title="Original")
        await calendars_db.save_sync_state(
            CALENDAR_ID, remote.token, utcnow() - timedelta(minutes=5)
        )
        await store.update(record.id, title="Local edit", updated_at=utcnow() - timedelta(minutes=1))
        await coordinator.run_sync(CALENDAR_ID)

        remote.server_delete("R")
        result = await coordinator.run_sync(CALENDAR_ID)

        assert [(c.uid, c.conflict_type) for c in result.conflicts] == [
            ("R", ConflictType.LOCAL_ONLY)
        ]
        assert await store.get(record.id) is not None


class _Collect(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.calendars: list[str] = []
        self.addFilter(CalendarContextFilter())

    def emit(self, record):
        self.calendars.append(record.calendar)


async def test_records_logged_during_a_run_name_the_calendar(coordinator, remote):
    remote.server_put(remote_event("A"))
    handler = _Collect()
    package_logger = logging.getLogger("calbridge")
    previous_level = package_logger.level
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG)
    try:
        await coordinator.run_sync(CALENDAR_ID)
        package_logger.info("outside any run")
    finally:
        package_logger.removeHandler(handler)
        package_logger.setLevel(previous_level)

    *during, after = handler.calendars
    assert during and set(during) == {CALENDAR_ID}
    assert after == NO_CALENDAR
