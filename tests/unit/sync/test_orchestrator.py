"""Tests for the sync run orchestrator.

Uses :class:`tests.fakes.FakeRemoteCalendar` as every user's calendar and a
real SQLite store, so each test follows one or more complete runs from
listing users through the final flush.
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from schedule_sync.calendar.exceptions import CalendarAuthError
from schedule_sync.exceptions import StoreError
from schedule_sync.log import current_run_label
from schedule_sync.models.sync import EventMapping
from schedule_sync.store.sqlite import SQLiteStateStore
from schedule_sync.sync.accounts import AccountResolver
from schedule_sync.sync.executor import BatchExecutor
from schedule_sync.sync.orchestrator import LAST_SYNC_KEY, SyncOrchestrator, SyncState
from tests.fakes import (
    FakeEventSource,
    FakeRemoteCalendar,
    link_user,
    make_desired_event,
    make_resolver,
)

USER = "user-1"


def _orchestrator(
    store: SQLiteStateStore,
    source: FakeEventSource,
    calendar: FakeRemoteCalendar,
    **kwargs: object,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        store,
        source,
        make_resolver(store, calendar),
        executor=BatchExecutor(chunk_delay=0.0),
        **kwargs,  # type: ignore[arg-type]
    )


def _remote_ids(store: SQLiteStateStore, user_id: str = USER) -> dict[str, str]:
    return {m.desired_event_id: m.remote_event_id for m in store.find_mappings_for_user(user_id)}


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class TestReconciliation:
    """End-to-end behaviour of consecutive runs."""

    @pytest.mark.asyncio
    async def test_first_run_creates_everything(self, store: SQLiteStateStore) -> None:
        """Unmapped events are created and their mappings persisted."""
        link_user(store, USER, "cal-1")
        calendar = FakeRemoteCalendar()
        events = [make_desired_event(f"ev-{i}") for i in range(3)]
        orchestrator = _orchestrator(store, FakeEventSource({USER: events}), calendar)

        report = await orchestrator.run_once()

        assert report is not None
        assert report.status == "completed"
        assert report.synced_users == 1
        assert report.totals.created == 3
        assert calendar.method_counts["POST"] == 3
        mapped = _remote_ids(store)
        assert set(mapped) == {"ev-0", "ev-1", "ev-2"}
        assert set(mapped.values()) == calendar.active_event_ids()

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(self, store: SQLiteStateStore) -> None:
        """A repeated run with no changes creates nothing and keeps every mapping."""
        link_user(store, USER, "cal-1")
        calendar = FakeRemoteCalendar()
        events = [make_desired_event(f"ev-{i}") for i in range(3)]
        orchestrator = _orchestrator(store, FakeEventSource({USER: events}), calendar)
        await orchestrator.run_once()
        before = _remote_ids(store)
        calendar.reset_counters()

        report = await orchestrator.run_once()

        assert report is not None
        assert calendar.method_counts["POST"] == 0
        assert calendar.method_counts["PUT"] == 3
        assert calendar.method_counts["DELETE"] == 0
        assert _remote_ids(store) == before
        assert len(calendar.events) == 3

    @pytest.mark.asyncio
    async def test_out_of_band_delete_converges(self, store: SQLiteStateStore) -> None:
        """A remotely deleted event is recreated once, then only updated."""
        link_user(store, USER, "cal-1")
        calendar = FakeRemoteCalendar()
        orchestrator = _orchestrator(store, FakeEventSource({USER: [make_desired_event("ev-1")]}), calendar)
        await orchestrator.run_once()
        original = _remote_ids(store)["ev-1"]
        calendar.delete_out_of_band(original)
        calendar.reset_counters()

        await orchestrator.run_once()

        recreated = _remote_ids(store)["ev-1"]
        assert recreated != original
        assert calendar.method_counts["POST"] == 1
        assert calendar.method_counts["PUT"] == 0

        calendar.reset_counters()
        await orchestrator.run_once()

        assert _remote_ids(store)["ev-1"] == recreated
        assert calendar.method_counts["POST"] == 0
        assert calendar.method_counts["PUT"] == 1

    @pytest.mark.asyncio
    async def test_cancelled_event_deleted_and_recreated(self, store: SQLiteStateStore) -> None:
        """A cancelled remote event is deleted explicitly and replaced."""
        link_user(store, USER, "cal-1")
        calendar = FakeRemoteCalendar()
        orchestrator = _orchestrator(store, FakeEventSource({USER: [make_desired_event("ev-1")]}), calendar)
        await orchestrator.run_once()
        original = _remote_ids(store)["ev-1"]
        calendar.cancel_out_of_band(original)
        calendar.reset_counters()

        report = await orchestrator.run_once()

        assert report is not None
        assert calendar.method_counts["DELETE"] == 1
        assert original not in calendar.events
        assert _remote_ids(store)["ev-1"] in calendar.active_event_ids()
        assert report.users[0].stale == 1

    @pytest.mark.asyncio
    async def test_mixed_stale_unmapped_and_mapped(self, store: SQLiteStateStore) -> None:
        """Stale, unmapped and mapped events end with one live mapping each.

        The stale mapping is dropped without a remote call and its event is
        recreated in the same run, so every desired event is mapped.
        """
        link_user(store, USER, "cal-1")
        calendar = FakeRemoteCalendar()
        store.upsert_mapping(EventMapping("ev-stale", USER, "gone1", 1))
        store.upsert_mapping(EventMapping("ev-mapped", USER, "live1", 1))
        calendar.events["live1"] = {"id": "live1", "status": "confirmed"}
        events = [
            make_desired_event("ev-stale"),
            make_desired_event("ev-new"),
            make_desired_event("ev-mapped"),
        ]
        orchestrator = _orchestrator(store, FakeEventSource({USER: events}), calendar)

        report = await orchestrator.run_once()

        assert report is not None
        assert calendar.method_counts["GET"] == 2
        assert calendar.method_counts["DELETE"] == 0
        assert calendar.method_counts["PUT"] == 1
        assert calendar.method_counts["POST"] == 2
        mapped = _remote_ids(store)
        assert set(mapped) == {"ev-stale", "ev-new", "ev-mapped"}
        assert mapped["ev-mapped"] == "live1"
        assert "gone1" not in mapped.values()
        assert set(mapped.values()) == calendar.active_event_ids()
        assert report.users[0].stale == 1

    @pytest.mark.asyncio
    async def test_calendar_created_and_saved(self, store: SQLiteStateStore) -> None:
        """A user without a calendar gets one; its id is stored at flush."""
        link_user(store, USER)
        calendar = FakeRemoteCalendar()
        orchestrator = _orchestrator(store, FakeEventSource({USER: [make_desired_event()]}), calendar)

        await orchestrator.run_once()

        assert store.find_account(USER).calendar_id == "created-1"  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# Users and failures
# ---------------------------------------------------------------------------


class TestUsers:
    """Per-user isolation and skipping."""

    @pytest.mark.asyncio
    async def test_user_without_events_skipped(self, store: SQLiteStateStore) -> None:
        """A user with nothing to sync is skipped without remote calls."""
        link_user(store, USER, "cal-1")
        calendar = FakeRemoteCalendar()
        orchestrator = _orchestrator(store, FakeEventSource({}), calendar)

        report = await orchestrator.run_once()

        assert report is not None
        assert report.users[0].status == "skipped"
        assert calendar.batch_calls == 0

    @pytest.mark.asyncio
    async def test_token_failure_skips_user(self, store: SQLiteStateStore) -> None:
        """A token exchange failure skips that user only."""
        link_user(store, USER, "cal-1")
        link_user(store, "user-2", "cal-1")
        source = FakeEventSource({USER: [make_desired_event()], "user-2": [make_desired_event()]})

        async def exchange(refresh_token: str) -> str:
            if refresh_token == "revoked":
                raise CalendarAuthError("invalid_grant")
            return "access"

        store.save_account(USER, credential_token="revoked")
        calendar = FakeRemoteCalendar()
        resolver = AccountResolver(
            store,
            token_exchanger=exchange,
            client_factory=lambda _token: calendar,  # type: ignore[arg-type,return-value]
            calendar_name="University Schedule",
            timezone="Asia/Yekaterinburg",
        )
        orchestrator = SyncOrchestrator(store, source, resolver, executor=BatchExecutor(chunk_delay=0.0))

        report = await orchestrator.run_once()

        assert report is not None
        assert [(r.user_id, r.status) for r in report.users] == [("user-1", "skipped"), ("user-2", "synced")]
        assert _remote_ids(store, USER) == {}
        assert len(_remote_ids(store, "user-2")) == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_user(self, store: SQLiteStateStore) -> None:
        """An unexpected exception in a user task fails that user, not the run."""
        link_user(store, USER, "cal-1")
        calendar = FakeRemoteCalendar()
        orchestrator = SyncOrchestrator(
            store,
            FakeEventSource({USER: [make_desired_event()]}),
            make_resolver(store, calendar, token_error=RuntimeError("boom")),
            executor=BatchExecutor(chunk_delay=0.0),
        )

        report = await orchestrator.run_once()

        assert report is not None
        assert report.status == "completed"
        assert report.users[0].status == "failed"
        assert report.users[0].error == "boom"

    @pytest.mark.asyncio
    async def test_users_processed_in_groups(self, store: SQLiteStateStore) -> None:
        """Users are loaded and synced in groups of user_concurrency."""
        users = [f"user-{i}" for i in range(5)]
        for user_id in users:
            link_user(store, user_id, "cal-1")
        source = FakeEventSource({user_id: [make_desired_event(f"ev-{user_id}")] for user_id in users})
        orchestrator = _orchestrator(store, source, FakeRemoteCalendar(), user_concurrency=2)

        report = await orchestrator.run_once()

        assert report is not None
        assert source.requests == [["user-0", "user-1"], ["user-2", "user-3"], ["user-4"]]
        assert [r.user_id for r in report.users] == users
        assert report.synced_users == 5

    @pytest.mark.asyncio
    async def test_source_failure_fails_group(self, store: SQLiteStateStore) -> None:
        """If desired events cannot be loaded the group's users fail."""
        link_user(store, USER, "cal-1")
        source = FakeEventSource({USER: [make_desired_event()]})
        source.error = RuntimeError("source offline")
        orchestrator = _orchestrator(store, source, FakeRemoteCalendar())

        report = await orchestrator.run_once()

        assert report is not None
        assert report.status == "completed"
        assert report.users[0].status == "failed"
        assert "source offline" in report.users[0].error  # type: ignore[operator]

    @pytest.mark.asyncio
    async def test_listing_failure_fails_run(self, store: SQLiteStateStore) -> None:
        """Only failing to list users aborts the whole run."""
        broken = MagicMock(wraps=store)
        broken.list_linked_users.side_effect = StoreError("locked", operation="list_linked_users")
        orchestrator = SyncOrchestrator(
            broken,
            FakeEventSource(),
            make_resolver(store, FakeRemoteCalendar()),
            executor=BatchExecutor(chunk_delay=0.0),
        )

        report = await orchestrator.run_once()

        assert report is not None
        assert report.status == "failed"
        assert "locked" in report.error  # type: ignore[operator]
        assert orchestrator.state is SyncState.FAILED
        assert orchestrator.is_running is False

    @pytest.mark.asyncio
    async def test_batch_outage_does_not_fail_run(self, store: SQLiteStateStore) -> None:
        """A failed batch is counted; nothing is mapped and the run completes."""
        link_user(store, USER, "cal-1")
        calendar = FakeRemoteCalendar()
        calendar.batch_failures = 1
        orchestrator = _orchestrator(store, FakeEventSource({USER: [make_desired_event()]}), calendar)

        report = await orchestrator.run_once()

        assert report is not None
        assert report.status == "completed"
        assert report.totals.failed == 1
        assert store.find_mappings_for_user(USER) == []


# ---------------------------------------------------------------------------
# Run control
# ---------------------------------------------------------------------------


class TestRunControl:
    """Single-flight runs, stop requests and stats."""

    @pytest.mark.asyncio
    async def test_concurrent_trigger_rejected(self, store: SQLiteStateStore) -> None:
        """A second trigger while a run is in progress returns None."""
        link_user(store, USER, "cal-1")
        gate = asyncio.Event()

        class SlowSource(FakeEventSource):
            async def events_for_users(self, user_ids):  # type: ignore[no-untyped-def]
                await gate.wait()
                return await super().events_for_users(user_ids)

        orchestrator = _orchestrator(store, SlowSource({USER: [make_desired_event()]}), FakeRemoteCalendar())

        first = asyncio.create_task(orchestrator.run_once())
        await asyncio.sleep(0)
        assert orchestrator.is_running
        assert await orchestrator.run_once("manual") is None
        assert orchestrator.trigger_manual() is None

        gate.set()
        report = await first

        assert report is not None
        assert report.trigger == "scheduled"
        assert orchestrator.state is SyncState.IDLE
        assert not orchestrator.is_running

    @pytest.mark.asyncio
    async def test_stop_request_aborts_remaining_groups(self, store: SQLiteStateStore) -> None:
        """A stop request lets the current group finish and skips the rest."""
        users = ["user-0", "user-1", "user-2"]
        for user_id in users:
            link_user(store, user_id, "cal-1")
        orchestrator: SyncOrchestrator

        class StoppingSource(FakeEventSource):
            async def events_for_users(self, user_ids):  # type: ignore[no-untyped-def]
                orchestrator.request_stop()
                return await super().events_for_users(user_ids)

        source = StoppingSource({user_id: [make_desired_event()] for user_id in users})
        orchestrator = _orchestrator(store, source, FakeRemoteCalendar(), user_concurrency=1)

        report = await orchestrator.run_once()

        assert report is not None
        assert [r.status for r in report.users] == ["synced", "aborted", "aborted"]
        assert len(source.requests) == 1

    @pytest.mark.asyncio
    async def test_user_tasks_log_under_run_label(self, store: SQLiteStateStore) -> None:
        """Work done during a run sees that run's log label."""
        link_user(store, USER, "cal-1")
        seen: list[str] = []

        class LabelSource(FakeEventSource):
            async def events_for_users(self, user_ids):  # type: ignore[no-untyped-def]
                seen.append(current_run_label())
                return await super().events_for_users(user_ids)

        orchestrator = _orchestrator(store, LabelSource(), FakeRemoteCalendar())

        await orchestrator.run_once("manual")

        assert len(seen) == 1
        assert seen[0].startswith("manual@")
        assert current_run_label() == "-"

    @pytest.mark.asyncio
    async def test_trigger_manual_runs(self, store: SQLiteStateStore) -> None:
        """trigger_manual schedules a run labelled manual."""
        orchestrator = _orchestrator(store, FakeEventSource(), FakeRemoteCalendar())

        task = orchestrator.trigger_manual()
        assert task is not None
        report = await task

        assert report is not None
        assert report.trigger == "manual"
        assert orchestrator.last_report is report

    @pytest.mark.asyncio
    async def test_last_sync_recorded(self, store: SQLiteStateStore) -> None:
        """A completed run records its start time and shows it in stats."""
        link_user(store, USER, "cal-1")
        orchestrator = _orchestrator(store, FakeEventSource(), FakeRemoteCalendar())

        await orchestrator.run_once()
        stats = orchestrator.stats()

        assert store.get_meta(LAST_SYNC_KEY) is not None
        assert stats["last_sync"] == store.get_meta(LAST_SYNC_KEY)
        assert stats["linked_users"] == 1
        assert stats["state"] == "idle"
        assert stats["is_running"] is False
        assert stats["sync_interval_minutes"] is None

    @pytest.mark.asyncio
    async def test_serve_stops_on_request(self, store: SQLiteStateStore) -> None:
        """serve runs immediately, calls after_run and exits when stopped."""
        orchestrator = _orchestrator(store, FakeEventSource(), FakeRemoteCalendar())
        calls: list[str] = []

        async def after_run() -> None:
            calls.append("after")
            orchestrator.request_stop()

        await asyncio.wait_for(orchestrator.serve(3600, after_run=after_run), timeout=5)

        assert calls == ["after"]
        assert orchestrator.last_report is not None

    def test_invalid_concurrency(self, store: SQLiteStateStore) -> None:
        """user_concurrency must be positive."""
        with pytest.raises(ValueError):
            _orchestrator(store, FakeEventSource(), FakeRemoteCalendar(), user_concurrency=0)
