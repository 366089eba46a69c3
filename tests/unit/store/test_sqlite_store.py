"""Tests for the SQLite state store."""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from schedule_sync.exceptions import StoreError
from schedule_sync.models.sync import EventMapping, MappingKey
from schedule_sync.store.base import LoginAttempt
from schedule_sync.store.sqlite import SQLiteStateStore, StoreEventSource
from tests.fakes import make_desired_event


class TestMappings:
    """Event mapping CRUD."""

    def test_upsert_and_find(self, store: SQLiteStateStore) -> None:
        """An upserted mapping is found by its composite key."""
        store.upsert_mapping(EventMapping("ev-1", "user-1", "remote1", 100))

        assert store.find_mapping("ev-1", "user-1") == EventMapping("ev-1", "user-1", "remote1", 100)
        assert store.find_mapping("ev-1", "user-2") is None

    def test_upsert_replaces(self, store: SQLiteStateStore) -> None:
        """A second upsert for the same key replaces remote id and timestamp."""
        store.upsert_mapping(EventMapping("ev-1", "user-1", "remote1", 100))
        store.upsert_mapping(EventMapping("ev-1", "user-1", "remote2", 200))

        assert store.find_mappings_for_user("user-1") == [EventMapping("ev-1", "user-1", "remote2", 200)]

    def test_same_event_different_users(self, store: SQLiteStateStore) -> None:
        """One desired event can be mapped once per user."""
        store.upsert_mapping(EventMapping("ev-1", "user-1", "r1", 1))
        store.upsert_mapping(EventMapping("ev-1", "user-2", "r2", 1))

        assert store.find_mapping("ev-1", "user-1").remote_event_id == "r1"  # type: ignore[union-attr]
        assert store.find_mapping("ev-1", "user-2").remote_event_id == "r2"  # type: ignore[union-attr]

    def test_ids_with_separators_do_not_collide(self, store: SQLiteStateStore) -> None:
        """Keys are stored as two columns, never as a joined string."""
        store.upsert_mapping(EventMapping("a_b", "c", "r1", 1))
        store.upsert_mapping(EventMapping("a", "b_c", "r2", 1))

        assert store.find_mapping("a_b", "c").remote_event_id == "r1"  # type: ignore[union-attr]
        assert store.find_mapping("a", "b_c").remote_event_id == "r2"  # type: ignore[union-attr]

    def test_find_mappings_batch(self, store: SQLiteStateStore) -> None:
        """Batch lookup returns only the keys that exist."""
        store.upsert_mapping(EventMapping("ev-1", "user-1", "r1", 1))
        store.upsert_mapping(EventMapping("ev-2", "user-1", "r2", 1))
        store.upsert_mapping(EventMapping("ev-3", "user-2", "r3", 1))

        found = store.find_mappings(
            [MappingKey("ev-1", "user-1"), MappingKey("ev-3", "user-2"), MappingKey("ev-9", "user-1")]
        )

        assert set(found) == {MappingKey("ev-1", "user-1"), MappingKey("ev-3", "user-2")}

    def test_delete_mapping(self, store: SQLiteStateStore) -> None:
        """delete_mapping removes only the given key."""
        store.upsert_mapping(EventMapping("ev-1", "user-1", "r1", 1))
        store.upsert_mapping(EventMapping("ev-2", "user-1", "r2", 1))

        store.delete_mapping("ev-1", "user-1")

        assert [m.desired_event_id for m in store.find_mappings_for_user("user-1")] == ["ev-2"]

    def test_delete_mappings_for_user(self, store: SQLiteStateStore) -> None:
        """All mappings of one user are removed, others kept."""
        store.upsert_mapping(EventMapping("ev-1", "user-1", "r1", 1))
        store.upsert_mapping(EventMapping("ev-2", "user-1", "r2", 1))
        store.upsert_mapping(EventMapping("ev-1", "user-2", "r3", 1))

        assert store.delete_mappings_for_user("user-1") == 2
        assert store.find_mappings_for_user("user-1") == []
        assert len(store.find_mappings_for_user("user-2")) == 1


class TestAccounts:
    """Account records."""

    def test_save_and_find_account(self, store: SQLiteStateStore) -> None:
        """save_account creates an account with credential and chat id."""
        store.save_account("user-1", credential_token="refresh", chat_id="chat-1")

        account = store.find_account("user-1")

        assert account is not None
        assert account.credential_token == "refresh"
        assert account.chat_id == "chat-1"
        assert account.calendar_id is None

    def test_save_account_keeps_existing_values(self, store: SQLiteStateStore) -> None:
        """None arguments do not overwrite stored values."""
        store.save_account("user-1", chat_id="chat-1")
        store.save_account("user-1", credential_token="refresh")

        account = store.find_account("user-1")

        assert account.chat_id == "chat-1"  # type: ignore[union-attr]
        assert account.credential_token == "refresh"  # type: ignore[union-attr]

    def test_save_and_clear_calendar_id(self, store: SQLiteStateStore) -> None:
        """The calendar id can be set and cleared to None."""
        store.save_account("user-1", credential_token="refresh")

        store.save_calendar_id("user-1", "cal-1")
        assert store.find_account("user-1").calendar_id == "cal-1"  # type: ignore[union-attr]

        store.save_calendar_id("user-1", None)
        assert store.find_account("user-1").calendar_id is None  # type: ignore[union-attr]

    def test_list_linked_users(self, store: SQLiteStateStore) -> None:
        """Only users with a non-blank credential are listed, sorted."""
        store.save_account("user-b", credential_token="refresh")
        store.save_account("user-a", credential_token="refresh")
        store.save_account("user-c", credential_token="   ")
        store.save_account("user-d", chat_id="chat")

        assert store.list_linked_users() == ["user-a", "user-b"]

    def test_unknown_account(self, store: SQLiteStateStore) -> None:
        """An unknown user has no account."""
        assert store.find_account("nobody") is None


class TestDesiredEvents:
    """Desired event storage written by the scraper."""

    def test_save_link_and_find(self, store: SQLiteStateStore) -> None:
        """Linked desired events are returned ordered by start."""
        late = make_desired_event(
            "ev-late",
            starts_at=datetime(2026, 3, 11, 9, 0, tzinfo=timezone.utc),
            ends_at=datetime(2026, 3, 11, 10, 0, tzinfo=timezone.utc),
        )
        early = make_desired_event("ev-early")
        for event in (late, early):
            store.save_desired_event(event)
            store.link_user_event("user-1", event.id)
        store.link_user_event("user-1", "ev-early")

        events = store.find_desired_events("user-1")

        assert [e.id for e in events] == ["ev-early", "ev-late"]
        assert events[0] == early

    def test_invalid_payload_skipped(self, store: SQLiteStateStore) -> None:
        """Rows whose payload no longer validates are skipped."""
        store.save_desired_event(make_desired_event("ev-1"))
        store.link_user_event("user-1", "ev-1")
        with sqlite3.connect(store.db_path) as conn:
            conn.execute(
                "INSERT INTO desired_events VALUES ('bad', 'x', 'y', '{\"id\": \"bad\"}', 'now')"
            )
            conn.execute("INSERT INTO user_events VALUES ('user-1', 'bad')")

        assert [e.id for e in store.find_desired_events("user-1")] == ["ev-1"]

    def test_cleanup_desired_events(self, store: SQLiteStateStore) -> None:
        """Events that ended before the cutoff are removed with their links."""
        old = make_desired_event(
            "ev-old",
            starts_at=datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc),
            ends_at=datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc),
        )
        new = make_desired_event("ev-new")
        for event in (old, new):
            store.save_desired_event(event)
            store.link_user_event("user-1", event.id)

        removed = store.cleanup_desired_events(datetime(2026, 1, 1, tzinfo=timezone.utc))

        assert removed == 1
        assert [e.id for e in store.find_desired_events("user-1")] == ["ev-new"]

    def test_cleanup_compares_instants_across_offsets(self, store: SQLiteStateStore) -> None:
        """An event stored with a local offset is cut off by its UTC end time."""
        yekaterinburg = timezone(timedelta(hours=5))
        # Ends 2025-12-31 22:00 UTC, an hour before the cutoff.
        local = make_desired_event(
            "ev-local",
            starts_at=datetime(2026, 1, 1, 1, 30, tzinfo=yekaterinburg),
            ends_at=datetime(2026, 1, 1, 3, 0, tzinfo=yekaterinburg),
        )
        store.save_desired_event(local)
        store.link_user_event("user-1", "ev-local")

        removed = store.cleanup_desired_events(datetime(2025, 12, 31, 23, 0, tzinfo=timezone.utc))

        assert removed == 1
        assert store.find_desired_events("user-1") == []

    @pytest.mark.asyncio
    async def test_store_event_source(self, store: SQLiteStateStore) -> None:
        """StoreEventSource returns every requested user, even without events."""
        store.save_desired_event(make_desired_event("ev-1"))
        store.link_user_event("user-1", "ev-1")

        events = await StoreEventSource(store).events_for_users(["user-1", "user-2"])

        assert [e.id for e in events["user-1"]] == ["ev-1"]
        assert events["user-2"] == []

    @pytest.mark.asyncio
    async def test_store_event_source_reads_off_loop(
        self, store: SQLiteStateStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Reads run in a worker thread so the event loop is never blocked."""
        threads: list[int] = []
        original = store.find_desired_events

        def _find(user_id: str) -> list:
            threads.append(threading.get_ident())
            return original(user_id)

        monkeypatch.setattr(store, "find_desired_events", _find)

        await StoreEventSource(store).events_for_users(["user-1", "user-2"])

        assert len(threads) == 2
        assert threading.get_ident() not in threads


class TestLoginAttemptsAndMeta:
    """Login attempts and metadata."""

    def test_pending_login_attempts_latest_per_user(self, store: SQLiteStateStore) -> None:
        """Only the newest code of each user is pending."""
        store.add_login_attempt("user-1", "old-code")
        store.add_login_attempt("user-2", "code-2")
        store.add_login_attempt("user-1", "new-code")

        pending = store.pending_login_attempts()

        assert LoginAttempt("user-1", "new-code") in pending
        assert LoginAttempt("user-2", "code-2") in pending
        assert len(pending) == 2

    def test_delete_login_attempts(self, store: SQLiteStateStore) -> None:
        """Deleting a user's attempts removes all of them."""
        store.add_login_attempt("user-1", "a")
        store.add_login_attempt("user-1", "b")

        store.delete_login_attempts("user-1")

        assert store.pending_login_attempts() == []

    def test_meta_round_trip(self, store: SQLiteStateStore) -> None:
        """Metadata values are stored as JSON."""
        store.set_meta("last_sync", "2026-03-01T07:00:00+00:00")

        assert store.get_meta("last_sync") == "2026-03-01T07:00:00+00:00"
        assert store.get_meta("missing", default=0) == 0


class TestErrors:
    """SQLite failures surface as StoreError."""

    def test_sqlite_error_wrapped(self, store: SQLiteStateStore) -> None:
        """A broken table raises StoreError naming the operation."""
        with sqlite3.connect(store.db_path) as conn:
            conn.execute("DROP TABLE event_mappings")

        with pytest.raises(StoreError) as exc_info:
            store.find_mappings_for_user("user-1")

        assert exc_info.value.operation == "find_mappings_for_user"

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        """The database directory is created on demand."""
        SQLiteStateStore(tmp_path / "nested" / "dir" / "state.db")

        assert (tmp_path / "nested" / "dir" / "state.db").exists()
