"""SQLite-backed state store.

Holds everything the sync engine persists between runs:

- ``accounts`` -- credential, dedicated calendar and chat address per user.
- ``event_mappings`` -- desired event to remote event links, keyed by the
  ``(desired_event_id, user_id)`` pair.
- ``desired_events`` / ``user_events`` -- desired events written by the
  upstream scraper and the users they belong to.
- ``login_attempts`` -- OAuth codes waiting to be exchanged.
- ``app_meta`` -- small key/value facts such as the last sync time.

Every call opens its own connection under a lock, so the store can be used
from the event loop thread and from worker threads alike.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from schedule_sync.exceptions import StoreError
from schedule_sync.models.events import DesiredEvent
from schedule_sync.models.sync import EventMapping, MappingKey, UserAccount
from schedule_sync.store.base import LoginAttempt

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    user_id TEXT PRIMARY KEY,
    credential_token TEXT,
    calendar_id TEXT,
    chat_id TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS event_mappings (
    desired_event_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    remote_event_id TEXT NOT NULL,
    last_write_timestamp INTEGER NOT NULL,
    PRIMARY KEY (desired_event_id, user_id)
);

CREATE INDEX IF NOT EXISTS idx_event_mappings_user ON event_mappings (user_id);

CREATE TABLE IF NOT EXISTS desired_events (
    id TEXT PRIMARY KEY,
    starts_at TEXT NOT NULL,
    ends_at TEXT NOT NULL,
    payload TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_events (
    user_id TEXT NOT NULL,
    event_id TEXT NOT NULL,
    PRIMARY KEY (user_id, event_id)
);

CREATE TABLE IF NOT EXISTS login_attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    code TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS app_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# Time columns hold UTC so that string comparison orders them correctly.
def _utc_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


class SQLiteStateStore:
    """State store implementation on a single SQLite file.

    Args:
        db_path: Database file; parent directories are created.  Use
            ``":memory:"`` only for single-connection experiments, since
            each call opens a new connection.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        with self._transaction("init_schema") as conn:
            conn.executescript(_SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run one unit of work, translating SQLite errors to StoreError."""
        with self._lock:
            try:
                conn = self._connect()
            except sqlite3.Error as exc:
                raise StoreError(f"{operation}: {exc}", operation=operation) from exc
            try:
                with conn:
                    yield conn
            except sqlite3.Error as exc:
                raise StoreError(f"{operation}: {exc}", operation=operation) from exc
            finally:
                conn.close()

    # ------------------------------------------------------------------
    # Event mappings
    # ------------------------------------------------------------------

    def find_mapping(self, desired_event_id: str, user_id: str) -> EventMapping | None:
        with self._transaction("find_mapping") as conn:
            row = conn.execute(
                """
                SELECT desired_event_id, user_id, remote_event_id, last_write_timestamp
                FROM event_mappings
                WHERE desired_event_id = ? AND user_id = ?
                """,
                (desired_event_id, user_id),
            ).fetchone()
        return _row_to_mapping(row) if row else None

    def find_mappings_for_user(self, user_id: str) -> list[EventMapping]:
        with self._transaction("find_mappings_for_user") as conn:
            rows = conn.execute(
                """
                SELECT desired_event_id, user_id, remote_event_id, last_write_timestamp
                FROM event_mappings
                WHERE user_id = ?
                ORDER BY desired_event_id
                """,
                (user_id,),
            ).fetchall()
        return [_row_to_mapping(row) for row in rows]

    def find_mappings(self, keys: Iterable[MappingKey]) -> dict[MappingKey, EventMapping]:
        """Batch lookup of mappings by key; missing keys are absent."""
        found: dict[MappingKey, EventMapping] = {}
        by_user: dict[str, set[str]] = {}
        for key in keys:
            by_user.setdefault(key.user_id, set()).add(key.desired_event_id)

        for user_id, wanted in by_user.items():
            for mapping in self.find_mappings_for_user(user_id):
                if mapping.desired_event_id in wanted:
                    found[mapping.key] = mapping
        return found

    def upsert_mapping(self, mapping: EventMapping) -> None:
        with self._transaction("upsert_mapping") as conn:
            conn.execute(
                """
                INSERT INTO event_mappings(desired_event_id, user_id, remote_event_id, last_write_timestamp)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(desired_event_id, user_id) DO UPDATE SET
                    remote_event_id = excluded.remote_event_id,
                    last_write_timestamp = excluded.last_write_timestamp
                """,
                (
                    mapping.desired_event_id,
                    mapping.user_id,
                    mapping.remote_event_id,
                    int(mapping.last_write_timestamp),
                ),
            )

    def delete_mapping(self, desired_event_id: str, user_id: str) -> None:
        with self._transaction("delete_mapping") as conn:
            conn.execute(
                "DELETE FROM event_mappings WHERE desired_event_id = ? AND user_id = ?",
                (desired_event_id, user_id),
            )

    def delete_mappings_for_user(self, user_id: str) -> int:
        """Remove every mapping of *user_id*; returns the number removed."""
        with self._transaction("delete_mappings_for_user") as conn:
            cursor = conn.execute("DELETE FROM event_mappings WHERE user_id = ?", (user_id,))
        logger.info("Removed %d event mapping(s) of user %s", cursor.rowcount, user_id)
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def find_account(self, user_id: str) -> UserAccount | None:
        with self._transaction("find_account") as conn:
            row = conn.execute(
                "SELECT user_id, credential_token, calendar_id, chat_id FROM accounts WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return UserAccount(
            user_id=row["user_id"],
            calendar_id=row["calendar_id"],
            credential_token=row["credential_token"],
            chat_id=row["chat_id"],
        )

    def save_account(
        self,
        user_id: str,
        *,
        credential_token: str | None = None,
        chat_id: str | None = None,
    ) -> None:
        """Create an account or update its credential and chat address.

        ``None`` arguments leave the stored values untouched.
        """
        with self._transaction("save_account") as conn:
            conn.execute(
                """
                INSERT INTO accounts(user_id, credential_token, chat_id, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    credential_token = COALESCE(excluded.credential_token, accounts.credential_token),
                    chat_id = COALESCE(excluded.chat_id, accounts.chat_id),
                    updated_at = excluded.updated_at
                """,
                (user_id, credential_token, chat_id, _utc_now()),
            )

    def save_calendar_id(self, user_id: str, calendar_id: str | None) -> None:
        with self._transaction("save_calendar_id") as conn:
            conn.execute(
                """
                INSERT INTO accounts(user_id, calendar_id, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    calendar_id = excluded.calendar_id,
                    updated_at = excluded.updated_at
                """,
                (user_id, calendar_id, _utc_now()),
            )
        logger.info("Saved calendar id for user %s", user_id)

    def list_linked_users(self) -> list[str]:
        """Users holding a non-empty credential, in stable order."""
        with self._transaction("list_linked_users") as conn:
            rows = conn.execute(
                """
                SELECT user_id FROM accounts
                WHERE credential_token IS NOT NULL AND TRIM(credential_token) != ''
                ORDER BY user_id
                """
            ).fetchall()
        return [row["user_id"] for row in rows]

    # ------------------------------------------------------------------
    # Desired events
    # ------------------------------------------------------------------

    def save_desired_event(self, event: DesiredEvent) -> None:
        with self._transaction("save_desired_event") as conn:
            conn.execute(
                """
                INSERT INTO desired_events(id, starts_at, ends_at, payload, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    starts_at = excluded.starts_at,
                    ends_at = excluded.ends_at,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (
                    event.id,
                    _utc_iso(event.starts_at),
                    _utc_iso(event.ends_at),
                    event.model_dump_json(),
                    _utc_now(),
                ),
            )

    def link_user_event(self, user_id: str, event_id: str) -> None:
        with self._transaction("link_user_event") as conn:
            conn.execute(
                "INSERT OR IGNORE INTO user_events(user_id, event_id) VALUES (?, ?)",
                (user_id, event_id),
            )

    def find_desired_events(self, user_id: str) -> list[DesiredEvent]:
        """Desired events linked to *user_id*, ordered by start time.

        Rows whose payload no longer validates are logged and skipped.
        """
        with self._transaction("find_desired_events") as conn:
            rows = conn.execute(
                """
                SELECT e.id, e.payload FROM user_events u
                JOIN desired_events e ON e.id = u.event_id
                WHERE u.user_id = ?
                ORDER BY e.starts_at, e.id
                """,
                (user_id,),
            ).fetchall()

        events: list[DesiredEvent] = []
        for row in rows:
            try:
                events.append(DesiredEvent.model_validate_json(row["payload"]))
            except ValidationError as exc:
                logger.warning(
                    "User %s: skipping desired event %s with invalid payload: %s",
                    user_id,
                    row["id"],
                    exc,
                )
        return events

    def cleanup_desired_events(self, before: datetime) -> int:
        """Drop desired events that ended before *before*, with their links.

        Returns:
            The number of desired events removed.
        """
        cutoff = _utc_iso(before)
        with self._transaction("cleanup_desired_events") as conn:
            conn.execute(
                """
                DELETE FROM user_events WHERE event_id IN (
                    SELECT id FROM desired_events WHERE ends_at < ?
                )
                """,
                (cutoff,),
            )
            cursor = conn.execute("DELETE FROM desired_events WHERE ends_at < ?", (cutoff,))
        logger.info("Cleaned up %d desired event(s) ending before %s", cursor.rowcount, cutoff)
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Login attempts
    # ------------------------------------------------------------------

    def add_login_attempt(self, user_id: str, code: str) -> None:
        with self._transaction("add_login_attempt") as conn:
            conn.execute(
                "INSERT INTO login_attempts(user_id, code, created_at) VALUES (?, ?, ?)",
                (user_id, code, _utc_now()),
            )

    def pending_login_attempts(self) -> list[LoginAttempt]:
        """The most recent pending code of every user."""
        with self._transaction("pending_login_attempts") as conn:
            rows = conn.execute(
                """
                SELECT user_id, code FROM login_attempts
                WHERE id IN (SELECT MAX(id) FROM login_attempts GROUP BY user_id)
                ORDER BY id
                """
            ).fetchall()
        return [LoginAttempt(user_id=row["user_id"], code=row["code"]) for row in rows]

    def delete_login_attempts(self, user_id: str) -> None:
        with self._transaction("delete_login_attempts") as conn:
            conn.execute("DELETE FROM login_attempts WHERE user_id = ?", (user_id,))

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def set_meta(self, key: str, value: object) -> None:
        with self._transaction("set_meta") as conn:
            conn.execute(
                """
                INSERT INTO app_meta(key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, json.dumps(value), _utc_now()),
            )

    def get_meta(self, key: str, default: object = None) -> object:
        with self._transaction("get_meta") as conn:
            row = conn.execute("SELECT value FROM app_meta WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        return json.loads(row["value"])


class StoreEventSource:
    """Desired event source reading what the scraper stored."""

    def __init__(self, store: SQLiteStateStore) -> None:
        self._store = store

    async def events_for_users(self, user_ids: Sequence[str]) -> dict[str, list[DesiredEvent]]:
        return await asyncio.to_thread(self._read, list(user_ids))

    def _read(self, user_ids: list[str]) -> dict[str, list[DesiredEvent]]:
        return {user_id: self._store.find_desired_events(user_id) for user_id in user_ids}


def _row_to_mapping(row: sqlite3.Row) -> EventMapping:
    return EventMapping(
        desired_event_id=row["desired_event_id"],
        user_id=row["user_id"],
        remote_event_id=row["remote_event_id"],
        last_write_timestamp=int(row["last_write_timestamp"]),
    )
