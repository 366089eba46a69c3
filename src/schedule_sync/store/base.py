"""Interfaces of the persistence and scheduling-source collaborators.

The sync engine depends only on these protocols; the SQLite implementation
in :mod:`schedule_sync.store.sqlite` is the default.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol

from schedule_sync.models.events import DesiredEvent
from schedule_sync.models.sync import EventMapping, MappingKey, UserAccount


@dataclass(frozen=True)
class LoginAttempt:
    """A pending OAuth authorization code left by the chat bot.

    Attributes:
        user_id: User who completed the consent screen.
        code: Authorization code passed to the redirect URI.
    """

    user_id: str
    code: str


class StateStore(Protocol):
    """Durable state used by the sync engine.

    Mutations raise :class:`~schedule_sync.exceptions.StoreError` on failure.
    """

    def find_mapping(self, desired_event_id: str, user_id: str) -> EventMapping | None: ...

    def find_mappings_for_user(self, user_id: str) -> list[EventMapping]: ...

    def find_mappings(self, keys: Iterable[MappingKey]) -> dict[MappingKey, EventMapping]: ...

    def upsert_mapping(self, mapping: EventMapping) -> None: ...

    def delete_mapping(self, desired_event_id: str, user_id: str) -> None: ...

    def find_account(self, user_id: str) -> UserAccount | None: ...

    def save_calendar_id(self, user_id: str, calendar_id: str | None) -> None: ...

    def list_linked_users(self) -> list[str]: ...

    def set_meta(self, key: str, value: object) -> None: ...

    def get_meta(self, key: str, default: object = None) -> object: ...


class DesiredEventSource(Protocol):
    """Yields the desired events of a group of users."""

    async def events_for_users(self, user_ids: Sequence[str]) -> dict[str, list[DesiredEvent]]: ...
