"""Deferred store writes for a sync run.

Concurrent user tasks never write to the store directly.  They append
mutations to a :class:`StoreWriteQueue` owned by the run context, and the
orchestrator applies the whole queue once, sequentially, after every user
task has settled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from schedule_sync.exceptions import StoreError
from schedule_sync.models.sync import EventMapping
from schedule_sync.store.base import StateStore

logger = logging.getLogger(__name__)


class MutationKind(str, Enum):
    UPSERT_MAPPING = "upsert_mapping"
    DELETE_MAPPING = "delete_mapping"
    SAVE_CALENDAR_ID = "save_calendar_id"


@dataclass(frozen=True)
class StoreMutation:
    """One queued store write.

    Attributes:
        kind: Which store operation to call.
        user_id: Owner of the affected record.
        desired_event_id: Set for mapping mutations.
        mapping: Set for upserts.
        calendar_id: Set for calendar id saves (``None`` clears it).
    """

    kind: MutationKind
    user_id: str
    desired_event_id: str | None = None
    mapping: EventMapping | None = None
    calendar_id: str | None = None

    def apply(self, store: StateStore) -> None:
        if self.kind is MutationKind.SAVE_CALENDAR_ID:
            store.save_calendar_id(self.user_id, self.calendar_id)
        elif self.kind is MutationKind.UPSERT_MAPPING and self.mapping is not None:
            store.upsert_mapping(self.mapping)
        elif self.kind is MutationKind.DELETE_MAPPING and self.desired_event_id is not None:
            store.delete_mapping(self.desired_event_id, self.user_id)
        else:
            raise StoreError(f"Incomplete mutation {self.describe()}", operation=self.kind.value)

    def describe(self) -> str:
        if self.kind is MutationKind.SAVE_CALENDAR_ID:
            return f"{self.kind.value}(user={self.user_id})"
        return f"{self.kind.value}(event={self.desired_event_id}, user={self.user_id})"


@dataclass(frozen=True)
class FlushResult:
    """Outcome of a flush.

    Attributes:
        applied: Mutations written successfully.
        failed: Mutations that raised; each was logged.
    """

    applied: int = 0
    failed: int = 0


class StoreWriteQueue:
    """Ordered collection of pending store mutations.

    Mutations are applied in enqueue order, so a stale-mapping delete
    followed by the upsert of its replacement leaves the replacement.
    """

    def __init__(self) -> None:
        self._pending: list[StoreMutation] = []

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending(self) -> tuple[StoreMutation, ...]:
        return tuple(self._pending)

    def upsert_mapping(self, mapping: EventMapping) -> None:
        self._pending.append(
            StoreMutation(
                kind=MutationKind.UPSERT_MAPPING,
                user_id=mapping.user_id,
                desired_event_id=mapping.desired_event_id,
                mapping=mapping,
            )
        )

    def delete_mapping(self, desired_event_id: str, user_id: str) -> None:
        self._pending.append(
            StoreMutation(
                kind=MutationKind.DELETE_MAPPING,
                user_id=user_id,
                desired_event_id=desired_event_id,
            )
        )

    def save_calendar_id(self, user_id: str, calendar_id: str | None) -> None:
        self._pending.append(
            StoreMutation(
                kind=MutationKind.SAVE_CALENDAR_ID,
                user_id=user_id,
                calendar_id=calendar_id,
            )
        )

    def flush(self, store: StateStore) -> FlushResult:
        """Apply and drain every pending mutation.

        A failing mutation is logged and counted; it does not stop or roll
        back the others.

        Args:
            store: The store to write to.

        Returns:
            Counts of applied and failed mutations.
        """
        pending, self._pending = self._pending, []
        applied = 0
        failed = 0

        for mutation in pending:
            try:
                mutation.apply(store)
            except StoreError as exc:
                failed += 1
                logger.error("Store write %s failed: %s", mutation.describe(), exc)
            else:
                applied += 1

        if pending:
            logger.info("Flushed %d store write(s), %d failed", applied, failed)
        return FlushResult(applied=applied, failed=failed)
