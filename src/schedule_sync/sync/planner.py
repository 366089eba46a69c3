"""Write planning: desired events and active mappings to remote operations.

Pure functions only; nothing here touches the network or the store.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime

from schedule_sync.calendar.event_mapper import build_event_resource
from schedule_sync.models.events import DesiredEvent
from schedule_sync.models.sync import OperationMethod, SyncOperation

logger = logging.getLogger(__name__)


def new_remote_id() -> str:
    """Generate a client-side remote event ID.

    32 lowercase hex characters, which satisfies Google's base32hex
    ``[a-v0-9]{5,1024}`` rule for client-supplied event IDs.
    """
    return secrets.token_hex(16)


def plan_operations(
    desired_events: Sequence[DesiredEvent],
    active_map: Mapping[str, str],
    calendar_id: str,
    *,
    timezone: str,
    refreshed_at: datetime,
    id_factory: Callable[[], str] = new_remote_id,
) -> list[SyncOperation]:
    """Plan one write per distinct desired event.

    Events with an active mapping become a PUT to the mapped remote event;
    the rest become a POST carrying a freshly generated ID.  Repeated
    desired event IDs are planned once, from their first occurrence.

    Args:
        desired_events: The user's desired events.
        active_map: Desired event ID to remote event ID, for mappings that
            survived drift detection.
        calendar_id: Target calendar.
        timezone: IANA timezone written into the event bodies.
        refreshed_at: Run start time shown in event descriptions.
        id_factory: Generator of candidate remote IDs for new events.

    Returns:
        Operations in the order of *desired_events*.
    """
    operations: list[SyncOperation] = []
    planned: set[str] = set()

    for event in desired_events:
        if event.id in planned:
            logger.warning("Desired event %s listed more than once, planning it once", event.id)
            continue
        planned.add(event.id)

        body = build_event_resource(event, timezone, refreshed_at)
        remote_id = active_map.get(event.id)

        if remote_id:
            operations.append(
                SyncOperation(
                    method=OperationMethod.PUT,
                    calendar_id=calendar_id,
                    correlation_id=event.id,
                    remote_event_id=remote_id,
                    body=body,
                    attempted_remote_id=remote_id,
                )
            )
            continue

        candidate = id_factory()
        operations.append(
            SyncOperation(
                method=OperationMethod.POST,
                calendar_id=calendar_id,
                correlation_id=event.id,
                body={**body, "id": candidate},
                attempted_remote_id=candidate,
            )
        )

    return operations


def plan_remote_deletes(remote_ids: Iterable[str], calendar_id: str) -> list[SyncOperation]:
    """Plan a DELETE for each remote event ID, correlated by that ID."""
    return [
        SyncOperation(
            method=OperationMethod.DELETE,
            calendar_id=calendar_id,
            correlation_id=remote_id,
            remote_event_id=remote_id,
            attempted_remote_id=remote_id,
        )
        for remote_id in dict.fromkeys(remote_ids)
    ]
