"""Drift detection for previously linked remote events.

Every desired event that already has a mapping is checked with a batched
GET.  Mappings whose remote event is gone or cancelled, or whose check
failed, are queued for deletion, so the planner recreates the event
instead of updating a dangling remote ID.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from schedule_sync.models.events import DesiredEvent
from schedule_sync.models.sync import (
    CANCELLED_STATUS,
    BatchResult,
    EventMapping,
    MappingKey,
    OperationMethod,
    SyncOperation,
)
from schedule_sync.store.base import StateStore
from schedule_sync.sync.context import SyncRunContext
from schedule_sync.sync.executor import BatchClient, BatchExecutor

logger = logging.getLogger(__name__)


@dataclass
class DriftReport:
    """Outcome of drift detection for one user.

    Attributes:
        active_map: Desired event ID to remote event ID for mappings whose
            remote event still exists and is not cancelled.
        stale_remote_ids: Remote events that still exist but are cancelled
            and must be deleted explicitly.
        stale_keys: Mappings queued for deletion.
    """

    active_map: dict[str, str] = field(default_factory=dict)
    stale_remote_ids: list[str] = field(default_factory=list)
    stale_keys: list[MappingKey] = field(default_factory=list)


class DriftDetector:
    """Verifies existing mappings against the remote calendar.

    Args:
        store: Store holding the mappings.
        executor: Executor used to send the GET batches.
    """

    def __init__(self, store: StateStore, executor: BatchExecutor) -> None:
        self._store = store
        self._executor = executor

    async def detect(
        self,
        user_id: str,
        desired_events: Sequence[DesiredEvent],
        client: BatchClient,
        calendar_id: str,
        context: SyncRunContext,
    ) -> DriftReport:
        """Classify the user's existing mappings as active or stale.

        Stale mappings are queued for deletion on ``context.writes``.
        Unmapped desired events are absent from the report's ``active_map``.
        """
        report = DriftReport()
        keys = [MappingKey(event.id, user_id) for event in desired_events]
        found = await asyncio.to_thread(self._store.find_mappings, keys)

        mappings: list[EventMapping] = []
        for key in dict.fromkeys(keys):
            mapping = found.get(key)
            if mapping is not None:
                mappings.append(mapping)

        if not mappings:
            return report

        operations = [
            SyncOperation(
                method=OperationMethod.GET,
                calendar_id=calendar_id,
                correlation_id=mapping.remote_event_id,
                remote_event_id=mapping.remote_event_id,
                attempted_remote_id=mapping.remote_event_id,
            )
            for mapping in mappings
        ]
        results = await self._executor.run_batches(operations, client, user_id)

        for mapping, result in zip(mappings, results):
            self._classify(mapping, result, report, context)

        if report.stale_keys:
            logger.info(
                "User %s: %d of %d mapping(s) stale, %d remote event(s) to delete",
                user_id,
                len(report.stale_keys),
                len(mappings),
                len(report.stale_remote_ids),
            )
        return report

    def _classify(
        self,
        mapping: EventMapping,
        result: BatchResult,
        report: DriftReport,
        context: SyncRunContext,
    ) -> None:
        if result.ok and result.remote_id and result.status != CANCELLED_STATUS:
            report.active_map[mapping.desired_event_id] = mapping.remote_event_id
            return

        context.writes.delete_mapping(mapping.desired_event_id, mapping.user_id)
        report.stale_keys.append(mapping.key)

        if result.ok and result.status == CANCELLED_STATUS:
            report.stale_remote_ids.append(mapping.remote_event_id)
            reason = "cancelled"
        elif result.is_gone:
            reason = "not found"
        elif not result.ok and result.error_code is None:
            reason = "batch failure"
        elif result.ok:
            reason = "no id returned"
        else:
            reason = f"error {result.error_code}"

        logger.info(
            "User %s: mapping %s -> %s is stale (%s)",
            mapping.user_id,
            mapping.desired_event_id,
            mapping.remote_event_id,
            reason,
        )
