"""Batch execution of planned operations.

:class:`BatchExecutor` splits operations into chunks of at most
``batch_limit`` calls, sends each chunk as one physical batch request, and
applies the per-item results: successful writes and vanished targets become
queued store mutations, everything else is counted and logged.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Sequence
from typing import Protocol

from schedule_sync.calendar.client import BATCH_LIMIT
from schedule_sync.calendar.exceptions import CalendarAPIError
from schedule_sync.models.sync import (
    BatchResult,
    EventMapping,
    ExecutionSummary,
    OperationMethod,
    SyncOperation,
)
from schedule_sync.sync.context import SyncRunContext

logger = logging.getLogger(__name__)


class BatchClient(Protocol):
    """The part of the calendar client the executor needs."""

    async def batch(self, operations: Sequence[SyncOperation]) -> list[BatchResult]: ...


class BatchExecutor:
    """Runs operations through physical batch requests.

    Args:
        batch_limit: Maximum calls per physical batch (1 to
            :data:`~schedule_sync.calendar.client.BATCH_LIMIT`).
        chunk_delay: Seconds to wait between consecutive chunks of the same
            user.

    Raises:
        ValueError: If *batch_limit* is out of range or *chunk_delay* is
            negative.
    """

    def __init__(self, batch_limit: int = BATCH_LIMIT, chunk_delay: float = 1.0) -> None:
        if not 1 <= batch_limit <= BATCH_LIMIT:
            raise ValueError(f"batch_limit must be between 1 and {BATCH_LIMIT}, got {batch_limit}")
        if chunk_delay < 0:
            raise ValueError(f"chunk_delay must not be negative, got {chunk_delay}")
        self.batch_limit = batch_limit
        self.chunk_delay = chunk_delay

    def batch_count(self, operations: Sequence[SyncOperation]) -> int:
        """Number of physical batch requests *operations* need."""
        return math.ceil(len(operations) / self.batch_limit)

    async def run_batches(
        self,
        operations: Sequence[SyncOperation],
        client: BatchClient,
        user_id: str = "",
    ) -> list[BatchResult]:
        """Send *operations* in chunks and return index-aligned results.

        A chunk whose physical request fails is reported as one error result
        per operation in it; later chunks are still sent.
        """
        results: list[BatchResult] = []
        total = self.batch_count(operations)

        for number, start in enumerate(range(0, len(operations), self.batch_limit), start=1):
            if number > 1 and self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)

            chunk = operations[start : start + self.batch_limit]
            try:
                chunk_results = await client.batch(chunk)
            except CalendarAPIError as exc:
                logger.error(
                    "User %s: batch %d/%d of %d operation(s) failed: %s",
                    user_id,
                    number,
                    total,
                    len(chunk),
                    exc,
                )
                chunk_results = [
                    BatchResult(
                        correlation_id=operation.correlation_id,
                        error_message=f"Batch request failed: {exc}",
                    )
                    for operation in chunk
                ]
            else:
                logger.debug(
                    "User %s: batch %d/%d completed with %d result(s)",
                    user_id,
                    number,
                    total,
                    len(chunk_results),
                )
            results.extend(chunk_results)

        return results

    async def execute(
        self,
        operations: Sequence[SyncOperation],
        client: BatchClient,
        user_id: str,
        context: SyncRunContext,
    ) -> ExecutionSummary:
        """Execute write operations and queue the resulting store mutations.

        Args:
            operations: PUT, POST and DELETE operations of one user.
            client: That user's calendar client.
            user_id: Owner of the operations.
            context: Run context receiving the queued mutations.

        Returns:
            Counters of what happened.
        """
        summary = ExecutionSummary(batches=self.batch_count(operations))
        if not operations:
            return summary

        results = await self.run_batches(operations, client, user_id)
        timestamp = context.write_timestamp()

        for operation, result in zip(operations, results):
            self._apply(operation, result, user_id, context, summary, timestamp)

        logger.info(
            "User %s: %d created, %d updated, %d deleted, %d failed in %d batch(es)",
            user_id,
            summary.created,
            summary.updated,
            summary.deleted,
            summary.failed,
            summary.batches,
        )
        return summary

    # ------------------------------------------------------------------
    # Result handling
    # ------------------------------------------------------------------

    def _apply(
        self,
        operation: SyncOperation,
        result: BatchResult,
        user_id: str,
        context: SyncRunContext,
        summary: ExecutionSummary,
        timestamp: int,
    ) -> None:
        method = operation.method

        if result.ok:
            if method is OperationMethod.POST:
                if not result.remote_id:
                    summary.failed += 1
                    logger.error(
                        "User %s: insert of event %s returned no id", user_id, operation.correlation_id
                    )
                    return
                if result.remote_id != operation.attempted_remote_id:
                    logger.warning(
                        "User %s: event %s was created as %s instead of %s",
                        user_id,
                        operation.correlation_id,
                        result.remote_id,
                        operation.attempted_remote_id,
                    )
                context.writes.upsert_mapping(
                    EventMapping(operation.correlation_id, user_id, result.remote_id, timestamp)
                )
                summary.created += 1
            elif method is OperationMethod.PUT:
                remote_id = result.remote_id or operation.remote_event_id or ""
                context.writes.upsert_mapping(
                    EventMapping(operation.correlation_id, user_id, remote_id, timestamp)
                )
                summary.updated += 1
            elif method is OperationMethod.DELETE:
                summary.deleted += 1
            summary.applied += 1
            return

        if method is OperationMethod.PUT and result.is_gone:
            logger.info(
                "User %s: event %s vanished (%s), dropping its mapping",
                user_id,
                operation.remote_event_id,
                result.error_code,
            )
            context.writes.delete_mapping(operation.correlation_id, user_id)
            summary.vanished += 1
            return

        if method is OperationMethod.POST and result.error_code == 409:
            logger.warning(
                "User %s: event %s already exists remotely as %s",
                user_id,
                operation.correlation_id,
                operation.attempted_remote_id,
            )
            summary.conflicts += 1
            return

        if method is OperationMethod.DELETE and result.is_gone:
            logger.debug("User %s: event %s already deleted", user_id, operation.remote_event_id)
            summary.deleted += 1
            summary.applied += 1
            return

        summary.failed += 1
        logger.error(
            "User %s: %s %s failed (%s): %s",
            user_id,
            method.value,
            operation.endpoint,
            result.error_code,
            result.error_message,
        )
