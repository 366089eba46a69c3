"""Retryable Google Calendar transport.

Provides :class:`RemoteCalendarClient`, a thin asynchronous wrapper around the
``googleapiclient`` Calendar v3 service resource that offers:

- **call** -- execute a single API request with retry.
- **batch** -- execute up to :data:`BATCH_LIMIT` event operations in one
  physical batch request and return one :class:`BatchResult` per operation,
  in submission order.
- Calendar helpers (get, create, delete) used by the account resolver and
  the reset command.

The ``googleapiclient`` transport is blocking, so every request runs in a
worker thread.  Each client owns its own service object; it must not be
shared between concurrently running user tasks.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from schedule_sync.calendar.exceptions import CalendarAPIError, RetryPolicy, with_retry
from schedule_sync.models.sync import BatchResult, OperationMethod, SyncOperation

logger = logging.getLogger(__name__)

# Maximum number of calls Google accepts in one batch request.
BATCH_LIMIT = 50


class RemoteCalendarClient:
    """Asynchronous, retrying client for one user's Google Calendar.

    Args:
        access_token: Short-lived OAuth access token of the user.
        retry_policy: Backoff settings for single calls and for the
            physical batch request.  Defaults to :class:`RetryPolicy()`.
        service: Optional pre-built ``googleapiclient`` service resource.
            If ``None``, one is built from *access_token*.  Pass a mock here
            in tests.
    """

    def __init__(
        self,
        access_token: str,
        retry_policy: RetryPolicy | None = None,
        service: Any | None = None,
    ) -> None:
        self._retry_policy = retry_policy or RetryPolicy()
        if service is None:
            credentials = Credentials(token=access_token)
            service = build(
                "calendar", "v3", credentials=credentials, cache_discovery=False
            )
        self._service = service

    # ------------------------------------------------------------------
    # Single calls
    # ------------------------------------------------------------------

    @with_retry()
    async def call(self, request: Any) -> dict:
        """Execute one ``googleapiclient`` request.

        Args:
            request: An ``HttpRequest`` built from the service resource.

        Returns:
            The decoded response body (an empty ``dict`` for empty bodies,
            such as DELETE responses).

        Raises:
            CalendarAPIError: The classified error once the request fails
                permanently or exhausts its retries.
        """
        result = await asyncio.to_thread(request.execute)
        return result or {}

    async def get_calendar(self, calendar_id: str) -> dict:
        """Fetch a calendar resource by ID."""
        return await self.call(self._service.calendars().get(calendarId=calendar_id))

    async def create_calendar(self, summary: str, timezone: str) -> str:
        """Create a secondary calendar and return its ID.

        Raises:
            CalendarAPIError: If the API fails or returns no ID.
        """
        created = await self.call(
            self._service.calendars().insert(
                body={"summary": summary, "timeZone": timezone}
            )
        )
        calendar_id = created.get("id")
        if not calendar_id:
            raise CalendarAPIError("Calendar insert returned no id")
        logger.info("Created calendar '%s' (id=%s)", summary, calendar_id)
        return calendar_id

    async def delete_calendar(self, calendar_id: str) -> None:
        """Delete a secondary calendar and every event in it."""
        await self.call(self._service.calendars().delete(calendarId=calendar_id))
        logger.info("Deleted calendar (id=%s)", calendar_id)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def batch(self, operations: Sequence[SyncOperation]) -> list[BatchResult]:
        """Execute *operations* as a single physical batch request.

        Item failures never abort the batch; each is reported in its own
        :class:`BatchResult`.  Results are correlated to operations by
        position only.

        Args:
            operations: At most :data:`BATCH_LIMIT` event operations.

        Returns:
            One result per operation, in the order of *operations*.

        Raises:
            ValueError: If more than :data:`BATCH_LIMIT` operations are given.
            CalendarAPIError: If the batch request itself fails after
                retries (network error, rate limit on the batch endpoint).
        """
        if len(operations) > BATCH_LIMIT:
            raise ValueError(
                f"A batch holds at most {BATCH_LIMIT} operations, got {len(operations)}"
            )
        if not operations:
            return []

        responses = await self._execute_batch(operations)

        results: list[BatchResult] = []
        for index, operation in enumerate(operations):
            if index not in responses:
                results.append(
                    BatchResult(
                        correlation_id=operation.correlation_id,
                        error_message="No response for batch item",
                    )
                )
                continue
            response, exception = responses[index]
            results.append(_to_result(operation, response, exception))
        return results

    @with_retry()
    async def _execute_batch(
        self, operations: Sequence[SyncOperation]
    ) -> dict[int, tuple[Any, Exception | None]]:
        """Build and execute a fresh batch request.

        A new ``BatchHttpRequest`` is built on every attempt so a retried
        batch never carries responses from a failed one.
        """
        responses: dict[int, tuple[Any, Exception | None]] = {}

        def _collect(request_id: str, response: Any, exception: Exception | None) -> None:
            responses[int(request_id)] = (response, exception)

        batch = self._service.new_batch_http_request(callback=_collect)
        for index, operation in enumerate(operations):
            batch.add(self._build_request(operation), request_id=str(index))

        await asyncio.to_thread(batch.execute)
        return responses

    def _build_request(self, operation: SyncOperation) -> Any:
        """Turn a :class:`SyncOperation` into a ``googleapiclient`` request."""
        events = self._service.events()
        method = operation.method

        if method is OperationMethod.POST:
            return events.insert(calendarId=operation.calendar_id, body=operation.body)
        if operation.remote_event_id is None:
            raise ValueError(f"{method.value} operation needs a remote event id")
        if method is OperationMethod.GET:
            return events.get(
                calendarId=operation.calendar_id, eventId=operation.remote_event_id
            )
        if method is OperationMethod.PUT:
            return events.update(
                calendarId=operation.calendar_id,
                eventId=operation.remote_event_id,
                body=operation.body,
            )
        return events.delete(
            calendarId=operation.calendar_id, eventId=operation.remote_event_id
        )


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------


def _to_result(
    operation: SyncOperation,
    response: Any,
    exception: Exception | None,
) -> BatchResult:
    """Convert one batch callback payload into a :class:`BatchResult`.

    Args:
        operation: The operation the payload belongs to.
        response: Decoded response body, or ``None``.
        exception: Item-level error raised by the batch, or ``None``.

    Returns:
        The result carrying the remote ID and status on success, or the
        HTTP error code and message on failure.
    """
    if isinstance(exception, HttpError):
        return BatchResult(
            correlation_id=operation.correlation_id,
            error_code=int(exception.resp.status),
            error_message=getattr(exception, "reason", None) or str(exception),
        )
    if exception is not None:
        return BatchResult(
            correlation_id=operation.correlation_id,
            error_message=str(exception) or type(exception).__name__,
        )

    if isinstance(response, dict) and response:
        return BatchResult(
            correlation_id=operation.correlation_id,
            remote_id=response.get("id"),
            status=response.get("status"),
        )

    # Empty body: a successful DELETE.
    return BatchResult(
        correlation_id=operation.correlation_id,
        remote_id=operation.remote_event_id,
    )
