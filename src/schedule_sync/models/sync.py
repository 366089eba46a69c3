"""Data models for the reconciliation engine.

Persistent records:

- :class:`UserAccount` -- a user's credential and dedicated calendar.
- :class:`EventMapping` -- the link between a desired event and the remote
  event created for it, keyed by :class:`MappingKey`.

Transient, per-run records:

- :class:`SyncOperation` -- one planned remote call.
- :class:`BatchResult` -- the outcome of one operation inside a batch.
- :class:`ExecutionSummary`, :class:`UserReport`, :class:`RunReport` --
  aggregated outcomes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NamedTuple
from urllib.parse import quote

_API_ROOT = "https://www.googleapis.com/calendar/v3"

# Remote status of an event that was deleted or cancelled out-of-band.
CANCELLED_STATUS = "cancelled"


class MappingKey(NamedTuple):
    """Composite key of an :class:`EventMapping`."""

    desired_event_id: str
    user_id: str


@dataclass
class UserAccount:
    """A user linked to a remote calendar account.

    Attributes:
        user_id: Identifier of the user in the scheduling source.
        calendar_id: Dedicated remote calendar, or ``None`` until created
            (and again after a reset).
        credential_token: Long-lived OAuth refresh token, or ``None``.
        chat_id: Address used for notifications, or ``None``.
    """

    user_id: str
    calendar_id: str | None = None
    credential_token: str | None = None
    chat_id: str | None = None

    @property
    def has_valid_credential(self) -> bool:
        """Whether a non-blank credential is stored."""
        return bool(self.credential_token and self.credential_token.strip())


@dataclass(frozen=True)
class EventMapping:
    """Link from a desired event to the remote event representing it.

    Attributes:
        desired_event_id: Source-assigned desired event ID.
        user_id: Owner of the remote calendar.
        remote_event_id: ID of the event on the remote calendar.
        last_write_timestamp: Unix time of the last successful write.
    """

    desired_event_id: str
    user_id: str
    remote_event_id: str
    last_write_timestamp: int = 0

    @property
    def key(self) -> MappingKey:
        return MappingKey(self.desired_event_id, self.user_id)


class OperationMethod(str, Enum):
    """HTTP method of a planned remote call."""

    GET = "GET"
    PUT = "PUT"
    POST = "POST"
    DELETE = "DELETE"


@dataclass(frozen=True)
class SyncOperation:
    """One remote call planned for a batch round.

    Never persisted.  ``correlation_id`` is the desired event ID for writes
    and the remote event ID for drift checks and deletions.

    Attributes:
        method: HTTP method.
        calendar_id: Calendar the event lives in.
        remote_event_id: Target event for GET/PUT/DELETE, ``None`` for POST.
        body: Event resource for PUT/POST.
        correlation_id: Identifier used to interpret the result.
        attempted_remote_id: Remote ID the call targets or, for POST, the
            candidate ID embedded in the body.
    """

    method: OperationMethod
    calendar_id: str
    correlation_id: str
    remote_event_id: str | None = None
    body: dict[str, Any] | None = None
    attempted_remote_id: str | None = None

    @property
    def endpoint(self) -> str:
        """REST endpoint of the call, for logging."""
        base = f"{_API_ROOT}/calendars/{quote(self.calendar_id, safe='@.')}/events"
        if self.method is OperationMethod.POST or self.remote_event_id is None:
            return base
        return f"{base}/{quote(self.remote_event_id, safe='')}"


@dataclass(frozen=True)
class BatchResult:
    """Outcome of one operation in a batch, index-aligned with the request.

    Attributes:
        correlation_id: Copied from the originating :class:`SyncOperation`.
        remote_id: ``id`` of the returned resource, if any.
        status: ``status`` of the returned event resource, if any.
        error_code: HTTP status of an item-level error, or ``None``.
            Transport failures of a whole chunk carry ``None`` here and a
            message in ``error_message``.
        error_message: Human-readable error description.
    """

    correlation_id: str
    remote_id: str | None = None
    status: str | None = None
    error_code: int | None = None
    error_message: str | None = None

    @property
    def ok(self) -> bool:
        """Whether the item succeeded."""
        return self.error_code is None and self.error_message is None

    @property
    def is_gone(self) -> bool:
        """Whether the remote object no longer exists (404 or 410)."""
        return self.error_code in (404, 410)


@dataclass
class ExecutionSummary:
    """Aggregated outcome of executing planned operations for one user.

    Attributes:
        applied: Operations whose result was applied.
        failed: Operations that failed (item errors and chunk failures).
        created: Successful POSTs.
        updated: Successful PUTs.
        deleted: Successful (or already-gone) DELETEs.
        conflicts: POSTs rejected with 409.
        vanished: PUTs whose target disappeared (404/410).
        batches: Physical batch calls issued.
    """

    applied: int = 0
    failed: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    conflicts: int = 0
    vanished: int = 0
    batches: int = 0

    def merge(self, other: ExecutionSummary) -> None:
        """Add the counters of *other* into this summary."""
        self.applied += other.applied
        self.failed += other.failed
        self.created += other.created
        self.updated += other.updated
        self.deleted += other.deleted
        self.conflicts += other.conflicts
        self.vanished += other.vanished
        self.batches += other.batches


@dataclass
class UserReport:
    """What happened to one user during a run.

    Attributes:
        user_id: The user.
        status: ``"synced"``, ``"skipped"``, ``"failed"`` or ``"aborted"``.
        desired: Number of desired events considered.
        stale: Mappings found stale by drift detection.
        summary: Write execution counters.
        error: Error description for failed users.
    """

    user_id: str
    status: str = "synced"
    desired: int = 0
    stale: int = 0
    summary: ExecutionSummary = field(default_factory=ExecutionSummary)
    error: str | None = None


@dataclass
class RunReport:
    """Aggregated result of one sync run.

    Attributes:
        trigger: ``"scheduled"`` or ``"manual"``.
        status: ``"completed"`` or ``"failed"``.
        users: Per-user reports in processing order.
        flushed: Store mutations applied during the flush.
        flush_failures: Store mutations that failed during the flush.
        duration_seconds: Wall-clock duration of the run.
        error: Setup error description for failed runs.
    """

    trigger: str
    status: str = "completed"
    users: list[UserReport] = field(default_factory=list)
    flushed: int = 0
    flush_failures: int = 0
    duration_seconds: float = 0.0
    error: str | None = None

    @property
    def synced_users(self) -> int:
        return sum(1 for report in self.users if report.status == "synced")

    @property
    def skipped_users(self) -> int:
        return sum(1 for report in self.users if report.status == "skipped")

    @property
    def failed_users(self) -> int:
        return sum(1 for report in self.users if report.status == "failed")

    @property
    def totals(self) -> ExecutionSummary:
        """Execution counters summed over all users."""
        total = ExecutionSummary()
        for report in self.users:
            total.merge(report.summary)
        return total
