"""Data models for schedule-sync."""

from __future__ import annotations

from schedule_sync.models.events import DesiredEvent, EventCategory
from schedule_sync.models.sync import (
    BatchResult,
    EventMapping,
    ExecutionSummary,
    MappingKey,
    OperationMethod,
    RunReport,
    SyncOperation,
    UserAccount,
    UserReport,
)

__all__ = [
    "BatchResult",
    "DesiredEvent",
    "EventCategory",
    "EventMapping",
    "ExecutionSummary",
    "MappingKey",
    "OperationMethod",
    "RunReport",
    "SyncOperation",
    "UserAccount",
    "UserReport",
]
