"""Per-user reconciliation engine."""

from __future__ import annotations

from schedule_sync.sync.accounts import AccountResolver, ResolvedAccount
from schedule_sync.sync.context import SyncRunContext
from schedule_sync.sync.drift import DriftDetector, DriftReport
from schedule_sync.sync.executor import BatchExecutor
from schedule_sync.sync.orchestrator import SyncOrchestrator, SyncState
from schedule_sync.sync.planner import new_remote_id, plan_operations, plan_remote_deletes
from schedule_sync.sync.reset import ResetSummary, reset_calendars

__all__ = [
    "AccountResolver",
    "BatchExecutor",
    "DriftDetector",
    "DriftReport",
    "ResetSummary",
    "ResolvedAccount",
    "SyncOrchestrator",
    "SyncRunContext",
    "SyncState",
    "new_remote_id",
    "plan_operations",
    "plan_remote_deletes",
    "reset_calendars",
]
