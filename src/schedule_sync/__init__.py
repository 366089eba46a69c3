"""schedule-sync: keep users' Google Calendars in line with their schedule.

Reconciles each linked user's dedicated calendar against the desired events
computed from the scheduling source, through batched, retried Calendar API
calls, and records the resulting event mappings so repeated runs converge.
"""

from __future__ import annotations

from schedule_sync.exceptions import LinkError, StoreError, SyncSetupError
from schedule_sync.models.events import DesiredEvent, EventCategory
from schedule_sync.models.sync import EventMapping, RunReport, UserAccount
from schedule_sync.store.sqlite import SQLiteStateStore, StoreEventSource
from schedule_sync.sync.orchestrator import SyncOrchestrator, SyncState

__version__ = "0.1.0"

__all__ = [
    "DesiredEvent",
    "EventCategory",
    "EventMapping",
    "LinkError",
    "RunReport",
    "SQLiteStateStore",
    "StoreError",
    "StoreEventSource",
    "SyncOrchestrator",
    "SyncSetupError",
    "SyncState",
    "UserAccount",
]
