"""Google Calendar integration for schedule-sync."""

from __future__ import annotations

from schedule_sync.calendar.auth import exchange_refresh_token
from schedule_sync.calendar.client import BATCH_LIMIT, RemoteCalendarClient
from schedule_sync.calendar.event_mapper import build_event_resource
from schedule_sync.calendar.exceptions import RetryPolicy

__all__ = [
    "BATCH_LIMIT",
    "RemoteCalendarClient",
    "RetryPolicy",
    "build_event_resource",
    "exchange_refresh_token",
]
