"""Persistence for schedule-sync."""

from __future__ import annotations

from schedule_sync.store.base import DesiredEventSource, LoginAttempt, StateStore
from schedule_sync.store.queue import FlushResult, StoreWriteQueue
from schedule_sync.store.sqlite import SQLiteStateStore, StoreEventSource

__all__ = [
    "DesiredEventSource",
    "FlushResult",
    "LoginAttempt",
    "SQLiteStateStore",
    "StateStore",
    "StoreEventSource",
    "StoreWriteQueue",
]
