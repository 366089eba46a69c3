"""Per-run state shared by the sync stages.

A :class:`SyncRunContext` is created by the orchestrator for every run and
passed explicitly to each stage.  It owns the deferred store writes and the
per-user reports; nothing about a run lives in module-level state.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from schedule_sync.models.sync import UserReport
from schedule_sync.store.queue import StoreWriteQueue


@dataclass
class SyncRunContext:
    """State of one sync run.

    Attributes:
        trigger: What started the run (``"scheduled"`` or ``"manual"``).
        started_at: Aware UTC start time; shown in event descriptions.
        writes: Store mutations queued by the user tasks.
        reports: Per-user reports, keyed by user ID.
    """

    trigger: str = "scheduled"
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    writes: StoreWriteQueue = field(default_factory=StoreWriteQueue)
    reports: dict[str, UserReport] = field(default_factory=dict)

    def report_for(self, user_id: str) -> UserReport:
        """Return the report of *user_id*, creating it on first use."""
        report = self.reports.get(user_id)
        if report is None:
            report = UserReport(user_id=user_id)
            self.reports[user_id] = report
        return report

    @staticmethod
    def write_timestamp() -> int:
        """Unix time recorded on mappings written now."""
        return int(time.time())
