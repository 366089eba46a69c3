"""Sync run orchestration.

:class:`SyncOrchestrator` drives one run at a time:

1. **List** the linked users.  Failure to list them aborts the run.
2. **Process** the users in groups of ``user_concurrency``.  Each user task
   resolves the account, detects drift, deletes cancelled remote events,
   then plans and executes the writes.  A failing user never affects the
   others.
3. **Flush** every queued store mutation once, sequentially, after all
   user tasks have settled.

Runs are single-flight: a trigger arriving while a run is in progress is
rejected.  A stop request is honoured at user-group boundaries; calls that
are already in flight complete.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum
from typing import Any

from schedule_sync.config import Settings
from schedule_sync.exceptions import StoreError, SyncSetupError
from schedule_sync.log import run_label
from schedule_sync.models.events import DesiredEvent
from schedule_sync.models.sync import RunReport
from schedule_sync.store.base import DesiredEventSource, StateStore
from schedule_sync.sync.accounts import AccountResolver
from schedule_sync.sync.context import SyncRunContext
from schedule_sync.sync.drift import DriftDetector
from schedule_sync.sync.executor import BatchExecutor
from schedule_sync.sync.planner import plan_operations, plan_remote_deletes

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "last_sync"


class SyncState(str, Enum):
    IDLE = "idle"
    LISTING = "listing"
    PROCESSING = "processing"
    FLUSHING = "flushing"
    FAILED = "failed"


class SyncOrchestrator:
    """Runs reconciliation for every linked user.

    Args:
        store: State store (accounts, mappings, metadata).
        source: Provider of desired events per user.
        resolver: Turns user IDs into ready calendar clients.
        executor: Batch executor shared by all user tasks.
        timezone: IANA timezone written into event bodies.
        user_concurrency: Users processed simultaneously.
        user_group_delay: Seconds to pause between user groups.
        detector: Drift detector; built from *store* and *executor* if
            omitted.
    """

    def __init__(
        self,
        store: StateStore,
        source: DesiredEventSource,
        resolver: AccountResolver,
        *,
        executor: BatchExecutor | None = None,
        timezone: str = "Asia/Yekaterinburg",
        user_concurrency: int = 5,
        user_group_delay: float = 0.0,
        detector: DriftDetector | None = None,
    ) -> None:
        if user_concurrency < 1:
            raise ValueError(f"user_concurrency must be positive, got {user_concurrency}")
        self._store = store
        self._source = source
        self._resolver = resolver
        self._executor = executor or BatchExecutor()
        self._detector = detector or DriftDetector(store, self._executor)
        self._timezone = timezone
        self._user_concurrency = user_concurrency
        self._user_group_delay = user_group_delay

        self._state = SyncState.IDLE
        self._running = False
        self._abort_run = False
        self._stop_event: asyncio.Event | None = None
        self._interval: float | None = None
        self.last_report: RunReport | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: StateStore,
        source: DesiredEventSource,
    ) -> SyncOrchestrator:
        """Wire an orchestrator from application settings."""
        return cls(
            store,
            source,
            AccountResolver.from_settings(store, settings),
            executor=BatchExecutor(settings.batch_limit, settings.chunk_delay),
            timezone=settings.timezone,
            user_concurrency=settings.user_concurrency,
            user_group_delay=settings.chunk_delay * 2,
        )

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def run_once(self, trigger: str = "scheduled") -> RunReport | None:
        """Execute one full sync run.

        Args:
            trigger: Label recorded on the report.

        Returns:
            The run report, or ``None`` if another run was in progress.
        """
        if self._running:
            logger.warning("Sync already in progress, ignoring %s trigger", trigger)
            return None

        self._running = True
        context = SyncRunContext(trigger=trigger)
        with run_label(f"{trigger}@{context.started_at:%H:%M:%S}"):
            report = await self._run(context)
        self.last_report = report
        return report

    async def _run(self, context: SyncRunContext) -> RunReport:
        trigger = context.trigger
        started = time.monotonic()
        report = RunReport(trigger=trigger)
        user_ids: list[str] = []
        logger.info("Starting %s sync run", trigger)

        try:
            self._state = SyncState.LISTING
            user_ids = self._list_users()
            logger.info("Found %d linked user(s)", len(user_ids))

            self._state = SyncState.PROCESSING
            await self._process_users(user_ids, context)

            self._state = SyncState.FLUSHING
            flushed = context.writes.flush(self._store)
            report.flushed = flushed.applied
            report.flush_failures = flushed.failed
            self._record_last_sync(context)

            self._state = SyncState.IDLE
        except SyncSetupError as exc:
            self._state = SyncState.FAILED
            report.status = "failed"
            report.error = str(exc)
            logger.error("Sync run aborted: %s", exc)
        finally:
            self._running = False
            self._abort_run = False
            report.duration_seconds = time.monotonic() - started

        report.users = [context.report_for(user_id) for user_id in user_ids]
        totals = report.totals
        logger.info(
            "Sync run %s in %.1fs: %d synced, %d skipped, %d failed; "
            "%d created, %d updated, %d deleted, %d write failure(s)",
            report.status,
            report.duration_seconds,
            report.synced_users,
            report.skipped_users,
            report.failed_users,
            totals.created,
            totals.updated,
            totals.deleted,
            totals.failed,
        )
        return report

    def _list_users(self) -> list[str]:
        try:
            return self._store.list_linked_users()
        except StoreError as exc:
            raise SyncSetupError(f"Could not list linked users: {exc}") from exc

    def _record_last_sync(self, context: SyncRunContext) -> None:
        try:
            self._store.set_meta(LAST_SYNC_KEY, context.started_at.isoformat())
        except StoreError as exc:
            logger.error("Could not record last sync time: %s", exc)

    async def _process_users(self, user_ids: Sequence[str], context: SyncRunContext) -> None:
        size = self._user_concurrency
        groups = [user_ids[start : start + size] for start in range(0, len(user_ids), size)]

        for number, group in enumerate(groups):
            if self._abort_run:
                remaining = [user_id for later in groups[number:] for user_id in later]
                for user_id in remaining:
                    context.report_for(user_id).status = "aborted"
                logger.warning("Sync run stopped, %d user(s) not processed", len(remaining))
                return

            if number and self._user_group_delay:
                await asyncio.sleep(self._user_group_delay)

            try:
                events_by_user = await self._source.events_for_users(group)
            except Exception as exc:
                logger.error("Could not load desired events for %d user(s)", len(group), exc_info=exc)
                for user_id in group:
                    report = context.report_for(user_id)
                    report.status = "failed"
                    report.error = f"Desired events unavailable: {exc}"
                continue

            outcomes = await asyncio.gather(
                *(self._sync_user(user_id, events_by_user.get(user_id, []), context) for user_id in group),
                return_exceptions=True,
            )
            for user_id, outcome in zip(group, outcomes):
                if isinstance(outcome, BaseException):
                    report = context.report_for(user_id)
                    report.status = "failed"
                    report.error = str(outcome) or type(outcome).__name__
                    logger.error("User %s: sync failed", user_id, exc_info=outcome)

    async def _sync_user(
        self,
        user_id: str,
        desired_events: Sequence[DesiredEvent],
        context: SyncRunContext,
    ) -> None:
        report = context.report_for(user_id)
        report.desired = len(desired_events)

        if not desired_events:
            report.status = "skipped"
            logger.info("User %s: no desired events, skipping", user_id)
            return

        account = await self._resolver.resolve(user_id, context)
        if account is None:
            report.status = "skipped"
            return

        drift = await self._detector.detect(
            user_id, desired_events, account.client, account.calendar_id, context
        )
        report.stale = len(drift.stale_keys)

        if drift.stale_remote_ids:
            deletes = plan_remote_deletes(drift.stale_remote_ids, account.calendar_id)
            report.summary.merge(
                await self._executor.execute(deletes, account.client, user_id, context)
            )

        writes = plan_operations(
            desired_events,
            drift.active_map,
            account.calendar_id,
            timezone=self._timezone,
            refreshed_at=context.started_at,
        )
        report.summary.merge(await self._executor.execute(writes, account.client, user_id, context))
        report.status = "synced"

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def serve(
        self,
        interval: float,
        *,
        after_run: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        """Run immediately, then every *interval* seconds until stopped.

        Args:
            interval: Seconds between the end of one run and the next.
            after_run: Optional coroutine function awaited after each run
                (for example, processing pending account links).  Its
                failures are logged.
        """
        self._stop_event = asyncio.Event()
        self._interval = interval
        logger.info("Sync service started, interval %.0fs", interval)

        try:
            while not self._stop_event.is_set():
                await self.run_once("scheduled")
                if after_run is not None:
                    try:
                        await after_run()
                    except Exception:
                        logger.exception("Post-run task failed")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    continue
        finally:
            self._stop_event = None
            self._interval = None
            logger.info("Sync service stopped")

    def request_stop(self) -> None:
        """Stop the service loop and the current run at the next user group."""
        self._abort_run = self._running
        if self._stop_event is not None:
            self._stop_event.set()

    def trigger_manual(self) -> asyncio.Task[RunReport | None] | None:
        """Schedule a manual run on the running event loop.

        Returns:
            The task running the sync, or ``None`` if a run is in progress.
        """
        if self._running:
            logger.warning("Sync already in progress, manual trigger ignored")
            return None
        return asyncio.get_running_loop().create_task(self.run_once("manual"))

    def stats(self) -> dict[str, Any]:
        """Snapshot of the service state for status displays."""
        try:
            last_sync = self._store.get_meta(LAST_SYNC_KEY)
            linked_users: int | None = len(self._store.list_linked_users())
        except StoreError as exc:
            logger.error("Could not read sync stats: %s", exc)
            last_sync = None
            linked_users = None

        return {
            "state": self._state.value,
            "is_running": self._running,
            "last_sync": last_sync,
            "linked_users": linked_users,
            "sync_interval_minutes": self._interval / 60 if self._interval else None,
        }
