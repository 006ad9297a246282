"""Periodic sync drivers.

A ``SchedulerHandle`` runs one pass over every user as soon as it starts and
then again every interval, until it is stopped. Passes never overlap: the next
pass starts one interval after the previous one started, or right after it
finished when it ran longer than the interval.

The base handle drives calendar sync; ``EmailScanScheduler`` drives inbox
scans on its own interval.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Optional

from .email_engine import EmailSyncEngine
from .events import SyncEvent, SyncEventBus, SyncEventType
from .models import EmailScanOutcome, EmailScanSummary, PassSummary, SyncOutcome, SyncSummary
from .sync_engine import CalendarSyncEngine
from ..database import Database
from ..models import User


logger = logging.getLogger(__name__)


class SchedulerState(Enum):
    IDLE = "idle"
    ARMED = "armed"
    STOPPED = "stopped"


class SchedulerHandle:
    """Owns the background loop that syncs every user's calendar."""

    job = "calendar"
    label = "Calendar sync"

    def __init__(self, engine: CalendarSyncEngine, db: Database, grant_id: Optional[str],
                 interval_minutes: float = 15, user_timeout_seconds: float = 300,
                 event_bus: Optional[SyncEventBus] = None):
        """Initialize the scheduler.

        Args:
            engine: Engine used for each user sync
            db: Database the user list is read from
            grant_id: Provider grant; the scheduler stays idle without one
            interval_minutes: Delay between pass starts
            user_timeout_seconds: Upper bound on one user's sync
            event_bus: Receives scheduler events (defaults to the engine's bus)
        """
        self.engine = engine
        self.db = db
        self.grant_id = grant_id
        self.interval_seconds = interval_minutes * 60
        self.user_timeout_seconds = user_timeout_seconds
        self.event_bus = event_bus or engine.event_bus
        self.logger = logging.getLogger(__name__)

        self.state = SchedulerState.IDLE
        self.pass_count = 0
        self.last_summary: Optional[PassSummary] = None
        self._task: Optional[asyncio.Task] = None
        self._pass_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self.state == SchedulerState.ARMED

    def _emit(self, event_type: SyncEventType, user_id: Optional[int] = None, **detail: Any):
        self.event_bus.emit(SyncEvent(
            type=event_type,
            user_id=user_id,
            detail=detail,
            timestamp=self.engine.clock(),
            job=self.job,
        ))

    # Per-job hooks

    async def _sync_user(self, user: User) -> SyncOutcome:
        return await self.engine.sync_user_calendar(user.id, self.grant_id)

    def _new_summary(self) -> PassSummary:
        return SyncSummary(started_at=self.engine.clock())

    def _new_outcome(self, user_id: int, user_email: str) -> SyncOutcome:
        return SyncOutcome(user_id=user_id, user_email=user_email, started_at=self.engine.clock())

    def _describe_outcome(self, outcome: SyncOutcome) -> str:
        return (
            f"{outcome.tasks_created} tasks from {outcome.total_events} events, "
            f"{len(outcome.errors)} errors"
        )

    # Lifecycle

    def start(self) -> bool:
        """Arm the scheduler; must be called from a running event loop.

        Returns:
            True if the loop is running, False if the scheduler stays idle
        """
        if self.state == SchedulerState.ARMED:
            return True
        if self.state == SchedulerState.STOPPED:
            self.logger.warning(f"{self.label} scheduler was stopped and cannot be restarted")
            return False

        if not self.grant_id:
            self.logger.warning(f"No grant configured, {self.label.lower()} scheduler disabled")
            self._emit(SyncEventType.SCHEDULER_IDLE, reason="missing_grant")
            return False

        self._task = asyncio.get_running_loop().create_task(self._run_loop())
        self.state = SchedulerState.ARMED
        self.logger.info(f"{self.label} scheduler started (every {self.interval_seconds / 60:g} minutes)")
        self._emit(SyncEventType.SCHEDULER_STARTED, interval_seconds=self.interval_seconds)
        return True

    async def stop(self):
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self.state != SchedulerState.STOPPED:
            self.state = SchedulerState.STOPPED
            self.logger.info(f"{self.label} scheduler stopped")
            self._emit(SyncEventType.SCHEDULER_STOPPED, pass_count=self.pass_count)

    async def _run_loop(self):
        loop = asyncio.get_running_loop()
        while True:
            started = loop.time()
            try:
                await self.run_pass()
            except Exception as e:
                self.logger.error(f"Scheduled {self.label.lower()} failed: {e}", exc_info=True)

            elapsed = loop.time() - started
            await asyncio.sleep(max(0.0, self.interval_seconds - elapsed))

    async def run_pass(self) -> PassSummary:
        """Process every user once, one after the other.

        A failure or timeout for one user is recorded in that user's outcome
        and the pass moves on to the next user.
        """
        async with self._pass_lock:
            return await self._run_pass()

    async def _run_pass(self) -> PassSummary:
        summary = self._new_summary()
        self._emit(SyncEventType.PASS_STARTED)

        users = await self.db.list_users()
        self.logger.info(f"Starting scheduled {self.label.lower()} for {len(users)} users")

        for user in users:
            try:
                outcome = await asyncio.wait_for(
                    self._sync_user(user),
                    timeout=self.user_timeout_seconds,
                )
            except asyncio.TimeoutError:
                message = f"Sync timed out after {self.user_timeout_seconds:g} seconds"
                self.logger.error(f"{self.label} for {user.email} timed out")
                outcome = self._failed_outcome(user.id, user.email, message)
                self._emit(SyncEventType.USER_FAILED, user.id, error=message)
            except Exception as e:
                self.logger.error(f"{self.label} failed for {user.email}: {e}")
                outcome = self._failed_outcome(user.id, user.email, str(e))

            summary.outcomes.append(outcome)

        summary.complete(self.engine.clock())
        self.last_summary = summary
        self.pass_count += 1

        self.logger.info(
            f"Scheduled {self.label.lower()} completed: {summary.total_users} users, "
            f"{summary.total_tasks_created} tasks created, "
            f"{summary.total_errors} errors in {summary.duration_seconds:.2f}s"
        )
        for outcome in summary.outcomes:
            self.logger.info(f"  {outcome.user_email or outcome.user_id}: {self._describe_outcome(outcome)}")

        self._emit(SyncEventType.PASS_COMPLETED, duration_seconds=summary.duration_seconds, **summary.totals())
        return summary

    def _failed_outcome(self, user_id: int, user_email: str, error: str):
        outcome = self._new_outcome(user_id, user_email)
        outcome.add_error(error)
        outcome.complete(outcome.started_at)
        return outcome

    def status(self) -> Dict[str, Any]:
        """Scheduler diagnostics for the API and CLI."""
        return {
            'job': self.job,
            'state': self.state.value,
            'grant_configured': bool(self.grant_id),
            'interval_minutes': self.interval_seconds / 60,
            'pass_count': self.pass_count,
            'last_summary': self.last_summary.to_dict() if self.last_summary else None,
        }


class EmailScanScheduler(SchedulerHandle):
    """Background loop that scans every user's inbox for tasks."""

    job = "email"
    label = "Email scan"

    def __init__(self, engine: EmailSyncEngine, db: Database, grant_id: Optional[str],
                 interval_minutes: float = 1, user_timeout_seconds: float = 300,
                 event_bus: Optional[SyncEventBus] = None):
        super().__init__(engine, db, grant_id, interval_minutes=interval_minutes,
                         user_timeout_seconds=user_timeout_seconds, event_bus=event_bus)

    async def _sync_user(self, user: User) -> EmailScanOutcome:
        return await self.engine.scan_user_emails(user.id, self.grant_id)

    def _new_summary(self) -> PassSummary:
        return EmailScanSummary(started_at=self.engine.clock())

    def _new_outcome(self, user_id: int, user_email: str) -> EmailScanOutcome:
        return EmailScanOutcome(user_id=user_id, user_email=user_email, started_at=self.engine.clock())

    def _describe_outcome(self, outcome: EmailScanOutcome) -> str:
        return (
            f"{outcome.tasks_created} tasks from {outcome.total_scanned} emails, "
            f"{len(outcome.errors)} errors"
        )
