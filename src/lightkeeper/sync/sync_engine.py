"""Calendar synchronization engine.

Turns upcoming external calendar events into tasks, one task per event per
user, and pushes tasks with a due date back to the user's primary calendar.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .events import SyncEvent, SyncEventBus, SyncEventType
from .models import (
    ExternalEvent,
    SyncDirection,
    SyncOutcome,
    SyncRecord,
    pick_primary_calendar,
)
from .provider import CalendarProvider
from .sync_record_store import SyncRecordStore
from ..database import Database
from ..models import Task, TaskPriority, TaskSource, TaskStatus, User
from ..utils.datetime import add_days, now_utc, to_epoch


logger = logging.getLogger(__name__)


REVERSE_EVENT_DURATION = timedelta(hours=1)


class SyncError(Exception):
    """Base exception for sync engine failures."""
    pass


class UserNotFoundError(SyncError):
    """The user being synced does not exist."""

    def __init__(self, user_id: int):
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


def build_task_description(event: ExternalEvent) -> str:
    """Compose a task description from an event.

    Sections, separated by a blank line: the event description (or
    ``Calendar event: {title}``), the location if any, the participants if any.
    """
    sections = [event.description or f"Calendar event: {event.title}"]
    if event.location:
        sections.append(f"Location: {event.location}")
    if event.participants:
        names = ", ".join(p.display_name for p in event.participants)
        sections.append(f"Participants: {names}")
    return "\n\n".join(sections)


class CalendarSyncEngine:
    """Synchronizes external calendars with tasks."""

    def __init__(self, db: Database, record_store: SyncRecordStore, provider: CalendarProvider,
                 event_bus: Optional[SyncEventBus] = None,
                 clock: Callable[[], datetime] = now_utc,
                 window_days: int = 30,
                 fetch_limit: int = 100,
                 reverse_title_prefix: str = "[Lightkeeper] ",
                 default_grant_id: Optional[str] = None):
        """Initialize the sync engine.

        Args:
            db: Application database (users and tasks)
            record_store: Sync record storage
            provider: External calendar provider
            event_bus: Receives structured sync events
            clock: Returns the current aware datetime
            window_days: Length of the forward sync window
            fetch_limit: Maximum events fetched per sync
            reverse_title_prefix: Prefix for events created from tasks
            default_grant_id: Grant used by reverse sync when none is given
        """
        self.db = db
        self.record_store = record_store
        self.provider = provider
        self.event_bus = event_bus or SyncEventBus()
        self.clock = clock
        self.window_days = window_days
        self.fetch_limit = fetch_limit
        self.reverse_title_prefix = reverse_title_prefix
        self.default_grant_id = default_grant_id
        self.logger = logging.getLogger(__name__)

        self._user_locks: Dict[int, asyncio.Lock] = {}

    def _emit(self, event_type: SyncEventType, user_id: Optional[int] = None,
              event_id: Optional[str] = None, **detail: Any):
        self.event_bus.emit(SyncEvent(
            type=event_type,
            user_id=user_id,
            event_id=event_id,
            detail=detail,
            timestamp=self.clock(),
        ))

    def _user_lock(self, user_id: int) -> asyncio.Lock:
        return self._user_locks.setdefault(user_id, asyncio.Lock())

    async def _resolve_user(self, user_id: int) -> User:
        user = await self.db.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def sync_user_calendar(self, user_id: int, grant_id: str) -> SyncOutcome:
        """Create tasks for one user's upcoming calendar events.

        Concurrent calls for the same user run one after the other.

        Args:
            user_id: User to sync
            grant_id: Provider grant for the calendar account

        Returns:
            SyncOutcome with counts and per-event errors. An unknown user
            yields an outcome carrying a single error.

        Raises:
            ProviderError: If the events for the window cannot be fetched
        """
        async with self._user_lock(user_id):
            return await self._sync_user_calendar(user_id, grant_id)

    async def _sync_user_calendar(self, user_id: int, grant_id: str) -> SyncOutcome:
        now = self.clock()
        outcome = SyncOutcome(user_id=user_id, started_at=now)
        self._emit(SyncEventType.USER_STARTED, user_id)

        try:
            user = await self._resolve_user(user_id)
        except UserNotFoundError as e:
            self.logger.warning(str(e))
            outcome.add_error(str(e))
            outcome.complete(self.clock())
            self._emit(SyncEventType.USER_FAILED, user_id, error=str(e))
            return outcome
        except Exception as e:
            self.logger.error(f"Failed to load user {user_id}: {e}")
            self._emit(SyncEventType.USER_FAILED, user_id, error=str(e))
            raise

        outcome.user_email = user.email
        window_end = add_days(now, self.window_days)

        try:
            events = await self.provider.fetch_calendar_events(
                grant_id,
                start=to_epoch(now),
                end=to_epoch(window_end),
                limit=self.fetch_limit,
            )
        except Exception as e:
            self.logger.error(f"Failed to fetch calendar events for user {user.email}: {e}")
            self._emit(SyncEventType.USER_FAILED, user_id, error=str(e))
            raise

        self.logger.info(f"Fetched {len(events)} calendar events for user {user.email}")

        for event in events:
            outcome.total_events += 1
            try:
                await self._sync_event(event, user, grant_id, now, window_end, outcome)
            except Exception as e:
                message = f'Failed to sync event "{event.title}": {e}'
                self.logger.error(message)
                outcome.add_error(message)
                self._emit(SyncEventType.EVENT_FAILED, user_id, event.id, error=str(e))

        outcome.complete(self.clock())
        self.logger.info(
            f"Calendar sync for {user.email}: {outcome.tasks_created} tasks created "
            f"from {outcome.total_events} events ({len(outcome.errors)} errors)"
        )
        self._emit(
            SyncEventType.USER_COMPLETED,
            user_id,
            total_events=outcome.total_events,
            tasks_created=outcome.tasks_created,
            errors=len(outcome.errors),
        )
        return outcome

    def _skip(self, outcome: SyncOutcome, event: ExternalEvent, reason: str):
        self.logger.debug(f"Skipping event {event.id} ({event.title}): {reason}")
        self._emit(SyncEventType.EVENT_SKIPPED, outcome.user_id, event.id, reason=reason)

    async def _sync_event(self, event: ExternalEvent, user: User, grant_id: str,
                          now: datetime, window_end: datetime, outcome: SyncOutcome):
        """Materialize one event as a task, or count why it was skipped."""
        existing = await self.record_store.find_by_event(event.id, user.id)
        if existing is not None:
            outcome.skipped_existing += 1
            self._skip(outcome, event, "already_synced")
            return

        start = event.resolve_start()
        if start is None:
            outcome.skipped_missing_start += 1
            self._skip(outcome, event, "missing_start")
            return

        if start < now:
            outcome.skipped_past += 1
            self._skip(outcome, event, "past")
            return

        if start > window_end:
            outcome.skipped_out_of_window += 1
            self._skip(outcome, event, "out_of_window")
            return

        task = Task(
            title=event.title,
            description=build_task_description(event),
            created_by=user.id,
            status=TaskStatus.PENDING,
            priority=TaskPriority.MEDIUM,
            due_date=start,
            assigned_to=None if user.is_organisation else user.id,
            is_private=False,
            source=TaskSource.CALENDAR,
        )
        record = SyncRecord(
            event_id=event.id,
            calendar_id=event.calendar_id,
            user_id=user.id,
            grant_id=grant_id,
            event_title=event.title,
            event_start_time=start,
            event_end_time=event.resolve_end(),
            sync_direction=SyncDirection.EXTERNAL_TO_TASK,
            created_at=now,
        )

        task, record = await self.record_store.materialize_task(task, record)

        outcome.tasks_created += 1
        outcome.created_task_ids.append(task.id)
        self.logger.info(f"Created task {task.id} from calendar event: {event.title}")
        self._emit(SyncEventType.TASK_CREATED, user.id, event.id, task_id=task.id)

    async def sync_task_to_external_calendar(self, task: Task,
                                             grant_id: Optional[str] = None) -> Optional[SyncRecord]:
        """Push a task with a due date to the creator's primary calendar.

        Runs under the creator's sync lock, so a forward sync for the same
        user never sees the new event before its record is saved. Never raises:
        failures are logged and reported as a ``reverse_failed`` event.

        Returns:
            The new sync record, or None when nothing was created
        """
        grant_id = grant_id or self.default_grant_id
        if not grant_id:
            self.logger.debug(f"No calendar grant configured, not syncing task {task.id}")
            return None
        if task.id is None or task.due_date is None:
            return None
        if task.source == TaskSource.CALENDAR:
            return None

        async with self._user_lock(task.created_by):
            return await self._push_task(task, grant_id)

    async def _push_task(self, task: Task, grant_id: str) -> Optional[SyncRecord]:
        try:
            existing = await self.record_store.find_by_task(task.id, SyncDirection.TASK_TO_EXTERNAL)
            if existing is not None:
                self.logger.debug(f"Task {task.id} already synced to calendar event {existing.event_id}")
                return None

            calendar = pick_primary_calendar(await self.provider.fetch_calendars(grant_id))
            if calendar is None:
                self.logger.warning(f"No calendars found for grant {grant_id}, task {task.id} not synced")
                return None

            title = f"{self.reverse_title_prefix}{task.title}"
            end_time = task.due_date + REVERSE_EVENT_DURATION
            event = await self.provider.create_calendar_event(
                grant_id=grant_id,
                calendar_id=calendar.id,
                title=title,
                description=task.description,
                start_time=task.due_date,
                end_time=end_time,
            )

            record = SyncRecord(
                event_id=event.id,
                calendar_id=calendar.id,
                user_id=task.created_by,
                grant_id=grant_id,
                task_id=task.id,
                event_title=task.title,
                event_start_time=task.due_date,
                event_end_time=end_time,
                sync_direction=SyncDirection.TASK_TO_EXTERNAL,
                created_at=self.clock(),
            )
            await self.record_store.save_record(record)

        except Exception as e:
            self.logger.error(f"Failed to sync task {task.id} to calendar: {e}", exc_info=True)
            self._emit(SyncEventType.REVERSE_FAILED, task.created_by, error=str(e), task_id=task.id)
            return None

        self.logger.info(f"Synced task {task.id} to calendar event {event.id}")
        self._emit(SyncEventType.REVERSE_SYNCED, task.created_by, event.id, task_id=task.id)
        return record

    async def manual_sync(self, user_id: int, grant_id: str) -> SyncOutcome:
        """Run an on-demand sync for one user."""
        self.logger.info(f"Manual calendar sync requested by user {user_id}")
        return await self.sync_user_calendar(user_id, grant_id)
