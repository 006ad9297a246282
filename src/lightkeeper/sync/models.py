"""Data models for external calendar and mail synchronization.

External events, calendars and messages are read-only snapshots of provider
data. Sync records and processed-email rows are the provenance that keeps an
external item from being materialized twice. Outcomes and summaries are
reports, not exceptions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..models import TaskPriority
from ..utils.datetime import ensure_aware, from_epoch, local_midnight, now_utc, to_iso_string


class SyncDirection(Enum):
    """Which side a sync record was created from."""
    EXTERNAL_TO_TASK = "external_to_task"
    TASK_TO_EXTERNAL = "task_to_external"


@dataclass(frozen=True)
class Participant:
    """An event attendee."""
    email: str
    name: Optional[str] = None
    status: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.email

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Participant':
        return cls(
            email=data.get('email') or "",
            name=data.get('name') or None,
            status=data.get('status'),
        )


@dataclass(frozen=True)
class ExternalEvent:
    """Calendar event as returned by the provider.

    ``start_time``/``end_time`` are epoch seconds for timed events;
    ``start_date``/``end_date`` are ``YYYY-MM-DD`` strings for all-day events.
    """

    id: str
    title: str
    calendar_id: str = ""
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    when_object: Optional[str] = None
    participants: Tuple[Participant, ...] = ()
    status: Optional[str] = None
    busy: Optional[bool] = None
    read_only: Optional[bool] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExternalEvent':
        """Build from a provider event payload."""
        when = data.get('when') or {}
        # single-day events use "date" instead of "start_date"
        start_date = when.get('start_date') or when.get('date')
        end_date = when.get('end_date') or when.get('date')
        start_time = when.get('start_time')
        if start_time is None and when.get('time') is not None:
            start_time = when.get('time')

        return cls(
            id=str(data['id']),
            title=data.get('title') or "",
            calendar_id=data.get('calendar_id') or "",
            description=data.get('description') or None,
            location=data.get('location') or None,
            start_time=start_time,
            end_time=when.get('end_time'),
            start_date=start_date,
            end_date=end_date,
            when_object=when.get('object'),
            participants=tuple(Participant.from_dict(p) for p in data.get('participants') or []),
            status=data.get('status'),
            busy=data.get('busy'),
            read_only=data.get('read_only'),
            created_at=data.get('created_at'),
            updated_at=data.get('updated_at'),
        )

    def resolve_start(self) -> Optional[datetime]:
        """Start instant: the precise time if present, else the date at local midnight."""
        if self.start_time is not None:
            return from_epoch(self.start_time)
        if self.start_date:
            return local_midnight(self.start_date)
        return None

    def resolve_end(self) -> Optional[datetime]:
        """End instant, resolved the same way as the start."""
        if self.end_time is not None:
            return from_epoch(self.end_time)
        if self.end_date:
            return local_midnight(self.end_date)
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Provider-shaped dictionary (used by API pass-through listings)."""
        when: Dict[str, Any] = {}
        if self.start_time is not None:
            when['start_time'] = self.start_time
            when['end_time'] = self.end_time
        if self.start_date:
            when['start_date'] = self.start_date
            when['end_date'] = self.end_date
        if self.when_object:
            when['object'] = self.when_object
        return {
            'id': self.id,
            'title': self.title,
            'calendar_id': self.calendar_id,
            'description': self.description,
            'location': self.location,
            'when': when,
            'participants': [
                {'email': p.email, 'name': p.name, 'status': p.status}
                for p in self.participants
            ],
            'status': self.status,
        }


@dataclass(frozen=True)
class ExternalCalendar:
    """A calendar belonging to a provider grant."""
    id: str
    name: str = ""
    is_primary: bool = False
    read_only: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExternalCalendar':
        return cls(
            id=str(data['id']),
            name=data.get('name') or "",
            is_primary=bool(data.get('is_primary')),
            read_only=bool(data.get('read_only')),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'is_primary': self.is_primary,
            'read_only': self.read_only,
        }


def pick_primary_calendar(calendars: List[ExternalCalendar]) -> Optional[ExternalCalendar]:
    """First calendar flagged primary, else the first one, else None."""
    for calendar in calendars:
        if calendar.is_primary:
            return calendar
    return calendars[0] if calendars else None


@dataclass
class SyncRecord:
    """Provenance row: this external event has been materialized for this user.

    At most one record exists per ``(event_id, user_id)``.
    """

    event_id: str
    calendar_id: str
    user_id: int
    grant_id: str
    event_title: str
    event_start_time: datetime
    task_id: Optional[int] = None
    event_end_time: Optional[datetime] = None
    sync_direction: SyncDirection = SyncDirection.EXTERNAL_TO_TASK
    id: Optional[int] = None
    created_at: datetime = field(default_factory=now_utc)

    def __post_init__(self):
        self.event_start_time = ensure_aware(self.event_start_time)
        self.event_end_time = ensure_aware(self.event_end_time)
        self.created_at = ensure_aware(self.created_at)
        if isinstance(self.sync_direction, str):
            self.sync_direction = SyncDirection(self.sync_direction)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            'id': self.id,
            'event_id': self.event_id,
            'calendar_id': self.calendar_id,
            'user_id': self.user_id,
            'grant_id': self.grant_id,
            'task_id': self.task_id,
            'event_title': self.event_title,
            'event_start_time': to_iso_string(self.event_start_time),
            'event_end_time': to_iso_string(self.event_end_time),
            'sync_direction': self.sync_direction.value,
            'created_at': to_iso_string(self.created_at),
        }


@dataclass
class SyncOutcome:
    """Result of syncing one user's calendar.

    This is a report, not a throwing contract: callers inspect ``errors``.
    """

    user_id: int
    user_email: str = ""
    total_events: int = 0
    tasks_created: int = 0
    skipped_existing: int = 0
    skipped_missing_start: int = 0
    skipped_past: int = 0
    skipped_out_of_window: int = 0
    errors: List[str] = field(default_factory=list)
    created_task_ids: List[int] = field(default_factory=list)
    started_at: datetime = field(default_factory=now_utc)
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def add_error(self, error: str):
        """Add an error to the outcome."""
        self.errors.append(error)

    def complete(self, at: Optional[datetime] = None):
        """Mark the outcome completed and calculate duration."""
        self.completed_at = at or now_utc()
        self.duration_seconds = max(0.0, (self.completed_at - self.started_at).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            'user_id': self.user_id,
            'user_email': self.user_email,
            'total_events': self.total_events,
            'tasks_created': self.tasks_created,
            'skipped_existing': self.skipped_existing,
            'skipped_missing_start': self.skipped_missing_start,
            'skipped_past': self.skipped_past,
            'skipped_out_of_window': self.skipped_out_of_window,
            'errors': list(self.errors),
            'created_task_ids': list(self.created_task_ids),
            'started_at': to_iso_string(self.started_at),
            'completed_at': to_iso_string(self.completed_at),
            'duration_seconds': self.duration_seconds,
        }


@dataclass
class PassSummary:
    """Aggregate of one scheduled pass over all users."""

    outcomes: List[Any] = field(default_factory=list)
    started_at: datetime = field(default_factory=now_utc)
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    @property
    def total_users(self) -> int:
        return len(self.outcomes)

    @property
    def total_tasks_created(self) -> int:
        return sum(o.tasks_created for o in self.outcomes)

    @property
    def total_errors(self) -> int:
        return sum(len(o.errors) for o in self.outcomes)

    def totals(self) -> Dict[str, int]:
        """Counters reported with the ``pass_completed`` event."""
        return {
            'total_users': self.total_users,
            'total_tasks_created': self.total_tasks_created,
            'total_errors': self.total_errors,
        }

    def complete(self, at: Optional[datetime] = None):
        self.completed_at = at or now_utc()
        self.duration_seconds = max(0.0, (self.completed_at - self.started_at).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.totals())
        data.update({
            'started_at': to_iso_string(self.started_at),
            'completed_at': to_iso_string(self.completed_at),
            'duration_seconds': self.duration_seconds,
            'outcomes': [o.to_dict() for o in self.outcomes],
        })
        return data


@dataclass
class SyncSummary(PassSummary):
    """Aggregate of one calendar sync pass."""

    @property
    def total_events(self) -> int:
        return sum(o.total_events for o in self.outcomes)

    def totals(self) -> Dict[str, int]:
        return {
            'total_users': self.total_users,
            'total_events': self.total_events,
            'total_tasks_created': self.total_tasks_created,
            'total_errors': self.total_errors,
        }


@dataclass(frozen=True)
class EmailMessage:
    """Mail message as returned by the provider.

    ``date`` is epoch seconds. Listings may carry only the snippet; the
    full body comes from fetching the single message.
    """

    id: str
    subject: str = ""
    sender: Tuple[Participant, ...] = ()
    recipients: Tuple[Participant, ...] = ()
    date: int = 0
    body: Optional[str] = None
    snippet: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EmailMessage':
        """Build from a provider message payload."""
        return cls(
            id=str(data['id']),
            subject=data.get('subject') or "",
            sender=tuple(Participant.from_dict(p) for p in data.get('from') or []),
            recipients=tuple(Participant.from_dict(p) for p in data.get('to') or []),
            date=int(data.get('date') or 0),
            body=data.get('body') or None,
            snippet=data.get('snippet') or None,
        )

    @property
    def text(self) -> str:
        return self.body or self.snippet or ""

    @property
    def sender_name(self) -> str:
        if not self.sender:
            return "Unknown"
        first = self.sender[0]
        return first.name or first.email or "Unknown"

    @property
    def received_at(self) -> datetime:
        return from_epoch(self.date)


@dataclass
class ExtractedTask:
    """What a task extractor found in one email."""

    has_task: bool
    title: str = ""
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None
    confidence: float = 0.0
    assigned_to_name: Optional[str] = None

    def __post_init__(self):
        self.due_date = ensure_aware(self.due_date)
        if isinstance(self.priority, str):
            self.priority = TaskPriority(self.priority)

    def is_actionable(self, threshold: float) -> bool:
        return self.has_task and self.confidence >= threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            'has_task': self.has_task,
            'title': self.title,
            'description': self.description,
            'priority': self.priority.value,
            'due_date': to_iso_string(self.due_date),
            'confidence': self.confidence,
            'assigned_to_name': self.assigned_to_name,
        }


@dataclass
class ProcessedEmail:
    """Provenance row: this message has been examined for this user.

    At most one record exists per ``(message_id, user_id)``. ``task_id`` is
    set when the message produced a task.
    """

    message_id: str
    user_id: int
    grant_id: str
    email_date: datetime
    task_id: Optional[int] = None
    id: Optional[int] = None
    processed_at: datetime = field(default_factory=now_utc)

    def __post_init__(self):
        self.email_date = ensure_aware(self.email_date)
        self.processed_at = ensure_aware(self.processed_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'message_id': self.message_id,
            'user_id': self.user_id,
            'grant_id': self.grant_id,
            'email_date': to_iso_string(self.email_date),
            'task_id': self.task_id,
            'processed_at': to_iso_string(self.processed_at),
        }


@dataclass
class EmailScanOutcome:
    """Result of scanning one user's inbox."""

    user_id: int
    user_email: str = ""
    total_scanned: int = 0
    tasks_found: int = 0
    tasks_created: int = 0
    skipped_processed: int = 0
    skipped_not_actionable: int = 0
    errors: List[str] = field(default_factory=list)
    created_task_ids: List[int] = field(default_factory=list)
    started_at: datetime = field(default_factory=now_utc)
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def add_error(self, error: str):
        self.errors.append(error)

    def complete(self, at: Optional[datetime] = None):
        self.completed_at = at or now_utc()
        self.duration_seconds = max(0.0, (self.completed_at - self.started_at).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'user_email': self.user_email,
            'total_scanned': self.total_scanned,
            'tasks_found': self.tasks_found,
            'tasks_created': self.tasks_created,
            'skipped_processed': self.skipped_processed,
            'skipped_not_actionable': self.skipped_not_actionable,
            'errors': list(self.errors),
            'created_task_ids': list(self.created_task_ids),
            'started_at': to_iso_string(self.started_at),
            'completed_at': to_iso_string(self.completed_at),
            'duration_seconds': self.duration_seconds,
        }


@dataclass
class EmailScanSummary(PassSummary):
    """Aggregate of one email scan pass."""

    @property
    def total_scanned(self) -> int:
        return sum(o.total_scanned for o in self.outcomes)

    @property
    def total_tasks_found(self) -> int:
        return sum(o.tasks_found for o in self.outcomes)

    def totals(self) -> Dict[str, int]:
        return {
            'total_users': self.total_users,
            'total_scanned': self.total_scanned,
            'total_tasks_found': self.total_tasks_found,
            'total_tasks_created': self.total_tasks_created,
            'total_errors': self.total_errors,
        }
