"""Structured events emitted while syncing calendars and scanning email."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..utils.datetime import now_utc, to_iso_string


logger = logging.getLogger(__name__)


class SyncEventType(Enum):
    PASS_STARTED = "pass_started"
    PASS_COMPLETED = "pass_completed"
    USER_STARTED = "user_started"
    USER_COMPLETED = "user_completed"
    USER_FAILED = "user_failed"
    EVENT_SKIPPED = "event_skipped"
    TASK_CREATED = "task_created"
    EVENT_FAILED = "event_failed"
    EMAIL_SKIPPED = "email_skipped"
    EMAIL_FAILED = "email_failed"
    REVERSE_SYNCED = "reverse_synced"
    REVERSE_FAILED = "reverse_failed"
    SCHEDULER_IDLE = "scheduler_idle"
    SCHEDULER_STARTED = "scheduler_started"
    SCHEDULER_STOPPED = "scheduler_stopped"


@dataclass
class SyncEvent:
    """One observable step of a sync.

    ``job`` names the background job that emitted it: ``calendar`` or ``email``.
    """
    type: SyncEventType
    user_id: Optional[int] = None
    event_id: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=now_utc)
    job: str = "calendar"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'user_id': self.user_id,
            'event_id': self.event_id,
            'detail': dict(self.detail),
            'timestamp': to_iso_string(self.timestamp),
            'job': self.job,
        }


SyncEventCallback = Callable[[SyncEvent], None]


class SyncEventBus:
    """Synchronous fan-out of sync events to subscribers.

    A subscriber that raises is logged and skipped; the remaining subscribers
    still receive the event.
    """

    def __init__(self):
        self._subscribers: List[SyncEventCallback] = []
        self.logger = logging.getLogger(__name__)

    def subscribe(self, callback: SyncEventCallback):
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: SyncEventCallback):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(self, event: SyncEvent):
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                self.logger.error(f"Sync event subscriber failed on {event.type.value}: {e}", exc_info=True)


class RecordingSink:
    """Subscriber that keeps every event it receives."""

    def __init__(self, bus: Optional[SyncEventBus] = None):
        self.events: List[SyncEvent] = []
        if bus is not None:
            bus.subscribe(self)

    def __call__(self, event: SyncEvent):
        self.events.append(event)

    def of_type(self, event_type: SyncEventType) -> List[SyncEvent]:
        return [e for e in self.events if e.type == event_type]

    def types(self) -> List[SyncEventType]:
        return [e.type for e in self.events]

    def clear(self):
        self.events.clear()
