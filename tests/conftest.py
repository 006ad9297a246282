"""Pytest configuration and shared fixtures."""

import sys
import asyncio
import inspect
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import pytest

# Ensure src directory is in Python path for all tests
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from lightkeeper.config import ConfigModel, reset_config  # noqa: E402
from lightkeeper.database import Database  # noqa: E402
from lightkeeper.models import TaskPriority  # noqa: E402
from lightkeeper.sync.email_engine import EmailSyncEngine  # noqa: E402
from lightkeeper.sync.events import RecordingSink, SyncEventBus  # noqa: E402
from lightkeeper.sync.extraction import TaskExtractor  # noqa: E402
from lightkeeper.sync.models import (  # noqa: E402
    EmailMessage,
    ExternalCalendar,
    ExternalEvent,
    ExtractedTask,
    Participant,
)
from lightkeeper.sync.processed_email_store import ProcessedEmailStore  # noqa: E402
from lightkeeper.sync.provider import CalendarProvider, MailProvider, ProviderNotFoundError  # noqa: E402
from lightkeeper.sync.sync_engine import CalendarSyncEngine  # noqa: E402
from lightkeeper.sync.sync_record_store import SyncRecordStore  # noqa: E402
from lightkeeper.utils.datetime import to_epoch  # noqa: E402


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
GRANT_ID = "grant-123"


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Execute async tests without external plugins."""
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            sig = inspect.signature(testfunction)
            call_kwargs = {name: pyfuncitem.funcargs[name] for name in sig.parameters}
            loop.run_until_complete(testfunction(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


def make_event(event_id: str, title: str = "Meeting", start: Optional[datetime] = None,
               start_date: Optional[str] = None, description: Optional[str] = None,
               location: Optional[str] = None, participants: List[Participant] = (),
               calendar_id: str = "cal-primary") -> ExternalEvent:
    """Build a provider event; ``start`` becomes a one hour timed event."""
    return ExternalEvent(
        id=event_id,
        title=title,
        calendar_id=calendar_id,
        description=description,
        location=location,
        start_time=to_epoch(start) if start is not None else None,
        end_time=to_epoch(start + timedelta(hours=1)) if start is not None else None,
        start_date=start_date,
        end_date=start_date,
        participants=tuple(participants),
    )


class FakeCalendarProvider(CalendarProvider):
    """In-memory calendar provider.

    With ``respect_window`` the fetch honours ``start``/``end`` like the real
    provider; without it every event is returned. With ``echo_created`` events
    created through the provider show up in later fetches, after
    ``create_delay`` seconds spent creating them.
    """

    def __init__(self, events=None, calendars=None, respect_window: bool = True,
                 echo_created: bool = False, create_delay: float = 0.0):
        self.events: List[ExternalEvent] = list(events or [])
        if calendars is None:
            calendars = [ExternalCalendar(id="cal-primary", name="Work", is_primary=True)]
        self.calendars: List[ExternalCalendar] = list(calendars)
        self.respect_window = respect_window
        self.echo_created = echo_created
        self.create_delay = create_delay
        self.fetch_calls = []
        self.created: List[ExternalEvent] = []
        self.fetch_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.closed = False

    async def fetch_calendars(self, grant_id):
        return list(self.calendars)

    async def fetch_calendar_events(self, grant_id, calendar_id=None, start=None, end=None, limit=100):
        self.fetch_calls.append({
            'grant_id': grant_id,
            'calendar_id': calendar_id,
            'start': start,
            'end': end,
            'limit': limit,
        })
        if self.fetch_error is not None:
            raise self.fetch_error

        events = []
        for event in self.events:
            if self.respect_window and event.start_time is not None:
                if start is not None and event.start_time < start:
                    continue
                if end is not None and event.start_time > end:
                    continue
            events.append(event)
        return events[:limit]

    async def create_calendar_event(self, grant_id, calendar_id, title, start_time,
                                    description=None, end_time=None, location=None):
        if self.create_error is not None:
            raise self.create_error
        end_time = end_time or start_time + timedelta(hours=1)
        event = ExternalEvent(
            id=f"created-{len(self.created) + 1}",
            title=title,
            calendar_id=calendar_id,
            description=description,
            location=location,
            start_time=to_epoch(start_time),
            end_time=to_epoch(end_time),
        )
        self.created.append(event)
        if self.echo_created:
            self.events.append(event)
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        return event

    async def aclose(self):
        self.closed = True


def make_message(message_id: str, subject: str = "Quarterly report", body: Optional[str] = None,
                 sender: str = "boss@example.com", sender_name: Optional[str] = "Grace Hopper",
                 received: Optional[datetime] = None, snippet: Optional[str] = None) -> EmailMessage:
    """Build a provider message received at ``received`` (an hour before NOW by default)."""
    return EmailMessage(
        id=message_id,
        subject=subject,
        sender=(Participant(email=sender, name=sender_name),),
        date=to_epoch(received or NOW - timedelta(hours=1)),
        body=body,
        snippet=snippet,
    )


class FakeMailProvider(MailProvider):
    """In-memory mailbox; ``received_after`` is honoured like the real provider."""

    def __init__(self, messages=None):
        self.messages: List[EmailMessage] = list(messages or [])
        self.fetch_calls = []
        self.message_calls: List[str] = []
        self.fetch_error: Optional[Exception] = None
        self.message_errors = {}
        self.closed = False

    async def fetch_messages(self, grant_id, limit=50, received_after=None):
        self.fetch_calls.append({'grant_id': grant_id, 'limit': limit, 'received_after': received_after})
        if self.fetch_error is not None:
            raise self.fetch_error
        messages = [m for m in self.messages if received_after is None or m.date > received_after]
        return messages[:limit]

    async def fetch_message(self, grant_id, message_id):
        self.message_calls.append(message_id)
        if message_id in self.message_errors:
            raise self.message_errors[message_id]
        for message in self.messages:
            if message.id == message_id:
                return message
        raise ProviderNotFoundError(f"Nylas API error 404: message {message_id} not found", 404)

    async def aclose(self):
        self.closed = True


class FakeTaskExtractor(TaskExtractor):
    """Extractor driven by the message subject.

    Subjects listed in ``results`` get that extraction; any other message
    yields no task.
    """

    def __init__(self, results=None):
        self.results = dict(results or {})
        self.calls = []

    async def extract(self, message, members=(), now=None):
        self.calls.append({'message_id': message.id, 'members': [m.name for m in members], 'now': now})
        result = self.results.get(message.subject)
        if isinstance(result, Exception):
            raise result
        return result or ExtractedTask(has_task=False)


def extracted(title: str = "Send the report", confidence: float = 0.9,
              assigned_to_name: Optional[str] = None, due_date: Optional[datetime] = None,
              priority: TaskPriority = TaskPriority.MEDIUM) -> ExtractedTask:
    return ExtractedTask(
        has_task=True,
        title=title,
        description=f"{title} (from email)",
        priority=priority,
        due_date=due_date,
        confidence=confidence,
        assigned_to_name=assigned_to_name,
    )


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep tests away from the user's config file and environment."""
    for name in ("LIGHTKEEPER_CONFIG", "NYLAS_API_KEY", "NYLAS_GRANT_ID", "NYLAS_API_URL",
                 "CALENDAR_SYNC_INTERVAL_MINUTES", "SYNC_USER_TIMEOUT_SECONDS",
                 "LIGHTKEEPER_SCHEDULER_ENABLED", "EMAIL_SCAN_INTERVAL_MINUTES",
                 "LIGHTKEEPER_EMAIL_SCAN_ENABLED", "JWT_SECRET", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LIGHTKEEPER_DATA_DIR", str(tmp_path / "data"))
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock():
    """Fixed clock at NOW."""
    return lambda: NOW


@pytest.fixture
def db(tmp_path):
    """Fresh database in a temporary directory."""
    return Database(tmp_path / "test.db")


@pytest.fixture
def record_store(db):
    return SyncRecordStore(db)


@pytest.fixture
def provider():
    return FakeCalendarProvider()


@pytest.fixture
def event_bus():
    return SyncEventBus()


@pytest.fixture
def sink(event_bus):
    return RecordingSink(event_bus)


@pytest.fixture
def engine(db, record_store, provider, event_bus, clock):
    return CalendarSyncEngine(
        db=db,
        record_store=record_store,
        provider=provider,
        event_bus=event_bus,
        clock=clock,
        default_grant_id=GRANT_ID,
    )


@pytest.fixture
def test_config(tmp_path):
    """Configuration with a provider but no background scheduler."""
    return ConfigModel(
        data_dir=str(tmp_path / "data"),
        nylas_api_key="test-key",
        nylas_grant_id=GRANT_ID,
        scheduler_enabled=False,
        jwt_secret="test-secret",
    )


@pytest.fixture
def email_store(db):
    return ProcessedEmailStore(db)


@pytest.fixture
def mail_provider():
    return FakeMailProvider()


@pytest.fixture
def extractor():
    return FakeTaskExtractor()


@pytest.fixture
def email_engine(db, email_store, mail_provider, extractor, event_bus, clock):
    return EmailSyncEngine(
        db=db,
        store=email_store,
        provider=mail_provider,
        extractor=extractor,
        event_bus=event_bus,
        clock=clock,
        default_grant_id=GRANT_ID,
    )
