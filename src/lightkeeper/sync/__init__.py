"""External calendar synchronization and email task ingestion."""

from .email_engine import EmailProcessResult, EmailSyncEngine, match_member
from .events import RecordingSink, SyncEvent, SyncEventBus, SyncEventType
from .extraction import KeywordTaskExtractor, TaskExtractor
from .models import (
    EmailMessage,
    EmailScanOutcome,
    EmailScanSummary,
    ExternalCalendar,
    ExternalEvent,
    ExtractedTask,
    Participant,
    ProcessedEmail,
    SyncDirection,
    SyncOutcome,
    SyncRecord,
    SyncSummary,
)
from .processed_email_store import DuplicateProcessedEmailError, ProcessedEmailStore
from .provider import (
    CalendarProvider,
    MailProvider,
    NylasClient,
    ProviderAuthenticationError,
    ProviderError,
    ProviderNetworkError,
    ProviderNotFoundError,
    ProviderRateLimitError,
)
from .scheduler import EmailScanScheduler, SchedulerHandle, SchedulerState
from .sync_engine import CalendarSyncEngine, SyncError, UserNotFoundError, build_task_description
from .sync_record_store import DuplicateSyncRecordError, SyncRecordStore

__all__ = [
    "CalendarProvider",
    "CalendarSyncEngine",
    "DuplicateProcessedEmailError",
    "DuplicateSyncRecordError",
    "EmailMessage",
    "EmailProcessResult",
    "EmailScanOutcome",
    "EmailScanScheduler",
    "EmailScanSummary",
    "EmailSyncEngine",
    "ExternalCalendar",
    "ExternalEvent",
    "ExtractedTask",
    "KeywordTaskExtractor",
    "MailProvider",
    "NylasClient",
    "Participant",
    "ProcessedEmail",
    "ProcessedEmailStore",
    "ProviderAuthenticationError",
    "ProviderError",
    "ProviderNetworkError",
    "ProviderNotFoundError",
    "ProviderRateLimitError",
    "RecordingSink",
    "SchedulerHandle",
    "SchedulerState",
    "SyncDirection",
    "SyncError",
    "SyncEvent",
    "SyncEventBus",
    "SyncEventType",
    "SyncOutcome",
    "SyncRecord",
    "SyncRecordStore",
    "SyncSummary",
    "TaskExtractor",
    "UserNotFoundError",
    "build_task_description",
    "match_member",
]
