"""Email-to-task ingestion engine.

Scans a user's recent messages, hands each unseen message to a
``TaskExtractor`` and stores a task for every confident extraction. Every
examined message is recorded as processed, task or not, so later scans skip it.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from .events import SyncEvent, SyncEventBus, SyncEventType
from .extraction import TaskExtractor
from .models import EmailMessage, EmailScanOutcome, ExtractedTask, ProcessedEmail
from .processed_email_store import ProcessedEmailStore
from .provider import DEFAULT_MESSAGE_LIMIT, MailProvider
from .sync_engine import UserNotFoundError
from ..database import Database
from ..models import Task, TaskSource, TaskStatus, User
from ..utils.datetime import now_utc, to_epoch


logger = logging.getLogger(__name__)


DEFAULT_CONFIDENCE_THRESHOLD = 0.5


def match_member(name: Optional[str], members: Sequence[User]) -> Optional[User]:
    """Find the member an extracted assignee name refers to.

    Case-insensitive, tried in order over all members: full name, first
    name, last name, then either name containing the other.
    """
    if not name or not name.strip():
        return None
    wanted = name.strip().lower()
    named = [(m, m.name.strip().lower()) for m in members if m.name and m.name.strip()]

    for member, full in named:
        if full == wanted:
            return member
    for member, full in named:
        if full.split()[0] == wanted:
            return member
    for member, full in named:
        if full.split()[-1] == wanted:
            return member
    for member, full in named:
        if wanted in full or full in wanted:
            return member
    return None


@dataclass
class EmailProcessResult:
    """Outcome of processing a single message on demand."""
    message_id: str
    extracted: Optional[ExtractedTask] = None
    task: Optional[Task] = None
    already_processed: bool = False

    @property
    def task_created(self) -> bool:
        return self.task is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message_id': self.message_id,
            'already_processed': self.already_processed,
            'extracted': self.extracted.to_dict() if self.extracted else None,
            'task': self.task.to_dict() if self.task else None,
        }


class EmailSyncEngine:
    """Creates tasks from the messages in users' inboxes."""

    def __init__(self, db: Database, store: ProcessedEmailStore, provider: MailProvider,
                 extractor: TaskExtractor,
                 event_bus: Optional[SyncEventBus] = None,
                 clock: Callable[[], datetime] = now_utc,
                 fetch_limit: int = DEFAULT_MESSAGE_LIMIT,
                 confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
                 default_grant_id: Optional[str] = None):
        """Initialize the email engine.

        Args:
            db: Application database (users and tasks)
            store: Processed-email storage
            provider: External mail provider
            extractor: Turns a message into an extracted task
            event_bus: Receives structured sync events
            clock: Returns the current aware datetime
            fetch_limit: Maximum messages fetched per scan
            confidence_threshold: Minimum extractor confidence for a task
            default_grant_id: Grant used when a caller gives none
        """
        self.db = db
        self.store = store
        self.provider = provider
        self.extractor = extractor
        self.event_bus = event_bus or SyncEventBus()
        self.clock = clock
        self.fetch_limit = fetch_limit
        self.confidence_threshold = confidence_threshold
        self.default_grant_id = default_grant_id
        self.logger = logging.getLogger(__name__)

        self._user_locks: Dict[int, asyncio.Lock] = {}

    def _emit(self, event_type: SyncEventType, user_id: Optional[int] = None,
              message_id: Optional[str] = None, **detail: Any):
        self.event_bus.emit(SyncEvent(
            type=event_type,
            user_id=user_id,
            event_id=message_id,
            detail=detail,
            timestamp=self.clock(),
            job="email",
        ))

    def _user_lock(self, user_id: int) -> asyncio.Lock:
        return self._user_locks.setdefault(user_id, asyncio.Lock())

    async def _resolve_user(self, user_id: int) -> User:
        user = await self.db.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def _members_for(self, user: User) -> List[User]:
        if not user.is_organisation:
            return []
        return await self.db.list_members()

    async def scan_user_emails(self, user_id: int, grant_id: str) -> EmailScanOutcome:
        """Create tasks from one user's messages received since the last scan.

        Concurrent scans for the same user run one after the other.

        Returns:
            EmailScanOutcome with counts and per-message errors. An unknown
            user yields an outcome carrying a single error.

        Raises:
            ProviderError: If the message listing cannot be fetched
        """
        async with self._user_lock(user_id):
            return await self._scan_user_emails(user_id, grant_id)

    async def _scan_user_emails(self, user_id: int, grant_id: str) -> EmailScanOutcome:
        outcome = EmailScanOutcome(user_id=user_id, started_at=self.clock())
        self._emit(SyncEventType.USER_STARTED, user_id)

        try:
            user = await self._resolve_user(user_id)
            members = await self._members_for(user)
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
        last_seen = await self.store.latest_email_date(user.id, grant_id)

        try:
            messages = await self.provider.fetch_messages(
                grant_id,
                limit=self.fetch_limit,
                received_after=to_epoch(last_seen) if last_seen else None,
            )
        except Exception as e:
            self.logger.error(f"Failed to fetch messages for user {user.email}: {e}")
            self._emit(SyncEventType.USER_FAILED, user_id, error=str(e))
            raise

        self.logger.info(f"Fetched {len(messages)} messages for user {user.email}")

        for message in messages:
            outcome.total_scanned += 1
            try:
                await self._process_message(message, user, members, grant_id, outcome)
            except Exception as e:
                error = f"Error processing email {message.id}: {e}"
                self.logger.error(error)
                outcome.add_error(error)
                self._emit(SyncEventType.EMAIL_FAILED, user_id, message.id, error=str(e))

        outcome.complete(self.clock())
        self.logger.info(
            f"Email scan for {user.email}: {outcome.tasks_created} tasks created "
            f"from {outcome.total_scanned} emails ({len(outcome.errors)} errors)"
        )
        self._emit(
            SyncEventType.USER_COMPLETED,
            user_id,
            total_scanned=outcome.total_scanned,
            tasks_found=outcome.tasks_found,
            tasks_created=outcome.tasks_created,
            errors=len(outcome.errors),
        )
        return outcome

    async def _process_message(self, summary: EmailMessage, user: User, members: List[User],
                               grant_id: str, outcome: EmailScanOutcome):
        if await self.store.is_processed(summary.id, user.id):
            outcome.skipped_processed += 1
            self._emit(SyncEventType.EMAIL_SKIPPED, user.id, summary.id, reason="already_processed")
            return

        message = await self.provider.fetch_message(grant_id, summary.id)
        extracted = await self.extractor.extract(message, members, now=self.clock())

        task = None
        if extracted.is_actionable(self.confidence_threshold):
            outcome.tasks_found += 1
            task = self._build_task(extracted, user, members)

        record = ProcessedEmail(
            message_id=message.id,
            user_id=user.id,
            grant_id=grant_id,
            email_date=message.received_at,
            processed_at=self.clock(),
        )
        task, record = await self.store.record_email(record, task)

        if task is None:
            outcome.skipped_not_actionable += 1
            self._emit(SyncEventType.EMAIL_SKIPPED, user.id, message.id, reason="not_actionable",
                       confidence=extracted.confidence)
            return

        outcome.tasks_created += 1
        outcome.created_task_ids.append(task.id)
        self.logger.info(f"Created task {task.id} from email: {message.subject}")
        self._emit(SyncEventType.TASK_CREATED, user.id, message.id, task_id=task.id)

    def _build_task(self, extracted: ExtractedTask, user: User, members: Sequence[User]) -> Task:
        assignee = None
        if user.is_organisation:
            member = match_member(extracted.assigned_to_name, members)
            assignee = member.id if member else None

        return Task(
            title=extracted.title,
            description=extracted.description,
            created_by=user.id,
            status=TaskStatus.PENDING,
            priority=extracted.priority,
            due_date=extracted.due_date,
            assigned_to=assignee,
            is_private=not user.is_organisation,
            source=TaskSource.EMAIL,
        )

    async def process_message(self, user_id: int, grant_id: str, message_id: str) -> EmailProcessResult:
        """Extract a task from one message on demand.

        A message that yields no actionable task is left unprocessed so a
        later scan can still pick it up.

        Raises:
            UserNotFoundError: If the user does not exist
            ProviderError: If the message cannot be fetched
        """
        async with self._user_lock(user_id):
            user = await self._resolve_user(user_id)
            if await self.store.is_processed(message_id, user.id):
                return EmailProcessResult(message_id=message_id, already_processed=True)

            members = await self._members_for(user)
            message = await self.provider.fetch_message(grant_id, message_id)
            extracted = await self.extractor.extract(message, members, now=self.clock())

            if not extracted.is_actionable(self.confidence_threshold):
                return EmailProcessResult(message_id=message_id, extracted=extracted)

            record = ProcessedEmail(
                message_id=message.id,
                user_id=user.id,
                grant_id=grant_id,
                email_date=message.received_at,
                processed_at=self.clock(),
            )
            task, _ = await self.store.record_email(record, self._build_task(extracted, user, members))

        self.logger.info(f"Created task {task.id} from email {message_id}")
        self._emit(SyncEventType.TASK_CREATED, user.id, message_id, task_id=task.id)
        return EmailProcessResult(message_id=message_id, extracted=extracted, task=task)

    async def manual_scan(self, user_id: int, grant_id: str) -> EmailScanOutcome:
        """Run an on-demand scan for one user."""
        self.logger.info(f"Manual email scan requested by user {user_id}")
        return await self.scan_user_emails(user_id, grant_id)
