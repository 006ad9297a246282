"""Application wiring: builds the services the API and CLI share."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .config import ConfigModel, get_config
from .database import Database
from .sync.email_engine import EmailSyncEngine
from .sync.events import SyncEventBus
from .sync.extraction import KeywordTaskExtractor, TaskExtractor
from .sync.processed_email_store import ProcessedEmailStore
from .sync.provider import CalendarProvider, MailProvider, NylasClient
from .sync.scheduler import EmailScanScheduler, SchedulerHandle
from .sync.sync_engine import CalendarSyncEngine
from .sync.sync_record_store import SyncRecordStore
from .utils.datetime import now_utc
from .webapp.auth import AuthService


logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Services for one running process.

    ``provider``, ``engine`` and ``scheduler`` are None when no calendar
    provider is configured; ``mail_provider``, ``email_engine`` and
    ``email_scheduler`` are None when no mail provider is configured.
    """
    config: ConfigModel
    db: Database
    record_store: SyncRecordStore
    email_store: ProcessedEmailStore
    event_bus: SyncEventBus
    auth_service: AuthService
    clock: Callable[[], datetime] = now_utc
    provider: Optional[CalendarProvider] = None
    engine: Optional[CalendarSyncEngine] = None
    scheduler: Optional[SchedulerHandle] = None
    mail_provider: Optional[MailProvider] = None
    email_engine: Optional[EmailSyncEngine] = None
    email_scheduler: Optional[EmailScanScheduler] = None

    @property
    def grant_id(self) -> Optional[str]:
        return self.config.nylas_grant_id

    @property
    def calendar_configured(self) -> bool:
        return self.engine is not None and bool(self.grant_id)

    @property
    def email_configured(self) -> bool:
        return self.email_engine is not None

    async def aclose(self):
        """Stop the schedulers and release the provider clients."""
        for scheduler in (self.scheduler, self.email_scheduler):
            if scheduler is not None:
                await scheduler.stop()
        if self.provider is not None:
            await self.provider.aclose()
        if self.mail_provider is not None and self.mail_provider is not self.provider:
            await self.mail_provider.aclose()


def build_context(config: Optional[ConfigModel] = None, db: Optional[Database] = None,
                  provider: Optional[CalendarProvider] = None,
                  clock: Callable[[], datetime] = now_utc,
                  mail_provider: Optional[MailProvider] = None,
                  extractor: Optional[TaskExtractor] = None) -> AppContext:
    """Build an AppContext from configuration.

    Args:
        config: Configuration (the global one when None)
        db: Database (opened from the configured path when None)
        provider: Calendar provider (a NylasClient when None and an API key is set)
        clock: Time source for the engines
        mail_provider: Mail provider (the calendar provider when it reads mail too)
        extractor: Task extractor for email ingestion (keyword rules when None)
    """
    config = config or get_config()
    if db is None:
        config.ensure_data_dir()
        db = Database(config.get_database_path())

    event_bus = SyncEventBus()
    record_store = SyncRecordStore(db)
    email_store = ProcessedEmailStore(db)
    auth_service = AuthService(
        db,
        secret_key=config.jwt_secret,
        access_token_expire_minutes=config.access_token_expire_minutes,
    )

    if provider is None and config.nylas_api_key:
        provider = NylasClient(
            api_key=config.nylas_api_key,
            base_url=config.nylas_api_url,
            timeout=config.provider_timeout_seconds,
        )
    if mail_provider is None and isinstance(provider, MailProvider):
        mail_provider = provider

    context = AppContext(
        config=config,
        db=db,
        record_store=record_store,
        email_store=email_store,
        event_bus=event_bus,
        auth_service=auth_service,
        clock=clock,
        provider=provider,
        mail_provider=mail_provider,
    )

    if provider is None:
        logger.warning("NYLAS_API_KEY not set, calendar sync disabled")
    else:
        context.engine = CalendarSyncEngine(
            db=db,
            record_store=record_store,
            provider=provider,
            event_bus=event_bus,
            clock=clock,
            window_days=config.calendar_sync_window_days,
            fetch_limit=config.calendar_fetch_limit,
            reverse_title_prefix=config.reverse_sync_title_prefix,
            default_grant_id=config.nylas_grant_id,
        )
        context.scheduler = SchedulerHandle(
            engine=context.engine,
            db=db,
            grant_id=config.nylas_grant_id,
            interval_minutes=config.calendar_sync_interval_minutes,
            user_timeout_seconds=config.sync_user_timeout_seconds,
            event_bus=event_bus,
        )

    if mail_provider is None:
        logger.warning("No mail provider configured, email ingestion disabled")
        return context

    context.email_engine = EmailSyncEngine(
        db=db,
        store=email_store,
        provider=mail_provider,
        extractor=extractor or KeywordTaskExtractor(),
        event_bus=event_bus,
        clock=clock,
        fetch_limit=config.email_fetch_limit,
        confidence_threshold=config.email_confidence_threshold,
        default_grant_id=config.nylas_grant_id,
    )
    context.email_scheduler = EmailScanScheduler(
        engine=context.email_engine,
        db=db,
        grant_id=config.nylas_grant_id,
        interval_minutes=config.email_scan_interval_minutes,
        user_timeout_seconds=config.sync_user_timeout_seconds,
        event_bus=event_bus,
    )
    return context
