"""
Wiring for a process hosting the carnival core.

Builds the engine, store and services from CoreSettings and registers the
notification dispatcher as the store's event listener.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from carnival_hub.config import CoreSettings, load_settings
from carnival_hub.database.db import create_engine, create_session_factory, init_database
from carnival_hub.database.store import Store
from carnival_hub.services.attendance_service import AttendanceService
from carnival_hub.services.carnival_service import CarnivalService
from carnival_hub.services.club_service import ClubService
from carnival_hub.services.delegate_service import DelegateService
from carnival_hub.services.email_service import MailSender, SendGridMailSender
from carnival_hub.services.ingest_service import (
    ExternalEventProvider,
    ImportedCarnivalIngest,
    IngestScheduler,
    MySidelineFeedProvider,
)
from carnival_hub.services.notification_service import NotificationDispatcher
from carnival_hub.services.ownership_service import OwnershipService
from carnival_hub.services.subscription_service import SubscriptionService
from carnival_hub.services.token_service import TokenMinter
from carnival_hub.utils.datetime_utils import Clock, SystemClock

logger = logging.getLogger(__name__)


class CarnivalHub:
    """All services of the carnival core sharing one store."""

    def __init__(
        self,
        engine: AsyncEngine,
        settings: CoreSettings,
        clock: Optional[Clock] = None,
        mail_sender: Optional[MailSender] = None,
    ):
        self.engine = engine
        self.settings = settings
        self.store = Store(create_session_factory(engine), clock=clock or SystemClock())
        self.mail_sender = mail_sender or SendGridMailSender(settings)
        self.tokens = TokenMinter()

        self.dispatcher = NotificationDispatcher(self.store, self.mail_sender, settings)
        self.store.add_listener(self.dispatcher.handle)

        self.carnivals = CarnivalService(self.store)
        self.ownership = OwnershipService(self.store, self.tokens)
        self.attendance = AttendanceService(self.store)
        self.delegates = DelegateService(self.store, self.tokens, settings)
        self.clubs = ClubService(self.store)
        self.subscriptions = SubscriptionService(self.store)
        self.ingest = ImportedCarnivalIngest(self.store, settings)

    def feed_provider(self) -> Optional[ExternalEventProvider]:
        """The configured MySideline provider, or None when no feed URL is set."""
        if not self.settings.mysideline_feed_url:
            return None
        return MySidelineFeedProvider(
            self.settings.mysideline_feed_url,
            timeout=self.settings.mysideline_timeout_seconds,
        )

    def ingest_scheduler(self, poll_interval_seconds: float = 3600) -> Optional[IngestScheduler]:
        provider = self.feed_provider()
        if provider is None:
            logger.info("MYSIDELINE_FEED_URL not set, carnival ingest worker disabled")
            return None
        return IngestScheduler(self.ingest, provider, poll_interval_seconds=poll_interval_seconds)

    async def close(self) -> None:
        await self.engine.dispose()


async def build_hub(
    settings: Optional[CoreSettings] = None,
    clock: Optional[Clock] = None,
    mail_sender: Optional[MailSender] = None,
    create_tables: bool = True,
) -> CarnivalHub:
    """
    Create a CarnivalHub from settings (defaults to the environment).

    Args:
        settings: CoreSettings; load_settings() when omitted
        clock: Clock for the store; SystemClock when omitted
        mail_sender: MailSender; SendGrid when omitted
        create_tables: Create missing tables on startup
    """
    settings = settings or load_settings()
    engine = create_engine(settings.database_url, echo=settings.sql_echo)
    if create_tables:
        await init_database(engine)
        logger.info("Database initialized")
    return CarnivalHub(engine, settings, clock=clock, mail_sender=mail_sender)
