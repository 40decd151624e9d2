"""
Notification dispatcher.

Receives committed domain events from the Store and turns them into mail:
carnival announcements fan out to matching state subscribers, invitation
and ownership events go to a single recipient. Delivery is best-effort; a
failure here never affects the command that raised the event.
"""

import asyncio
import logging
from typing import List, Sequence, Tuple

from sqlalchemy import cast, exists, func, select
from sqlalchemy.dialects.postgresql import JSONB

from carnival_hub.config import CoreSettings
from carnival_hub.database.models import EmailSubscription
from carnival_hub.database.store import Store
from carnival_hub.services import email_service
from carnival_hub.services.email_service import MailSender, OutgoingMail
from carnival_hub.services.events import (
    CarnivalCreated,
    CarnivalEvent,
    CarnivalOwnershipClaimed,
    CarnivalUpdated,
    DelegateInvitationIssued,
    DomainEvent,
    PrimaryDelegateTransferred,
    ProxyInvitationIssued,
)
from carnival_hub.utils.constants import NotificationCategory

logger = logging.getLogger(__name__)


def json_array_contains(column, value: str, dialect_name: str, alias_name: str):
    """
    SQL test for ``value`` being an element of a JSON array column.

    Uses JSONB containment on PostgreSQL and json_each elsewhere (SQLite).
    """
    if dialect_name == "postgresql":
        return cast(column, JSONB).contains([value])
    items = func.json_each(column).table_valued("value").alias(alias_name)
    return exists(select(1).select_from(items).where(items.c.value == value))


class NotificationDispatcher:
    """Maps domain events to outgoing mail."""

    def __init__(self, store: Store, mail_sender: MailSender, settings: CoreSettings):
        self._store = store
        self._mail_sender = mail_sender
        self._settings = settings

    async def handle(self, events: Sequence[DomainEvent]) -> None:
        """Store listener: dispatch each committed event, never raising."""
        for event in events:
            try:
                await self.dispatch(event)
            except Exception:
                logger.warning(f"Failed to dispatch {type(event).__name__}", exc_info=True)

    async def dispatch(self, event: DomainEvent) -> None:
        base_url = self._settings.site_base_url
        if isinstance(event, (CarnivalCreated, CarnivalUpdated)):
            await self.notify_subscribers(event, is_update=isinstance(event, CarnivalUpdated))
        elif isinstance(event, DelegateInvitationIssued):
            await self._deliver(
                email_service.delegate_invitation(
                    to=event.invite_email,
                    club_name=event.club_name,
                    inviter_name=event.inviter_name,
                    token=event.token,
                    expires_at=event.expires_at,
                    site_base_url=base_url,
                )
            )
        elif isinstance(event, ProxyInvitationIssued):
            await self._deliver(
                email_service.proxy_club_invitation(
                    to=event.invite_email,
                    club_name=event.club_name,
                    inviter_name=event.inviter_name,
                    token=event.token,
                    expires_at=event.expires_at,
                    site_base_url=base_url,
                    custom_message=event.custom_message,
                )
            )
        elif isinstance(event, CarnivalOwnershipClaimed):
            if event.original_organiser_email:
                await self._deliver(
                    email_service.ownership_claimed(
                        to=event.original_organiser_email,
                        title=event.title,
                        carnival_id=event.carnival_id,
                        owner_name=event.owner_name,
                        owner_email=event.owner_email,
                        club_name=event.club_name,
                        site_base_url=base_url,
                    )
                )
        elif isinstance(event, PrimaryDelegateTransferred):
            await self._deliver(
                email_service.primary_delegate_transferred(
                    to=event.new_user_email,
                    new_primary_name=event.new_user_name,
                    club_name=event.club_name,
                    site_base_url=base_url,
                )
            )

    async def matching_subscriptions(self, state: str) -> List[EmailSubscription]:
        """Active subscriptions covering a state and opted in to carnival notifications."""
        wanted = NotificationCategory.CARNIVAL_NOTIFICATIONS.value
        async with self._store.session() as session:
            dialect_name = session.bind.dialect.name
            result = await session.execute(
                select(EmailSubscription)
                .where(
                    EmailSubscription.is_active.is_(True),
                    json_array_contains(EmailSubscription.states, state, dialect_name, "state_items"),
                    json_array_contains(
                        EmailSubscription.notification_types, wanted, dialect_name, "type_items"
                    ),
                )
                .order_by(EmailSubscription.id)
            )
            return list(result.scalars().all())

    async def notify_subscribers(self, event: CarnivalEvent, is_update: bool) -> Tuple[int, int]:
        """
        Send a carnival announcement to every matching subscriber.

        Returns:
            (sent, failed) counts
        """
        if not event.state:
            return 0, 0
        subscriptions = await self.matching_subscriptions(event.state)
        if not subscriptions:
            return 0, 0

        messages = [
            email_service.carnival_notification(
                to=sub.email,
                title=event.title,
                carnival_id=event.carnival_id,
                state=event.state,
                carnival_date=event.carnival_date,
                location=event.location_address,
                is_update=is_update,
                site_base_url=self._settings.site_base_url,
                unsubscribe_token=sub.unsubscribe_token,
            )
            for sub in subscriptions
        ]
        results = await asyncio.gather(
            *(self._mail_sender.send(message) for message in messages),
            return_exceptions=True,
        )
        failed = 0
        for message, result in zip(messages, results):
            if isinstance(result, BaseException):
                failed += 1
                logger.warning(f"Failed to send carnival notification to {message.to}: {result}")
        sent = len(messages) - failed
        logger.info(
            f"Carnival {event.carnival_id} notification: {sent} sent, {failed} failed"
        )
        return sent, failed

    async def _deliver(self, message: OutgoingMail) -> bool:
        try:
            await self._mail_sender.send(message)
            return True
        except Exception as e:
            logger.warning(f"Failed to send {message.category} email to {message.to}: {e}", exc_info=True)
            return False
