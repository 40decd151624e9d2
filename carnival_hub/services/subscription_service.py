"""
Email subscription service.

Anyone can subscribe an address to carnival news for chosen states.
Re-subscribing reactivates the existing row and replaces its preferences;
unsubscribing by token is idempotent.
"""

import logging
import secrets
from typing import List

from sqlalchemy import select

from carnival_hub.database.models import EmailSubscription
from carnival_hub.database.store import Store
from carnival_hub.models.schemas import SubscriptionRequest, SubscriptionResponse
from carnival_hub.services.errors import NotFoundError, validate
from carnival_hub.utils.constants import UNSUBSCRIBE_TOKEN_BYTES

logger = logging.getLogger(__name__)


def generate_unsubscribe_token() -> str:
    return secrets.token_urlsafe(UNSUBSCRIBE_TOKEN_BYTES)


class SubscriptionService:
    """Public notification subscriptions."""

    def __init__(self, store: Store):
        self._store = store

    async def subscribe(self, request) -> SubscriptionResponse:
        """
        Create, update, or reactivate a subscription for an email address.

        Args:
            request: SubscriptionRequest or dict (email, states, notification_types)

        Returns:
            The subscription as stored

        Raises:
            InvalidError: If the email, states, or notification types are invalid
        """
        data = validate(SubscriptionRequest, request)
        states: List[str] = [state.value for state in data.states]
        notification_types: List[str] = [category.value for category in data.notification_types]

        async with self._store.transaction() as uow:
            result = await uow.session.execute(
                select(EmailSubscription).where(EmailSubscription.email == data.email)
            )
            subscription = result.scalar_one_or_none()

            if subscription is None:
                subscription = EmailSubscription(
                    email=data.email,
                    states=states,
                    notification_types=notification_types,
                    unsubscribe_token=generate_unsubscribe_token(),
                    source=data.source,
                    is_active=True,
                )
                await uow.add(subscription)
                logger.info(f"New subscription {subscription.id} for states {', '.join(states)}")
            else:
                was_active = subscription.is_active
                subscription.states = states
                subscription.notification_types = notification_types
                subscription.is_active = True
                subscription.unsubscribed_at = None
                await uow.flush()
                if was_active:
                    logger.info(f"Updated subscription {subscription.id} preferences")
                else:
                    logger.info(f"Reactivated subscription {subscription.id}")

            return SubscriptionResponse.model_validate(subscription)

    async def unsubscribe(self, token: str) -> SubscriptionResponse:
        """
        Deactivate the subscription owning an unsubscribe token.

        Raises:
            NotFoundError: If no subscription has this token
        """
        if not token:
            raise NotFoundError("Subscription not found")
        async with self._store.transaction() as uow:
            result = await uow.session.execute(
                select(EmailSubscription).where(EmailSubscription.unsubscribe_token == token)
            )
            subscription = result.scalar_one_or_none()
            if subscription is None:
                raise NotFoundError("Subscription not found")
            if subscription.is_active:
                subscription.is_active = False
                subscription.unsubscribed_at = uow.now
                await uow.flush()
                logger.info(f"Subscription {subscription.id} unsubscribed")
            return SubscriptionResponse.model_validate(subscription)

    async def get_by_token(self, token: str) -> SubscriptionResponse:
        async with self._store.session() as session:
            result = await session.execute(
                select(EmailSubscription).where(EmailSubscription.unsubscribe_token == token)
            )
            subscription = result.scalar_one_or_none()
            if subscription is None:
                raise NotFoundError("Subscription not found")
            return SubscriptionResponse.model_validate(subscription)
