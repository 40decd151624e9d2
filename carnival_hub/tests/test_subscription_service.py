"""
Tests for public email subscriptions.
"""

from datetime import timedelta

import pytest

from carnival_hub.services.errors import InvalidError, NotFoundError
from carnival_hub.utils.constants import NOTIFICATION_TYPES
from carnival_hub.utils.datetime_utils import as_utc


@pytest.mark.asyncio
async def test_subscribe_normalises_and_defaults(hub):
    subscription = await hub.subscriptions.subscribe(
        {"email": "  Fan@Example.COM ", "states": ["NSW", "QLD", "NSW"]}
    )

    assert subscription.email == "fan@example.com"
    assert subscription.states == ["NSW", "QLD"]
    assert subscription.notification_types == NOTIFICATION_TYPES
    assert subscription.is_active is True
    assert len(subscription.unsubscribe_token) >= 43


@pytest.mark.asyncio
async def test_subscribe_validation(hub):
    with pytest.raises(InvalidError):
        await hub.subscriptions.subscribe({"email": "fan@example.com", "states": []})
    with pytest.raises(InvalidError):
        await hub.subscriptions.subscribe({"email": "fan@example.com", "states": ["ZZ"]})
    with pytest.raises(InvalidError):
        await hub.subscriptions.subscribe(
            {"email": "fan@example.com", "states": ["NSW"], "notification_types": ["Spam"]}
        )
    with pytest.raises(InvalidError):
        await hub.subscriptions.subscribe({"email": "nope", "states": ["NSW"]})


@pytest.mark.asyncio
async def test_resubscribe_updates_preferences(hub):
    first = await hub.subscriptions.subscribe({"email": "fan@example.com", "states": ["NSW"]})
    second = await hub.subscriptions.subscribe(
        {"email": "FAN@example.com", "states": ["VIC"], "notification_types": ["Carnival_Notifications"]}
    )

    assert second.id == first.id
    assert second.unsubscribe_token == first.unsubscribe_token
    assert second.states == ["VIC"]
    assert second.notification_types == ["Carnival_Notifications"]


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent_and_reactivation_clears_it(hub, clock):
    subscription = await hub.subscriptions.subscribe({"email": "fan@example.com", "states": ["NSW"]})

    clock.advance(days=1)
    gone = await hub.subscriptions.unsubscribe(subscription.unsubscribe_token)
    assert gone.is_active is False
    assert as_utc(gone.unsubscribed_at) == clock.now()

    clock.advance(days=1)
    again = await hub.subscriptions.unsubscribe(subscription.unsubscribe_token)
    assert as_utc(again.unsubscribed_at) == clock.now() - timedelta(days=1)

    back = await hub.subscriptions.subscribe({"email": "fan@example.com", "states": ["WA"]})
    assert back.is_active is True
    assert back.unsubscribed_at is None
    assert back.states == ["WA"]


@pytest.mark.asyncio
async def test_unsubscribe_unknown_token(hub):
    with pytest.raises(NotFoundError):
        await hub.subscriptions.unsubscribe("no-such-token")
    with pytest.raises(NotFoundError):
        await hub.subscriptions.unsubscribe("")
    with pytest.raises(NotFoundError):
        await hub.subscriptions.get_by_token("no-such-token")
