"""
Tests for invitation token minting and single-use consumption.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from carnival_hub.database.models import InvitationToken, TokenSubject
from carnival_hub.services.errors import GoneError, NotFoundError
from carnival_hub.services.token_service import TokenMinter, generate_token


@pytest.fixture
def minter():
    return TokenMinter()


async def _mint(store, minter, ttl=timedelta(days=7), email="Invitee@Example.com"):
    async with store.transaction() as uow:
        token = await minter.invite(uow, TokenSubject.DELEGATE, 7, email, ttl, created_by_user_id=None)
        return token.value


def test_generate_token_is_long_and_unique():
    values = {generate_token() for _ in range(50)}
    assert len(values) == 50
    assert all(len(value) >= 43 for value in values)


@pytest.mark.asyncio
async def test_invite_records_lowercased_email_and_expiry(store, minter, clock):
    value = await _mint(store, minter)
    async with store.transaction() as uow:
        token = await minter.load(uow, value, TokenSubject.DELEGATE)
        assert token.invite_email == "invitee@example.com"
        assert token.subject_id == 7
        assert token.consumed_at is None


@pytest.mark.asyncio
async def test_load_rejects_unknown_or_other_subject(store, minter):
    value = await _mint(store, minter)
    async with store.transaction() as uow:
        with pytest.raises(NotFoundError):
            await minter.load(uow, "does-not-exist")
        with pytest.raises(NotFoundError):
            await minter.load(uow, value, TokenSubject.PROXY_CLUB_CLAIM)
        with pytest.raises(NotFoundError):
            await minter.load(uow, "")


@pytest.mark.asyncio
async def test_token_expires_at_exact_second(store, minter, clock):
    value = await _mint(store, minter, ttl=timedelta(hours=1))

    clock.advance(minutes=59, seconds=59)
    async with store.transaction() as uow:
        token = await minter.load(uow, value)
        minter.ensure_usable(token, uow.now)

    clock.advance(seconds=1)
    async with store.transaction() as uow:
        token = await minter.load(uow, value)
        with pytest.raises(GoneError) as exc_info:
            minter.ensure_usable(token, uow.now)
    assert "expired" in exc_info.value.message


@pytest.mark.asyncio
async def test_consume_is_single_use(store, minter):
    value = await _mint(store, minter)

    async with store.transaction() as uow:
        token = await minter.load(uow, value)
        await minter.consume(uow, token, None)
        assert token.consumed_at == uow.now

    with pytest.raises(GoneError) as exc_info:
        async with store.transaction() as uow:
            token = await minter.load(uow, value)
            await minter.consume(uow, token, None)
    assert "already been used" in exc_info.value.message


@pytest.mark.asyncio
async def test_consume_loses_race_against_concurrent_claim(store, minter, clock):
    value = await _mint(store, minter)

    with pytest.raises(GoneError):
        async with store.transaction() as uow:
            token = await minter.load(uow, value)
            # Another claim wins between our read and our write
            await uow.session.execute(
                update(InvitationToken)
                .where(InvitationToken.id == token.id)
                .values(consumed_at=uow.now)
                .execution_options(synchronize_session=False)
            )
            assert token.consumed_at is None
            await minter.consume(uow, token, None)


@pytest.mark.asyncio
async def test_purge_removes_spent_tokens_only(store, minter, clock):
    expiring = await _mint(store, minter, ttl=timedelta(hours=1), email="a@example.com")
    used = await _mint(store, minter, email="b@example.com")
    live = await _mint(store, minter, email="c@example.com")

    async with store.transaction() as uow:
        await minter.consume(uow, await minter.load(uow, used), None)

    clock.advance(hours=2)
    async with store.transaction() as uow:
        removed = await minter.purge(uow)
    assert removed == 2

    async with store.session() as session:
        remaining = (await session.execute(select(InvitationToken.value))).scalars().all()
        assert remaining == [live]
        assert await session.scalar(select(func.count()).select_from(InvitationToken)) == 1
    assert expiring not in remaining
