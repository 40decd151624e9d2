"""
Tests for carnival ownership (claim, release, admin claim, archive) and the
proxy-club claim flow.
"""

import pytest
from sqlalchemy import select

from carnival_hub.database.models import Carnival, Club, InvitationToken, User
from carnival_hub.services.errors import (
    ConflictError,
    ForbiddenError,
    GoneError,
    InvalidError,
    NotFoundError,
)
from carnival_hub.utils.datetime_utils import as_utc


async def _token_row(store, value):
    async with store.session() as session:
        result = await session.execute(select(InvitationToken).where(InvitationToken.value == value))
        return result.scalar_one()


# ============================================================================
# Carnival ownership
# ============================================================================


@pytest.mark.asyncio
async def test_imported_carnival_claimed_then_second_claim_forbidden(hub, make_delegate, make_carnival, fetch, clock):
    _, u_id = await make_delegate("Club Seven", "u@example.com", display_name="Uma")
    _, v_id = await make_delegate("Club Eight", "v@example.com")
    carnival_id = await make_carnival(
        "Imported Carnival", external_event_id="ms-42", organiser_contact_email="mysideline@example.com"
    )

    claimed = await hub.ownership.claim_carnival(u_id, carnival_id)

    assert claimed.created_by_user_id == u_id
    assert claimed.organiser_contact_email == "u@example.com"
    assert claimed.organiser_contact_name == "Uma"
    row = await fetch(Carnival, carnival_id)
    assert row.original_organiser_email == "mysideline@example.com"
    assert as_utc(row.claimed_at) == clock.now()

    with pytest.raises(ForbiddenError):
        await hub.ownership.claim_carnival(v_id, carnival_id)


@pytest.mark.asyncio
async def test_claim_by_current_owner_is_noop(hub, make_delegate, make_carnival, mail_sender):
    _, u_id = await make_delegate("Club Seven", "u@example.com")
    carnival_id = await make_carnival("Imported", external_event_id="ms-1")

    await hub.ownership.claim_carnival(u_id, carnival_id)
    mail_sender.clear()
    again = await hub.ownership.claim_carnival(u_id, carnival_id)

    assert again.created_by_user_id == u_id
    assert mail_sender.sent == []


@pytest.mark.asyncio
async def test_claim_notifies_original_organiser(hub, make_delegate, make_carnival, mail_sender):
    _, u_id = await make_delegate("Club Seven", "u@example.com", display_name="Uma")
    carnival_id = await make_carnival(
        "Imported", external_event_id="ms-1", organiser_contact_email="mysideline@example.com"
    )

    await hub.ownership.claim_carnival(u_id, carnival_id)

    [mail] = mail_sender.to("mysideline@example.com")
    assert mail.category == "ownership_claimed"
    assert "Uma (Club Seven)" in mail.body


@pytest.mark.asyncio
async def test_claim_guards(hub, make_user, make_club, make_delegate, make_carnival):
    loner = await make_user("loner@example.com")
    _, qld_delegate = await make_delegate("Brisbane Masters", "qld@example.com", state="QLD")
    inactive_club = await make_club("Gone Masters", is_active=False)
    orphan = await make_user("orphan@example.com", club_id=inactive_club)
    _, owner_id = await make_delegate("Manual Owners", "manual@example.com")

    nsw_import = await make_carnival("NSW Import", external_event_id="ms-1", state="NSW")
    stateless_import = await make_carnival("Stateless", external_event_id="ms-2", state=None)
    manual = await make_carnival("Manual", owner_id=owner_id)

    with pytest.raises(ForbiddenError):
        await hub.ownership.claim_carnival(loner, nsw_import)
    with pytest.raises(ForbiddenError) as exc_info:
        await hub.ownership.claim_carnival(qld_delegate, nsw_import)
    assert "(QLD)" in exc_info.value.message
    with pytest.raises(ForbiddenError):
        await hub.ownership.claim_carnival(orphan, nsw_import)

    # Other states are fine when the carnival has no state
    claimed = await hub.ownership.claim_carnival(qld_delegate, stateless_import)
    assert claimed.created_by_user_id == qld_delegate

    # Manual carnivals always have an owner
    _, nsw_delegate = await make_delegate("Another NSW", "another@example.com")
    with pytest.raises(ForbiddenError):
        await hub.ownership.claim_carnival(nsw_delegate, manual)


@pytest.mark.asyncio
async def test_release_returns_carnival_to_unowned(hub, make_delegate, make_carnival, fetch):
    club_id, u_id = await make_delegate("Club Seven", "u@example.com")
    carnival_id = await make_carnival("Imported", external_event_id="ms-1")
    await hub.ownership.claim_carnival(u_id, carnival_id)
    await hub.attendance.register_organiser_side(u_id, carnival_id, club_id)

    released = await hub.ownership.release_carnival(u_id, carnival_id)

    assert released.carnival.created_by_user_id is None
    assert released.carnival.organiser_contact_email is None
    assert released.active_registrations == 1
    row = await fetch(Carnival, carnival_id)
    assert row.claimed_at is None
    assert row.is_manually_entered is False

    with pytest.raises(ConflictError):
        await hub.ownership.release_carnival(u_id, carnival_id)


@pytest.mark.asyncio
async def test_release_guards(hub, make_delegate, make_carnival):
    _, owner_id = await make_delegate("Club Seven", "u@example.com")
    _, other_id = await make_delegate("Club Eight", "v@example.com")
    manual = await make_carnival("Manual", owner_id=owner_id)
    imported = await make_carnival("Imported", external_event_id="ms-1")
    await hub.ownership.claim_carnival(owner_id, imported)

    with pytest.raises(InvalidError):
        await hub.ownership.release_carnival(owner_id, manual)
    with pytest.raises(ForbiddenError):
        await hub.ownership.release_carnival(other_id, imported)


@pytest.mark.asyncio
async def test_admin_claim_on_behalf_reports_state_mismatch(hub, make_user, make_delegate, make_carnival, mail_sender):
    admin_id = await make_user("admin@example.com", is_admin=True)
    club_id, primary_id = await make_delegate("Perth Masters", "perth@example.com", state="WA")
    carnival_id = await make_carnival("Sydney Import", external_event_id="ms-9", state="NSW")

    result = await hub.ownership.admin_claim_on_behalf(admin_id, carnival_id, club_id)

    assert result.owner_user_id == primary_id
    assert result.carnival.created_by_user_id == primary_id
    assert result.warnings == ["This carnival is in NSW but the club is based in WA."]
    assert len(mail_sender.to("organiser@example.com")) == 1

    with pytest.raises(ConflictError):
        await hub.ownership.admin_claim_on_behalf(admin_id, carnival_id, club_id)


@pytest.mark.asyncio
async def test_admin_claim_on_behalf_guards(hub, make_user, make_club, make_delegate, make_carnival):
    admin_id = await make_user("admin@example.com", is_admin=True)
    club_id, delegate_id = await make_delegate("Perth Masters", "perth@example.com", state="WA")
    headless_club = await make_club("No Primary Masters")
    carnival_id = await make_carnival("Import", external_event_id="ms-9")

    with pytest.raises(ForbiddenError):
        await hub.ownership.admin_claim_on_behalf(delegate_id, carnival_id, club_id)
    with pytest.raises(InvalidError):
        await hub.ownership.admin_claim_on_behalf(admin_id, carnival_id, headless_club)
    with pytest.raises(NotFoundError):
        await hub.ownership.admin_claim_on_behalf(admin_id, carnival_id, 999)


@pytest.mark.asyncio
async def test_archive_permissions(hub, make_user, make_delegate, make_carnival):
    admin_id = await make_user("admin@example.com", is_admin=True)
    _, owner_id = await make_delegate("Club Seven", "u@example.com")
    _, other_id = await make_delegate("Club Eight", "v@example.com")
    owned = await make_carnival("Owned", owner_id=owner_id)
    ownerless = await make_carnival("Ownerless", external_event_id="ms-5")

    with pytest.raises(ForbiddenError):
        await hub.ownership.archive_carnival(other_id, owned)
    with pytest.raises(ForbiddenError) as exc_info:
        await hub.ownership.archive_carnival(owner_id, ownerless)
    assert "administrators" in exc_info.value.message

    archived = await hub.ownership.archive_carnival(owner_id, owned)
    assert archived.is_active is False
    assert (await hub.ownership.archive_carnival(admin_id, ownerless)).is_active is False

    with pytest.raises(NotFoundError):
        await hub.ownership.archive_carnival(owner_id, owned)
    assert [c.id for c in await hub.carnivals.list_carnivals()] == []


@pytest.mark.asyncio
async def test_archived_import_frees_its_external_id(hub, make_user, make_carnival):
    admin_id = await make_user("admin@example.com", is_admin=True)
    first = await make_carnival("Import", external_event_id="ms-5")
    await hub.ownership.archive_carnival(admin_id, first)

    second = await make_carnival("Import again", external_event_id="ms-5")
    assert second != first


# ============================================================================
# Proxy club claim
# ============================================================================


@pytest.fixture
def proxy_club(hub, make_delegate):
    """Create a proxy club for alice@example.com. Returns (club_id, token)."""

    async def _make(invite_email="alice@example.com"):
        _, creator_id = await make_delegate("Creator Club", "creator@example.com")
        result = await hub.delegates.create_club_on_behalf(
            creator_id,
            {"club_name": "Alice Masters", "state": "VIC", "invite_email": invite_email},
        )
        return result.club.id, result.invitation.token

    return _make


@pytest.mark.asyncio
async def test_proxy_claim_success(hub, proxy_club, make_user, fetch, store):
    club_id, token = await proxy_club()
    alice = await make_user("Alice@Example.com")

    club = await hub.ownership.claim_proxy_club(alice, club_id, token)

    assert club.created_by_proxy is False
    assert club.invite_email is None
    assert club.is_publicly_listed is True
    user = await fetch(User, alice)
    assert user.club_id == club_id
    assert user.is_primary_delegate is True
    token_row = await _token_row(store, token)
    assert token_row.consumed_at is not None
    assert token_row.consumed_by_user_id == alice


@pytest.mark.asyncio
async def test_proxy_claim_token_is_single_use(hub, proxy_club, make_user):
    club_id, token = await proxy_club()
    alice = await make_user("alice@example.com")
    await hub.ownership.claim_proxy_club(alice, club_id, token)

    # Alice left the club again; the token still cannot be replayed
    await hub.delegates.leave_club(alice, {"action": "available", "confirmed": True})
    with pytest.raises(GoneError):
        await hub.ownership.claim_proxy_club(alice, club_id, token)


@pytest.mark.asyncio
async def test_proxy_claim_email_mismatch_leaves_token_unconsumed(hub, proxy_club, make_user, store, fetch):
    club_id, token = await proxy_club()
    bob = await make_user("bob@example.com")

    with pytest.raises(ForbiddenError):
        await hub.ownership.claim_proxy_club(bob, club_id, token)

    assert (await _token_row(store, token)).consumed_at is None
    club = await fetch(Club, club_id)
    assert club.created_by_proxy is True


@pytest.mark.asyncio
async def test_proxy_claim_guards(hub, proxy_club, make_user, make_club, clock):
    club_id, token = await proxy_club()
    other_club = await make_club("Unrelated Masters")
    attached_alice = await make_user("alice@example.com", club_id=other_club)

    with pytest.raises(ForbiddenError) as exc_info:
        await hub.ownership.claim_proxy_club(attached_alice, club_id, token)
    assert "already a delegate" in exc_info.value.message

    with pytest.raises(ForbiddenError):
        await hub.ownership.claim_proxy_club(attached_alice, other_club, token)
    with pytest.raises(NotFoundError):
        await hub.ownership.claim_proxy_club(attached_alice, club_id, "bogus-token")


@pytest.mark.asyncio
async def test_proxy_claim_expired_token_is_gone(hub, proxy_club, make_user, clock, settings, fetch):
    club_id, token = await proxy_club()
    alice = await make_user("alice@example.com")

    clock.advance(hours=settings.proxy_invite_ttl_hours)
    with pytest.raises(GoneError):
        await hub.ownership.claim_proxy_club(alice, club_id, token)

    # The club stays pending
    assert (await fetch(Club, club_id)).created_by_proxy is True


@pytest.mark.asyncio
async def test_proxy_claim_token_for_another_club(hub, proxy_club, make_user, make_delegate):
    club_id, token = await proxy_club()
    _, creator_id = await make_delegate("Second Creator", "second@example.com")
    second = await hub.delegates.create_club_on_behalf(
        creator_id,
        {"club_name": "Second Proxy", "state": "SA", "invite_email": "alice@example.com"},
    )
    alice = await make_user("alice@example.com")

    with pytest.raises(ForbiddenError) as exc_info:
        await hub.ownership.claim_proxy_club(alice, second.club.id, token)
    assert "different club" in exc_info.value.message
