"""
Authorisation predicates shared by every service.

Pure functions over already-loaded rows: no I/O, no clock reads (callers
pass "now"). Services consult these before mutating anything.
"""

from datetime import datetime
from typing import Optional

from carnival_hub.database.models import Carnival, Club, InvitationToken, TokenSubject, User
from carnival_hub.utils.datetime_utils import as_utc


def emails_match(left: Optional[str], right: Optional[str]) -> bool:
    """Case-insensitive, whitespace-tolerant email comparison."""
    if not left or not right:
        return False
    return left.strip().lower() == right.strip().lower()


def is_delegate(user: User) -> bool:
    return user.is_active and user.club_id is not None


def is_primary_delegate_of(user: User, club_id: Optional[int]) -> bool:
    return (
        user.is_active
        and club_id is not None
        and user.club_id == club_id
        and user.is_primary_delegate
    )


def can_edit_carnival(user: User, carnival: Carnival) -> bool:
    """Owner or admin."""
    if not user.is_active:
        return False
    if user.is_admin:
        return True
    return carnival.created_by_user_id is not None and carnival.created_by_user_id == user.id


def can_archive_carnival(user: User, carnival: Carnival) -> bool:
    """Owned carnivals: owner or admin. Ownerless imported carnivals: admin only."""
    if not user.is_active:
        return False
    if carnival.created_by_user_id is None:
        return user.is_admin
    return can_edit_carnival(user, carnival)


def can_manage_club(user: User, club: Club) -> bool:
    if not user.is_active:
        return False
    return user.is_admin or is_primary_delegate_of(user, club.id)


def can_create_carnival(user: User) -> bool:
    return user.is_active and (user.is_admin or user.club_id is not None)


def can_create_club_on_behalf(user: User) -> bool:
    return user.is_active and (user.is_admin or user.club_id is not None)


def token_usable(token: Optional[InvitationToken], now: datetime) -> bool:
    """
    A token is usable while it is unconsumed and strictly before its expiry.

    At exactly ``expires_at`` the token is already unusable.
    """
    if token is None or token.consumed_at is not None:
        return False
    return as_utc(now) < as_utc(token.expires_at)


def can_claim_proxy_club(user: User, club: Club, token: InvitationToken, now: datetime) -> bool:
    return (
        user.is_active
        and club.is_active
        and club.created_by_proxy
        and user.club_id is None
        and token.subject_kind == TokenSubject.PROXY_CLUB_CLAIM.value
        and token.subject_id == club.id
        and token_usable(token, now)
        and emails_match(token.invite_email, user.email)
    )


def state_allows_claim(carnival_state: Optional[str], club_state: Optional[str]) -> bool:
    """A delegate may claim carnivals with no state or in their own club's state."""
    return carnival_state is None or carnival_state == club_state
