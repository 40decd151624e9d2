"""
Invitation token minting and single-use consumption.

Tokens are ``secrets.token_urlsafe(32)`` strings (256 bits). A token is
consumed with a conditional UPDATE that only matches while ``consumed_at``
is still NULL, so two concurrent claims cannot both succeed.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm.attributes import set_committed_value

from carnival_hub.database.models import InvitationToken, TokenSubject
from carnival_hub.database.store import UnitOfWork
from carnival_hub.services.errors import GoneError, NotFoundError
from carnival_hub.services.policy import token_usable
from carnival_hub.utils.constants import INVITATION_TOKEN_BYTES

logger = logging.getLogger(__name__)


def generate_token() -> str:
    return secrets.token_urlsafe(INVITATION_TOKEN_BYTES)


class TokenMinter:
    """Creates and consumes InvitationToken rows inside the caller's transaction."""

    async def invite(
        self,
        uow: UnitOfWork,
        subject: TokenSubject,
        subject_id: int,
        email: str,
        ttl: timedelta,
        created_by_user_id: Optional[int] = None,
    ) -> InvitationToken:
        """
        Mint a token bound to a subject and an invitee email.

        Args:
            uow: Open unit of work
            subject: What the token lets its holder claim
            subject_id: Club id the token refers to
            email: Invitee email (stored lowercased)
            ttl: Lifetime from the unit of work's "now"
            created_by_user_id: Inviting user, if any

        Returns:
            The persisted InvitationToken
        """
        token = InvitationToken(
            value=generate_token(),
            subject_kind=subject.value,
            subject_id=subject_id,
            invite_email=email.strip().lower(),
            created_by_user_id=created_by_user_id,
            expires_at=uow.now + ttl,
        )
        await uow.add(token)
        logger.info(
            f"Minted {subject.value} token for subject {subject_id} (expires {token.expires_at.isoformat()})"
        )
        return token

    async def load(
        self, uow: UnitOfWork, value: Optional[str], subject: Optional[TokenSubject] = None
    ) -> InvitationToken:
        """
        Look up a token by value.

        Raises:
            NotFoundError: If no token has this value (or it is for another subject)
        """
        if not value:
            raise NotFoundError("Invitation not found")
        result = await uow.session.execute(
            select(InvitationToken).where(InvitationToken.value == value)
        )
        token = result.scalar_one_or_none()
        if token is None or (subject is not None and token.subject_kind != subject.value):
            raise NotFoundError("Invitation not found")
        return token

    def ensure_usable(self, token: InvitationToken, now: datetime) -> None:
        """
        Raises:
            GoneError: If the token was already used or has expired
        """
        if token.consumed_at is not None:
            raise GoneError("This invitation has already been used")
        if not token_usable(token, now):
            raise GoneError("This invitation has expired")

    async def consume(self, uow: UnitOfWork, token: InvitationToken, user_id: Optional[int]) -> None:
        """
        Mark a token consumed, atomically.

        Raises:
            GoneError: If the token is no longer usable or another claim consumed it first
        """
        self.ensure_usable(token, uow.now)
        result = await uow.session.execute(
            update(InvitationToken)
            .where(
                InvitationToken.id == token.id,
                InvitationToken.consumed_at.is_(None),
            )
            .values(consumed_at=uow.now, consumed_by_user_id=user_id)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise GoneError("This invitation has already been used")
        set_committed_value(token, "consumed_at", uow.now)
        set_committed_value(token, "consumed_by_user_id", user_id)
        logger.info(f"Consumed {token.subject_kind} token {token.id} for subject {token.subject_id}")

    async def purge(self, uow: UnitOfWork) -> int:
        """Hard-delete tokens that are consumed or past expiry. Returns rows removed."""
        result = await uow.session.execute(
            delete(InvitationToken)
            .where(
                or_(
                    InvitationToken.consumed_at.is_not(None),
                    InvitationToken.expires_at <= uow.now,
                )
            )
            .execution_options(synchronize_session=False)
        )
        removed = result.rowcount or 0
        if removed:
            logger.info(f"Purged {removed} spent invitation token(s)")
        return removed
