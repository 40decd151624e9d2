"""
Club queries and profile editing.
"""

import logging
from typing import List, Optional

from sqlalchemy import func, or_, select

from carnival_hub.database.models import Club, ClubAlternateName, User
from carnival_hub.database.store import Store, UnitOfWork
from carnival_hub.models.schemas import (
    AlternateNameResponse,
    ClubDetailResponse,
    ClubFields,
    ClubFilters,
    ClubResponse,
    DelegateSummary,
    UserResponse,
)
from carnival_hub.services.errors import ConflictError, ForbiddenError, NotFoundError, validate
from carnival_hub.services.policy import can_manage_club
from carnival_hub.utils.constants import MIN_SEARCH_LENGTH
from carnival_hub.utils.search import LIKE_ESCAPE, contains_pattern

logger = logging.getLogger(__name__)


async def ensure_club_name_available(
    uow: UnitOfWork, club_name: str, exclude_club_id: Optional[int] = None
) -> None:
    """
    Raise ConflictError when another active club already uses this name, ignoring case.
    """
    stmt = select(Club.id).where(
        Club.is_active.is_(True),
        func.lower(Club.club_name) == club_name.strip().lower(),
    )
    if exclude_club_id is not None:
        stmt = stmt.where(Club.id != exclude_club_id)
    result = await uow.session.execute(stmt.limit(1))
    if result.scalar_one_or_none() is not None:
        raise ConflictError("A club with this name already exists")


class ClubService:
    """Read side for clubs and users, plus club profile updates."""

    def __init__(self, store: Store):
        self._store = store

    async def list_clubs(self, filters=None) -> List[ClubResponse]:
        """
        Active, publicly listed clubs ordered by name.

        ``text`` matches club name, location, or any active alternate name.
        """
        criteria = validate(ClubFilters, filters)
        stmt = select(Club).where(Club.is_active.is_(True), Club.is_publicly_listed.is_(True))
        if criteria.state is not None:
            stmt = stmt.where(Club.state == criteria.state.value)
        if criteria.text and len(criteria.text) >= MIN_SEARCH_LENGTH:
            pattern = contains_pattern(criteria.text)
            alias_match = (
                select(ClubAlternateName.club_id)
                .where(
                    ClubAlternateName.is_active.is_(True),
                    ClubAlternateName.alternate_name.ilike(pattern, escape=LIKE_ESCAPE),
                )
            )
            stmt = stmt.where(
                or_(
                    Club.club_name.ilike(pattern, escape=LIKE_ESCAPE),
                    Club.location.ilike(pattern, escape=LIKE_ESCAPE),
                    Club.id.in_(alias_match),
                )
            )
        stmt = stmt.order_by(Club.club_name.asc(), Club.id.asc())

        async with self._store.session() as session:
            result = await session.execute(stmt)
            return [ClubResponse.model_validate(club) for club in result.scalars().all()]

    async def get_club(self, club_id: int) -> ClubDetailResponse:
        """
        Resolve a club with its active delegates (primary first) and alternate names.

        Raises:
            NotFoundError: If no club has this id
        """
        async with self._store.session() as session:
            club = await session.get(Club, club_id)
            if club is None:
                raise NotFoundError("Club not found")

            delegates_result = await session.execute(
                select(User)
                .where(User.club_id == club.id, User.is_active.is_(True))
                .order_by(
                    User.is_primary_delegate.desc(),
                    User.club_joined_at.asc().nulls_last(),
                    User.id.asc(),
                )
            )
            delegates = delegates_result.scalars().all()

            aliases_result = await session.execute(
                select(ClubAlternateName)
                .where(
                    ClubAlternateName.club_id == club.id,
                    ClubAlternateName.is_active.is_(True),
                )
                .order_by(ClubAlternateName.alternate_name.asc())
            )
            aliases = aliases_result.scalars().all()

            has_primary = any(d.is_primary_delegate for d in delegates)
            base = ClubResponse.model_validate(club).model_dump()
            return ClubDetailResponse(
                **base,
                delegates=[DelegateSummary.model_validate(d) for d in delegates],
                alternate_names=[AlternateNameResponse.model_validate(a) for a in aliases],
                is_unclaimed=bool(club.created_by_proxy) and not has_primary,
            )

    async def get_user(self, user_id: int) -> UserResponse:
        async with self._store.session() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found")
            return UserResponse.model_validate(user)

    async def update_club(self, actor_id: int, club_id: int, fields) -> ClubResponse:
        """
        Edit a club profile (primary delegate or admin). Only supplied fields change.

        Raises:
            ForbiddenError: If the actor cannot manage the club
            ConflictError: If the new name belongs to another active club
        """
        data = validate(ClubFields, fields)
        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            club = await uow.get_active(Club, club_id, "Club")
            if not can_manage_club(actor, club):
                raise ForbiddenError("Only the primary delegate can edit this club")

            values = data.model_dump(exclude_unset=True)
            if values.get("club_name") is None:
                values.pop("club_name", None)
            if values.get("state") is None:
                values.pop("state", None)
            else:
                values["state"] = values["state"].value
            if "club_name" in values:
                await ensure_club_name_available(uow, values["club_name"], exclude_club_id=club.id)

            changed = [name for name, value in values.items() if getattr(club, name) != value]
            for name in changed:
                setattr(club, name, values[name])
            if changed:
                await uow.flush()
                logger.info(f"User {actor.id} updated club {club.id}: {', '.join(changed)}")
            return ClubResponse.model_validate(club)

