"""
Ownership service layer.

Two state machines:

* Carnival ownership: Imported-Unowned -> Owned -> Archived. Imported
  carnivals start without an owner; a delegate with an active club in the
  same state may claim one. Owners (or admins) archive; ownerless carnivals
  can only be archived by an admin.
* Proxy-club claim: a club created on someone's behalf stays pending until
  the invited email claims it with its single-use token.
"""

import logging
from typing import Optional

from sqlalchemy import func, select

from carnival_hub.database.models import (
    Carnival,
    CarnivalClub,
    Club,
    TokenSubject,
    User,
)
from carnival_hub.database.store import Store
from carnival_hub.models.schemas import (
    AdminClaimResponse,
    CarnivalResponse,
    ClubResponse,
    ReleaseOwnershipResponse,
)
from carnival_hub.services.carnival_service import carnival_event
from carnival_hub.services.errors import (
    ConflictError,
    ForbiddenError,
    InvalidError,
    NotFoundError,
)
from carnival_hub.services.events import (
    CarnivalArchived,
    CarnivalOwnershipClaimed,
    CarnivalOwnershipReleased,
    ProxyClubClaimed,
)
from carnival_hub.services.policy import (
    can_archive_carnival,
    can_claim_proxy_club,
    emails_match,
    state_allows_claim,
)
from carnival_hub.services.token_service import TokenMinter

logger = logging.getLogger(__name__)


def _ensure_imported(carnival: Carnival) -> None:
    if carnival.is_manually_entered or carnival.external_event_id is None:
        raise InvalidError("Can only claim ownership of MySideline imported events")


def _assign_owner(carnival: Carnival, owner: User, now) -> Optional[str]:
    """Make ``owner`` the carnival's organiser. Returns the organiser email it replaced."""
    original_email = carnival.organiser_contact_email
    carnival.created_by_user_id = owner.id
    carnival.claimed_at = now
    carnival.original_organiser_email = original_email
    carnival.organiser_contact_name = owner.display_name
    carnival.organiser_contact_email = owner.email
    carnival.organiser_contact_phone = owner.phone
    return original_email


class OwnershipService:
    """Carnival ownership and proxy-club claim transitions."""

    def __init__(self, store: Store, token_minter: TokenMinter):
        self._store = store
        self._tokens = token_minter

    async def claim_carnival(self, actor_id: int, carnival_id: int) -> CarnivalResponse:
        """
        Claim an ownerless imported carnival.

        Claiming a carnival the actor already owns is a no-op.

        Args:
            actor_id: Delegate claiming the carnival
            carnival_id: Imported carnival to claim

        Returns:
            The carnival after the claim

        Raises:
            NotFoundError: If the carnival is missing or archived
            ForbiddenError: If the actor has no active club, the carnival is in
                another state, or someone else already owns it
            InvalidError: If the carnival was entered manually
        """
        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            carnival = await uow.get_active(Carnival, carnival_id, "Carnival")

            if carnival.created_by_user_id is not None:
                if carnival.created_by_user_id == actor.id:
                    return CarnivalResponse.model_validate(carnival)
                raise ForbiddenError("This carnival already has an owner")

            if actor.club_id is None:
                raise ForbiddenError("You must be associated with a club to claim carnival ownership")
            club = await uow.get(Club, actor.club_id)
            if club is None or not club.is_active:
                raise ForbiddenError("Your club must be active to claim carnival ownership")
            if not state_allows_claim(carnival.state, club.state):
                raise ForbiddenError(
                    f"You can only claim events in your club's state ({club.state}) or events "
                    f"with no specific state. This carnival is in {carnival.state}."
                )
            _ensure_imported(carnival)

            original_email = _assign_owner(carnival, actor, uow.now)
            await uow.flush()
            uow.emit(
                carnival_event(
                    CarnivalOwnershipClaimed,
                    carnival,
                    uow,
                    actor.id,
                    owner_user_id=actor.id,
                    owner_name=actor.display_name,
                    owner_email=actor.email,
                    club_name=club.club_name,
                    original_organiser_email=original_email,
                )
            )
            logger.info(
                f"Carnival {carnival.id} ({carnival.title!r}) claimed by user {actor.id} ({club.club_name})"
            )
            return CarnivalResponse.model_validate(carnival)

    async def admin_claim_on_behalf(
        self, actor_id: int, carnival_id: int, club_id: int
    ) -> AdminClaimResponse:
        """
        Admin assigns an ownerless imported carnival to a club's primary delegate.

        A state mismatch between carnival and club is allowed but reported.

        Raises:
            ForbiddenError: If the actor is not an admin
            NotFoundError: If the carnival or club is missing or inactive
            InvalidError: If the club has no active primary delegate or the
                carnival was entered manually
            ConflictError: If the carnival already has an owner
        """
        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            if not actor.is_admin:
                raise ForbiddenError("Only administrators can claim carnivals on behalf of other clubs")
            carnival = await uow.get_active(Carnival, carnival_id, "Carnival")
            club = await uow.get_active(Club, club_id, "Club")

            primary = await uow.find_active(User, club_id=club.id, is_primary_delegate=True)
            if primary is None:
                raise InvalidError("Target club must have an active primary delegate to claim carnival")
            _ensure_imported(carnival)
            if carnival.created_by_user_id is not None:
                raise ConflictError("This carnival already has an owner")

            warnings = []
            if not state_allows_claim(carnival.state, club.state):
                warnings.append(
                    f"This carnival is in {carnival.state} but the club is based in {club.state}."
                )

            original_email = _assign_owner(carnival, primary, uow.now)
            await uow.flush()
            uow.emit(
                carnival_event(
                    CarnivalOwnershipClaimed,
                    carnival,
                    uow,
                    actor.id,
                    owner_user_id=primary.id,
                    owner_name=primary.display_name,
                    owner_email=primary.email,
                    club_name=club.club_name,
                    original_organiser_email=original_email,
                    claimed_on_behalf=True,
                )
            )
            logger.info(
                f"Admin {actor.id} claimed carnival {carnival.id} for club {club.id} "
                f"(primary delegate {primary.id})"
            )
            return AdminClaimResponse(
                carnival=CarnivalResponse.model_validate(carnival),
                owner_user_id=primary.id,
                warnings=warnings,
            )

    async def release_carnival(self, actor_id: int, carnival_id: int) -> ReleaseOwnershipResponse:
        """
        Owner gives up an imported carnival, returning it to Imported-Unowned.

        Organiser contact details are cleared. Registrations stay in place; the
        response reports how many are active so the caller can warn about them.

        Raises:
            NotFoundError: If the carnival is missing or archived
            ForbiddenError: If the actor does not own it
            InvalidError: If it was entered manually (it would become ownerless)
        """
        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            carnival = await uow.get_active(Carnival, carnival_id, "Carnival")
            if carnival.created_by_user_id is None:
                raise ConflictError("This carnival is not currently owned by anyone")
            if carnival.created_by_user_id != actor.id:
                raise ForbiddenError("You can only release ownership of carnivals you own")
            if carnival.is_manually_entered or carnival.external_event_id is None:
                raise InvalidError("Can only release ownership of MySideline imported events")

            count_result = await uow.session.execute(
                select(func.count())
                .select_from(CarnivalClub)
                .where(CarnivalClub.carnival_id == carnival.id, CarnivalClub.is_active.is_(True))
            )
            registrations = count_result.scalar() or 0

            carnival.created_by_user_id = None
            carnival.claimed_at = None
            carnival.organiser_contact_name = None
            carnival.organiser_contact_email = None
            carnival.organiser_contact_phone = None
            await uow.flush()
            uow.emit(
                carnival_event(
                    CarnivalOwnershipReleased,
                    carnival,
                    uow,
                    actor.id,
                    previous_owner_user_id=actor.id,
                )
            )
            logger.info(
                f"User {actor.id} released carnival {carnival.id} ({registrations} active registration(s))"
            )
            return ReleaseOwnershipResponse(
                carnival=CarnivalResponse.model_validate(carnival),
                active_registrations=registrations,
            )

    async def archive_carnival(self, actor_id: int, carnival_id: int) -> CarnivalResponse:
        """
        Soft-delete a carnival.

        Raises:
            NotFoundError: If the carnival is missing or already archived
            ForbiddenError: If the actor is not the owner or an admin (admin only
                for ownerless carnivals)
        """
        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            carnival = await uow.get_active(Carnival, carnival_id, "Carnival")
            if not can_archive_carnival(actor, carnival):
                if carnival.created_by_user_id is None:
                    raise ForbiddenError("Only administrators can archive unclaimed carnivals")
                raise ForbiddenError("You can only archive carnivals you own")

            await uow.soft_delete(carnival)
            uow.emit(carnival_event(CarnivalArchived, carnival, uow, actor.id))
            logger.info(f"User {actor.id} archived carnival {carnival.id}")
            return CarnivalResponse.model_validate(carnival)

    async def claim_proxy_club(self, actor_id: int, club_id: int, token_value: str) -> ClubResponse:
        """
        Take over a club created on the actor's behalf.

        Guards are checked in order: the token must be usable (else Gone), then
        bound to this club and to the actor's email, then the actor must not
        already belong to a club (else Forbidden). A rejected claim leaves the
        token unconsumed.

        Args:
            actor_id: User claiming the club
            club_id: Proxy-created club
            token_value: Invitation token from the email

        Returns:
            The claimed club, now publicly listed

        Raises:
            NotFoundError: If the club or token does not exist
            GoneError: If the token is expired or already used
            ForbiddenError: If any other guard fails
        """
        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            club = await uow.get_active(Club, club_id, "Club")
            token = await self._tokens.load(uow, token_value, TokenSubject.PROXY_CLUB_CLAIM)
            self._tokens.ensure_usable(token, uow.now)

            if token.subject_id != club.id:
                raise ForbiddenError("This invitation is for a different club")
            if not emails_match(token.invite_email, actor.email):
                raise ForbiddenError("This invitation was sent to a different email address")
            if actor.club_id is not None:
                raise ForbiddenError("You are already a delegate of a club")
            if not club.created_by_proxy:
                raise ForbiddenError("This club has already been claimed")
            if not can_claim_proxy_club(actor, club, token, uow.now):
                raise ForbiddenError("You cannot claim this club")

            await self._tokens.consume(uow, token, actor.id)
            actor.club_id = club.id
            actor.is_primary_delegate = True
            actor.club_joined_at = uow.now
            club.created_by_proxy = False
            club.invite_email = None
            club.is_publicly_listed = True
            await uow.flush()

            uow.emit(
                ProxyClubClaimed(
                    occurred_at=uow.now, actor_user_id=actor.id, club_id=club.id, user_id=actor.id
                )
            )
            logger.info(f"User {actor.id} claimed proxy club {club.id} ({club.club_name!r})")
            return ClubResponse.model_validate(club)
