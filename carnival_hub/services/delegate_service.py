"""
Delegate service layer.

Membership of users in clubs: creating clubs (for yourself or on someone
else's behalf), delegate invitations, joining and leaving, handing over the
primary delegate role, and managing a club's alternate names.

At most one active primary delegate exists per club. Every hand-over demotes
the current primary and flushes before promoting the successor so the
partial unique index on users(club_id) never sees two primaries.
"""

import logging
from datetime import timedelta
from typing import Optional

import bcrypt
from sqlalchemy import func, select, update

from carnival_hub.config import CoreSettings
from carnival_hub.database.models import CarnivalClub, Club, ClubAlternateName, TokenSubject, User
from carnival_hub.database.store import Store, UnitOfWork
from carnival_hub.models.schemas import (
    AlternateNameInput,
    AlternateNameResponse,
    ClubCreate,
    ClubCreateOnBehalf,
    ClubOnBehalfResponse,
    ClubResponse,
    DelegateInvite,
    InvitationAcceptance,
    InvitationResponse,
    LeaveAction,
    LeaveClubRequest,
    LeaveClubResponse,
    UserResponse,
)
from carnival_hub.services.club_service import ensure_club_name_available
from carnival_hub.services.errors import (
    ConflictError,
    ForbiddenError,
    InvalidError,
    NotFoundError,
    validate,
)
from carnival_hub.services.events import (
    ClubCreated,
    ClubDeactivated,
    DelegateInvitationIssued,
    DelegateJoined,
    DelegateLeft,
    PrimaryDelegateTransferred,
    ProxyInvitationIssued,
)
from carnival_hub.services.policy import (
    can_create_club_on_behalf,
    can_manage_club,
    emails_match,
    is_primary_delegate_of,
)
from carnival_hub.services.token_service import TokenMinter

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def _club_values(data: ClubCreate) -> dict:
    values = data.model_dump(exclude={"invite_email", "custom_message"})
    values["state"] = data.state.value
    return values


class DelegateService:
    """Club membership commands."""

    def __init__(self, store: Store, token_minter: TokenMinter, settings: CoreSettings):
        self._store = store
        self._tokens = token_minter
        self._settings = settings

    @property
    def delegate_invite_ttl(self) -> timedelta:
        return timedelta(hours=self._settings.delegate_invite_ttl_hours)

    @property
    def proxy_invite_ttl(self) -> timedelta:
        return timedelta(hours=self._settings.proxy_invite_ttl_hours)

    # --- helpers ---

    async def _user_by_email(self, uow: UnitOfWork, email: str) -> Optional[User]:
        result = await uow.session.execute(select(User).where(User.email == email.strip().lower()))
        return result.scalar_one_or_none()

    async def _primary_of(self, uow: UnitOfWork, club_id: int) -> Optional[User]:
        return await uow.find_active(User, club_id=club_id, is_primary_delegate=True)

    async def _other_delegates(self, uow: UnitOfWork, club_id: int, exclude_user_id: int):
        """Active delegates of a club other than one user, earliest joiner first."""
        return await uow.list(
            select(User)
            .where(
                User.club_id == club_id,
                User.is_active.is_(True),
                User.id != exclude_user_id,
            )
            .order_by(User.club_joined_at.asc().nulls_last(), User.id.asc())
        )

    async def _hand_over_primary(self, uow: UnitOfWork, current: User, successor: User) -> None:
        current.is_primary_delegate = False
        await uow.flush()
        successor.is_primary_delegate = True
        await uow.flush()

    def _detach(self, user: User) -> None:
        user.club_id = None
        user.is_primary_delegate = False
        user.club_joined_at = None

    # --- club creation ---

    async def create_club(self, actor_id: int, fields) -> ClubResponse:
        """
        Create a club and make the actor its primary delegate.

        Raises:
            InvalidError: If fields fail validation
            ForbiddenError: If the actor already belongs to a club
            ConflictError: If an active club already has this name
        """
        data = validate(ClubCreate, fields)
        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            if actor.club_id is not None:
                raise ForbiddenError("You are already a delegate of a club")
            await ensure_club_name_available(uow, data.club_name)

            club = Club(
                **_club_values(data),
                is_active=True,
                is_publicly_listed=True,
                created_by_user_id=actor.id,
                created_by_proxy=False,
                invite_email=None,
            )
            await uow.add(club)
            actor.club_id = club.id
            actor.is_primary_delegate = True
            actor.club_joined_at = uow.now
            await uow.flush()

            uow.emit(
                ClubCreated(occurred_at=uow.now, actor_user_id=actor.id, club_id=club.id, club_name=club.club_name)
            )
            logger.info(f"User {actor.id} created club {club.id} ({club.club_name!r})")
            return ClubResponse.model_validate(club)

    async def create_club_on_behalf(self, actor_id: int, fields) -> ClubOnBehalfResponse:
        """
        Create an unlisted club for someone else and invite them to claim it.

        Args:
            actor_id: Delegate (or admin) creating the club
            fields: ClubCreateOnBehalf (club fields plus invite_email and an
                optional custom_message for the invitation mail)

        Returns:
            The pending club and the invitation that was issued

        Raises:
            ForbiddenError: If the actor is neither a delegate nor an admin
            ConflictError: If the name is taken or the invitee already belongs to a club
        """
        data = validate(ClubCreateOnBehalf, fields)
        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            if not can_create_club_on_behalf(actor):
                raise ForbiddenError("Only club delegates can create clubs on behalf of others")
            await ensure_club_name_available(uow, data.club_name)
            invitee = await self._user_by_email(uow, data.invite_email)
            if invitee is not None and invitee.club_id is not None:
                raise ConflictError("That email already belongs to a delegate of another club")

            club = Club(
                **_club_values(data),
                is_active=True,
                is_publicly_listed=False,
                created_by_user_id=actor.id,
                created_by_proxy=True,
                invite_email=data.invite_email,
            )
            await uow.add(club)
            token = await self._tokens.invite(
                uow,
                TokenSubject.PROXY_CLUB_CLAIM,
                club.id,
                data.invite_email,
                self.proxy_invite_ttl,
                created_by_user_id=actor.id,
            )

            uow.emit(
                ClubCreated(
                    occurred_at=uow.now,
                    actor_user_id=actor.id,
                    club_id=club.id,
                    club_name=club.club_name,
                    on_behalf=True,
                )
            )
            uow.emit(
                ProxyInvitationIssued(
                    occurred_at=uow.now,
                    actor_user_id=actor.id,
                    club_id=club.id,
                    club_name=club.club_name,
                    invite_email=token.invite_email,
                    token=token.value,
                    expires_at=token.expires_at,
                    inviter_name=actor.display_name,
                    custom_message=data.custom_message,
                )
            )
            logger.info(
                f"User {actor.id} created club {club.id} ({club.club_name!r}) on behalf of {data.invite_email}"
            )
            return ClubOnBehalfResponse(
                club=ClubResponse.model_validate(club),
                invitation=InvitationResponse(
                    club_id=club.id,
                    invite_email=token.invite_email,
                    token=token.value,
                    expires_at=token.expires_at,
                ),
            )

    # --- invitations ---

    async def invite_delegate(self, actor_id: int, email) -> InvitationResponse:
        """
        Primary delegate invites a co-delegate by email.

        Raises:
            ForbiddenError: If the actor is not the primary delegate of an active club
            ConflictError: If the address already belongs to a delegate
        """
        data = validate(DelegateInvite, {"email": email} if isinstance(email, str) else email)
        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            if actor.club_id is None or not is_primary_delegate_of(actor, actor.club_id):
                raise ForbiddenError("Only the primary delegate can invite other delegates")
            club = await uow.get_active(Club, actor.club_id, "Club")

            existing = await self._user_by_email(uow, data.email)
            if existing is not None and existing.club_id is not None:
                if existing.club_id == club.id:
                    raise ConflictError("This person is already a delegate of your club")
                raise ConflictError("This person is already a delegate of another club")

            token = await self._tokens.invite(
                uow,
                TokenSubject.DELEGATE,
                club.id,
                data.email,
                self.delegate_invite_ttl,
                created_by_user_id=actor.id,
            )
            uow.emit(
                DelegateInvitationIssued(
                    occurred_at=uow.now,
                    actor_user_id=actor.id,
                    club_id=club.id,
                    club_name=club.club_name,
                    invite_email=token.invite_email,
                    token=token.value,
                    expires_at=token.expires_at,
                    inviter_name=actor.display_name,
                )
            )
            logger.info(f"User {actor.id} invited {data.email} to club {club.id}")
            return InvitationResponse(
                club_id=club.id,
                invite_email=token.invite_email,
                token=token.value,
                expires_at=token.expires_at,
            )

    async def accept_delegate_invitation(self, token_value: str, user_fields) -> UserResponse:
        """
        Accept a delegate invitation, creating the account if needed.

        An existing club-less user with the invited email is attached to the
        club. Otherwise a new user is created, which requires a password.

        Raises:
            NotFoundError: If the token is unknown or the club is gone
            GoneError: If the token is expired or already used
            ForbiddenError: If the email does not match the invitation
            ConflictError: If the user already belongs to a club
            InvalidError: If a new account is needed and no password was given
        """
        data = validate(InvitationAcceptance, user_fields)
        async with self._store.transaction() as uow:
            token = await self._tokens.load(uow, token_value, TokenSubject.DELEGATE)
            self._tokens.ensure_usable(token, uow.now)
            if not emails_match(token.invite_email, data.email):
                raise ForbiddenError("This invitation was sent to a different email address")
            club = await uow.get_active(Club, token.subject_id, "Club")

            user = await self._user_by_email(uow, data.email)
            if user is not None:
                if not user.is_active:
                    raise ForbiddenError("This account has been deactivated")
                if user.club_id is not None:
                    raise ConflictError("You are already a delegate of a club")
            else:
                if not data.password:
                    raise InvalidError("password: A password is required to create your account")
                user = User(
                    email=data.email,
                    display_name=data.display_name,
                    phone=data.phone,
                    password_hash=hash_password(data.password),
                    is_active=True,
                    is_admin=False,
                    is_primary_delegate=False,
                )
                await uow.add(user)

            user.club_id = club.id
            user.is_primary_delegate = False
            user.club_joined_at = uow.now
            await uow.flush()
            await self._tokens.consume(uow, token, user.id)

            uow.emit(
                DelegateJoined(
                    occurred_at=uow.now,
                    actor_user_id=user.id,
                    club_id=club.id,
                    user_id=user.id,
                    via_invitation=True,
                )
            )
            logger.info(f"User {user.id} accepted delegate invitation to club {club.id}")
            return UserResponse.model_validate(user)

    # --- membership ---

    async def join_club(self, actor_id: int, club_id: int) -> UserResponse:
        """
        Attach the actor to a club that has no active primary delegate.

        Raises:
            ForbiddenError: If the actor already has a club, or the club has a
                primary delegate (ask them for an invitation instead)
            NotFoundError: If the club is missing or inactive
        """
        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            if actor.club_id is not None:
                raise ForbiddenError("You are already a delegate of a club")
            club = await uow.get_active(Club, club_id, "Club")
            if await self._primary_of(uow, club.id) is not None:
                raise ForbiddenError(
                    "This club already has a primary delegate. Please ask them to invite you."
                )

            actor.club_id = club.id
            actor.is_primary_delegate = False
            actor.club_joined_at = uow.now
            await uow.flush()
            uow.emit(
                DelegateJoined(occurred_at=uow.now, actor_user_id=actor.id, club_id=club.id, user_id=actor.id)
            )
            logger.info(f"User {actor.id} joined club {club.id}")
            return UserResponse.model_validate(actor)

    async def leave_club(self, actor_id: int, request) -> LeaveClubResponse:
        """
        Detach the actor from their club.

        Regular delegates simply leave. A primary delegate must choose:

        * transfer: hand the primary role to another active delegate, then leave
        * deactivate: deactivate and unlist the club, then leave
        * available: promote the earliest-joined remaining delegate (if any),
          then leave; the club stays active either way

        Args:
            actor_id: Leaving user
            request: LeaveClubRequest (action, target_user_id, confirmed)

        Raises:
            InvalidError: If not confirmed, or a primary delegate gave no usable action
            ForbiddenError: If the actor has no club
            NotFoundError: If the transfer target is not a delegate of the club
        """
        data = validate(LeaveClubRequest, request)
        if not data.confirmed:
            raise InvalidError("Please confirm that you want to leave the club")

        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            if actor.club_id is None:
                raise ForbiddenError("You are not a delegate of any club")
            club = await uow.get(Club, actor.club_id)
            club_id = actor.club_id
            was_primary = actor.is_primary_delegate
            new_primary: Optional[User] = None
            deactivated = False

            if not was_primary:
                self._detach(actor)
            elif data.action is None:
                raise InvalidError("Primary delegates must choose what happens to the club")
            elif data.action == LeaveAction.TRANSFER:
                target = await uow.get(User, data.target_user_id)
                if target is None or not target.is_active or target.club_id != club_id or target.id == actor.id:
                    raise NotFoundError("The selected delegate is not an active member of your club")
                new_primary = target
                await self._hand_over_primary(uow, actor, target)
                self._detach(actor)
            elif data.action == LeaveAction.DEACTIVATE:
                if club is not None:
                    club.is_active = False
                    club.is_publicly_listed = False
                    deactivated = True
                    withdrawn = await uow.session.execute(
                        update(CarnivalClub)
                        .where(CarnivalClub.club_id == club.id, CarnivalClub.is_active.is_(True))
                        .values(is_active=False)
                    )
                    logger.info(f"Withdrew {withdrawn.rowcount} registration(s) of deactivated club {club.id}")
                self._detach(actor)
            else:
                others = await self._other_delegates(uow, club_id, actor.id)
                if others:
                    new_primary = others[0]
                    await self._hand_over_primary(uow, actor, new_primary)
                self._detach(actor)

            await uow.flush()

            uow.emit(
                DelegateLeft(
                    occurred_at=uow.now,
                    actor_user_id=actor.id,
                    club_id=club_id,
                    user_id=actor.id,
                    action=data.action.value if data.action else "leave",
                    new_primary_user_id=new_primary.id if new_primary else None,
                )
            )
            if new_primary is not None and club is not None:
                uow.emit(
                    PrimaryDelegateTransferred(
                        occurred_at=uow.now,
                        actor_user_id=actor.id,
                        club_id=club_id,
                        club_name=club.club_name,
                        previous_user_id=actor.id,
                        new_user_id=new_primary.id,
                        new_user_email=new_primary.email,
                        new_user_name=new_primary.display_name,
                    )
                )
            if deactivated:
                uow.emit(ClubDeactivated(occurred_at=uow.now, actor_user_id=actor.id, club_id=club_id))

            logger.info(
                f"User {actor.id} left club {club_id} "
                f"(action={data.action.value if data.action else 'leave'}, "
                f"new_primary={new_primary.id if new_primary else None}, deactivated={deactivated})"
            )
            return LeaveClubResponse(
                club_id=club_id,
                action=data.action if was_primary else None,
                new_primary_user_id=new_primary.id if new_primary else None,
                club_deactivated=deactivated,
            )

    async def transfer_primary_role(self, actor_id: int, target_user_id: int) -> UserResponse:
        """
        Hand the primary delegate role to another delegate without leaving.

        Returns:
            The new primary delegate

        Raises:
            ForbiddenError: If the actor is not a primary delegate
            NotFoundError: If the target is not an active delegate of the same club
        """
        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            if actor.club_id is None or not actor.is_primary_delegate:
                raise ForbiddenError("Only the primary delegate can transfer the role")
            target = await uow.get(User, target_user_id)
            if target is None or not target.is_active or target.club_id != actor.club_id or target.id == actor.id:
                raise NotFoundError("The selected delegate is not an active member of your club")
            club = await uow.get_active(Club, actor.club_id, "Club")

            await self._hand_over_primary(uow, actor, target)
            uow.emit(
                PrimaryDelegateTransferred(
                    occurred_at=uow.now,
                    actor_user_id=actor.id,
                    club_id=club.id,
                    club_name=club.club_name,
                    previous_user_id=actor.id,
                    new_user_id=target.id,
                    new_user_email=target.email,
                    new_user_name=target.display_name,
                )
            )
            logger.info(f"User {actor.id} transferred primary delegate of club {club.id} to user {target.id}")
            return UserResponse.model_validate(target)

    # --- alternate names ---

    async def _managed_club(self, uow: UnitOfWork, actor_id: int, club_id: int):
        actor = await uow.get_active(User, actor_id, "User")
        club = await uow.get_active(Club, club_id, "Club")
        if not can_manage_club(actor, club):
            raise ForbiddenError("Only the primary delegate can manage this club")
        return actor, club

    async def _ensure_alias_available(
        self, uow: UnitOfWork, club_id: int, alternate_name: str, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(ClubAlternateName.id).where(
            ClubAlternateName.club_id == club_id,
            ClubAlternateName.is_active.is_(True),
            func.lower(ClubAlternateName.alternate_name) == alternate_name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(ClubAlternateName.id != exclude_id)
        result = await uow.session.execute(stmt.limit(1))
        if result.scalar_one_or_none() is not None:
            raise ConflictError("This alternate name already exists for this club")

    async def add_alternate_name(self, actor_id: int, club_id: int, alternate_name) -> AlternateNameResponse:
        """
        Raises:
            InvalidError: If the name is not 2..100 characters after trimming
            ConflictError: If the club already has this alternate name
        """
        data = validate(
            AlternateNameInput,
            {"alternate_name": alternate_name} if isinstance(alternate_name, str) else alternate_name,
        )
        async with self._store.transaction() as uow:
            actor, club = await self._managed_club(uow, actor_id, club_id)
            await self._ensure_alias_available(uow, club.id, data.alternate_name)
            alias = await uow.add(
                ClubAlternateName(club_id=club.id, alternate_name=data.alternate_name, is_active=True)
            )
            logger.info(f"User {actor.id} added alternate name {alias.alternate_name!r} to club {club.id}")
            return AlternateNameResponse.model_validate(alias)

    async def update_alternate_name(
        self, actor_id: int, club_id: int, alternate_name_id: int, alternate_name
    ) -> AlternateNameResponse:
        data = validate(
            AlternateNameInput,
            {"alternate_name": alternate_name} if isinstance(alternate_name, str) else alternate_name,
        )
        async with self._store.transaction() as uow:
            actor, club = await self._managed_club(uow, actor_id, club_id)
            alias = await uow.get_active(ClubAlternateName, alternate_name_id, "Alternate name")
            if alias.club_id != club.id:
                raise NotFoundError("Alternate name not found")
            await self._ensure_alias_available(uow, club.id, data.alternate_name, exclude_id=alias.id)
            alias.alternate_name = data.alternate_name
            await uow.flush()
            logger.info(f"User {actor.id} renamed alternate name {alias.id} of club {club.id}")
            return AlternateNameResponse.model_validate(alias)

    async def remove_alternate_name(self, actor_id: int, club_id: int, alternate_name_id: int) -> None:
        async with self._store.transaction() as uow:
            actor, club = await self._managed_club(uow, actor_id, club_id)
            alias = await uow.get_active(ClubAlternateName, alternate_name_id, "Alternate name")
            if alias.club_id != club.id:
                raise NotFoundError("Alternate name not found")
            await uow.soft_delete(alias)
            logger.info(f"User {actor.id} removed alternate name {alias.id} from club {club.id}")
