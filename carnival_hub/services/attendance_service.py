"""
Attendance service layer.

A CarnivalClub row records that a club intends to attend a carnival. The
carnival's organiser can register any active club, edit registrations,
confirm payment, reorder and remove them; a delegate can register or
unregister their own club.

New registrations append after the current highest display_order. Removal
leaves gaps until the organiser reorders, so reads order by
(display_order, registration_date, id).
"""

import logging
from typing import List, Optional, Sequence

from sqlalchemy import func, select

from carnival_hub.database.models import Carnival, CarnivalClub, Club, User
from carnival_hub.database.store import Store, UnitOfWork
from carnival_hub.models.schemas import (
    RegistrationFields,
    RegistrationResponse,
    RegistrationUpdate,
)
from carnival_hub.services.errors import (
    ConflictError,
    ForbiddenError,
    InvalidError,
    NotFoundError,
    validate,
)
from carnival_hub.services.events import (
    AttendanceAdded,
    AttendanceRemoved,
    AttendanceReordered,
    AttendanceUpdated,
)
from carnival_hub.services.policy import can_edit_carnival
from carnival_hub.utils.constants import MAX_CONTACT_PHONE_LENGTH

logger = logging.getLogger(__name__)

ALREADY_REGISTERED = "This club is already registered for this carnival"
PAID_UNREGISTER_MESSAGE = (
    "Cannot unregister from a carnival after payment has been made. Please contact the organiser."
)


def _active_registrations(carnival_id: int):
    """Active registrations of active clubs, with the club name. Listing and reordering share this set."""
    return (
        select(CarnivalClub, Club.club_name)
        .join(Club, Club.id == CarnivalClub.club_id)
        .where(
            CarnivalClub.carnival_id == carnival_id,
            CarnivalClub.is_active.is_(True),
            Club.is_active.is_(True),
        )
    )


def _registration_response(registration: CarnivalClub, club_name: Optional[str] = None) -> RegistrationResponse:
    response = RegistrationResponse.model_validate(registration)
    if club_name is not None:
        response = response.model_copy(update={"club_name": club_name})
    return response


class AttendanceService:
    """Club-to-carnival registrations."""

    def __init__(self, store: Store):
        self._store = store

    # --- helpers ---

    async def _next_display_order(self, uow: UnitOfWork, carnival_id: int) -> int:
        result = await uow.session.execute(
            select(func.max(CarnivalClub.display_order)).where(
                CarnivalClub.carnival_id == carnival_id,
                CarnivalClub.is_active.is_(True),
            )
        )
        return (result.scalar() or 0) + 1

    async def _ensure_not_registered(self, uow: UnitOfWork, carnival_id: int, club_id: int) -> None:
        existing = await uow.find_active(CarnivalClub, carnival_id=carnival_id, club_id=club_id)
        if existing is not None:
            raise ConflictError(ALREADY_REGISTERED)

    async def _load_for_organiser(self, uow: UnitOfWork, actor_id: int, registration_id: int):
        """Load actor, active registration and its active carnival; check the actor organises it."""
        actor = await uow.get_active(User, actor_id, "User")
        registration = await uow.get_active(CarnivalClub, registration_id, "Registration")
        carnival = await uow.get_active(Carnival, registration.carnival_id, "Carnival")
        if not can_edit_carnival(actor, carnival):
            raise ForbiddenError("Only the carnival organiser can manage its registrations")
        return actor, registration, carnival

    async def _insert(
        self,
        uow: UnitOfWork,
        carnival: Carnival,
        club: Club,
        values: dict,
        is_paid: bool,
    ) -> CarnivalClub:
        await self._ensure_not_registered(uow, carnival.id, club.id)
        registration = CarnivalClub(
            carnival_id=carnival.id,
            club_id=club.id,
            is_paid=is_paid,
            payment_date=uow.now if is_paid else None,
            display_order=await self._next_display_order(uow, carnival.id),
            registration_date=uow.now,
            is_active=True,
            **values,
        )
        return await uow.add(registration)

    # --- commands ---

    async def register_organiser_side(
        self, actor_id: int, carnival_id: int, club_id: int, fields=None
    ) -> RegistrationResponse:
        """
        Organiser registers a club for their carnival.

        Args:
            actor_id: Carnival owner (or admin)
            carnival_id: Active carnival
            club_id: Active club to register
            fields: RegistrationFields or dict; is_paid=True stamps payment_date

        Raises:
            InvalidError: If fields fail validation
            NotFoundError: If carnival or club is missing or inactive
            ForbiddenError: If the actor does not organise the carnival
            ConflictError: If the club is already registered
        """
        data = validate(RegistrationFields, fields)
        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            carnival = await uow.get_active(Carnival, carnival_id, "Carnival")
            if not can_edit_carnival(actor, carnival):
                raise ForbiddenError("Only the carnival organiser can register clubs")
            club = await uow.get_active(Club, club_id, "Club")

            values = data.model_dump(exclude={"is_paid"})
            registration = await self._insert(uow, carnival, club, values, bool(data.is_paid))
            uow.emit(
                AttendanceAdded(
                    occurred_at=uow.now,
                    actor_user_id=actor.id,
                    registration_id=registration.id,
                    carnival_id=carnival.id,
                    club_id=club.id,
                )
            )
            logger.info(
                f"User {actor.id} registered club {club.id} for carnival {carnival.id} "
                f"(registration {registration.id}, order {registration.display_order})"
            )
            return _registration_response(registration, club.club_name)

    async def register_self_service(self, actor_id: int, carnival_id: int, fields=None) -> RegistrationResponse:
        """
        Delegate registers their own club. Always unpaid; the organiser confirms payment.

        Contact person and email default to the delegate's own details.

        Raises:
            ForbiddenError: If the actor has no club
            NotFoundError: If the carnival or the actor's club is inactive
            ConflictError: If the club is already registered
        """
        data = validate(RegistrationFields, fields)
        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            if actor.club_id is None:
                raise ForbiddenError("You must be associated with a club to register for carnivals")
            carnival = await uow.get_active(Carnival, carnival_id, "Carnival")
            club = await uow.get_active(Club, actor.club_id, "Club")

            values = data.model_dump(exclude={"is_paid"})
            if not values.get("contact_person"):
                values["contact_person"] = actor.display_name
            if not values.get("contact_email"):
                values["contact_email"] = actor.email
            if not values.get("contact_phone") and actor.phone:
                if len(actor.phone) <= MAX_CONTACT_PHONE_LENGTH:
                    values["contact_phone"] = actor.phone
            if not values.get("registration_notes"):
                values["registration_notes"] = f"Self-registered by {actor.display_name} ({actor.email})"

            registration = await self._insert(uow, carnival, club, values, is_paid=False)
            uow.emit(
                AttendanceAdded(
                    occurred_at=uow.now,
                    actor_user_id=actor.id,
                    registration_id=registration.id,
                    carnival_id=carnival.id,
                    club_id=club.id,
                    self_service=True,
                )
            )
            logger.info(f"User {actor.id} self-registered club {club.id} for carnival {carnival.id}")
            return _registration_response(registration, club.club_name)

    async def update_registration(self, actor_id: int, registration_id: int, fields) -> RegistrationResponse:
        """
        Organiser edits a registration. Only supplied fields change.

        Toggling is_paid on stamps payment_date with "now"; toggling it off
        clears payment_date.

        Raises:
            NotFoundError: If the registration or its carnival is inactive
            ForbiddenError: If the actor does not organise the carnival
        """
        data = validate(RegistrationUpdate, fields)
        async with self._store.transaction() as uow:
            actor, registration, carnival = await self._load_for_organiser(uow, actor_id, registration_id)

            values = data.model_dump(exclude_unset=True, exclude={"is_paid"})
            changed = []
            for name, value in values.items():
                if getattr(registration, name) != value:
                    setattr(registration, name, value)
                    changed.append(name)

            if data.is_paid is not None and data.is_paid != registration.is_paid:
                registration.is_paid = data.is_paid
                registration.payment_date = uow.now if data.is_paid else None
                changed.extend(["is_paid", "payment_date"])

            if changed:
                await uow.flush()
                uow.emit(
                    AttendanceUpdated(
                        occurred_at=uow.now,
                        actor_user_id=actor.id,
                        registration_id=registration.id,
                        carnival_id=carnival.id,
                        club_id=registration.club_id,
                        changed_fields=changed,
                    )
                )
                logger.info(f"User {actor.id} updated registration {registration.id}: {', '.join(changed)}")
            return _registration_response(registration)

    async def set_payment_status(self, actor_id: int, registration_id: int, is_paid: bool) -> RegistrationResponse:
        """Shortcut for toggling payment on a registration."""
        return await self.update_registration(actor_id, registration_id, {"is_paid": is_paid})

    async def remove_organiser_side(self, actor_id: int, registration_id: int) -> None:
        """
        Organiser removes a registration (soft delete). Survivors keep their display_order.

        Raises:
            NotFoundError: If the registration is already removed
            ForbiddenError: If the actor does not organise the carnival
        """
        async with self._store.transaction() as uow:
            actor, registration, carnival = await self._load_for_organiser(uow, actor_id, registration_id)
            await uow.soft_delete(registration)
            uow.emit(
                AttendanceRemoved(
                    occurred_at=uow.now,
                    actor_user_id=actor.id,
                    registration_id=registration.id,
                    carnival_id=carnival.id,
                    club_id=registration.club_id,
                )
            )
            logger.info(f"User {actor.id} removed registration {registration.id} from carnival {carnival.id}")

    async def unregister_self_service(self, actor_id: int, carnival_id: int) -> None:
        """
        Delegate withdraws their own club. Paid registrations cannot be withdrawn.

        Raises:
            ForbiddenError: If the actor has no club or the registration is paid
            NotFoundError: If the carnival is inactive or the club is not registered
        """
        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            if actor.club_id is None:
                raise ForbiddenError("You must be associated with a club to manage registrations")
            carnival = await uow.get_active(Carnival, carnival_id, "Carnival")
            registration = await uow.find_active(
                CarnivalClub, carnival_id=carnival.id, club_id=actor.club_id
            )
            if registration is None:
                raise NotFoundError("Your club is not registered for this carnival")
            if registration.is_paid:
                raise ForbiddenError(PAID_UNREGISTER_MESSAGE)

            await uow.soft_delete(registration)
            uow.emit(
                AttendanceRemoved(
                    occurred_at=uow.now,
                    actor_user_id=actor.id,
                    registration_id=registration.id,
                    carnival_id=carnival.id,
                    club_id=registration.club_id,
                    self_service=True,
                )
            )
            logger.info(f"User {actor.id} unregistered club {actor.club_id} from carnival {carnival.id}")

    async def reorder(self, actor_id: int, carnival_id: int, ordered_registration_ids: Sequence[int]) -> List[RegistrationResponse]:
        """
        Rewrite display_order for every active registration of a carnival.

        Args:
            actor_id: Carnival owner (or admin)
            carnival_id: Active carnival
            ordered_registration_ids: Every active registration id exactly once,
                in the new order

        Returns:
            The registrations in their new order

        Raises:
            InvalidError: If the ids are not a permutation of the listed registrations
        """
        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            carnival = await uow.get_active(Carnival, carnival_id, "Carnival")
            if not can_edit_carnival(actor, carnival):
                raise ForbiddenError("Only the carnival organiser can reorder registrations")

            result = await uow.session.execute(_active_registrations(carnival.id))
            rows = result.all()
            by_id = {registration.id: registration for registration, _ in rows}
            club_names = {registration.id: club_name for registration, club_name in rows}
            ordered = list(ordered_registration_ids)
            if len(ordered) != len(by_id) or set(ordered) != set(by_id):
                raise InvalidError(
                    "Order must list every active registration for this carnival exactly once"
                )

            for index, registration_id in enumerate(ordered):
                by_id[registration_id].display_order = index + 1
            await uow.flush()
            uow.emit(
                AttendanceReordered(
                    occurred_at=uow.now,
                    actor_user_id=actor.id,
                    carnival_id=carnival.id,
                    registration_ids=ordered,
                )
            )
            logger.info(f"User {actor.id} reordered {len(ordered)} registration(s) for carnival {carnival.id}")
            return [
                _registration_response(by_id[registration_id], club_names[registration_id])
                for registration_id in ordered
            ]

    # --- queries ---

    async def list_attendances(self, carnival_id: int) -> List[RegistrationResponse]:
        """
        Active registrations of active clubs, in display order.

        Raises:
            NotFoundError: If the carnival is missing or archived
        """
        async with self._store.session() as session:
            carnival = await session.get(Carnival, carnival_id)
            if carnival is None or not carnival.is_active:
                raise NotFoundError("Carnival not found")
            result = await session.execute(
                _active_registrations(carnival_id).order_by(
                    CarnivalClub.display_order.asc(),
                    CarnivalClub.registration_date.asc(),
                    CarnivalClub.id.asc(),
                )
            )
            return [_registration_response(registration, club_name) for registration, club_name in result.all()]

    async def get_registration(self, registration_id: int) -> RegistrationResponse:
        async with self._store.session() as session:
            registration = await session.get(CarnivalClub, registration_id)
            if registration is None or not registration.is_active:
                raise NotFoundError("Registration not found")
            return _registration_response(registration)
