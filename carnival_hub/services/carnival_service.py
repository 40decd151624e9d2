"""
Carnival service layer.

Manual carnival creation and editing, plus the public carnival queries.
Ownership transitions (claim, release, archive) live in ownership_service.
"""

import logging
from typing import List, Optional, Type

from sqlalchemy import or_, select

from carnival_hub.database.models import Carnival, User
from carnival_hub.database.store import Store, UnitOfWork
from carnival_hub.models.schemas import (
    CarnivalCreate,
    CarnivalFields,
    CarnivalFilters,
    CarnivalResponse,
    CarnivalUpdate,
)
from carnival_hub.services.errors import ForbiddenError, NotFoundError, validate
from carnival_hub.services.events import CarnivalCreated, CarnivalEvent, CarnivalUpdated
from carnival_hub.services.policy import can_create_carnival, can_edit_carnival
from carnival_hub.utils.constants import MIN_SEARCH_LENGTH, UNAVAILABLE_CONTACT
from carnival_hub.utils.search import LIKE_ESCAPE, contains_pattern
from carnival_hub.utils.datetime_utils import to_date

logger = logging.getLogger(__name__)

# Links hidden on archived carnivals
_HIDDEN_WHEN_INACTIVE = (
    "registration_link",
    "facebook_url",
    "instagram_url",
    "twitter_url",
    "website_url",
)


def carnival_event(
    event_cls: Type[CarnivalEvent],
    carnival: Carnival,
    uow: UnitOfWork,
    actor_user_id: Optional[int] = None,
    **extra,
) -> CarnivalEvent:
    """Build a carnival event from the row's current values."""
    return event_cls(
        occurred_at=uow.now,
        actor_user_id=actor_user_id,
        carnival_id=carnival.id,
        title=carnival.title,
        state=carnival.state,
        carnival_date=to_date(carnival.date),
        location_address=carnival.location_address,
        **extra,
    )


def carnival_values(data: CarnivalFields, only_set: bool) -> dict:
    """
    Column values from a validated carnival schema.

    Args:
        data: Validated CarnivalCreate/CarnivalUpdate
        only_set: Only include fields the caller actually supplied
    """
    values = data.model_dump(exclude_unset=only_set, exclude={"draw_files"})
    if values.get("state") is not None:
        values["state"] = values["state"].value
    if "draw_files" in data.model_fields_set or not only_set:
        values["draw_files"] = [f.model_dump(mode="json") for f in (data.draw_files or [])]
    if "promotional_images" in values and values["promotional_images"] is None:
        values["promotional_images"] = []
    return values


def obfuscate_email(email: Optional[str]) -> str:
    """
    Mask an email for public display, e.g. "organiser@example.com" -> "or***r@e***.com".
    """
    if not email or "@" not in email:
        return UNAVAILABLE_CONTACT
    local, domain = email.split("@", 1)
    if not domain:
        return UNAVAILABLE_CONTACT
    masked_local = f"{local[:2]}***{local[-1]}" if len(local) > 3 else "***"
    parts = domain.split(".")
    masked_domain = f"{parts[0][:1]}***.{parts[-1]}" if len(parts) > 1 else "***"
    return f"{masked_local}@{masked_domain}"


def obfuscate_phone(phone: Optional[str]) -> str:
    """Keep the first two and last two alphanumerics; short numbers are hidden entirely."""
    if not phone:
        return UNAVAILABLE_CONTACT
    alnum = "".join(ch for ch in phone if ch.isalnum())
    if len(alnum) < 6:
        return UNAVAILABLE_CONTACT
    return f"{alnum[:2]}***{alnum[-2:]}"


def public_display(carnival: Carnival) -> CarnivalResponse:
    """Carnival as the public sees it: archived carnivals hide contact details and links."""
    response = CarnivalResponse.model_validate(carnival)
    if carnival.is_active:
        return response
    hidden = {name: None for name in _HIDDEN_WHEN_INACTIVE}
    hidden["organiser_contact_email"] = obfuscate_email(carnival.organiser_contact_email)
    hidden["organiser_contact_phone"] = obfuscate_phone(carnival.organiser_contact_phone)
    return response.model_copy(update=hidden)


class CarnivalService:
    """Commands and queries on carnivals."""

    def __init__(self, store: Store):
        self._store = store

    async def create_carnival(self, actor_id: int, fields) -> CarnivalResponse:
        """
        Create a manually entered carnival owned by the actor.

        Organiser contact details default to the actor's own when not given.

        Args:
            actor_id: Acting user
            fields: CarnivalCreate or equivalent dict

        Returns:
            CarnivalResponse for the new carnival

        Raises:
            InvalidError: If the fields fail validation
            ForbiddenError: If the actor is not a delegate (or admin)
        """
        data = validate(CarnivalCreate, fields)
        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            if not can_create_carnival(actor):
                raise ForbiddenError("You must be a club delegate to create carnivals")

            values = carnival_values(data, only_set=False)
            if not values.get("organiser_contact_name"):
                values["organiser_contact_name"] = actor.display_name
            if not values.get("organiser_contact_email"):
                values["organiser_contact_email"] = actor.email
            if not values.get("organiser_contact_phone"):
                values["organiser_contact_phone"] = actor.phone

            carnival = Carnival(
                **values,
                created_by_user_id=actor.id,
                external_event_id=None,
                is_manually_entered=True,
                is_active=True,
            )
            await uow.add(carnival)
            uow.emit(carnival_event(CarnivalCreated, carnival, uow, actor.id))
            logger.info(f"User {actor.id} created carnival {carnival.id} ({carnival.title!r})")
            return CarnivalResponse.model_validate(carnival)

    async def update_carnival(self, actor_id: int, carnival_id: int, fields) -> CarnivalResponse:
        """
        Update an active carnival. Only supplied fields change.

        An update that changes nothing writes nothing and emits no event.

        Raises:
            NotFoundError: If the carnival is missing or archived
            ForbiddenError: If the actor is neither owner nor admin
        """
        data = validate(CarnivalUpdate, fields)
        async with self._store.transaction() as uow:
            actor = await uow.get_active(User, actor_id, "User")
            carnival = await uow.get_active(Carnival, carnival_id, "Carnival")
            if not can_edit_carnival(actor, carnival):
                raise ForbiddenError("You can only edit carnivals you own")

            values = carnival_values(data, only_set=True)
            for required in ("title", "date"):
                if required in values and values[required] is None:
                    values.pop(required)
            changed = []
            for name, value in values.items():
                if getattr(carnival, name) != value:
                    setattr(carnival, name, value)
                    changed.append(name)

            if changed:
                await uow.flush()
                uow.emit(
                    carnival_event(CarnivalUpdated, carnival, uow, actor.id, changed_fields=changed)
                )
                logger.info(f"User {actor.id} updated carnival {carnival.id}: {', '.join(changed)}")
            return CarnivalResponse.model_validate(carnival)

    async def list_carnivals(self, filters=None) -> List[CarnivalResponse]:
        """
        Active carnivals, soonest first.

        Args:
            filters: CarnivalFilters or dict with state/upcoming/external_only/text
        """
        criteria = validate(CarnivalFilters, filters)
        stmt = select(Carnival).where(Carnival.is_active.is_(True))
        if criteria.state is not None:
            stmt = stmt.where(Carnival.state == criteria.state.value)
        if criteria.upcoming:
            today = to_date(self._store.clock.now())
            stmt = stmt.where(Carnival.date >= today)
        if criteria.external_only:
            stmt = stmt.where(Carnival.external_event_id.is_not(None))
        if criteria.text and len(criteria.text) >= MIN_SEARCH_LENGTH:
            pattern = contains_pattern(criteria.text)
            stmt = stmt.where(
                or_(
                    Carnival.title.ilike(pattern, escape=LIKE_ESCAPE),
                    Carnival.location_address.ilike(pattern, escape=LIKE_ESCAPE),
                )
            )
        stmt = stmt.order_by(Carnival.date.asc().nulls_last(), Carnival.id.asc())

        async with self._store.session() as session:
            result = await session.execute(stmt)
            return [CarnivalResponse.model_validate(c) for c in result.scalars().all()]

    async def get_carnival(self, carnival_id: int, viewer_id: Optional[int] = None) -> CarnivalResponse:
        """
        Resolve a carnival for display, including archived ones.

        Viewers who can edit the carnival see it unmasked; everyone else gets
        the public view.

        Raises:
            NotFoundError: If no carnival has this id
        """
        async with self._store.session() as session:
            carnival = await session.get(Carnival, carnival_id)
            if carnival is None:
                raise NotFoundError("Carnival not found")
            viewer = await session.get(User, viewer_id) if viewer_id is not None else None
            if viewer is not None and can_edit_carnival(viewer, carnival):
                return CarnivalResponse.model_validate(carnival)
            return public_display(carnival)
