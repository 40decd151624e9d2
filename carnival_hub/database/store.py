"""
Transactional store for the carnival core.

Every command runs inside exactly one ``Store.transaction()``. The unit of
work it yields carries the session, the command's "now" and the list of
domain events raised while the command ran. Events are handed to the
registered listeners only after the commit succeeded; a rolled back
transaction (including one cancelled mid-flight) publishes nothing.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Sequence, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from carnival_hub.services.errors import ConflictError, InternalError, NotFoundError, ServiceError
from carnival_hub.utils.datetime_utils import Clock, SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")

EventListener = Callable[[Sequence[Any]], Awaitable[None]]

# Friendly messages for the partial unique indexes / unique columns
_CONFLICT_MESSAGES = {
    "uq_clubs_active_name": "A club with this name already exists",
    "uq_carnivals_active_external_event_id": "A carnival with this external event id already exists",
    "uq_carnival_clubs_active_pair": "This club is already registered for this carnival",
    "uq_club_alternate_names_active": "This alternate name already exists for this club",
    "uq_users_primary_delegate_per_club": "This club already has a primary delegate",
    "users.email": "A user with this email already exists",
    "email_subscriptions.email": "This email is already subscribed",
}


def conflict_message(exc: IntegrityError) -> str:
    """Map a unique-constraint violation to an advisory message."""
    text = str(exc.orig) if exc.orig is not None else str(exc)
    for marker, message in _CONFLICT_MESSAGES.items():
        if marker in text:
            return message
    # SQLite reports columns instead of index names
    if "carnival_clubs.carnival_id, carnival_clubs.club_id" in text:
        return _CONFLICT_MESSAGES["uq_carnival_clubs_active_pair"]
    if "clubs.club_name" in text:
        return _CONFLICT_MESSAGES["uq_clubs_active_name"]
    if "carnivals.external_event_id" in text:
        return _CONFLICT_MESSAGES["uq_carnivals_active_external_event_id"]
    if "club_alternate_names.club_id" in text:
        return _CONFLICT_MESSAGES["uq_club_alternate_names_active"]
    if "users.club_id" in text:
        return _CONFLICT_MESSAGES["uq_users_primary_delegate_per_club"]
    return "The change conflicts with existing data"


class UnitOfWork:
    """Handle on one open transaction."""

    def __init__(self, session: AsyncSession, now: datetime):
        self.session = session
        self.now = now
        self.events: List[Any] = []

    def emit(self, event: Any) -> None:
        """Queue a domain event for publication after commit."""
        self.events.append(event)

    async def get(self, model: Type[T], entity_id: Optional[int]) -> Optional[T]:
        if entity_id is None:
            return None
        return await self.session.get(model, entity_id)

    async def get_active(self, model: Type[T], entity_id: Optional[int], label: Optional[str] = None) -> T:
        """
        Load an entity by id, treating soft-deleted rows as missing.

        Raises:
            NotFoundError: If no row exists or the row is inactive
        """
        entity = await self.get(model, entity_id)
        if entity is None or not getattr(entity, "is_active", True):
            raise NotFoundError(f"{label or model.__name__} not found")
        return entity

    async def find_active(self, model: Type[T], **filters) -> Optional[T]:
        """First active row whose columns equal the given values."""
        stmt = select(model).where(model.is_active.is_(True))
        for column, value in filters.items():
            stmt = stmt.where(getattr(model, column) == value)
        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def list(self, stmt) -> List[Any]:
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def add(self, entity: T) -> T:
        """Insert an entity and flush so its id is assigned."""
        self.session.add(entity)
        await self.session.flush()
        return entity

    async def flush(self) -> None:
        await self.session.flush()

    async def soft_delete(self, entity: Any) -> None:
        entity.is_active = False
        await self.session.flush()


class Store:
    """
    Owns the session factory and publishes committed events.

    Args:
        session_factory: async_sessionmaker bound to the engine
        clock: Source of "now" stamped on each unit of work
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: Optional[Clock] = None):
        self._session_factory = session_factory
        self.clock = clock or SystemClock()
        self._listeners: List[EventListener] = []

    def add_listener(self, listener: EventListener) -> None:
        """Register an async callable receiving each committed batch of events."""
        self._listeners.append(listener)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Read-only session for queries. Nothing is committed."""
        async with self._session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as exc:
                logger.error(f"Query failed: {exc}", exc_info=True)
                raise InternalError("Database error while reading") from exc

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[UnitOfWork]:
        """
        Run a command inside one database transaction.

        Commits when the block exits normally. Any exception, including
        asyncio.CancelledError, rolls the transaction back and drops the
        queued events.

        Raises:
            ConflictError: If a unique or check constraint rejected the change
            InternalError: If the database failed in any other way
        """
        uow: Optional[UnitOfWork] = None
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    uow = UnitOfWork(session, self.clock.now())
                    yield uow
        except ServiceError:
            raise
        except IntegrityError as exc:
            message = conflict_message(exc)
            logger.info(f"Transaction rolled back on constraint violation: {message}")
            raise ConflictError(message) from exc
        except SQLAlchemyError as exc:
            logger.error(f"Transaction failed: {exc}", exc_info=True)
            raise InternalError("Database error") from exc

        if uow is not None and uow.events:
            await self.publish(uow.events)

    async def publish(self, events: Sequence[Any]) -> None:
        """Hand committed events to listeners. Listener failures are logged and swallowed."""
        for listener in self._listeners:
            try:
                await listener(list(events))
            except Exception:
                logger.warning(
                    f"Event listener failed for {len(events)} event(s)", exc_info=True
                )
