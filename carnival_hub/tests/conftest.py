"""
Shared pytest configuration for the carnival core tests.

Each test gets a fresh database. The default is an in-memory SQLite database
(aiosqlite); set TEST_DATABASE_URL to run against PostgreSQL instead.

SAFETY: a non-SQLite URL is REFUSED unless its database name contains the
substring "test", because tables are dropped after every test.
"""

import os
from datetime import date, datetime

import pytest
import pytest_asyncio
import pytz
from sqlalchemy import select

from carnival_hub.config import CoreSettings
from carnival_hub.container import CarnivalHub
from carnival_hub.database.db import create_engine, drop_database, init_database, is_sqlite_url
from carnival_hub.database.models import Carnival, CarnivalClub, Club, User
from carnival_hub.services.email_service import RecordingMailSender
from carnival_hub.utils.datetime_utils import FixedClock


def _resolve_test_database_url() -> str:
    """Build the test database URL with safety checks.

    Raises ``RuntimeError`` if a server database name does not contain "test".
    """
    url = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    if is_sqlite_url(url):
        return url

    # ── Safety gate: database name MUST contain "test" ──────────────────
    db_name = url.rsplit("/", 1)[-1].split("?")[0]  # strip query params
    if "test" not in db_name.lower():
        raise RuntimeError(
            f"\n{'=' * 70}\n"
            f"  SAFETY: Refusing to run tests against database '{db_name}'.\n"
            f"  The database name must contain 'test' to prevent accidental\n"
            f"  data loss in development or production databases.\n\n"
            f"  Resolved URL: {url}\n"
            f"{'=' * 70}"
        )
    return url


# Validated at import time so pytest fails immediately with a clear message
TEST_DATABASE_URL = _resolve_test_database_url()

START_TIME = datetime(2025, 3, 1, 9, 0, tzinfo=pytz.UTC)


@pytest_asyncio.fixture
async def engine():
    """Fresh schema per test."""
    engine = create_engine(TEST_DATABASE_URL)
    if not is_sqlite_url(TEST_DATABASE_URL):
        await drop_database(engine)
    await init_database(engine)
    yield engine
    if not is_sqlite_url(TEST_DATABASE_URL):
        await drop_database(engine)
    await engine.dispose()


@pytest.fixture
def clock():
    return FixedClock(START_TIME)


@pytest.fixture
def settings():
    return CoreSettings(
        database_url=TEST_DATABASE_URL,
        enable_email=False,
        mysideline_sync_enabled=True,
        site_base_url="https://carnivals.test",
    )


@pytest.fixture
def mail_sender():
    return RecordingMailSender()


@pytest_asyncio.fixture
async def hub(engine, settings, clock, mail_sender):
    """All services wired to the test database, recording outgoing mail."""
    return CarnivalHub(engine, settings, clock=clock, mail_sender=mail_sender)


@pytest.fixture
def store(hub):
    return hub.store


# ============================================================================
# Builders
# ============================================================================


@pytest.fixture
def fetch(store):
    """Load a row by id in its own session."""

    async def _fetch(model, entity_id):
        async with store.session() as session:
            return await session.get(model, entity_id)

    return _fetch


@pytest.fixture
def make_user(store):
    """Insert a user directly and return its id."""

    async def _make(
        email,
        display_name=None,
        club_id=None,
        is_primary_delegate=False,
        is_admin=False,
        phone=None,
        club_joined_at=None,
        is_active=True,
    ):
        async with store.transaction() as uow:
            user = User(
                email=email.lower(),
                display_name=display_name or email.split("@")[0].title(),
                phone=phone,
                club_id=club_id,
                club_joined_at=club_joined_at or (uow.now if club_id else None),
                is_primary_delegate=is_primary_delegate,
                is_admin=is_admin,
                is_active=is_active,
            )
            await uow.add(user)
            return user.id

    return _make


@pytest.fixture
def make_club(store):
    """Insert a club directly and return its id."""

    async def _make(club_name, state="NSW", **overrides):
        values = dict(
            club_name=club_name,
            state=state,
            is_active=True,
            is_publicly_listed=True,
            created_by_proxy=False,
        )
        values.update(overrides)
        async with store.transaction() as uow:
            club = Club(**values)
            await uow.add(club)
            return club.id

    return _make


@pytest.fixture
def make_carnival(store):
    """Insert a carnival directly. Pass external_event_id for an imported one."""

    async def _make(title, owner_id=None, external_event_id=None, state="NSW", **overrides):
        values = dict(
            title=title,
            date=date(2025, 6, 14),
            state=state,
            location_address="Leichhardt Oval, Sydney",
            organiser_contact_email="organiser@example.com",
            created_by_user_id=owner_id,
            external_event_id=external_event_id,
            is_manually_entered=external_event_id is None,
            promotional_images=[],
            draw_files=[],
            is_active=True,
        )
        values.update(overrides)
        async with store.transaction() as uow:
            carnival = Carnival(**values)
            await uow.add(carnival)
            return carnival.id

    return _make


@pytest.fixture
def make_delegate(make_club, make_user):
    """Create a club with a primary delegate. Returns (club_id, user_id)."""

    async def _make(club_name, email, state="NSW", **user_fields):
        club_id = await make_club(club_name, state=state)
        user_id = await make_user(email, club_id=club_id, is_primary_delegate=True, **user_fields)
        return club_id, user_id

    return _make


@pytest.fixture
def active_registrations(store):
    """Active CarnivalClub rows of a carnival in display order."""

    async def _list(carnival_id):
        async with store.session() as session:
            result = await session.execute(
                select(CarnivalClub)
                .where(CarnivalClub.carnival_id == carnival_id, CarnivalClub.is_active.is_(True))
                .order_by(CarnivalClub.display_order, CarnivalClub.id)
            )
            return list(result.scalars().all())

    return _list
