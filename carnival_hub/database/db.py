"""
Database connection and management using SQLAlchemy async mode.

Production runs on PostgreSQL (asyncpg); tests and local tooling run on
SQLite (aiosqlite). Nothing here is created at import time: the hosting
process builds an engine from CoreSettings and hands the session factory to
the Store.
"""

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def is_sqlite_url(url: str) -> bool:
    return url.startswith("sqlite")


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create the async engine for a database URL.

    In-memory SQLite needs a single shared connection, otherwise every
    session would see its own empty database.
    """
    if is_sqlite_url(database_url):
        if ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite+aiosqlite:"):
            return create_async_engine(
                database_url,
                echo=echo,
                future=True,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        return create_async_engine(database_url, echo=echo, future=True)

    return create_async_engine(
        database_url,
        echo=echo,  # Log SQL queries in debug mode
        future=True,
        pool_pre_ping=True,  # Verify connections before using them
        pool_size=10,
        max_overflow=20,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the async session factory used by the Store."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_database(engine: AsyncEngine) -> None:
    """Initialize the database by creating all tables."""
    # Import models to register them with Base.metadata
    from carnival_hub.database import models  # noqa: F401

    async with engine.begin() as conn:
        # checkfirst=True means it won't error if tables already exist
        def create_tables(sync_conn):
            Base.metadata.create_all(bind=sync_conn, checkfirst=True)

        await conn.run_sync(create_tables)


async def drop_database(engine: AsyncEngine) -> None:
    """Drop every table. Only ever used against throw-away test databases."""
    from carnival_hub.database import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
