"""
Database connection management.
Handles async SQLAlchemy engine and session factory creation.
"""

import logging

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from jobqueue.config import Settings

logger = logging.getLogger(__name__)


def create_engine(settings: Settings, database_url: str | None = None) -> AsyncEngine:
    """
    Create the async database engine.

    SQLite (aiosqlite) gets a generous busy timeout instead of pool sizing,
    since concurrent writers wait on the database file lock.

    Args:
        settings: Application settings.
        database_url: Overrides ``settings.database_url``.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    url = make_url(database_url or settings.database_url)

    if url.get_backend_name() == "sqlite":
        engine = create_async_engine(
            url,
            connect_args={"timeout": 30},
            echo=settings.log_level == "DEBUG",
        )
    else:
        engine = create_async_engine(
            url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            echo=settings.log_level == "DEBUG",
            pool_pre_ping=True,
        )

    logger.info(
        "Database engine created",
        extra={"backend": url.get_backend_name(), "database": url.database},
    )
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create the session factory bound to ``engine``.

    Args:
        engine: The async engine.

    Returns:
        The session factory used by the SQL job store.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
