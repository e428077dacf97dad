"""Database engine and session lifecycle."""

import os
import logging
from typing import Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine as sa_create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import NullPool, StaticPool

from . import models

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./payouts.db"

# Plain URL schemes mapped to the async driver used for them
_ASYNC_SCHEMES = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def get_database_url() -> str:
    """
    Read DATABASE_URL, rewriting plain postgres and sqlite URLs to async drivers.

    Falls back to a SQLite file in the working directory.
    """
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        return DEFAULT_DATABASE_URL
    scheme, sep, rest = db_url.partition("://")
    return f"{_ASYNC_SCHEMES.get(scheme, scheme)}{sep}{rest}"


def _is_memory_sqlite(url: str) -> bool:
    return make_url(url).database in (None, "", ":memory:")


def create_async_engine(
    database_url: Optional[str] = None,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> AsyncEngine:
    """
    Create an async SQLAlchemy engine.

    In-memory SQLite shares a single connection so its data outlives each
    session. File SQLite opens a connection per session, so concurrent
    reconciliations never share a transaction.
    """
    url = database_url or get_database_url()

    if not url.startswith("sqlite"):
        return sa_create_async_engine(
            url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
        )

    return sa_create_async_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool if _is_memory_sqlite(url) else NullPool,
    )


class DatabaseManager:
    """
    Owns one engine and its session factory.

    The API goes through the process-wide manager behind init_db(); the CLI
    and scripts create their own.

    Example:
        db_manager = DatabaseManager()
        await db_manager.initialize()
        service = ReconciliationService(db_manager.session_factory, processor)
        await db_manager.shutdown()
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
    ):
        self.database_url = database_url
        self.echo = echo
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    async def initialize(self, create_tables: bool = True) -> None:
        self._engine = create_async_engine(
            self.database_url,
            echo=self.echo,
            pool_size=self.pool_size,
            max_overflow=self.max_overflow,
        )
        self._session_factory = get_async_session_factory(self._engine)

        if create_tables:
            async with self._engine.begin() as conn:
                await conn.run_sync(models.Base.metadata.create_all)
            logger.info("Database tables created")

    async def shutdown(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError(
                "DatabaseManager not initialized. Call initialize() first."
            )
        return self._session_factory


# Process-wide manager used by the FastAPI app
_manager: Optional[DatabaseManager] = None


def get_async_session_factory(
    engine: Optional[AsyncEngine] = None,
) -> async_sessionmaker[AsyncSession]:
    """
    Return a session factory bound to ``engine``, or the one set up by init_db().

    Raises:
        RuntimeError: If no engine is given and init_db() has not run.
    """
    if engine is not None:
        return async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    if _manager is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _manager.session_factory


async def init_db(
    database_url: Optional[str] = None,
    echo: bool = False,
    create_tables: bool = True,
) -> None:
    """Set up the process-wide database, creating tables unless told not to."""
    global _manager

    logger.info("Initializing database connection...")
    manager = DatabaseManager(database_url, echo=echo)
    await manager.initialize(create_tables=create_tables)
    _manager = manager
    logger.info("Database initialized successfully.")


async def close_db() -> None:
    global _manager

    if _manager is not None:
        await _manager.shutdown()
        _manager = None
        logger.info("Database connection closed.")
