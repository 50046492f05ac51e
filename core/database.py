"""
Database Management and Configuration.

This module sets up the asynchronous database connection backing the
credential store and the social graph. It uses SQLAlchemy's asyncio support
with SQLModel table metadata.

Key Components:
- `engine` / `async_session`: built lazily from `DATABASE_URL` by
  `init_engine()`. SQLite (`aiosqlite`) is used for development and tests,
  PostgreSQL (`asyncpg`) in production.
- `create_db_and_tables`: startup hook creating all tables.
- `get_session_factory`: `async_sessionmaker` every service opens its own
  sessions from.
- `get_database_info`: health probe used by the monitoring router.
"""

from typing import Optional
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from core.logging_config import get_logger
from core.settings import get_settings

# Registers table metadata
import core.models  # noqa: F401

logger = get_logger(__name__)

engine: Optional[AsyncEngine] = None
async_session: Optional[async_sessionmaker] = None


def _build_engine(database_url: str) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}, "echo": False}
        if ":memory:" in database_url or database_url.endswith("://"):
            # One shared connection so every session sees the same in-memory db
            kwargs["poolclass"] = StaticPool
        new_engine = create_async_engine(database_url, **kwargs)

        @event.listens_for(new_engine.sync_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return new_engine

    # PostgreSQL configuration with asyncpg
    return create_async_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Validate connections before use
        echo=False,
    )


def init_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create the global engine and session factory"""
    global engine, async_session
    url = database_url or get_settings().database_url
    engine = _build_engine(url)
    async_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    logger.info(f"Database engine initialized ({_database_type(url)})")
    return engine


def get_engine() -> AsyncEngine:
    if engine is None:
        init_engine()
    return engine


def get_session_factory() -> async_sessionmaker:
    if async_session is None:
        init_engine()
    return async_session


async def create_db_and_tables():
    """
    Initialize the database and create all tables.
    Called during application startup.
    """
    try:
        async with get_engine().begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("Music Share database tables created successfully")
    except Exception as e:
        logger.error(f"Failed to create database tables: {e}")
        raise


async def dispose_engine():
    """Close pooled connections on shutdown"""
    global engine, async_session
    if engine is not None:
        await engine.dispose()
    engine = None
    async_session = None


def _database_type(url: str) -> str:
    return "postgresql" if "postgresql" in url else "sqlite"


async def get_database_info():
    """
    Get basic database information for health checks.
    """
    url = get_settings().database_url
    try:
        async with get_session_factory()() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            connection_healthy = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        connection_healthy = False

    return {
        "database_url": url.split("@")[1] if "@" in url else "masked",
        "connection_healthy": connection_healthy,
        "database_type": _database_type(url),
    }
