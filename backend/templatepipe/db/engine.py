"""
Database engine configuration for templatepipe.

Provides async SQLAlchemy engine with SQLite WAL mode
and session management.
"""
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from templatepipe.config import settings


def configure_sqlite_pragmas(dbapi_conn, connection_record):
    """
    Configure SQLite PRAGMA settings for concurrent job writers.

    - WAL mode: readers (status polling) do not block the runners
    - Foreign keys: Enable referential integrity
    - Busy timeout: Wait up to 5s for locks
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


# Create async engine
engine = create_async_engine(
    settings.storage.database_url,
    echo=False,
)

if engine.dialect.name == "sqlite":
    # Use engine.sync_engine for aiosqlite compatibility
    event.listens_for(engine.sync_engine, "connect")(configure_sqlite_pragmas)

# expire_on_commit=False keeps job attributes readable after commit
async_session = async_sessionmaker(
    engine,
    expire_on_commit=False,
    class_=AsyncSession,
)


async def get_session():
    """
    Dependency injection function for async sessions.

    Yields an async session and ensures proper cleanup.
    """
    async with async_session() as session:
        yield session


async def shutdown():
    """Dispose of engine and close all connections."""
    await engine.dispose()
