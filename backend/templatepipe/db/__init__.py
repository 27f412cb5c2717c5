"""
Database module for templatepipe.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, and schema initialization.
"""
import logging

from templatepipe.db.engine import async_session, engine, get_session, shutdown
from templatepipe.db.models import Base, MusicTrack, ModelImage, TemplateJob, TemplatePreset

logger = logging.getLogger(__name__)


async def init_database():
    """Initialize database schema on first run."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


__all__ = [
    "Base",
    "engine",
    "async_session",
    "get_session",
    "shutdown",
    "init_database",
    "MusicTrack",
    "ModelImage",
    "TemplateJob",
    "TemplatePreset",
]
