"""
Database module for vidsum.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, and schema initialization.
"""
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from vidsum.db.engine import async_session, engine, shutdown
from vidsum.db.models import Base, JobRecord

logger = logging.getLogger(__name__)


async def init_database(bind: AsyncEngine | None = None):
    """Initialize database schema on first run (idempotent)."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


__all__ = [
    "Base",
    "JobRecord",
    "engine",
    "async_session",
    "shutdown",
    "init_database",
]
