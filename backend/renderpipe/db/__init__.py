"""
Database module for renderpipe.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, and schema initialization.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from renderpipe.db.engine import (
    async_session,
    build_engine,
    build_session_factory,
    engine,
    shutdown,
)
from renderpipe.db.models import Base, Plan, PlanScene, Run

logger = logging.getLogger(__name__)


async def init_database(bind: Optional[AsyncEngine] = None):
    """Initialize database schema on first run (idempotent)."""
    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug("Database schema ready on %s", target.url)


__all__ = [
    "Base",
    "Plan",
    "PlanScene",
    "Run",
    "engine",
    "async_session",
    "build_engine",
    "build_session_factory",
    "shutdown",
    "init_database",
]
