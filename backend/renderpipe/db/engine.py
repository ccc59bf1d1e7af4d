"""
Database engine configuration for renderpipe.

The run row is the only durable record of where a render stands, so the
SQLite connection is tuned for durability: a committed checkpoint entry
must survive a power cut as well as a process crash.
"""
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from renderpipe.config import settings


def configure_sqlite_pragmas(dbapi_conn, connection_record):
    """
    Apply per-connection SQLite settings.

    - journal_mode=WAL: API readers never block the executing run's writes
    - synchronous=FULL: fsync on every commit
    - foreign_keys=ON: runs cannot point at a missing plan
    - busy_timeout=5000: the CLI and API may share one database file
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def build_engine(database_url: str) -> AsyncEngine:
    """Create an async engine; SQLite URLs get the PRAGMA hook."""
    new_engine = create_async_engine(database_url, echo=False)
    if new_engine.dialect.name == "sqlite":
        # aiosqlite: the listener must be attached to the sync engine
        event.listens_for(new_engine.sync_engine, "connect")(configure_sqlite_pragmas)
    return new_engine


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: Run rows are read after commit outside the session
    return async_sessionmaker(
        bind,
        expire_on_commit=False,
        class_=AsyncSession,
    )


# Process-wide engine used by the API server and the CLI
engine = build_engine(settings.storage.database_url)
async_session = build_session_factory(engine)


async def shutdown():
    """Dispose of engine and close all connections."""
    await engine.dispose()
