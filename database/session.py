"""
Engine and session lifecycle for the SQL store.

URLs in settings are written with the sync scheme; the async driver is
picked here:
  postgresql:// | postgres://  → postgresql+asyncpg://   (extra: postgres)
  mysql:// | mysql+pymysql://  → mysql+aiomysql://       (extra: mysql)
  sqlite://                    → sqlite+aiosqlite://

One engine per process. SqlStore opens a short transaction per call:
    async with get_session() as db:
        ...
The transaction commits on exit and rolls back if the block raises.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
    "mysql://": "mysql+aiomysql://",
    "mysql+pymysql://": "mysql+aiomysql://",
    "sqlite://": "sqlite+aiosqlite://",
}

# Conversation writes are compare-and-update; a short wait on a locked
# SQLite file beats failing the event.
SQLITE_BUSY_TIMEOUT_S = 15

_engine: AsyncEngine | None = None
_sessions: async_sessionmaker[AsyncSession] | None = None


def _to_async_url(db_url: str) -> str:
    for prefix, async_prefix in ASYNC_DRIVERS.items():
        if db_url.startswith(prefix):
            return async_prefix + db_url[len(prefix):]
    return db_url


def _redacted(url) -> str:
    return url.render_as_string(hide_password=True)


def _prepare_sqlite_file(db_url: str) -> None:
    """Create the directory a file-backed SQLite database lives in."""
    database = make_url(db_url).database
    if database and database != ":memory:":
        Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)


def _engine_options(db_url: str, echo: bool) -> dict:
    if db_url.startswith("sqlite"):
        _prepare_sqlite_file(db_url)
        return {
            "echo": echo,
            "connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_S},
        }
    return {
        "echo": echo,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def get_engine(db_url: str = None) -> AsyncEngine:
    """Process-wide engine. `db_url` only matters on the first call."""
    global _engine
    if _engine is not None:
        return _engine

    settings = get_settings()
    url = _to_async_url(db_url or settings.database.url)
    _engine = create_async_engine(url, **_engine_options(url, settings.debug))
    logger.info("database_engine_created",
                dialect=_engine.dialect.name, url=_redacted(_engine.url))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), expire_on_commit=False)

    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: str = None) -> None:
    """Create missing tables. Existing tables are left untouched."""
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessions
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessions = None
    logger.info("database_closed")
