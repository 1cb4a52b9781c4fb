"""Async engine and session lifecycle.

PostgreSQL (asyncpg) in deployment, SQLite (aiosqlite) for local runs and
the test suite. Request handlers take a session through ``get_db_session``;
background work (webhook syncs, channel renewal) opens its own with
``get_db``:

```python
from calendar_sync.database import get_db, init_db

await init_db()

async with get_db() as session:
    user = await session.get(User, user_id)
```
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from calendar_sync.config import get_settings
from calendar_sync.database.models import Base

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

_NOT_INITIALIZED = "Database not initialized. Call init_db() first."


def _engine_options(database_url: str) -> dict[str, Any]:
    settings = get_settings()
    options: dict[str, Any] = {"echo": settings.database_echo}

    if database_url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across sessions
        options["poolclass"] = StaticPool
        options["connect_args"] = {"check_same_thread": False}
    else:
        options["pool_size"] = settings.database_pool_size
        options["max_overflow"] = settings.database_max_overflow
        options["pool_pre_ping"] = True

    return options


async def init_db(database_url: str | None = None) -> None:
    """Create the engine and session factory.

    Args:
        database_url: Overrides DATABASE_URL, mainly for tests
    """
    global _engine, _session_factory

    url = database_url or get_settings().database_url
    logger.info("Opening database engine")

    _engine = create_async_engine(url, **_engine_options(url))
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def close_db() -> None:
    """Dispose of the engine; a no-op when it was never opened."""
    global _engine, _session_factory

    if _engine is None:
        return

    logger.info("Disposing database engine")
    await _engine.dispose()
    _engine = None
    _session_factory = None


async def create_tables() -> None:
    """Create the schema from the ORM metadata (development and tests)."""
    if _engine is None:
        raise RuntimeError(_NOT_INITIALIZED)

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Schema created for %d tables", len(Base.metadata.tables))


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session, rolling back on error and closing on exit.

    Nothing is committed implicitly.
    """
    if _session_factory is None:
        raise RuntimeError(_NOT_INITIALIZED)

    session = _session_factory()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session for FastAPI ``Depends``."""
    async with get_db() as session:
        yield session
