"""Database configuration and session management.

This module constructs the asynchronous SQLAlchemy engine and session
factory backing the document store.  ``DATABASE_URL`` selects the
backend; Postgres URLs are normalised to the psycopg async driver and
plain SQLite URLs are upgraded to aiosqlite.  When no URL is provided a
local SQLite database is used only if ``DB_DEV_FALLBACK_SQLITE`` is set.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from receiptgold.core.config import settings

logger = logging.getLogger(__name__)

_SQLITE_FALLBACK_URL = "sqlite+aiosqlite:///./receiptgold.db"

# Declarative base
Base = declarative_base()


def normalise_database_url(db_url: str) -> str:
    """Return ``db_url`` rewritten for an async driver."""
    try:
        url_obj = make_url(db_url)
    except Exception:
        return db_url
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        return str(url_obj.set(drivername="sqlite+aiosqlite"))
    if driver in {"postgresql", "postgres", "postgresql+psycopg2", "postgresql+asyncpg"}:
        q = dict(url_obj.query or {})
        # Always require SSL unless explicitly disabled
        if not q.get("sslmode"):
            q["sslmode"] = "require"
        return url_obj.set(drivername="postgresql+psycopg", query=q).render_as_string(hide_password=False)
    return db_url


def resolve_database_url() -> str:
    db_url = settings.DATABASE_URL or os.getenv("DATABASE_URL")
    if not db_url:
        # Fail fast when no DB URL is provided and fallback is disabled
        if not settings.DB_DEV_FALLBACK_SQLITE:
            raise RuntimeError(
                "No database URL provided via DATABASE_URL; with "
                "DB_DEV_FALLBACK_SQLITE=false, a Postgres URL is required."
            )
        db_url = _SQLITE_FALLBACK_URL
    return normalise_database_url(db_url)


def create_engine(db_url: Optional[str] = None, *, pooled: bool = True) -> AsyncEngine:
    """Build the async engine.

    Worker actors run each message in a fresh event loop (``asyncio.run``),
    so they ask for ``pooled=False``; pooled connections are bound to the
    loop that opened them.
    """
    url = normalise_database_url(db_url) if db_url else resolve_database_url()
    engine_kwargs: dict[str, Any] = dict(echo=False, pool_pre_ping=True)
    if not pooled:
        engine_kwargs["poolclass"] = NullPool
    try:
        logger.info("[db] creating async engine for %s", make_url(url).render_as_string(hide_password=True))
    except Exception:
        logger.info("[db] creating async engine")
    return create_async_engine(url, **engine_kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create the document table if it does not exist yet."""
    async with engine.begin() as conn:
        # Import all models to ensure metadata is populated
        from receiptgold.models import tables  # noqa: F401

        await conn.run_sync(Base.metadata.create_all)


__all__ = [
    "Base",
    "create_engine",
    "create_session_factory",
    "init_db",
    "normalise_database_url",
    "resolve_database_url",
]
