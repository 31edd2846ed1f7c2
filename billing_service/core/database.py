"""Database configuration and session management.

This module builds the asynchronous SQLAlchemy engine and session factory
used by the persistence store.  The engine is a process-wide singleton:
it is created by :func:`init_engine` during application startup and
released by :func:`dispose_engine` at shutdown.

``DATABASE_URL`` is normalised for async drivers: ``postgres://`` and
``postgresql://`` (including ``+asyncpg``/``+psycopg2`` variants) are
rewritten to psycopg 3, and plain ``sqlite://`` to ``sqlite+aiosqlite://``.
SQLite connections get ``PRAGMA foreign_keys=ON`` so the subscription →
customer foreign key is enforced in development and tests as well.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy import event, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool, StaticPool

from billing_service.core.config import settings

logger = logging.getLogger(__name__)

# Declarative base
Base = declarative_base()

engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[async_sessionmaker[AsyncSession]] = None

_POSTGRES_DRIVERS = {
    "postgres",
    "postgresql",
    "postgresql+psycopg",
    "postgresql+psycopg2",
    "postgresql+asyncpg",
}


def normalize_database_url(raw_url: str) -> str:
    """Return ``raw_url`` rewritten for an async driver."""
    url_obj = make_url(raw_url)
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        url_obj = url_obj.set(drivername="sqlite+aiosqlite")
    elif driver in _POSTGRES_DRIVERS:
        q = dict(url_obj.query or {})
        if settings.DATABASE_SSLMODE and not q.get("sslmode"):
            q["sslmode"] = settings.DATABASE_SSLMODE
        url_obj = url_obj.set(drivername="postgresql+psycopg", query=q)
    return url_obj.render_as_string(hide_password=False)


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(raw_url: str, *, poolclass: Any = None) -> AsyncEngine:
    """Create an async engine for ``raw_url``.

    In-memory SQLite uses a ``StaticPool`` so every session sees the same
    database; file SQLite uses ``NullPool``; Postgres gets a bounded
    connection pool sized from settings.
    """
    db_url = normalize_database_url(raw_url)
    url_obj = make_url(db_url)
    engine_kwargs: dict[str, Any] = {"echo": settings.DATABASE_ECHO}
    is_sqlite = url_obj.get_backend_name() == "sqlite"

    if poolclass is not None:
        engine_kwargs["poolclass"] = poolclass
    elif is_sqlite:
        in_memory = url_obj.database in (None, "", ":memory:")
        engine_kwargs["poolclass"] = StaticPool if in_memory else NullPool
    else:
        engine_kwargs.update(
            pool_pre_ping=True,
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_timeout=settings.DATABASE_POOL_TIMEOUT,
            pool_recycle=3600,
        )

    new_engine = create_async_engine(db_url, **engine_kwargs)
    if is_sqlite:
        event.listen(new_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    logger.info("Created async engine url=%s", url_obj.render_as_string(hide_password=True))
    return new_engine


def init_engine(raw_url: Optional[str] = None) -> AsyncEngine:
    """Create the process-wide engine and session factory."""
    global engine, AsyncSessionLocal
    db_url = raw_url or settings.DATABASE_URL
    if not db_url:
        raise RuntimeError("No database URL provided via DATABASE_URL")
    engine = build_engine(db_url)
    AsyncSessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return engine


async def dispose_engine() -> None:
    """Close all pooled connections; called at shutdown."""
    global engine, AsyncSessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None


async def ping(session: AsyncSession) -> None:
    await session.execute(text("SELECT 1"))


def get_db_debug_info(target: Optional[AsyncEngine] = None) -> Dict[str, Any]:
    """Return non-sensitive information about ``target`` or the process engine."""
    target = target if target is not None else engine
    info: Dict[str, Any] = {"environment": settings.ENVIRONMENT, "initialised": target is not None}
    if target is not None:
        url_obj = target.url
        info.update(
            {
                "drivername": url_obj.drivername,
                "host": url_obj.host,
                "port": url_obj.port,
                "database": url_obj.database,
                "url": url_obj.render_as_string(hide_password=True),
            }
        )
    return info
