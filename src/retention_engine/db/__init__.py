"""Database access for the job store and disposal evidence.

One async engine per process, created on first use from
``settings.database`` and disposed by :func:`close_engine` at shutdown.
Models live in :mod:`retention_engine.db.models`; schema changes go
through Alembic (``db/migrations``).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from retention_engine.core.config import DatabaseSettings

_ASYNC_DRIVER = "postgresql+psycopg://"
_PLAIN_SCHEMES = ("postgresql://", "postgres://")

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def async_database_url(url: str) -> str:
    """Point a plain postgres URL at the psycopg driver; other URLs pass through."""
    for scheme in _PLAIN_SCHEMES:
        if url.startswith(scheme):
            return _ASYNC_DRIVER + url[len(scheme) :]
    return url


def build_engine(database: DatabaseSettings) -> AsyncEngine:
    return create_async_engine(
        async_database_url(str(database.url)),
        pool_size=database.pool_size,
        max_overflow=database.max_overflow,
        pool_timeout=database.pool_timeout,
        pool_pre_ping=True,
        echo=database.echo,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory, creating the engine if needed."""
    global _engine, _session_factory

    if _session_factory is None:
        from retention_engine.core.settings import get_settings

        _engine = build_engine(get_settings().database)
        _session_factory = async_sessionmaker(bind=_engine, class_=AsyncSession, expire_on_commit=False)
    return _session_factory


async def close_engine() -> None:
    global _engine, _session_factory

    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()
