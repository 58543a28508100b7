# src/Tagstash/db.py
from __future__ import annotations

import contextlib
import os
from collections.abc import AsyncIterator
from typing import Any

import structlog
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from Tagstash.config import load_settings

settings = load_settings()
log = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def _normalize_url(url: str) -> str:
    """Swap a bare ``postgresql://`` or ``sqlite://`` URL onto its async driver."""
    scheme, sep, rest = url.partition("://")
    if not sep:
        return url
    return f"{_ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


DATABASE_URL = _normalize_url(settings.database_url)


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None
_schema_initialized: bool = False


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite+aiosqlite://")


def _is_memory_sqlite(url: str) -> bool:
    return _is_sqlite(url) and ":memory:" in url


def _engine_options(url: str) -> dict[str, Any]:
    if _is_sqlite(url):
        opts: dict[str, Any] = {"connect_args": {"timeout": 30}}
        # One shared connection keeps an in-memory schema alive and serializes
        # chunk transactions on file databases when requested
        if _is_memory_sqlite(url) or os.environ.get("TAGSTASH_SQLITE_STATIC_POOL") == "1":
            opts["poolclass"] = StaticPool
        return opts
    if url.startswith("postgresql+asyncpg://"):
        return {"pool_pre_ping": True, "pool_size": 5, "max_overflow": 10, "pool_timeout": 30}
    return {}


def _enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    # Session deletes rely on ON DELETE CASCADE; SQLite ships with it off
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_conn, _record) -> None:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def get_engine() -> AsyncEngine:
    global _engine, _sessionmaker
    if _engine is not None:
        return _engine
    _engine = create_async_engine(DATABASE_URL, **_engine_options(DATABASE_URL))
    if _is_sqlite(DATABASE_URL):
        _enable_sqlite_foreign_keys(_engine)
    _sessionmaker = async_sessionmaker(_engine, expire_on_commit=False)
    url = make_url(DATABASE_URL)
    log.info(
        "db.engine.created",
        driver=url.drivername,
        host=url.host or "",
        database=url.database or "",
        user=url.username or "",
        static_pool=_engine_options(DATABASE_URL).get("poolclass") is StaticPool,
    )
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    if _sessionmaker is None:
        get_engine()
    return _sessionmaker  # type: ignore[return-value]


async def _ensure_schema_created_if_needed() -> None:
    """Create tables once for in-memory SQLite; migrations own every other database."""
    global _schema_initialized
    if _schema_initialized:
        return
    if _is_memory_sqlite(DATABASE_URL):
        from Tagstash import models as _models  # noqa: F401

        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    _schema_initialized = True


@contextlib.asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """One transaction: commit on clean exit, roll back and re-raise on error."""
    await _ensure_schema_created_if_needed()
    async with get_sessionmaker()() as s:
        try:
            yield s
            await s.commit()
        except BaseException:
            log.warning("db.session.rollback", exc_info=True)
            await s.rollback()
            raise
