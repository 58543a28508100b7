# tests/conftest.py

import gc
import os
from collections.abc import AsyncIterator

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

# Point the app (Tagstash.db.get_engine) at a test database before any app
# module creates an engine. Default to in-memory; a file-backed SQLite with WAL
# can be selected for debugging.
if os.environ.get("TAGSTASH_TEST_USE_FILE_SQLITE") == "1":
    test_db_path = os.path.abspath(
        os.environ.get("TAGSTASH_TEST_DB_PATH", "./tagstash_test.sqlite3")
    )
    os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{test_db_path}"
else:
    os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

# One shared connection for SQLite keeps the in-memory schema alive across sessions
if os.environ.get("TAGSTASH_SQLITE_STATIC_POOL", "1") != "0":
    os.environ["TAGSTASH_SQLITE_STATIC_POOL"] = "1"

# config.toml may name another database; override the module-level constant
# before any engine is created.
import Tagstash.db as _db

_db.DATABASE_URL = os.environ["DATABASE_URL"]
_db._engine = None
_db._sessionmaker = None
_db._schema_initialized = False

from Tagstash import metrics  # noqa: E402
from Tagstash import models as _models  # noqa: F401,E402
from Tagstash.db import Base, get_engine, get_sessionmaker  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
async def _app_engine_lifecycle() -> AsyncIterator[None]:
    """Create tables on the app engine and dispose it after the test session."""
    if os.environ.get("TAGSTASH_TEST_SKIP_DB") == "1":
        yield None
        return
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield None
    finally:
        await engine.dispose()
    gc.collect()


async def _recreate_schema() -> None:
    engine = get_engine()
    async with engine.begin() as conn:
        is_sqlite = conn.dialect.name == "sqlite"
        if is_sqlite:
            await conn.execute(sa.text("PRAGMA foreign_keys=OFF"))
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
        if is_sqlite:
            await conn.execute(sa.text("PRAGMA foreign_keys=ON"))


# Chunks and session updates commit through session_scope(), so committed rows
# must be cleared between tests: drop and recreate the schema every time.
@pytest.fixture(autouse=True)
async def _reset_db_per_test() -> AsyncIterator[None]:
    metrics.reset_counters()
    if os.environ.get("TAGSTASH_TEST_SKIP_DB") == "1":
        yield None
        return
    await _recreate_schema()
    yield None


@pytest.fixture
async def db() -> AsyncIterator[AsyncSession]:
    sm = get_sessionmaker()
    async with sm() as s:
        try:
            yield s
        finally:
            await s.rollback()
            await s.close()
