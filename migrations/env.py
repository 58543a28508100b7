"""Alembic environment for the Tagstash schema.

The database URL comes from DATABASE_URL (loaded from .env / .env.local when
present), falling back to ``[app].database_url`` in config.toml. Async driver
URLs used by the app are rewritten to their sync equivalents for Alembic.
"""

import os
import pathlib
from logging.config import fileConfig

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import create_engine

from Tagstash import models  # noqa: F401
from Tagstash.config import load_settings
from Tagstash.db import Base

_ROOT = pathlib.Path(__file__).resolve().parents[1]

for _name, _override in ((".env", False), (".env.local", True)):
    _path = _ROOT / _name
    if _path.exists():
        load_dotenv(dotenv_path=_path, override=_override)

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)
target_metadata = Base.metadata


def _sync_db_url() -> str:
    """Map the app's async URL onto a sync driver.

    postgresql+asyncpg:// -> postgresql+psycopg://, sqlite+aiosqlite:// -> sqlite://
    """
    url = os.environ.get("DATABASE_URL") or load_settings().database_url
    if url.startswith("postgresql"):
        rest = url.split("://", 1)[1]
        return f"postgresql+psycopg://{rest}"
    return url.replace("+aiosqlite", "")


def _configure_kwargs(url: str) -> dict:
    # SQLite cannot ALTER constraints in place; batch mode recreates tables
    return {"target_metadata": target_metadata, "render_as_batch": url.startswith("sqlite")}


def run_migrations_offline() -> None:
    url = _sync_db_url()
    context.configure(url=url, literal_binds=True, **_configure_kwargs(url))
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    url = _sync_db_url()
    connectable = create_engine(url)
    with connectable.connect() as connection:
        context.configure(connection=connection, **_configure_kwargs(url))
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
