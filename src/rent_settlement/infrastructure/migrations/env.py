"""Alembic migration environment for the settlement schema.

Supports both offline (SQL generation) and online (live DB) modes.
Online migrations run through an async engine: asyncpg in production,
aiosqlite when DATABASE_URL points at SQLite. SQLite gets batch mode so
ALTER-style migrations are rendered as table copies.

The database URL always comes from config.Settings, never from alembic.ini.
"""

import asyncio
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

# src/ on the path so `alembic` works from the repo root without an install
sys.path.insert(0, str(Path(__file__).resolve().parents[3]))

from rent_settlement.config import get_settings  # noqa: E402
from rent_settlement.infrastructure.database.orm_models import Base  # noqa: E402

config = context.config

settings = get_settings()
config.set_main_option("sqlalchemy.url", settings.database_url)
_is_sqlite = settings.database_url.startswith("sqlite")

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _render_item(type_, obj, autogen_context):  # noqa: ANN001, ANN202
    """Render UTCDateTime as a plain timezone-aware DateTime in migration scripts."""
    if type_ == "type" and type(obj).__name__ == "UTCDateTime":
        return "sa.DateTime(timezone=True)"
    return False


def run_migrations_offline() -> None:
    """Emit SQL to stdout without connecting."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=_is_sqlite,
        render_item=_render_item,
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=_is_sqlite,
        render_item=_render_item,
    )
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
