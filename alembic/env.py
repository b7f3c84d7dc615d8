from __future__ import annotations

import asyncio
import os
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import pool
from sqlalchemy.engine import Connection, make_url
from sqlalchemy.ext.asyncio import create_async_engine

load_dotenv(Path(__file__).resolve().parents[1] / ".env")

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

from shoe_service.config import settings  # noqa: E402
from shoe_service.db import models  # noqa: F401,E402  registers every table
from shoe_service.db.base import metadata  # noqa: E402


def _database_url() -> str:
    raw = (
        os.getenv("SHOE_DATABASE_URL")
        or config.get_main_option("sqlalchemy.url")
        or settings.database_url
    )
    url = make_url(raw)
    # plain postgresql:// URLs need the async driver
    if url.drivername in ("postgresql", "postgres", "postgresql+psycopg2"):
        url = url.set(drivername="postgresql+asyncpg")
    if url.get_backend_name() != "postgresql":
        # revisions use PostgreSQL enums, JSONB and partial indexes
        raise RuntimeError(f"migrations need PostgreSQL, got {url.get_backend_name()!r}")
    return url.render_as_string(hide_password=False)


DATABASE_URL = _database_url()


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=metadata,
        compare_type=True,
        compare_server_default=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL to stdout instead of touching a database."""
    _configure(url=DATABASE_URL, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    engine = create_async_engine(DATABASE_URL, poolclass=pool.NullPool, future=True)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(do_run_migrations)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
