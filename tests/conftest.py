"""
Shared fixtures.

The suite runs on in-memory SQLite (aiosqlite) by default. Point
``SHOE_TEST_DATABASE_URL`` at a PostgreSQL database to run it against the
production dialect; tests marked ``postgres`` only run there.
"""
from __future__ import annotations

import os

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from shoe_service.db.base import metadata
from shoe_service.db import models as m
from shoe_service.db.session import make_session_factory
from shoe_service.services.catalog import ServiceCatalog
from shoe_service.services.lifecycle import Actor, LifecycleOrchestrator

TEST_DATABASE_URL = os.getenv("SHOE_TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
IS_SQLITE = TEST_DATABASE_URL.startswith("sqlite")


def pytest_collection_modifyitems(config, items):
    if not IS_SQLITE:
        return
    skip_pg = pytest.mark.skip(reason="needs SHOE_TEST_DATABASE_URL pointing at PostgreSQL")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip_pg)


def _make_engine():
    if not IS_SQLITE:
        return create_async_engine(TEST_DATABASE_URL, poolclass=NullPool, future=True)

    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        future=True,
    )

    # pysqlite's implicit transactions break SAVEPOINT; take over BEGIN ourselves.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest_asyncio.fixture
async def engine():
    engine = _make_engine()
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def async_session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def orchestrator(async_session: AsyncSession) -> LifecycleOrchestrator:
    return LifecycleOrchestrator(async_session)


@pytest.fixture
def customer() -> Actor:
    return Actor(id=501, role=m.ActorRole.CUSTOMER)


@pytest.fixture
def other_customer() -> Actor:
    return Actor(id=502, role=m.ActorRole.CUSTOMER)


@pytest.fixture
def staff_a() -> Actor:
    return Actor(id=11, role=m.ActorRole.STAFF)


@pytest.fixture
def staff_b() -> Actor:
    return Actor(id=12, role=m.ActorRole.STAFF)


@pytest.fixture
def admin() -> Actor:
    return Actor(id=1, role=m.ActorRole.ADMIN)


@pytest_asyncio.fixture
async def sample_services(async_session: AsyncSession) -> dict[str, int]:
    """Deep clean (primary), unyellowing (additional), repaint (start_from)."""
    catalog = ServiceCatalog(async_session)
    deep_clean = await catalog.add("Deep Clean", "50000", m.ServiceType.PRIMARY)
    unyellow = await catalog.add("Unyellowing", "35000", m.ServiceType.ADDITIONAL)
    repaint = await catalog.add("Repaint", "120000", m.ServiceType.START_FROM)
    ids = {"deep_clean": deep_clean.id, "unyellow": unyellow.id, "repaint": repaint.id}
    await async_session.commit()
    return ids
