from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from shoe_service.config import settings

__all__ = ["engine", "SessionLocal", "make_engine", "make_session_factory"]


def make_engine(url: str | None = None, *, echo: bool | None = None) -> AsyncEngine:
    return create_async_engine(
        url or settings.database_url,
        echo=settings.db_echo if echo is None else echo,
        future=True,
    )


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind, expire_on_commit=False)


engine = make_engine()
SessionLocal = make_session_factory(engine)
