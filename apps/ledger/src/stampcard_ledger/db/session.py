"""Async engine and session factory wiring."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from stampcard_ledger.core.settings import settings


def build_engine(database_url: str | None = None, **kwargs) -> AsyncEngine:
    """Create an async engine for the configured database."""

    return create_async_engine(
        database_url or settings.database_url,
        echo=settings.database_echo,
        future=True,
        **kwargs,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Services return detached records after commit; keep their loaded state.
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


engine = build_engine()
async_session = build_session_factory(engine)
