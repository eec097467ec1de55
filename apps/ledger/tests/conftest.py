import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from stampcard_ledger.db.base import Base  # noqa: E402
import stampcard_ledger.models  # noqa: E402,F401
from stampcard_ledger.observability import get_ledger_store  # noqa: E402
from stampcard_ledger.services.concurrency import RetryPolicy  # noqa: E402


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def concurrent_session_factory(tmp_path):
    """File-backed database where every session gets its own connection."""

    database = tmp_path / "ledger.db"
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{database}",
        future=True,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def fast_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=50,
        base_backoff_seconds=0.001,
        backoff_multiplier=1.5,
        max_backoff_seconds=0.02,
        jitter_seconds=0.005,
    )


@pytest.fixture(autouse=True)
def reset_ledger_store():
    store = get_ledger_store()
    store.reset()
    yield store
    store.reset()
