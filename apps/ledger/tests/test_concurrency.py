import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from stampcard_ledger.models.rewards import Reward
from stampcard_ledger.services.concurrency import (
    ConflictError,
    RetryPolicy,
    is_transient_conflict,
    run_transaction,
)
from stampcard_ledger.services.errors import (
    CodeExpiredError,
    ContentionError,
    InvalidInputError,
    OperationTimeoutError,
)


def _reward(name: str) -> Reward:
    return Reward(business_id="biz-1", name=name, stamps_cost=5)


async def _reward_names(session_factory) -> list[str]:
    async with session_factory() as session:
        result = await session.execute(select(Reward.name).order_by(Reward.name))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_retries_lost_races_then_commits(session_factory, fast_retry_policy, reset_ledger_store) -> None:
    attempts = {"count": 0}

    async def _operation(session):
        attempts["count"] += 1
        session.add(_reward(f"attempt-{attempts['count']}"))
        await session.flush()
        if attempts["count"] == 1:
            raise StaleDataError("version mismatch")
        if attempts["count"] == 2:
            raise ConflictError("conditional update matched nothing")
        return attempts["count"]

    result = await run_transaction(session_factory, _operation, policy=fast_retry_policy, label="test.retry")

    assert result == 3
    assert await _reward_names(session_factory) == ["attempt-3"]
    assert reset_ledger_store.snapshot().contention == {"retry:test.retry": 2}


@pytest.mark.asyncio
async def test_exhausted_retries_raise_contention(session_factory, reset_ledger_store) -> None:
    policy = RetryPolicy(max_attempts=3, base_backoff_seconds=0, jitter_seconds=0)

    async def _operation(session):
        raise ConflictError("always loses")

    with pytest.raises(ContentionError):
        await run_transaction(session_factory, _operation, policy=policy, label="test.exhaust")

    assert reset_ledger_store.snapshot().contention == {
        "retry:test.exhaust": 3,
        "exhausted:test.exhaust": 1,
    }


@pytest.mark.asyncio
async def test_deadline_raises_timeout(session_factory) -> None:
    async def _operation(session):
        await asyncio.sleep(1)

    with pytest.raises(OperationTimeoutError):
        await run_transaction(session_factory, _operation, timeout=0.05, label="test.slow")


@pytest.mark.asyncio
async def test_typed_failures_roll_back_unless_retained(session_factory) -> None:
    async def _rejected(session):
        session.add(_reward("rejected"))
        await session.flush()
        raise InvalidInputError("nope")

    async def _retained(session):
        session.add(_reward("retained"))
        await session.flush()
        raise CodeExpiredError("lapsed", retain_writes=True)

    with pytest.raises(InvalidInputError):
        await run_transaction(session_factory, _rejected)
    with pytest.raises(CodeExpiredError):
        await run_transaction(session_factory, _retained)

    assert await _reward_names(session_factory) == ["retained"]


@pytest.mark.asyncio
async def test_constraint_violations_become_invalid_input(session_factory, fast_retry_policy) -> None:
    attempts = {"count": 0}

    async def _operation(session):
        attempts["count"] += 1
        session.add(Reward(business_id="biz-1", name=None, stamps_cost=5))
        await session.flush()

    with pytest.raises(InvalidInputError) as excinfo:
        await run_transaction(session_factory, _operation, policy=fast_retry_policy, label="test.not_null")

    assert isinstance(excinfo.value.__cause__, IntegrityError)
    assert attempts["count"] == 1
    assert await _reward_names(session_factory) == []


def test_transient_conflict_classification() -> None:
    locked = OperationalError("UPDATE cards", {}, Exception("database is locked"))
    unique = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: client_cards.client_id"))
    not_null = IntegrityError("INSERT", {}, Exception("NOT NULL constraint failed: rewards.name"))
    broken = OperationalError("SELECT 1", {}, Exception("unable to open database file"))

    assert is_transient_conflict(locked)
    assert is_transient_conflict(unique)
    assert not is_transient_conflict(not_null)
    assert not is_transient_conflict(broken)


def test_backoff_is_capped() -> None:
    policy = RetryPolicy(base_backoff_seconds=0.1, backoff_multiplier=10, max_backoff_seconds=0.5, jitter_seconds=0)

    assert policy.delay_for(1) == pytest.approx(0.1)
    assert policy.delay_for(2) == pytest.approx(0.5)
    assert policy.delay_for(6) == pytest.approx(0.5)
