"""Bounded optimistic-concurrency retries around one database transaction."""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from loguru import logger
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from stampcard_ledger.core.settings import Settings, settings
from stampcard_ledger.observability import LedgerObservabilityStore, get_ledger_store
from stampcard_ledger.services.errors import (
    ContentionError,
    InvalidInputError,
    LoyaltyError,
    OperationTimeoutError,
    UnavailableError,
)

T = TypeVar("T")
SessionFactory = Callable[[], AsyncSession]
Operation = Callable[[AsyncSession], Awaitable[T]]

# Postgres serialization_failure, deadlock_detected, lock_not_available.
_TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03"}
_UNIQUE_VIOLATION_SQLSTATE = "23505"


class ConflictError(Exception):
    """A conditional write matched no row because a concurrent writer won."""


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff budget for compare-and-swap retries."""

    max_attempts: int = 8
    base_backoff_seconds: float = 0.01
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 0.5
    jitter_seconds: float = 0.01

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "RetryPolicy":
        config = config or settings
        return cls(
            max_attempts=config.cas_max_attempts,
            base_backoff_seconds=config.cas_base_backoff_seconds,
            backoff_multiplier=config.cas_backoff_multiplier,
            max_backoff_seconds=config.cas_max_backoff_seconds,
            jitter_seconds=config.cas_jitter_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        delay = max(self.base_backoff_seconds, 0.0) * (max(self.backoff_multiplier, 1.0) ** (attempt - 1))
        if self.max_backoff_seconds:
            delay = min(delay, self.max_backoff_seconds)
        if self.jitter_seconds:
            delay += random.uniform(0, self.jitter_seconds)
        return max(delay, 0.0)


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_transient_conflict(exc: DBAPIError) -> bool:
    """True for lock/serialization failures that a fresh attempt can win."""

    if isinstance(exc, IntegrityError):
        sqlstate = _sqlstate(exc)
        if sqlstate == _UNIQUE_VIOLATION_SQLSTATE:
            return True
        return "unique" in str(exc.orig or exc).lower()

    if _sqlstate(exc) in _TRANSIENT_SQLSTATES:
        return True
    message = str(getattr(exc, "orig", None) or exc).lower()
    return "database is locked" in message or "deadlock" in message


async def _attempt(session_factory: SessionFactory, operation: Operation[T]) -> T:
    async with session_factory() as session:
        try:
            result = await operation(session)
            await session.commit()
            return result
        except LoyaltyError as exc:
            if exc.retain_writes:
                await session.commit()
            else:
                await session.rollback()
            raise
        except (ConflictError, StaleDataError):
            await session.rollback()
            raise
        except DBAPIError as exc:
            await session.rollback()
            if is_transient_conflict(exc):
                raise ConflictError(str(exc.orig or exc)) from exc
            if isinstance(exc, IntegrityError):
                logger.warning("Write rejected by storage constraint", error=str(exc.orig or exc))
                raise InvalidInputError("Write violates a storage constraint", error=str(exc.orig or exc)) from exc
            raise UnavailableError("Persistence layer unavailable", error=str(exc.orig or exc)) from exc


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    return deadline - time.monotonic()


async def run_transaction(
    session_factory: SessionFactory,
    operation: Operation[T],
    *,
    policy: RetryPolicy | None = None,
    timeout: float | None = None,
    label: str = "transaction",
    observability: LedgerObservabilityStore | None = None,
) -> T:
    """Run ``operation`` in its own transaction, retrying lost races.

    Each attempt gets a fresh session; a lost compare-and-swap rolls the
    whole attempt back, so partial writes never survive. Typed
    ``LoyaltyError`` failures propagate immediately. ``timeout`` is the
    caller deadline in seconds and covers attempts and backoff sleeps.
    """

    policy = policy or RetryPolicy.from_settings()
    store = observability or get_ledger_store()
    if timeout is None:
        timeout = settings.operation_timeout_seconds
    deadline = time.monotonic() + timeout if timeout is not None else None

    last_conflict: Exception | None = None
    max_attempts = max(policy.max_attempts, 1)
    for attempt in range(1, max_attempts + 1):
        remaining = _remaining(deadline)
        if remaining is not None and remaining <= 0:
            raise OperationTimeoutError(f"{label} deadline elapsed", attempts=attempt - 1)

        try:
            if remaining is None:
                return await _attempt(session_factory, operation)
            return await asyncio.wait_for(_attempt(session_factory, operation), timeout=remaining)
        except asyncio.TimeoutError as exc:
            logger.warning("Operation deadline elapsed", label=label, attempt=attempt)
            raise OperationTimeoutError(f"{label} deadline elapsed", attempts=attempt) from exc
        except (ConflictError, StaleDataError) as exc:
            last_conflict = exc
            store.record_retry(label)
            if attempt >= max_attempts:
                break
            delay = policy.delay_for(attempt)
            remaining = _remaining(deadline)
            if remaining is not None and delay >= remaining:
                raise OperationTimeoutError(f"{label} deadline elapsed", attempts=attempt) from exc
            logger.debug(
                "Optimistic write conflict, retrying",
                label=label,
                attempt=attempt + 1,
                delay_seconds=delay,
            )
            if delay:
                await asyncio.sleep(delay)

    store.record_contention_exhausted(label)
    logger.error("Contention retries exhausted", label=label, attempts=max_attempts)
    raise ContentionError(f"{label} lost {max_attempts} concurrent write races") from last_conflict


__all__ = [
    "ConflictError",
    "RetryPolicy",
    "SessionFactory",
    "is_transient_conflict",
    "run_transaction",
]
