"""Subscription-plan quota checks consulted before quota-bound writes.

The gate is read-only and advisory: a check followed by a write is not
atomic with the gate's own counters. Periodic reconciliation outside this
package closes that gap.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Protocol, runtime_checkable

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from stampcard_ledger.core.settings import Settings, settings
from stampcard_ledger.core.timeutil import month_window, utcnow
from stampcard_ledger.models.cards import ClientCard
from stampcard_ledger.models.rewards import Reward
from stampcard_ledger.models.stamps import StampCode, StampCodeStatus
from stampcard_ledger.services.errors import (
    InvalidQuotaError,
    LoyaltyError,
    QuotaExceededError,
    UnavailableError,
)


@dataclass(frozen=True, slots=True)
class UsagePeriod:
    start: datetime
    end: datetime

    @classmethod
    def current(cls, now: datetime | None = None) -> "UsagePeriod":
        start, end = month_window(now or utcnow())
        return cls(start=start, end=end)


@dataclass(frozen=True, slots=True)
class EntitlementUsage:
    stamps_issued: int = 0
    rewards_active: int = 0
    clients: int = 0


@dataclass(frozen=True, slots=True)
class PlanLimits:
    """Plan ceilings; ``None`` means unlimited."""

    max_clients: int | None = None
    max_stamps_per_month: int | None = None
    max_active_rewards: int | None = None

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "PlanLimits":
        config = config or settings
        return cls(
            max_clients=config.plan_max_clients,
            max_stamps_per_month=config.plan_max_stamps_per_month,
            max_active_rewards=config.plan_max_active_rewards,
        )


@runtime_checkable
class EntitlementGate(Protocol):
    async def current_usage(self, business_id: str, period: UsagePeriod) -> EntitlementUsage:
        ...

    async def plan_limits(self, business_id: str) -> PlanLimits:
        ...


class UnlimitedEntitlementGate:
    """Gate for deployments without subscription plans."""

    async def current_usage(self, business_id: str, period: UsagePeriod) -> EntitlementUsage:
        return EntitlementUsage()

    async def plan_limits(self, business_id: str) -> PlanLimits:
        return PlanLimits()


LimitsResolver = Callable[[str], Awaitable[PlanLimits]]


class LedgerUsageEntitlementGate:
    """Derive usage from the ledger tables; limits from settings or a resolver."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        limits_resolver: LimitsResolver | None = None,
        default_limits: PlanLimits | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._limits_resolver = limits_resolver
        self._default_limits = default_limits or PlanLimits.from_settings()

    async def current_usage(self, business_id: str, period: UsagePeriod) -> EntitlementUsage:
        async with self._session_factory() as session:
            stamps_stmt = select(func.coalesce(func.sum(StampCode.value), 0)).where(
                StampCode.business_id == business_id,
                StampCode.created_at >= period.start,
                StampCode.created_at < period.end,
                StampCode.status != StampCodeStatus.CANCELLED,
            )
            rewards_stmt = select(func.count(Reward.id)).where(
                Reward.business_id == business_id,
                Reward.is_active.is_(True),
            )
            clients_stmt = select(func.count(ClientCard.id)).where(
                ClientCard.business_id == business_id,
                ClientCard.is_active.is_(True),
            )
            stamps = (await session.execute(stamps_stmt)).scalar_one()
            rewards = (await session.execute(rewards_stmt)).scalar_one()
            clients = (await session.execute(clients_stmt)).scalar_one()
        return EntitlementUsage(
            stamps_issued=int(stamps or 0),
            rewards_active=int(rewards or 0),
            clients=int(clients or 0),
        )

    async def plan_limits(self, business_id: str) -> PlanLimits:
        if self._limits_resolver is None:
            return self._default_limits
        return await self._limits_resolver(business_id)


class EntitlementChecker:
    """Translate gate answers into typed quota failures."""

    def __init__(self, gate: EntitlementGate | None = None) -> None:
        self._gate = gate or UnlimitedEntitlementGate()

    async def _snapshot(self, business_id: str, now: datetime | None) -> tuple[EntitlementUsage, PlanLimits]:
        try:
            limits = await self._gate.plan_limits(business_id)
            usage = await self._gate.current_usage(business_id, UsagePeriod.current(now))
        except LoyaltyError:
            raise
        except Exception as exc:
            logger.error("Entitlement gate unavailable", business_id=business_id, error=str(exc))
            raise UnavailableError("Entitlement gate unavailable", business_id=business_id) from exc
        return usage, limits

    async def ensure_stamp_quota(self, business_id: str, value: int, *, now: datetime | None = None) -> None:
        usage, limits = await self._snapshot(business_id, now)
        if limits.max_stamps_per_month is None:
            return
        if usage.stamps_issued + value > limits.max_stamps_per_month:
            raise InvalidQuotaError(
                "Monthly stamp quota exhausted",
                business_id=business_id,
                issued=usage.stamps_issued,
                limit=limits.max_stamps_per_month,
            )

    async def ensure_reward_quota(self, business_id: str, *, now: datetime | None = None) -> None:
        usage, limits = await self._snapshot(business_id, now)
        if limits.max_active_rewards is None:
            return
        if usage.rewards_active >= limits.max_active_rewards:
            raise QuotaExceededError(
                "Active reward quota exhausted",
                business_id=business_id,
                active=usage.rewards_active,
                limit=limits.max_active_rewards,
            )

    async def ensure_client_quota(self, business_id: str, *, now: datetime | None = None) -> None:
        usage, limits = await self._snapshot(business_id, now)
        if limits.max_clients is None:
            return
        if usage.clients >= limits.max_clients:
            raise QuotaExceededError(
                "Client quota exhausted",
                business_id=business_id,
                clients=usage.clients,
                limit=limits.max_clients,
            )


__all__ = [
    "EntitlementChecker",
    "EntitlementGate",
    "EntitlementUsage",
    "LedgerUsageEntitlementGate",
    "PlanLimits",
    "UnlimitedEntitlementGate",
    "UsagePeriod",
]
