import datetime as dt

import pytest

from stampcard_ledger.models.cards import ClientCard
from stampcard_ledger.models.rewards import Reward
from stampcard_ledger.models.stamps import StampCode, StampCodeStatus, StampType
from stampcard_ledger.services.entitlements import (
    EntitlementChecker,
    EntitlementUsage,
    LedgerUsageEntitlementGate,
    PlanLimits,
    UnlimitedEntitlementGate,
    UsagePeriod,
)
from stampcard_ledger.services.errors import InvalidQuotaError, QuotaExceededError, UnavailableError


def _code(code: str, value: int, status: StampCodeStatus, *, business_id: str = "biz-1", **extra) -> StampCode:
    return StampCode(
        code=code,
        business_id=business_id,
        value=value,
        stamp_type=StampType.PURCHASE,
        status=status,
        **extra,
    )


async def _seed(session_factory) -> None:
    last_month = dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=40)
    async with session_factory() as session:
        session.add_all(
            [
                _code("ST-AAAAAAAAAA", 3, StampCodeStatus.ACTIVE),
                _code("ST-BBBBBBBBBB", 4, StampCodeStatus.USED),
                _code("ST-CCCCCCCCCC", 9, StampCodeStatus.CANCELLED),
                _code("ST-DDDDDDDDDD", 8, StampCodeStatus.USED, created_at=last_month),
                _code("ST-EEEEEEEEEE", 5, StampCodeStatus.ACTIVE, business_id="biz-2"),
                Reward(business_id="biz-1", name="Coffee", stamps_cost=5),
                Reward(business_id="biz-1", name="Retired", stamps_cost=5, is_active=False),
                ClientCard(client_id="client-1", business_id="biz-1"),
                ClientCard(client_id="client-2", business_id="biz-1", is_active=False),
            ]
        )
        await session.commit()


@pytest.mark.asyncio
async def test_ledger_usage_counts_current_month(session_factory) -> None:
    await _seed(session_factory)
    gate = LedgerUsageEntitlementGate(session_factory, default_limits=PlanLimits(max_clients=10))

    usage = await gate.current_usage("biz-1", UsagePeriod.current())

    assert usage == EntitlementUsage(stamps_issued=7, rewards_active=1, clients=1)
    assert await gate.plan_limits("biz-1") == PlanLimits(max_clients=10)


@pytest.mark.asyncio
async def test_checker_enforces_plan_limits(session_factory) -> None:
    await _seed(session_factory)

    async def _limits(business_id: str) -> PlanLimits:
        return PlanLimits(max_clients=1, max_stamps_per_month=10, max_active_rewards=1)

    checker = EntitlementChecker(LedgerUsageEntitlementGate(session_factory, limits_resolver=_limits))

    await checker.ensure_stamp_quota("biz-1", 3)
    with pytest.raises(InvalidQuotaError) as excinfo:
        await checker.ensure_stamp_quota("biz-1", 4)
    assert excinfo.value.context["limit"] == 10
    with pytest.raises(QuotaExceededError):
        await checker.ensure_reward_quota("biz-1")
    with pytest.raises(QuotaExceededError):
        await checker.ensure_client_quota("biz-1")

    await checker.ensure_client_quota("biz-2")


@pytest.mark.asyncio
async def test_unlimited_gate_never_blocks() -> None:
    checker = EntitlementChecker(UnlimitedEntitlementGate())

    await checker.ensure_stamp_quota("biz-1", 10_000)
    await checker.ensure_reward_quota("biz-1")
    await checker.ensure_client_quota("biz-1")


class _BrokenGate:
    async def current_usage(self, business_id, period):
        raise ConnectionError("billing service down")

    async def plan_limits(self, business_id):
        return PlanLimits(max_clients=1)


@pytest.mark.asyncio
async def test_gate_failure_surfaces_as_unavailable() -> None:
    checker = EntitlementChecker(_BrokenGate())

    with pytest.raises(UnavailableError):
        await checker.ensure_client_quota("biz-1")
