import asyncio
import datetime as dt
import uuid

import pytest
from sqlalchemy import update

from stampcard_ledger.models.cards import StampLedgerEntryType
from stampcard_ledger.models.rewards import UNLIMITED_STOCK, RewardRedemption, RewardRedemptionStatus
from stampcard_ledger.services.cards import ClientCardStore
from stampcard_ledger.services.entitlements import EntitlementChecker, EntitlementUsage, PlanLimits
from stampcard_ledger.services.errors import (
    CodeExpiredError,
    InvalidInputError,
    InvalidTransitionError,
    NotEnoughStampsError,
    QuotaExceededError,
    RedemptionNotFoundError,
    RewardNotFoundError,
    RewardUnavailableError,
)
from stampcard_ledger.services.rewards import RewardCatalog, RewardRedemptionEngine
from stampcard_ledger.services.stamps import StampLedger


class _Harness:
    def __init__(self, session_factory, *, code_ttl_hours=None) -> None:
        self.cards = ClientCardStore(session_factory)
        self.ledger = StampLedger(session_factory, card_store=self.cards)
        self.catalog = RewardCatalog(session_factory)
        self.engine = RewardRedemptionEngine(
            session_factory,
            card_store=self.cards,
            code_ttl_hours=code_ttl_hours,
        )

    async def credit(self, client_id: str, value: int, business_id: str = "biz-1"):
        stamp_code = await self.ledger.issue(business_id, value)
        return await self.ledger.redeem(stamp_code.code, client_id)

    async def reward(self, **overrides):
        payload = {"businessId": "biz-1", "name": "Free coffee", "stampsCost": 3}
        payload.update(overrides)
        return await self.catalog.create_reward(payload)

    async def balance(self, client_id: str, business_id: str = "biz-1"):
        card = await self.cards.get_card(client_id, business_id)
        return card.available_stamps, card.used_stamps, card.total_stamps


@pytest.mark.asyncio
async def test_claim_redeem_deliver_scenario(session_factory, reset_ledger_store) -> None:
    harness = _Harness(session_factory)
    reward = await harness.reward()

    claim = await harness.credit("client-1", 3)
    assert (claim.card.available_stamps, claim.card.used_stamps, claim.card.total_stamps) == (3, 0, 3)

    redemption = await harness.engine.redeem("client-1", reward.id)
    assert redemption.status == RewardRedemptionStatus.PENDING
    assert redemption.code.startswith("RW-")
    assert (redemption.stamps_before, redemption.stamps_spent, redemption.stamps_after) == (3, 3, 0)
    assert redemption.stamps_before - redemption.stamps_spent == redemption.stamps_after
    assert redemption.expires_at is not None
    assert await harness.balance("client-1") == (0, 3, 3)

    pending = await harness.engine.list_pending("biz-1")
    assert [item.code for item in pending] == [redemption.code]

    delivered = await harness.engine.deliver(redemption.code, "staff-1")
    assert delivered.status == RewardRedemptionStatus.DELIVERED
    assert delivered.delivered_by == "staff-1"
    assert delivered.delivered_at is not None
    assert await harness.engine.list_pending("biz-1") == []

    with pytest.raises(NotEnoughStampsError):
        await harness.engine.redeem("client-1", reward.id)
    assert await harness.balance("client-1") == (0, 3, 3)

    entries = await harness.cards.list_entries("client-1", "biz-1")
    assert sorted(entry.entry_type.value for entry in entries) == ["accumulation", "exchange"]

    snapshot = reset_ledger_store.snapshot()
    assert snapshot.redemptions["created"] == 1
    assert snapshot.redemptions["delivered"] == 1
    assert snapshot.redemptions["rejected:not_enough_stamps"] == 1


@pytest.mark.asyncio
async def test_not_enough_stamps_leaves_card_unchanged(session_factory) -> None:
    harness = _Harness(session_factory)
    reward = await harness.reward(stampsCost=5, stock=2)
    await harness.credit("client-1", 4)

    with pytest.raises(NotEnoughStampsError):
        await harness.engine.redeem("client-1", reward.id)

    assert await harness.balance("client-1") == (4, 0, 4)
    stored = await harness.catalog.get_reward(reward.id)
    assert stored.stock == 2
    assert await harness.engine.list_for_client("client-1") == []


@pytest.mark.asyncio
async def test_redeem_without_card_is_not_enough_stamps(session_factory) -> None:
    harness = _Harness(session_factory)
    reward = await harness.reward()

    with pytest.raises(NotEnoughStampsError):
        await harness.engine.redeem("stranger", reward.id)


@pytest.mark.asyncio
async def test_cancel_refunds_stamps_and_restores_stock(session_factory, reset_ledger_store) -> None:
    harness = _Harness(session_factory)
    reward = await harness.reward(stampsCost=2, stock=1)
    await harness.credit("client-1", 5)

    redemption = await harness.engine.redeem("client-1", reward.id)
    assert await harness.balance("client-1") == (3, 2, 5)
    assert (await harness.catalog.get_reward(reward.id)).stock == 0

    with pytest.raises(RewardUnavailableError):
        await harness.engine.redeem("client-1", reward.id)

    cancelled = await harness.engine.cancel(redemption.code, "staff-1", reason="Out of beans")
    assert cancelled.status == RewardRedemptionStatus.CANCELLED
    assert cancelled.cancellation_reason == "Out of beans"
    assert await harness.balance("client-1") == (5, 0, 5)
    assert (await harness.catalog.get_reward(reward.id)).stock == 1

    entries = await harness.cards.list_entries("client-1", "biz-1")
    refund = [entry for entry in entries if entry.entry_type == StampLedgerEntryType.REFUND]
    assert [entry.stamps for entry in refund] == [2]
    assert refund[0].actor_id == "staff-1"

    with pytest.raises(InvalidTransitionError):
        await harness.engine.cancel(redemption.code, "staff-1")
    with pytest.raises(InvalidTransitionError):
        await harness.engine.deliver(redemption.code, "staff-1")
    assert reset_ledger_store.snapshot().redemptions["cancelled"] == 1


@pytest.mark.asyncio
async def test_delivered_redemption_cannot_be_cancelled_or_redelivered(session_factory) -> None:
    harness = _Harness(session_factory)
    reward = await harness.reward()
    await harness.credit("client-1", 3)
    redemption = await harness.engine.redeem("client-1", reward.id)
    await harness.engine.deliver(redemption.code, "staff-1")

    with pytest.raises(InvalidTransitionError) as excinfo:
        await harness.engine.cancel(redemption.code, "staff-1")
    assert excinfo.value.current_status == RewardRedemptionStatus.DELIVERED

    with pytest.raises(InvalidTransitionError):
        await harness.engine.deliver(redemption.code, "staff-2")

    assert await harness.balance("client-1") == (0, 3, 3)


@pytest.mark.asyncio
async def test_unknown_redemption_code(session_factory) -> None:
    harness = _Harness(session_factory)
    with pytest.raises(RedemptionNotFoundError):
        await harness.engine.deliver("RW-MISSING", "staff-1")
    with pytest.raises(RedemptionNotFoundError):
        await harness.engine.cancel("RW-MISSING", "staff-1")


@pytest.mark.asyncio
async def test_expired_redemption_cannot_be_delivered(session_factory) -> None:
    harness = _Harness(session_factory, code_ttl_hours=0)
    reward = await harness.reward()
    await harness.credit("client-1", 3)
    redemption = await harness.engine.redeem("client-1", reward.id)
    assert redemption.expires_at is None

    async with session_factory() as session:
        await session.execute(
            update(RewardRedemption)
            .where(RewardRedemption.id == redemption.id)
            .values(expires_at=dt.datetime.now(dt.timezone.utc) - dt.timedelta(minutes=1))
        )
        await session.commit()

    with pytest.raises(CodeExpiredError):
        await harness.engine.deliver(redemption.code, "staff-1")

    expired = await harness.engine.get_redemption(redemption.code)
    assert expired.status == RewardRedemptionStatus.EXPIRED
    # Expiry does not refund.
    assert await harness.balance("client-1") == (0, 3, 3)

    with pytest.raises(CodeExpiredError):
        await harness.engine.deliver(redemption.code, "staff-1")
    with pytest.raises(InvalidTransitionError):
        await harness.engine.cancel(redemption.code, "staff-1")


@pytest.mark.asyncio
async def test_reward_availability_rules(session_factory) -> None:
    harness = _Harness(session_factory)
    await harness.credit("client-1", 20)

    inactive = await harness.reward(name="Hidden", isActive=False)
    with pytest.raises(RewardUnavailableError):
        await harness.engine.redeem("client-1", inactive.id)

    soon = dt.datetime.now(dt.timezone.utc) + dt.timedelta(seconds=1)
    expiring = await harness.reward(name="Seasonal", expiresAt=soon)
    await asyncio.sleep(1.1)
    with pytest.raises(RewardUnavailableError):
        await harness.engine.redeem("client-1", expiring.id)

    once = await harness.reward(name="Welcome gift", stampsCost=1, oneTimeUse=True)
    await harness.engine.redeem("client-1", once.id)
    with pytest.raises(RewardUnavailableError):
        await harness.engine.redeem("client-1", once.id)

    with pytest.raises(RewardNotFoundError):
        await harness.engine.redeem("client-1", uuid.uuid4())

    assert await harness.balance("client-1") == (19, 1, 20)


@pytest.mark.asyncio
async def test_catalog_updates_and_quota(session_factory) -> None:
    class _RewardQuotaGate:
        async def current_usage(self, business_id, period):
            return EntitlementUsage(rewards_active=2)

        async def plan_limits(self, business_id):
            return PlanLimits(max_active_rewards=2)

    limited = RewardCatalog(session_factory, entitlements=EntitlementChecker(_RewardQuotaGate()))
    with pytest.raises(QuotaExceededError):
        await limited.create_reward({"businessId": "biz-1", "name": "Cake", "stampsCost": 8})

    draft = await limited.create_reward(
        {"businessId": "biz-1", "name": "Cake", "stampsCost": 8, "isActive": False}
    )
    assert draft.stock == UNLIMITED_STOCK
    assert draft.has_unlimited_stock is True

    with pytest.raises(QuotaExceededError):
        await limited.update_reward(draft.id, {"isActive": True})

    updated = await limited.update_reward(draft.id, {"stock": 4, "specialConditions": "Weekdays only"})
    assert updated.stock == 4
    assert updated.special_conditions == "Weekdays only"
    assert updated.is_active is False

    with pytest.raises(InvalidInputError):
        await limited.update_reward(draft.id, {})
    with pytest.raises(InvalidInputError):
        await limited.update_reward(draft.id, {"stampsCost": 0})
    for cleared in ({"name": None}, {"stampsCost": None}, {"stock": None}, {"isActive": None}, {"oneTimeUse": None}):
        with pytest.raises(InvalidInputError):
            await limited.update_reward(draft.id, cleared)
    unchanged = await limited.get_reward(draft.id)
    assert (unchanged.name, unchanged.stamps_cost, unchanged.stock) == ("Cake", 8, 4)

    described = await limited.update_reward(draft.id, {"description": None})
    assert described.description is None

    catalog = RewardCatalog(session_factory)
    assert await catalog.list_rewards("biz-1") == []
    assert [reward.name for reward in await catalog.list_rewards("biz-1", active_only=False)] == ["Cake"]


@pytest.mark.asyncio
async def test_concurrent_redeems_on_one_card_never_overdraw(concurrent_session_factory, fast_retry_policy) -> None:
    cards = ClientCardStore(concurrent_session_factory, retry_policy=fast_retry_policy)
    ledger = StampLedger(concurrent_session_factory, card_store=cards, retry_policy=fast_retry_policy)
    catalog = RewardCatalog(concurrent_session_factory, retry_policy=fast_retry_policy)
    engine = RewardRedemptionEngine(concurrent_session_factory, card_store=cards, retry_policy=fast_retry_policy)

    stamp_code = await ledger.issue("biz-1", 7)
    await ledger.redeem(stamp_code.code, "client-1")
    reward = await catalog.create_reward({"businessId": "biz-1", "name": "Sandwich", "stampsCost": 3})

    results = await asyncio.gather(
        *(engine.redeem("client-1", reward.id) for _ in range(6)),
        return_exceptions=True,
    )

    redemptions = [result for result in results if not isinstance(result, Exception)]
    failures = [result for result in results if isinstance(result, Exception)]
    assert len(redemptions) == 2
    assert len(failures) == 4
    assert all(isinstance(failure, NotEnoughStampsError) for failure in failures)
    assert sorted((item.stamps_before, item.stamps_after) for item in redemptions) == [(4, 1), (7, 4)]

    card = await cards.get_card("client-1", "biz-1")
    assert (card.available_stamps, card.used_stamps, card.total_stamps) == (1, 6, 7)
    assert len(await engine.list_pending("biz-1")) == 2
