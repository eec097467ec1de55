import asyncio
import datetime as dt
import random
from collections import Counter
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from stampcard_ledger.models.cards import StampLedgerEntryType
from stampcard_ledger.models.scratch import (
    ScratchCampaignStatus,
    ScratchIssuancePolicy,
    ScratchPrize,
    ScratchPrizeType,
    ScratchTicketStatus,
)
from stampcard_ledger.services.cards import ClientCardStore
from stampcard_ledger.services.errors import (
    CampaignClosedError,
    InvalidInputError,
    InvalidTransitionError,
    QuotaExceededError,
)
from stampcard_ledger.services.scratch import ScratchCampaignService, ScratchPrizeAllocator
from stampcard_ledger.services.scratch.allocator import NO_PRIZE_NAME, pick_weighted


def _window(*, days_before: int = 1, days_after: int = 1) -> dict:
    now = dt.datetime.now(dt.timezone.utc)
    return {
        "startDate": now - dt.timedelta(days=days_before),
        "endDate": now + dt.timedelta(days=days_after),
    }


async def _campaign(session_factory, prizes, **overrides):
    payload = {"businessId": "biz-1", "name": "Autumn scratch", "prizes": prizes, **_window()}
    payload.update(overrides)
    return await ScratchCampaignService(session_factory).create_campaign(payload)


def _allocator(session_factory, **kwargs) -> ScratchPrizeAllocator:
    return ScratchPrizeAllocator(session_factory, card_store=ClientCardStore(session_factory), **kwargs)


def test_pick_weighted_uses_cumulative_intervals() -> None:
    prizes = [
        SimpleNamespace(name="a", probability=0.5),
        SimpleNamespace(name="zero", probability=0),
        SimpleNamespace(name="b", probability=0.3),
        SimpleNamespace(name="c", probability=0.2),
    ]

    assert pick_weighted(prizes, 0.0).name == "a"
    assert pick_weighted(prizes, 0.4999).name == "a"
    assert pick_weighted(prizes, 0.5).name == "b"
    assert pick_weighted(prizes, 0.79).name == "b"
    assert pick_weighted(prizes, 0.8).name == "c"
    assert pick_weighted(prizes, 1.0).name == "c"
    assert pick_weighted([SimpleNamespace(name="zero", probability=0)], 0.0) is None


def test_pick_weighted_frequencies_follow_probabilities() -> None:
    prizes = [
        SimpleNamespace(name="a", probability=0.5),
        SimpleNamespace(name="b", probability=0.3),
        SimpleNamespace(name="c", probability=0.2),
    ]
    rng = random.Random(20261019)
    draws = 20000

    counts = Counter(pick_weighted(prizes, rng.random()).name for _ in range(draws))

    assert abs(counts["a"] / draws - 0.5) < 0.02
    assert abs(counts["b"] / draws - 0.3) < 0.02
    assert abs(counts["c"] / draws - 0.2) < 0.02


@pytest.mark.asyncio
async def test_reveal_frequencies_converge(session_factory) -> None:
    campaign = await _campaign(
        session_factory,
        [
            {"name": "Coffee", "prizeType": "product", "probability": 0.5},
            {"name": "10% off", "prizeType": "discount", "prizeValue": 10, "probability": 0.3},
            {"name": "Two stamps", "prizeType": "stamps", "prizeValue": 2, "probability": 0.2},
        ],
        maxCardsPerClient=400,
    )
    allocator = _allocator(session_factory, rng=random.Random(7))
    reveals = 400

    outcomes = Counter()
    for _ in range(reveals):
        ticket = await allocator.issue_ticket("client-1", campaign.id)
        outcome = await allocator.reveal_ticket(ticket.id)
        outcomes[outcome.ticket.prize_name] += 1

    assert abs(outcomes["Coffee"] / reveals - 0.5) < 0.1
    assert abs(outcomes["10% off"] / reveals - 0.3) < 0.1
    assert abs(outcomes["Two stamps"] / reveals - 0.2) < 0.1

    card = await ClientCardStore(session_factory).get_card("client-1", "biz-1")
    assert card.available_stamps == outcomes["Two stamps"] * 2

    async with session_factory() as session:
        prizes = (await session.execute(select(ScratchPrize))).scalars().all()
    assert {prize.name: prize.awarded_count for prize in prizes} == dict(outcomes)


@pytest.mark.asyncio
async def test_reveal_is_idempotent_and_redeem_transitions(session_factory, reset_ledger_store) -> None:
    campaign = await _campaign(
        session_factory,
        [{"name": "Croissant", "prizeType": "product", "probability": 1}],
    )
    allocator = _allocator(session_factory)
    ticket = await allocator.issue_ticket("client-1", campaign.id)
    assert ticket.status == ScratchTicketStatus.ISSUED
    assert ticket.code.startswith("SC-")

    with pytest.raises(InvalidTransitionError):
        await allocator.redeem_ticket(ticket.id, "staff-1")

    first = await allocator.reveal_ticket(ticket.id)
    second = await allocator.reveal_ticket(ticket.id)
    assert first.ticket.status == ScratchTicketStatus.REVEALED
    assert first.ticket.prize_name == "Croissant"
    assert second.already_revealed is True
    assert second.ticket.prize_id == first.ticket.prize_id

    redeemed = await allocator.redeem_ticket(ticket.id, "staff-1")
    assert redeemed.status == ScratchTicketStatus.REDEEMED
    assert redeemed.redeemed_by == "staff-1"

    with pytest.raises(InvalidTransitionError):
        await allocator.redeem_ticket(ticket.id, "staff-1")
    third = await allocator.reveal_ticket(ticket.id)
    assert third.ticket.status == ScratchTicketStatus.REDEEMED

    async with session_factory() as session:
        prize = (await session.execute(select(ScratchPrize))).scalar_one()
    assert prize.awarded_count == 1
    assert reset_ledger_store.snapshot().scratch["prizes"] == {"product": 1}


@pytest.mark.asyncio
async def test_stamp_prize_credits_card_as_bonus(session_factory) -> None:
    campaign = await _campaign(
        session_factory,
        [{"name": "Three stamps", "prizeType": "stamps", "prizeValue": 3, "probability": 1}],
    )
    allocator = _allocator(session_factory)
    ticket = await allocator.issue_ticket("client-9", campaign.id)

    outcome = await allocator.reveal_ticket(ticket.id)

    assert outcome.stamps_credited == 3
    store = ClientCardStore(session_factory)
    card = await store.get_card("client-9", "biz-1")
    assert (card.available_stamps, card.used_stamps, card.total_stamps) == (3, 0, 3)
    entries = await store.list_entries("client-9", "biz-1")
    assert [(entry.entry_type, entry.reference) for entry in entries] == [
        (StampLedgerEntryType.BONUS, ticket.code)
    ]


@pytest.mark.asyncio
async def test_empty_pool_falls_back_to_no_prize(session_factory) -> None:
    campaign = await _campaign(
        session_factory,
        [{"name": "Bike", "prizeType": "product", "probability": 1, "inventoryCap": 0}],
    )
    allocator = _allocator(session_factory)
    ticket = await allocator.issue_ticket("client-1", campaign.id)

    outcome = await allocator.reveal_ticket(ticket.id)

    assert outcome.ticket.prize_type == ScratchPrizeType.NO_PRIZE
    assert outcome.ticket.prize_name == NO_PRIZE_NAME
    assert outcome.ticket.prize_id is None


@pytest.mark.asyncio
async def test_issue_respects_window_status_and_client_cap(session_factory) -> None:
    prizes = [{"name": "Nothing", "prizeType": "no_prize", "probability": 1}]
    future = await _campaign(session_factory, prizes, **_window(days_before=-1, days_after=3))
    allocator = _allocator(session_factory)

    with pytest.raises(CampaignClosedError):
        await allocator.issue_ticket("client-1", future.id)

    campaign = await _campaign(session_factory, prizes, maxCardsPerClient=2)
    first = await allocator.issue_ticket("client-1", campaign.id)
    await allocator.issue_ticket("client-1", campaign.id)
    with pytest.raises(QuotaExceededError):
        await allocator.issue_ticket("client-1", campaign.id)

    # Revealed and redeemed tickets keep counting; only invalidation frees a slot.
    await allocator.reveal_ticket(first.id)
    with pytest.raises(QuotaExceededError):
        await allocator.issue_ticket("client-1", campaign.id)

    tickets = await allocator.list_tickets("client-1", campaign_id=campaign.id, status=ScratchTicketStatus.ISSUED)
    invalidated = await allocator.invalidate_ticket(tickets[0].id)
    assert invalidated.status == ScratchTicketStatus.INACTIVE
    with pytest.raises(InvalidTransitionError):
        await allocator.reveal_ticket(invalidated.id)

    replacement = await allocator.issue_ticket("client-1", campaign.id)
    assert replacement.status == ScratchTicketStatus.ISSUED

    await ScratchCampaignService(session_factory).set_campaign_status(campaign.id, ScratchCampaignStatus.INACTIVE)
    with pytest.raises(CampaignClosedError):
        await allocator.issue_ticket("client-2", campaign.id)
    with pytest.raises(CampaignClosedError):
        await allocator.reveal_ticket(replacement.id)


@pytest.mark.asyncio
async def test_issue_on_event_grants_one_ticket_per_matching_campaign(session_factory) -> None:
    prizes = [{"name": "Nothing", "prizeType": "no_prize", "probability": 1}]
    association = await _campaign(session_factory, prizes, issuancePolicy="on_association", name="Welcome")
    await _campaign(session_factory, prizes, issuancePolicy="on_first_open", name="Open me")
    await _campaign(session_factory, prizes, issuancePolicy="manual", name="Counter only")
    allocator = _allocator(session_factory)

    tickets = await allocator.issue_on_event("client-1", "biz-1", ScratchIssuancePolicy.ON_ASSOCIATION)
    assert [ticket.campaign_id for ticket in tickets] == [association.id]
    assert tickets[0].issued_via == ScratchIssuancePolicy.ON_ASSOCIATION

    again = await allocator.issue_on_event("client-1", "biz-1", ScratchIssuancePolicy.ON_ASSOCIATION)
    assert again == []

    with pytest.raises(InvalidInputError):
        await allocator.issue_on_event("client-1", "biz-1", ScratchIssuancePolicy.MANUAL)


@pytest.mark.asyncio
async def test_add_prize_appends_to_pool(session_factory) -> None:
    service = ScratchCampaignService(session_factory)
    campaign = await _campaign(
        session_factory,
        [{"name": "Coffee", "prizeType": "product", "probability": 1}],
    )

    prize = await service.add_prize(campaign.id, {"name": "Muffin", "prizeType": "product", "probability": 2})
    assert prize.position == 1

    stored = await service.get_campaign(campaign.id)
    assert [item.name for item in stored.prizes] == ["Coffee", "Muffin"]
    with pytest.raises(InvalidInputError):
        await service.add_prize(campaign.id, {"name": "Stamps", "prizeType": "stamps", "probability": 1})
    with pytest.raises(InvalidInputError):
        await service.create_campaign(
            {"businessId": "biz-1", "name": "Backwards", **_window(days_before=-2, days_after=-3)}
        )


@pytest.mark.asyncio
async def test_explicit_zero_position_is_kept(session_factory) -> None:
    service = ScratchCampaignService(session_factory)
    campaign = await _campaign(
        session_factory,
        [
            {"name": "Coffee", "prizeType": "product", "probability": 1, "position": 5},
            {"name": "Muffin", "prizeType": "product", "probability": 1, "position": 0},
        ],
    )

    stored = await service.get_campaign(campaign.id)
    assert [(item.name, item.position) for item in stored.prizes] == [("Muffin", 0), ("Coffee", 5)]

    allocator = _allocator(session_factory, rng=SimpleNamespace(random=lambda: 0.0))
    ticket = await allocator.issue_ticket("client-1", campaign.id)
    outcome = await allocator.reveal_ticket(ticket.id)
    assert outcome.ticket.prize_name == "Muffin"

    front = await service.add_prize(
        campaign.id, {"name": "Cookie", "prizeType": "product", "probability": 1, "position": 0}
    )
    assert front.position == 0


@pytest.mark.asyncio
async def test_inventory_cap_holds_under_concurrent_reveals(concurrent_session_factory, fast_retry_policy) -> None:
    campaign = await _campaign(
        concurrent_session_factory,
        [{"name": "Golden ticket", "prizeType": "product", "probability": 1, "inventoryCap": 3}],
    )
    allocator = _allocator(concurrent_session_factory, retry_policy=fast_retry_policy)
    tickets = [await allocator.issue_ticket(f"client-{index}", campaign.id) for index in range(12)]

    outcomes = await asyncio.gather(*(allocator.reveal_ticket(ticket.id) for ticket in tickets))

    prize_types = Counter(outcome.ticket.prize_type for outcome in outcomes)
    assert prize_types == {ScratchPrizeType.PRODUCT: 3, ScratchPrizeType.NO_PRIZE: 9}

    async with concurrent_session_factory() as session:
        prize = (await session.execute(select(ScratchPrize))).scalar_one()
    assert prize.awarded_count == 3


@pytest.mark.asyncio
async def test_campaign_and_ticket_queries(session_factory) -> None:
    service = ScratchCampaignService(session_factory)
    prizes = [{"name": "Nothing", "prizeType": "no_prize", "probability": 1}]
    open_campaign = await _campaign(session_factory, prizes, name="Open")
    closed_campaign = await _campaign(session_factory, prizes, name="Closed")
    await service.set_campaign_status(closed_campaign.id, ScratchCampaignStatus.INACTIVE)
    allocator = _allocator(session_factory)
    ticket = await allocator.issue_ticket("client-1", open_campaign.id)

    active = await service.list_campaigns("biz-1", active_only=True)
    everything = await service.list_campaigns("biz-1")
    assert [campaign.id for campaign in active] == [open_campaign.id]
    assert {campaign.id for campaign in everything} == {open_campaign.id, closed_campaign.id}
    assert all(len(campaign.prizes) == 1 for campaign in everything)

    stored = await allocator.get_ticket(ticket.id)
    assert stored.code == ticket.code
    assert stored.status == ScratchTicketStatus.ISSUED


@pytest.mark.asyncio
async def test_concurrent_reveals_of_one_ticket_award_once(concurrent_session_factory, fast_retry_policy) -> None:
    campaign = await _campaign(
        concurrent_session_factory,
        [{"name": "Croissant", "prizeType": "product", "probability": 1}],
    )
    allocator = _allocator(concurrent_session_factory, retry_policy=fast_retry_policy)
    ticket = await allocator.issue_ticket("client-1", campaign.id)

    outcomes = await asyncio.gather(*(allocator.reveal_ticket(ticket.id) for _ in range(8)))

    assert sum(1 for outcome in outcomes if outcome.already_revealed) == 7
    assert len({outcome.ticket.prize_id for outcome in outcomes}) == 1
    assert all(outcome.ticket.status == ScratchTicketStatus.REVEALED for outcome in outcomes)

    async with concurrent_session_factory() as session:
        prize = (await session.execute(select(ScratchPrize))).scalar_one()
    assert prize.awarded_count == 1
