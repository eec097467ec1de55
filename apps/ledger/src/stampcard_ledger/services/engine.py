"""Single entry point wiring the ledger components around one session factory."""

from __future__ import annotations

import random
from datetime import datetime
from typing import Any, Callable
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from stampcard_ledger.core.tracing import get_tracer
from stampcard_ledger.models.cards import ClientCard, StampLedgerEntry
from stampcard_ledger.models.rewards import Reward, RewardRedemption
from stampcard_ledger.models.scratch import (
    ScratchCampaign,
    ScratchCampaignStatus,
    ScratchIssuancePolicy,
    ScratchPrize,
    ScratchTicket,
)
from stampcard_ledger.models.stamps import PurchaseType, StampCode, StampCodeStatus, StampType
from stampcard_ledger.observability import LedgerObservabilityStore, get_ledger_store
from stampcard_ledger.services.cards import CardMutation, ClientCardStore
from stampcard_ledger.services.codes import CodeRegistry
from stampcard_ledger.services.concurrency import RetryPolicy
from stampcard_ledger.services.entitlements import EntitlementChecker, EntitlementGate
from stampcard_ledger.services.errors import LoyaltyError
from stampcard_ledger.services.rewards import RewardCatalog, RewardRedemptionEngine
from stampcard_ledger.services.scratch import ScratchCampaignService, ScratchPrizeAllocator
from stampcard_ledger.services.stamps import StampLedger, StampRedemptionResult

tracer = get_tracer(__name__)


class LoyaltyEngine:
    """Facade over the stamp ledger, reward redemption and scratch allocation."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        entitlement_gate: EntitlementGate | None = None,
        retry_policy: RetryPolicy | None = None,
        registry: CodeRegistry | None = None,
        observability: LedgerObservabilityStore | None = None,
        rng: random.Random | None = None,
    ) -> None:
        policy = retry_policy or RetryPolicy.from_settings()
        store = observability or get_ledger_store()
        registry = registry or CodeRegistry()
        entitlements = EntitlementChecker(entitlement_gate)

        self.observability = store
        self.cards = ClientCardStore(session_factory, entitlements=entitlements, retry_policy=policy)
        self.stamps = StampLedger(
            session_factory,
            registry=registry,
            card_store=self.cards,
            entitlements=entitlements,
            retry_policy=policy,
            observability=store,
        )
        self.catalog = RewardCatalog(session_factory, entitlements=entitlements, retry_policy=policy)
        self.redemptions = RewardRedemptionEngine(
            session_factory,
            registry=registry,
            card_store=self.cards,
            retry_policy=policy,
            observability=store,
        )
        self.campaigns = ScratchCampaignService(session_factory, retry_policy=policy)
        self.scratch = ScratchPrizeAllocator(
            session_factory,
            registry=registry,
            card_store=self.cards,
            retry_policy=policy,
            observability=store,
            rng=rng,
        )

    # Stamp ledger

    async def issue_stamp(
        self,
        business_id: str,
        value: int,
        *,
        stamp_type: StampType | str = StampType.PURCHASE,
        purchase_type: PurchaseType | str | None = None,
        expires_at: datetime | None = None,
        description: str | None = None,
        issued_by: str | None = None,
        timeout: float | None = None,
    ) -> StampCode:
        with tracer.start_as_current_span("loyalty.issue_stamp") as span:
            span.set_attribute("loyalty.business_id", business_id)
            span.set_attribute("loyalty.stamp_value", value)
            return await self.stamps.issue(
                business_id,
                value,
                stamp_type=stamp_type,
                purchase_type=purchase_type,
                expires_at=expires_at,
                description=description,
                issued_by=issued_by,
                timeout=timeout,
            )

    async def redeem_stamp(self, code: str, client_id: str, *, timeout: float | None = None) -> StampRedemptionResult:
        """Claim a stamp code; a brand-new card also receives on-association tickets."""

        with tracer.start_as_current_span("loyalty.redeem_stamp") as span:
            span.set_attribute("loyalty.client_id", client_id)
            result = await self.stamps.redeem(code, client_id, timeout=timeout)
            span.set_attribute("loyalty.is_new_card", result.is_new_card)
            if result.is_new_card:
                await self._issue_association_tickets(client_id, result.card.business_id)
            return result

    async def cancel_stamp_code(self, code: str, business_id: str) -> StampCode:
        with tracer.start_as_current_span("loyalty.cancel_stamp_code"):
            return await self.stamps.cancel(code, business_id)

    async def list_stamp_codes(self, business_id: str, *, status: StampCodeStatus | None = None) -> list[StampCode]:
        return await self.stamps.list_codes(business_id, status=status)

    # Cards

    async def get_card(self, client_id: str, business_id: str) -> ClientCard | None:
        return await self.cards.get_card(client_id, business_id)

    async def join_business(self, client_id: str, business_id: str) -> CardMutation:
        with tracer.start_as_current_span("loyalty.join_business") as span:
            span.set_attribute("loyalty.client_id", client_id)
            span.set_attribute("loyalty.business_id", business_id)
            mutation = await self.cards.join(client_id, business_id)
            if mutation.is_new_card:
                await self._issue_association_tickets(client_id, business_id)
            return mutation

    async def list_entries(self, client_id: str, business_id: str, *, limit: int = 50) -> list[StampLedgerEntry]:
        return await self.cards.list_entries(client_id, business_id, limit=limit)

    # Rewards

    async def create_reward(self, payload: dict[str, Any]) -> Reward:
        return await self.catalog.create_reward(payload)

    async def update_reward(self, reward_id: UUID, payload: dict[str, Any]) -> Reward:
        return await self.catalog.update_reward(reward_id, payload)

    async def redeem_reward(
        self,
        client_id: str,
        reward_id: UUID,
        *,
        timeout: float | None = None,
    ) -> RewardRedemption:
        with tracer.start_as_current_span("loyalty.redeem_reward") as span:
            span.set_attribute("loyalty.client_id", client_id)
            span.set_attribute("loyalty.reward_id", str(reward_id))
            return await self.redemptions.redeem(client_id, reward_id, timeout=timeout)

    async def deliver_redemption(
        self,
        code: str,
        delivered_by: str | None = None,
        *,
        timeout: float | None = None,
    ) -> RewardRedemption:
        with tracer.start_as_current_span("loyalty.deliver_redemption"):
            return await self.redemptions.deliver(code, delivered_by, timeout=timeout)

    async def cancel_redemption(
        self,
        code: str,
        cancelled_by: str | None = None,
        *,
        reason: str | None = None,
        timeout: float | None = None,
    ) -> RewardRedemption:
        with tracer.start_as_current_span("loyalty.cancel_redemption"):
            return await self.redemptions.cancel(code, cancelled_by, reason=reason, timeout=timeout)

    async def list_pending_redemptions(self, business_id: str) -> list[RewardRedemption]:
        return await self.redemptions.list_pending(business_id)

    async def list_client_redemptions(
        self,
        client_id: str,
        *,
        business_id: str | None = None,
    ) -> list[RewardRedemption]:
        return await self.redemptions.list_for_client(client_id, business_id=business_id)

    # Scratch cards

    async def create_campaign(self, payload: dict[str, Any]) -> ScratchCampaign:
        return await self.campaigns.create_campaign(payload)

    async def add_prize(self, campaign_id: UUID, payload: dict[str, Any]) -> ScratchPrize:
        return await self.campaigns.add_prize(campaign_id, payload)

    async def set_campaign_status(self, campaign_id: UUID, status: ScratchCampaignStatus) -> ScratchCampaign:
        return await self.campaigns.set_campaign_status(campaign_id, status)

    async def issue_ticket(
        self,
        client_id: str,
        campaign_id: UUID,
        *,
        timeout: float | None = None,
    ) -> ScratchTicket:
        with tracer.start_as_current_span("loyalty.issue_ticket") as span:
            span.set_attribute("loyalty.client_id", client_id)
            span.set_attribute("loyalty.campaign_id", str(campaign_id))
            return await self.scratch.issue_ticket(client_id, campaign_id, timeout=timeout)

    async def open_campaigns(self, client_id: str, business_id: str) -> list[ScratchTicket]:
        """Client opened the business's scratch area; grant first-open tickets."""

        with tracer.start_as_current_span("loyalty.open_campaigns"):
            return await self.scratch.issue_on_event(client_id, business_id, ScratchIssuancePolicy.ON_FIRST_OPEN)

    async def reveal_ticket(self, ticket_id: UUID, *, timeout: float | None = None) -> ScratchTicket:
        with tracer.start_as_current_span("loyalty.reveal_ticket") as span:
            span.set_attribute("loyalty.ticket_id", str(ticket_id))
            outcome = await self.scratch.reveal_ticket(ticket_id, timeout=timeout)
            span.set_attribute("loyalty.prize_type", outcome.ticket.prize_type.value)
            return outcome.ticket

    async def redeem_ticket(
        self,
        ticket_id: UUID,
        redeemed_by: str | None = None,
        *,
        timeout: float | None = None,
    ) -> ScratchTicket:
        with tracer.start_as_current_span("loyalty.redeem_ticket"):
            return await self.scratch.redeem_ticket(ticket_id, redeemed_by, timeout=timeout)

    async def invalidate_ticket(self, ticket_id: UUID) -> ScratchTicket:
        return await self.scratch.invalidate_ticket(ticket_id)

    async def _issue_association_tickets(self, client_id: str, business_id: str) -> None:
        # The card is already committed; ticket issuance failing must not undo it.
        try:
            tickets = await self.scratch.issue_on_event(
                client_id,
                business_id,
                ScratchIssuancePolicy.ON_ASSOCIATION,
            )
        except LoyaltyError as exc:
            logger.error(
                "On-association ticket issuance failed",
                client_id=client_id,
                business_id=business_id,
                reason=exc.code,
            )
            return
        if tickets:
            logger.info(
                "Issued on-association scratch tickets",
                client_id=client_id,
                business_id=business_id,
                tickets=len(tickets),
            )


__all__ = ["LoyaltyEngine"]
