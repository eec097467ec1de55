"""Scratch ticket issuance and capped weighted-random prize resolution."""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from stampcard_ledger.core.timeutil import ensure_utc, utcnow
from stampcard_ledger.models.cards import StampLedgerEntryType
from stampcard_ledger.models.scratch import (
    ScratchCampaign,
    ScratchCampaignStatus,
    ScratchIssuancePolicy,
    ScratchParticipation,
    ScratchPrize,
    ScratchPrizeType,
    ScratchTicket,
    ScratchTicketStatus,
)
from stampcard_ledger.observability import LedgerObservabilityStore, get_ledger_store
from stampcard_ledger.services.cards import ClientCardStore
from stampcard_ledger.services.codes import CodeKind, CodeRegistry
from stampcard_ledger.services.concurrency import ConflictError, RetryPolicy, run_transaction
from stampcard_ledger.services.errors import (
    CampaignClosedError,
    CampaignNotFoundError,
    CodeAlreadyClaimedError,
    CodeExpiredError,
    CodeNotFoundError,
    InvalidInputError,
    InvalidTransitionError,
    QuotaExceededError,
    TicketNotFoundError,
)

NO_PRIZE_NAME = "No prize"


def pick_weighted(prizes: Sequence[ScratchPrize], draw: float) -> ScratchPrize | None:
    """Return the first prize whose cumulative interval contains ``draw``.

    ``draw`` must lie in ``[0, sum(weights))``. Zero-weight prizes own an
    empty interval and are never picked.
    """

    cumulative = 0.0
    last_positive: ScratchPrize | None = None
    for prize in prizes:
        weight = max(float(prize.probability or 0), 0.0)
        if weight <= 0:
            continue
        cumulative += weight
        last_positive = prize
        if draw < cumulative:
            return prize
    # Float rounding can leave ``draw`` a hair above the final boundary.
    return last_positive


@dataclass
class RevealOutcome:
    ticket: ScratchTicket
    stamps_credited: int = 0
    already_revealed: bool = False


class ScratchPrizeAllocator:
    """Issue tickets under per-client caps and resolve each to one prize.

    Prize inventory is enforced by a conditional increment of
    ``awarded_count``; a prize that fills between the read and the write is
    excluded and the draw repeats over what is left.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        registry: CodeRegistry | None = None,
        card_store: ClientCardStore | None = None,
        retry_policy: RetryPolicy | None = None,
        observability: LedgerObservabilityStore | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry or CodeRegistry()
        self._cards = card_store or ClientCardStore(session_factory)
        self._retry_policy = retry_policy
        self._observability = observability or get_ledger_store()
        self._rng = rng or random.SystemRandom()

    @staticmethod
    async def _load_campaign(session: AsyncSession, campaign_id: UUID) -> ScratchCampaign | None:
        stmt = (
            select(ScratchCampaign)
            .where(ScratchCampaign.id == campaign_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def _load_ticket(session: AsyncSession, ticket_id: UUID) -> ScratchTicket | None:
        stmt = (
            select(ScratchTicket)
            .where(ScratchTicket.id == ticket_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def _load_participation(
        session: AsyncSession,
        campaign_id: UUID,
        client_id: str,
    ) -> ScratchParticipation | None:
        stmt = (
            select(ScratchParticipation)
            .where(
                ScratchParticipation.campaign_id == campaign_id,
                ScratchParticipation.client_id == client_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _ensure_open(campaign: ScratchCampaign, now: datetime) -> None:
        if campaign.status != ScratchCampaignStatus.ACTIVE:
            raise CampaignClosedError("Scratch campaign is inactive", campaign_id=str(campaign.id))
        start = ensure_utc(campaign.start_date)
        end = ensure_utc(campaign.end_date)
        if now < start or now >= end:
            raise CampaignClosedError(
                "Scratch campaign is outside its window",
                campaign_id=str(campaign.id),
                start_date=start.isoformat(),
                end_date=end.isoformat(),
            )

    async def issue_ticket(
        self,
        client_id: str,
        campaign_id: UUID,
        *,
        issued_via: ScratchIssuancePolicy = ScratchIssuancePolicy.MANUAL,
        timeout: float | None = None,
    ) -> ScratchTicket:
        """Create an Issued ticket if the campaign is open and the client has room."""

        if not client_id or not str(client_id).strip():
            raise InvalidInputError("client_id is required")

        async def _operation(session: AsyncSession) -> ScratchTicket:
            now = utcnow()
            campaign = await self._load_campaign(session, campaign_id)
            if campaign is None:
                raise CampaignNotFoundError("Scratch campaign not found", campaign_id=str(campaign_id))
            self._ensure_open(campaign, now)

            participation = await self._load_participation(session, campaign_id, client_id)
            if participation is None:
                participation = ScratchParticipation(
                    campaign_id=campaign_id,
                    client_id=client_id,
                    active_tickets=0,
                )
                session.add(participation)
                try:
                    await session.flush()
                except IntegrityError as exc:
                    raise ConflictError("Participation created concurrently") from exc

            if participation.active_tickets >= campaign.max_cards_per_client:
                raise QuotaExceededError(
                    "Client already holds the maximum tickets for this campaign",
                    campaign_id=str(campaign_id),
                    client_id=client_id,
                    limit=campaign.max_cards_per_client,
                )
            participation.active_tickets += 1

            ticket = ScratchTicket(
                code=await self._registry.mint(session, CodeKind.SCRATCH),
                campaign_id=campaign_id,
                client_id=client_id,
                business_id=campaign.business_id,
                status=ScratchTicketStatus.ISSUED,
                issued_via=issued_via,
                expires_at=campaign.end_date,
            )
            session.add(ticket)
            await session.flush()
            return ticket

        ticket = await run_transaction(
            self._session_factory,
            _operation,
            policy=self._retry_policy,
            timeout=timeout,
            label="scratch.issue",
        )
        self._observability.record_ticket_event("issued")
        logger.info(
            "Issued scratch ticket",
            ticket_id=str(ticket.id),
            campaign_id=str(campaign_id),
            client_id=client_id,
            issued_via=issued_via.value,
        )
        return ticket

    async def issue_on_event(
        self,
        client_id: str,
        business_id: str,
        trigger: ScratchIssuancePolicy,
        *,
        timeout: float | None = None,
    ) -> list[ScratchTicket]:
        """Issue one ticket per open campaign whose policy matches ``trigger``.

        Each automatic policy grants a client at most one ticket per campaign;
        campaigns the client already participates in are skipped.
        """

        if trigger == ScratchIssuancePolicy.MANUAL:
            raise InvalidInputError("Manual campaigns are issued explicitly")

        now = utcnow()
        stmt = select(ScratchCampaign).where(
            ScratchCampaign.business_id == business_id,
            ScratchCampaign.status == ScratchCampaignStatus.ACTIVE,
            ScratchCampaign.issuance_policy == trigger,
            ScratchCampaign.start_date <= now,
            ScratchCampaign.end_date > now,
        )
        joined: set[UUID] = set()
        async with self._session_factory() as session:
            campaigns = list((await session.execute(stmt)).scalars().all())
            if campaigns:
                joined_stmt = select(ScratchParticipation.campaign_id).where(
                    ScratchParticipation.client_id == client_id,
                    ScratchParticipation.campaign_id.in_([campaign.id for campaign in campaigns]),
                )
                joined = set((await session.execute(joined_stmt)).scalars().all())

        tickets: list[ScratchTicket] = []
        for campaign in campaigns:
            if campaign.id in joined:
                continue
            try:
                tickets.append(
                    await self.issue_ticket(client_id, campaign.id, issued_via=trigger, timeout=timeout)
                )
            except (CampaignClosedError, QuotaExceededError) as exc:
                logger.info(
                    "Skipped automatic scratch issuance",
                    campaign_id=str(campaign.id),
                    client_id=client_id,
                    reason=exc.code,
                )
        return tickets

    async def _draw(self, session: AsyncSession, campaign_id: UUID) -> ScratchPrize | None:
        """Award one prize, or ``None`` when nothing with weight is left."""

        excluded: set[UUID] = set()
        while True:
            stmt = (
                select(ScratchPrize)
                .where(
                    ScratchPrize.campaign_id == campaign_id,
                    or_(
                        ScratchPrize.inventory_cap.is_(None),
                        ScratchPrize.awarded_count < ScratchPrize.inventory_cap,
                    ),
                )
                .order_by(ScratchPrize.position.asc(), ScratchPrize.id.asc())
                .execution_options(populate_existing=True)
            )
            if excluded:
                stmt = stmt.where(ScratchPrize.id.not_in(excluded))
            candidates = list((await session.execute(stmt)).scalars().all())
            total = sum(max(float(prize.probability or 0), 0.0) for prize in candidates)
            if total <= 0:
                return None

            chosen = pick_weighted(candidates, self._rng.random() * total)
            if chosen is None:
                return None

            increment = (
                update(ScratchPrize)
                .where(
                    ScratchPrize.id == chosen.id,
                    or_(
                        ScratchPrize.inventory_cap.is_(None),
                        ScratchPrize.awarded_count < ScratchPrize.inventory_cap,
                    ),
                )
                .values(awarded_count=ScratchPrize.awarded_count + 1)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(increment)
            if result.rowcount == 1:
                return chosen
            logger.debug("Prize inventory filled during draw", prize_id=str(chosen.id))
            excluded.add(chosen.id)

    async def reveal_ticket(self, ticket_id: UUID, *, timeout: float | None = None) -> RevealOutcome:
        """Resolve an Issued ticket to exactly one prize.

        Revealing an already revealed or redeemed ticket returns the stored
        prize without drawing again.
        """

        async def _operation(session: AsyncSession) -> RevealOutcome:
            now = utcnow()
            ticket = await self._load_ticket(session, ticket_id)
            if ticket is None:
                raise TicketNotFoundError("Scratch ticket not found", ticket_id=str(ticket_id))
            if ticket.status in (ScratchTicketStatus.REVEALED, ScratchTicketStatus.REDEEMED):
                return RevealOutcome(ticket=ticket, already_revealed=True)
            if ticket.status != ScratchTicketStatus.ISSUED:
                raise InvalidTransitionError(ticket.status, ScratchTicketStatus.REVEALED, ticket_id=str(ticket_id))

            expires_at = ensure_utc(ticket.expires_at)
            if expires_at is not None and expires_at <= now:
                ticket.status = ScratchTicketStatus.EXPIRED
                await session.flush()
                raise CodeExpiredError("Scratch ticket has expired", retain_writes=True, code=ticket.code)

            campaign = await self._load_campaign(session, ticket.campaign_id)
            if campaign is None or campaign.status != ScratchCampaignStatus.ACTIVE:
                raise CampaignClosedError("Scratch campaign is inactive", campaign_id=str(ticket.campaign_id))

            prize = await self._draw(session, ticket.campaign_id)
            ticket.status = ScratchTicketStatus.REVEALED
            ticket.revealed_at = now
            if prize is None:
                ticket.prize_id = None
                ticket.prize_type = ScratchPrizeType.NO_PRIZE
                ticket.prize_value = None
                ticket.prize_name = NO_PRIZE_NAME
            else:
                ticket.prize_id = prize.id
                ticket.prize_type = prize.prize_type
                ticket.prize_value = prize.prize_value
                ticket.prize_name = prize.name
            await session.flush()

            credited = 0
            if ticket.prize_type == ScratchPrizeType.STAMPS and ticket.prize_value:
                credited = int(ticket.prize_value)
                await self._cards.apply_delta(
                    session,
                    ticket.client_id,
                    ticket.business_id,
                    available_delta=credited,
                    total_delta=credited,
                    used_delta=0,
                    entry_type=StampLedgerEntryType.BONUS,
                    reference=ticket.code,
                    description=f"Scratch prize {ticket.prize_name}",
                    metadata={"campaign_id": str(ticket.campaign_id), "ticket_id": str(ticket.id)},
                    create_if_missing=True,
                    now=now,
                )
            return RevealOutcome(ticket=ticket, stamps_credited=credited)

        try:
            outcome = await run_transaction(
                self._session_factory,
                _operation,
                policy=self._retry_policy,
                timeout=timeout,
                label="scratch.reveal",
            )
        except CodeExpiredError:
            self._observability.record_ticket_event("expired")
            logger.warning("Scratch ticket expired before reveal", ticket_id=str(ticket_id))
            raise

        ticket = outcome.ticket
        if not outcome.already_revealed:
            self._observability.record_ticket_event("revealed")
            self._observability.record_prize_awarded(ticket.prize_type.value)
            logger.info(
                "Revealed scratch ticket",
                ticket_id=str(ticket.id),
                client_id=ticket.client_id,
                prize_type=ticket.prize_type.value,
                prize_id=str(ticket.prize_id) if ticket.prize_id else None,
                stamps_credited=outcome.stamps_credited,
            )
        return outcome

    async def redeem_ticket(
        self,
        ticket_id: UUID,
        redeemed_by: str | None = None,
        *,
        timeout: float | None = None,
    ) -> ScratchTicket:
        """Move a Revealed ticket to Redeemed when the prize is handed over."""

        async def _operation(session: AsyncSession) -> ScratchTicket:
            ticket = await self._load_ticket(session, ticket_id)
            if ticket is None:
                raise TicketNotFoundError("Scratch ticket not found", ticket_id=str(ticket_id))
            try:
                claim = await self._registry.claim(session, CodeKind.SCRATCH, ticket.code, claimant=redeemed_by)
            except CodeAlreadyClaimedError as exc:
                raise InvalidTransitionError(
                    ScratchTicketStatus(exc.context["status"]),
                    ScratchTicketStatus.REDEEMED,
                    ticket_id=str(ticket_id),
                ) from exc
            except CodeNotFoundError as exc:
                raise TicketNotFoundError("Scratch ticket not found", ticket_id=str(ticket_id)) from exc
            return claim.record

        ticket = await run_transaction(
            self._session_factory,
            _operation,
            policy=self._retry_policy,
            timeout=timeout,
            label="scratch.redeem",
        )
        self._observability.record_ticket_event("redeemed")
        logger.info("Redeemed scratch ticket", ticket_id=str(ticket_id), redeemed_by=redeemed_by)
        return ticket

    async def invalidate_ticket(self, ticket_id: UUID, *, timeout: float | None = None) -> ScratchTicket:
        """Administratively void an Issued ticket and free the client's slot."""

        async def _operation(session: AsyncSession) -> ScratchTicket:
            ticket = await self._load_ticket(session, ticket_id)
            if ticket is None:
                raise TicketNotFoundError("Scratch ticket not found", ticket_id=str(ticket_id))
            if ticket.status != ScratchTicketStatus.ISSUED:
                raise InvalidTransitionError(ticket.status, ScratchTicketStatus.INACTIVE, ticket_id=str(ticket_id))
            ticket.status = ScratchTicketStatus.INACTIVE
            participation = await self._load_participation(session, ticket.campaign_id, ticket.client_id)
            if participation is not None and participation.active_tickets > 0:
                participation.active_tickets -= 1
            await session.flush()
            return ticket

        ticket = await run_transaction(
            self._session_factory,
            _operation,
            policy=self._retry_policy,
            timeout=timeout,
            label="scratch.invalidate",
        )
        self._observability.record_ticket_event("invalidated")
        logger.info("Invalidated scratch ticket", ticket_id=str(ticket_id), client_id=ticket.client_id)
        return ticket

    async def get_ticket(self, ticket_id: UUID) -> ScratchTicket | None:
        async with self._session_factory() as session:
            return await self._load_ticket(session, ticket_id)

    async def list_tickets(
        self,
        client_id: str,
        *,
        campaign_id: UUID | None = None,
        status: ScratchTicketStatus | None = None,
    ) -> list[ScratchTicket]:
        stmt = select(ScratchTicket).where(ScratchTicket.client_id == client_id)
        if campaign_id is not None:
            stmt = stmt.where(ScratchTicket.campaign_id == campaign_id)
        if status is not None:
            stmt = stmt.where(ScratchTicket.status == status)
        stmt = stmt.order_by(ScratchTicket.created_at.desc())
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())


__all__ = ["NO_PRIZE_NAME", "RevealOutcome", "ScratchPrizeAllocator", "pick_weighted"]
