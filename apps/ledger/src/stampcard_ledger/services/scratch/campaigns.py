"""Scratch campaign and prize-pool administration."""

from __future__ import annotations

from typing import Any, Callable
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from stampcard_ledger.models.scratch import (
    ScratchCampaign,
    ScratchCampaignStatus,
    ScratchPrize,
)
from stampcard_ledger.schemas import (
    ScratchCampaignCreateRequest,
    ScratchPrizeCreateRequest,
    validate_input,
)
from stampcard_ledger.services.concurrency import RetryPolicy, run_transaction
from stampcard_ledger.services.errors import CampaignNotFoundError


def _build_prize(request: ScratchPrizeCreateRequest, position: int) -> ScratchPrize:
    return ScratchPrize(
        name=request.name,
        prize_type=request.prize_type,
        prize_value=request.prize_value,
        probability=request.probability,
        inventory_cap=request.inventory_cap,
        awarded_count=0,
        position=position,
        metadata_json=request.metadata,
    )


class ScratchCampaignService:
    """Create campaigns, manage their prize pools and open or close them."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._retry_policy = retry_policy

    @staticmethod
    async def load(session: AsyncSession, campaign_id: UUID) -> ScratchCampaign | None:
        stmt = (
            select(ScratchCampaign)
            .options(selectinload(ScratchCampaign.prizes))
            .where(ScratchCampaign.id == campaign_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def create_campaign(self, payload: dict[str, Any]) -> ScratchCampaign:
        request = validate_input(ScratchCampaignCreateRequest, payload)

        async def _operation(session: AsyncSession) -> ScratchCampaign:
            campaign = ScratchCampaign(
                business_id=request.business_id,
                name=request.name,
                description=request.description,
                start_date=request.start_date,
                end_date=request.end_date,
                status=ScratchCampaignStatus.ACTIVE,
                issuance_policy=request.issuance_policy,
                max_cards_per_client=request.max_cards_per_client,
            )
            session.add(campaign)
            await session.flush()
            for index, prize_request in enumerate(request.prizes):
                position = index if prize_request.position is None else prize_request.position
                prize = _build_prize(prize_request, position)
                prize.campaign_id = campaign.id
                session.add(prize)
            await session.flush()
            return await self.load(session, campaign.id)

        campaign = await run_transaction(
            self._session_factory,
            _operation,
            policy=self._retry_policy,
            label="scratch.create_campaign",
        )
        logger.info(
            "Created scratch campaign",
            campaign_id=str(campaign.id),
            business_id=campaign.business_id,
            prizes=len(campaign.prizes),
            issuance_policy=campaign.issuance_policy.value,
        )
        return campaign

    async def add_prize(self, campaign_id: UUID, payload: dict[str, Any]) -> ScratchPrize:
        """Append a prize to the pool; it draws after every existing prize."""

        request = validate_input(ScratchPrizeCreateRequest, payload)

        async def _operation(session: AsyncSession) -> ScratchPrize:
            campaign = await session.get(ScratchCampaign, campaign_id)
            if campaign is None:
                raise CampaignNotFoundError("Scratch campaign not found", campaign_id=str(campaign_id))
            position = request.position
            if position is None:
                stmt = select(func.coalesce(func.max(ScratchPrize.position), -1)).where(
                    ScratchPrize.campaign_id == campaign_id
                )
                position = int((await session.execute(stmt)).scalar_one()) + 1
            prize = _build_prize(request, position)
            prize.campaign_id = campaign_id
            session.add(prize)
            await session.flush()
            return prize

        prize = await run_transaction(
            self._session_factory,
            _operation,
            policy=self._retry_policy,
            label="scratch.add_prize",
        )
        logger.info(
            "Added scratch prize",
            campaign_id=str(campaign_id),
            prize_id=str(prize.id),
            prize_type=prize.prize_type.value,
            inventory_cap=prize.inventory_cap,
        )
        return prize

    async def set_campaign_status(
        self,
        campaign_id: UUID,
        status: ScratchCampaignStatus,
    ) -> ScratchCampaign:
        async def _operation(session: AsyncSession) -> ScratchCampaign:
            campaign = await self.load(session, campaign_id)
            if campaign is None:
                raise CampaignNotFoundError("Scratch campaign not found", campaign_id=str(campaign_id))
            if campaign.status != status:
                campaign.status = status
                await session.flush()
            return campaign

        campaign = await run_transaction(
            self._session_factory,
            _operation,
            policy=self._retry_policy,
            label="scratch.set_campaign_status",
        )
        logger.info("Updated scratch campaign status", campaign_id=str(campaign_id), status=status.value)
        return campaign

    async def get_campaign(self, campaign_id: UUID) -> ScratchCampaign | None:
        async with self._session_factory() as session:
            return await self.load(session, campaign_id)

    async def list_campaigns(self, business_id: str, *, active_only: bool = False) -> list[ScratchCampaign]:
        stmt = (
            select(ScratchCampaign)
            .options(selectinload(ScratchCampaign.prizes))
            .where(ScratchCampaign.business_id == business_id)
        )
        if active_only:
            stmt = stmt.where(ScratchCampaign.status == ScratchCampaignStatus.ACTIVE)
        stmt = stmt.order_by(ScratchCampaign.start_date.desc())
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())


__all__ = ["ScratchCampaignService"]
