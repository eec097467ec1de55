"""Business-managed reward catalog."""

from __future__ import annotations

from typing import Any, Callable
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stampcard_ledger.core.timeutil import utcnow
from stampcard_ledger.models.rewards import Reward
from stampcard_ledger.schemas import RewardCreateRequest, RewardUpdateRequest, validate_input
from stampcard_ledger.services.concurrency import RetryPolicy, run_transaction
from stampcard_ledger.services.entitlements import EntitlementChecker
from stampcard_ledger.services.errors import RewardNotFoundError


class RewardCatalog:
    """Create and maintain the rewards a business offers."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        entitlements: EntitlementChecker | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._entitlements = entitlements or EntitlementChecker()
        self._retry_policy = retry_policy

    async def create_reward(self, payload: dict[str, Any]) -> Reward:
        request = validate_input(RewardCreateRequest, payload)
        if request.is_active:
            await self._entitlements.ensure_reward_quota(request.business_id)

        async def _operation(session: AsyncSession) -> Reward:
            reward = Reward(
                business_id=request.business_id,
                name=request.name,
                description=request.description,
                special_conditions=request.special_conditions,
                stamps_cost=request.stamps_cost,
                stock=request.stock,
                expires_at=request.expires_at,
                one_time_use=request.one_time_use,
                is_active=request.is_active,
            )
            session.add(reward)
            await session.flush()
            return reward

        reward = await run_transaction(
            self._session_factory,
            _operation,
            policy=self._retry_policy,
            label="reward.create",
        )
        logger.info(
            "Created reward",
            reward_id=str(reward.id),
            business_id=reward.business_id,
            stamps_cost=reward.stamps_cost,
            stock=reward.stock,
        )
        return reward

    async def update_reward(self, reward_id: UUID, payload: dict[str, Any]) -> Reward:
        """Apply a partial update. Re-activating a reward is quota-gated."""

        request = validate_input(RewardUpdateRequest, payload)
        changes = request.model_dump(include=request.model_fields_set)

        current = await self.get_reward(reward_id)
        if current is None:
            raise RewardNotFoundError("Reward not found", reward_id=str(reward_id))
        if changes.get("is_active") and not current.is_active:
            await self._entitlements.ensure_reward_quota(current.business_id)

        async def _operation(session: AsyncSession) -> Reward:
            reward = await self._load(session, reward_id)
            if reward is None:
                raise RewardNotFoundError("Reward not found", reward_id=str(reward_id))
            for field, value in changes.items():
                setattr(reward, field, value)
            reward.updated_at = utcnow()
            await session.flush()
            return reward

        reward = await run_transaction(
            self._session_factory,
            _operation,
            policy=self._retry_policy,
            label="reward.update",
        )
        logger.info("Updated reward", reward_id=str(reward_id), fields=sorted(changes))
        return reward

    @staticmethod
    async def _load(session: AsyncSession, reward_id: UUID) -> Reward | None:
        stmt = select(Reward).where(Reward.id == reward_id).execution_options(populate_existing=True)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_reward(self, reward_id: UUID) -> Reward | None:
        async with self._session_factory() as session:
            return await self._load(session, reward_id)

    async def list_rewards(self, business_id: str, *, active_only: bool = True) -> list[Reward]:
        stmt = select(Reward).where(Reward.business_id == business_id)
        if active_only:
            stmt = stmt.where(Reward.is_active.is_(True))
        stmt = stmt.order_by(Reward.stamps_cost.asc(), Reward.name.asc())
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())


__all__ = ["RewardCatalog"]
