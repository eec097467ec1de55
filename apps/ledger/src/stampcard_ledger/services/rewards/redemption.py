"""Exchange of card stamps for rewards and the delivery ticket lifecycle."""

from __future__ import annotations

from datetime import timedelta
from typing import Callable
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stampcard_ledger.core.settings import settings
from stampcard_ledger.core.timeutil import ensure_utc, utcnow
from stampcard_ledger.models.cards import StampLedgerEntryType
from stampcard_ledger.models.rewards import Reward, RewardRedemption, RewardRedemptionStatus
from stampcard_ledger.observability import LedgerObservabilityStore, get_ledger_store
from stampcard_ledger.services.cards import ClientCardStore
from stampcard_ledger.services.codes import CodeKind, CodeRegistry
from stampcard_ledger.services.concurrency import ConflictError, RetryPolicy, run_transaction
from stampcard_ledger.services.errors import (
    CodeAlreadyClaimedError,
    CodeExpiredError,
    CodeNotFoundError,
    InsufficientBalanceError,
    InvalidTransitionError,
    LoyaltyError,
    NotEnoughStampsError,
    RedemptionNotFoundError,
    RewardNotFoundError,
    RewardUnavailableError,
)


class RewardRedemptionEngine:
    """Debit cards against reward costs and track delivery of the result.

    The card debit, the stock decrement and the redemption row commit in
    one transaction. Cancelling a pending redemption is the only path that
    returns stamps to a card.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        registry: CodeRegistry | None = None,
        card_store: ClientCardStore | None = None,
        retry_policy: RetryPolicy | None = None,
        observability: LedgerObservabilityStore | None = None,
        code_ttl_hours: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry or CodeRegistry()
        self._cards = card_store or ClientCardStore(session_factory)
        self._retry_policy = retry_policy
        self._observability = observability or get_ledger_store()
        self._code_ttl_hours = settings.redemption_code_ttl_hours if code_ttl_hours is None else code_ttl_hours

    async def _load_reward(self, session: AsyncSession, reward_id: UUID) -> Reward | None:
        stmt = select(Reward).where(Reward.id == reward_id).execution_options(populate_existing=True)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _has_open_redemption(self, session: AsyncSession, client_id: str, reward_id: UUID) -> bool:
        stmt = (
            select(RewardRedemption.id)
            .where(
                RewardRedemption.client_id == client_id,
                RewardRedemption.reward_id == reward_id,
                RewardRedemption.status != RewardRedemptionStatus.CANCELLED,
            )
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def redeem(
        self,
        client_id: str,
        reward_id: UUID,
        *,
        timeout: float | None = None,
    ) -> RewardRedemption:
        """Spend ``stamps_cost`` from the client's card and open a pending ticket."""

        async def _operation(session: AsyncSession) -> RewardRedemption:
            now = utcnow()
            reward = await self._load_reward(session, reward_id)
            if reward is None:
                raise RewardNotFoundError("Reward not found", reward_id=str(reward_id))
            if not reward.is_active:
                raise RewardUnavailableError("Reward is inactive", reward_id=str(reward_id))
            expires_at = ensure_utc(reward.expires_at)
            if expires_at is not None and expires_at <= now:
                raise RewardUnavailableError("Reward has expired", reward_id=str(reward_id))
            if reward.stock == 0:
                raise RewardUnavailableError("Reward is out of stock", reward_id=str(reward_id))
            if reward.one_time_use and await self._has_open_redemption(session, client_id, reward.id):
                raise RewardUnavailableError(
                    "Reward can only be redeemed once",
                    reward_id=str(reward_id),
                    client_id=client_id,
                )

            code = await self._registry.mint(session, CodeKind.REWARD)
            try:
                mutation = await self._cards.apply_delta(
                    session,
                    client_id,
                    reward.business_id,
                    available_delta=-reward.stamps_cost,
                    total_delta=0,
                    used_delta=reward.stamps_cost,
                    entry_type=StampLedgerEntryType.EXCHANGE,
                    reference=code,
                    description=f"Redeemed {reward.name}",
                    metadata={"reward_id": str(reward.id)},
                    now=now,
                )
            except InsufficientBalanceError as exc:
                raise NotEnoughStampsError(
                    f"Reward costs {reward.stamps_cost} stamps, card has {exc.available}",
                    reward_id=str(reward_id),
                    client_id=client_id,
                    available=exc.available,
                    required=reward.stamps_cost,
                ) from exc

            if not reward.has_unlimited_stock:
                stmt = (
                    update(Reward)
                    .where(Reward.id == reward.id, Reward.stock > 0)
                    .values(stock=Reward.stock - 1, version=Reward.version + 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)
                if result.rowcount != 1:
                    raise ConflictError("Reward stock changed concurrently")

            redemption = RewardRedemption(
                code=code,
                reward_id=reward.id,
                card_id=mutation.card.id,
                client_id=client_id,
                business_id=reward.business_id,
                reward_name=reward.name,
                stamps_before=mutation.before.available,
                stamps_spent=reward.stamps_cost,
                stamps_after=mutation.after.available,
                status=RewardRedemptionStatus.PENDING,
                expires_at=now + timedelta(hours=self._code_ttl_hours) if self._code_ttl_hours else None,
            )
            session.add(redemption)
            await session.flush()
            return redemption

        try:
            redemption = await run_transaction(
                self._session_factory,
                _operation,
                policy=self._retry_policy,
                timeout=timeout,
                label="reward.redeem",
            )
        except (NotEnoughStampsError, RewardUnavailableError) as exc:
            self._observability.record_redemption_event(f"rejected:{exc.code}")
            logger.warning(
                "Reward redemption rejected",
                client_id=client_id,
                reward_id=str(reward_id),
                reason=exc.code,
            )
            raise

        self._observability.record_redemption_event("created")
        logger.info(
            "Created reward redemption",
            redemption_id=str(redemption.id),
            code=redemption.code,
            client_id=client_id,
            business_id=redemption.business_id,
            stamps_spent=redemption.stamps_spent,
            stamps_after=redemption.stamps_after,
        )
        return redemption

    async def deliver(
        self,
        code: str,
        delivered_by: str | None = None,
        *,
        timeout: float | None = None,
    ) -> RewardRedemption:
        """Mark a pending redemption as handed over to the client."""

        normalized = self._registry.normalize(code)

        async def _operation(session: AsyncSession) -> RewardRedemption:
            try:
                claim = await self._registry.claim(session, CodeKind.REWARD, normalized, claimant=delivered_by)
            except CodeNotFoundError as exc:
                raise RedemptionNotFoundError("Redemption not found", code=normalized) from exc
            except CodeAlreadyClaimedError as exc:
                raise InvalidTransitionError(
                    RewardRedemptionStatus(exc.context["status"]),
                    RewardRedemptionStatus.DELIVERED,
                    code=normalized,
                ) from exc
            return claim.record

        try:
            redemption = await run_transaction(
                self._session_factory,
                _operation,
                policy=self._retry_policy,
                timeout=timeout,
                label="reward.deliver",
            )
        except CodeExpiredError:
            self._observability.record_redemption_event("expired")
            logger.warning("Redemption expired before delivery", code=normalized)
            raise
        except InvalidTransitionError as exc:
            logger.warning(
                "Redemption delivery rejected",
                code=normalized,
                status=exc.current_status.value,
            )
            raise

        self._observability.record_redemption_event("delivered")
        logger.info(
            "Delivered reward redemption",
            redemption_id=str(redemption.id),
            code=normalized,
            delivered_by=delivered_by,
        )
        return redemption

    async def cancel(
        self,
        code: str,
        cancelled_by: str | None = None,
        *,
        reason: str | None = None,
        timeout: float | None = None,
    ) -> RewardRedemption:
        """Cancel a pending redemption, refund its stamps and restore stock."""

        normalized = self._registry.normalize(code)

        async def _operation(session: AsyncSession) -> RewardRedemption:
            now = utcnow()
            redemption = await self._registry.lookup(session, CodeKind.REWARD, normalized)
            if redemption is None:
                raise RedemptionNotFoundError("Redemption not found", code=normalized)
            if redemption.status != RewardRedemptionStatus.PENDING:
                raise InvalidTransitionError(
                    redemption.status,
                    RewardRedemptionStatus.CANCELLED,
                    code=normalized,
                )
            expires_at = ensure_utc(redemption.expires_at)
            if expires_at is not None and expires_at <= now:
                await self._registry.mark_expired(session, CodeKind.REWARD, normalized, now=now)
                raise CodeExpiredError("Redemption has expired", retain_writes=True, code=normalized)

            redemption.status = RewardRedemptionStatus.CANCELLED
            redemption.cancelled_at = now
            redemption.cancelled_by = cancelled_by
            redemption.cancellation_reason = reason
            await session.flush()

            await self._cards.apply_delta(
                session,
                redemption.client_id,
                redemption.business_id,
                available_delta=redemption.stamps_spent,
                total_delta=0,
                used_delta=-redemption.stamps_spent,
                entry_type=StampLedgerEntryType.REFUND,
                reference=normalized,
                actor_id=cancelled_by,
                description=reason or f"Cancelled {redemption.reward_name}",
                metadata={"reward_id": str(redemption.reward_id)},
                now=now,
            )

            stmt = (
                update(Reward)
                .where(Reward.id == redemption.reward_id, Reward.stock >= 0)
                .values(stock=Reward.stock + 1, version=Reward.version + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.execute(stmt)
            return redemption

        try:
            redemption = await run_transaction(
                self._session_factory,
                _operation,
                policy=self._retry_policy,
                timeout=timeout,
                label="reward.cancel",
            )
        except LoyaltyError as exc:
            logger.warning("Redemption cancellation rejected", code=normalized, reason=exc.code)
            raise

        self._observability.record_redemption_event("cancelled")
        logger.info(
            "Cancelled reward redemption",
            redemption_id=str(redemption.id),
            code=normalized,
            refunded=redemption.stamps_spent,
            cancelled_by=cancelled_by,
        )
        return redemption

    async def get_redemption(self, code: str) -> RewardRedemption | None:
        async with self._session_factory() as session:
            return await self._registry.lookup(session, CodeKind.REWARD, code)

    async def list_pending(self, business_id: str) -> list[RewardRedemption]:
        """Pending redemptions still inside their delivery window, oldest first."""

        now = utcnow()
        stmt = (
            select(RewardRedemption)
            .where(
                RewardRedemption.business_id == business_id,
                RewardRedemption.status == RewardRedemptionStatus.PENDING,
                or_(RewardRedemption.expires_at.is_(None), RewardRedemption.expires_at > now),
            )
            .order_by(RewardRedemption.created_at.asc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_for_client(
        self,
        client_id: str,
        *,
        business_id: str | None = None,
        limit: int = 50,
    ) -> list[RewardRedemption]:
        stmt = select(RewardRedemption).where(RewardRedemption.client_id == client_id)
        if business_id is not None:
            stmt = stmt.where(RewardRedemption.business_id == business_id)
        stmt = stmt.order_by(RewardRedemption.created_at.desc()).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())


__all__ = ["RewardRedemptionEngine"]
