"""Per (client, business) stamp balances and the only code path that moves them."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from stampcard_ledger.core.settings import settings
from stampcard_ledger.core.timeutil import utcnow
from stampcard_ledger.models.cards import ClientCard, StampLedgerEntry, StampLedgerEntryType
from stampcard_ledger.services.concurrency import ConflictError, RetryPolicy, run_transaction
from stampcard_ledger.services.entitlements import EntitlementChecker
from stampcard_ledger.services.errors import (
    CardNotFoundError,
    InsufficientBalanceError,
    InvalidInputError,
)


def compute_level(total_stamps: int, stamps_per_level: int | None = None) -> int:
    """Level derived from lifetime stamps; monotonic because totals never shrink."""

    per_level = stamps_per_level or settings.stamps_per_level
    return 1 + max(int(total_stamps or 0), 0) // per_level


@dataclass(frozen=True, slots=True)
class CardBalance:
    available: int
    used: int
    total: int

    @classmethod
    def of(cls, card: ClientCard) -> "CardBalance":
        return cls(
            available=int(card.available_stamps or 0),
            used=int(card.used_stamps or 0),
            total=int(card.total_stamps or 0),
        )


@dataclass
class CardMutation:
    card: ClientCard
    before: CardBalance
    after: CardBalance
    is_new_card: bool
    entry: StampLedgerEntry | None = None


class ClientCardStore:
    """Owns card counters; ledger and redemption engines call ``apply_delta``."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] | None = None,
        *,
        stamps_per_level: int | None = None,
        entitlements: EntitlementChecker | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._stamps_per_level = stamps_per_level or settings.stamps_per_level
        self._entitlements = entitlements or EntitlementChecker()
        self._retry_policy = retry_policy

    def level_for(self, total_stamps: int) -> int:
        return compute_level(total_stamps, self._stamps_per_level)

    async def load(self, session: AsyncSession, client_id: str, business_id: str) -> ClientCard | None:
        stmt = (
            select(ClientCard)
            .where(ClientCard.client_id == client_id, ClientCard.business_id == business_id)
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure_card(
        self,
        session: AsyncSession,
        client_id: str,
        business_id: str,
    ) -> tuple[ClientCard, bool]:
        """Fetch or create the card; a lost creation race retries the transaction."""

        card = await self.load(session, client_id, business_id)
        if card is not None:
            return card, False

        card = ClientCard(
            client_id=client_id,
            business_id=business_id,
            total_stamps=0,
            available_stamps=0,
            used_stamps=0,
            level=self.level_for(0),
            is_active=True,
        )
        session.add(card)
        try:
            await session.flush()
        except IntegrityError as exc:
            logger.warning(
                "Detected race when creating client card",
                client_id=client_id,
                business_id=business_id,
            )
            raise ConflictError("Card created concurrently") from exc
        logger.info("Created client card", client_id=client_id, business_id=business_id, card_id=str(card.id))
        return card, True

    async def apply_delta(
        self,
        session: AsyncSession,
        client_id: str,
        business_id: str,
        *,
        available_delta: int,
        total_delta: int,
        used_delta: int,
        entry_type: StampLedgerEntryType,
        reference: str | None = None,
        actor_id: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        create_if_missing: bool = False,
        now: datetime | None = None,
    ) -> CardMutation:
        """Apply a balanced delta to the card inside the caller's transaction.

        ``total_delta`` must equal ``available_delta + used_delta`` so the
        balance identity survives every mutation. The write is version-guarded;
        a concurrent writer surfaces as ``StaleDataError`` at flush and the
        caller's transaction runner retries from a fresh read.
        """

        for label, value in (
            ("available_delta", available_delta),
            ("total_delta", total_delta),
            ("used_delta", used_delta),
        ):
            if not isinstance(value, int) or isinstance(value, bool):
                raise InvalidInputError(f"{label} must be an integer")
        if total_delta != available_delta + used_delta:
            raise InvalidInputError(
                "Card delta is unbalanced",
                available_delta=available_delta,
                used_delta=used_delta,
                total_delta=total_delta,
            )
        if available_delta == 0 and used_delta == 0:
            raise InvalidInputError("Card delta must move at least one counter")

        now = now or utcnow()
        is_new_card = False
        if create_if_missing:
            card, is_new_card = await self.ensure_card(session, client_id, business_id)
        else:
            card = await self.load(session, client_id, business_id)
            if card is None:
                if available_delta < 0:
                    raise InsufficientBalanceError(0, -available_delta, client_id=client_id, business_id=business_id)
                raise CardNotFoundError("Client card not found", client_id=client_id, business_id=business_id)

        before = CardBalance.of(card)
        after = CardBalance(
            available=before.available + available_delta,
            used=before.used + used_delta,
            total=before.total + total_delta,
        )
        if after.available < 0:
            raise InsufficientBalanceError(
                before.available,
                -available_delta,
                client_id=client_id,
                business_id=business_id,
            )
        if after.used < 0 or after.total < 0:
            raise InvalidInputError(
                "Card delta would drive counters negative",
                used=after.used,
                total=after.total,
            )

        card.available_stamps = after.available
        card.used_stamps = after.used
        card.total_stamps = after.total
        card.level = self.level_for(after.total)
        if total_delta > 0:
            card.last_stamp_date = now
            card.is_active = True

        entry = StampLedgerEntry(
            card_id=card.id,
            client_id=client_id,
            business_id=business_id,
            entry_type=entry_type,
            stamps=available_delta,
            available_after=after.available,
            reference=reference,
            actor_id=actor_id,
            description=description,
            metadata_json=metadata or {},
            occurred_at=now,
        )
        session.add(entry)
        await session.flush()

        logger.debug(
            "Applied card delta",
            card_id=str(card.id),
            entry_type=entry_type.value,
            available_delta=available_delta,
            used_delta=used_delta,
            total_delta=total_delta,
        )
        return CardMutation(card=card, before=before, after=after, is_new_card=is_new_card, entry=entry)

    def _require_factory(self) -> Callable[[], AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("ClientCardStore was created without a session factory")
        return self._session_factory

    async def get_card(self, client_id: str, business_id: str) -> ClientCard | None:
        async with self._require_factory()() as session:
            return await self.load(session, client_id, business_id)

    async def join(
        self,
        client_id: str,
        business_id: str,
        *,
        timeout: float | None = None,
    ) -> CardMutation:
        """Explicitly associate a client with a business, re-activating old cards."""

        existing = await self.get_card(client_id, business_id)
        if existing is None or not existing.is_active:
            await self._entitlements.ensure_client_quota(business_id)

        async def _operation(session: AsyncSession) -> CardMutation:
            card, is_new = await self.ensure_card(session, client_id, business_id)
            if not card.is_active:
                card.is_active = True
                await session.flush()
            balance = CardBalance.of(card)
            return CardMutation(card=card, before=balance, after=balance, is_new_card=is_new)

        mutation = await run_transaction(
            self._require_factory(),
            _operation,
            policy=self._retry_policy,
            timeout=timeout,
            label="card.join",
        )
        logger.info(
            "Client joined business",
            client_id=client_id,
            business_id=business_id,
            is_new_card=mutation.is_new_card,
        )
        return mutation

    async def deactivate(self, client_id: str, business_id: str, *, timeout: float | None = None) -> ClientCard:
        """Soft-disable a card; balances and history are kept."""

        async def _operation(session: AsyncSession) -> ClientCard:
            card = await self.load(session, client_id, business_id)
            if card is None:
                raise CardNotFoundError("Client card not found", client_id=client_id, business_id=business_id)
            if card.is_active:
                card.is_active = False
                await session.flush()
            return card

        card = await run_transaction(
            self._require_factory(),
            _operation,
            policy=self._retry_policy,
            timeout=timeout,
            label="card.deactivate",
        )
        logger.info("Deactivated client card", client_id=client_id, business_id=business_id)
        return card

    async def list_cards_for_client(self, client_id: str, *, include_inactive: bool = False) -> list[ClientCard]:
        stmt = select(ClientCard).where(ClientCard.client_id == client_id)
        if not include_inactive:
            stmt = stmt.where(ClientCard.is_active.is_(True))
        stmt = stmt.order_by(ClientCard.created_at.asc())
        async with self._require_factory()() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_cards_for_business(self, business_id: str, *, include_inactive: bool = False) -> list[ClientCard]:
        stmt = select(ClientCard).where(ClientCard.business_id == business_id)
        if not include_inactive:
            stmt = stmt.where(ClientCard.is_active.is_(True))
        stmt = stmt.order_by(ClientCard.total_stamps.desc(), ClientCard.created_at.asc())
        async with self._require_factory()() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_entries(
        self,
        client_id: str,
        business_id: str,
        *,
        limit: int = 50,
    ) -> list[StampLedgerEntry]:
        """Most recent ledger entries for one card, newest first."""

        stmt = (
            select(StampLedgerEntry)
            .where(
                StampLedgerEntry.client_id == client_id,
                StampLedgerEntry.business_id == business_id,
            )
            .order_by(StampLedgerEntry.occurred_at.desc())
            .limit(limit)
        )
        async with self._require_factory()() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())


__all__ = ["CardBalance", "CardMutation", "ClientCardStore", "compute_level"]
