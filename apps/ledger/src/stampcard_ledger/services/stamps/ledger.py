"""Issuance and consumption of stamp codes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stampcard_ledger.core.settings import settings
from stampcard_ledger.core.timeutil import utcnow
from stampcard_ledger.models.cards import ClientCard, StampLedgerEntryType
from stampcard_ledger.models.stamps import PurchaseType, StampCode, StampCodeStatus, StampType
from stampcard_ledger.observability import LedgerObservabilityStore, get_ledger_store
from stampcard_ledger.schemas import StampIssueRequest, validate_input
from stampcard_ledger.services.cards import ClientCardStore
from stampcard_ledger.services.codes import CodeKind, CodeRegistry
from stampcard_ledger.services.concurrency import RetryPolicy, run_transaction
from stampcard_ledger.services.entitlements import EntitlementChecker
from stampcard_ledger.services.errors import (
    CodeNotFoundError,
    InvalidInputError,
    InvalidTransitionError,
    StateConflictError,
)


@dataclass
class StampRedemptionResult:
    """Card state after a successful stamp claim."""

    stamp_code: StampCode
    card: ClientCard
    stamps_credited: int
    is_new_card: bool


class StampLedger:
    """Issues stamp codes and credits cards when clients claim them."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        registry: CodeRegistry | None = None,
        card_store: ClientCardStore | None = None,
        entitlements: EntitlementChecker | None = None,
        retry_policy: RetryPolicy | None = None,
        observability: LedgerObservabilityStore | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry or CodeRegistry()
        self._cards = card_store or ClientCardStore(session_factory)
        self._entitlements = entitlements or EntitlementChecker()
        self._retry_policy = retry_policy
        self._observability = observability or get_ledger_store()

    async def issue(
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
        """Mint a single-use code worth ``value`` stamps at ``business_id``."""

        request = validate_input(
            StampIssueRequest,
            {
                "business_id": business_id,
                "value": value,
                "stamp_type": stamp_type,
                "purchase_type": purchase_type,
                "expires_at": expires_at,
                "description": description,
                "issued_by": issued_by,
            },
        )
        now = utcnow()
        if request.expires_at is not None and request.expires_at <= now:
            raise InvalidInputError("Stamp code expiry must be in the future")
        expiry = request.expires_at
        if expiry is None and settings.stamp_code_default_ttl_days:
            expiry = now + timedelta(days=settings.stamp_code_default_ttl_days)

        await self._entitlements.ensure_stamp_quota(request.business_id, request.value, now=now)

        async def _operation(session: AsyncSession) -> StampCode:
            code = await self._registry.mint(session, CodeKind.STAMP)
            stamp_code = StampCode(
                code=code,
                business_id=request.business_id,
                value=request.value,
                stamp_type=request.stamp_type,
                purchase_type=request.purchase_type,
                description=request.description,
                status=StampCodeStatus.ACTIVE,
                expires_at=expiry,
                issued_by=request.issued_by,
            )
            session.add(stamp_code)
            await session.flush()
            return stamp_code

        stamp_code = await run_transaction(
            self._session_factory,
            _operation,
            policy=self._retry_policy,
            timeout=timeout,
            label="stamp.issue",
        )
        self._observability.record_stamps_issued(stamp_code.value)
        logger.info(
            "Issued stamp code",
            code=stamp_code.code,
            business_id=stamp_code.business_id,
            value=stamp_code.value,
            stamp_type=stamp_code.stamp_type.value,
        )
        return stamp_code

    async def redeem(
        self,
        code: str,
        client_id: str,
        *,
        timeout: float | None = None,
    ) -> StampRedemptionResult:
        """Claim ``code`` for ``client_id`` and credit the card in one transaction.

        The claim and the credit commit together; if the card write loses a
        race the whole attempt, claim included, rolls back and is retried.
        """

        normalized = self._registry.normalize(code)
        if not client_id or not str(client_id).strip():
            raise InvalidInputError("client_id is required")

        async def _operation(session: AsyncSession) -> StampRedemptionResult:
            now = utcnow()
            claim = await self._registry.claim(session, CodeKind.STAMP, normalized, claimant=client_id, now=now)
            stamp_code: StampCode = claim.record
            mutation = await self._cards.apply_delta(
                session,
                client_id,
                stamp_code.business_id,
                available_delta=stamp_code.value,
                total_delta=stamp_code.value,
                used_delta=0,
                entry_type=StampLedgerEntryType.ACCUMULATION,
                reference=stamp_code.code,
                description=stamp_code.description or f"Stamp code {stamp_code.code}",
                metadata={
                    "stamp_type": stamp_code.stamp_type.value,
                    "purchase_type": stamp_code.purchase_type.value if stamp_code.purchase_type else None,
                },
                create_if_missing=True,
                now=now,
            )
            return StampRedemptionResult(
                stamp_code=stamp_code,
                card=mutation.card,
                stamps_credited=stamp_code.value,
                is_new_card=mutation.is_new_card,
            )

        try:
            result = await run_transaction(
                self._session_factory,
                _operation,
                policy=self._retry_policy,
                timeout=timeout,
                label="stamp.redeem",
            )
        except (StateConflictError, CodeNotFoundError) as exc:
            self._observability.record_claim_failure(exc.code)
            logger.warning("Stamp code claim rejected", code=normalized, client_id=client_id, reason=exc.code)
            raise

        self._observability.record_stamps_claimed(result.stamps_credited, new_card=result.is_new_card)
        logger.info(
            "Redeemed stamp code",
            code=normalized,
            client_id=client_id,
            business_id=result.card.business_id,
            stamps=result.stamps_credited,
            available=result.card.available_stamps,
            is_new_card=result.is_new_card,
        )
        return result

    async def cancel(
        self,
        code: str,
        business_id: str,
        *,
        timeout: float | None = None,
    ) -> StampCode:
        """Withdraw an unclaimed code. Terminal codes are immutable."""

        normalized = self._registry.normalize(code)

        async def _operation(session: AsyncSession) -> StampCode:
            now = utcnow()
            stmt = (
                update(StampCode)
                .where(
                    StampCode.code == normalized,
                    StampCode.business_id == business_id,
                    StampCode.status == StampCodeStatus.ACTIVE,
                )
                .values(
                    status=StampCodeStatus.CANCELLED,
                    cancelled_at=now,
                    version=StampCode.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            record = await self._registry.lookup(session, CodeKind.STAMP, normalized)
            if record is None or record.business_id != business_id:
                raise CodeNotFoundError("Unknown stamp code", code=normalized)
            if result.rowcount != 1:
                raise InvalidTransitionError(record.status, StampCodeStatus.CANCELLED, code=normalized)
            return record

        stamp_code = await run_transaction(
            self._session_factory,
            _operation,
            policy=self._retry_policy,
            timeout=timeout,
            label="stamp.cancel",
        )
        logger.info("Cancelled stamp code", code=normalized, business_id=business_id)
        return stamp_code

    async def get_code(self, code: str) -> StampCode | None:
        async with self._session_factory() as session:
            return await self._registry.lookup(session, CodeKind.STAMP, code)

    async def list_codes(
        self,
        business_id: str,
        *,
        status: StampCodeStatus | None = None,
        limit: int = 100,
    ) -> list[StampCode]:
        stmt = select(StampCode).where(StampCode.business_id == business_id)
        if status is not None:
            stmt = stmt.where(StampCode.status == status)
        stmt = stmt.order_by(StampCode.created_at.desc()).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())


__all__ = ["StampLedger", "StampRedemptionResult"]
