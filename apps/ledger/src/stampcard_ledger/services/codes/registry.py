"""Minting and single-claim semantics for every redeemable code kind."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stampcard_ledger.core.settings import settings
from stampcard_ledger.core.timeutil import ensure_utc, utcnow
from stampcard_ledger.models.rewards import RewardRedemption, RewardRedemptionStatus
from stampcard_ledger.models.scratch import ScratchTicket, ScratchTicketStatus
from stampcard_ledger.models.stamps import StampCode, StampCodeStatus
from stampcard_ledger.services.errors import (
    CodeAlreadyClaimedError,
    CodeExpiredError,
    CodeNotFoundError,
    ContentionError,
    InvalidInputError,
)

# Crockford-style alphabet: no 0/O, 1/I/L ambiguity when read aloud at a counter.
CODE_ALPHABET = "23456789ABCDEFGHJKMNPQRSTUVWXYZ"


class CodeKind(str, Enum):
    STAMP = "stamp"
    REWARD = "reward"
    SCRATCH = "scratch"


@dataclass(frozen=True, slots=True)
class ClaimRule:
    """Claim-validity rule for one code kind."""

    kind: CodeKind
    prefix: str
    model: Any
    claimable_status: Enum
    claimed_status: Enum
    expired_status: Enum | None
    claimant_column: str
    claimed_at_column: str
    enforce_expiry: bool = True


CLAIM_RULES: dict[CodeKind, ClaimRule] = {
    CodeKind.STAMP: ClaimRule(
        kind=CodeKind.STAMP,
        prefix="ST",
        model=StampCode,
        claimable_status=StampCodeStatus.ACTIVE,
        claimed_status=StampCodeStatus.USED,
        expired_status=StampCodeStatus.EXPIRED,
        claimant_column="client_id",
        claimed_at_column="used_at",
    ),
    CodeKind.REWARD: ClaimRule(
        kind=CodeKind.REWARD,
        prefix="RW",
        model=RewardRedemption,
        claimable_status=RewardRedemptionStatus.PENDING,
        claimed_status=RewardRedemptionStatus.DELIVERED,
        expired_status=RewardRedemptionStatus.EXPIRED,
        claimant_column="delivered_by",
        claimed_at_column="delivered_at",
    ),
    # Tickets lapse with their campaign window only while still unrevealed;
    # a revealed prize stays redeemable.
    CodeKind.SCRATCH: ClaimRule(
        kind=CodeKind.SCRATCH,
        prefix="SC",
        model=ScratchTicket,
        claimable_status=ScratchTicketStatus.REVEALED,
        claimed_status=ScratchTicketStatus.REDEEMED,
        expired_status=None,
        claimant_column="redeemed_by",
        claimed_at_column="redeemed_at",
        enforce_expiry=False,
    ),
}


@dataclass
class ClaimResult:
    """Outcome of a successful claim: the record now in its claimed status."""

    kind: CodeKind
    code: str
    record: Any
    claimed_at: datetime


class CodeRegistry:
    """Mints unguessable codes and performs atomic check-and-claim transitions.

    All methods run inside the caller's session so a claim commits or rolls
    back together with the balance mutation it guards.
    """

    def __init__(
        self,
        *,
        code_length: int | None = None,
        mint_attempts: int | None = None,
    ) -> None:
        self._code_length = code_length or settings.code_length
        self._mint_attempts = mint_attempts or settings.code_mint_attempts

    @staticmethod
    def rule_for(kind: CodeKind) -> ClaimRule:
        return CLAIM_RULES[kind]

    def generate(self, kind: CodeKind) -> str:
        body = "".join(secrets.choice(CODE_ALPHABET) for _ in range(self._code_length))
        return f"{CLAIM_RULES[kind].prefix}-{body}"

    @staticmethod
    def normalize(code: str) -> str:
        if not isinstance(code, str) or not code.strip():
            raise InvalidInputError("Code must be a non-empty string")
        return code.strip().upper()

    async def mint(self, session: AsyncSession, kind: CodeKind) -> str:
        """Return a code not yet bound to any record of ``kind``.

        The unique constraint on ``code`` backstops the race between this
        lookup and the caller's insert.
        """

        rule = CLAIM_RULES[kind]
        for _ in range(self._mint_attempts):
            candidate = self.generate(kind)
            stmt = select(rule.model.id).where(rule.model.code == candidate)
            result = await session.execute(stmt)
            if result.scalar_one_or_none() is None:
                return candidate
            logger.warning("Minted code collided, regenerating", kind=kind.value)
        raise ContentionError("Unable to mint a unique code", kind=kind.value)

    async def lookup(self, session: AsyncSession, kind: CodeKind, code: str) -> Any | None:
        rule = CLAIM_RULES[kind]
        stmt = (
            select(rule.model)
            .where(rule.model.code == self.normalize(code))
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def claim(
        self,
        session: AsyncSession,
        kind: CodeKind,
        code: str,
        *,
        claimant: str | None,
        now: datetime | None = None,
    ) -> ClaimResult:
        """Atomically move ``code`` from its claimable to its claimed status.

        A single conditional UPDATE decides the winner: concurrent claimers
        on the same code observe ``CodeAlreadyClaimedError``.
        """

        rule = CLAIM_RULES[kind]
        model = rule.model
        normalized = self.normalize(code)
        now = now or utcnow()

        conditions = [model.code == normalized, model.status == rule.claimable_status]
        if rule.enforce_expiry:
            conditions.append(or_(model.expires_at.is_(None), model.expires_at > now))

        stmt = (
            update(model)
            .where(*conditions)
            .values(
                {
                    "status": rule.claimed_status,
                    rule.claimant_column: claimant,
                    rule.claimed_at_column: now,
                    "version": model.version + 1,
                    "updated_at": now,
                }
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        record = await self.lookup(session, kind, normalized)

        if result.rowcount == 1 and record is not None:
            logger.debug("Claimed code", kind=kind.value, code=normalized, claimant=claimant)
            return ClaimResult(kind=kind, code=normalized, record=record, claimed_at=now)

        if record is None:
            raise CodeNotFoundError(f"Unknown {kind.value} code", code=normalized)

        if (
            rule.enforce_expiry
            and record.status == rule.claimable_status
            and self._is_past_expiry(record, now)
        ):
            await self.mark_expired(session, kind, normalized, now=now)
            raise CodeExpiredError(
                f"{kind.value.title()} code has expired",
                retain_writes=True,
                code=normalized,
            )

        if rule.expired_status is not None and record.status == rule.expired_status:
            raise CodeExpiredError(f"{kind.value.title()} code has expired", code=normalized)

        raise CodeAlreadyClaimedError(
            f"{kind.value.title()} code is {record.status.value}",
            code=normalized,
            status=record.status.value,
        )

    async def mark_expired(
        self,
        session: AsyncSession,
        kind: CodeKind,
        code: str,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Transition a still-claimable code to its expired status."""

        rule = CLAIM_RULES[kind]
        if rule.expired_status is None:
            return False
        model = rule.model
        now = now or utcnow()
        stmt = (
            update(model)
            .where(model.code == code, model.status == rule.claimable_status)
            .values(status=rule.expired_status, version=model.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount:
            logger.info("Code expired", kind=kind.value, code=code)
        return bool(result.rowcount)

    async def sweep_expired(
        self,
        session: AsyncSession,
        kind: CodeKind,
        *,
        now: datetime | None = None,
        limit: int | None = None,
    ) -> int:
        """Bulk-expire up to ``limit`` claimable codes of ``kind`` past expiry."""

        rule = CLAIM_RULES[kind]
        if rule.expired_status is None:
            return 0
        model = rule.model
        now = now or utcnow()
        overdue = (
            select(model.id)
            .where(
                model.status == rule.claimable_status,
                model.expires_at.is_not(None),
                model.expires_at <= now,
            )
            .order_by(model.expires_at.asc())
        )
        if limit is not None:
            overdue = overdue.limit(limit)
        ids = list((await session.execute(overdue)).scalars().all())
        if not ids:
            return 0
        stmt = (
            update(model)
            .where(model.id.in_(ids), model.status == rule.claimable_status)
            .values(status=rule.expired_status, version=model.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return int(result.rowcount or 0)

    @staticmethod
    def _is_past_expiry(record: Any, now: datetime) -> bool:
        expires_at = ensure_utc(getattr(record, "expires_at", None))
        return expires_at is not None and expires_at <= now


__all__ = ["CLAIM_RULES", "ClaimResult", "ClaimRule", "CodeKind", "CodeRegistry"]
