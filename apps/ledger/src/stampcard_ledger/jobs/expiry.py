"""Job that expires overdue stamp codes, redemptions and scratch tickets."""

# meta: job: ledger-expiry-sweep

from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stampcard_ledger.core.settings import settings
from stampcard_ledger.core.timeutil import utcnow
from stampcard_ledger.models.scratch import ScratchTicket, ScratchTicketStatus
from stampcard_ledger.services.codes import CodeKind, CodeRegistry

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def _expire_tickets(session: AsyncSession, now: datetime, limit: int) -> int:
    overdue = (
        select(ScratchTicket.id)
        .where(
            ScratchTicket.status == ScratchTicketStatus.ISSUED,
            ScratchTicket.expires_at.is_not(None),
            ScratchTicket.expires_at <= now,
        )
        .order_by(ScratchTicket.expires_at.asc())
        .limit(limit)
    )
    ids = list((await session.execute(overdue)).scalars().all())
    if not ids:
        return 0
    stmt = (
        update(ScratchTicket)
        .where(ScratchTicket.id.in_(ids), ScratchTicket.status == ScratchTicketStatus.ISSUED)
        .values(
            status=ScratchTicketStatus.EXPIRED,
            version=ScratchTicket.version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return int(result.rowcount or 0)


async def run_expiry_sweep(
    *,
    session_factory: SessionFactory,
    now: datetime | None = None,
    batch_size: int | None = None,
    registry: CodeRegistry | None = None,
) -> Dict[str, int]:
    """Expire one batch of each overdue record kind.

    Pending redemptions that expire keep their stamps spent; only an
    explicit cancellation refunds a card.
    """

    maybe_session = session_factory()
    session: AsyncSession
    if isinstance(maybe_session, AsyncSession):
        session = maybe_session
    else:
        session = await maybe_session

    registry = registry or CodeRegistry()
    limit = batch_size or settings.expiry_sweep_batch_size
    now = now or utcnow()

    async with session as managed_session:
        summary = {
            "stamp_codes": await registry.sweep_expired(managed_session, CodeKind.STAMP, now=now, limit=limit),
            "redemptions": await registry.sweep_expired(managed_session, CodeKind.REWARD, now=now, limit=limit),
            "scratch_tickets": await _expire_tickets(managed_session, now, limit),
        }
        await managed_session.commit()

    logger.bind(summary=summary).info("Ledger expiry sweep completed")
    return summary


__all__ = ["run_expiry_sweep"]
