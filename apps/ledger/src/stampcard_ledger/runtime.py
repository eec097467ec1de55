"""Process wiring: logging, tracing, the engine and background workers."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from loguru import logger

from stampcard_ledger import __version__
from stampcard_ledger.core.logging import configure_logging
from stampcard_ledger.core.settings import settings
from stampcard_ledger.core.tracing import configure_tracing
from stampcard_ledger.db.session import async_session
from stampcard_ledger.services.engine import LoyaltyEngine
from stampcard_ledger.services.entitlements import LedgerUsageEntitlementGate
from stampcard_ledger.workers import ExpirySweepWorker

SERVICE_NAME = "stampcard-ledger"


def _session_factory():
    return async_session()


@asynccontextmanager
async def ledger_runtime() -> AsyncIterator[LoyaltyEngine]:
    """Yield a configured engine; the expiry worker runs while the context is open."""

    configure_logging(service_name=SERVICE_NAME, environment=settings.environment, version=__version__)
    configure_tracing(service_name=SERVICE_NAME, service_version=__version__, environment=settings.environment)

    engine = LoyaltyEngine(
        _session_factory,
        entitlement_gate=LedgerUsageEntitlementGate(_session_factory),
    )
    sweep_worker = ExpirySweepWorker(session_factory=_session_factory)

    if settings.expiry_sweep_enabled:
        sweep_worker.start()
    else:
        logger.info("Expiry sweep worker disabled", reason="expiry_sweep_enabled is false")

    try:
        yield engine
    finally:
        await sweep_worker.stop()
