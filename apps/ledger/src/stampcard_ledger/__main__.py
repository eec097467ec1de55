import asyncio

from stampcard_ledger import __version__
from stampcard_ledger.core.logging import configure_logging
from stampcard_ledger.core.settings import settings
from stampcard_ledger.db.session import async_session
from stampcard_ledger.jobs.expiry import run_expiry_sweep


def main() -> None:
    """Run one expiry sweep against the configured database."""

    configure_logging(service_name="stampcard-ledger", environment=settings.environment, version=__version__)
    asyncio.run(run_expiry_sweep(session_factory=async_session))


if __name__ == "__main__":
    main()
