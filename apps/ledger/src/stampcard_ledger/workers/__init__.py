"""Background workers supporting ledger housekeeping."""

from .expiry_sweep import ExpirySweepWorker

__all__ = ["ExpirySweepWorker"]
