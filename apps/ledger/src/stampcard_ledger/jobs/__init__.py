"""Recurring job entrypoints for ledger housekeeping."""

__all__ = ["expiry"]
