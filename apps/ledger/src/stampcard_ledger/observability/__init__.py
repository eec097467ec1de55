from .ledger import LedgerObservabilityStore, LedgerSnapshot, get_ledger_store  # noqa: F401
