from .ledger import StampLedger, StampRedemptionResult  # noqa: F401
