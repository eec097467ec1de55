from .gate import (  # noqa: F401
    EntitlementChecker,
    EntitlementGate,
    EntitlementUsage,
    LedgerUsageEntitlementGate,
    PlanLimits,
    UnlimitedEntitlementGate,
    UsagePeriod,
)
