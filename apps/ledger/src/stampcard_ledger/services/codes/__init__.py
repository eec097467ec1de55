from .registry import ClaimResult, ClaimRule, CodeKind, CodeRegistry  # noqa: F401
