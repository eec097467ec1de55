"""Typed failures returned by the loyalty core.

Every mutating call either returns the new state or raises exactly one of
these. Callers branch on the family (``StateConflictError`` is final,
``ContentionError`` / ``UnavailableError`` may be retried later) or on the
stable ``code`` attribute.
"""

from __future__ import annotations

from typing import Any


class LoyaltyError(RuntimeError):
    """Base exception for loyalty core failures."""

    code = "loyalty_error"
    retain_writes = False

    def __init__(self, message: str | None = None, **context: Any) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.context = context


class InvalidInputError(LoyaltyError, ValueError):
    """Input rejected before any side effect."""

    code = "invalid_input"


class NotFoundError(LoyaltyError):
    """Referenced record does not exist."""

    code = "not_found"


class CodeNotFoundError(NotFoundError):
    code = "code_not_found"


class CardNotFoundError(NotFoundError):
    code = "card_not_found"


class RewardNotFoundError(NotFoundError):
    code = "reward_not_found"


class RedemptionNotFoundError(NotFoundError):
    code = "redemption_not_found"


class CampaignNotFoundError(NotFoundError):
    code = "campaign_not_found"


class TicketNotFoundError(NotFoundError):
    code = "ticket_not_found"


class StateConflictError(LoyaltyError):
    """Request conflicts with the current persisted state; retrying will not help."""

    code = "state_conflict"


class CodeAlreadyClaimedError(StateConflictError):
    code = "code_already_claimed"


class CodeExpiredError(StateConflictError):
    code = "code_expired"

    def __init__(self, message: str | None = None, *, retain_writes: bool = False, **context: Any) -> None:
        super().__init__(message, **context)
        self.retain_writes = retain_writes


class InvalidTransitionError(StateConflictError):
    code = "invalid_transition"

    def __init__(self, current: Any, requested: Any, **context: Any) -> None:
        current_label = getattr(current, "value", current)
        requested_label = getattr(requested, "value", requested)
        super().__init__(f"Cannot transition from {current_label} to {requested_label}", **context)
        self.current_status = current
        self.requested_status = requested


class InsufficientBalanceError(StateConflictError):
    code = "insufficient_balance"

    def __init__(self, available: int, requested: int, **context: Any) -> None:
        super().__init__(
            f"Card has {available} available stamps, {requested} requested",
            available=available,
            requested=requested,
            **context,
        )
        self.available = available
        self.requested = requested


class NotEnoughStampsError(StateConflictError):
    code = "not_enough_stamps"


class QuotaExceededError(StateConflictError):
    code = "quota_exceeded"


class InvalidQuotaError(QuotaExceededError):
    """Plan quota for the requested resource is exhausted."""

    code = "invalid_quota"


class RewardUnavailableError(StateConflictError):
    code = "reward_unavailable"


class CampaignClosedError(StateConflictError):
    code = "campaign_closed"


class ContentionError(LoyaltyError):
    """Lost optimistic concurrency races for the whole retry budget."""

    code = "contention"


class OperationTimeoutError(LoyaltyError):
    """Caller deadline elapsed before the operation could commit."""

    code = "timeout"


class UnavailableError(LoyaltyError):
    """A dependency (persistence or entitlement gate) is unavailable."""

    code = "unavailable"


__all__ = [
    "CampaignClosedError",
    "CampaignNotFoundError",
    "CardNotFoundError",
    "CodeAlreadyClaimedError",
    "CodeExpiredError",
    "CodeNotFoundError",
    "ContentionError",
    "InsufficientBalanceError",
    "InvalidInputError",
    "InvalidQuotaError",
    "InvalidTransitionError",
    "LoyaltyError",
    "NotEnoughStampsError",
    "NotFoundError",
    "OperationTimeoutError",
    "QuotaExceededError",
    "RedemptionNotFoundError",
    "RewardNotFoundError",
    "RewardUnavailableError",
    "StateConflictError",
    "TicketNotFoundError",
    "UnavailableError",
]
