"""Validated input objects for business-initiated operations."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from stampcard_ledger.core.timeutil import ensure_utc
from stampcard_ledger.models.rewards import UNLIMITED_STOCK
from stampcard_ledger.models.scratch import ScratchIssuancePolicy, ScratchPrizeType
from stampcard_ledger.models.stamps import PurchaseType, StampType
from stampcard_ledger.services.errors import InvalidInputError

ModelT = TypeVar("ModelT", bound=BaseModel)

_IDENTIFIER = Field(..., min_length=1, max_length=64)


def _to_camel(value: str) -> str:
    head, *tail = value.split("_")
    return head + "".join(part.title() for part in tail)


class _InputModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        alias_generator=_to_camel,
        extra="forbid",
        str_strip_whitespace=True,
    )


class StampIssueRequest(_InputModel):
    business_id: str = _IDENTIFIER
    value: int = Field(..., gt=0, le=1000)
    stamp_type: StampType = StampType.PURCHASE
    purchase_type: PurchaseType | None = None
    description: str | None = Field(None, max_length=500)
    expires_at: datetime | None = None
    issued_by: str | None = Field(None, max_length=64)

    @field_validator("expires_at")
    @classmethod
    def _normalize_expiry(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)


class RewardCreateRequest(_InputModel):
    business_id: str = _IDENTIFIER
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(None, max_length=2000)
    special_conditions: str | None = Field(None, max_length=2000)
    stamps_cost: int = Field(..., gt=0)
    stock: int = Field(UNLIMITED_STOCK, ge=UNLIMITED_STOCK)
    expires_at: datetime | None = None
    one_time_use: bool = False
    is_active: bool = True

    @field_validator("expires_at")
    @classmethod
    def _normalize_expiry(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)


_REQUIRED_REWARD_FIELDS = ("name", "stamps_cost", "stock", "one_time_use", "is_active")


class RewardUpdateRequest(_InputModel):
    name: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = Field(None, max_length=2000)
    special_conditions: str | None = Field(None, max_length=2000)
    stamps_cost: int | None = Field(None, gt=0)
    stock: int | None = Field(None, ge=UNLIMITED_STOCK)
    expires_at: datetime | None = None
    one_time_use: bool | None = None
    is_active: bool | None = None

    @field_validator("expires_at")
    @classmethod
    def _normalize_expiry(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _validate_changes(self) -> "RewardUpdateRequest":
        if not self.model_fields_set:
            raise ValueError("At least one field must be updated")
        cleared = sorted(
            field
            for field in _REQUIRED_REWARD_FIELDS
            if field in self.model_fields_set and getattr(self, field) is None
        )
        if cleared:
            raise ValueError(f"Fields cannot be cleared: {', '.join(cleared)}")
        return self


class ScratchPrizeCreateRequest(_InputModel):
    name: str = Field(..., min_length=1, max_length=200)
    prize_type: ScratchPrizeType
    prize_value: int | None = Field(None, ge=0)
    probability: float = Field(..., ge=0)
    inventory_cap: int | None = Field(None, ge=0)
    position: int | None = Field(None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _require_stamp_value(self) -> "ScratchPrizeCreateRequest":
        if self.prize_type == ScratchPrizeType.STAMPS and not self.prize_value:
            raise ValueError("Stamp prizes require a positive prize_value")
        return self


class ScratchCampaignCreateRequest(_InputModel):
    business_id: str = _IDENTIFIER
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(None, max_length=2000)
    start_date: datetime
    end_date: datetime
    issuance_policy: ScratchIssuancePolicy = ScratchIssuancePolicy.MANUAL
    max_cards_per_client: int = Field(1, ge=1)
    prizes: list[ScratchPrizeCreateRequest] = Field(default_factory=list)

    @field_validator("start_date", "end_date")
    @classmethod
    def _normalize_dates(cls, value: datetime) -> datetime:
        return ensure_utc(value)  # type: ignore[return-value]

    @model_validator(mode="after")
    def _validate_window(self) -> "ScratchCampaignCreateRequest":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


def validate_input(model: Type[ModelT], payload: dict[str, Any]) -> ModelT:
    """Build ``model`` from ``payload``, translating pydantic failures."""

    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        errors = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        raise InvalidInputError(f"Invalid {model.__name__}", errors=errors) from exc


__all__ = [
    "RewardCreateRequest",
    "RewardUpdateRequest",
    "ScratchCampaignCreateRequest",
    "ScratchPrizeCreateRequest",
    "StampIssueRequest",
    "validate_input",
]
