"""Single-use stamp codes issued by businesses."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from stampcard_ledger.core.timeutil import utcnow
from stampcard_ledger.db.base import Base
from stampcard_ledger.db.types import value_enum


class StampCodeStatus(str, Enum):
    """Lifecycle of a stamp code. Everything but ACTIVE is terminal."""

    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class StampType(str, Enum):
    PURCHASE = "purchase"
    VISIT = "visit"
    REFERRAL = "referral"
    PROMOTION = "promotion"
    BONUS = "bonus"


class PurchaseType(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    SPECIAL = "special"


class StampCode(Base):
    """Token that credits ``value`` stamps to the first client that claims it."""

    __tablename__ = "stamp_codes"
    __table_args__ = (
        CheckConstraint("value > 0", name="ck_stamp_codes_value_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String(64), nullable=False, unique=True, index=True)
    business_id = Column(String(64), nullable=False, index=True)
    value = Column(Integer, nullable=False)
    stamp_type = Column(value_enum(StampType, "stamp_type"), nullable=False)
    purchase_type = Column(value_enum(PurchaseType, "stamp_purchase_type"), nullable=True)
    description = Column(Text, nullable=True)
    status = Column(
        value_enum(StampCodeStatus, "stamp_code_status"),
        nullable=False,
        default=StampCodeStatus.ACTIVE,
        server_default=StampCodeStatus.ACTIVE.value,
    )
    expires_at = Column(DateTime(timezone=True), nullable=True)
    issued_by = Column(String(64), nullable=True)
    client_id = Column(String(64), nullable=True, index=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version}
