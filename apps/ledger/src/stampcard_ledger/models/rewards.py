"""Reward catalog entries and the redemption tickets they produce."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from stampcard_ledger.core.timeutil import utcnow
from stampcard_ledger.db.base import Base
from stampcard_ledger.db.types import value_enum

UNLIMITED_STOCK = -1


class Reward(Base):
    """Business-defined reward exchangeable for stamps."""

    __tablename__ = "rewards"
    __table_args__ = (
        CheckConstraint("stamps_cost > 0", name="ck_rewards_cost_positive"),
        CheckConstraint("stock >= -1", name="ck_rewards_stock_sentinel"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    business_id = Column(String(64), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    special_conditions = Column(Text, nullable=True)
    stamps_cost = Column(Integer, nullable=False)
    stock = Column(Integer, nullable=False, default=UNLIMITED_STOCK, server_default=str(UNLIMITED_STOCK))
    expires_at = Column(DateTime(timezone=True), nullable=True)
    one_time_use = Column(Boolean, nullable=False, default=False, server_default="false")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    redemptions = relationship("RewardRedemption", back_populates="reward")

    __mapper_args__ = {"version_id_col": version}

    @property
    def has_unlimited_stock(self) -> bool:
        return self.stock is None or self.stock < 0


class RewardRedemptionStatus(str, Enum):
    """Delivery lifecycle for a redemption ticket. Only PENDING is mutable."""

    PENDING = "pending"
    DELIVERED = "delivered"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class RewardRedemption(Base):
    """Ticket created atomically with the card debit for one reward."""

    __tablename__ = "reward_redemptions"
    __table_args__ = (
        CheckConstraint("stamps_spent > 0", name="ck_reward_redemptions_spent_positive"),
        CheckConstraint(
            "stamps_before - stamps_spent = stamps_after",
            name="ck_reward_redemptions_balanced",
        ),
        Index("ix_reward_redemptions_business_status", "business_id", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String(64), nullable=False, unique=True, index=True)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id"), nullable=False)
    card_id = Column(UUID(as_uuid=True), ForeignKey("client_cards.id"), nullable=False)
    client_id = Column(String(64), nullable=False, index=True)
    business_id = Column(String(64), nullable=False)
    reward_name = Column(String, nullable=False)
    stamps_before = Column(Integer, nullable=False)
    stamps_spent = Column(Integer, nullable=False)
    stamps_after = Column(Integer, nullable=False)
    status = Column(
        value_enum(RewardRedemptionStatus, "reward_redemption_status"),
        nullable=False,
        default=RewardRedemptionStatus.PENDING,
        server_default=RewardRedemptionStatus.PENDING.value,
    )
    expires_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    delivered_by = Column(String(64), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String(64), nullable=True)
    cancellation_reason = Column(String, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    reward = relationship("Reward", back_populates="redemptions")

    __mapper_args__ = {"version_id_col": version}
