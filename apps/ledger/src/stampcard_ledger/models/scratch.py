"""Scratch-card campaigns, their weighted prize pools and issued tickets."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from stampcard_ledger.core.timeutil import utcnow
from stampcard_ledger.db.base import Base
from stampcard_ledger.db.types import value_enum


class ScratchCampaignStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ScratchIssuancePolicy(str, Enum):
    """When a client receives tickets without an explicit business action."""

    ON_ASSOCIATION = "on_association"
    ON_FIRST_OPEN = "on_first_open"
    MANUAL = "manual"


class ScratchPrizeType(str, Enum):
    NO_PRIZE = "no_prize"
    STAMPS = "stamps"
    PRODUCT = "product"
    DISCOUNT = "discount"


class ScratchTicketStatus(str, Enum):
    ISSUED = "issued"
    REVEALED = "revealed"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    INACTIVE = "inactive"


class ScratchCampaign(Base):
    """Time-boxed scratch promotion owned by a business."""

    __tablename__ = "scratch_campaigns"
    __table_args__ = (
        CheckConstraint("end_date > start_date", name="ck_scratch_campaigns_window"),
        CheckConstraint("max_cards_per_client >= 1", name="ck_scratch_campaigns_max_cards"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    business_id = Column(String(64), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    status = Column(
        value_enum(ScratchCampaignStatus, "scratch_campaign_status"),
        nullable=False,
        default=ScratchCampaignStatus.ACTIVE,
        server_default=ScratchCampaignStatus.ACTIVE.value,
    )
    issuance_policy = Column(
        value_enum(ScratchIssuancePolicy, "scratch_issuance_policy"),
        nullable=False,
        default=ScratchIssuancePolicy.MANUAL,
        server_default=ScratchIssuancePolicy.MANUAL.value,
    )
    max_cards_per_client = Column(Integer, nullable=False, default=1, server_default="1")
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    prizes = relationship(
        "ScratchPrize",
        back_populates="campaign",
        order_by="ScratchPrize.position",
    )

    __mapper_args__ = {"version_id_col": version}


class ScratchPrize(Base):
    """Weighted entry in a campaign's prize pool."""

    __tablename__ = "scratch_prizes"
    __table_args__ = (
        CheckConstraint("probability >= 0", name="ck_scratch_prizes_probability"),
        CheckConstraint("awarded_count >= 0", name="ck_scratch_prizes_awarded_non_negative"),
        CheckConstraint(
            "inventory_cap IS NULL OR awarded_count <= inventory_cap",
            name="ck_scratch_prizes_within_cap",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    campaign_id = Column(
        UUID(as_uuid=True),
        ForeignKey("scratch_campaigns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String, nullable=False)
    prize_type = Column(value_enum(ScratchPrizeType, "scratch_prize_type"), nullable=False)
    prize_value = Column(Integer, nullable=True)
    probability = Column(Numeric(12, 6), nullable=False)
    inventory_cap = Column(Integer, nullable=True)
    awarded_count = Column(Integer, nullable=False, default=0, server_default="0")
    position = Column(Integer, nullable=False, default=0, server_default="0")
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    campaign = relationship("ScratchCampaign", back_populates="prizes")


class ScratchParticipation(Base):
    """Per (campaign, client) counter that serializes ticket issuance."""

    __tablename__ = "scratch_participations"
    __table_args__ = (
        UniqueConstraint("campaign_id", "client_id", name="uq_scratch_participations_campaign_client"),
        CheckConstraint("active_tickets >= 0", name="ck_scratch_participations_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    campaign_id = Column(
        UUID(as_uuid=True),
        ForeignKey("scratch_campaigns.id", ondelete="CASCADE"),
        nullable=False,
    )
    client_id = Column(String(64), nullable=False)
    active_tickets = Column(Integer, nullable=False, default=0, server_default="0")
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    __mapper_args__ = {"version_id_col": version}


class ScratchTicket(Base):
    """One chance to win exactly one prize from a campaign."""

    __tablename__ = "scratch_tickets"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String(64), nullable=False, unique=True, index=True)
    campaign_id = Column(
        UUID(as_uuid=True),
        ForeignKey("scratch_campaigns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    client_id = Column(String(64), nullable=False, index=True)
    business_id = Column(String(64), nullable=False)
    status = Column(
        value_enum(ScratchTicketStatus, "scratch_ticket_status"),
        nullable=False,
        default=ScratchTicketStatus.ISSUED,
        server_default=ScratchTicketStatus.ISSUED.value,
    )
    issued_via = Column(
        value_enum(ScratchIssuancePolicy, "scratch_issuance_policy"),
        nullable=False,
        default=ScratchIssuancePolicy.MANUAL,
    )
    prize_id = Column(UUID(as_uuid=True), ForeignKey("scratch_prizes.id"), nullable=True)
    prize_type = Column(value_enum(ScratchPrizeType, "scratch_prize_type"), nullable=True)
    prize_value = Column(Integer, nullable=True)
    prize_name = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    revealed_at = Column(DateTime(timezone=True), nullable=True)
    redeemed_at = Column(DateTime(timezone=True), nullable=True)
    redeemed_by = Column(String(64), nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    prize = relationship("ScratchPrize")

    __mapper_args__ = {"version_id_col": version}
