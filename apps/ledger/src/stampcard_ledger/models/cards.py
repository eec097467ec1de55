"""Client card balance aggregate and its ledger history."""

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
    JSON,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from stampcard_ledger.core.timeutil import utcnow
from stampcard_ledger.db.base import Base
from stampcard_ledger.db.types import value_enum


class ClientCard(Base):
    """Per (client, business) stamp balance."""

    __tablename__ = "client_cards"
    __table_args__ = (
        UniqueConstraint("client_id", "business_id", name="uq_client_cards_client_business"),
        CheckConstraint("available_stamps >= 0", name="ck_client_cards_available_non_negative"),
        CheckConstraint("used_stamps >= 0", name="ck_client_cards_used_non_negative"),
        CheckConstraint(
            "total_stamps = available_stamps + used_stamps",
            name="ck_client_cards_total_balanced",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(String(64), nullable=False, index=True)
    business_id = Column(String(64), nullable=False, index=True)
    total_stamps = Column(Integer, nullable=False, default=0, server_default="0")
    available_stamps = Column(Integer, nullable=False, default=0, server_default="0")
    used_stamps = Column(Integer, nullable=False, default=0, server_default="0")
    level = Column(Integer, nullable=False, default=1, server_default="1")
    last_stamp_date = Column(DateTime(timezone=True), nullable=True)
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

    ledger_entries = relationship("StampLedgerEntry", back_populates="card")

    __mapper_args__ = {"version_id_col": version}


class StampLedgerEntryType(str, Enum):
    """Why a card balance moved."""

    ACCUMULATION = "accumulation"
    EXCHANGE = "exchange"
    BONUS = "bonus"
    REFUND = "refund"


class StampLedgerEntry(Base):
    """Append-only history of card balance mutations."""

    __tablename__ = "stamp_ledger_entries"
    __table_args__ = (
        Index("ix_stamp_ledger_entries_client_business", "client_id", "business_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    card_id = Column(UUID(as_uuid=True), ForeignKey("client_cards.id", ondelete="CASCADE"), nullable=False)
    client_id = Column(String(64), nullable=False)
    business_id = Column(String(64), nullable=False)
    entry_type = Column(value_enum(StampLedgerEntryType, "stamp_ledger_entry_type"), nullable=False)
    stamps = Column(Integer, nullable=False)
    available_after = Column(Integer, nullable=False)
    reference = Column(String(64), nullable=True, index=True)
    actor_id = Column(String(64), nullable=True)
    description = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    occurred_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    card = relationship("ClientCard", back_populates="ledger_entries")
