"""Create stamp ledger, reward redemption and scratch campaign tables.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


stamp_code_status = postgresql.ENUM("active", "used", "expired", "cancelled", name="stamp_code_status", create_type=False)
stamp_type = postgresql.ENUM("purchase", "visit", "referral", "promotion", "bonus", name="stamp_type", create_type=False)
stamp_purchase_type = postgresql.ENUM("small", "medium", "large", "special", name="stamp_purchase_type", create_type=False)
ledger_entry_type = postgresql.ENUM(
    "accumulation", "exchange", "bonus", "refund", name="stamp_ledger_entry_type", create_type=False
)
redemption_status = postgresql.ENUM(
    "pending", "delivered", "expired", "cancelled", name="reward_redemption_status", create_type=False
)
campaign_status = postgresql.ENUM("active", "inactive", name="scratch_campaign_status", create_type=False)
issuance_policy = postgresql.ENUM(
    "on_association", "on_first_open", "manual", name="scratch_issuance_policy", create_type=False
)
prize_type = postgresql.ENUM("no_prize", "stamps", "product", "discount", name="scratch_prize_type", create_type=False)
ticket_status = postgresql.ENUM(
    "issued", "revealed", "redeemed", "expired", "inactive", name="scratch_ticket_status", create_type=False
)

ENUMS = (
    stamp_code_status,
    stamp_type,
    stamp_purchase_type,
    ledger_entry_type,
    redemption_status,
    campaign_status,
    issuance_policy,
    prize_type,
    ticket_status,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        "client_cards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("client_id", sa.String(length=64), nullable=False),
        sa.Column("business_id", sa.String(length=64), nullable=False),
        sa.Column("total_stamps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("available_stamps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("used_stamps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("level", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_stamp_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("client_id", "business_id", name="uq_client_cards_client_business"),
        sa.CheckConstraint("available_stamps >= 0", name="ck_client_cards_available_non_negative"),
        sa.CheckConstraint("used_stamps >= 0", name="ck_client_cards_used_non_negative"),
        sa.CheckConstraint("total_stamps = available_stamps + used_stamps", name="ck_client_cards_total_balanced"),
    )
    op.create_index("ix_client_cards_client_id", "client_cards", ["client_id"])
    op.create_index("ix_client_cards_business_id", "client_cards", ["business_id"])

    op.create_table(
        "stamp_ledger_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("card_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("client_id", sa.String(length=64), nullable=False),
        sa.Column("business_id", sa.String(length=64), nullable=False),
        sa.Column("entry_type", ledger_entry_type, nullable=False),
        sa.Column("stamps", sa.Integer(), nullable=False),
        sa.Column("available_after", sa.Integer(), nullable=False),
        sa.Column("reference", sa.String(length=64), nullable=True),
        sa.Column("actor_id", sa.String(length=64), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["card_id"], ["client_cards.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_stamp_ledger_entries_client_business",
        "stamp_ledger_entries",
        ["client_id", "business_id"],
    )
    op.create_index("ix_stamp_ledger_entries_reference", "stamp_ledger_entries", ["reference"])

    op.create_table(
        "stamp_codes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("business_id", sa.String(length=64), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False),
        sa.Column("stamp_type", stamp_type, nullable=False),
        sa.Column("purchase_type", stamp_purchase_type, nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", stamp_code_status, nullable=False, server_default="active"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("issued_by", sa.String(length=64), nullable=True),
        sa.Column("client_id", sa.String(length=64), nullable=True),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("value > 0", name="ck_stamp_codes_value_positive"),
    )
    op.create_index("ix_stamp_codes_code", "stamp_codes", ["code"], unique=True)
    op.create_index("ix_stamp_codes_business_id", "stamp_codes", ["business_id"])
    op.create_index("ix_stamp_codes_client_id", "stamp_codes", ["client_id"])

    op.create_table(
        "rewards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("business_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("special_conditions", sa.Text(), nullable=True),
        sa.Column("stamps_cost", sa.Integer(), nullable=False),
        sa.Column("stock", sa.Integer(), nullable=False, server_default="-1"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("one_time_use", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("stamps_cost > 0", name="ck_rewards_cost_positive"),
        sa.CheckConstraint("stock >= -1", name="ck_rewards_stock_sentinel"),
    )
    op.create_index("ix_rewards_business_id", "rewards", ["business_id"])

    op.create_table(
        "reward_redemptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("reward_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("card_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("client_id", sa.String(length=64), nullable=False),
        sa.Column("business_id", sa.String(length=64), nullable=False),
        sa.Column("reward_name", sa.String(), nullable=False),
        sa.Column("stamps_before", sa.Integer(), nullable=False),
        sa.Column("stamps_spent", sa.Integer(), nullable=False),
        sa.Column("stamps_after", sa.Integer(), nullable=False),
        sa.Column("status", redemption_status, nullable=False, server_default="pending"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_by", sa.String(length=64), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(length=64), nullable=True),
        sa.Column("cancellation_reason", sa.String(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["reward_id"], ["rewards.id"]),
        sa.ForeignKeyConstraint(["card_id"], ["client_cards.id"]),
        sa.CheckConstraint("stamps_spent > 0", name="ck_reward_redemptions_spent_positive"),
        sa.CheckConstraint("stamps_before - stamps_spent = stamps_after", name="ck_reward_redemptions_balanced"),
    )
    op.create_index("ix_reward_redemptions_code", "reward_redemptions", ["code"], unique=True)
    op.create_index("ix_reward_redemptions_client_id", "reward_redemptions", ["client_id"])
    op.create_index("ix_reward_redemptions_business_status", "reward_redemptions", ["business_id", "status"])

    op.create_table(
        "scratch_campaigns",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("business_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", campaign_status, nullable=False, server_default="active"),
        sa.Column("issuance_policy", issuance_policy, nullable=False, server_default="manual"),
        sa.Column("max_cards_per_client", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("end_date > start_date", name="ck_scratch_campaigns_window"),
        sa.CheckConstraint("max_cards_per_client >= 1", name="ck_scratch_campaigns_max_cards"),
    )
    op.create_index("ix_scratch_campaigns_business_id", "scratch_campaigns", ["business_id"])

    op.create_table(
        "scratch_prizes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("campaign_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("prize_type", prize_type, nullable=False),
        sa.Column("prize_value", sa.Integer(), nullable=True),
        sa.Column("probability", sa.Numeric(12, 6), nullable=False),
        sa.Column("inventory_cap", sa.Integer(), nullable=True),
        sa.Column("awarded_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["campaign_id"], ["scratch_campaigns.id"], ondelete="CASCADE"),
        sa.CheckConstraint("probability >= 0", name="ck_scratch_prizes_probability"),
        sa.CheckConstraint("awarded_count >= 0", name="ck_scratch_prizes_awarded_non_negative"),
        sa.CheckConstraint(
            "inventory_cap IS NULL OR awarded_count <= inventory_cap",
            name="ck_scratch_prizes_within_cap",
        ),
    )
    op.create_index("ix_scratch_prizes_campaign_id", "scratch_prizes", ["campaign_id"])

    op.create_table(
        "scratch_participations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("campaign_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("client_id", sa.String(length=64), nullable=False),
        sa.Column("active_tickets", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["campaign_id"], ["scratch_campaigns.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("campaign_id", "client_id", name="uq_scratch_participations_campaign_client"),
        sa.CheckConstraint("active_tickets >= 0", name="ck_scratch_participations_non_negative"),
    )

    op.create_table(
        "scratch_tickets",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("campaign_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("client_id", sa.String(length=64), nullable=False),
        sa.Column("business_id", sa.String(length=64), nullable=False),
        sa.Column("status", ticket_status, nullable=False, server_default="issued"),
        sa.Column("issued_via", issuance_policy, nullable=False),
        sa.Column("prize_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("prize_type", prize_type, nullable=True),
        sa.Column("prize_value", sa.Integer(), nullable=True),
        sa.Column("prize_name", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revealed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("redeemed_by", sa.String(length=64), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["campaign_id"], ["scratch_campaigns.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["prize_id"], ["scratch_prizes.id"]),
    )
    op.create_index("ix_scratch_tickets_code", "scratch_tickets", ["code"], unique=True)
    op.create_index("ix_scratch_tickets_campaign_id", "scratch_tickets", ["campaign_id"])
    op.create_index("ix_scratch_tickets_client_id", "scratch_tickets", ["client_id"])


def downgrade() -> None:
    op.drop_table("scratch_tickets")
    op.drop_table("scratch_participations")
    op.drop_table("scratch_prizes")
    op.drop_table("scratch_campaigns")
    op.drop_table("reward_redemptions")
    op.drop_table("rewards")
    op.drop_table("stamp_codes")
    op.drop_table("stamp_ledger_entries")
    op.drop_table("client_cards")

    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
