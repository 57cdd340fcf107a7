"""loyalty core initial schema

Revision ID: 3b7c1e9d2a40
Revises:
Create Date: 2026-10-16 09:00:00.000000
"""
from __future__ import annotations

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3b7c1e9d2a40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ENROLLMENT_STATUS = sa.Enum(
    "INVITED", "PENDING_APPROVAL", "ACTIVE", "DECLINED", "REVOKED", name="enrollmentstatus"
)
APPROVAL_STATUS = sa.Enum("PENDING", "ACCEPTED", "DECLINED", "EXPIRED", name="approvalstatus")
CARD_STATUS = sa.Enum("ACTIVE", "INACTIVE", name="cardstatus")
CARD_TIER = sa.Enum("STANDARD", "SILVER", "GOLD", "PLATINUM", name="cardtier")
EVENT_TYPE = sa.Enum(
    "BALANCE_CHANGED",
    "ENROLLMENT_REQUESTED",
    "ENROLLMENT_ACCEPTED",
    "ENROLLMENT_DECLINED",
    "ENROLLMENT_EXPIRED",
    "ENROLLMENT_REVOKED",
    name="notificationeventtype",
)


def upgrade() -> None:
    op.create_table(
        "loyalty_programs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("business_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("accrual_policy", sa.JSON(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_loyalty_programs_business", "loyalty_programs", ["business_id"])

    op.create_table(
        "enrollments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("customer_id", sa.String(length=64), nullable=False),
        sa.Column("program_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("status", ENROLLMENT_STATUS, nullable=False),
        # One live enrollment per customer/program; NULL once terminal.
        sa.Column("active_key", sa.String(length=200), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["program_id"], ["loyalty_programs.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("active_key", name="uq_enrollments_active_key"),
    )
    op.create_index("ix_enrollments_customer", "enrollments", ["customer_id"])
    op.create_index("ix_enrollments_program_status", "enrollments", ["program_id", "status"])

    op.create_table(
        "approval_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("enrollment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("status", APPROVAL_STATUS, nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["enrollment_id"], ["enrollments.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_approval_requests_enrollment", "approval_requests", ["enrollment_id"])
    op.create_index("ix_approval_requests_status_expires", "approval_requests", ["status", "expires_at"])

    op.create_table(
        "loyalty_cards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("enrollment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("customer_id", sa.String(length=64), nullable=False),
        sa.Column("program_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("card_number", sa.String(length=32), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tier", CARD_TIER, nullable=False),
        sa.Column("status", CARD_STATUS, nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["enrollment_id"], ["enrollments.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["program_id"], ["loyalty_programs.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("enrollment_id", name="uq_loyalty_cards_enrollment"),
        sa.UniqueConstraint("card_number", name="uq_loyalty_cards_card_number"),
        sa.CheckConstraint("balance >= 0", name="ck_loyalty_cards_balance_non_negative"),
    )
    op.create_index("ix_loyalty_cards_customer", "loyalty_cards", ["customer_id"])
    op.create_index("ix_loyalty_cards_customer_program", "loyalty_cards", ["customer_id", "program_id"])

    op.create_table(
        "point_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("card_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(length=50), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("card_version", sa.Integer(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["card_id"], ["loyalty_cards.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("idempotency_key", name="uq_point_transactions_idempotency_key"),
    )
    op.create_index("ix_point_transactions_card_created", "point_transactions", ["card_id", "created_at"])

    op.create_table(
        "notification_events",
        sa.Column("sequence", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True),
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("type", EVENT_TYPE, nullable=False),
        sa.Column("target_id", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("dedupe_key", sa.String(length=255), nullable=False),
        sa.Column("coalesce_key", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("id", name="uq_notification_events_id"),
        sa.UniqueConstraint("dedupe_key", name="uq_notification_events_dedupe_key"),
    )
    op.create_index("ix_notification_events_target_sequence", "notification_events", ["target_id", "sequence"])


def downgrade() -> None:
    op.drop_index("ix_notification_events_target_sequence", table_name="notification_events")
    op.drop_table("notification_events")
    op.drop_index("ix_point_transactions_card_created", table_name="point_transactions")
    op.drop_table("point_transactions")
    op.drop_index("ix_loyalty_cards_customer_program", table_name="loyalty_cards")
    op.drop_index("ix_loyalty_cards_customer", table_name="loyalty_cards")
    op.drop_table("loyalty_cards")
    op.drop_index("ix_approval_requests_status_expires", table_name="approval_requests")
    op.drop_index("ix_approval_requests_enrollment", table_name="approval_requests")
    op.drop_table("approval_requests")
    op.drop_index("ix_enrollments_program_status", table_name="enrollments")
    op.drop_index("ix_enrollments_customer", table_name="enrollments")
    op.drop_table("enrollments")
    op.drop_index("ix_loyalty_programs_business", table_name="loyalty_programs")
    op.drop_table("loyalty_programs")

    bind = op.get_bind()
    for enum_type in (EVENT_TYPE, CARD_TIER, CARD_STATUS, APPROVAL_STATUS, ENROLLMENT_STATUS):
        enum_type.drop(bind, checkfirst=True)
