"""notification inbox state and qr scan log

Revision ID: 7e2f4a6c9b13
Revises: 3b7c1e9d2a40
Create Date: 2026-10-16 15:00:00.000000
"""
from __future__ import annotations

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "7e2f4a6c9b13"
down_revision: Union[str, Sequence[str], None] = "3b7c1e9d2a40"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


QR_KIND = sa.Enum("customer", "card", name="qrsubjectkind")
SCAN_OUTCOME = sa.Enum("AWARDED", "ENROLLMENT_PENDING", "REJECTED", name="scanoutcome")


def upgrade() -> None:
    """Upgrade schema."""
    # Business targets are "business:<id>", longer than a bare id.
    # NOT NULL with server_default so existing rows stay valid; the ORM sets new values.
    with op.batch_alter_table("notification_events") as batch:
        batch.alter_column("target_id", existing_type=sa.String(length=64), type_=sa.String(length=80))
        batch.add_column(sa.Column("requires_action", sa.Boolean(), nullable=False, server_default=sa.false()))
        batch.add_column(sa.Column("read_at", sa.DateTime(timezone=True), nullable=True))
        batch.add_column(sa.Column("actioned_at", sa.DateTime(timezone=True), nullable=True))
    with op.batch_alter_table("notification_events") as batch:
        batch.alter_column("requires_action", existing_type=sa.Boolean(), server_default=None)
    op.create_index("ix_notification_events_target_unread", "notification_events", ["target_id", "read_at"])

    op.create_table(
        "qr_scan_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("business_id", sa.String(length=64), nullable=True),
        sa.Column("program_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("qr_kind", QR_KIND, nullable=True),
        sa.Column("subject_id", sa.String(length=64), nullable=True),
        sa.Column("card_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("outcome", SCAN_OUTCOME, nullable=False),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("points", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_qr_scan_logs_business_created", "qr_scan_logs", ["business_id", "created_at"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_qr_scan_logs_business_created", table_name="qr_scan_logs")
    op.drop_table("qr_scan_logs")
    bind = op.get_bind()
    for enum_type in (SCAN_OUTCOME, QR_KIND):
        enum_type.drop(bind, checkfirst=True)

    op.drop_index("ix_notification_events_target_unread", table_name="notification_events")
    with op.batch_alter_table("notification_events") as batch:
        batch.drop_column("actioned_at")
        batch.drop_column("read_at")
        batch.drop_column("requires_action")
        batch.alter_column("target_id", existing_type=sa.String(length=80), type_=sa.String(length=64))
