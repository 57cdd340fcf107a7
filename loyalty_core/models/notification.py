import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, Index, Integer, JSON, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from loyalty_core.db.operations import utcnow
from loyalty_core.db.session import Base
from loyalty_core.domain.enums import NotificationEventType


class NotificationEvent(Base):
    """Outbound fact written with the state change that produced it.

    Type, target and payload never change. Only the inbox state (``read_at``,
    ``actioned_at``) is updated after the row is written.
    """

    __tablename__ = "notification_events"
    __table_args__ = (
        Index("ix_notification_events_target_sequence", "target_id", "sequence"),
        Index("ix_notification_events_target_unread", "target_id", "read_at"),
    )

    sequence: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, unique=True, default=uuid.uuid4)
    type: Mapped[NotificationEventType] = mapped_column(Enum(NotificationEventType), nullable=False)
    # Customer id, or "business:<business_id>" for business views.
    target_id: Mapped[str] = mapped_column(String(80), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    coalesce_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    requires_action: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actioned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
