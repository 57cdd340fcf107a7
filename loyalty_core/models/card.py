import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, Index, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from loyalty_core.db.operations import utcnow
from loyalty_core.db.session import Base
from loyalty_core.domain.enums import CardStatus, CardTier


def new_card_number() -> str:
    return f"LC-{uuid.uuid4().hex[:12].upper()}"


class LoyaltyCard(Base):
    __tablename__ = "loyalty_cards"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_loyalty_cards_balance_non_negative"),
        Index("ix_loyalty_cards_customer", "customer_id"),
        Index("ix_loyalty_cards_customer_program", "customer_id", "program_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    enrollment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("enrollments.id", ondelete="RESTRICT"), nullable=False, unique=True
    )
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    program_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("loyalty_programs.id", ondelete="RESTRICT"), nullable=False
    )
    card_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, default=new_card_number)
    # The only balance column. Totals such as "points earned" are derived from
    # point_transactions, never stored alongside it.
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tier: Mapped[CardTier] = mapped_column(Enum(CardTier), nullable=False, default=CardTier.STANDARD)
    status: Mapped[CardStatus] = mapped_column(Enum(CardStatus), nullable=False, default=CardStatus.ACTIVE)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
