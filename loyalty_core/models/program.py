import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, JSON, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from loyalty_core.db.operations import utcnow
from loyalty_core.db.session import Base


class LoyaltyProgram(Base):
    __tablename__ = "loyalty_programs"
    __table_args__ = (Index("ix_loyalty_programs_business", "business_id"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    # Evaluated upstream by the business-rule collaborator; stored verbatim.
    accrual_policy: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
