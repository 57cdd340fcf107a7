import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, Index, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from loyalty_core.db.operations import utcnow
from loyalty_core.db.session import Base
from loyalty_core.domain.enums import QRSubjectKind, ScanOutcome


class QRScanLog(Base):
    """Audit row for every scan attempt, including rejected ones.

    Fields are filled as far as the scan got: a token with a bad signature
    has no kind or subject, only the scanning business when it identified itself.
    """

    __tablename__ = "qr_scan_logs"
    __table_args__ = (Index("ix_qr_scan_logs_business_created", "business_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    program_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    qr_kind: Mapped[QRSubjectKind | None] = mapped_column(Enum(QRSubjectKind), nullable=True)
    subject_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    card_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    outcome: Mapped[ScanOutcome] = mapped_column(Enum(ScanOutcome), nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    points: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
