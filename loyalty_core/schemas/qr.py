from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from loyalty_core.domain.enums import QRSubjectKind


class QRPayload(BaseModel):
    """Verified contents of a scanned QR code."""

    kind: QRSubjectKind
    subject_id: str
    audience: str
    issued_at: datetime
    nonce: str
    program_id: UUID | None = None

    model_config = {"frozen": True}


class QRIssueRequest(BaseModel):
    kind: QRSubjectKind
    subject_id: str = Field(..., min_length=1, max_length=64)
    program_id: UUID | None = None


class QRIssueResponse(BaseModel):
    payload: str
    expires_at: datetime


class ScanRequest(BaseModel):
    payload: str = Field(..., min_length=1, max_length=4096)
    delta: int
    program_id: UUID | None = None
    source: str = Field(default="QR_SCAN", min_length=1, max_length=50)


class ScanResult(BaseModel):
    status: str
    card_id: UUID | None = None
    new_balance: int | None = None
    transaction_id: UUID | None = None
    enrollment_id: UUID | None = None


class ScanStats(BaseModel):
    business_id: str
    since: datetime | None = None
    total_scans: int = 0
    awarded: int = 0
    enrollment_pending: int = 0
    rejected: int = 0
    points_awarded: int = 0
    success_rate: float = 0.0
    rejections_by_code: dict[str, int] = Field(default_factory=dict)
