from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from loyalty_core.domain.enums import ApprovalStatus, EnrollmentStatus


class EnrollmentInvite(BaseModel):
    customer_id: str = Field(..., min_length=1, max_length=64)
    program_id: UUID


class EnrollmentRespond(BaseModel):
    accept: bool


class EnrollmentRevoke(BaseModel):
    reason: str | None = Field(default=None, max_length=200)


class ApprovalRequestRead(BaseModel):
    id: UUID
    status: ApprovalStatus
    requested_at: datetime
    expires_at: datetime
    responded_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class EnrollmentRead(BaseModel):
    id: UUID
    customer_id: str
    program_id: UUID
    status: EnrollmentStatus
    created_at: datetime
    updated_at: datetime
    approval_request: ApprovalRequestRead | None = None
    card_id: UUID | None = None

    model_config = ConfigDict(from_attributes=True)
