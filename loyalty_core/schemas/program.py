from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ProgramCreate(BaseModel):
    business_id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=200)
    accrual_policy: dict = Field(default_factory=dict)


class ProgramRead(BaseModel):
    id: UUID
    business_id: str
    name: str
    accrual_policy: dict
    active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
