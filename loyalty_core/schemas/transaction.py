from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class TransactionCreate(BaseModel):
    card_id: UUID
    delta: int
    source: str = Field(..., min_length=1, max_length=50)
    idempotency_key: str = Field(..., min_length=1, max_length=255)
    metadata: dict | None = None


class TransactionResult(BaseModel):
    new_balance: int
    transaction_id: UUID


class PointTransactionRead(BaseModel):
    id: UUID
    card_id: UUID
    delta: int
    source: str
    idempotency_key: str
    balance_after: int
    card_version: int
    metadata: dict | None = Field(default=None, validation_alias="details")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
