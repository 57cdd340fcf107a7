from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from loyalty_core.domain.enums import CardStatus, CardTier


class CardRead(BaseModel):
    id: UUID
    enrollment_id: UUID
    customer_id: str
    program_id: UUID
    card_number: str
    balance: int
    tier: CardTier
    status: CardStatus
    version: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CardSummary(BaseModel):
    card_id: UUID
    balance: int
    total_earned: int
    total_redeemed: int
    transaction_count: int
    consistent: bool
