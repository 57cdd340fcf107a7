from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query

from loyalty_core.api.deps import get_actor_customer_id, get_card_registry, get_ledger
from loyalty_core.schemas.card import CardRead, CardSummary
from loyalty_core.schemas.transaction import PointTransactionRead
from loyalty_core.services.card_registry import CardRegistry
from loyalty_core.services.exceptions import ForbiddenError
from loyalty_core.services.ledger import TransactionLedger

router = APIRouter(prefix="/cards", tags=["cards"])


async def _owned_card(card_id: uuid.UUID, registry: CardRegistry, actor_customer_id: str | None):
    card = await registry.get_card(card_id)
    if actor_customer_id is not None and card.customer_id != actor_customer_id:
        raise ForbiddenError("Card belongs to another customer")
    return card


@router.get("/{card_id}", response_model=CardRead)
async def get_card(
    card_id: uuid.UUID,
    registry: CardRegistry = Depends(get_card_registry),
    actor_customer_id: str | None = Depends(get_actor_customer_id),
):
    return await _owned_card(card_id, registry, actor_customer_id)


@router.get("/{card_id}/transactions", response_model=list[PointTransactionRead])
async def card_history(
    card_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    registry: CardRegistry = Depends(get_card_registry),
    ledger: TransactionLedger = Depends(get_ledger),
    actor_customer_id: str | None = Depends(get_actor_customer_id),
):
    await _owned_card(card_id, registry, actor_customer_id)
    return await ledger.get_history(card_id, limit=limit, offset=offset)


@router.get("/{card_id}/summary", response_model=CardSummary)
async def card_summary(
    card_id: uuid.UUID,
    registry: CardRegistry = Depends(get_card_registry),
    ledger: TransactionLedger = Depends(get_ledger),
    actor_customer_id: str | None = Depends(get_actor_customer_id),
):
    await _owned_card(card_id, registry, actor_customer_id)
    return await ledger.summarize(card_id)
