from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from loyalty_core.api.deps import get_ledger
from loyalty_core.schemas.transaction import TransactionCreate, TransactionResult
from loyalty_core.services.ledger import TransactionLedger

router = APIRouter(prefix="/transactions", tags=["transactions"])


@router.post("", response_model=TransactionResult, status_code=status.HTTP_201_CREATED)
async def apply_transaction(
    payload: TransactionCreate,
    response: Response,
    ledger: TransactionLedger = Depends(get_ledger),
):
    result = await ledger.apply_delta(
        payload.card_id,
        payload.delta,
        payload.source,
        payload.idempotency_key,
        metadata=payload.metadata,
    )
    if result.replayed:
        response.headers["Idempotent-Replay"] = "true"
    return TransactionResult(new_balance=result.new_balance, transaction_id=result.transaction_id)
