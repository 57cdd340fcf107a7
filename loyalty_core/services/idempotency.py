from __future__ import annotations

import re
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_core.core.logging import get_logger
from loyalty_core.models.ledger import PointTransaction
from loyalty_core.services.exceptions import DomainValidationError, IdempotencyKeyConflict

logger = get_logger(__name__)

_KEY_PATTERN = re.compile(r"[A-Za-z0-9_.:/@-]{1,255}")


class IdempotencyGuard:
    """Read-only gate in front of the ledger.

    Keys never expire: a replay of the same key resolves to the recorded
    transaction for as long as the transaction exists.
    """

    @staticmethod
    def validate_key(key: str) -> str:
        if not isinstance(key, str) or not _KEY_PATTERN.fullmatch(key):
            raise DomainValidationError("idempotency_key must be 1-255 chars of [A-Za-z0-9_.:/@-]")
        return key

    @staticmethod
    def scan_key(nonce: str) -> str:
        return f"scan:{nonce}"

    async def find_prior(self, session: AsyncSession, key: str) -> PointTransaction | None:
        result = await session.execute(select(PointTransaction).where(PointTransaction.idempotency_key == key))
        return result.scalar_one_or_none()

    def ensure_same_intent(self, prior: PointTransaction, card_id: uuid.UUID, delta: int) -> None:
        if prior.card_id != card_id or prior.delta != delta:
            logger.warning(
                "Idempotency key reused for a different intent",
                extra={
                    "idempotency_key": prior.idempotency_key,
                    "recorded_card_id": str(prior.card_id),
                    "recorded_delta": prior.delta,
                    "card_id": str(card_id),
                    "delta": delta,
                },
            )
            raise IdempotencyKeyConflict("idempotency_key was already used for a different card or delta")
