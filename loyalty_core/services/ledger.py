"""Authoritative writer of loyalty card balances.

Every balance change goes through ``TransactionLedger.apply_delta``. One call
runs inside one database transaction: the idempotency lookup, the card row
lock, the append to ``point_transactions``, the compare-and-swap update of the
card and the BALANCE_CHANGED event rows (customer and business copies) either
all commit or none do.
"""

from __future__ import annotations

import asyncio
import random
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_core.core.config import settings
from loyalty_core.core.logging import get_logger
from loyalty_core.core.metrics import record_ledger_outcome, record_ledger_retry
from loyalty_core.db.operations import flush_async, utcnow
from loyalty_core.db.session_async import SessionFactory, rollback
from loyalty_core.domain.enums import CardStatus
from loyalty_core.models.card import LoyaltyCard
from loyalty_core.models.ledger import PointTransaction
from loyalty_core.models.program import LoyaltyProgram
from loyalty_core.schemas.card import CardSummary
from loyalty_core.schemas.notification import NotificationEventRead
from loyalty_core.services.exceptions import (
    CardInactive,
    CardNotFound,
    ConcurrentModification,
    DomainValidationError,
    InsufficientBalance,
    ServiceError,
)
from loyalty_core.services.idempotency import IdempotencyGuard
from loyalty_core.services.notification_events import EventPublisher, record_balance_changed, to_read_all

logger = get_logger(__name__)


@dataclass(frozen=True)
class LedgerResult:
    new_balance: int
    transaction_id: uuid.UUID
    replayed: bool = False


class TransactionLedger:
    def __init__(
        self,
        session_factory: SessionFactory,
        publisher: EventPublisher,
        *,
        guard: IdempotencyGuard | None = None,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        backoff_max: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._publisher = publisher
        self._guard = guard or IdempotencyGuard()
        self._max_attempts = max_attempts or settings.LEDGER_MAX_ATTEMPTS
        self._backoff_base = settings.LEDGER_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        self._backoff_max = settings.LEDGER_BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max

    async def apply_delta(
        self,
        card_id: uuid.UUID,
        delta: int,
        source: str,
        idempotency_key: str,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerResult:
        self._validate(delta, source)
        key = self._guard.validate_key(idempotency_key)
        log_context = {"card_id": str(card_id), "delta": delta, "source": source, "idempotency_key": key}

        attempt = 1
        while True:
            try:
                result, events = await self._apply_once(card_id, delta, source, key, metadata)
                break
            except ConcurrentModification:
                if attempt >= self._max_attempts:
                    record_ledger_outcome("conflict")
                    logger.error("Ledger update abandoned after retries", extra={**log_context, "attempts": attempt})
                    raise
                record_ledger_retry()
                delay = self._backoff(attempt)
                logger.info("Card version conflict, retrying", extra={**log_context, "attempt": attempt, "delay": delay})
                await asyncio.sleep(delay)
                attempt += 1
            except ServiceError as exc:
                record_ledger_outcome(exc.code)
                logger.warning("Ledger update rejected", extra={**log_context, "code": exc.code, "detail": exc.detail})
                raise

        if result.replayed:
            record_ledger_outcome("replayed")
            logger.info(
                "Idempotent replay returned recorded result",
                extra={**log_context, "transaction_id": str(result.transaction_id)},
            )
            return result

        record_ledger_outcome("applied")
        logger.info(
            "Ledger transaction applied",
            extra={**log_context, "transaction_id": str(result.transaction_id), "new_balance": result.new_balance},
        )
        for event in events:
            await self._publisher.publish(event)
        return result

    def _validate(self, delta: int, source: str) -> None:
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise DomainValidationError("delta must be an integer")
        if delta == 0:
            raise DomainValidationError("delta must not be zero")
        if abs(delta) > settings.LEDGER_MAX_ABS_DELTA:
            raise DomainValidationError(f"delta exceeds the per-transaction limit of {settings.LEDGER_MAX_ABS_DELTA}")
        if not source or not source.strip() or len(source) > 50:
            raise DomainValidationError("source must be 1-50 characters")

    def _backoff(self, attempt: int) -> float:
        ceiling = min(self._backoff_max, self._backoff_base * (2 ** (attempt - 1)))
        return random.uniform(0, ceiling)

    async def _apply_once(
        self,
        card_id: uuid.UUID,
        delta: int,
        source: str,
        key: str,
        metadata: dict[str, Any] | None,
    ) -> tuple[LedgerResult, list[NotificationEventRead]]:
        async with self._session_factory() as session:
            try:
                prior = await self._guard.find_prior(session, key)
                if prior is not None:
                    self._guard.ensure_same_intent(prior, card_id, delta)
                    return _replay(prior), []

                card = await self._lock_card(session, card_id)
                new_balance = card.balance + delta
                if new_balance < 0:
                    raise InsufficientBalance(
                        f"Card {card_id} has {card.balance} points, cannot apply {delta}"
                    )

                read_version = card.version
                txn = PointTransaction(
                    card_id=card.id,
                    delta=delta,
                    source=source,
                    idempotency_key=key,
                    balance_after=new_balance,
                    card_version=read_version + 1,
                    details=metadata,
                )
                session.add(txn)
                await flush_async(session, txn)

                swapped = await session.execute(
                    update(LoyaltyCard)
                    .where(LoyaltyCard.id == card.id, LoyaltyCard.version == read_version)
                    .values(balance=new_balance, version=read_version + 1, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if swapped.rowcount != 1:
                    raise ConcurrentModification(f"Card {card_id} changed while applying {key}")

                business_id = await session.scalar(
                    select(LoyaltyProgram.business_id).where(LoyaltyProgram.id == card.program_id)
                )
                events = to_read_all(await record_balance_changed(session, card, txn, business_id))
                await session.commit()
                return LedgerResult(new_balance=new_balance, transaction_id=txn.id), events
            except IntegrityError:
                await rollback(session)
                # A concurrent call with the same key committed first.
                prior = await self._guard.find_prior(session, key)
                if prior is None:
                    raise ConcurrentModification(f"Card {card_id} changed while applying {key}")
                self._guard.ensure_same_intent(prior, card_id, delta)
                return _replay(prior), []
            except Exception:
                await rollback(session)
                raise

    @staticmethod
    async def _lock_card(session: AsyncSession, card_id: uuid.UUID) -> LoyaltyCard:
        result = await session.execute(
            select(LoyaltyCard).where(LoyaltyCard.id == card_id).with_for_update()
        )
        card = result.scalar_one_or_none()
        if card is None:
            raise CardNotFound(f"Card {card_id} not found")
        if card.status != CardStatus.ACTIVE:
            raise CardInactive(f"Card {card_id} is not active")
        return card

    async def get_history(self, card_id: uuid.UUID, limit: int = 50, offset: int = 0) -> list[PointTransaction]:
        async with self._session_factory() as session:
            if await session.get(LoyaltyCard, card_id) is None:
                raise CardNotFound(f"Card {card_id} not found")
            result = await session.execute(
                select(PointTransaction)
                .where(PointTransaction.card_id == card_id)
                .order_by(PointTransaction.card_version.desc())
                .offset(int(offset))
                .limit(int(limit))
            )
            return list(result.scalars().all())

    async def summarize(self, card_id: uuid.UUID) -> CardSummary:
        """Totals derived from the transaction log, next to the stored balance."""
        async with self._session_factory() as session:
            card = await session.get(LoyaltyCard, card_id)
            if card is None:
                raise CardNotFound(f"Card {card_id} not found")
            earned = func.coalesce(func.sum(case((PointTransaction.delta > 0, PointTransaction.delta), else_=0)), 0)
            redeemed = func.coalesce(func.sum(case((PointTransaction.delta < 0, -PointTransaction.delta), else_=0)), 0)
            row = (
                await session.execute(
                    select(earned, redeemed, func.count(PointTransaction.id)).where(PointTransaction.card_id == card_id)
                )
            ).one()
            total_earned, total_redeemed, count = int(row[0]), int(row[1]), int(row[2])
            consistent = card.balance == total_earned - total_redeemed
            if not consistent:
                logger.error(
                    "Card balance diverges from transaction log",
                    extra={"card_id": str(card_id), "balance": card.balance, "log_sum": total_earned - total_redeemed},
                )
            return CardSummary(
                card_id=card.id,
                balance=card.balance,
                total_earned=total_earned,
                total_redeemed=total_redeemed,
                transaction_count=count,
                consistent=consistent,
            )


def _replay(prior: PointTransaction) -> LedgerResult:
    return LedgerResult(new_balance=prior.balance_after, transaction_id=prior.id, replayed=True)
