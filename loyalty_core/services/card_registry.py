from __future__ import annotations

import uuid

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_core.core.logging import get_logger
from loyalty_core.db.operations import flush_async, utcnow
from loyalty_core.db.session_async import SessionFactory, rollback
from loyalty_core.domain.enums import CardStatus, CardTier, EnrollmentStatus
from loyalty_core.models.card import LoyaltyCard
from loyalty_core.models.enrollment import Enrollment
from loyalty_core.services.exceptions import (
    CardNotFound,
    DomainValidationError,
    EnrollmentNotFound,
)

logger = get_logger(__name__)


class CardRegistry:
    """Owns LoyaltyCard creation and lookup.

    Balance changes are not made here; they belong to the ledger.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def ensure_card(self, enrollment_id: uuid.UUID) -> LoyaltyCard:
        """Return the enrollment's card, creating it on first call.

        Concurrent callers converge on a single row through the unique
        ``enrollment_id`` constraint: losers of the insert race read back the
        winner's card.
        """
        async with self._session_factory() as session:
            try:
                enrollment = await session.get(Enrollment, enrollment_id)
                if enrollment is None:
                    raise EnrollmentNotFound(f"Enrollment {enrollment_id} not found")
                card = await self.ensure_card_in(session, enrollment)
                await session.commit()
                return card
            except IntegrityError:
                await rollback(session)
            except Exception:
                await rollback(session)
                raise

        async with self._session_factory() as session:
            card = await self._by_enrollment(session, enrollment_id)
            if card is None:
                raise CardNotFound(f"No card could be created for enrollment {enrollment_id}")
            return card

    async def ensure_card_in(self, session: AsyncSession, enrollment: Enrollment) -> LoyaltyCard:
        """Same as ``ensure_card`` but inside the caller's transaction."""
        if enrollment.status != EnrollmentStatus.ACTIVE:
            raise DomainValidationError(
                f"Cards are issued for ACTIVE enrollments only (enrollment is {enrollment.status.value})"
            )
        existing = await self._by_enrollment(session, enrollment.id)
        if existing is not None:
            return existing

        card = LoyaltyCard(
            enrollment_id=enrollment.id,
            customer_id=enrollment.customer_id,
            program_id=enrollment.program_id,
            balance=0,
            tier=CardTier.STANDARD,
            status=CardStatus.ACTIVE,
            version=0,
        )
        session.add(card)
        await flush_async(session, card)
        logger.info(
            "Loyalty card created",
            extra={"card_id": str(card.id), "enrollment_id": str(enrollment.id), "customer_id": enrollment.customer_id},
        )
        return card

    async def deactivate_in(self, session: AsyncSession, enrollment_id: uuid.UUID) -> LoyaltyCard | None:
        card = await self._by_enrollment(session, enrollment_id)
        if card is None or card.status == CardStatus.INACTIVE:
            return card
        await session.execute(
            update(LoyaltyCard)
            .where(LoyaltyCard.id == card.id)
            .values(status=CardStatus.INACTIVE, version=LoyaltyCard.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.refresh(card)
        logger.info("Loyalty card deactivated", extra={"card_id": str(card.id), "enrollment_id": str(enrollment_id)})
        return card

    async def get_card(self, card_id: uuid.UUID) -> LoyaltyCard:
        async with self._session_factory() as session:
            card = await session.get(LoyaltyCard, card_id)
            if card is None:
                raise CardNotFound(f"Card {card_id} not found")
            return card

    async def list_for_customer(self, customer_id: str) -> list[LoyaltyCard]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(LoyaltyCard)
                .where(LoyaltyCard.customer_id == str(customer_id))
                .order_by(LoyaltyCard.created_at.desc())
            )
            return list(result.scalars().all())

    async def find_active_card(self, customer_id: str, program_id: uuid.UUID) -> LoyaltyCard | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(LoyaltyCard).where(
                    LoyaltyCard.customer_id == str(customer_id),
                    LoyaltyCard.program_id == program_id,
                    LoyaltyCard.status == CardStatus.ACTIVE,
                )
            )
            return result.scalars().first()

    async def card_for_enrollment(self, enrollment_id: uuid.UUID) -> LoyaltyCard | None:
        async with self._session_factory() as session:
            return await self._by_enrollment(session, enrollment_id)

    @staticmethod
    async def _by_enrollment(session: AsyncSession, enrollment_id: uuid.UUID) -> LoyaltyCard | None:
        result = await session.execute(select(LoyaltyCard).where(LoyaltyCard.enrollment_id == enrollment_id))
        return result.scalar_one_or_none()
