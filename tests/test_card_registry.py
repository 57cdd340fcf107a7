# tests/test_card_registry.py
import asyncio
import uuid

import pytest
from sqlalchemy import func, select

from loyalty_core.db.session_async import AsyncSessionLocal
from loyalty_core.domain.enums import CardTier, EnrollmentStatus
from loyalty_core.models.card import LoyaltyCard
from loyalty_core.models.enrollment import Enrollment, enrollment_active_key
from loyalty_core.services.exceptions import CardNotFound, DomainValidationError, EnrollmentNotFound


async def _enrollment(program, customer_id: str, status: EnrollmentStatus) -> Enrollment:
    async with AsyncSessionLocal() as session:
        enrollment = Enrollment(
            customer_id=customer_id,
            program_id=program.id,
            status=status,
            active_key=None if status.is_terminal else enrollment_active_key(customer_id, program.id),
        )
        session.add(enrollment)
        await session.commit()
        return enrollment


@pytest.mark.asyncio
async def test_ensure_card_creates_standard_zero_balance_card(registry, program, customer_id):
    enrollment = await _enrollment(program, customer_id, EnrollmentStatus.ACTIVE)

    card = await registry.ensure_card(enrollment.id)

    assert card.balance == 0
    assert card.tier == CardTier.STANDARD
    assert card.customer_id == customer_id
    assert card.card_number.startswith("LC-")
    assert (await registry.ensure_card(enrollment.id)).id == card.id


@pytest.mark.asyncio
async def test_hundred_concurrent_ensure_card_calls_yield_one_card(registry, program, customer_id):
    enrollment = await _enrollment(program, customer_id, EnrollmentStatus.ACTIVE)

    cards = await asyncio.gather(*[registry.ensure_card(enrollment.id) for _ in range(100)])

    assert len({card.id for card in cards}) == 1
    async with AsyncSessionLocal() as session:
        count = await session.scalar(
            select(func.count()).select_from(LoyaltyCard).where(LoyaltyCard.enrollment_id == enrollment.id)
        )
    assert count == 1


@pytest.mark.asyncio
async def test_ensure_card_requires_active_enrollment(registry, program, customer_id):
    pending = await _enrollment(program, customer_id, EnrollmentStatus.PENDING_APPROVAL)

    with pytest.raises(DomainValidationError):
        await registry.ensure_card(pending.id)
    with pytest.raises(EnrollmentNotFound):
        await registry.ensure_card(uuid.uuid4())


@pytest.mark.asyncio
async def test_lookups(registry, program, customer_id, active_card):
    assert (await registry.get_card(active_card.id)).id == active_card.id
    assert [c.id for c in await registry.list_for_customer(customer_id)] == [active_card.id]
    assert (await registry.find_active_card(customer_id, program.id)).id == active_card.id
    assert await registry.find_active_card("nobody", program.id) is None
    with pytest.raises(CardNotFound):
        await registry.get_card(uuid.uuid4())
