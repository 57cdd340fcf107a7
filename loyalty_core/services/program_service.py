from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_core.core.logging import get_logger
from loyalty_core.db.operations import flush_async, refresh_async
from loyalty_core.db.session_async import rollback
from loyalty_core.models.program import LoyaltyProgram
from loyalty_core.schemas.program import ProgramCreate
from loyalty_core.services.exceptions import ForbiddenError, ProgramNotFound

logger = get_logger(__name__)


async def create_program(
    db: AsyncSession,
    payload: ProgramCreate,
    actor_business_id: str | None = None,
) -> LoyaltyProgram:
    if actor_business_id is not None and payload.business_id != actor_business_id:
        raise ForbiddenError("Programs can only be registered for the calling business")

    program = LoyaltyProgram(
        id=uuid.uuid4(),
        business_id=payload.business_id,
        name=payload.name,
        accrual_policy=payload.accrual_policy,
        active=True,
    )
    db.add(program)
    try:
        await flush_async(db, program)
        await db.commit()
    except Exception:
        await rollback(db)
        raise
    await refresh_async(db, program)
    logger.info(
        "Loyalty program registered",
        extra={"program_id": str(program.id), "business_id": program.business_id},
    )
    return program


async def get_program(db: AsyncSession, program_id: uuid.UUID) -> LoyaltyProgram:
    program = await db.get(LoyaltyProgram, program_id)
    if program is None:
        raise ProgramNotFound(f"Program {program_id} not found")
    return program


async def list_programs_for_business(db: AsyncSession, business_id: str) -> list[LoyaltyProgram]:
    stmt = (
        select(LoyaltyProgram)
        .where(LoyaltyProgram.business_id == business_id)
        .order_by(LoyaltyProgram.created_at.desc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())
