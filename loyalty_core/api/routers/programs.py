from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_core.api.deps import get_actor_business_id
from loyalty_core.db.session_async import get_async_db
from loyalty_core.schemas.program import ProgramCreate, ProgramRead
from loyalty_core.services import program_service

router = APIRouter(prefix="/programs", tags=["programs"])


@router.post("", response_model=ProgramRead, status_code=status.HTTP_201_CREATED)
async def create_program(
    payload: ProgramCreate,
    db: AsyncSession = Depends(get_async_db),
    actor_business_id: str | None = Depends(get_actor_business_id),
):
    return await program_service.create_program(db, payload, actor_business_id)


@router.get("", response_model=list[ProgramRead])
async def list_programs(
    business_id: str = Query(..., min_length=1, max_length=64),
    db: AsyncSession = Depends(get_async_db),
):
    return await program_service.list_programs_for_business(db, business_id)


@router.get("/{program_id}", response_model=ProgramRead)
async def get_program(program_id: uuid.UUID, db: AsyncSession = Depends(get_async_db)):
    return await program_service.get_program(db, program_id)
