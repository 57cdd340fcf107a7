from __future__ import annotations

from fastapi import APIRouter, Depends

from loyalty_core.api.deps import get_actor_customer_id, get_card_registry, get_workflow
from loyalty_core.api.routers.enrollments import build_enrollment_read
from loyalty_core.schemas.card import CardRead
from loyalty_core.schemas.enrollment import EnrollmentRead
from loyalty_core.services.card_registry import CardRegistry
from loyalty_core.services.enrollment_workflow import EnrollmentWorkflow
from loyalty_core.services.exceptions import ForbiddenError

router = APIRouter(prefix="/customers", tags=["customers"])


def _ensure_self(customer_id: str, actor_customer_id: str | None) -> None:
    if actor_customer_id is not None and actor_customer_id != customer_id:
        raise ForbiddenError("Customers can only read their own records")


@router.get("/{customer_id}/enrollments", response_model=list[EnrollmentRead])
async def list_enrollments(
    customer_id: str,
    workflow: EnrollmentWorkflow = Depends(get_workflow),
    registry: CardRegistry = Depends(get_card_registry),
    actor_customer_id: str | None = Depends(get_actor_customer_id),
):
    _ensure_self(customer_id, actor_customer_id)
    enrollments = await workflow.list_for_customer(customer_id)
    return [await build_enrollment_read(e, workflow, registry) for e in enrollments]


@router.get("/{customer_id}/cards", response_model=list[CardRead])
async def list_cards(
    customer_id: str,
    registry: CardRegistry = Depends(get_card_registry),
    actor_customer_id: str | None = Depends(get_actor_customer_id),
):
    _ensure_self(customer_id, actor_customer_id)
    return await registry.list_for_customer(customer_id)
