from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status

from loyalty_core.api.deps import get_actor_business_id, get_actor_customer_id, get_card_registry, get_workflow
from loyalty_core.models.enrollment import Enrollment
from loyalty_core.schemas.enrollment import (
    ApprovalRequestRead,
    EnrollmentInvite,
    EnrollmentRead,
    EnrollmentRespond,
    EnrollmentRevoke,
)
from loyalty_core.services.card_registry import CardRegistry
from loyalty_core.services.enrollment_workflow import EnrollmentWorkflow
from loyalty_core.services.exceptions import ApprovalRequestNotFound, ForbiddenError

router = APIRouter(prefix="/enrollments", tags=["enrollments"])


async def build_enrollment_read(
    enrollment: Enrollment,
    workflow: EnrollmentWorkflow,
    registry: CardRegistry,
) -> EnrollmentRead:
    request = await workflow.latest_request_for(enrollment.id)
    card = await registry.card_for_enrollment(enrollment.id)
    data = EnrollmentRead.model_validate(enrollment)
    return data.model_copy(
        update={
            "approval_request": ApprovalRequestRead.model_validate(request) if request is not None else None,
            "card_id": card.id if card is not None else None,
        }
    )


@router.post("", response_model=EnrollmentRead, status_code=status.HTTP_201_CREATED)
async def invite(
    payload: EnrollmentInvite,
    workflow: EnrollmentWorkflow = Depends(get_workflow),
    registry: CardRegistry = Depends(get_card_registry),
    actor_business_id: str | None = Depends(get_actor_business_id),
):
    enrollment = await workflow.invite(payload.customer_id, payload.program_id, actor_business_id=actor_business_id)
    return await build_enrollment_read(enrollment, workflow, registry)


@router.get("/{enrollment_id}", response_model=EnrollmentRead)
async def get_enrollment(
    enrollment_id: uuid.UUID,
    workflow: EnrollmentWorkflow = Depends(get_workflow),
    registry: CardRegistry = Depends(get_card_registry),
    actor_customer_id: str | None = Depends(get_actor_customer_id),
):
    enrollment = await workflow.get_enrollment(enrollment_id)
    if actor_customer_id is not None and enrollment.customer_id != actor_customer_id:
        raise ForbiddenError("Enrollment belongs to another customer")
    return await build_enrollment_read(enrollment, workflow, registry)


@router.post("/{enrollment_id}/respond", response_model=EnrollmentRead)
async def respond(
    enrollment_id: uuid.UUID,
    payload: EnrollmentRespond,
    workflow: EnrollmentWorkflow = Depends(get_workflow),
    registry: CardRegistry = Depends(get_card_registry),
    actor_customer_id: str | None = Depends(get_actor_customer_id),
):
    await workflow.get_enrollment(enrollment_id)
    request = await workflow.latest_request_for(enrollment_id)
    if request is None:
        raise ApprovalRequestNotFound(f"Enrollment {enrollment_id} has no approval request")
    enrollment = await workflow.respond(request.id, payload.accept, actor_customer_id=actor_customer_id)
    return await build_enrollment_read(enrollment, workflow, registry)


@router.post("/{enrollment_id}/revoke", response_model=EnrollmentRead)
async def revoke(
    enrollment_id: uuid.UUID,
    payload: EnrollmentRevoke | None = None,
    workflow: EnrollmentWorkflow = Depends(get_workflow),
    registry: CardRegistry = Depends(get_card_registry),
    actor_business_id: str | None = Depends(get_actor_business_id),
):
    reason = payload.reason if payload is not None else None
    enrollment = await workflow.revoke(enrollment_id, reason, actor_business_id=actor_business_id)
    return await build_enrollment_read(enrollment, workflow, registry)
