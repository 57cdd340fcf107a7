from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from loyalty_core.api.deps import get_workflow
from loyalty_core.services.enrollment_workflow import EnrollmentWorkflow

router = APIRouter(prefix="/internal", tags=["internal"])


@router.post("/enrollments/expire")
async def expire_stale_enrollments(
    limit: int | None = Query(default=None, ge=1, le=1000),
    workflow: EnrollmentWorkflow = Depends(get_workflow),
):
    expired = await workflow.expire_stale(limit)
    return {"expired": [str(request_id) for request_id in expired], "count": len(expired)}
