from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, status

from loyalty_core.api.deps import get_actor_business_id, get_scan_service, get_validator
from loyalty_core.schemas.qr import QRIssueRequest, QRIssueResponse, ScanRequest, ScanResult, ScanStats
from loyalty_core.services.exceptions import ForbiddenError
from loyalty_core.services.qr_validator import QRCodeValidator
from loyalty_core.services.scan_service import ScanService

router = APIRouter(tags=["qr"])


@router.post("/qr/issue", response_model=QRIssueResponse, status_code=status.HTTP_201_CREATED)
async def issue_qr(payload: QRIssueRequest, validator: QRCodeValidator = Depends(get_validator)):
    token, expires_at = validator.issue(payload.kind, payload.subject_id, program_id=payload.program_id)
    return QRIssueResponse(payload=token, expires_at=expires_at)


@router.post("/scans", response_model=ScanResult)
async def scan(
    payload: ScanRequest,
    scans: ScanService = Depends(get_scan_service),
    actor_business_id: str | None = Depends(get_actor_business_id),
):
    return await scans.scan(payload, actor_business_id=actor_business_id)


@router.get("/scans/stats", response_model=ScanStats)
async def scan_stats(
    business_id: str = Query(..., min_length=1, max_length=64),
    since: datetime | None = Query(default=None),
    scans: ScanService = Depends(get_scan_service),
    actor_business_id: str | None = Depends(get_actor_business_id),
):
    if actor_business_id is not None and actor_business_id != business_id:
        raise ForbiddenError("Businesses can only read their own scan statistics")
    return await scans.scan_stats(business_id, since=since)
