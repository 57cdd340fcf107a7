# tests/test_tasks.py
import logging
from datetime import timedelta

import pytest

from loyalty_core.db.operations import utcnow
from loyalty_core.db.session_async import AsyncSessionLocal
from loyalty_core.domain.enums import ApprovalStatus, EnrollmentStatus
from loyalty_core.models.enrollment import ApprovalRequest, Enrollment, enrollment_active_key
from loyalty_core.services.event_bus import emit_loyalty_event
from loyalty_core.tasks import enrollments as enrollment_tasks


@pytest.mark.asyncio
async def test_expiry_task_declines_stale_requests(program, customer_id):
    async with AsyncSessionLocal() as session:
        enrollment = Enrollment(
            customer_id=customer_id,
            program_id=program.id,
            status=EnrollmentStatus.PENDING_APPROVAL,
            active_key=enrollment_active_key(customer_id, program.id),
        )
        session.add(enrollment)
        await session.flush()
        request = ApprovalRequest(
            enrollment_id=enrollment.id,
            status=ApprovalStatus.PENDING,
            requested_at=utcnow() - timedelta(days=8),
            expires_at=utcnow() - timedelta(days=1),
        )
        session.add(request)
        await session.commit()

    expired = await enrollment_tasks._run(10)

    assert expired == [str(request.id)]
    async with AsyncSessionLocal() as session:
        stored = await session.get(Enrollment, enrollment.id)
    assert stored.status == EnrollmentStatus.DECLINED
    assert stored.active_key is None


def test_loyalty_event_task_runs_eagerly(caplog):
    with caplog.at_level(logging.INFO, logger="loyalty_core.tasks.events"):
        emit_loyalty_event("BALANCE_CHANGED", {"target_id": "cust-1", "dedupe_key": "balance:x:1", "sequence": 4})

    assert any(record.getMessage() == "Loyalty event received" for record in caplog.records)
