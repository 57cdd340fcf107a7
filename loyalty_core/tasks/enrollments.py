from __future__ import annotations

import asyncio

from loyalty_core.core.celery_app import celery_app
from loyalty_core.core.config import settings
from loyalty_core.db.session_async import AsyncSessionLocal
from loyalty_core.services.card_registry import CardRegistry
from loyalty_core.services.enrollment_workflow import EnrollmentWorkflow
from loyalty_core.services.notification_channels import BrokerChannel
from loyalty_core.services.notification_dispatcher import ALL_TARGETS, NotificationDispatcher


async def _run(limit: int) -> list[str]:
    # Workers hold no client connections. API processes pick these events up
    # through their relay; this dispatcher only forwards them to the broker.
    dispatcher = NotificationDispatcher(coalesce_window_ms=0)
    if settings.NOTIFICATION_BROKER_ENABLED:
        await dispatcher.subscribe(ALL_TARGETS, BrokerChannel())
    workflow = EnrollmentWorkflow(AsyncSessionLocal, CardRegistry(AsyncSessionLocal), dispatcher)
    try:
        expired = await workflow.expire_stale(limit)
    finally:
        await dispatcher.close()
    return [str(request_id) for request_id in expired]


def _run_sync(limit: int) -> list[str]:
    return asyncio.run(_run(limit))


@celery_app.task(name="enrollments.expire_stale")
def expire_stale_enrollments_task(limit: int | None = None) -> list[str]:
    return _run_sync(limit or settings.EXPIRY_SWEEP_BATCH_SIZE)
