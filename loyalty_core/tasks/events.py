from __future__ import annotations

from loyalty_core.core.celery_app import celery_app
from loyalty_core.core.logging import get_logger

logger = get_logger(__name__)


@celery_app.task(name="events.loyalty", ignore_result=True)
def handle_loyalty_event(event_name: str, payload: dict) -> None:
    """Entry point for out-of-process consumers of loyalty notifications."""
    logger.info(
        "Loyalty event received",
        extra={
            "event": event_name,
            "target_id": payload.get("target_id"),
            "dedupe_key": payload.get("dedupe_key"),
            "sequence": payload.get("sequence"),
        },
    )
