"""Hand-off of notification events to out-of-process consumers."""

from __future__ import annotations

from typing import Any

from loyalty_core.core.celery_app import celery_app
from loyalty_core.core.config import settings

LOYALTY_EVENT_TASK = "events.loyalty"


def emit_loyalty_event(name: str, payload: dict[str, Any]) -> None:
    """Queue a serialized notification event on the loyalty events queue.

    The dedupe key is reused as the task id so consumers can drop broker
    redeliveries. When the task module is loaded in this process (workers,
    eager mode) the task is applied directly, otherwise it is sent by name.
    """
    options: dict[str, Any] = {
        "queue": settings.LOYALTY_EVENTS_QUEUE,
        "task_id": payload.get("dedupe_key"),
        "ignore_result": True,
    }
    task = celery_app.tasks.get(LOYALTY_EVENT_TASK)
    if task is not None:
        task.apply_async((name, payload), **options)
        return
    if settings.CELERY_TASK_ALWAYS_EAGER:
        raise RuntimeError(f"Task {LOYALTY_EVENT_TASK} must be imported to run eagerly")
    celery_app.send_task(LOYALTY_EVENT_TASK, args=(name, payload), **options)
