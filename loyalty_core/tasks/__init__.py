"""Celery task definitions package."""

from loyalty_core.tasks import enrollments  # noqa: F401
from loyalty_core.tasks import events  # noqa: F401

__all__ = ["enrollments", "events"]
