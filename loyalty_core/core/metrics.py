from __future__ import annotations

from typing import Any

from prometheus_client import Counter, Histogram, generate_latest
from prometheus_client.exposition import CONTENT_TYPE_LATEST

from loyalty_core.core.config import settings


class _NoOpMetric:
    def labels(self, *args: Any, **kwargs: Any) -> "_NoOpMetric":
        return self

    def observe(self, *_: Any, **__: Any) -> None:
        return None

    def inc(self, *_: Any, **__: Any) -> None:
        return None


def _metric(factory: Any, *args: Any, **kwargs: Any) -> Any:
    if not settings.METRICS_ENABLED:
        return _NoOpMetric()
    return factory(*args, **kwargs)


_NS = settings.METRICS_NAMESPACE

REQUEST_LATENCY = _metric(
    Histogram,
    f"{_NS}_http_request_duration_seconds",
    "HTTP request latency in seconds.",
    ["method", "path", "status_code"],
    buckets=settings.METRICS_LATENCY_BUCKETS,
)

REQUEST_COUNT = _metric(
    Counter,
    f"{_NS}_http_requests_total",
    "Total HTTP requests processed.",
    ["method", "path", "status_code"],
)

REQUEST_ERRORS = _metric(
    Counter,
    f"{_NS}_http_errors_total",
    "Total HTTP requests resulting in 4xx/5xx.",
    ["method", "path", "status_code"],
)

LEDGER_OPERATIONS = _metric(
    Counter,
    f"{_NS}_ledger_operations_total",
    "Ledger apply_delta calls partitioned by outcome.",
    ["outcome"],
)

LEDGER_RETRIES = _metric(
    Counter,
    f"{_NS}_ledger_retries_total",
    "Ledger attempts retried after a version conflict.",
)

ENROLLMENT_TRANSITIONS = _metric(
    Counter,
    f"{_NS}_enrollment_transitions_total",
    "Enrollment state transitions by target status.",
    ["status"],
)

QR_VALIDATIONS = _metric(
    Counter,
    f"{_NS}_qr_validations_total",
    "QR payload validations partitioned by outcome.",
    ["outcome"],
)

NOTIFICATIONS = _metric(
    Counter,
    f"{_NS}_notifications_total",
    "Notification dispatcher outcomes.",
    ["outcome"],
)


def normalize_path(request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    if path:
        return path
    return request.url.path


def record_request_metrics(request, status_code: int, elapsed: float) -> None:
    labels = (request.method, normalize_path(request), str(status_code))
    REQUEST_COUNT.labels(*labels).inc()
    REQUEST_LATENCY.labels(*labels).observe(elapsed)
    if status_code >= 400:
        REQUEST_ERRORS.labels(*labels).inc()


def record_ledger_outcome(outcome: str) -> None:
    LEDGER_OPERATIONS.labels(outcome=outcome).inc()


def record_ledger_retry() -> None:
    LEDGER_RETRIES.inc()


def record_enrollment_transition(status: str) -> None:
    ENROLLMENT_TRANSITIONS.labels(status=status).inc()


def record_qr_validation(outcome: str) -> None:
    QR_VALIDATIONS.labels(outcome=outcome).inc()


def record_notification(outcome: str) -> None:
    NOTIFICATIONS.labels(outcome=outcome).inc()


def export_metrics() -> tuple[bytes, str]:
    if not settings.METRICS_ENABLED:
        return b"", "text/plain; charset=utf-8"
    return generate_latest(), CONTENT_TYPE_LATEST
