from __future__ import annotations

import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from loyalty_core.core.logging import bind_request_id, get_logger, reset_request_id
from loyalty_core.core.metrics import normalize_path, record_request_metrics

REQUEST_ID_HEADER = "X-Request-ID"


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id, records latency and logs failed calls.

    The id is taken from ``X-Request-ID`` when the gateway supplies one and is
    bound for the duration of the request so service logs carry it too.
    """

    def __init__(self, app, *, log_client_errors: bool = True) -> None:
        super().__init__(app)
        self.logger = get_logger("loyalty_core.requests")
        self.log_client_errors = log_client_errors

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        token = bind_request_id(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            elapsed = time.perf_counter() - started
            record_request_metrics(request, 500, elapsed)
            self.logger.exception("Unhandled error", extra=self._context(request, 500, elapsed))
            raise
        finally:
            reset_request_id(token)

        elapsed = time.perf_counter() - started
        record_request_metrics(request, response.status_code, elapsed)
        response.headers[REQUEST_ID_HEADER] = request_id

        if response.status_code >= 500:
            self.logger.error("Request failed", extra=self._context(request, response.status_code, elapsed))
        elif response.status_code >= 400 and self.log_client_errors:
            self.logger.warning("Request rejected", extra=self._context(request, response.status_code, elapsed))
        return response

    @staticmethod
    def _context(request: Request, status_code: int, elapsed: float) -> dict:
        # Identity headers are forwarded by the gateway; both are optional.
        return {
            "method": request.method,
            "route": normalize_path(request),
            "status_code": status_code,
            "duration_ms": round(elapsed * 1000, 3),
            "request_id": request.state.request_id,
            "customer_id": request.headers.get("x-customer-id"),
            "business_id": request.headers.get("x-business-id"),
        }
