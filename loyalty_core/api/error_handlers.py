from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from loyalty_core.services.exceptions import (
    ConcurrencyError,
    ServiceError,
)


def _error_response(exc: ServiceError, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ConcurrencyError)
    async def handle_concurrency(_: Request, exc: ConcurrencyError) -> JSONResponse:
        # Retries are already exhausted server-side; hint the caller to back off.
        return _error_response(exc, headers={"Retry-After": "1"})

    @app.exception_handler(ServiceError)
    async def handle_service_error(_: Request, exc: ServiceError) -> JSONResponse:
        return _error_response(exc)
