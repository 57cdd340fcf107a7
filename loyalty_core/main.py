# loyalty_core/main.py
import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from loyalty_core.api.error_handlers import register_exception_handlers
from loyalty_core.api.routers import (
    cards,
    customers,
    enrollments,
    internal,
    notifications,
    programs,
    qr,
    transactions,
)
from loyalty_core.core.config import settings
from loyalty_core.core.logging import get_logger, setup_logging
from loyalty_core.core.metrics import export_metrics
from loyalty_core.core.replay_cache import get_replay_cache
from loyalty_core.middleware import ObservabilityMiddleware
from loyalty_core.services import providers
from loyalty_core.services.notification_channels import BrokerChannel
from loyalty_core.services.notification_dispatcher import ALL_TARGETS

# --- Models registration (needed for Alembic autogenerate) ---
import loyalty_core.models.program       # noqa: F401
import loyalty_core.models.enrollment    # noqa: F401
import loyalty_core.models.card          # noqa: F401
import loyalty_core.models.ledger        # noqa: F401
import loyalty_core.models.notification  # noqa: F401
import loyalty_core.models.scan_log      # noqa: F401

logger = get_logger(__name__)

TAGS_METADATA = [
    {"name": "programs", "description": "Loyalty program registry."},
    {"name": "enrollments", "description": "Enrollment invitations, approvals and revocations."},
    {"name": "customers", "description": "Per-customer enrollments and cards."},
    {"name": "transactions", "description": "Idempotent point balance changes."},
    {"name": "cards", "description": "Card snapshots, history and derived totals."},
    {"name": "qr", "description": "Signed QR payloads and scan awards."},
    {"name": "notifications", "description": "Polling feed, Server-Sent Events and WebSocket delivery."},
    {"name": "internal", "description": "Maintenance hooks for operators and schedulers."},
]


async def _expiry_sweep_loop() -> None:
    workflow = providers.get_workflow()
    while True:
        await asyncio.sleep(settings.EXPIRY_SWEEP_INTERVAL_SECONDS)
        try:
            await workflow.expire_stale(settings.EXPIRY_SWEEP_BATCH_SIZE)
        except Exception:
            logger.exception("Expiry sweep failed")


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    dispatcher = providers.get_dispatcher()
    if settings.NOTIFICATION_BROKER_ENABLED:
        await dispatcher.subscribe(ALL_TARGETS, BrokerChannel())
    background: list[asyncio.Task] = []
    if settings.NOTIFICATION_RELAY_ENABLED:
        background.append(asyncio.create_task(providers.get_event_relay().run()))
    if settings.EXPIRY_SWEEP_ENABLED:
        background.append(asyncio.create_task(_expiry_sweep_loop()))
    logger.info(
        "Loyalty core started",
        extra={
            "broker": settings.NOTIFICATION_BROKER_ENABLED,
            "relay": settings.NOTIFICATION_RELAY_ENABLED,
            "expiry_sweep": settings.EXPIRY_SWEEP_ENABLED,
        },
    )
    try:
        yield
    finally:
        for task in background:
            task.cancel()
        for task in background:
            with suppress(asyncio.CancelledError):
                await task
        await providers.shutdown()
        await get_replay_cache().close()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version="0.1.0",
    description=(
        "Loyalty points ledger and enrollment synchronization.\n\n"
        "- **Transactions**: idempotent, linearized balance changes per card.\n"
        "- **Enrollments**: invitation, approval, expiry and revocation.\n"
        "- **QR**: signed, single-use scan payloads.\n"
        "- **Notifications**: deduplicated, coalesced balance and enrollment events."
    ),
    openapi_tags=TAGS_METADATA,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# --- Middlewares ---
app.add_middleware(ObservabilityMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# --- Routers ---
app.include_router(programs.router, prefix=settings.API_V1_STR)
app.include_router(enrollments.router, prefix=settings.API_V1_STR)
app.include_router(customers.router, prefix=settings.API_V1_STR)
app.include_router(transactions.router, prefix=settings.API_V1_STR)
app.include_router(cards.router, prefix=settings.API_V1_STR)
app.include_router(qr.router, prefix=settings.API_V1_STR)
app.include_router(notifications.router, prefix=settings.API_V1_STR)
app.include_router(internal.router, prefix=settings.API_V1_STR)


@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    body, content_type = export_metrics()
    return Response(content=body, media_type=content_type)


@app.get("/", include_in_schema=False)
def root():
    return {"status": "ok", "docs_url": "/docs", "redoc_url": "/redoc"}
