# loyalty_core/api/deps.py
"""Request-scoped dependencies.

Identity is resolved upstream by the gateway and forwarded in trusted headers;
both headers are optional and only narrow what a caller may act on.
"""

from fastapi import Header

from loyalty_core.services import providers
from loyalty_core.services.card_registry import CardRegistry
from loyalty_core.services.enrollment_workflow import EnrollmentWorkflow
from loyalty_core.services.ledger import TransactionLedger
from loyalty_core.services.notification_dispatcher import NotificationDispatcher
from loyalty_core.services.qr_validator import QRCodeValidator
from loyalty_core.services.scan_service import ScanService


def get_actor_customer_id(x_customer_id: str | None = Header(default=None)) -> str | None:
    return x_customer_id.strip() if x_customer_id and x_customer_id.strip() else None


def get_actor_business_id(x_business_id: str | None = Header(default=None)) -> str | None:
    return x_business_id.strip() if x_business_id and x_business_id.strip() else None


def get_ledger() -> TransactionLedger:
    return providers.get_ledger()


def get_workflow() -> EnrollmentWorkflow:
    return providers.get_workflow()


def get_card_registry() -> CardRegistry:
    return providers.get_card_registry()


def get_validator() -> QRCodeValidator:
    return providers.get_validator()


def get_scan_service() -> ScanService:
    return providers.get_scan_service()


def get_dispatcher() -> NotificationDispatcher:
    return providers.get_dispatcher()
