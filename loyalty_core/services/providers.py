"""Process-wide service instances shared by the API, background loops and tasks."""

from __future__ import annotations

from loyalty_core.core.replay_cache import get_replay_cache
from loyalty_core.db.session_async import AsyncSessionLocal
from loyalty_core.services.card_registry import CardRegistry
from loyalty_core.services.enrollment_workflow import EnrollmentWorkflow
from loyalty_core.services.event_relay import EventRelay
from loyalty_core.services.ledger import TransactionLedger
from loyalty_core.services.notification_dispatcher import NotificationDispatcher
from loyalty_core.services.qr_validator import QRCodeValidator
from loyalty_core.services.scan_service import ScanService

_dispatcher: NotificationDispatcher | None = None
_registry: CardRegistry | None = None
_ledger: TransactionLedger | None = None
_workflow: EnrollmentWorkflow | None = None
_validator: QRCodeValidator | None = None
_scans: ScanService | None = None
_relay: EventRelay | None = None


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher


def get_card_registry() -> CardRegistry:
    global _registry
    if _registry is None:
        _registry = CardRegistry(AsyncSessionLocal)
    return _registry


def get_ledger() -> TransactionLedger:
    global _ledger
    if _ledger is None:
        _ledger = TransactionLedger(AsyncSessionLocal, get_dispatcher())
    return _ledger


def get_workflow() -> EnrollmentWorkflow:
    global _workflow
    if _workflow is None:
        _workflow = EnrollmentWorkflow(AsyncSessionLocal, get_card_registry(), get_dispatcher())
    return _workflow


def get_validator() -> QRCodeValidator:
    global _validator
    if _validator is None:
        _validator = QRCodeValidator(get_replay_cache())
    return _validator


def get_scan_service() -> ScanService:
    global _scans
    if _scans is None:
        _scans = ScanService(AsyncSessionLocal, get_validator(), get_ledger(), get_card_registry(), get_workflow())
    return _scans


def get_event_relay() -> EventRelay:
    global _relay
    if _relay is None:
        _relay = EventRelay(AsyncSessionLocal, get_dispatcher())
    return _relay


async def shutdown() -> None:
    if _dispatcher is not None:
        await _dispatcher.close()
    reset()


def reset() -> None:
    """Drop cached instances so the next getter builds fresh ones."""
    global _dispatcher, _registry, _ledger, _workflow, _validator, _scans, _relay
    _dispatcher = None
    _registry = None
    _ledger = None
    _workflow = None
    _validator = None
    _scans = None
    _relay = None
