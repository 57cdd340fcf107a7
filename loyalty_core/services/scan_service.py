from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select

from loyalty_core.core.logging import get_logger
from loyalty_core.db.operations import utcnow
from loyalty_core.db.session_async import SessionFactory, rollback
from loyalty_core.domain.enums import QRSubjectKind, ScanOutcome
from loyalty_core.models.card import LoyaltyCard
from loyalty_core.models.program import LoyaltyProgram
from loyalty_core.models.scan_log import QRScanLog
from loyalty_core.schemas.qr import QRPayload, ScanRequest, ScanResult, ScanStats
from loyalty_core.services.card_registry import CardRegistry
from loyalty_core.services.enrollment_workflow import EnrollmentWorkflow
from loyalty_core.services.exceptions import (
    AlreadyEnrolled,
    CardNotFound,
    DomainValidationError,
    ForbiddenError,
    ProgramNotFound,
    ServiceError,
)
from loyalty_core.services.idempotency import IdempotencyGuard
from loyalty_core.services.ledger import TransactionLedger
from loyalty_core.services.qr_validator import QRCodeValidator

logger = get_logger(__name__)

AWARDED = ScanOutcome.AWARDED.value
ENROLLMENT_PENDING = ScanOutcome.ENROLLMENT_PENDING.value


@dataclass
class _ScanTrace:
    """What is known about a scan so far; becomes its audit row."""

    business_id: str | None = None
    program_id: uuid.UUID | None = None
    qr_kind: QRSubjectKind | None = None
    subject_id: str | None = None
    card_id: uuid.UUID | None = None
    points: int | None = None


class ScanService:
    """Turns an authenticated QR scan into a ledger award.

    The QR nonce doubles as the ledger idempotency key. Every attempt, accepted
    or rejected, leaves a row in ``qr_scan_logs``.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        validator: QRCodeValidator,
        ledger: TransactionLedger,
        registry: CardRegistry,
        workflow: EnrollmentWorkflow,
    ) -> None:
        self._session_factory = session_factory
        self._validator = validator
        self._ledger = ledger
        self._registry = registry
        self._workflow = workflow

    async def scan(
        self,
        request: ScanRequest,
        audience: str | None = None,
        *,
        actor_business_id: str | None = None,
    ) -> ScanResult:
        trace = _ScanTrace(business_id=actor_business_id, program_id=request.program_id, points=request.delta)
        try:
            result = await self._scan(request, audience, actor_business_id, trace)
        except ServiceError as exc:
            await self._log(trace, ScanOutcome.REJECTED, error_code=exc.code)
            raise
        await self._log(trace, ScanOutcome(result.status))
        return result

    async def _scan(
        self,
        request: ScanRequest,
        audience: str | None,
        actor_business_id: str | None,
        trace: _ScanTrace,
    ) -> ScanResult:
        payload = await self._validator.validate(request.payload, audience)
        trace.qr_kind = payload.kind
        trace.subject_id = payload.subject_id

        if payload.kind == QRSubjectKind.card:
            card = await self._registry.get_card(_parse_uuid(payload.subject_id, "card id"))
            trace.card_id = card.id
            trace.program_id = card.program_id
        else:
            program_id = payload.program_id or request.program_id
            if program_id is None:
                raise DomainValidationError("program_id is required for customer QR codes")
            if payload.program_id is not None and request.program_id is not None and payload.program_id != request.program_id:
                raise DomainValidationError("program_id does not match the scanned QR code")
            trace.program_id = program_id
            card = await self._registry.find_active_card(payload.subject_id, program_id)
            if card is None:
                await self._resolve_business(trace, actor_business_id)
                return await self._invite(payload, program_id, actor_business_id)
            trace.card_id = card.id

        await self._resolve_business(trace, actor_business_id)
        return await self._award(card, payload, request)

    async def _resolve_business(self, trace: _ScanTrace, actor_business_id: str | None) -> None:
        async with self._session_factory() as session:
            program = await session.get(LoyaltyProgram, trace.program_id)
        if program is None:
            raise ProgramNotFound(f"Program {trace.program_id} not found")
        if actor_business_id is not None and program.business_id != str(actor_business_id):
            raise ForbiddenError("Scanned card belongs to another business's program")
        trace.business_id = program.business_id

    async def _award(self, card: LoyaltyCard, payload: QRPayload, request: ScanRequest) -> ScanResult:
        result = await self._ledger.apply_delta(
            card.id,
            request.delta,
            request.source,
            IdempotencyGuard.scan_key(payload.nonce),
            metadata={"qr_kind": payload.kind.value, "qr_subject_id": payload.subject_id},
        )
        return ScanResult(
            status=AWARDED,
            card_id=card.id,
            new_balance=result.new_balance,
            transaction_id=result.transaction_id,
            enrollment_id=card.enrollment_id,
        )

    async def _invite(
        self, payload: QRPayload, program_id: uuid.UUID, actor_business_id: str | None
    ) -> ScanResult:
        try:
            enrollment = await self._workflow.invite(
                payload.subject_id, program_id, actor_business_id=actor_business_id
            )
            enrollment_id = enrollment.id
        except AlreadyEnrolled:
            # Invitation already outstanding; report it instead of failing the scan.
            enrollment_id = await self._open_enrollment_id(payload.subject_id, program_id)
        logger.info(
            "Scan for unenrolled customer, awaiting approval",
            extra={"customer_id": payload.subject_id, "program_id": str(program_id)},
        )
        return ScanResult(status=ENROLLMENT_PENDING, enrollment_id=enrollment_id)

    async def _open_enrollment_id(self, customer_id: str, program_id: uuid.UUID) -> uuid.UUID | None:
        for enrollment in await self._workflow.list_for_customer(customer_id):
            if enrollment.program_id == program_id and not enrollment.status.is_terminal:
                return enrollment.id
        return None

    async def _log(self, trace: _ScanTrace, outcome: ScanOutcome, error_code: str | None = None) -> None:
        entry = QRScanLog(
            business_id=trace.business_id,
            program_id=trace.program_id,
            qr_kind=trace.qr_kind,
            subject_id=trace.subject_id,
            card_id=trace.card_id,
            outcome=outcome,
            error_code=error_code,
            points=trace.points if outcome == ScanOutcome.AWARDED else None,
            created_at=utcnow(),
        )
        async with self._session_factory() as session:
            try:
                session.add(entry)
                await session.commit()
            except Exception:
                await rollback(session)
                # The scan itself already committed or failed on its own; only the audit row is lost.
                logger.exception(
                    "Scan audit row not written",
                    extra={"outcome": outcome.value, "business_id": trace.business_id, "error_code": error_code},
                )

    async def scan_stats(self, business_id: str, since: datetime | None = None) -> ScanStats:
        """Counts of scan outcomes recorded for ``business_id``, optionally from ``since`` on."""
        filters = [QRScanLog.business_id == str(business_id)]
        if since is not None:
            filters.append(QRScanLog.created_at >= since)
        async with self._session_factory() as session:
            by_outcome = await session.execute(
                select(QRScanLog.outcome, func.count(QRScanLog.id), func.coalesce(func.sum(QRScanLog.points), 0))
                .where(*filters)
                .group_by(QRScanLog.outcome)
            )
            counts = {outcome: (int(count), int(points)) for outcome, count, points in by_outcome.all()}
            by_code = await session.execute(
                select(QRScanLog.error_code, func.count(QRScanLog.id))
                .where(*filters, QRScanLog.outcome == ScanOutcome.REJECTED)
                .group_by(QRScanLog.error_code)
            )
            rejections = {str(code): int(count) for code, count in by_code.all()}

        awarded, points = counts.get(ScanOutcome.AWARDED, (0, 0))
        pending = counts.get(ScanOutcome.ENROLLMENT_PENDING, (0, 0))[0]
        rejected = counts.get(ScanOutcome.REJECTED, (0, 0))[0]
        total = awarded + pending + rejected
        return ScanStats(
            business_id=str(business_id),
            since=since,
            total_scans=total,
            awarded=awarded,
            enrollment_pending=pending,
            rejected=rejected,
            points_awarded=points,
            success_rate=round((awarded + pending) / total, 4) if total else 0.0,
            rejections_by_code=rejections,
        )


def _parse_uuid(value: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise CardNotFound(f"Invalid {label}: {value}") from exc
