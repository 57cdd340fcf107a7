"""Enrollment state machine.

``INVITED -> PENDING_APPROVAL -> {ACTIVE | DECLINED}`` and ``ACTIVE -> REVOKED``.
Status lives only in the Enrollment row and only this module writes it. Every
transition is a guarded UPDATE on the expected source status, so two concurrent
responders cannot both win.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_core.core.config import settings
from loyalty_core.core.logging import get_logger
from loyalty_core.core.metrics import record_enrollment_transition
from loyalty_core.db.operations import as_utc, flush_async, utcnow
from loyalty_core.db.session_async import SessionFactory, rollback
from loyalty_core.domain.enums import ApprovalStatus, EnrollmentStatus, NotificationEventType
from loyalty_core.models.enrollment import ApprovalRequest, Enrollment, enrollment_active_key
from loyalty_core.models.program import LoyaltyProgram
from loyalty_core.schemas.notification import NotificationEventRead
from loyalty_core.services.card_registry import CardRegistry
from loyalty_core.services.exceptions import (
    AlreadyEnrolled,
    AlreadyResponded,
    ApprovalRequestNotFound,
    EnrollmentNotFound,
    ForbiddenError,
    InvalidTransition,
    ProgramNotFound,
    RequestExpired,
)
from loyalty_core.services.notification_events import (
    EventPublisher,
    mark_request_actioned,
    record_enrollment_event,
    to_read_all,
)

logger = get_logger(__name__)


class EnrollmentWorkflow:
    def __init__(
        self,
        session_factory: SessionFactory,
        registry: CardRegistry,
        publisher: EventPublisher,
        *,
        ttl_seconds: int | None = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._publisher = publisher
        self._ttl = timedelta(seconds=ttl_seconds or settings.APPROVAL_REQUEST_TTL_SECONDS)
        self._now = now

    # --- transitions ---

    async def invite(
        self,
        customer_id: str,
        program_id: uuid.UUID,
        *,
        actor_business_id: str | None = None,
    ) -> Enrollment:
        customer_id = str(customer_id)
        async with self._session_factory() as session:
            try:
                program = await session.get(LoyaltyProgram, program_id)
                if program is None or not program.active:
                    raise ProgramNotFound(f"Program {program_id} not found")
                if actor_business_id is not None and program.business_id != str(actor_business_id):
                    raise ForbiddenError("Program belongs to another business")

                key = enrollment_active_key(customer_id, program.id)
                existing = await session.execute(select(Enrollment.id).where(Enrollment.active_key == key))
                if existing.scalar_one_or_none() is not None:
                    raise AlreadyEnrolled(f"Customer {customer_id} is already enrolled in program {program_id}")

                now = self._now()
                enrollment = Enrollment(
                    customer_id=customer_id,
                    program_id=program.id,
                    status=EnrollmentStatus.INVITED,
                    active_key=key,
                    created_at=now,
                    updated_at=now,
                )
                session.add(enrollment)
                await flush_async(session, enrollment)

                request = ApprovalRequest(
                    enrollment_id=enrollment.id,
                    status=ApprovalStatus.PENDING,
                    requested_at=now,
                    expires_at=now + self._ttl,
                )
                session.add(request)
                enrollment.status = EnrollmentStatus.PENDING_APPROVAL
                await flush_async(session, request, enrollment)

                events = to_read_all(
                    await record_enrollment_event(
                        session,
                        NotificationEventType.ENROLLMENT_REQUESTED,
                        enrollment,
                        program.business_id,
                        approval_request_id=request.id,
                    )
                )
                await session.commit()
            except IntegrityError as exc:
                await rollback(session)
                # Another invite for the same pair committed between our check and insert.
                raise AlreadyEnrolled(
                    f"Customer {customer_id} is already enrolled in program {program_id}"
                ) from exc
            except Exception:
                await rollback(session)
                raise

        record_enrollment_transition(EnrollmentStatus.PENDING_APPROVAL.value)
        logger.info(
            "Enrollment invited",
            extra={
                "enrollment_id": str(enrollment.id),
                "customer_id": customer_id,
                "program_id": str(program_id),
                "approval_request_id": str(request.id),
            },
        )
        await self._publish(events)
        return enrollment

    async def respond(
        self,
        approval_request_id: uuid.UUID,
        accept: bool,
        *,
        actor_customer_id: str | None = None,
    ) -> Enrollment:
        expired = False
        async with self._session_factory() as session:
            try:
                request, enrollment = await self._load_request(session, approval_request_id)
                business_id = await self._business_of(session, enrollment)
                if actor_customer_id is not None and enrollment.customer_id != str(actor_customer_id):
                    raise ForbiddenError("Approval request belongs to another customer")
                if request.status == ApprovalStatus.EXPIRED:
                    raise RequestExpired(f"Approval request {approval_request_id} expired")
                if request.status != ApprovalStatus.PENDING:
                    raise AlreadyResponded(
                        f"Approval request {approval_request_id} is already {request.status.value}"
                    )

                now = self._now()
                if as_utc(request.expires_at) <= now:
                    events = await self._expire_in(session, request, enrollment, business_id, now)
                    expired = True
                elif accept:
                    events = await self._accept_in(session, request, enrollment, business_id, now)
                else:
                    events = await self._decline_in(session, request, enrollment, business_id, now)
                await session.commit()
            except Exception:
                await rollback(session)
                raise

        record_enrollment_transition(enrollment.status.value)
        logger.info(
            "Approval request settled",
            extra={
                "approval_request_id": str(approval_request_id),
                "enrollment_id": str(enrollment.id),
                "status": enrollment.status.value,
                "expired": expired,
            },
        )
        await self._publish(events)
        if expired:
            raise RequestExpired(f"Approval request {approval_request_id} expired")
        return enrollment

    async def expire(self, approval_request_id: uuid.UUID) -> bool:
        """Expire one stale request. False when it is not stale or already settled."""
        async with self._session_factory() as session:
            try:
                request, enrollment = await self._load_request(session, approval_request_id)
                now = self._now()
                if request.status != ApprovalStatus.PENDING or as_utc(request.expires_at) > now:
                    return False
                business_id = await self._business_of(session, enrollment)
                events = await self._expire_in(session, request, enrollment, business_id, now)
                await session.commit()
            except AlreadyResponded:
                await rollback(session)
                return False
            except Exception:
                await rollback(session)
                raise

        record_enrollment_transition(EnrollmentStatus.DECLINED.value)
        logger.info(
            "Approval request expired",
            extra={"approval_request_id": str(approval_request_id), "enrollment_id": str(enrollment.id)},
        )
        await self._publish(events)
        return True

    async def expire_stale(self, limit: int | None = None) -> list[uuid.UUID]:
        batch = limit or settings.EXPIRY_SWEEP_BATCH_SIZE
        async with self._session_factory() as session:
            result = await session.execute(
                select(ApprovalRequest.id)
                .where(
                    ApprovalRequest.status == ApprovalStatus.PENDING,
                    ApprovalRequest.expires_at <= self._now(),
                )
                .order_by(ApprovalRequest.expires_at)
                .limit(batch)
            )
            candidates = list(result.scalars().all())

        expired: list[uuid.UUID] = []
        for request_id in candidates:
            if await self.expire(request_id):
                expired.append(request_id)
        if expired:
            logger.info("Expiry sweep completed", extra={"candidates": len(candidates), "expired": len(expired)})
        return expired

    async def revoke(
        self,
        enrollment_id: uuid.UUID,
        reason: str | None = None,
        *,
        actor_business_id: str | None = None,
    ) -> Enrollment:
        async with self._session_factory() as session:
            try:
                enrollment = await session.get(Enrollment, enrollment_id)
                if enrollment is None:
                    raise EnrollmentNotFound(f"Enrollment {enrollment_id} not found")
                business_id = await self._business_of(session, enrollment)
                if actor_business_id is not None and business_id != str(actor_business_id):
                    raise ForbiddenError("Enrollment belongs to another business")
                if enrollment.status != EnrollmentStatus.ACTIVE:
                    raise InvalidTransition(f"Only ACTIVE enrollments can be revoked (is {enrollment.status.value})")

                await self._move_enrollment(
                    session, enrollment, (EnrollmentStatus.ACTIVE,), EnrollmentStatus.REVOKED, self._now()
                )
                card = await self._registry.deactivate_in(session, enrollment.id)
                events = to_read_all(
                    await record_enrollment_event(
                        session,
                        NotificationEventType.ENROLLMENT_REVOKED,
                        enrollment,
                        business_id,
                        card_id=card.id if card is not None else None,
                        reason=reason,
                    )
                )
                await session.commit()
            except AlreadyResponded as exc:
                await rollback(session)
                raise InvalidTransition(f"Enrollment {enrollment_id} changed concurrently") from exc
            except Exception:
                await rollback(session)
                raise

        record_enrollment_transition(EnrollmentStatus.REVOKED.value)
        logger.info("Enrollment revoked", extra={"enrollment_id": str(enrollment_id), "reason": reason})
        await self._publish(events)
        return enrollment

    # --- reads ---

    async def get_enrollment(self, enrollment_id: uuid.UUID) -> Enrollment:
        async with self._session_factory() as session:
            enrollment = await session.get(Enrollment, enrollment_id)
            if enrollment is None:
                raise EnrollmentNotFound(f"Enrollment {enrollment_id} not found")
            return enrollment

    async def list_for_customer(self, customer_id: str) -> list[Enrollment]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Enrollment)
                .where(Enrollment.customer_id == str(customer_id))
                .order_by(Enrollment.created_at.desc())
            )
            return list(result.scalars().all())

    async def latest_request_for(self, enrollment_id: uuid.UUID) -> ApprovalRequest | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ApprovalRequest)
                .where(ApprovalRequest.enrollment_id == enrollment_id)
                .order_by(ApprovalRequest.requested_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    # --- helpers ---

    @staticmethod
    async def _load_request(
        session: AsyncSession, approval_request_id: uuid.UUID
    ) -> tuple[ApprovalRequest, Enrollment]:
        request = await session.get(ApprovalRequest, approval_request_id)
        if request is None:
            raise ApprovalRequestNotFound(f"Approval request {approval_request_id} not found")
        enrollment = await session.get(Enrollment, request.enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFound(f"Enrollment {request.enrollment_id} not found")
        return request, enrollment

    @staticmethod
    async def _business_of(session: AsyncSession, enrollment: Enrollment) -> str:
        business_id = await session.scalar(
            select(LoyaltyProgram.business_id).where(LoyaltyProgram.id == enrollment.program_id)
        )
        if business_id is None:
            raise ProgramNotFound(f"Program {enrollment.program_id} not found")
        return business_id

    async def _publish(self, events: list[NotificationEventRead]) -> None:
        for event in events:
            await self._publisher.publish(event)

    async def _accept_in(
        self,
        session: AsyncSession,
        request: ApprovalRequest,
        enrollment: Enrollment,
        business_id: str,
        now: datetime,
    ) -> list[NotificationEventRead]:
        await self._settle_request(session, request, ApprovalStatus.ACCEPTED, now)
        await self._move_enrollment(
            session, enrollment, (EnrollmentStatus.PENDING_APPROVAL,), EnrollmentStatus.ACTIVE, now
        )
        card = await self._registry.ensure_card_in(session, enrollment)
        await mark_request_actioned(session, enrollment.id, request.id, now)
        rows = await record_enrollment_event(
            session,
            NotificationEventType.ENROLLMENT_ACCEPTED,
            enrollment,
            business_id,
            approval_request_id=request.id,
            card_id=card.id,
        )
        return to_read_all(rows)

    async def _decline_in(
        self,
        session: AsyncSession,
        request: ApprovalRequest,
        enrollment: Enrollment,
        business_id: str,
        now: datetime,
    ) -> list[NotificationEventRead]:
        await self._settle_request(session, request, ApprovalStatus.DECLINED, now)
        await self._move_enrollment(
            session, enrollment, (EnrollmentStatus.PENDING_APPROVAL,), EnrollmentStatus.DECLINED, now
        )
        await mark_request_actioned(session, enrollment.id, request.id, now)
        rows = await record_enrollment_event(
            session,
            NotificationEventType.ENROLLMENT_DECLINED,
            enrollment,
            business_id,
            approval_request_id=request.id,
        )
        return to_read_all(rows)

    async def _expire_in(
        self,
        session: AsyncSession,
        request: ApprovalRequest,
        enrollment: Enrollment,
        business_id: str,
        now: datetime,
    ) -> list[NotificationEventRead]:
        await self._settle_request(session, request, ApprovalStatus.EXPIRED, now)
        await self._move_enrollment(
            session,
            enrollment,
            (EnrollmentStatus.INVITED, EnrollmentStatus.PENDING_APPROVAL),
            EnrollmentStatus.DECLINED,
            now,
        )
        # The invitation can no longer be answered.
        await mark_request_actioned(session, enrollment.id, request.id, now)
        rows = await record_enrollment_event(
            session,
            NotificationEventType.ENROLLMENT_EXPIRED,
            enrollment,
            business_id,
            approval_request_id=request.id,
            reason="approval request expired",
        )
        return to_read_all(rows)

    @staticmethod
    async def _settle_request(
        session: AsyncSession, request: ApprovalRequest, status: ApprovalStatus, now: datetime
    ) -> None:
        result = await session.execute(
            update(ApprovalRequest)
            .where(ApprovalRequest.id == request.id, ApprovalRequest.status == ApprovalStatus.PENDING)
            .values(status=status, responded_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadyResponded(f"Approval request {request.id} was settled concurrently")
        await session.refresh(request)

    @staticmethod
    async def _move_enrollment(
        session: AsyncSession,
        enrollment: Enrollment,
        sources: Iterable[EnrollmentStatus],
        target: EnrollmentStatus,
        now: datetime,
    ) -> None:
        values: dict = {"status": target, "updated_at": now}
        if target.is_terminal:
            values["active_key"] = None
        result = await session.execute(
            update(Enrollment)
            .where(Enrollment.id == enrollment.id, Enrollment.status.in_(list(sources)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadyResponded(f"Enrollment {enrollment.id} changed concurrently")
        await session.refresh(enrollment)
