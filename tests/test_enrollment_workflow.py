# tests/test_enrollment_workflow.py
import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from loyalty_core.db.operations import utcnow
from loyalty_core.db.session_async import AsyncSessionLocal
from loyalty_core.domain.enums import ApprovalStatus, CardStatus, EnrollmentStatus, NotificationEventType
from loyalty_core.models.card import LoyaltyCard
from loyalty_core.models.enrollment import ApprovalRequest
from loyalty_core.services.enrollment_workflow import EnrollmentWorkflow
from loyalty_core.services.exceptions import (
    AlreadyEnrolled,
    AlreadyResponded,
    ApprovalRequestNotFound,
    ForbiddenError,
    InvalidTransition,
    ProgramNotFound,
    RequestExpired,
)
from loyalty_core.services.notification_channels import QueueChannel
from loyalty_core.services.notification_events import business_target, count_unread, list_events


class FakeClock:
    def __init__(self):
        self.current = utcnow()

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


async def _count(model, **filters) -> int:
    async with AsyncSessionLocal() as session:
        stmt = select(func.count()).select_from(model)
        for name, value in filters.items():
            stmt = stmt.where(getattr(model, name) == value)
        return await session.scalar(stmt)


@pytest.mark.asyncio
async def test_invite_creates_pending_enrollment_and_request(workflow, dispatcher, program, customer_id):
    channel = QueueChannel()
    await dispatcher.subscribe(customer_id, channel)

    enrollment = await workflow.invite(customer_id, program.id)

    assert enrollment.status == EnrollmentStatus.PENDING_APPROVAL
    request = await workflow.latest_request_for(enrollment.id)
    assert request.status == ApprovalStatus.PENDING
    assert request.expires_at > request.requested_at
    events = channel.drain()
    assert [e.type for e in events] == [NotificationEventType.ENROLLMENT_REQUESTED]
    assert events[0].payload["approval_request_id"] == str(request.id)


@pytest.mark.asyncio
async def test_invite_for_unknown_program(workflow, customer_id):
    with pytest.raises(ProgramNotFound):
        await workflow.invite(customer_id, uuid.uuid4())


@pytest.mark.asyncio
async def test_invite_when_already_active_creates_no_request(workflow, program, customer_id, active_card):
    with pytest.raises(AlreadyEnrolled):
        await workflow.invite(customer_id, program.id)

    assert await _count(ApprovalRequest) == 1


@pytest.mark.asyncio
async def test_concurrent_invites_yield_one_enrollment(workflow, program, customer_id):
    outcomes = await asyncio.gather(
        *[workflow.invite(customer_id, program.id) for _ in range(5)], return_exceptions=True
    )

    created = [o for o in outcomes if not isinstance(o, Exception)]
    assert len(created) == 1
    assert all(isinstance(o, AlreadyEnrolled) for o in outcomes if isinstance(o, Exception))
    assert await _count(ApprovalRequest) == 1


@pytest.mark.asyncio
async def test_accept_activates_enrollment_and_issues_card(workflow, registry, dispatcher, program, customer_id):
    enrollment = await workflow.invite(customer_id, program.id)
    request = await workflow.latest_request_for(enrollment.id)
    channel = QueueChannel()
    await dispatcher.subscribe(customer_id, channel)

    accepted = await workflow.respond(request.id, True, actor_customer_id=customer_id)

    assert accepted.status == EnrollmentStatus.ACTIVE
    card = await registry.card_for_enrollment(enrollment.id)
    assert card.balance == 0
    assert card.status == CardStatus.ACTIVE
    events = channel.drain()
    assert [e.type for e in events] == [NotificationEventType.ENROLLMENT_ACCEPTED]
    assert events[0].payload["card_id"] == str(card.id)


@pytest.mark.asyncio
async def test_double_accept_reports_already_responded(workflow, program, customer_id):
    enrollment = await workflow.invite(customer_id, program.id)
    request = await workflow.latest_request_for(enrollment.id)

    await workflow.respond(request.id, True)
    with pytest.raises(AlreadyResponded):
        await workflow.respond(request.id, True)

    assert await _count(LoyaltyCard, enrollment_id=enrollment.id) == 1


@pytest.mark.asyncio
async def test_concurrent_accepts_have_one_winner(workflow, program, customer_id):
    enrollment = await workflow.invite(customer_id, program.id)
    request = await workflow.latest_request_for(enrollment.id)

    outcomes = await asyncio.gather(
        *[workflow.respond(request.id, True) for _ in range(5)], return_exceptions=True
    )

    assert sum(1 for o in outcomes if not isinstance(o, Exception)) == 1
    assert all(isinstance(o, AlreadyResponded) for o in outcomes if isinstance(o, Exception))
    assert await _count(LoyaltyCard, enrollment_id=enrollment.id) == 1


@pytest.mark.asyncio
async def test_decline_frees_the_pair_for_a_new_invite(workflow, registry, program, customer_id):
    enrollment = await workflow.invite(customer_id, program.id)
    request = await workflow.latest_request_for(enrollment.id)

    declined = await workflow.respond(request.id, False)

    assert declined.status == EnrollmentStatus.DECLINED
    assert await registry.card_for_enrollment(enrollment.id) is None
    again = await workflow.invite(customer_id, program.id)
    assert again.id != enrollment.id


@pytest.mark.asyncio
async def test_respond_by_another_customer_is_forbidden(workflow, program, customer_id):
    enrollment = await workflow.invite(customer_id, program.id)
    request = await workflow.latest_request_for(enrollment.id)

    with pytest.raises(ForbiddenError):
        await workflow.respond(request.id, True, actor_customer_id="someone-else")


@pytest.mark.asyncio
async def test_respond_to_unknown_request(workflow):
    with pytest.raises(ApprovalRequestNotFound):
        await workflow.respond(uuid.uuid4(), True)


@pytest.mark.asyncio
async def test_respond_after_ttl_expires_the_request(registry, dispatcher, program, customer_id):
    clock = FakeClock()
    workflow = EnrollmentWorkflow(AsyncSessionLocal, registry, dispatcher, ttl_seconds=60, now=clock)
    enrollment = await workflow.invite(customer_id, program.id)
    request = await workflow.latest_request_for(enrollment.id)
    channel = QueueChannel()
    await dispatcher.subscribe(customer_id, channel)

    clock.advance(seconds=61)
    with pytest.raises(RequestExpired):
        await workflow.respond(request.id, True)

    settled = await workflow.latest_request_for(enrollment.id)
    assert settled.status == ApprovalStatus.EXPIRED
    assert (await workflow.get_enrollment(enrollment.id)).status == EnrollmentStatus.DECLINED
    assert [e.type for e in channel.drain()] == [NotificationEventType.ENROLLMENT_EXPIRED]
    with pytest.raises(RequestExpired):
        await workflow.respond(request.id, True)


@pytest.mark.asyncio
async def test_expire_and_sweep(registry, dispatcher, program):
    clock = FakeClock()
    workflow = EnrollmentWorkflow(AsyncSessionLocal, registry, dispatcher, ttl_seconds=60, now=clock)
    stale = await workflow.invite("cust-stale-1", program.id)
    stale_request = await workflow.latest_request_for(stale.id)

    assert await workflow.expire(stale_request.id) is False

    clock.advance(seconds=30)
    fresh = await workflow.invite("cust-fresh", program.id)
    clock.advance(seconds=31)

    expired = await workflow.expire_stale()

    assert expired == [stale_request.id]
    assert (await workflow.get_enrollment(stale.id)).status == EnrollmentStatus.DECLINED
    assert (await workflow.get_enrollment(fresh.id)).status == EnrollmentStatus.PENDING_APPROVAL
    assert await workflow.expire(stale_request.id) is False


@pytest.mark.asyncio
async def test_revoke_deactivates_card(workflow, registry, dispatcher, active_card):
    channel = QueueChannel()
    await dispatcher.subscribe(active_card.customer_id, channel)

    revoked = await workflow.revoke(active_card.enrollment_id, "closed account")

    assert revoked.status == EnrollmentStatus.REVOKED
    card = await registry.get_card(active_card.id)
    assert card.status == CardStatus.INACTIVE
    events = channel.drain()
    assert [e.type for e in events] == [NotificationEventType.ENROLLMENT_REVOKED]
    assert events[0].payload["reason"] == "closed account"
    with pytest.raises(InvalidTransition):
        await workflow.revoke(active_card.enrollment_id)


@pytest.mark.asyncio
async def test_list_for_customer(workflow, program, customer_id, active_card):
    enrollments = await workflow.list_for_customer(customer_id)

    assert [e.id for e in enrollments] == [active_card.enrollment_id]
    assert enrollments[0].program_id == program.id


@pytest.mark.asyncio
async def test_business_follows_its_program_enrollments(workflow, dispatcher, program, customer_id):
    channel = QueueChannel()
    await dispatcher.subscribe(business_target(program.business_id), channel)

    enrollment = await workflow.invite(customer_id, program.id)
    request = await workflow.latest_request_for(enrollment.id)
    await workflow.respond(request.id, False)

    events = channel.drain()
    assert [e.type for e in events] == [
        NotificationEventType.ENROLLMENT_REQUESTED,
        NotificationEventType.ENROLLMENT_DECLINED,
    ]
    assert all(e.payload["customer_id"] == customer_id for e in events)
    # Only the customer can answer the invitation.
    assert not any(e.requires_action for e in events)


@pytest.mark.asyncio
async def test_answering_an_invitation_settles_its_action(workflow, program, customer_id):
    enrollment = await workflow.invite(customer_id, program.id)
    request = await workflow.latest_request_for(enrollment.id)

    async with AsyncSessionLocal() as session:
        [pending] = await list_events(session, customer_id, requires_action=True)
    assert pending.type == NotificationEventType.ENROLLMENT_REQUESTED
    assert pending.actioned_at is None

    await workflow.respond(request.id, True)

    async with AsyncSessionLocal() as session:
        assert await list_events(session, customer_id, requires_action=True) == []
        stored = await list_events(session, customer_id)
        unread = await count_unread(session, customer_id)
    invitation = next(e for e in stored if e.type == NotificationEventType.ENROLLMENT_REQUESTED)
    assert invitation.actioned_at is not None
    assert invitation.read_at is not None
    # The acceptance itself is still unread.
    assert unread == 1


@pytest.mark.asyncio
async def test_expiry_settles_the_invitation_action(registry, dispatcher, program, customer_id):
    clock = FakeClock()
    workflow = EnrollmentWorkflow(AsyncSessionLocal, registry, dispatcher, ttl_seconds=60, now=clock)
    await workflow.invite(customer_id, program.id)
    clock.advance(seconds=61)

    await workflow.expire_stale()

    async with AsyncSessionLocal() as session:
        assert await list_events(session, customer_id, requires_action=True) == []
