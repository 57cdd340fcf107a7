"""NotificationEvent rows: written inside the writer's transaction, read back as a feed.

Every state change is recorded twice: once for the customer and once for the
business that owns the program, each with its own dedupe key. Business
targets are namespaced so they can never collide with a customer id.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_core.db.operations import flush_async
from loyalty_core.domain.enums import NotificationEventType
from loyalty_core.models.card import LoyaltyCard
from loyalty_core.models.enrollment import Enrollment
from loyalty_core.models.ledger import PointTransaction
from loyalty_core.models.notification import NotificationEvent
from loyalty_core.schemas.notification import NotificationEventRead

BUSINESS_TARGET_PREFIX = "business:"


class EventPublisher(Protocol):
    """What writers may know about the reactive path: a place to hand events to."""

    async def publish(self, event: NotificationEventRead) -> bool: ...


def business_target(business_id: str) -> str:
    return f"{BUSINESS_TARGET_PREFIX}{business_id}"


def request_event_key(enrollment_id: Any, approval_request_id: Any) -> str:
    """Dedupe key of the customer's ENROLLMENT_REQUESTED event for one request."""
    return f"enrollment:{enrollment_id}:{NotificationEventType.ENROLLMENT_REQUESTED.value}:{approval_request_id}"


async def record_event(
    session: AsyncSession,
    event_type: NotificationEventType,
    target_id: str,
    payload: dict[str, Any],
    dedupe_key: str,
    coalesce_key: str | None = None,
    requires_action: bool = False,
) -> NotificationEvent:
    event = NotificationEvent(
        type=event_type,
        target_id=str(target_id),
        payload=payload,
        dedupe_key=dedupe_key,
        coalesce_key=coalesce_key,
        requires_action=requires_action,
    )
    session.add(event)
    await flush_async(session, event)
    return event


async def _record_for_both(
    session: AsyncSession,
    event_type: NotificationEventType,
    customer_id: str,
    business_id: str,
    payload: dict[str, Any],
    dedupe_key: str,
    coalesce_key: str | None = None,
    requires_action: bool = False,
) -> list[NotificationEvent]:
    customer_event = await record_event(
        session, event_type, customer_id, payload, dedupe_key, coalesce_key, requires_action=requires_action
    )
    business_event = await record_event(
        session,
        event_type,
        business_target(business_id),
        {**payload, "customer_id": str(customer_id)},
        f"{dedupe_key}@{business_target(business_id)}",
        coalesce_key,
    )
    return [customer_event, business_event]


async def record_balance_changed(
    session: AsyncSession,
    card: LoyaltyCard,
    txn: PointTransaction,
    business_id: str,
) -> list[NotificationEvent]:
    return await _record_for_both(
        session,
        NotificationEventType.BALANCE_CHANGED,
        card.customer_id,
        business_id,
        {
            "card_id": str(card.id),
            "program_id": str(card.program_id),
            "balance": txn.balance_after,
            "version": txn.card_version,
            "delta": txn.delta,
            "source": txn.source,
            "transaction_id": str(txn.id),
        },
        dedupe_key=f"balance:{card.id}:{txn.card_version}",
        coalesce_key=f"card:{card.id}",
    )


async def record_enrollment_event(
    session: AsyncSession,
    event_type: NotificationEventType,
    enrollment: Enrollment,
    business_id: str,
    *,
    approval_request_id: Any = None,
    card_id: Any = None,
    reason: str | None = None,
) -> list[NotificationEvent]:
    payload: dict[str, Any] = {
        "enrollment_id": str(enrollment.id),
        "program_id": str(enrollment.program_id),
        "status": enrollment.status.value,
    }
    if approval_request_id is not None:
        payload["approval_request_id"] = str(approval_request_id)
    if card_id is not None:
        payload["card_id"] = str(card_id)
    if reason:
        payload["reason"] = reason
    return await _record_for_both(
        session,
        event_type,
        enrollment.customer_id,
        business_id,
        payload,
        dedupe_key=f"enrollment:{enrollment.id}:{event_type.value}:{approval_request_id or enrollment.status.value}",
        # Only the customer can answer an invitation.
        requires_action=event_type == NotificationEventType.ENROLLMENT_REQUESTED,
    )


async def mark_request_actioned(
    session: AsyncSession, enrollment_id: Any, approval_request_id: Any, now: datetime
) -> None:
    """Settle the action on the customer's invitation once the request is no longer pending."""
    await session.execute(
        update(NotificationEvent)
        .where(
            NotificationEvent.dedupe_key == request_event_key(enrollment_id, approval_request_id),
            NotificationEvent.actioned_at.is_(None),
        )
        .values(actioned_at=now, read_at=func.coalesce(NotificationEvent.read_at, now))
        .execution_options(synchronize_session=False)
    )


async def mark_read(
    session: AsyncSession,
    target_id: str,
    now: datetime,
    *,
    sequences: Iterable[int] | None = None,
    up_to: int | None = None,
) -> int:
    """Mark unread events of ``target_id`` as read; returns how many changed."""
    stmt = update(NotificationEvent).where(
        NotificationEvent.target_id == str(target_id),
        NotificationEvent.read_at.is_(None),
    )
    if sequences is not None:
        stmt = stmt.where(NotificationEvent.sequence.in_(list(sequences)))
    if up_to is not None:
        stmt = stmt.where(NotificationEvent.sequence <= up_to)
    result = await session.execute(stmt.values(read_at=now).execution_options(synchronize_session=False))
    return int(result.rowcount or 0)


def to_read(event: NotificationEvent) -> NotificationEventRead:
    return NotificationEventRead.model_validate(event)


def to_read_all(events: Iterable[NotificationEvent]) -> list[NotificationEventRead]:
    return [to_read(event) for event in events]


async def list_events(
    session: AsyncSession,
    target_id: str | None,
    after: int = 0,
    limit: int = 100,
    *,
    unread_only: bool = False,
    requires_action: bool = False,
) -> list[NotificationEvent]:
    """Persisted events for ``target_id`` strictly after the ``after`` sequence.

    ``None`` reads every target, for operator views.
    """
    stmt = select(NotificationEvent).where(NotificationEvent.sequence > after)
    if target_id is not None:
        stmt = stmt.where(NotificationEvent.target_id == str(target_id))
    if unread_only:
        stmt = stmt.where(NotificationEvent.read_at.is_(None))
    if requires_action:
        stmt = stmt.where(NotificationEvent.requires_action.is_(True), NotificationEvent.actioned_at.is_(None))
    result = await session.execute(stmt.order_by(NotificationEvent.sequence).limit(limit))
    return list(result.scalars().all())


async def count_unread(session: AsyncSession, target_id: str | None) -> int:
    stmt = select(func.count(NotificationEvent.sequence)).where(NotificationEvent.read_at.is_(None))
    if target_id is not None:
        stmt = stmt.where(NotificationEvent.target_id == str(target_id))
    result = await session.scalar(stmt)
    return int(result or 0)
