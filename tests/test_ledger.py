# tests/test_ledger.py
import asyncio
import uuid

import pytest
from sqlalchemy import func, select

from loyalty_core.db.session_async import AsyncSessionLocal
from loyalty_core.domain.enums import NotificationEventType
from loyalty_core.models.card import LoyaltyCard
from loyalty_core.models.ledger import PointTransaction
from loyalty_core.services.exceptions import (
    CardInactive,
    CardNotFound,
    DomainValidationError,
    IdempotencyKeyConflict,
    InsufficientBalance,
)
from loyalty_core.services.ledger import TransactionLedger
from loyalty_core.services.notification_channels import QueueChannel
from loyalty_core.services.notification_events import business_target, list_events


async def _card(card_id) -> LoyaltyCard:
    async with AsyncSessionLocal() as session:
        return await session.get(LoyaltyCard, card_id)


async def _transactions(card_id) -> list[PointTransaction]:
    async with AsyncSessionLocal() as session:
        result = await session.execute(
            select(PointTransaction).where(PointTransaction.card_id == card_id).order_by(PointTransaction.card_version)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_award_on_fresh_card_records_one_transaction(ledger, active_card):
    result = await ledger.apply_delta(active_card.id, 10, "PURCHASE", "award-1")

    assert result.new_balance == 10
    assert result.replayed is False
    card = await _card(active_card.id)
    assert card.balance == 10
    assert card.version == 1
    txns = await _transactions(active_card.id)
    assert [(t.delta, t.balance_after, t.card_version) for t in txns] == [(10, 10, 1)]
    assert txns[0].id == result.transaction_id


@pytest.mark.asyncio
async def test_retry_with_same_key_is_not_applied_twice(ledger, active_card):
    first = await ledger.apply_delta(active_card.id, 10, "PURCHASE", "award-timeout")
    second = await ledger.apply_delta(active_card.id, 10, "PURCHASE", "award-timeout")

    assert second.replayed is True
    assert second.transaction_id == first.transaction_id
    assert second.new_balance == 10
    assert (await _card(active_card.id)).balance == 10
    assert len(await _transactions(active_card.id)) == 1


@pytest.mark.asyncio
async def test_concurrent_calls_with_same_key_apply_once(ledger, active_card):
    results = await asyncio.gather(
        *[ledger.apply_delta(active_card.id, 7, "PURCHASE", "same-key") for _ in range(10)]
    )

    assert len({r.transaction_id for r in results}) == 1
    assert all(r.new_balance == 7 for r in results)
    assert sum(1 for r in results if not r.replayed) == 1
    assert (await _card(active_card.id)).balance == 7
    assert len(await _transactions(active_card.id)) == 1


@pytest.mark.asyncio
async def test_concurrent_awards_with_distinct_keys_both_apply(ledger, active_card):
    first, second = await asyncio.gather(
        ledger.apply_delta(active_card.id, 5, "PURCHASE", "concurrent-a"),
        ledger.apply_delta(active_card.id, 5, "PURCHASE", "concurrent-b"),
    )

    assert first.transaction_id != second.transaction_id
    assert sorted([first.new_balance, second.new_balance]) == [5, 10]
    card = await _card(active_card.id)
    assert card.balance == 10
    assert card.version == 2
    assert len(await _transactions(active_card.id)) == 2


@pytest.mark.asyncio
async def test_redeem_beyond_balance_is_rejected_without_a_row(ledger, active_card):
    await ledger.apply_delta(active_card.id, 10, "PURCHASE", "seed-10")

    with pytest.raises(InsufficientBalance):
        await ledger.apply_delta(active_card.id, -15, "REDEEM", "redeem-15")

    assert (await _card(active_card.id)).balance == 10
    assert len(await _transactions(active_card.id)) == 1


@pytest.mark.asyncio
async def test_balance_equals_sum_of_deltas_under_contention(active_card, dispatcher):
    ledger = TransactionLedger(
        AsyncSessionLocal, dispatcher, max_attempts=100, backoff_base=0.002, backoff_max=0.02
    )
    await ledger.apply_delta(active_card.id, 20, "PURCHASE", "base")
    deltas = [3, -2, 8, -5, 1, 4, -6, 2, 9, -1]

    outcomes = await asyncio.gather(
        *[ledger.apply_delta(active_card.id, d, "MIXED", f"mix-{i}") for i, d in enumerate(deltas)],
        return_exceptions=True,
    )

    assert not [o for o in outcomes if isinstance(o, Exception) and not isinstance(o, InsufficientBalance)]
    card = await _card(active_card.id)
    txns = await _transactions(active_card.id)
    assert card.balance == sum(t.delta for t in txns)
    assert card.balance >= 0
    assert [t.card_version for t in txns] == list(range(1, len(txns) + 1))
    assert card.version == len(txns)


@pytest.mark.asyncio
async def test_reused_key_with_different_delta_conflicts(ledger, active_card):
    await ledger.apply_delta(active_card.id, 10, "PURCHASE", "key-x")

    with pytest.raises(IdempotencyKeyConflict):
        await ledger.apply_delta(active_card.id, 11, "PURCHASE", "key-x")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "delta, source, key",
    [(0, "PURCHASE", "k0"), (5, "", "k1"), (5, "PURCHASE", "bad key"), (5, "PURCHASE", "trailing-newline\n")],
)
async def test_invalid_input_is_rejected(ledger, active_card, delta, source, key):
    with pytest.raises(DomainValidationError):
        await ledger.apply_delta(active_card.id, delta, source, key)


@pytest.mark.asyncio
async def test_unknown_and_inactive_cards(ledger, workflow, active_card):
    with pytest.raises(CardNotFound):
        await ledger.apply_delta(uuid.uuid4(), 5, "PURCHASE", "ghost")

    await workflow.revoke(active_card.enrollment_id, "fraud")
    with pytest.raises(CardInactive):
        await ledger.apply_delta(active_card.id, 5, "PURCHASE", "after-revoke")


@pytest.mark.asyncio
async def test_balance_change_published_once_and_not_on_replay(ledger, dispatcher, active_card):
    channel = QueueChannel()
    await dispatcher.subscribe(active_card.customer_id, channel)

    await ledger.apply_delta(active_card.id, 10, "PURCHASE", "notify-1")
    await ledger.apply_delta(active_card.id, 10, "PURCHASE", "notify-1")

    events = channel.drain()
    assert len(events) == 1
    assert events[0].type == NotificationEventType.BALANCE_CHANGED
    assert events[0].payload["balance"] == 10
    assert events[0].version == 1


@pytest.mark.asyncio
async def test_history_and_summary_are_derived_from_the_log(ledger, active_card):
    await ledger.apply_delta(active_card.id, 30, "PURCHASE", "h-1")
    await ledger.apply_delta(active_card.id, -12, "REDEEM", "h-2")
    await ledger.apply_delta(active_card.id, 5, "BONUS", "h-3")

    history = await ledger.get_history(active_card.id)
    assert [t.idempotency_key for t in history] == ["h-3", "h-2", "h-1"]

    summary = await ledger.summarize(active_card.id)
    assert summary.balance == 23
    assert summary.total_earned == 35
    assert summary.total_redeemed == 12
    assert summary.transaction_count == 3
    assert summary.consistent is True

    async with AsyncSessionLocal() as session:
        count = await session.scalar(select(func.count()).select_from(PointTransaction))
    assert count == 3


@pytest.mark.asyncio
async def test_balance_change_is_also_published_to_the_business(ledger, dispatcher, program, active_card):
    customer_channel, business_channel = QueueChannel(), QueueChannel()
    await dispatcher.subscribe(active_card.customer_id, customer_channel)
    await dispatcher.subscribe(business_target(program.business_id), business_channel)

    await ledger.apply_delta(active_card.id, 15, "PURCHASE", "biz-view-1")

    [customer_event] = customer_channel.drain()
    [business_event] = business_channel.drain()
    assert business_event.type == NotificationEventType.BALANCE_CHANGED
    assert business_event.target_id == f"business:{program.business_id}"
    assert business_event.payload["customer_id"] == active_card.customer_id
    assert business_event.payload["balance"] == customer_event.payload["balance"] == 15
    assert business_event.dedupe_key != customer_event.dedupe_key

    async with AsyncSessionLocal() as session:
        stored = await list_events(session, business_target(program.business_id))
    assert [e.dedupe_key for e in stored] == [business_event.dedupe_key]
