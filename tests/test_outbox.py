from __future__ import annotations

import pytest
from sqlalchemy import select

from shoe_service.db import models as m
from shoe_service.infra.structured_logging import LifecycleEvent
from shoe_service.services.errors import AlreadyClaimed
from shoe_service.services.events_outbox import MAX_ATTEMPTS, EventOutbox
from tests.factories import offline_order, online_order_at_pickup


async def _events(session, order_id: int) -> list[m.order_events]:
    return (
        await session.execute(
            select(m.order_events)
            .where(m.order_events.order_id == order_id)
            .order_by(m.order_events.id.asc())
        )
    ).scalars().all()


@pytest.mark.asyncio
async def test_every_change_writes_an_event(async_session, orchestrator, customer, staff_a) -> None:
    order_id = await online_order_at_pickup(orchestrator, customer)
    await orchestrator.claim_stage(staff_a, order_id, m.Stage.PICKUP)

    events = await _events(async_session, order_id)
    assert [e.event for e in events] == [
        LifecycleEvent.ORDER_CREATED.value,
        LifecycleEvent.STATUS_CHANGED.value,
        LifecycleEvent.STATUS_CHANGED.value,
        LifecycleEvent.STATUS_CHANGED.value,
        LifecycleEvent.CLAIM_ACQUIRED.value,
    ]
    transitions = [(e.payload["from_status"], e.payload["to_status"]) for e in events[1:4]]
    assert transitions == [
        (None, "waiting_deposit"),
        ("waiting_deposit", "pickup_scheduled"),
        ("pickup_scheduled", "pickup_progress"),
    ]
    claim_event = events[-1].payload
    assert claim_event["stage"] == "pickup"
    assert claim_event["holder_id"] == staff_a.id
    assert claim_event["order_type"] == "online"


@pytest.mark.asyncio
async def test_rejected_event_leaves_no_trace(
    async_session, orchestrator, staff_a, staff_b
) -> None:
    order_id = await offline_order(orchestrator, staff_a)
    await orchestrator.claim_stage(staff_a, order_id, m.Stage.INSPECTION)
    before = len(await _events(async_session, order_id))

    with pytest.raises(AlreadyClaimed):
        await orchestrator.claim_stage(staff_b, order_id, m.Stage.INSPECTION)

    assert len(await _events(async_session, order_id)) == before


@pytest.mark.asyncio
async def test_consumer_acknowledgement(async_session, orchestrator, staff_a) -> None:
    order_id = await offline_order(orchestrator, staff_a)
    outbox = EventOutbox(async_session)

    pending = await outbox.fetch_pending()
    assert [e.order_id for e in pending] == [order_id, order_id]
    created, status = pending

    await outbox.mark_processed(created.id)
    await outbox.mark_processed(created.id)
    await async_session.commit()
    assert [e.id for e in await outbox.fetch_pending()] == [status.id]

    for _ in range(MAX_ATTEMPTS):
        await outbox.mark_failed(status.id, "notifier offline")
    await async_session.commit()
    assert await outbox.fetch_pending() == []

    await async_session.refresh(status)
    await async_session.refresh(created)
    assert status.attempt_count == MAX_ATTEMPTS
    assert status.last_error == "notifier offline"
    assert status.processed_at is None
    assert created.attempt_count == 1
    assert created.processed_at is not None
