from __future__ import annotations

import pytest

from shoe_service.db import models as m
from shoe_service.services.task_board import OrderBoard, OrderState, TaskBoard, TaskState
from tests.factories import (
    delivery_input,
    offline_order,
    offline_order_at_delivery,
    online_order,
    online_order_at_pickup,
)


async def _number(session, order_id: int) -> str:
    return (await session.get(m.orders, order_id)).number


@pytest.mark.asyncio
async def test_board_lists_claimable_and_claimed_tasks(
    async_session, orchestrator, customer, staff_a, staff_b
) -> None:
    pickup_id = await online_order_at_pickup(orchestrator, customer)
    waiting_id = await online_order(orchestrator, customer)
    walk_ins = [await offline_order(orchestrator, staff_a) for _ in range(3)]
    await orchestrator.claim_stage(staff_a, pickup_id, m.Stage.PICKUP)
    await orchestrator.claim_stage(staff_b, walk_ins[0], m.Stage.INSPECTION)

    board = TaskBoard(async_session)

    pickup = await board.list_tasks(m.Stage.PICKUP)
    assert pickup.total == 1
    [row] = pickup.items
    assert row.order_id == pickup_id
    assert row.status == m.OrderStatus.PICKUP_PROGRESS
    assert row.state == TaskState.CLAIMED
    assert row.holder_id == staff_a.id

    available = await board.list_tasks(m.Stage.INSPECTION, state=TaskState.AVAILABLE)
    assert sorted(r.order_id for r in available.items) == sorted(walk_ins[1:])

    everything = await board.list_tasks()
    assert everything.total == 4
    assert waiting_id not in {r.order_id for r in everything.items}

    assert await board.find_by_number(await _number(async_session, waiting_id)) is None
    found = await board.find_by_number(await _number(async_session, walk_ins[2]))
    assert found.stage == m.Stage.INSPECTION
    assert found.state == TaskState.AVAILABLE


@pytest.mark.asyncio
async def test_task_counts_and_my_tasks(async_session, orchestrator, customer, staff_a, staff_b) -> None:
    pickup_id = await online_order_at_pickup(orchestrator, customer)
    walk_in = await offline_order(orchestrator, staff_a)
    await offline_order(orchestrator, staff_a)
    await orchestrator.claim_stage(staff_a, pickup_id, m.Stage.PICKUP)
    await orchestrator.claim_stage(staff_b, walk_in, m.Stage.INSPECTION)

    board = TaskBoard(async_session)
    counts = await board.task_counts()
    assert counts[m.Stage.PICKUP] == {TaskState.AVAILABLE: 0, TaskState.CLAIMED: 1}
    assert counts[m.Stage.INSPECTION] == {TaskState.AVAILABLE: 1, TaskState.CLAIMED: 1}
    assert counts[m.Stage.DELIVERY] == {TaskState.AVAILABLE: 0, TaskState.CLAIMED: 0}

    mine = await board.my_tasks(staff_b.id)
    assert [(r.order_id, r.stage) for r in mine] == [(walk_in, m.Stage.INSPECTION)]
    assert await board.my_tasks(999) == []


@pytest.mark.asyncio
async def test_paging_and_search(async_session, orchestrator, staff_a) -> None:
    ids = [await offline_order(orchestrator, staff_a) for _ in range(3)]
    board = TaskBoard(async_session)

    first = await board.list_tasks(m.Stage.INSPECTION, per_page=2)
    second = await board.list_tasks(m.Stage.INSPECTION, page=2, per_page=2)
    assert first.total == 3
    assert first.pages == 2
    assert [r.order_id for r in first.items] == ids[:2]
    assert [r.order_id for r in second.items] == ids[2:]

    number = await _number(async_session, ids[1])
    hits = await board.list_tasks(search=number[-4:])
    assert [r.order_id for r in hits.items] == [ids[1]]

    assert (await board.list_tasks(per_page=1000)).per_page == 100


@pytest.mark.asyncio
async def test_delivery_task_disappears_when_completed(
    async_session, orchestrator, staff_a, sample_services
) -> None:
    order_id = await offline_order_at_delivery(orchestrator, staff_a, sample_services)
    board = TaskBoard(async_session)

    delivery = await board.list_tasks(m.Stage.DELIVERY)
    assert [(r.order_id, r.state) for r in delivery.items] == [(order_id, TaskState.AVAILABLE)]

    await orchestrator.claim_stage(staff_a, order_id, m.Stage.DELIVERY)
    await orchestrator.complete_stage(staff_a, order_id, m.Stage.DELIVERY, delivery_input())

    assert (await board.list_tasks()).total == 0


@pytest.mark.asyncio
async def test_search_matches_contact_name_and_phone(async_session, orchestrator, staff_a) -> None:
    walk_in = await offline_order(orchestrator, staff_a)
    named = await orchestrator.create_offline_order(
        staff_a, customer_id=601, contact_name="Sari Wulandari", contact_phone="+6281234567"
    )
    board = TaskBoard(async_session)

    by_name = await board.list_tasks(search="wulan")
    assert [r.order_id for r in by_name.items] == [named.id]
    assert by_name.items[0].contact_name == "Sari Wulandari"

    by_phone = await board.list_tasks(search="1234567")
    assert [r.order_id for r in by_phone.items] == [named.id]

    shared = await board.list_tasks(m.Stage.INSPECTION, search="+62")
    assert sorted(r.order_id for r in shared.items) == sorted([walk_in, named.id])


@pytest.mark.asyncio
async def test_customer_order_list_splits_active_and_finished(
    async_session, orchestrator, customer, other_customer, staff_a
) -> None:
    kept = await online_order(orchestrator, customer)
    dropped = await online_order(orchestrator, customer)
    await online_order(orchestrator, other_customer)
    await offline_order(orchestrator, staff_a, customer_id=customer.id)
    await orchestrator.cancel_order(customer, dropped)

    board = OrderBoard(async_session)

    active = await board.list_orders(customer_id=customer.id, order_type=m.OrderType.ONLINE)
    assert [r.order_id for r in active.items] == [kept]
    assert active.items[0].status == m.OrderStatus.WAITING_DEPOSIT
    assert active.items[0].state == OrderState.ACTIVE

    finished = await board.list_orders(
        customer_id=customer.id, order_type=m.OrderType.ONLINE, state=OrderState.FINISHED
    )
    assert [(r.order_id, r.status) for r in finished.items] == [
        (dropped, m.OrderStatus.CANCELLED)
    ]
    assert finished.items[0].state == OrderState.FINISHED

    both = await board.list_orders(
        customer_id=customer.id, order_type=m.OrderType.ONLINE, state=None
    )
    assert [r.order_id for r in both.items] == [dropped, kept]


@pytest.mark.asyncio
async def test_offline_order_list_pages_newest_first(
    async_session, orchestrator, customer, staff_a, sample_services
) -> None:
    ids = [await offline_order(orchestrator, staff_a, customer_id=700 + i) for i in range(11)]
    await online_order(orchestrator, customer)
    done = await offline_order_at_delivery(orchestrator, staff_a, sample_services)
    await orchestrator.claim_stage(staff_a, done, m.Stage.DELIVERY)
    await orchestrator.complete_stage(staff_a, done, m.Stage.DELIVERY, delivery_input())

    board = OrderBoard(async_session)

    first = await board.list_orders(order_type=m.OrderType.OFFLINE)
    second = await board.list_orders(order_type=m.OrderType.OFFLINE, page=2)
    assert first.total == 11
    assert first.per_page == 10
    assert first.pages == 2
    newest_first = list(reversed(ids))
    assert [r.order_id for r in first.items] == newest_first[:10]
    assert [r.order_id for r in second.items] == newest_first[10:]
    assert all(r.order_type == m.OrderType.OFFLINE for r in first.items)

    finished = await board.list_orders(order_type=m.OrderType.OFFLINE, state=OrderState.FINISHED)
    assert [(r.order_id, r.status) for r in finished.items] == [(done, m.OrderStatus.COMPLETED)]

    number = await _number(async_session, ids[4])
    by_number = await board.list_orders(order_type=m.OrderType.OFFLINE, search=number)
    assert [r.order_id for r in by_number.items] == [ids[4]]

    by_name = await board.list_orders(order_type=m.OrderType.OFFLINE, search="walk-in")
    assert by_name.total == 11
    assert (await board.list_orders(order_type=m.OrderType.OFFLINE, search="nobody")).total == 0
