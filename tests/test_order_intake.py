from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import func, select

from shoe_service.config import settings
from shoe_service.db import models as m
from shoe_service.services.errors import Unauthorized, ValidationError
from shoe_service.services.order_numbers import number_stem
from shoe_service.services.time_service import local_today
from tests.factories import current_status, tomorrow


async def _order_count(session) -> int:
    return await session.scalar(select(func.count(m.orders.id)))


def test_number_stem_uses_business_timezone() -> None:
    # 18:30 UTC on 17 Oct is already 18 Oct in Jakarta (UTC+7)
    moment = datetime(2026, 10, 17, 18, 30, tzinfo=timezone.utc)
    assert number_stem(moment, tz=ZoneInfo("Asia/Jakarta"), prefix="ORD") == "ORD261018-"
    assert number_stem(moment, tz=ZoneInfo("UTC"), prefix="ORD") == "ORD261017-"


@pytest.mark.asyncio
async def test_online_order_starts_waiting_for_deposit(async_session, orchestrator, customer) -> None:
    order = await orchestrator.create_online_order(
        customer, address_id=12, scheduled_date=tomorrow(), note="two pairs"
    )

    assert re.fullmatch(rf"{settings.order_number_prefix}\d{{6}}-001", order.number)
    assert order.type == m.OrderType.ONLINE
    assert order.customer_id == customer.id
    assert order.created_by_id == customer.id
    assert await current_status(async_session, order.id) == m.OrderStatus.WAITING_DEPOSIT

    deposit = (
        await async_session.execute(
            select(m.transactions).where(m.transactions.order_id == order.id)
        )
    ).scalar_one()
    assert deposit.type == m.TransactionType.DEPOSIT
    assert deposit.status == m.TransactionStatus.PENDING
    assert deposit.amount == settings.deposit_amount
    assert deposit.expires_at is not None

    second = await orchestrator.create_online_order(customer, address_id=12, scheduled_date=tomorrow())
    assert second.number.endswith("-002")


@pytest.mark.asyncio
async def test_online_order_needs_address(async_session, orchestrator, customer) -> None:
    with pytest.raises(ValidationError):
        await orchestrator.create_online_order(customer, address_id=None, scheduled_date=tomorrow())
    assert await _order_count(async_session) == 0


@pytest.mark.asyncio
async def test_online_order_cannot_be_scheduled_in_the_past(async_session, orchestrator, customer) -> None:
    with pytest.raises(ValidationError):
        await orchestrator.create_online_order(
            customer, address_id=3, scheduled_date=local_today() - timedelta(days=1)
        )
    assert await _order_count(async_session) == 0


@pytest.mark.asyncio
async def test_roles_for_intake(async_session, orchestrator, customer, staff_a) -> None:
    with pytest.raises(Unauthorized):
        await orchestrator.create_online_order(staff_a, address_id=3, scheduled_date=tomorrow())
    with pytest.raises(Unauthorized):
        await orchestrator.create_offline_order(customer, customer_id=customer.id)
    assert await _order_count(async_session) == 0


@pytest.mark.asyncio
async def test_offline_order_starts_in_inspection(async_session, orchestrator, staff_a) -> None:
    order = await orchestrator.create_offline_order(
        staff_a, customer_id=777, contact_name="Budi", contact_phone="+62811000"
    )

    assert order.type == m.OrderType.OFFLINE
    assert order.address_id is None
    assert order.created_by_id == staff_a.id
    assert order.scheduled_date == local_today()
    assert await current_status(async_session, order.id) == m.OrderStatus.INSPECTION
    assert await async_session.scalar(
        select(func.count(m.transactions.id)).where(m.transactions.order_id == order.id)
    ) == 0


@pytest.mark.asyncio
async def test_taken_number_is_skipped(async_session, orchestrator, staff_a) -> None:
    squatter = m.orders(
        number=f"{number_stem()}002",
        type=m.OrderType.OFFLINE,
        customer_id=1,
        created_by_id=1,
        scheduled_date=local_today(),
    )
    async_session.add(squatter)
    await async_session.commit()

    order = await orchestrator.create_offline_order(staff_a, customer_id=9)
    assert order.number == f"{number_stem()}003"


@pytest.mark.asyncio
async def test_address_rule_enforced_by_schema(async_session) -> None:
    from sqlalchemy.exc import IntegrityError

    async_session.add(
        m.orders(
            number="ORD-BAD-1",
            type=m.OrderType.ONLINE,
            customer_id=1,
            created_by_id=1,
            address_id=None,
            scheduled_date=local_today(),
        )
    )
    with pytest.raises(IntegrityError):
        await async_session.flush()
    await async_session.rollback()
