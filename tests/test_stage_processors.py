from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select

from shoe_service.db import models as m
from shoe_service.services.claims import TaskClaimManager
from shoe_service.services.errors import Unauthorized, ValidationError
from shoe_service.services.stage_processors import (
    DeliveryInput,
    InspectionInput,
    PhotoInput,
    PickupInput,
    get_processor,
    validate_photos,
)
from tests.factories import inspection_input, photos, shoe

inspection = get_processor(m.Stage.INSPECTION)


@pytest_asyncio.fixture
async def claimed_order(async_session):
    order = m.orders(
        number="ORD-PROC-1",
        type=m.OrderType.OFFLINE,
        customer_id=501,
        created_by_id=11,
        scheduled_date=date(2026, 10, 18),
    )
    async_session.add(order)
    await async_session.flush()
    claim = await TaskClaimManager(async_session).acquire(order.id, m.Stage.INSPECTION, 11)
    await async_session.commit()
    return order, claim


def test_photo_extension_is_checked() -> None:
    validate_photos([PhotoInput("a.PNG"), PhotoInput("b.jpeg"), PhotoInput("c.jpg")])
    with pytest.raises(ValidationError):
        validate_photos([PhotoInput("scan.pdf")])
    with pytest.raises(ValidationError):
        validate_photos([PhotoInput("   ")])
    with pytest.raises(ValidationError):
        validate_photos([])


def test_inspection_count_must_match_shoe_list() -> None:
    data = InspectionInput(total_shoes=3, shoes=[shoe(1), shoe(1)], photos=photos())
    with pytest.raises(ValidationError) as exc:
        inspection.validate(data)
    assert exc.value.details == {"total_shoes": 3, "described": 2}


def test_inspection_requires_services_and_photos() -> None:
    with pytest.raises(ValidationError):
        inspection.validate(InspectionInput(total_shoes=1, shoes=[shoe()], photos=photos()))
    with pytest.raises(ValidationError):
        inspection.validate(InspectionInput(total_shoes=1, shoes=[shoe(1)], photos=[]))
    with pytest.raises(ValidationError):
        inspection.validate(InspectionInput(total_shoes=1, shoes=[shoe(1, 1)], photos=photos()))


def test_inspection_rejects_bad_size() -> None:
    bad = shoe(1)
    bad.size = "forty"
    with pytest.raises(ValidationError):
        inspection.validate(InspectionInput(total_shoes=1, shoes=[bad], photos=photos()))


def test_processor_rejects_wrong_input_type() -> None:
    with pytest.raises(ValidationError):
        get_processor(m.Stage.DELIVERY).validate(PickupInput(photos=photos()))


def test_cancel_targets() -> None:
    pickup = get_processor(m.Stage.PICKUP)
    assert pickup.cancel_target(False) == m.OrderStatus.PICKUP_SCHEDULED
    assert pickup.cancel_target(True) == m.OrderStatus.CANCELLED
    assert get_processor(m.Stage.DELIVERY).cancel_target(False) is None
    assert inspection.cancel_target(False) is None
    with pytest.raises(ValidationError):
        get_processor(m.Stage.DELIVERY).cancel_target(True)


@pytest.mark.asyncio
async def test_apply_without_claim_is_unauthorized(async_session, claimed_order, sample_services) -> None:
    order, claim = claimed_order
    with pytest.raises(Unauthorized):
        await inspection.apply(async_session, order, None, 11, inspection_input(sample_services))
    with pytest.raises(Unauthorized):
        await inspection.apply(async_session, order, claim, 12, inspection_input(sample_services))
    with pytest.raises(Unauthorized):
        await get_processor(m.Stage.DELIVERY).apply(
            async_session, order, claim, 11, DeliveryInput(photos=photos())
        )


@pytest.mark.asyncio
async def test_inspection_prices_shoes_from_catalogue(async_session, claimed_order, sample_services) -> None:
    order, claim = claimed_order
    data = InspectionInput(
        total_shoes=2,
        shoes=[
            shoe(sample_services["deep_clean"], sample_services["unyellow"], brand="Adidas"),
            shoe(sample_services["deep_clean"]),
        ],
        photos=photos("check.jpg"),
        note="left sole worn",
    )

    effects = await inspection.apply(async_session, order, claim, 11, data)

    assert effects.next_status == m.OrderStatus.WAITING_PAYMENT
    assert len(effects.shoes) == 2
    assert effects.shoes[0].brand == "Adidas"
    assert effects.photos[0].stage == m.PhotoStage.CHECK
    tx = effects.transaction
    assert tx.type == m.TransactionType.FULL
    assert tx.status == m.TransactionStatus.PENDING
    assert tx.amount == Decimal("135000.00")

    items = (
        await async_session.execute(
            select(m.transaction_items).where(m.transaction_items.transaction_id == tx.id)
        )
    ).scalars().all()
    assert len(items) == 3
    assert sum(item.subtotal for item in items) == tx.amount


@pytest.mark.asyncio
async def test_inspection_needs_a_primary_service(async_session, claimed_order, sample_services) -> None:
    order, claim = claimed_order
    data = InspectionInput(
        total_shoes=1, shoes=[shoe(sample_services["unyellow"])], photos=photos()
    )
    with pytest.raises(ValidationError):
        await inspection.apply(async_session, order, claim, 11, data)


@pytest.mark.asyncio
async def test_inspection_unknown_service(async_session, claimed_order, sample_services) -> None:
    order, claim = claimed_order
    data = InspectionInput(total_shoes=1, shoes=[shoe(9999)], photos=photos())
    with pytest.raises(ValidationError) as exc:
        await inspection.apply(async_session, order, claim, 11, data)
    assert exc.value.details["service_ids"] == [9999]
