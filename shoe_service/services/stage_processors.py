"""
Stage processors for pickup, inspection and delivery.

A processor validates the staff member's submission and applies its domain
effects (photos, shoes, pricing, payment) while the caller's claim is held.
It never writes ledger entries or releases claims; it only reports which
status the order should move to.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from shoe_service.db import models as m
from shoe_service.services.catalog import TWO_PLACES, ServiceCatalog
from shoe_service.services.errors import Unauthorized, ValidationError
from shoe_service.services.payment_gate import PaymentGate

_log = logging.getLogger(__name__)

ALLOWED_PHOTO_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg"})


@dataclass(slots=True)
class PhotoInput:
    file_ref: str
    note: Optional[str] = None


@dataclass(slots=True)
class PickupInput:
    photos: list[PhotoInput] = field(default_factory=list)
    note: Optional[str] = None


@dataclass(slots=True)
class ShoeInput:
    brand: str
    size: Any
    type: str
    material: str
    category: str
    services: list[int] = field(default_factory=list)
    condition: Optional[str] = None


@dataclass(slots=True)
class InspectionInput:
    total_shoes: int
    shoes: list[ShoeInput] = field(default_factory=list)
    photos: list[PhotoInput] = field(default_factory=list)
    note: Optional[str] = None


@dataclass(slots=True)
class DeliveryInput:
    photos: list[PhotoInput] = field(default_factory=list)
    note: Optional[str] = None


@dataclass(slots=True)
class StageEffects:
    next_status: m.OrderStatus
    photos: list[m.order_photos] = field(default_factory=list)
    shoes: list[m.shoes] = field(default_factory=list)
    transaction: Optional[m.transactions] = None
    note: Optional[str] = None


def validate_photos(photos: list[PhotoInput], *, required: bool = True) -> None:
    if required and not photos:
        raise ValidationError("at least one photo is required")
    for photo in photos:
        ref = (photo.file_ref or "").strip()
        if not ref:
            raise ValidationError("photo reference is empty")
        ext = os.path.splitext(ref)[1].lower()
        if ext not in ALLOWED_PHOTO_EXTENSIONS:
            raise ValidationError(
                f"photo {ref!r} must be one of {sorted(ALLOWED_PHOTO_EXTENSIONS)}",
                file_ref=ref,
            )


class StageProcessor:
    stage: m.Stage
    photo_stage: m.PhotoStage
    completes_to: m.OrderStatus
    input_type: type = object

    def validate(self, data: Any) -> None:
        if not isinstance(data, self.input_type):
            raise ValidationError(
                f"{self.stage.value} expects {self.input_type.__name__}, got {type(data).__name__}"
            )
        validate_photos(data.photos)

    def ensure_claim(self, order: m.orders, claim: Optional[m.order_claims], actor_id: int) -> m.order_claims:
        if (
            claim is None
            or claim.released_at is not None
            or claim.order_id != order.id
            or claim.stage != self.stage
            or claim.holder_id != actor_id
        ):
            raise Unauthorized(
                f"{self.stage.value} of order {order.number} is not claimed by staff {actor_id}",
                order_id=order.id,
                stage=self.stage.value,
            )
        return claim

    async def apply(
        self,
        session: AsyncSession,
        order: m.orders,
        claim: Optional[m.order_claims],
        actor_id: int,
        data: Any,
    ) -> StageEffects:
        self.ensure_claim(order, claim, actor_id)
        self.validate(data)
        photos = await self._store_photos(session, order, actor_id, data.photos)
        return StageEffects(next_status=self.completes_to, photos=photos, note=data.note)

    def cancel_target(self, non_recoverable: bool) -> Optional[m.OrderStatus]:
        """Status to append when the claim holder gives up; None keeps the status."""
        if non_recoverable:
            raise ValidationError(
                f"{self.stage.value} cannot be flagged non-recoverable; cancel the order instead"
            )
        return None

    async def _store_photos(
        self,
        session: AsyncSession,
        order: m.orders,
        actor_id: int,
        photos: list[PhotoInput],
    ) -> list[m.order_photos]:
        rows = [
            m.order_photos(
                order_id=order.id,
                stage=self.photo_stage,
                uploaded_by_id=actor_id,
                file_ref=photo.file_ref.strip(),
                note=photo.note,
            )
            for photo in photos
        ]
        session.add_all(rows)
        await session.flush()
        return rows


class PickupProcessor(StageProcessor):
    stage = m.Stage.PICKUP
    photo_stage = m.PhotoStage.PICKUP
    completes_to = m.OrderStatus.INSPECTION
    input_type = PickupInput

    def cancel_target(self, non_recoverable: bool) -> Optional[m.OrderStatus]:
        if non_recoverable:
            return m.OrderStatus.CANCELLED
        return m.OrderStatus.PICKUP_SCHEDULED


class DeliveryProcessor(StageProcessor):
    stage = m.Stage.DELIVERY
    photo_stage = m.PhotoStage.DELIVERY
    completes_to = m.OrderStatus.COMPLETED
    input_type = DeliveryInput


class InspectionProcessor(StageProcessor):
    """Records the shoes, prices them from the catalogue and opens the full payment."""

    stage = m.Stage.INSPECTION
    photo_stage = m.PhotoStage.CHECK
    completes_to = m.OrderStatus.WAITING_PAYMENT
    input_type = InspectionInput

    def validate(self, data: Any) -> None:
        super().validate(data)
        if not isinstance(data.total_shoes, int) or data.total_shoes < 1:
            raise ValidationError("total_shoes must be a positive integer")
        if data.total_shoes != len(data.shoes):
            raise ValidationError(
                f"total_shoes={data.total_shoes} but {len(data.shoes)} shoes were described",
                total_shoes=data.total_shoes,
                described=len(data.shoes),
            )
        for idx, shoe in enumerate(data.shoes, start=1):
            for attr in ("brand", "type", "material", "category"):
                if not str(getattr(shoe, attr) or "").strip():
                    raise ValidationError(f"shoe #{idx}: {attr} is required", shoe=idx)
            _parse_size(shoe.size, idx)
            if not shoe.services:
                raise ValidationError(f"shoe #{idx}: at least one service is required", shoe=idx)
            if len(set(shoe.services)) != len(shoe.services):
                raise ValidationError(f"shoe #{idx}: duplicate services", shoe=idx)

    async def apply(
        self,
        session: AsyncSession,
        order: m.orders,
        claim: Optional[m.order_claims],
        actor_id: int,
        data: Any,
    ) -> StageEffects:
        self.ensure_claim(order, claim, actor_id)
        self.validate(data)

        catalog = ServiceCatalog(session)
        services = await catalog.get_many(
            service_id for shoe in data.shoes for service_id in shoe.services
        )
        for idx, shoe in enumerate(data.shoes, start=1):
            if not any(services[sid].type == m.ServiceType.PRIMARY for sid in shoe.services):
                raise ValidationError(f"shoe #{idx}: a primary service is required", shoe=idx)

        photos = await self._store_photos(session, order, actor_id, data.photos)

        shoe_rows = [
            m.shoes(
                order_id=order.id,
                brand=shoe.brand.strip(),
                size=_parse_size(shoe.size, idx),
                type=shoe.type.strip(),
                material=shoe.material.strip(),
                category=shoe.category.strip(),
                condition=shoe.condition,
            )
            for idx, shoe in enumerate(data.shoes, start=1)
        ]
        session.add_all(shoe_rows)
        await session.flush()

        total = sum(
            (services[sid].price for shoe in data.shoes for sid in shoe.services),
            Decimal("0"),
        ).quantize(TWO_PLACES)

        tx = await PaymentGate(session).create_transaction(order, m.TransactionType.FULL, total)
        items = [
            m.transaction_items(
                transaction_id=tx.id,
                shoe_id=shoe_row.id,
                service_id=sid,
                item_price=services[sid].price,
                subtotal=services[sid].price,
            )
            for shoe_row, shoe in zip(shoe_rows, data.shoes)
            for sid in shoe.services
        ]
        session.add_all(items)
        await session.flush()

        _log.info(
            "inspection.apply: order=%s shoes=%s items=%s total=%s tx=%s",
            order.id, len(shoe_rows), len(items), total, tx.id,
        )
        return StageEffects(
            next_status=self.completes_to,
            photos=photos,
            shoes=shoe_rows,
            transaction=tx,
            note=data.note,
        )


def _parse_size(value: Any, idx: int) -> Decimal:
    try:
        size = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"shoe #{idx}: size {value!r} is not a number", shoe=idx) from None
    if not size.is_finite() or size <= 0 or size >= 1000:
        raise ValidationError(f"shoe #{idx}: size {value!r} is out of range", shoe=idx)
    return size


PROCESSORS: dict[m.Stage, StageProcessor] = {
    m.Stage.PICKUP: PickupProcessor(),
    m.Stage.INSPECTION: InspectionProcessor(),
    m.Stage.DELIVERY: DeliveryProcessor(),
}


def get_processor(stage: m.Stage) -> StageProcessor:
    return PROCESSORS[m.Stage(stage)]
