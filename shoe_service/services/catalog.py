from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shoe_service.db import models as m
from shoe_service.services.errors import NotFound, ValidationError

LOGGER = logging.getLogger(__name__)
TWO_PLACES = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Coerce *value* to a two-place Decimal; rejects garbage instead of zeroing it."""
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, str)):
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(f"not a money amount: {value!r}") from None
    elif isinstance(value, float):
        amount = Decimal(str(value))
    else:
        raise ValidationError(f"not a money amount: {value!r}")
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"money amount must be a non-negative number: {value!r}")
    return amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


class ServiceCatalog:
    """Priced cleaning services used by inspection."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(
        self,
        name: str,
        price: Any,
        service_type: m.ServiceType,
        *,
        description: Optional[str] = None,
    ) -> m.services:
        name = (name or "").strip()
        if not name:
            raise ValidationError("service name is required")
        row = m.services(
            name=name,
            price=to_money(price),
            type=m.ServiceType(service_type),
            description=description,
        )
        self._session.add(row)
        await self._session.flush()
        LOGGER.info("catalog.add: service=%s name=%s type=%s", row.id, name, row.type.value)
        return row

    async def list_services(
        self,
        service_type: Optional[m.ServiceType] = None,
        *,
        include_inactive: bool = False,
    ) -> Sequence[m.services]:
        stmt = select(m.services).order_by(m.services.type, m.services.name)
        if service_type is not None:
            stmt = stmt.where(m.services.type == service_type)
        if not include_inactive:
            stmt = stmt.where(m.services.is_active.is_(True))
        return (await self._session.execute(stmt)).scalars().all()

    async def get_many(self, service_ids: Iterable[int]) -> dict[int, m.services]:
        """Active services by id. Raises ``ValidationError`` naming any unknown id."""
        wanted = set(service_ids)
        if not wanted:
            return {}
        rows = (
            await self._session.execute(
                select(m.services).where(
                    m.services.id.in_(wanted), m.services.is_active.is_(True)
                )
            )
        ).scalars().all()
        found = {row.id: row for row in rows}
        missing = sorted(wanted - set(found))
        if missing:
            raise ValidationError(f"unknown or inactive services: {missing}", service_ids=missing)
        return found

    async def deactivate(self, service_id: int) -> None:
        result = await self._session.execute(
            update(m.services)
            .where(m.services.id == service_id)
            .values(is_active=False)
            .returning(m.services.id)
        )
        if result.first() is None:
            raise NotFound(f"service {service_id} not found", service_id=service_id)
        LOGGER.info("catalog.deactivate: service=%s", service_id)
