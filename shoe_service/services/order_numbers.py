from __future__ import annotations

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shoe_service.config import settings
from shoe_service.db import models as m
from shoe_service.services.time_service import local_today


def number_stem(
    now: Optional[datetime] = None,
    *,
    tz: Optional[ZoneInfo] = None,
    prefix: Optional[str] = None,
) -> str:
    """``ORD251018-`` for 18 Oct 2025 in the business timezone."""
    day = local_today(now, tz)
    return f"{prefix or settings.order_number_prefix}{day:%y%m%d}-"


async def next_order_number(
    session: AsyncSession,
    now: Optional[datetime] = None,
    *,
    offset: int = 0,
    tz: Optional[ZoneInfo] = None,
    prefix: Optional[str] = None,
) -> str:
    """Next free number of the day. ``offset`` skips ahead after a collision."""
    stem = number_stem(now, tz=tz, prefix=prefix)
    taken = await session.scalar(
        select(func.count(m.orders.id)).where(m.orders.number.like(f"{stem}%"))
    )
    return f"{stem}{int(taken or 0) + 1 + offset:03d}"
