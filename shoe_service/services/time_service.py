from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from shoe_service.config import settings

UTC = timezone.utc


def resolve_timezone(value: Optional[str] = None) -> ZoneInfo:
    """Return the business timezone, falling back to UTC for unknown names."""
    name = value or settings.timezone
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        return ZoneInfo("UTC")


def now_utc() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite hands them back without tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def local_today(now: Optional[datetime] = None, tz: Optional[ZoneInfo] = None) -> date:
    moment = ensure_utc(now) if now is not None else now_utc()
    return moment.astimezone(tz or resolve_timezone()).date()
