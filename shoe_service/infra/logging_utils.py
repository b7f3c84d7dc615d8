from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from shoe_service.config import settings

__all__ = ["utcnow_iso", "setup_logging"]

UTC = timezone.utc

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def utcnow_iso() -> str:
    """Return current UTC timestamp in ISO 8601 format with Z suffix."""
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once for a process entry point.

    Structured lifecycle lines go to the ``lifecycle.structured`` logger; they
    are kept out of plain-text output unless ``settings.log_json`` is set.
    """
    logging.basicConfig(level=(level or settings.log_level).upper(), format=_FORMAT)
    structured = logging.getLogger("lifecycle.structured")
    structured.disabled = not settings.log_json
