"""
Structured logging for lifecycle events.

Every accepted status change, claim change and payment result is written as
one compact JSON line so it can be shipped and queried independently of the
human-readable module logs.
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from shoe_service.infra.logging_utils import utcnow_iso

__all__ = [
    "LifecycleEvent",
    "LifecycleLogEntry",
    "LifecycleLogger",
    "log_lifecycle_event",
]


class LifecycleEvent(str, Enum):
    """Types of lifecycle events."""
    ORDER_CREATED = "order_created"
    STATUS_CHANGED = "status_changed"
    CLAIM_ACQUIRED = "claim_acquired"
    CLAIM_RELEASED = "claim_released"
    CLAIM_REVOKED = "claim_revoked"
    PAYMENT_RECORDED = "payment_recorded"
    PAYMENT_REPLAYED = "payment_replayed"
    EVENT_REJECTED = "event_rejected"


@dataclass
class LifecycleLogEntry:
    """Structured log entry for lifecycle events."""
    timestamp: str
    event: str
    order_id: Optional[int] = None
    order_number: Optional[str] = None
    order_type: Optional[str] = None
    actor_id: Optional[int] = None
    actor_type: Optional[str] = None
    stage: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    claim_id: Optional[int] = None
    transaction_id: Optional[int] = None
    reason: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        data = {k: v for k, v in asdict(self).items() if v is not None and v != {}}
        return json.dumps(data, ensure_ascii=False, separators=(",", ":"), default=str)


class LifecycleLogger:
    """Logger for lifecycle events with structured JSON output."""

    def __init__(self, logger_name: str = "lifecycle.structured"):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event: LifecycleEvent,
        *,
        level: str = "INFO",
        **fields: Any,
    ) -> LifecycleLogEntry:
        for key in ("from_status", "to_status", "stage", "actor_type", "order_type"):
            value = fields.get(key)
            if isinstance(value, Enum):
                fields[key] = value.value
        entry = LifecycleLogEntry(timestamp=utcnow_iso(), event=event.value, **fields)
        log_method = getattr(self.logger, level.lower(), self.logger.info)
        log_method(entry.to_json())
        return entry


_lifecycle_logger = LifecycleLogger()


def log_lifecycle_event(event: LifecycleEvent, **kwargs: Any) -> LifecycleLogEntry:
    """
    Log a lifecycle event using the module-level logger.

    All kwargs are passed to LifecycleLogger.log_event().
    """
    return _lifecycle_logger.log_event(event, **kwargs)
