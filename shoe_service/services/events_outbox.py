"""
Outbox for lifecycle events.

Rows are written in the same transaction as the change they describe, so the
notification layer sees an event if and only if the change committed.
Consumers poll ``fetch_pending`` and acknowledge with ``mark_processed`` or
``mark_failed``.
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shoe_service.db import models as m
from shoe_service.infra.logging_utils import utcnow_iso
from shoe_service.infra.structured_logging import LifecycleEvent, log_lifecycle_event
from shoe_service.services.time_service import now_utc

_log = logging.getLogger(__name__)

MAX_ATTEMPTS = 5


class EventOutbox:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def publish(
        self,
        order: m.orders,
        event: LifecycleEvent,
        payload: dict[str, Any],
    ) -> m.order_events:
        body = {
            "order_id": order.id,
            "order_number": order.number,
            "order_type": order.type.value,
            "at": utcnow_iso(),
            **payload,
        }
        row = m.order_events(order_id=order.id, event=event.value, payload=body)
        self.session.add(row)
        await self.session.flush()
        log_lifecycle_event(
            event,
            order_id=order.id,
            order_number=order.number,
            order_type=order.type,
            **{k: v for k, v in payload.items() if k in _LOG_FIELDS},
        )
        return row

    async def status_changed(
        self,
        order: m.orders,
        entry: m.order_status_history,
    ) -> m.order_events:
        return await self.publish(
            order,
            LifecycleEvent.STATUS_CHANGED,
            {
                "from_status": entry.from_status.value if entry.from_status else None,
                "to_status": entry.to_status.value,
                "actor_id": entry.actor_id,
                "actor_type": entry.actor_type.value,
                "note": entry.note,
            },
        )

    async def claim_changed(
        self,
        order: m.orders,
        event: LifecycleEvent,
        claim: m.order_claims,
        *,
        reason: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> m.order_events:
        return await self.publish(
            order,
            event,
            {
                "claim_id": claim.id,
                "stage": claim.stage.value,
                "holder_id": claim.holder_id,
                "actor_id": actor_id if actor_id is not None else claim.holder_id,
                "reason": reason,
            },
        )

    async def fetch_pending(self, limit: int = 100) -> Sequence[m.order_events]:
        stmt = (
            select(m.order_events)
            .where(
                and_(
                    m.order_events.processed_at.is_(None),
                    m.order_events.attempt_count < MAX_ATTEMPTS,
                )
            )
            .order_by(m.order_events.created_at.asc(), m.order_events.id.asc())
            .limit(limit)
        )
        return (await self.session.execute(stmt)).scalars().all()

    async def mark_processed(self, event_id: int) -> None:
        await self.session.execute(
            update(m.order_events)
            .where(
                and_(
                    m.order_events.id == event_id,
                    m.order_events.processed_at.is_(None),
                )
            )
            .values(processed_at=now_utc(), attempt_count=m.order_events.attempt_count + 1)
            .execution_options(synchronize_session="fetch")
        )

    async def mark_failed(self, event_id: int, error: str) -> None:
        _log.warning("outbox: event=%s delivery failed: %s", event_id, error)
        await self.session.execute(
            update(m.order_events)
            .where(m.order_events.id == event_id)
            .values(
                attempt_count=m.order_events.attempt_count + 1,
                last_error=error[:1000],
            )
            .execution_options(synchronize_session="fetch")
        )


_LOG_FIELDS = frozenset(
    {"from_status", "to_status", "actor_id", "actor_type", "stage", "claim_id", "reason", "transaction_id"}
)
