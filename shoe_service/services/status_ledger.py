"""
Append-only status ledger.

The latest ``order_status_history`` row of an order is its current status;
there is no status column on ``orders``. Entries are written once and never
updated or deleted. Appends for one order are serialised by the caller's
``SELECT ... FOR UPDATE`` on the order row.
"""
from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from shoe_service.db import models as m
from shoe_service.services import transitions
from shoe_service.services.errors import InvalidTransition, NotFound
from shoe_service.services.time_service import ensure_utc, now_utc

_log = logging.getLogger(__name__)

# Leaving these statuses forward requires a paid transaction of the given type.
SETTLEMENT_REQUIRED: dict[m.OrderStatus, m.TransactionType] = {
    m.OrderStatus.WAITING_DEPOSIT: m.TransactionType.DEPOSIT,
    m.OrderStatus.WAITING_PAYMENT: m.TransactionType.FULL,
}


class StatusLedger:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _latest(self, order_id: int) -> Optional[m.order_status_history]:
        stmt = (
            select(m.order_status_history)
            .where(m.order_status_history.order_id == order_id)
            .order_by(
                m.order_status_history.created_at.desc(),
                m.order_status_history.id.desc(),
            )
            .limit(1)
        )
        return (await self.session.execute(stmt)).scalars().first()

    async def current_status(self, order_id: int) -> m.OrderStatus:
        latest = await self._latest(order_id)
        if latest is None:
            raise NotFound(f"order {order_id} has no status entries", order_id=order_id)
        return m.OrderStatus(latest.to_status)

    async def history(self, order_id: int) -> Sequence[m.order_status_history]:
        stmt = (
            select(m.order_status_history)
            .where(m.order_status_history.order_id == order_id)
            .order_by(
                m.order_status_history.created_at.asc(),
                m.order_status_history.id.asc(),
            )
        )
        return (await self.session.execute(stmt)).scalars().all()

    async def _has_paid(self, order_id: int, tx_type: m.TransactionType) -> bool:
        stmt = (
            select(m.transactions.id)
            .where(
                and_(
                    m.transactions.order_id == order_id,
                    m.transactions.type == tx_type,
                    m.transactions.status == m.TransactionStatus.PAID,
                )
            )
            .limit(1)
        )
        return (await self.session.execute(stmt)).first() is not None

    async def append(
        self,
        order_id: int,
        status: m.OrderStatus,
        *,
        actor_id: Optional[int],
        actor_type: m.ActorType,
        note: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        allow_reversion: bool = False,
    ) -> m.order_status_history:
        """Write the next ledger entry after checking it against the track.

        Raises ``InvalidTransition`` for anything that is not the immediate
        successor (or ``cancelled``), and for leaving a waiting state before
        the matching payment is settled.
        """
        order = await self.session.get(m.orders, order_id)
        if order is None:
            raise NotFound(f"order {order_id} not found", order_id=order_id)

        status = m.OrderStatus(status)
        latest = await self._latest(order_id)
        current = m.OrderStatus(latest.to_status) if latest is not None else None

        if not transitions.is_legal(
            order.type, current, status, allow_reversion=allow_reversion
        ):
            _log.info(
                "ledger.append rejected: order=%s type=%s %s -> %s",
                order_id,
                order.type.value,
                current.value if current else None,
                status.value,
            )
            raise InvalidTransition(
                f"order {order.number}: {current.value if current else 'new'} -> {status.value} is not allowed",
                order_id=order_id,
                current=current.value if current else None,
                target=status.value,
            )

        required = SETTLEMENT_REQUIRED.get(current) if current else None
        if required is not None and status != m.OrderStatus.CANCELLED:
            if not await self._has_paid(order_id, required):
                raise InvalidTransition(
                    f"order {order.number}: {required.value} payment is not settled",
                    order_id=order_id,
                    current=current.value,
                    target=status.value,
                )

        # Keep timestamps non-decreasing even if the clock steps back.
        created_at = now_utc()
        if latest is not None and latest.created_at is not None:
            previous = ensure_utc(latest.created_at)
            if previous > created_at:
                created_at = previous

        entry = m.order_status_history(
            order_id=order_id,
            from_status=current,
            to_status=status,
            actor_id=actor_id,
            actor_type=actor_type,
            note=note,
            context=dict(context or {}),
            created_at=created_at,
        )
        self.session.add(entry)
        await self.session.flush()
        _log.debug(
            "ledger.append: order=%s %s -> %s actor=%s/%s",
            order_id,
            current.value if current else None,
            status.value,
            actor_type.value,
            actor_id,
        )
        return entry
