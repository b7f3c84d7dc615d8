"""
Task claims: exclusive staff ownership of one stage of one order.

Exclusivity is enforced by the partial unique index
``uq_order_claims__order_stage_active`` (``order_id, stage`` where
``released_at IS NULL``). ``acquire`` inserts inside a savepoint, so losing a
race costs only the savepoint and the caller's transaction stays usable.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import and_, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shoe_service.config import settings
from shoe_service.db import models as m
from shoe_service.services.errors import AlreadyClaimed, StaffBusy, Unauthorized
from shoe_service.services.time_service import now_utc

_log = logging.getLogger(__name__)

# First key of the two-key advisory lock taken per staff member.
STAFF_LOCK_NAMESPACE = 7311


class TaskClaimManager:
    def __init__(self, session: AsyncSession, *, single_task_per_staff: Optional[bool] = None):
        self.session = session
        self.single_task_per_staff = (
            settings.single_task_per_staff
            if single_task_per_staff is None
            else single_task_per_staff
        )

    async def active_claim(self, order_id: int, stage: m.Stage) -> Optional[m.order_claims]:
        stmt = (
            select(m.order_claims)
            .where(
                and_(
                    m.order_claims.order_id == order_id,
                    m.order_claims.stage == stage,
                    m.order_claims.released_at.is_(None),
                )
            )
            .limit(1)
        )
        return (await self.session.execute(stmt)).scalars().first()

    async def _lock_staff(self, staff_id: int) -> None:
        """Serialise claim attempts of one staff member until the transaction ends.

        The busy check in ``acquire`` is a plain read; on PostgreSQL two
        concurrent acquires by the same person would both pass it unlocked.
        SQLite serialises writers on its own.
        """
        if self.session.get_bind().dialect.name != "postgresql":
            return
        await self.session.execute(
            text("SELECT pg_advisory_xact_lock(:ns, :k)").bindparams(
                ns=STAFF_LOCK_NAMESPACE, k=staff_id
            )
        )

    async def active_claims_for_staff(self, staff_id: int) -> Sequence[m.order_claims]:
        stmt = (
            select(m.order_claims)
            .where(
                and_(
                    m.order_claims.holder_id == staff_id,
                    m.order_claims.released_at.is_(None),
                )
            )
            .order_by(m.order_claims.acquired_at.asc(), m.order_claims.id.asc())
        )
        return (await self.session.execute(stmt)).scalars().all()

    async def stale_claims(
        self, older_than: timedelta, *, now: Optional[datetime] = None
    ) -> Sequence[m.order_claims]:
        """Active claims acquired before ``now - older_than``. Listing only; nothing expires."""
        cutoff = (now or now_utc()) - older_than
        stmt = (
            select(m.order_claims)
            .where(
                and_(
                    m.order_claims.released_at.is_(None),
                    m.order_claims.acquired_at < cutoff,
                )
            )
            .order_by(m.order_claims.acquired_at.asc())
        )
        return (await self.session.execute(stmt)).scalars().all()

    async def acquire(self, order_id: int, stage: m.Stage, staff_id: int) -> m.order_claims:
        _log.info("claim.acquire START: order=%s stage=%s staff=%s", order_id, stage.value, staff_id)

        existing = await self.active_claim(order_id, stage)
        if existing is not None:
            _log.info(
                "claim.acquire: order=%s stage=%s already held by staff=%s",
                order_id, stage.value, existing.holder_id,
            )
            raise AlreadyClaimed(
                f"{stage.value} of order {order_id} is already claimed",
                holder_id=existing.holder_id,
                order_id=order_id,
                stage=stage.value,
            )

        if self.single_task_per_staff:
            await self._lock_staff(staff_id)
            held = await self.active_claims_for_staff(staff_id)
            if held:
                busy = held[0]
                raise StaffBusy(
                    f"staff {staff_id} already works on order {busy.order_id}",
                    holder_id=staff_id,
                    order_id=busy.order_id,
                    stage=busy.stage.value,
                )

        claim = m.order_claims(
            order_id=order_id,
            stage=stage,
            holder_id=staff_id,
            acquired_at=now_utc(),
        )
        try:
            async with self.session.begin_nested():
                self.session.add(claim)
                await self.session.flush()
        except IntegrityError:
            # Lost the race on the partial unique index.
            winner = await self.active_claim(order_id, stage)
            holder_id = winner.holder_id if winner is not None else None
            _log.info(
                "claim.acquire: order=%s stage=%s lost race to staff=%s",
                order_id, stage.value, holder_id,
            )
            raise AlreadyClaimed(
                f"{stage.value} of order {order_id} is already claimed",
                holder_id=holder_id,
                order_id=order_id,
                stage=stage.value,
            ) from None

        _log.info("claim.acquire SUCCESS: claim=%s order=%s stage=%s staff=%s",
                  claim.id, order_id, stage.value, staff_id)
        return claim

    async def require_holder(self, order_id: int, stage: m.Stage, staff_id: int) -> m.order_claims:
        claim = await self.active_claim(order_id, stage)
        if claim is None or claim.holder_id != staff_id:
            raise Unauthorized(
                f"staff {staff_id} does not hold the {stage.value} claim of order {order_id}",
                order_id=order_id,
                stage=stage.value,
                holder_id=claim.holder_id if claim is not None else None,
            )
        return claim

    async def release(
        self,
        claim_id: int,
        reason: m.ClaimRelease = m.ClaimRelease.RELEASED,
        *,
        note: Optional[str] = None,
    ) -> bool:
        """Release a claim. Unknown or already released claims are a no-op (returns False)."""
        result = await self.session.execute(
            update(m.order_claims)
            .where(
                and_(
                    m.order_claims.id == claim_id,
                    m.order_claims.released_at.is_(None),
                )
            )
            .values(released_at=now_utc(), release_reason=reason, note=note)
            .returning(m.order_claims.id)
            .execution_options(synchronize_session="fetch")
        )
        released = result.first() is not None
        _log.info("claim.release: claim=%s reason=%s released=%s", claim_id, reason.value, released)
        return released

    async def release_all(
        self,
        order_id: int,
        reason: m.ClaimRelease,
        *,
        note: Optional[str] = None,
    ) -> list[int]:
        result = await self.session.execute(
            update(m.order_claims)
            .where(
                and_(
                    m.order_claims.order_id == order_id,
                    m.order_claims.released_at.is_(None),
                )
            )
            .values(released_at=now_utc(), release_reason=reason, note=note)
            .returning(m.order_claims.id)
            .execution_options(synchronize_session="fetch")
        )
        released = [row.id for row in result]
        if released:
            _log.info("claim.release_all: order=%s reason=%s claims=%s", order_id, reason.value, released)
        return released
