"""
Lifecycle orchestrator.

Single entry point for everything that changes an order: intake, stage
claims, stage completion and cancellation, process milestones, payment
callbacks, order cancellation and claim revocation.

Every public method is one event and one database transaction:

1. check the actor's role against ``CAPABILITIES``;
2. lock the order row (``SELECT ... FOR UPDATE``);
3. read the current status from the ledger and validate the event;
4. run the stage processor / payment gate;
5. append to the ledger, release claims, write outbox events;
6. commit.

Any ``LifecycleError`` rolls the whole event back and is re-raised to the
caller; nothing is partially applied.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shoe_service.config import settings
from shoe_service.db import models as m
from shoe_service.infra.structured_logging import LifecycleEvent, log_lifecycle_event
from shoe_service.services import transitions
from shoe_service.services.claims import TaskClaimManager
from shoe_service.services.errors import (
    InvalidTransition,
    LifecycleError,
    NotFound,
    Unauthorized,
    ValidationError,
)
from shoe_service.services.events_outbox import EventOutbox
from shoe_service.services.order_numbers import next_order_number
from shoe_service.services.payment_gate import PaymentGate, PaymentOutcome, SettlementEvent
from shoe_service.services.stage_processors import StageEffects, get_processor
from shoe_service.services.status_ledger import StatusLedger
from shoe_service.services.time_service import local_today, now_utc

_log = logging.getLogger(__name__)

T = TypeVar("T")

ORDER_NUMBER_ATTEMPTS = 5


@dataclass(slots=True, frozen=True)
class Actor:
    """Authenticated caller as handed over by the auth layer."""

    id: int
    role: m.ActorRole

    @property
    def actor_type(self) -> m.ActorType:
        return m.ActorType(m.ActorRole(self.role).value)


class Action(str, Enum):
    CREATE_ONLINE_ORDER = "create_online_order"
    CREATE_OFFLINE_ORDER = "create_offline_order"
    CLAIM_STAGE = "claim_stage"
    COMPLETE_STAGE = "complete_stage"
    CANCEL_STAGE = "cancel_stage"
    MARK_PROCESS_COMPLETED = "mark_process_completed"
    MARK_READY_FOR_DELIVERY = "mark_ready_for_delivery"
    CANCEL_ORDER = "cancel_order"
    REISSUE_PAYMENT = "reissue_payment"
    REVOKE_CLAIM = "revoke_claim"


R = m.ActorRole
STAFF_ROLES = frozenset({R.STAFF, R.ADMIN})

# No settlement entry: only record_payment_result reaches it, never an actor.
CAPABILITIES: dict[Action, frozenset[m.ActorRole]] = {
    Action.CREATE_ONLINE_ORDER: frozenset({R.CUSTOMER}),
    Action.CREATE_OFFLINE_ORDER: STAFF_ROLES,
    Action.CLAIM_STAGE: STAFF_ROLES,
    Action.COMPLETE_STAGE: STAFF_ROLES,
    Action.CANCEL_STAGE: STAFF_ROLES,
    Action.MARK_PROCESS_COMPLETED: STAFF_ROLES,
    Action.MARK_READY_FOR_DELIVERY: STAFF_ROLES,
    Action.CANCEL_ORDER: frozenset({R.CUSTOMER, R.STAFF, R.ADMIN}),
    Action.REISSUE_PAYMENT: frozenset({R.CUSTOMER, R.STAFF, R.ADMIN}),
    Action.REVOKE_CLAIM: frozenset({R.ADMIN}),
}

# Statuses in which a customer may still cancel their own order.
CUSTOMER_CANCELLABLE = frozenset({m.OrderStatus.WAITING_DEPOSIT, m.OrderStatus.PICKUP_SCHEDULED})

SETTLEMENT_TRANSITIONS: dict[SettlementEvent, tuple[m.OrderStatus, m.OrderStatus]] = {
    SettlementEvent.DEPOSIT_SETTLED: (m.OrderStatus.WAITING_DEPOSIT, m.OrderStatus.PICKUP_SCHEDULED),
    SettlementEvent.FULL_PAYMENT_SETTLED: (m.OrderStatus.WAITING_PAYMENT, m.OrderStatus.IN_PROCESS),
}

PAYMENT_WAITING_STATUS: dict[m.TransactionType, m.OrderStatus] = {
    m.TransactionType.DEPOSIT: m.OrderStatus.WAITING_DEPOSIT,
    m.TransactionType.FULL: m.OrderStatus.WAITING_PAYMENT,
}

if set(CAPABILITIES) != set(Action):
    raise RuntimeError("every action needs a capability entry")


def authorize(action: Action, actor: Actor) -> None:
    if m.ActorRole(actor.role) not in CAPABILITIES[action]:
        raise Unauthorized(
            f"{actor.role.value} may not {action.value}",
            action=action.value,
            actor_id=actor.id,
            role=actor.role.value,
        )


class LifecycleOrchestrator:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.ledger = StatusLedger(session)
        self.claims = TaskClaimManager(session)
        self.payments = PaymentGate(session)
        self.outbox = EventOutbox(session)

    # ------------------------------------------------------------------
    # plumbing

    async def _run(self, event: str, body: Callable[[], Awaitable[T]], **ctx: Any) -> T:
        _log.info("%s START: %s", event, " ".join(f"{k}={v}" for k, v in ctx.items()))
        try:
            result = await body()
            await self.session.commit()
        except LifecycleError as exc:
            await self.session.rollback()
            _log.info("%s rejected: %s", event, exc.as_dict())
            log_lifecycle_event(
                LifecycleEvent.EVENT_REJECTED,
                order_id=ctx.get("order_id"),
                actor_id=ctx.get("actor_id"),
                reason=exc.code,
                details={"event": event, "message": exc.message},
            )
            raise
        except Exception:
            await self.session.rollback()
            _log.exception("%s failed: %s", event, ctx)
            raise
        _log.info("%s SUCCESS: %s", event, " ".join(f"{k}={v}" for k, v in ctx.items()))
        return result

    async def _lock_order(self, order_id: int) -> m.orders:
        stmt = (
            select(m.orders)
            .where(m.orders.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = (await self.session.execute(stmt)).scalars().first()
        if order is None:
            raise NotFound(f"order {order_id} not found", order_id=order_id)
        return order

    async def _current(self, order: m.orders) -> m.OrderStatus:
        current = await self.ledger.current_status(order.id)
        if transitions.is_terminal(current):
            raise InvalidTransition(
                f"order {order.number} is {current.value}",
                order_id=order.id,
                current=current.value,
            )
        return current

    async def _advance(
        self,
        order: m.orders,
        status: m.OrderStatus,
        *,
        actor_id: Optional[int],
        actor_type: m.ActorType,
        note: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        allow_reversion: bool = False,
    ) -> m.order_status_history:
        entry = await self.ledger.append(
            order.id,
            status,
            actor_id=actor_id,
            actor_type=actor_type,
            note=note,
            context=context,
            allow_reversion=allow_reversion,
        )
        order.version = (order.version or 1) + 1
        order.updated_at = now_utc()
        await self.outbox.status_changed(order, entry)
        return entry

    @staticmethod
    def _require_stage_status(
        order: m.orders, current: m.OrderStatus, stage: m.Stage, *expected: m.OrderStatus
    ) -> None:
        if current not in expected:
            raise InvalidTransition(
                f"order {order.number} is {current.value}; {stage.value} needs "
                f"{' or '.join(sorted({s.value for s in expected}))}",
                order_id=order.id,
                current=current.value,
                stage=stage.value,
            )

    # ------------------------------------------------------------------
    # intake

    async def _insert_order(self, **values: Any) -> m.orders:
        for attempt in range(ORDER_NUMBER_ATTEMPTS):
            number = await next_order_number(self.session, offset=attempt)
            order = m.orders(number=number, **values)
            try:
                async with self.session.begin_nested():
                    self.session.add(order)
                    await self.session.flush()
            except IntegrityError:
                _log.warning("order number %s already taken, retrying", number)
                continue
            return order
        raise ValidationError("could not allocate an order number")

    async def create_online_order(
        self,
        actor: Actor,
        *,
        address_id: Optional[int],
        scheduled_date: date,
        note: Optional[str] = None,
    ) -> m.orders:
        """Customer books pickup/delivery. Starts in waiting_deposit with a pending deposit."""

        async def body() -> m.orders:
            authorize(Action.CREATE_ONLINE_ORDER, actor)
            if address_id is None:
                raise ValidationError("online orders need a pickup address")
            if scheduled_date < local_today():
                raise ValidationError(f"scheduled date {scheduled_date} is in the past")
            order = await self._insert_order(
                type=m.OrderType.ONLINE,
                customer_id=actor.id,
                created_by_id=actor.id,
                address_id=address_id,
                scheduled_date=scheduled_date,
            )
            await self.outbox.publish(order, LifecycleEvent.ORDER_CREATED, {"actor_id": actor.id})
            await self._advance(
                order,
                transitions.initial_status(order.type),
                actor_id=actor.id,
                actor_type=actor.actor_type,
                note=note,
            )
            await self.payments.create_transaction(
                order, m.TransactionType.DEPOSIT, settings.deposit_amount
            )
            return order

        return await self._run("create_online_order", body, actor_id=actor.id)

    async def create_offline_order(
        self,
        actor: Actor,
        *,
        customer_id: int,
        contact_name: Optional[str] = None,
        contact_phone: Optional[str] = None,
        scheduled_date: Optional[date] = None,
        note: Optional[str] = None,
    ) -> m.orders:
        """Walk-in order entered by staff. Starts directly in inspection."""

        async def body() -> m.orders:
            authorize(Action.CREATE_OFFLINE_ORDER, actor)
            order = await self._insert_order(
                type=m.OrderType.OFFLINE,
                customer_id=customer_id,
                created_by_id=actor.id,
                address_id=None,
                contact_name=contact_name,
                contact_phone=contact_phone,
                scheduled_date=scheduled_date or local_today(),
            )
            await self.outbox.publish(order, LifecycleEvent.ORDER_CREATED, {"actor_id": actor.id})
            await self._advance(
                order,
                transitions.initial_status(order.type),
                actor_id=actor.id,
                actor_type=actor.actor_type,
                note=note,
            )
            return order

        return await self._run("create_offline_order", body, actor_id=actor.id)

    # ------------------------------------------------------------------
    # stage work

    async def claim_stage(self, actor: Actor, order_id: int, stage: m.Stage) -> m.order_claims:
        stage = m.Stage(stage)

        async def body() -> m.order_claims:
            authorize(Action.CLAIM_STAGE, actor)
            order = await self._lock_order(order_id)
            current = await self._current(order)
            work_status = transitions.STAGE_WORK_STATUS[stage]
            # pickup_progress is accepted too; its active claim makes acquire raise AlreadyClaimed.
            self._require_stage_status(
                order, current, stage, transitions.STAGE_CLAIM_STATUS[stage], work_status
            )
            claim = await self.claims.acquire(order.id, stage, actor.id)
            if work_status != current:
                await self._advance(
                    order,
                    work_status,
                    actor_id=actor.id,
                    actor_type=actor.actor_type,
                    context={"claim_id": claim.id},
                )
            else:
                order.version = (order.version or 1) + 1
            await self.outbox.claim_changed(order, LifecycleEvent.CLAIM_ACQUIRED, claim)
            return claim

        return await self._run(
            "claim_stage", body, order_id=order_id, stage=stage.value, actor_id=actor.id
        )

    async def complete_stage(
        self, actor: Actor, order_id: int, stage: m.Stage, data: Any
    ) -> StageEffects:
        stage = m.Stage(stage)

        async def body() -> StageEffects:
            authorize(Action.COMPLETE_STAGE, actor)
            order = await self._lock_order(order_id)
            current = await self._current(order)
            self._require_stage_status(order, current, stage, transitions.STAGE_WORK_STATUS[stage])
            claim = await self.claims.active_claim(order.id, stage)
            effects = await get_processor(stage).apply(self.session, order, claim, actor.id, data)
            await self._advance(
                order,
                effects.next_status,
                actor_id=actor.id,
                actor_type=actor.actor_type,
                note=effects.note,
                context={
                    "claim_id": claim.id,
                    "photos": len(effects.photos),
                    "transaction_id": effects.transaction.id if effects.transaction else None,
                },
            )
            await self.claims.release(claim.id, m.ClaimRelease.COMPLETED)
            order.assigned_staff_id = actor.id
            await self.outbox.claim_changed(
                order, LifecycleEvent.CLAIM_RELEASED, claim, reason=m.ClaimRelease.COMPLETED.value
            )
            return effects

        return await self._run(
            "complete_stage", body, order_id=order_id, stage=stage.value, actor_id=actor.id
        )

    async def cancel_stage(
        self,
        actor: Actor,
        order_id: int,
        stage: m.Stage,
        *,
        non_recoverable: bool = False,
        note: Optional[str] = None,
    ) -> m.OrderStatus:
        """Claim holder gives the task back. Returns the order's status afterwards."""
        stage = m.Stage(stage)

        async def body() -> m.OrderStatus:
            authorize(Action.CANCEL_STAGE, actor)
            order = await self._lock_order(order_id)
            current = await self._current(order)
            self._require_stage_status(order, current, stage, transitions.STAGE_WORK_STATUS[stage])
            claim = await self.claims.require_holder(order.id, stage, actor.id)
            target = get_processor(stage).cancel_target(non_recoverable)

            if target == m.OrderStatus.CANCELLED:
                await self._cancel(order, actor_id=actor.id, actor_type=actor.actor_type, note=note)
                return m.OrderStatus.CANCELLED

            await self.claims.release(claim.id, m.ClaimRelease.RELEASED, note=note)
            await self.outbox.claim_changed(
                order, LifecycleEvent.CLAIM_RELEASED, claim, reason=m.ClaimRelease.RELEASED.value
            )
            if target is not None and target != current:
                await self._advance(
                    order,
                    target,
                    actor_id=actor.id,
                    actor_type=actor.actor_type,
                    note=note,
                    context={"claim_id": claim.id, "released": True},
                    allow_reversion=True,
                )
                return target
            order.version = (order.version or 1) + 1
            return current

        return await self._run(
            "cancel_stage", body, order_id=order_id, stage=stage.value, actor_id=actor.id
        )

    async def _milestone(
        self, action: Action, actor: Actor, order_id: int, target: m.OrderStatus, note: Optional[str]
    ) -> m.order_status_history:
        async def body() -> m.order_status_history:
            authorize(action, actor)
            order = await self._lock_order(order_id)
            await self._current(order)
            return await self._advance(
                order, target, actor_id=actor.id, actor_type=actor.actor_type, note=note
            )

        return await self._run(action.value, body, order_id=order_id, actor_id=actor.id)

    async def mark_process_completed(
        self, actor: Actor, order_id: int, *, note: Optional[str] = None
    ) -> m.order_status_history:
        return await self._milestone(
            Action.MARK_PROCESS_COMPLETED, actor, order_id, m.OrderStatus.PROCESS_COMPLETED, note
        )

    async def mark_ready_for_delivery(
        self, actor: Actor, order_id: int, *, note: Optional[str] = None
    ) -> m.order_status_history:
        return await self._milestone(
            Action.MARK_READY_FOR_DELIVERY, actor, order_id, m.OrderStatus.DELIVERY, note
        )

    # ------------------------------------------------------------------
    # payments

    async def record_payment_result(
        self,
        transaction_id: int,
        gateway_status: str,
        gateway_reference: Optional[str] = None,
    ) -> PaymentOutcome:
        """Apply a gateway callback; settles the order when it reports ``paid``."""

        async def body() -> PaymentOutcome:
            tx = await self.payments.get(transaction_id)
            order = await self._lock_order(tx.order_id)
            outcome = await self.payments.record_payment_result(
                transaction_id, gateway_status, gateway_reference
            )
            if outcome.settlement is not None:
                await self._settle(order, outcome)
            return outcome

        return await self._run(
            "record_payment_result",
            body,
            transaction_id=transaction_id,
            gateway_status=gateway_status,
        )

    async def _settle(self, order: m.orders, outcome: PaymentOutcome) -> Optional[m.order_status_history]:
        waiting, target = SETTLEMENT_TRANSITIONS[outcome.settlement]
        current = await self.ledger.current_status(order.id)
        if current != waiting:
            # Replayed or late callback; the order already moved on.
            _log.info(
                "settle: order=%s is %s, %s ignored (tx=%s)",
                order.id, current.value, outcome.settlement.value, outcome.transaction.id,
            )
            return None
        return await self._advance(
            order,
            target,
            actor_id=None,
            actor_type=m.ActorType.PAYMENT_GATEWAY,
            context={
                "transaction_id": outcome.transaction.id,
                "event": outcome.settlement.value,
            },
        )

    async def reissue_payment(
        self, actor: Actor, order_id: int, tx_type: m.TransactionType
    ) -> m.transactions:
        """Open a new pending transaction after the previous one expired."""
        tx_type = m.TransactionType(tx_type)

        async def body() -> m.transactions:
            authorize(Action.REISSUE_PAYMENT, actor)
            order = await self._lock_order(order_id)
            if actor.role == R.CUSTOMER and order.customer_id != actor.id:
                raise Unauthorized(
                    f"order {order.number} belongs to another customer", order_id=order.id
                )
            current = await self._current(order)
            if current != PAYMENT_WAITING_STATUS[tx_type]:
                raise InvalidTransition(
                    f"order {order.number} is {current.value}; no {tx_type.value} payment is due",
                    order_id=order.id,
                    current=current.value,
                )
            return await self.payments.reissue(order, tx_type)

        return await self._run(
            "reissue_payment", body, order_id=order_id, type=tx_type.value, actor_id=actor.id
        )

    # ------------------------------------------------------------------
    # cancellation & overrides

    async def _cancel(
        self,
        order: m.orders,
        *,
        actor_id: Optional[int],
        actor_type: m.ActorType,
        note: Optional[str],
    ) -> m.order_status_history:
        released = await self.claims.release_all(order.id, m.ClaimRelease.ORDER_CANCELLED)
        cancelled_tx = await self.payments.cancel_pending(order.id)
        return await self._advance(
            order,
            m.OrderStatus.CANCELLED,
            actor_id=actor_id,
            actor_type=actor_type,
            note=note,
            context={"released_claims": released, "cancelled_transactions": cancelled_tx},
        )

    async def cancel_order(
        self, actor: Actor, order_id: int, *, note: Optional[str] = None
    ) -> m.order_status_history:
        async def body() -> m.order_status_history:
            authorize(Action.CANCEL_ORDER, actor)
            order = await self._lock_order(order_id)
            current = await self._current(order)
            if actor.role == R.CUSTOMER:
                if order.customer_id != actor.id:
                    raise Unauthorized(
                        f"order {order.number} belongs to another customer", order_id=order.id
                    )
                if current not in CUSTOMER_CANCELLABLE:
                    raise Unauthorized(
                        f"customers cannot cancel an order in {current.value}",
                        order_id=order.id,
                        current=current.value,
                    )
            return await self._cancel(
                order, actor_id=actor.id, actor_type=actor.actor_type, note=note
            )

        return await self._run("cancel_order", body, order_id=order_id, actor_id=actor.id)

    async def revoke_claim(
        self, actor: Actor, claim_id: int, *, note: Optional[str] = None
    ) -> bool:
        """Administrative release of an abandoned claim. False if it was already released."""

        async def body() -> bool:
            authorize(Action.REVOKE_CLAIM, actor)
            claim = await self.session.get(m.order_claims, claim_id, populate_existing=True)
            if claim is None:
                raise NotFound(f"claim {claim_id} not found", claim_id=claim_id)
            order = await self._lock_order(claim.order_id)
            if not await self.claims.release(claim.id, m.ClaimRelease.REVOKED, note=note):
                return False
            await self.outbox.claim_changed(
                order,
                LifecycleEvent.CLAIM_REVOKED,
                claim,
                reason=m.ClaimRelease.REVOKED.value,
                actor_id=actor.id,
            )
            current = await self.ledger.current_status(order.id)
            reverted = transitions.CLAIM_RELEASE_REVERSIONS.get(current)
            if claim.stage == m.Stage.PICKUP and reverted is not None:
                await self._advance(
                    order,
                    reverted,
                    actor_id=actor.id,
                    actor_type=actor.actor_type,
                    note=note,
                    context={"claim_id": claim.id, "revoked": True},
                    allow_reversion=True,
                )
            else:
                order.version = (order.version or 1) + 1
            return True

        return await self._run("revoke_claim", body, claim_id=claim_id, actor_id=actor.id)
