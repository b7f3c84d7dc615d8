"""
Payment gate: transaction records and gateway callback handling.

Gateway status words never leave this module; they are translated into
``TransactionStatus`` through ``GATEWAY_STATUS_MAP``. A callback that lands
on ``paid`` yields a settlement event for the lifecycle orchestrator, which
decides from the order's current status whether to advance it. Callbacks are
delivered at least once and possibly out of order, so status merging is
monotonic: ``paid`` is final and a failed/cancelled transaction can only be
rescued by a later ``paid``.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Sequence

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shoe_service.config import settings
from shoe_service.db import models as m
from shoe_service.infra.structured_logging import LifecycleEvent, log_lifecycle_event
from shoe_service.services.catalog import to_money
from shoe_service.services.errors import NotFound, ValidationError
from shoe_service.services.time_service import ensure_utc, now_utc

_log = logging.getLogger(__name__)

TS = m.TransactionStatus

GATEWAY_STATUS_MAP: dict[str, m.TransactionStatus] = {
    "settlement": TS.PAID,
    "capture": TS.PAID,
    "pending": TS.PENDING,
    "authorize": TS.PENDING,
    "partial_settlement": TS.PARTIALLY_PAID,
    "deny": TS.FAILED,
    "failure": TS.FAILED,
    "cancel": TS.CANCELLED,
    "expire": TS.CANCELLED,
}


class SettlementEvent(str, Enum):
    DEPOSIT_SETTLED = "deposit_settled"
    FULL_PAYMENT_SETTLED = "full_payment_settled"


SETTLEMENT_FOR_TYPE: dict[m.TransactionType, SettlementEvent] = {
    m.TransactionType.DEPOSIT: SettlementEvent.DEPOSIT_SETTLED,
    m.TransactionType.FULL: SettlementEvent.FULL_PAYMENT_SETTLED,
}


@dataclass(slots=True, frozen=True)
class PaymentOutcome:
    transaction: m.transactions
    previous_status: m.TransactionStatus
    changed: bool
    settlement: Optional[SettlementEvent]


def translate_gateway_status(gateway_status: str) -> m.TransactionStatus:
    word = (gateway_status or "").strip().lower()
    try:
        return GATEWAY_STATUS_MAP[word]
    except KeyError:
        raise ValidationError(
            f"unknown gateway status: {gateway_status!r}", gateway_status=gateway_status
        ) from None


def merge_status(current: m.TransactionStatus, incoming: m.TransactionStatus) -> m.TransactionStatus:
    """Resolve the stored status when a callback reports *incoming*."""
    if current == TS.PAID:
        return TS.PAID
    if current in (TS.CANCELLED, TS.FAILED):
        return TS.PAID if incoming == TS.PAID else current
    if current == TS.PARTIALLY_PAID and incoming == TS.PENDING:
        return current
    return incoming


def verify_signature(
    order_ref: str,
    status_code: str,
    gross_amount: str,
    signature_key: str,
    server_key: Optional[str] = None,
) -> bool:
    """Check a callback signature: sha512(order_ref + status_code + gross_amount + server_key)."""
    key = settings.gateway_server_key if server_key is None else server_key
    if not key:
        _log.warning("verify_signature: gateway server key is not configured")
        return False
    raw = f"{order_ref}{status_code}{gross_amount}{key}".encode("utf-8")
    expected = hashlib.sha512(raw).hexdigest()
    return hmac.compare_digest(expected, (signature_key or "").lower())


class PaymentGate:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, transaction_id: int, *, for_update: bool = False) -> m.transactions:
        stmt = select(m.transactions).where(m.transactions.id == transaction_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        tx = (await self.session.execute(stmt)).scalars().first()
        if tx is None:
            raise NotFound(f"transaction {transaction_id} not found", transaction_id=transaction_id)
        return tx

    async def latest(self, order_id: int, tx_type: m.TransactionType) -> Optional[m.transactions]:
        stmt = (
            select(m.transactions)
            .where(and_(m.transactions.order_id == order_id, m.transactions.type == tx_type))
            .order_by(m.transactions.created_at.desc(), m.transactions.id.desc())
            .limit(1)
        )
        return (await self.session.execute(stmt)).scalars().first()

    async def for_order(self, order_id: int) -> Sequence[m.transactions]:
        stmt = (
            select(m.transactions)
            .where(m.transactions.order_id == order_id)
            .order_by(m.transactions.created_at.asc(), m.transactions.id.asc())
        )
        return (await self.session.execute(stmt)).scalars().all()

    async def has_settled(self, order_id: int, tx_type: m.TransactionType) -> bool:
        stmt = (
            select(m.transactions.id)
            .where(
                and_(
                    m.transactions.order_id == order_id,
                    m.transactions.type == tx_type,
                    m.transactions.status == TS.PAID,
                )
            )
            .limit(1)
        )
        return (await self.session.execute(stmt)).first() is not None

    async def create_transaction(
        self,
        order: m.orders,
        tx_type: m.TransactionType,
        amount: Any,
        *,
        gateway_reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> m.transactions:
        now = now or now_utc()
        if await self.has_settled(order.id, tx_type):
            raise ValidationError(
                f"order {order.number}: {tx_type.value} payment is already settled",
                order_id=order.id,
            )
        current = await self.latest(order.id, tx_type)
        if current is not None and (
            current.status == TS.PARTIALLY_PAID
            or (current.status == TS.PENDING and not self._expired(current, now))
        ):
            raise ValidationError(
                f"order {order.number}: a {tx_type.value} payment is still open",
                order_id=order.id,
                transaction_id=current.id,
            )

        tx = m.transactions(
            order_id=order.id,
            type=tx_type,
            amount=to_money(amount),
            status=TS.PENDING,
            gateway_reference=gateway_reference,
            expires_at=now + timedelta(minutes=int(settings.payment_expiry_minutes)),
            created_at=now,
            updated_at=now,
        )
        self.session.add(tx)
        await self.session.flush()
        _log.info(
            "payment.create: tx=%s order=%s type=%s amount=%s expires_at=%s",
            tx.id, order.id, tx_type.value, tx.amount, tx.expires_at.isoformat(),
        )
        return tx

    async def reissue(
        self,
        order: m.orders,
        tx_type: m.TransactionType,
        *,
        gateway_reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> m.transactions:
        """Open a fresh pending transaction after the previous one expired, failed or was cancelled.

        A ``partially_paid`` transaction stays open and blocks reissue.
        """
        now = now or now_utc()
        previous = await self.latest(order.id, tx_type)
        if previous is None:
            raise NotFound(
                f"order {order.number} has no {tx_type.value} transaction", order_id=order.id
            )
        if previous.status == TS.PARTIALLY_PAID:
            raise ValidationError(
                f"order {order.number}: {tx_type.value} payment is partially paid",
                order_id=order.id,
                transaction_id=previous.id,
            )
        if previous.status == TS.PENDING:
            if not self._expired(previous, now):
                raise ValidationError(
                    f"order {order.number}: {tx_type.value} payment is still pending",
                    order_id=order.id,
                    transaction_id=previous.id,
                )
            previous.status = TS.CANCELLED
            previous.updated_at = now
            await self.session.flush()
        return await self.create_transaction(
            order, tx_type, previous.amount, gateway_reference=gateway_reference, now=now
        )

    async def expire_stale(self, now: Optional[datetime] = None) -> list[int]:
        """Cancel pending transactions past ``expires_at``; returns their ids."""
        now = now or now_utc()
        result = await self.session.execute(
            update(m.transactions)
            .where(
                and_(
                    m.transactions.status == TS.PENDING,
                    m.transactions.expires_at.is_not(None),
                    m.transactions.expires_at < now,
                )
            )
            .values(status=TS.CANCELLED, updated_at=now)
            .returning(m.transactions.id)
            .execution_options(synchronize_session="fetch")
        )
        expired = [row.id for row in result]
        if expired:
            _log.info("payment.expire_stale: cancelled=%s", expired)
        return expired

    async def cancel_pending(self, order_id: int) -> list[int]:
        now = now_utc()
        result = await self.session.execute(
            update(m.transactions)
            .where(
                and_(
                    m.transactions.order_id == order_id,
                    m.transactions.status.in_((TS.PENDING, TS.PARTIALLY_PAID)),
                )
            )
            .values(status=TS.CANCELLED, updated_at=now)
            .returning(m.transactions.id)
            .execution_options(synchronize_session="fetch")
        )
        return [row.id for row in result]

    async def record_payment_result(
        self,
        transaction_id: int,
        gateway_status: str,
        gateway_reference: Optional[str] = None,
    ) -> PaymentOutcome:
        """Apply one gateway callback to the transaction.

        The outcome carries a ``settlement`` event for every callback that
        reports ``paid``, replays included. Whether the order moves is decided
        by the orchestrator from the order's current status.
        """
        incoming = translate_gateway_status(gateway_status)
        tx = await self.get(transaction_id, for_update=True)
        previous = m.TransactionStatus(tx.status)

        if gateway_reference:
            if tx.gateway_reference and tx.gateway_reference != gateway_reference:
                raise ValidationError(
                    f"transaction {tx.id}: gateway reference mismatch",
                    transaction_id=tx.id,
                    expected=tx.gateway_reference,
                    received=gateway_reference,
                )
            tx.gateway_reference = gateway_reference

        merged = merge_status(previous, incoming)
        now = now_utc()
        word = (gateway_status or "").strip().lower()
        # gateway_status mirrors the word behind the stored status, not an overruled one
        if merged == incoming:
            tx.gateway_status = word
        tx.status = merged
        tx.updated_at = now
        if merged == TS.PAID and tx.paid_at is None:
            tx.paid_at = now
        await self.session.flush()

        changed = merged != previous
        if merged != incoming:
            _log.info(
                "payment.record: tx=%s kept %s (callback said %s)",
                tx.id, merged.value, incoming.value,
            )
        settlement = SETTLEMENT_FOR_TYPE[tx.type] if incoming == TS.PAID else None

        log_lifecycle_event(
            LifecycleEvent.PAYMENT_RECORDED if changed else LifecycleEvent.PAYMENT_REPLAYED,
            order_id=tx.order_id,
            transaction_id=tx.id,
            reason=word,
            details={"from": previous.value, "to": merged.value, "type": tx.type.value},
        )
        return PaymentOutcome(
            transaction=tx,
            previous_status=previous,
            changed=changed,
            settlement=settlement,
        )

    @staticmethod
    def _expired(tx: m.transactions, now: datetime) -> bool:
        expires_at = ensure_utc(tx.expires_at)
        return expires_at is not None and expires_at <= now
