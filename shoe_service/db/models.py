from __future__ import annotations
import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Boolean,
    true,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType, metadata, utcnow, value_enum

__all__ = [
    "Base",
    "metadata",
    "OrderStatus",
    "OrderType",
    "ActorRole",
    "ActorType",
    "Stage",
    "PhotoStage",
    "ClaimRelease",
    "TransactionType",
    "TransactionStatus",
    "ServiceType",
    "orders",
    "order_status_history",
    "order_claims",
    "transactions",
    "transaction_items",
    "shoes",
    "services",
    "order_photos",
    "order_events",
]

# ===== Enums =====


class OrderStatus(str, enum.Enum):
    """The ten order statuses; both tracks are subsets of this set."""

    WAITING_DEPOSIT = "waiting_deposit"
    PICKUP_SCHEDULED = "pickup_scheduled"
    PICKUP_PROGRESS = "pickup_progress"
    INSPECTION = "inspection"
    WAITING_PAYMENT = "waiting_payment"
    IN_PROCESS = "in_process"
    PROCESS_COMPLETED = "process_completed"
    DELIVERY = "delivery"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderType(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class ActorRole(str, enum.Enum):
    """Role of an authenticated caller."""

    CUSTOMER = "customer"
    STAFF = "staff"
    ADMIN = "admin"


class ActorType(str, enum.Enum):
    """Who caused a ledger entry."""

    CUSTOMER = "customer"
    STAFF = "staff"
    ADMIN = "admin"
    PAYMENT_GATEWAY = "payment_gateway"


class Stage(str, enum.Enum):
    """Physical-handling phases that require a claim."""

    PICKUP = "pickup"
    INSPECTION = "inspection"
    DELIVERY = "delivery"


class PhotoStage(str, enum.Enum):
    PICKUP = "pickup"
    CHECK = "check"
    DELIVERY = "delivery"


class ClaimRelease(str, enum.Enum):
    COMPLETED = "completed"
    RELEASED = "released"
    ORDER_CANCELLED = "order_cancelled"
    REVOKED = "revoked"


class TransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    FULL = "full"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ServiceType(str, enum.Enum):
    PRIMARY = "primary"
    ADDITIONAL = "additional"
    START_FROM = "start_from"


# ===== Orders & Ledger =====


class orders(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    type: Mapped[OrderType] = mapped_column(
        value_enum(OrderType, "order_type"), nullable=False, index=True
    )
    # Identity lives in the auth layer; ids are opaque here.
    customer_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    created_by_id: Mapped[int] = mapped_column(Integer, nullable=False)
    assigned_staff_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)
    address_id: Mapped[Optional[int]] = mapped_column(Integer)
    contact_name: Mapped[Optional[str]] = mapped_column(String(160))
    contact_phone: Mapped[Optional[str]] = mapped_column(String(32))
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )
    version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default="1"
    )

    __table_args__ = (
        CheckConstraint(
            "(type = 'online' AND address_id IS NOT NULL) "
            "OR (type = 'offline' AND address_id IS NULL)",
            name="address_matches_type",
        ),
        Index("ix_orders__type_created", "type", "created_at"),
    )


class order_status_history(Base):
    """Append-only status ledger. The latest row is the current status."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    from_status: Mapped[Optional[OrderStatus]] = mapped_column(
        value_enum(OrderStatus, "order_status"), nullable=True
    )
    to_status: Mapped[OrderStatus] = mapped_column(
        value_enum(OrderStatus, "order_status"), nullable=False, index=True
    )
    actor_id: Mapped[Optional[int]] = mapped_column(Integer)
    actor_type: Mapped[ActorType] = mapped_column(
        value_enum(ActorType, "actor_type"), nullable=False
    )
    note: Mapped[Optional[str]] = mapped_column(Text)
    context: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_order_status_history__order_created_at", "order_id", "created_at"),
    )


# ===== Claims =====


class order_claims(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    stage: Mapped[Stage] = mapped_column(value_enum(Stage, "claim_stage"), nullable=False)
    holder_id: Mapped[int] = mapped_column(Integer, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    release_reason: Mapped[Optional[ClaimRelease]] = mapped_column(
        value_enum(ClaimRelease, "claim_release")
    )
    note: Mapped[Optional[str]] = mapped_column(Text)

    @property
    def is_active(self) -> bool:
        return self.released_at is None

    __table_args__ = (
        # At most one active claim per (order, stage)
        Index(
            "uq_order_claims__order_stage_active",
            "order_id",
            "stage",
            unique=True,
            postgresql_where=text("released_at IS NULL"),
            sqlite_where=text("released_at IS NULL"),
        ),
        Index("ix_order_claims__holder_released", "holder_id", "released_at"),
    )


# ===== Payments =====


class transactions(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    type: Mapped[TransactionType] = mapped_column(
        value_enum(TransactionType, "transaction_type"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0"), server_default="0"
    )
    status: Mapped[TransactionStatus] = mapped_column(
        value_enum(TransactionStatus, "transaction_status"),
        nullable=False,
        default=TransactionStatus.PENDING,
        index=True,
    )
    # Raw gateway word of the last callback; audit only, never used for decisions.
    gateway_status: Mapped[Optional[str]] = mapped_column(String(32))
    gateway_reference: Mapped[Optional[str]] = mapped_column(String(128), unique=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    __table_args__ = (
        Index("ix_transactions__order_type_status", "order_id", "type", "status"),
        CheckConstraint("amount >= 0", name="amount_non_negative"),
    )


class services(Base):
    """Priced cleaning services offered at inspection."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    type: Mapped[ServiceType] = mapped_column(
        value_enum(ServiceType, "service_type"), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=true()
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class shoes(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    brand: Mapped[str] = mapped_column(String(80), nullable=False)
    size: Mapped[Decimal] = mapped_column(Numeric(4, 1), nullable=False)
    type: Mapped[str] = mapped_column(String(60), nullable=False)
    material: Mapped[str] = mapped_column(String(60), nullable=False)
    category: Mapped[str] = mapped_column(String(60), nullable=False)
    condition: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class transaction_items(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    shoe_id: Mapped[int] = mapped_column(
        ForeignKey("shoes.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    service_id: Mapped[int] = mapped_column(
        ForeignKey("services.id", ondelete="RESTRICT"), nullable=False
    )
    # Price snapshot at inspection time
    item_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


# ===== Evidence =====


class order_photos(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    stage: Mapped[PhotoStage] = mapped_column(
        value_enum(PhotoStage, "photo_stage"), nullable=False
    )
    uploaded_by_id: Mapped[int] = mapped_column(Integer, nullable=False)
    # Storage key produced by the file layer
    file_ref: Mapped[str] = mapped_column(String(512), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (Index("ix_order_photos__order_stage", "order_id", "stage"),)


# ===== Outbox =====


class order_events(Base):
    """Status/claim change events for the notification layer."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    event: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    attempt_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index(
            "ix_order_events__pending",
            "created_at",
            postgresql_where=text("processed_at IS NULL"),
        ),
    )
