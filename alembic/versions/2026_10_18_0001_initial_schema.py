"""initial schema: orders, status ledger, claims, payments, catalogue, outbox"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "2026_10_18_0001"
down_revision = None
branch_labels = None
depends_on = None


ORDER_STATUS = postgresql.ENUM(
    "waiting_deposit",
    "pickup_scheduled",
    "pickup_progress",
    "inspection",
    "waiting_payment",
    "in_process",
    "process_completed",
    "delivery",
    "completed",
    "cancelled",
    name="order_status",
    create_type=False,
)
ORDER_TYPE = postgresql.ENUM("online", "offline", name="order_type", create_type=False)
ACTOR_TYPE = postgresql.ENUM(
    "customer", "staff", "admin", "payment_gateway", name="actor_type", create_type=False
)
CLAIM_STAGE = postgresql.ENUM(
    "pickup", "inspection", "delivery", name="claim_stage", create_type=False
)
CLAIM_RELEASE = postgresql.ENUM(
    "completed", "released", "order_cancelled", "revoked", name="claim_release", create_type=False
)
TRANSACTION_TYPE = postgresql.ENUM("deposit", "full", name="transaction_type", create_type=False)
TRANSACTION_STATUS = postgresql.ENUM(
    "pending",
    "partially_paid",
    "paid",
    "cancelled",
    "failed",
    name="transaction_status",
    create_type=False,
)
SERVICE_TYPE = postgresql.ENUM(
    "primary", "additional", "start_from", name="service_type", create_type=False
)
PHOTO_STAGE = postgresql.ENUM("pickup", "check", "delivery", name="photo_stage", create_type=False)

ENUMS = (
    ORDER_STATUS,
    ORDER_TYPE,
    ACTOR_TYPE,
    CLAIM_STAGE,
    CLAIM_RELEASE,
    TRANSACTION_TYPE,
    TRANSACTION_STATUS,
    SERVICE_TYPE,
    PHOTO_STAGE,
)


def _ts(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), **kwargs)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("number", sa.String(32), nullable=False),
        sa.Column("type", ORDER_TYPE, nullable=False),
        sa.Column("customer_id", sa.Integer, nullable=False),
        sa.Column("created_by_id", sa.Integer, nullable=False),
        sa.Column("assigned_staff_id", sa.Integer, nullable=True),
        sa.Column("address_id", sa.Integer, nullable=True),
        sa.Column("contact_name", sa.String(160), nullable=True),
        sa.Column("contact_phone", sa.String(32), nullable=True),
        sa.Column("scheduled_date", sa.Date, nullable=False),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id", name="pk_orders"),
        sa.UniqueConstraint("number", name="uq_orders__number"),
        sa.CheckConstraint(
            "(type = 'online' AND address_id IS NOT NULL) "
            "OR (type = 'offline' AND address_id IS NULL)",
            name="ck_orders__address_matches_type",
        ),
    )
    op.create_index("ix_orders__type", "orders", ["type"])
    op.create_index("ix_orders__customer_id", "orders", ["customer_id"])
    op.create_index("ix_orders__assigned_staff_id", "orders", ["assigned_staff_id"])
    op.create_index("ix_orders__created_at", "orders", ["created_at"])
    op.create_index("ix_orders__type_created", "orders", ["type", "created_at"])

    op.create_table(
        "order_status_history",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "order_id",
            sa.Integer,
            sa.ForeignKey(
                "orders.id",
                ondelete="RESTRICT",
                name="fk_order_status_history__order_id__orders",
            ),
            nullable=False,
        ),
        sa.Column("from_status", ORDER_STATUS, nullable=True),
        sa.Column("to_status", ORDER_STATUS, nullable=False),
        sa.Column("actor_id", sa.Integer, nullable=True),
        sa.Column("actor_type", ACTOR_TYPE, nullable=False),
        sa.Column("note", sa.Text, nullable=True),
        sa.Column(
            "context",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        _ts("created_at", server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_order_status_history"),
    )
    op.create_index("ix_order_status_history__order_id", "order_status_history", ["order_id"])
    op.create_index("ix_order_status_history__to_status", "order_status_history", ["to_status"])
    op.create_index(
        "ix_order_status_history__order_created_at",
        "order_status_history",
        ["order_id", "created_at"],
    )

    op.create_table(
        "order_claims",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "order_id",
            sa.Integer,
            sa.ForeignKey("orders.id", ondelete="RESTRICT", name="fk_order_claims__order_id__orders"),
            nullable=False,
        ),
        sa.Column("stage", CLAIM_STAGE, nullable=False),
        sa.Column("holder_id", sa.Integer, nullable=False),
        _ts("acquired_at", server_default=sa.func.now()),
        _ts("released_at", nullable=True),
        sa.Column("release_reason", CLAIM_RELEASE, nullable=True),
        sa.Column("note", sa.Text, nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_order_claims"),
    )
    op.create_index("ix_order_claims__order_id", "order_claims", ["order_id"])
    op.create_index(
        "uq_order_claims__order_stage_active",
        "order_claims",
        ["order_id", "stage"],
        unique=True,
        postgresql_where=sa.text("released_at IS NULL"),
    )
    op.create_index(
        "ix_order_claims__holder_released", "order_claims", ["holder_id", "released_at"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "order_id",
            sa.Integer,
            sa.ForeignKey("orders.id", ondelete="RESTRICT", name="fk_transactions__order_id__orders"),
            nullable=False,
        ),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("status", TRANSACTION_STATUS, nullable=False),
        sa.Column("gateway_status", sa.String(32), nullable=True),
        sa.Column("gateway_reference", sa.String(128), nullable=True),
        _ts("expires_at", nullable=True),
        _ts("paid_at", nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        _ts("updated_at", server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_transactions"),
        sa.UniqueConstraint("gateway_reference", name="uq_transactions__gateway_reference"),
        sa.CheckConstraint("amount >= 0", name="ck_transactions__amount_non_negative"),
    )
    op.create_index("ix_transactions__order_id", "transactions", ["order_id"])
    op.create_index("ix_transactions__status", "transactions", ["status"])
    op.create_index(
        "ix_transactions__order_type_status", "transactions", ["order_id", "type", "status"]
    )

    op.create_table(
        "services",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("type", SERVICE_TYPE, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _ts("created_at", server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_services"),
        sa.UniqueConstraint("name", name="uq_services__name"),
    )

    op.create_table(
        "shoes",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "order_id",
            sa.Integer,
            sa.ForeignKey("orders.id", ondelete="RESTRICT", name="fk_shoes__order_id__orders"),
            nullable=False,
        ),
        sa.Column("brand", sa.String(80), nullable=False),
        sa.Column("size", sa.Numeric(4, 1), nullable=False),
        sa.Column("type", sa.String(60), nullable=False),
        sa.Column("material", sa.String(60), nullable=False),
        sa.Column("category", sa.String(60), nullable=False),
        sa.Column("condition", sa.Text, nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_shoes"),
    )
    op.create_index("ix_shoes__order_id", "shoes", ["order_id"])

    op.create_table(
        "transaction_items",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Integer,
            sa.ForeignKey(
                "transactions.id",
                ondelete="RESTRICT",
                name="fk_transaction_items__transaction_id__transactions",
            ),
            nullable=False,
        ),
        sa.Column(
            "shoe_id",
            sa.Integer,
            sa.ForeignKey("shoes.id", ondelete="RESTRICT", name="fk_transaction_items__shoe_id__shoes"),
            nullable=False,
        ),
        sa.Column(
            "service_id",
            sa.Integer,
            sa.ForeignKey(
                "services.id", ondelete="RESTRICT", name="fk_transaction_items__service_id__services"
            ),
            nullable=False,
        ),
        sa.Column("item_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False),
        _ts("created_at", server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_transaction_items"),
    )
    op.create_index(
        "ix_transaction_items__transaction_id", "transaction_items", ["transaction_id"]
    )
    op.create_index("ix_transaction_items__shoe_id", "transaction_items", ["shoe_id"])

    op.create_table(
        "order_photos",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "order_id",
            sa.Integer,
            sa.ForeignKey("orders.id", ondelete="RESTRICT", name="fk_order_photos__order_id__orders"),
            nullable=False,
        ),
        sa.Column("stage", PHOTO_STAGE, nullable=False),
        sa.Column("uploaded_by_id", sa.Integer, nullable=False),
        sa.Column("file_ref", sa.String(512), nullable=False),
        sa.Column("note", sa.Text, nullable=True),
        _ts("created_at", server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_order_photos"),
    )
    op.create_index("ix_order_photos__order_id", "order_photos", ["order_id"])
    op.create_index("ix_order_photos__order_stage", "order_photos", ["order_id", "stage"])

    op.create_table(
        "order_events",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "order_id",
            sa.Integer,
            sa.ForeignKey("orders.id", ondelete="RESTRICT", name="fk_order_events__order_id__orders"),
            nullable=False,
        ),
        sa.Column("event", sa.String(64), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        _ts("created_at", server_default=sa.func.now()),
        _ts("processed_at", nullable=True),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_order_events"),
    )
    op.create_index("ix_order_events__order_id", "order_events", ["order_id"])
    op.create_index("ix_order_events__created_at", "order_events", ["created_at"])
    op.create_index(
        "ix_order_events__pending",
        "order_events",
        ["created_at"],
        postgresql_where=sa.text("processed_at IS NULL"),
    )


def downgrade() -> None:
    for table in (
        "order_events",
        "order_photos",
        "transaction_items",
        "shoes",
        "services",
        "transactions",
        "order_claims",
        "order_status_history",
        "orders",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
