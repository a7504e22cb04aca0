"""escrow and logistics core tables

Revision ID: 4c1e9a7b2d10
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "4c1e9a7b2d10"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def upgrade():
    bind = op.get_bind()

    if not _table_exists(bind, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("role", sa.String(length=32), nullable=False, server_default="buyer"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_users_email", "users", ["email"], unique=True)
        op.create_index("ix_users_role", "users", ["role"], unique=False)

    if not _table_exists(bind, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_code", sa.String(length=32), nullable=True),
            sa.Column("buyer_id", sa.Integer(), nullable=False),
            sa.Column("shipping_address_id", sa.Integer(), nullable=False),
            sa.Column("total_amount", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("total_shipping_fee", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("total_platform_fee", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("total_items", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("unique_sellers", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=24), nullable=False, server_default="PENDING"),
            sa.Column("payment_method", sa.String(length=24), nullable=False, server_default="PAYOS"),
            sa.Column("payment_intent_ref", sa.String(length=128), nullable=True),
            sa.Column("checkout_url", sa.String(length=1024), nullable=True),
            sa.Column("notes", sa.String(length=500), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("delivered_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["buyer_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_orders_order_code", "orders", ["order_code"], unique=True)
        op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"], unique=False)
        op.create_index("ix_orders_status", "orders", ["status"], unique=False)
        op.create_index("ix_orders_created_at", "orders", ["created_at"], unique=False)

    if not _table_exists(bind, "order_items"):
        op.create_table(
            "order_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("product_id", sa.Integer(), nullable=False),
            sa.Column("product_name", sa.String(length=200), nullable=True),
            sa.Column("seller_id", sa.Integer(), nullable=False),
            sa.Column("buyer_id", sa.Integer(), nullable=False),
            sa.Column("price", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("platform_fee", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("fee_percentage", sa.Numeric(precision=6, scale=4), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=24), nullable=False, server_default="PENDING"),
            sa.Column("notes", sa.String(length=500), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
            sa.ForeignKeyConstraint(["seller_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["buyer_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_order_items_order_id", "order_items", ["order_id"], unique=False)
        op.create_index("ix_order_items_seller_id", "order_items", ["seller_id"], unique=False)
        op.create_index("ix_order_items_buyer_id", "order_items", ["buyer_id"], unique=False)
        op.create_index("ix_order_items_status_updated", "order_items", ["status", "updated_at"], unique=False)
        op.create_index("ix_order_items_seller_status", "order_items", ["seller_id", "status"], unique=False)

    if not _table_exists(bind, "escrow_records"):
        op.create_table(
            "escrow_records",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_item_id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("seller_id", sa.Integer(), nullable=False),
            sa.Column("buyer_id", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="HOLDING"),
            sa.Column("held_amount", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("platform_fee", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("release_reason", sa.String(length=64), nullable=True),
            sa.Column("notes", sa.String(length=500), nullable=True),
            sa.Column("released_at", sa.DateTime(), nullable=True),
            sa.Column("refunded_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["order_item_id"], ["order_items.id"]),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("order_item_id"),
        )
        op.create_index("ix_escrow_records_order_id", "escrow_records", ["order_id"], unique=False)
        op.create_index("ix_escrow_records_seller_id", "escrow_records", ["seller_id"], unique=False)
        op.create_index("ix_escrow_records_buyer_id", "escrow_records", ["buyer_id"], unique=False)
        op.create_index("ix_escrow_records_status_created", "escrow_records", ["status", "created_at"], unique=False)

    if not _table_exists(bind, "escrow_transitions"):
        op.create_table(
            "escrow_transitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("escrow_record_id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("order_item_id", sa.Integer(), nullable=False),
            sa.Column("from_status", sa.String(length=16), nullable=False, server_default=""),
            sa.Column("to_status", sa.String(length=16), nullable=False),
            sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("idempotency_key", sa.String(length=160), nullable=False),
            sa.Column("reason", sa.String(length=240), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("escrow_record_id", "idempotency_key", name="uq_escrow_transition_record_key"),
        )
        op.create_index("ix_escrow_transitions_escrow_record_id", "escrow_transitions", ["escrow_record_id"], unique=False)
        op.create_index("ix_escrow_transitions_order_id", "escrow_transitions", ["order_id"], unique=False)
        op.create_index("ix_escrow_transitions_order_item_id", "escrow_transitions", ["order_item_id"], unique=False)

    if not _table_exists(bind, "pickup_transactions"):
        op.create_table(
            "pickup_transactions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_item_id", sa.Integer(), nullable=False),
            sa.Column("shipper_id", sa.Integer(), nullable=True),
            sa.Column("qr_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("photo_urls_json", sa.Text(), nullable=False, server_default="[]"),
            sa.Column("picked_up_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["order_item_id"], ["order_items.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("order_item_id"),
        )
        op.create_index("ix_pickup_transactions_shipper_id", "pickup_transactions", ["shipper_id"], unique=False)

    if not _table_exists(bind, "delivery_transactions"):
        op.create_table(
            "delivery_transactions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_item_id", sa.Integer(), nullable=False),
            sa.Column("shipper_id", sa.Integer(), nullable=True),
            sa.Column("photo_urls_json", sa.Text(), nullable=False, server_default="[]"),
            sa.Column("delivered_at", sa.DateTime(), nullable=False),
            sa.Column("buyer_protection_eligible", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("protection_until", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["order_item_id"], ["order_items.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("order_item_id"),
        )
        op.create_index("ix_delivery_transactions_shipper_id", "delivery_transactions", ["shipper_id"], unique=False)
        op.create_index("ix_delivery_transactions_delivered_at", "delivery_transactions", ["delivered_at"], unique=False)

    if not _table_exists(bind, "order_events"):
        op.create_table(
            "order_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("order_item_id", sa.Integer(), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("event", sa.String(length=64), nullable=False),
            sa.Column("from_status", sa.String(length=24), nullable=True),
            sa.Column("to_status", sa.String(length=24), nullable=True),
            sa.Column("note", sa.String(length=240), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_order_events_order_id", "order_events", ["order_id"], unique=False)
        op.create_index("ix_order_events_order_item_id", "order_events", ["order_item_id"], unique=False)
        op.create_index("ix_order_events_created_at", "order_events", ["created_at"], unique=False)

    if not _table_exists(bind, "payment_callbacks"):
        op.create_table(
            "payment_callbacks",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default="payos"),
            sa.Column("source", sa.String(length=32), nullable=False, server_default="redirect"),
            sa.Column("order_code", sa.String(length=32), nullable=True),
            sa.Column("code", sa.String(length=16), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=True),
            sa.Column("outcome", sa.String(length=24), nullable=False, server_default="received"),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("payload_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_payment_callbacks_order_code", "payment_callbacks", ["order_code"], unique=False)

    if not _table_exists(bind, "notifications"):
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("kind", sa.String(length=48), nullable=False),
            sa.Column("title", sa.String(length=160), nullable=True),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=True),
            sa.Column("order_item_id", sa.Integer(), nullable=True),
            sa.Column("dedupe_key", sa.String(length=160), nullable=True),
            sa.Column("meta", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("read_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("dedupe_key"),
        )
        op.create_index("ix_notifications_user_id", "notifications", ["user_id"], unique=False)
        op.create_index("ix_notifications_order_id", "notifications", ["order_id"], unique=False)

    if not _table_exists(bind, "platform_events"):
        op.create_table(
            "platform_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("order_id", sa.Integer(), nullable=True),
            sa.Column("order_item_id", sa.Integer(), nullable=True),
            sa.Column("escrow_record_id", sa.Integer(), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("dedupe_key", sa.String(length=180), nullable=True),
            sa.Column("payload_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("dedupe_key"),
        )
        for column in ("event_type", "actor_user_id", "order_id", "order_item_id", "created_at"):
            op.create_index(f"ix_platform_events_{column}", "platform_events", [column], unique=False)

    if not _table_exists(bind, "idempotency_keys"):
        op.create_table(
            "idempotency_keys",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("scope", sa.String(length=128), nullable=False, server_default=""),
            sa.Column("key", sa.String(length=128), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("request_fingerprint", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("response_body", sa.Text(), nullable=True),
            sa.Column("response_status", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
        )
        op.create_index("ix_idempotency_keys_user_id", "idempotency_keys", ["user_id"], unique=False)

    if not _table_exists(bind, "job_runs"):
        op.create_table(
            "job_runs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=64), nullable=False),
            sa.Column("started_at", sa.DateTime(), nullable=False),
            sa.Column("finished_at", sa.DateTime(), nullable=True),
            sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("processed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("skipped", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("error", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_job_runs_job_name", "job_runs", ["job_name"], unique=False)
        op.create_index("ix_job_runs_started_at", "job_runs", ["started_at"], unique=False)

    if not _table_exists(bind, "reconciliation_reports"):
        op.create_table(
            "reconciliation_reports",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("trigger", sa.String(length=16), nullable=False, server_default="cli"),
            sa.Column("requested_by", sa.Integer(), nullable=True),
            sa.Column("since", sa.DateTime(), nullable=True),
            sa.Column("order_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("drift_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("summary_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_reconciliation_reports_drift_count", "reconciliation_reports", ["drift_count"], unique=False)
        op.create_index("ix_reconciliation_reports_created_at", "reconciliation_reports", ["created_at"], unique=False)


def downgrade():
    bind = op.get_bind()
    for table_name in (
        "reconciliation_reports",
        "job_runs",
        "idempotency_keys",
        "platform_events",
        "notifications",
        "payment_callbacks",
        "order_events",
        "delivery_transactions",
        "pickup_transactions",
        "escrow_transitions",
        "escrow_records",
        "order_items",
        "orders",
        "users",
    ):
        if _table_exists(bind, table_name):
            op.drop_table(table_name)
