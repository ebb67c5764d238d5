"""byblos core schema

Revision ID: 4c1e9a7b2d30
Revises:
Create Date: 2026-10-16 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "4c1e9a7b2d30"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def _index(table: str, *columns: str, unique: bool = False) -> None:
    for column in columns:
        op.create_index(f"ix_{table}_{column}", table, [column], unique=unique)


def _create_orders():
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_number", sa.String(length=32), nullable=False),
        sa.Column("buyer_id", sa.Integer(), nullable=False),
        sa.Column("seller_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="PENDING"),
        sa.Column("payment_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("total_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="KES"),
        sa.Column("commission_rate", sa.Numeric(6, 4), nullable=True),
        sa.Column("platform_fee", sa.Integer(), nullable=True),
        sa.Column("seller_payout", sa.Integer(), nullable=True),
        sa.Column("shipping_address_json", sa.Text(), nullable=True),
        sa.Column("seller_has_shop", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("booking_date", sa.DateTime(), nullable=True),
        sa.Column("seller_dropoff_deadline", sa.DateTime(), nullable=True),
        sa.Column("buyer_pickup_deadline", sa.DateTime(), nullable=True),
        sa.Column("ready_for_pickup_at", sa.DateTime(), nullable=True),
        sa.Column("auto_cancelled_reason", sa.String(length=240), nullable=True),
        sa.Column("cancelled_by", sa.String(length=16), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    _index("orders", "order_number", unique=True)
    _index("orders", "buyer_id", "seller_id", "status", "payment_status", "seller_dropoff_deadline", "buyer_pickup_deadline")

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("product_id", sa.Integer(), nullable=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("unit_price", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("product_type", sa.String(length=16), nullable=False, server_default="physical"),
    )
    _index("order_items", "order_id")

    op.create_table(
        "order_transitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("event", sa.String(length=40), nullable=False),
        sa.Column("from_status", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("to_status", sa.String(length=32), nullable=False),
        sa.Column("actor_type", sa.String(length=16), nullable=False, server_default="system"),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=160), nullable=True),
        sa.Column("reason", sa.String(length=240), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("order_id", "idempotency_key", name="uq_order_transition_order_key"),
    )
    _index("order_transitions", "order_id")


def _create_payments():
    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=True),
        sa.Column("provider", sa.String(length=32), nullable=False, server_default="payd"),
        sa.Column("provider_reference", sa.String(length=128), nullable=True, unique=True),
        sa.Column("api_ref", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="KES"),
        sa.Column("mobile_number", sa.String(length=20), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    _index("payments", "order_id", "api_ref", "status", "mobile_number", "needs_review", "created_at")

    op.create_table(
        "withdrawal_requests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("seller_id", sa.Integer(), nullable=True),
        sa.Column("organizer_id", sa.Integer(), nullable=True),
        sa.Column("event_id", sa.Integer(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("debited_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("mpesa_number", sa.String(length=20), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="processing"),
        sa.Column("provider_reference", sa.String(length=128), nullable=True, unique=True),
        sa.Column("failure_reason", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint(
            "(seller_id IS NOT NULL AND organizer_id IS NULL AND event_id IS NULL)"
            " OR (seller_id IS NULL AND organizer_id IS NOT NULL)",
            name="ck_withdrawal_single_owner",
        ),
    )
    _index("withdrawal_requests", "seller_id", "organizer_id", "event_id", "status", "created_at")


def _create_ledger():
    op.create_table(
        "ledger_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_type", sa.String(length=16), nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("bucket", sa.String(length=16), nullable=False, server_default="available"),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint("owner_type", "owner_id", "bucket", name="uq_ledger_account_owner_bucket"),
        sa.CheckConstraint("balance >= 0", name="ck_ledger_account_non_negative"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("ledger_accounts.id"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=64), nullable=False),
        sa.Column("reference", sa.String(length=128), nullable=True),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    _index("ledger_entries", "account_id", "reference")


def _create_operational():
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("kind", sa.String(length=24), nullable=False, server_default="payment"),
        sa.Column("provider", sa.String(length=32), nullable=False, server_default="payd"),
        sa.Column("reference", sa.String(length=128), nullable=True),
        sa.Column("provider_status", sa.String(length=40), nullable=True),
        sa.Column("outcome", sa.String(length=32), nullable=False, server_default="received"),
        sa.Column("source_ip", sa.String(length=64), nullable=True),
        sa.Column("request_id", sa.String(length=64), nullable=True),
        sa.Column("payload_hash", sa.String(length=64), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    _index("webhook_events", "reference", "outcome", "payload_hash", "created_at")

    op.create_table(
        "job_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("job_name", sa.String(length=64), nullable=False),
        sa.Column("ran_at", sa.DateTime(), nullable=False),
        sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("counters_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
    )
    _index("job_runs", "job_name", "ran_at")

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("recipient_role", sa.String(length=16), nullable=False),
        sa.Column("recipient_id", sa.Integer(), nullable=True),
        sa.Column("template", sa.String(length=64), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False, server_default="log"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="queued"),
        sa.Column("provider", sa.String(length=32), nullable=True),
        sa.Column("provider_ref", sa.String(length=120), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("data_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
    )
    _index("notifications", "order_id")

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("subject_type", sa.String(length=40), nullable=True),
        sa.Column("subject_id", sa.String(length=120), nullable=True),
        sa.Column("request_id", sa.String(length=80), nullable=True),
        sa.Column("dedupe_key", sa.String(length=180), nullable=True, unique=True),
        sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
        sa.Column("metadata_json", sa.Text(), nullable=True),
    )
    _index("audit_events", "created_at", "event_type", "subject_type", "subject_id", "severity")


def upgrade():
    bind = op.get_bind()
    if not _table_exists(bind, "orders"):
        _create_orders()
    if not _table_exists(bind, "payments"):
        _create_payments()
    if not _table_exists(bind, "ledger_accounts"):
        _create_ledger()
    if not _table_exists(bind, "webhook_events"):
        _create_operational()


def downgrade():
    for table in (
        "audit_events",
        "notifications",
        "job_runs",
        "webhook_events",
        "ledger_entries",
        "ledger_accounts",
        "withdrawal_requests",
        "payments",
        "order_transitions",
        "order_items",
        "orders",
    ):
        op.drop_table(table)
