"""order engine schema: users, listings, orders, timeline, webhooks, jobs

Revision ID: 5a1c0e7d2b90
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "5a1c0e7d2b90"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def _index_exists(bind, table_name: str, index_name: str) -> bool:
    try:
        indexes = sa.inspect(bind).get_indexes(table_name)
        return any((idx.get("name") or "") == index_name for idx in indexes)
    except Exception:
        return False


def _ensure_index(bind, table_name: str, column: str, *, unique: bool = False) -> None:
    name = f"ix_{table_name}_{column}"
    if not _index_exists(bind, table_name, name):
        op.create_index(name, table_name, [column], unique=unique)


def upgrade():
    bind = op.get_bind()

    if not _table_exists(bind, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("password_hash", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("role", sa.String(length=32), nullable=False, server_default="buyer"),
            sa.Column("payout_account_id", sa.String(length=128), nullable=True),
            sa.Column("payouts_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("completed_sales_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("claims_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("fraud_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("risk_score", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("protection_eligible", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
    _ensure_index(bind, "users", "email", unique=True)

    if not _table_exists(bind, "listings"):
        op.create_table(
            "listings",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("title", sa.String(length=160), nullable=False),
            sa.Column("category", sa.String(length=64), nullable=False, server_default="cattle_livestock"),
            sa.Column("status", sa.String(length=24), nullable=False, server_default="active"),
            sa.Column("price", sa.Float(), nullable=False, server_default="0"),
            sa.Column("quantity_available", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("protection_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("protection_days", sa.Integer(), nullable=True),
            sa.Column("payout_hold_code", sa.String(length=64), nullable=True),
            sa.Column("requires_transfer_compliance", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("purchase_reserved_by_order_id", sa.Integer(), nullable=True),
            sa.Column("sold_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
    for column in ("seller_id", "status", "purchase_reserved_by_order_id"):
        _ensure_index(bind, "listings", column)

    if not _table_exists(bind, "listing_reservations"):
        op.create_table(
            "listing_reservations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
    _ensure_index(bind, "listing_reservations", "listing_id")
    _ensure_index(bind, "listing_reservations", "order_id", unique=True)

    if not _table_exists(bind, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("listing_id", sa.Integer(), sa.ForeignKey("listings.id"), nullable=True),
            sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("platform_fee", sa.Float(), nullable=False, server_default="0"),
            sa.Column("seller_amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
            sa.Column("refunded_amount", sa.Float(), nullable=True),
            sa.Column("refund_id", sa.String(length=128), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
            sa.Column("transaction_status", sa.String(length=48), nullable=True),
            sa.Column("transport_option", sa.String(length=24), nullable=False, server_default="SELLER_TRANSPORT"),
            sa.Column("payout_hold_reason", sa.String(length=64), nullable=False, server_default="none"),
            sa.Column("compliance_hold_code", sa.String(length=64), nullable=True),
            sa.Column("dispute_status", sa.String(length=32), nullable=False, server_default="none"),
            sa.Column("dispute_reason", sa.String(length=32), nullable=True),
            sa.Column("dispute_notes", sa.Text(), nullable=True),
            sa.Column("dispute_evidence_json", sa.Text(), nullable=True),
            sa.Column("dispute_resolution_json", sa.Text(), nullable=True),
            sa.Column("dispute_opened_at", sa.DateTime(), nullable=True),
            sa.Column("dispute_resolved_at", sa.DateTime(), nullable=True),
            sa.Column("chargeback_status", sa.String(length=16), nullable=False, server_default="none"),
            sa.Column("transfer_id", sa.String(length=128), nullable=True, unique=True),
            sa.Column("protection_days", sa.Integer(), nullable=True),
            sa.Column("protection_start_at", sa.DateTime(), nullable=True),
            sa.Column("protection_ends_at", sa.DateTime(), nullable=True),
            sa.Column("protection_waived_at", sa.DateTime(), nullable=True),
            sa.Column("pickup_json", sa.Text(), nullable=True),
            sa.Column("delivery_json", sa.Text(), nullable=True),
            sa.Column("admin_hold", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("admin_hold_reason", sa.String(length=240), nullable=True),
            sa.Column("admin_payout_approval", sa.Boolean(), nullable=True),
            sa.Column("admin_payout_approved_by", sa.Integer(), nullable=True),
            sa.Column("admin_payout_approved_at", sa.DateTime(), nullable=True),
            sa.Column("admin_action_notes_json", sa.Text(), nullable=True),
            sa.Column("admin_reviewed_at", sa.DateTime(), nullable=True),
            sa.Column("requires_transfer_compliance", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("compliance_buyer_confirmed_at", sa.DateTime(), nullable=True),
            sa.Column("compliance_seller_confirmed_at", sa.DateTime(), nullable=True),
            sa.Column("payment_method", sa.String(length=32), nullable=True),
            sa.Column("checkout_session_id", sa.String(length=128), nullable=True),
            sa.Column("payment_intent_id", sa.String(length=128), nullable=True),
            sa.Column("checkout_expires_at", sa.DateTime(), nullable=True),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("in_transit_at", sa.DateTime(), nullable=True),
            sa.Column("delivered_at", sa.DateTime(), nullable=True),
            sa.Column("delivery_confirmed_at", sa.DateTime(), nullable=True),
            sa.Column("accepted_at", sa.DateTime(), nullable=True),
            sa.Column("buyer_confirmed_at", sa.DateTime(), nullable=True),
            sa.Column("dispute_deadline_at", sa.DateTime(), nullable=True),
            sa.Column("released_at", sa.DateTime(), nullable=True),
            sa.Column("released_by", sa.String(length=64), nullable=True),
            sa.Column("refunded_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            sa.Column("escalated_at", sa.DateTime(), nullable=True),
            sa.Column("last_updated_by_role", sa.String(length=16), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
    for column in (
        "listing_id",
        "buyer_id",
        "seller_id",
        "status",
        "transaction_status",
        "payout_hold_reason",
        "dispute_status",
        "protection_ends_at",
        "admin_hold",
        "checkout_session_id",
        "payment_intent_id",
    ):
        _ensure_index(bind, "orders", column)

    if not _table_exists(bind, "order_timeline_events"):
        op.create_table(
            "order_timeline_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), nullable=False),
            sa.Column("event_id", sa.String(length=160), nullable=False),
            sa.Column("event_type", sa.String(length=64), nullable=False),
            sa.Column("label", sa.String(length=240), nullable=False, server_default=""),
            sa.Column("actor", sa.String(length=16), nullable=False, server_default="system"),
            sa.Column("visibility", sa.String(length=16), nullable=False, server_default="both"),
            sa.Column("meta_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("order_id", "event_id", name="uq_order_timeline_order_event"),
        )
    _ensure_index(bind, "order_timeline_events", "order_id")

    if not _table_exists(bind, "notifications"):
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("order_id", sa.Integer(), nullable=True),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("dedupe_key", sa.String(length=200), nullable=True),
            sa.Column("status", sa.String(length=24), nullable=False, server_default="queued"),
            sa.Column("payload_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("sent_at", sa.DateTime(), nullable=True),
            sa.UniqueConstraint("dedupe_key", name="uq_notifications_dedupe_key"),
        )
    _ensure_index(bind, "notifications", "user_id")
    _ensure_index(bind, "notifications", "order_id")

    if not _table_exists(bind, "audit_logs"):
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("action", sa.String(length=120), nullable=False),
            sa.Column("target_type", sa.String(length=64), nullable=False, server_default="order"),
            sa.Column("target_id", sa.Integer(), nullable=True),
            sa.Column("meta", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
    for column in ("actor_user_id", "action", "target_id", "created_at"):
        _ensure_index(bind, "audit_logs", column)

    if not _table_exists(bind, "webhook_events"):
        op.create_table(
            "webhook_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default="stripe"),
            sa.Column("event_id", sa.String(length=128), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=True),
            sa.Column("order_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="received"),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("payload_hash", sa.String(length=128), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
        )
    _ensure_index(bind, "webhook_events", "order_id")

    if not _table_exists(bind, "job_runs"):
        op.create_table(
            "job_runs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("job_name", sa.String(length=64), nullable=False),
            sa.Column("ran_at", sa.DateTime(), nullable=False),
            sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("counters_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
        )
    for column in ("job_name", "ran_at", "ok"):
        _ensure_index(bind, "job_runs", column)

    if not _table_exists(bind, "idempotency_keys"):
        op.create_table(
            "idempotency_keys",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(length=128), nullable=False),
            sa.Column("scope", sa.String(length=128), nullable=False, server_default=""),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("request_hash", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("response_json", sa.Text(), nullable=True),
            sa.Column("status_code", sa.Integer(), nullable=False, server_default="200"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
        )
    _ensure_index(bind, "idempotency_keys", "key")


def downgrade():
    bind = op.get_bind()
    for table_name in (
        "idempotency_keys",
        "job_runs",
        "webhook_events",
        "audit_logs",
        "notifications",
        "order_timeline_events",
        "orders",
        "listing_reservations",
        "listings",
        "users",
    ):
        if _table_exists(bind, table_name):
            op.drop_table(table_name)
