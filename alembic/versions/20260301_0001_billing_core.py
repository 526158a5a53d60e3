"""Initialize billing core schema.

Revision ID: 20260301_0001
Revises:
Create Date: 2026-03-01 00:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20260301_0001"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind: sa.engine.Connection, table_name: str) -> bool:
    inspector = sa.inspect(bind)
    return table_name in set(inspector.get_table_names())


def _has_index(bind: sa.engine.Connection, table_name: str, index_name: str) -> bool:
    inspector = sa.inspect(bind)
    if table_name not in set(inspector.get_table_names()):
        return False
    return any(item.get("name") == index_name for item in inspector.get_indexes(table_name))


def _create_index(bind: sa.engine.Connection, table_name: str, index_name: str, columns: list[str], *, unique: bool = False) -> None:
    if not _has_index(bind, table_name, index_name):
        op.create_index(index_name, table_name, columns, unique=unique)


def upgrade() -> None:
    bind = op.get_bind()

    if not _table_exists(bind, "subscription_tiers"):
        op.create_table(
            "subscription_tiers",
            sa.Column("tier_id", sa.String(length=32), nullable=False),
            sa.Column("name", sa.String(length=64), nullable=False),
            sa.Column("monthly_price", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
            sa.Column("annual_price", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
            sa.Column("recurring_item_limit", sa.Integer(), nullable=False, server_default=sa.text("5")),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("tier_id"),
        )

    if not _table_exists(bind, "user_subscriptions"):
        op.create_table(
            "user_subscriptions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("tier_id", sa.String(length=16), nullable=False, server_default=sa.text("'free'")),
            sa.Column("provider", sa.String(length=16), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'active'")),
            sa.Column("billing_cycle", sa.String(length=16), nullable=False, server_default=sa.text("'none'")),
            sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
            sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("grace_started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("external_customer_id", sa.String(length=128), nullable=True),
            sa.Column("external_subscription_id", sa.String(length=128), nullable=True),
            sa.Column("original_transaction_id", sa.String(length=128), nullable=True),
            sa.Column("product_id", sa.String(length=128), nullable=True),
            sa.Column("revoked_reference", sa.String(length=128), nullable=True),
            sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "user_subscriptions", op.f("ix_user_subscriptions_user_id"), ["user_id"], unique=True)
    _create_index(bind, "user_subscriptions", op.f("ix_user_subscriptions_external_customer_id"), ["external_customer_id"])
    _create_index(
        bind, "user_subscriptions", op.f("ix_user_subscriptions_external_subscription_id"), ["external_subscription_id"]
    )
    _create_index(
        bind, "user_subscriptions", op.f("ix_user_subscriptions_original_transaction_id"), ["original_transaction_id"]
    )

    if not _table_exists(bind, "payment_transactions"):
        op.create_table(
            "payment_transactions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("subscription_id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("provider", sa.String(length=16), nullable=False),
            sa.Column("provider_charge_id", sa.String(length=128), nullable=False),
            sa.Column("external_invoice_id", sa.String(length=128), nullable=True),
            sa.Column("amount", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default=sa.text("'usd'")),
            sa.Column("status", sa.String(length=16), nullable=False),
            sa.Column("source_event_id", sa.String(length=160), nullable=True),
            sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["subscription_id"], ["user_subscriptions.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "payment_transactions", op.f("ix_payment_transactions_subscription_id"), ["subscription_id"])
    _create_index(bind, "payment_transactions", op.f("ix_payment_transactions_user_id"), ["user_id"])
    _create_index(
        bind, "payment_transactions", op.f("ix_payment_transactions_provider_charge_id"), ["provider_charge_id"], unique=True
    )
    _create_index(bind, "payment_transactions", op.f("ix_payment_transactions_paid_at"), ["paid_at"])
    _create_index(
        bind, "payment_transactions", "ix_payment_transactions_subscription_status", ["subscription_id", "status"]
    )

    if not _table_exists(bind, "event_ledger"):
        op.create_table(
            "event_ledger",
            sa.Column("event_id", sa.String(length=160), nullable=False),
            sa.Column("provider", sa.String(length=16), nullable=False),
            sa.Column("event_kind", sa.String(length=64), nullable=False),
            sa.Column("raw_payload", sa.Text(), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'pending'")),
            sa.Column("user_id", sa.String(length=64), nullable=True),
            sa.Column("result_json", sa.Text(), nullable=True),
            sa.Column("error_code", sa.String(length=64), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("event_id"),
        )
    for column in ("provider", "event_kind", "status", "user_id", "received_at"):
        _create_index(bind, "event_ledger", op.f(f"ix_event_ledger_{column}"), [column])

    if not _table_exists(bind, "iap_transactions"):
        op.create_table(
            "iap_transactions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("original_transaction_id", sa.String(length=128), nullable=False),
            sa.Column("transaction_id", sa.String(length=128), nullable=False),
            sa.Column("product_id", sa.String(length=128), nullable=True),
            sa.Column("notification_type", sa.String(length=64), nullable=False),
            sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("expires_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    for column in ("user_id", "original_transaction_id", "transaction_id", "created_at"):
        _create_index(bind, "iap_transactions", op.f(f"ix_iap_transactions_{column}"), [column])
    _create_index(
        bind, "iap_transactions", "ix_iap_transactions_original_created", ["original_transaction_id", "created_at"]
    )

    if not _table_exists(bind, "recurring_items"):
        op.create_table(
            "recurring_items",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("cost", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default=sa.text("'usd'")),
            sa.Column("repeat_interval", sa.String(length=16), nullable=False, server_default=sa.text("'monthly'")),
            sa.Column("renewal_date", sa.Date(), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'active'")),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "recurring_items", op.f("ix_recurring_items_user_id"), ["user_id"])
    _create_index(bind, "recurring_items", op.f("ix_recurring_items_renewal_date"), ["renewal_date"])
    _create_index(
        bind, "recurring_items", "ix_recurring_items_user_status_renewal", ["user_id", "status", "renewal_date"]
    )

    if not _table_exists(bind, "payment_history"):
        op.create_table(
            "payment_history",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("recurring_item_id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("due_date", sa.Date(), nullable=False),
            sa.Column("payment_date", sa.Date(), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False),
            sa.Column("amount", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["recurring_item_id"], ["recurring_items.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_index(bind, "payment_history", op.f("ix_payment_history_recurring_item_id"), ["recurring_item_id"])
    _create_index(bind, "payment_history", op.f("ix_payment_history_user_id"), ["user_id"])
    _create_index(bind, "payment_history", "ix_payment_history_item_created", ["recurring_item_id", "created_at"])

    if not _table_exists(bind, "refund_requests"):
        op.create_table(
            "refund_requests",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("subscription_id", sa.String(length=36), nullable=False),
            sa.Column("transaction_id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("amount", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0")),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default=sa.text("'usd'")),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'pending'")),
            sa.Column("provider_refund_id", sa.String(length=128), nullable=True),
            sa.Column("failure_reason", sa.Text(), nullable=True),
            sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["subscription_id"], ["user_subscriptions.id"]),
            sa.ForeignKeyConstraint(["transaction_id"], ["payment_transactions.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("transaction_id", name="uq_refund_requests_transaction"),
        )
    _create_index(bind, "refund_requests", op.f("ix_refund_requests_subscription_id"), ["subscription_id"])
    _create_index(bind, "refund_requests", op.f("ix_refund_requests_user_id"), ["user_id"])
    _create_index(bind, "refund_requests", op.f("ix_refund_requests_status"), ["status"])


def downgrade() -> None:
    bind = op.get_bind()

    for table_name in (
        "refund_requests",
        "payment_history",
        "recurring_items",
        "iap_transactions",
        "event_ledger",
        "payment_transactions",
        "user_subscriptions",
        "subscription_tiers",
    ):
        if _table_exists(bind, table_name):
            op.drop_table(table_name)
