"""Add processing lease to the event ledger.

Revision ID: 20261017_0002
Revises: 20260301_0001
Create Date: 2026-10-17 09:30:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261017_0002"
down_revision = "20260301_0001"
branch_labels = None
depends_on = None


def _column_exists(bind: sa.engine.Connection, table_name: str, column_name: str) -> bool:
    inspector = sa.inspect(bind)
    if table_name not in set(inspector.get_table_names()):
        return False
    return any(item.get("name") == column_name for item in inspector.get_columns(table_name))


def _has_index(bind: sa.engine.Connection, table_name: str, index_name: str) -> bool:
    inspector = sa.inspect(bind)
    if table_name not in set(inspector.get_table_names()):
        return False
    return any(item.get("name") == index_name for item in inspector.get_indexes(table_name))


def upgrade() -> None:
    bind = op.get_bind()

    if not _column_exists(bind, "event_ledger", "leased_at"):
        op.add_column("event_ledger", sa.Column("leased_at", sa.DateTime(timezone=True), nullable=True))
        # Entries already pending hold a lease from the moment they arrived.
        op.execute(sa.text("UPDATE event_ledger SET leased_at = received_at WHERE status = 'pending'"))
    if not _has_index(bind, "event_ledger", op.f("ix_event_ledger_leased_at")):
        op.create_index(op.f("ix_event_ledger_leased_at"), "event_ledger", ["leased_at"], unique=False)


def downgrade() -> None:
    bind = op.get_bind()
    if _has_index(bind, "event_ledger", op.f("ix_event_ledger_leased_at")):
        op.drop_index(op.f("ix_event_ledger_leased_at"), table_name="event_ledger")
    if _column_exists(bind, "event_ledger", "leased_at"):
        with op.batch_alter_table("event_ledger") as batch_op:
            batch_op.drop_column("leased_at")
