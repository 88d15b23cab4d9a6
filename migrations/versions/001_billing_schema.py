"""Billing schema: charges, payments, transactions, webhook receipts, outbox.

Revision ID: 001_billing_schema
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from pathlib import Path

from alembic import op


# revision identifiers, used by Alembic.
revision = "001_billing_schema"
down_revision = None
branch_labels = None
depends_on = None


def _read_sql() -> str:
    sql_path = Path(__file__).resolve().parents[1] / "sql" / "001_billing_schema.sql"
    return sql_path.read_text(encoding="utf-8")


def upgrade() -> None:
    # Raw execution keeps the DO $$ ... $$ blocks intact
    conn = op.get_bind()
    conn.exec_driver_sql(_read_sql())


def downgrade() -> None:
    raise NotImplementedError("Downgrade not supported")
