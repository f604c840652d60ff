"""Partner credits for billing-exempt workspaces.

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19

Changes:
  workspace_credits.billing_exempt  — usage of this workspace is charged to its partner
  partner_credits                   — materialized partner balance, per-minute rate, deficit
  partner_credit_transactions       — append-only signed deltas, unique external_payment_id
"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


revision: str = '202610190002'
down_revision: Union[str, None] = '202610190001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(conn, table: str) -> bool:
    return table in inspect(conn).get_table_names()


def _column_exists(conn, table: str, column: str) -> bool:
    return column in {c["name"] for c in inspect(conn).get_columns(table)}


def upgrade() -> None:
    conn = op.get_bind()

    if not _column_exists(conn, "workspace_credits", "billing_exempt"):
        op.add_column(
            "workspace_credits",
            sa.Column("billing_exempt", sa.Boolean(), nullable=False, server_default=sa.false()),
        )

    if not _table_exists(conn, "partner_credits"):
        op.create_table(
            "partner_credits",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("partner_id", sa.String(), nullable=False, unique=True),
            sa.Column("balance_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("low_balance_threshold_cents", sa.Integer(), nullable=False, server_default=sa.text("1000")),
            sa.Column("per_minute_rate_cents", sa.Integer(), nullable=False, server_default=sa.text("15")),
            sa.Column("deficit_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )

    if not _table_exists(conn, "partner_credit_transactions"):
        op.create_table(
            "partner_credit_transactions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("partner_id", sa.String(), nullable=False),
            sa.Column("kind", sa.String(), nullable=False),
            sa.Column("amount_cents", sa.Integer(), nullable=False),
            sa.Column("balance_after_cents", sa.Integer(), nullable=False),
            sa.Column("external_payment_id", sa.String(), nullable=True, unique=True),
            sa.Column("workspace_id", sa.String(), nullable=True),
            sa.Column("conversation_id", sa.String(), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        op.create_index(
            "ix_partner_credit_transactions_partner_id",
            "partner_credit_transactions",
            ["partner_id"],
        )


def downgrade() -> None:
    op.drop_index("ix_partner_credit_transactions_partner_id", table_name="partner_credit_transactions")
    op.drop_table("partner_credit_transactions")
    op.drop_table("partner_credits")
    op.drop_column("workspace_credits", "billing_exempt")
