"""Usage billing ledger — plans, subscriptions, credits, idempotency markers.

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19

Changes:
  billing_plans                  — plan catalog (prepaid | postpaid terms)
  workspace_subscriptions        — one row per workspace, optimistic-lock ``version``
  workspace_credits              — materialized balance + deficit
  workspace_credit_transactions  — append-only signed deltas, unique external_payment_id
  billed_calls                   — (workspace_id, external_call_id) billed marker
  processed_gateway_events       — gateway event-id dedup
"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


revision: str = '202610190001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(conn, table: str) -> bool:
    return table in inspect(conn).get_table_names()


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    conn = op.get_bind()

    if not _table_exists(conn, "billing_plans"):
        op.create_table(
            "billing_plans",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("name", sa.String(), nullable=False),
            sa.Column("billing_type", sa.String(), nullable=False, server_default="prepaid"),
            sa.Column("included_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("overage_rate_per_minute_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("postpaid_minutes_limit", sa.Integer(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )

    if not _table_exists(conn, "workspace_subscriptions"):
        op.create_table(
            "workspace_subscriptions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("workspace_id", sa.String(), nullable=False, unique=True),
            sa.Column("plan_id", sa.String(), nullable=False),
            sa.Column("billing_type", sa.String(), nullable=False, server_default="prepaid"),
            sa.Column("status", sa.String(), nullable=False, server_default="incomplete"),
            sa.Column("external_subscription_id", sa.String(), nullable=True, unique=True),
            sa.Column("external_customer_id", sa.String(), nullable=True),
            sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
            sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
            sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
            sa.Column("minutes_used_this_period", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("overage_charges_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("postpaid_minutes_used", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("pending_invoice_amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
            *_timestamps(),
        )

    if not _table_exists(conn, "workspace_credits"):
        op.create_table(
            "workspace_credits",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("workspace_id", sa.String(), nullable=False, unique=True),
            sa.Column("balance_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("low_balance_threshold_cents", sa.Integer(), nullable=False, server_default=sa.text("500")),
            sa.Column("deficit_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
            *_timestamps(),
        )

    if not _table_exists(conn, "workspace_credit_transactions"):
        op.create_table(
            "workspace_credit_transactions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("workspace_id", sa.String(), nullable=False),
            sa.Column("kind", sa.String(), nullable=False),
            sa.Column("amount_cents", sa.Integer(), nullable=False),
            sa.Column("balance_after_cents", sa.Integer(), nullable=False),
            sa.Column("external_payment_id", sa.String(), nullable=True, unique=True),
            sa.Column("conversation_id", sa.String(), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        op.create_index(
            "ix_workspace_credit_transactions_workspace_id",
            "workspace_credit_transactions",
            ["workspace_id"],
        )

    if not _table_exists(conn, "billed_calls"):
        op.create_table(
            "billed_calls",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("workspace_id", sa.String(), nullable=False),
            sa.Column("external_call_id", sa.String(), nullable=False),
            sa.Column("conversation_id", sa.String(), nullable=True),
            sa.Column("partner_id", sa.String(), nullable=True),
            sa.Column("provider", sa.String(), nullable=True),
            sa.Column("billing_type", sa.String(), nullable=False),
            sa.Column("duration_seconds", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("minutes_billed", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("overage_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("amount_deducted_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("deficit_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.UniqueConstraint("workspace_id", "external_call_id", name="uq_billed_call_workspace_call"),
        )

    if not _table_exists(conn, "processed_gateway_events"):
        op.create_table(
            "processed_gateway_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("event_id", sa.String(), nullable=False, unique=True),
            sa.Column("event_type", sa.String(), nullable=False),
            sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )


def downgrade() -> None:
    op.drop_table("processed_gateway_events")
    op.drop_table("billed_calls")
    op.drop_index("ix_workspace_credit_transactions_workspace_id", table_name="workspace_credit_transactions")
    op.drop_table("workspace_credit_transactions")
    op.drop_table("workspace_credits")
    op.drop_table("workspace_subscriptions")
    op.drop_table("billing_plans")
