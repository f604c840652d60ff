from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, UniqueConstraint
from app.core.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Plan Catalog ────────────────────────────────────────────────────────────

class BillingPlan(Base):
    """Workspace subscription plan. Read-only reference data for the billing engine."""

    __tablename__ = "billing_plans"

    id = Column(String, primary_key=True)                # "plan_starter", partner-defined ids
    name = Column(String, nullable=False)
    billing_type = Column(String, nullable=False, default="prepaid")  # prepaid | postpaid
    included_minutes = Column(Integer, nullable=False, default=0)
    overage_rate_per_minute_cents = Column(Integer, nullable=False, default=0)
    postpaid_minutes_limit = Column(Integer, nullable=True)  # advisory, postpaid only
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


# ─── Subscription State ──────────────────────────────────────────────────────

class WorkspaceSubscription(Base):
    """One subscription per workspace, synchronized from payment-gateway webhooks."""

    __tablename__ = "workspace_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String, nullable=False, unique=True)
    plan_id = Column(String, nullable=False)
    billing_type = Column(String, nullable=False, default="prepaid")  # immutable once set

    # Status: active | past_due | canceled | incomplete | trialing | paused
    status = Column(String, nullable=False, default="incomplete")

    external_subscription_id = Column(String, nullable=True, unique=True)  # sub_...
    external_customer_id = Column(String, nullable=True)                   # cus_...

    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)

    # Prepaid counters
    minutes_used_this_period = Column(Integer, nullable=False, default=0)
    overage_charges_cents = Column(Integer, nullable=False, default=0)

    # Postpaid counters
    postpaid_minutes_used = Column(Integer, nullable=False, default=0)
    pending_invoice_amount_cents = Column(Integer, nullable=False, default=0)

    last_event_at = Column(DateTime(timezone=True), nullable=True)  # gateway time of last applied event
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}


# ─── Credit Ledger ───────────────────────────────────────────────────────────

class WorkspaceCredits(Base):
    """Materialized credit balance per workspace. Always equals the sum of its ledger deltas."""

    __tablename__ = "workspace_credits"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String, nullable=False, unique=True)
    balance_cents = Column(Integer, nullable=False, default=0)
    low_balance_threshold_cents = Column(Integer, nullable=False, default=500)
    deficit_cents = Column(Integer, nullable=False, default=0)  # overage the balance could not cover
    billing_exempt = Column(Boolean, nullable=False, default=False)  # usage charged to the partner instead
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class CreditTransaction(Base):
    """Append-only ledger of balance deltas. Rows are never updated."""

    __tablename__ = "workspace_credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False)              # topup | usage | grant | adjustment
    amount_cents = Column(Integer, nullable=False)     # signed delta
    balance_after_cents = Column(Integer, nullable=False)
    external_payment_id = Column(String, nullable=True, unique=True)  # pi_..., idempotency anchor
    conversation_id = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class PartnerCredits(Base):
    """Partner balance that pays for the usage of its billing-exempt workspaces."""

    __tablename__ = "partner_credits"

    id = Column(Integer, primary_key=True, index=True)
    partner_id = Column(String, nullable=False, unique=True)
    balance_cents = Column(Integer, nullable=False, default=0)
    low_balance_threshold_cents = Column(Integer, nullable=False, default=1000)
    per_minute_rate_cents = Column(Integer, nullable=False, default=15)
    deficit_cents = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class PartnerCreditTransaction(Base):
    """Append-only partner ledger. Usage rows name the workspace that made the call."""

    __tablename__ = "partner_credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    partner_id = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False)              # topup | usage | adjustment
    amount_cents = Column(Integer, nullable=False)     # signed delta
    balance_after_cents = Column(Integer, nullable=False)
    external_payment_id = Column(String, nullable=True, unique=True)
    workspace_id = Column(String, nullable=True)
    conversation_id = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


# ─── Idempotency Markers ─────────────────────────────────────────────────────

class BilledCall(Base):
    """Marks an external call as billed. Written in the same transaction as its charge."""

    __tablename__ = "billed_calls"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String, nullable=False)
    external_call_id = Column(String, nullable=False)
    conversation_id = Column(String, nullable=True)
    partner_id = Column(String, nullable=True)
    provider = Column(String, nullable=True)           # vapi | retell | synthflow
    billing_type = Column(String, nullable=False)
    duration_seconds = Column(Integer, nullable=False, default=0)
    minutes_billed = Column(Integer, nullable=False, default=0)
    overage_minutes = Column(Integer, nullable=False, default=0)
    amount_deducted_cents = Column(Integer, nullable=False, default=0)
    deficit_cents = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("workspace_id", "external_call_id", name="uq_billed_call_workspace_call"),
    )


class ProcessedGatewayEvent(Base):
    """Gateway event ids already applied (at-least-once delivery dedup)."""

    __tablename__ = "processed_gateway_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String, nullable=False, unique=True)  # evt_...
    event_type = Column(String, nullable=False)
    processed_at = Column(DateTime(timezone=True), default=_utcnow)
