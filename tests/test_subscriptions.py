"""Tests for the subscription synchronizer.

Verifies:
  1. created/updated events upsert the workspace subscription
  2. trialing → active → past_due → canceled, and a stale "active" never revives it
  3. redelivered gateway events are no-ops (event-id dedup)
  4. billing type is immutable across plan changes
  5. invoice paid / failed reset counters and move status
  6. postpaid period reset is idempotent and isolated from prepaid counters
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.billing.errors import (
    BILLING_TYPE_CHANGE,
    DUPLICATE_EVENT,
    INVALID_TRANSITION,
    MISSING_IDENTIFIER,
    NOT_FOUND,
    STALE_EVENT,
    UNKNOWN_PLAN,
)
from app.billing.events import InvoicePaid, InvoicePaymentFailed, SubscriptionChanged, SubscriptionDeleted
from app.billing.subscriptions import can_transition, map_external_status
from app.core.models import ProcessedGatewayEvent

T0 = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def _changed(status, *, at, event_id, sub_id="sub_1", workspace_id="ws_1", plan_id="plan_starter", **kw):
    return SubscriptionChanged(
        event_id=event_id,
        event_type="customer.subscription.updated",
        created=at,
        external_subscription_id=sub_id,
        external_customer_id="cus_1",
        external_status=status,
        workspace_id=workspace_id,
        plan_id=plan_id,
        **kw,
    )


def _deleted(*, at, event_id, sub_id="sub_1", workspace_id="ws_1"):
    return SubscriptionDeleted(event_id=event_id, event_type="customer.subscription.deleted", created=at,
                               external_subscription_id=sub_id, workspace_id=workspace_id)


def _invoice_paid(*, at, event_id, sub_id="sub_1", **kw):
    return InvoicePaid(event_id=event_id, event_type="invoice.payment_succeeded", created=at,
                       invoice_id=f"in_{event_id}", external_subscription_id=sub_id, **kw)


def _invoice_failed(*, at, event_id, sub_id="sub_1"):
    return InvoicePaymentFailed(event_id=event_id, event_type="invoice.payment_failed", created=at,
                                invoice_id=f"in_{event_id}", external_subscription_id=sub_id)


# ── Status mapping ────────────────────────────────────────────────────────────

@pytest.mark.parametrize("external,internal", [
    ("active", "active"),
    ("trialing", "trialing"),
    ("unpaid", "past_due"),
    ("incomplete_expired", "canceled"),
    ("paused", "paused"),
    ("something_new", "incomplete"),
    (None, "incomplete"),
])
def test_status_mapping(external, internal):
    assert map_external_status(external) == internal


def test_canceled_is_terminal():
    assert not can_transition("canceled", "active")
    assert can_transition("canceled", "canceled")
    assert can_transition("past_due", "active")


# ── Upsert ────────────────────────────────────────────────────────────────────

def test_created_event_creates_subscription(synchronizer, add_plan):
    add_plan()
    outcome = synchronizer.sync_subscription(
        _changed("trialing", at=_at(0), event_id="evt_1", period_end=_at(60 * 24 * 30))
    )

    assert outcome.applied
    sub = synchronizer.get_subscription("ws_1")
    assert sub.status == "trialing"
    assert sub.billing_type == "prepaid"
    assert sub.external_subscription_id == "sub_1"
    assert sub.current_period_end == _at(60 * 24 * 30)


def test_unknown_plan_on_creation(synchronizer):
    outcome = synchronizer.sync_subscription(_changed("active", at=_at(0), event_id="evt_1", plan_id="nope"))
    assert not outcome.applied
    assert outcome.reason == UNKNOWN_PLAN
    assert synchronizer.get_subscription("ws_1") is None


def test_creation_requires_workspace_id(synchronizer, add_plan):
    add_plan()
    outcome = synchronizer.sync_subscription(
        _changed("active", at=_at(0), event_id="evt_1", workspace_id=None)
    )
    assert outcome.reason == MISSING_IDENTIFIER


def test_update_falls_back_to_external_subscription_id(synchronizer, add_plan):
    add_plan()
    synchronizer.sync_subscription(_changed("trialing", at=_at(0), event_id="evt_1"))
    outcome = synchronizer.sync_subscription(
        _changed("active", at=_at(1), event_id="evt_2", workspace_id=None)
    )

    assert outcome.applied
    assert outcome.workspace_id == "ws_1"
    assert synchronizer.get_subscription("ws_1").status == "active"


# ── Lifecycle & ordering ──────────────────────────────────────────────────────

def test_lifecycle_and_stale_active_after_cancel(synchronizer, add_plan):
    add_plan()
    assert synchronizer.sync_subscription(_changed("trialing", at=_at(0), event_id="evt_1")).applied
    assert synchronizer.sync_subscription(_changed("active", at=_at(10), event_id="evt_2")).applied
    assert synchronizer.handle_invoice_failed(_invoice_failed(at=_at(20), event_id="evt_3")).applied
    assert synchronizer.get_subscription("ws_1").status == "past_due"
    assert synchronizer.cancel_subscription(_deleted(at=_at(30), event_id="evt_4")).applied

    stale = synchronizer.sync_subscription(_changed("active", at=_at(15), event_id="evt_5"))
    assert not stale.applied
    assert stale.reason == STALE_EVENT

    # Even a newer "active" for the same gateway subscription cannot revive it
    late = synchronizer.sync_subscription(_changed("active", at=_at(40), event_id="evt_6"))
    assert late.reason == INVALID_TRANSITION

    assert synchronizer.get_subscription("ws_1").status == "canceled"


def test_out_of_order_update_is_dropped(synchronizer, add_plan):
    add_plan()
    synchronizer.sync_subscription(_changed("active", at=_at(10), event_id="evt_2"))
    outcome = synchronizer.sync_subscription(_changed("trialing", at=_at(5), event_id="evt_1"))

    assert outcome.reason == STALE_EVENT
    assert synchronizer.get_subscription("ws_1").status == "active"


def test_resubscription_replaces_canceled_row(synchronizer, add_plan):
    add_plan()
    synchronizer.sync_subscription(_changed("active", at=_at(0), event_id="evt_1"))
    synchronizer.cancel_subscription(_deleted(at=_at(10), event_id="evt_2"))

    outcome = synchronizer.sync_subscription(
        _changed("active", at=_at(20), event_id="evt_3", sub_id="sub_2")
    )
    assert outcome.applied
    sub = synchronizer.get_subscription("ws_1")
    assert sub.status == "active"
    assert sub.external_subscription_id == "sub_2"

    # A late deletion of the old subscription does not cancel the new one
    old = synchronizer.cancel_subscription(_deleted(at=_at(30), event_id="evt_4", sub_id="sub_1"))
    assert not old.applied
    assert synchronizer.get_subscription("ws_1").status == "active"


def test_late_cancel_update_for_old_subscription_keeps_new_one(synchronizer, add_plan, orchestrator):
    add_plan()
    synchronizer.sync_subscription(_changed("active", at=_at(0), event_id="evt_1"))
    synchronizer.sync_subscription(_changed("active", at=_at(10), event_id="evt_2", sub_id="sub_2"))

    outcome = synchronizer.sync_subscription(_changed("canceled", at=_at(11), event_id="evt_3"))

    assert not outcome.applied
    assert outcome.reason == STALE_EVENT
    sub = synchronizer.get_subscription("ws_1")
    assert (sub.external_subscription_id, sub.status) == ("sub_2", "active")
    assert orchestrator.process_call_completion("conv_1", "ws_1", None, 60, "vapi", "call_1").success


def test_duplicate_event_id_is_noop(synchronizer, add_plan, session_factory):
    add_plan()
    event = _changed("active", at=_at(0), event_id="evt_1")
    assert synchronizer.sync_subscription(event).applied

    again = synchronizer.sync_subscription(event)
    assert not again.applied
    assert again.reason == DUPLICATE_EVENT

    db = session_factory()
    try:
        assert db.query(ProcessedGatewayEvent).filter(ProcessedGatewayEvent.event_id == "evt_1").count() == 1
    finally:
        db.close()


def test_cancel_unknown_subscription(synchronizer):
    outcome = synchronizer.cancel_subscription(_deleted(at=_at(0), event_id="evt_1", workspace_id=None))
    assert outcome.reason == NOT_FOUND


# ── Plan changes ──────────────────────────────────────────────────────────────

def test_billing_type_change_is_refused(synchronizer, add_plan):
    add_plan()
    add_plan("plan_metered", billing_type="postpaid", included_minutes=0, rate_cents=12)
    synchronizer.sync_subscription(_changed("active", at=_at(0), event_id="evt_1"))

    outcome = synchronizer.sync_subscription(
        _changed("active", at=_at(10), event_id="evt_2", plan_id="plan_metered")
    )
    assert outcome.reason == BILLING_TYPE_CHANGE
    sub = synchronizer.get_subscription("ws_1")
    assert sub.plan_id == "plan_starter"
    assert sub.billing_type == "prepaid"


def test_same_billing_type_plan_change(synchronizer, add_plan):
    add_plan()
    add_plan("plan_pro", included_minutes=500, rate_cents=8)
    synchronizer.sync_subscription(_changed("active", at=_at(0), event_id="evt_1"))

    outcome = synchronizer.sync_subscription(_changed("active", at=_at(10), event_id="evt_2", plan_id="plan_pro"))
    assert outcome.applied
    assert synchronizer.get_subscription("ws_1").plan_id == "plan_pro"


# ── Invoices ──────────────────────────────────────────────────────────────────

def test_invoice_paid_resets_prepaid_period(synchronizer, add_plan, add_subscription):
    add_plan()
    add_subscription(status="past_due", minutes_used_this_period=120, overage_charges_cents=200)

    new_end = datetime.now(timezone.utc) + timedelta(days=60)
    outcome = synchronizer.handle_invoice_paid(
        _invoice_paid(at=_at(0), event_id="evt_1", period_start=_at(0), period_end=new_end)
    )

    assert outcome.applied
    sub = synchronizer.get_subscription("ws_1")
    assert sub.status == "active"
    assert sub.minutes_used_this_period == 0
    assert sub.overage_charges_cents == 0
    assert sub.current_period_end == new_end


def test_redelivered_invoice_does_not_reset_twice(synchronizer, add_plan, add_subscription, orchestrator):
    add_plan()
    add_subscription(minutes_used_this_period=50)
    event = _invoice_paid(at=_at(0), event_id="evt_1")
    synchronizer.handle_invoice_paid(event)

    orchestrator.process_call_completion("conv_1", "ws_1", None, 300, "vapi", "call_1")
    assert synchronizer.handle_invoice_paid(event).reason == DUPLICATE_EVENT
    assert synchronizer.get_subscription("ws_1").minutes_used_this_period == 5


def test_invoice_paid_on_postpaid_plan_resets_postpaid_counters(synchronizer, add_plan, add_subscription):
    add_plan("plan_metered", billing_type="postpaid", included_minutes=0, rate_cents=12)
    add_subscription(plan_id="plan_metered", billing_type="postpaid",
                     postpaid_minutes_used=40, pending_invoice_amount_cents=480)

    synchronizer.handle_invoice_paid(_invoice_paid(at=_at(0), event_id="evt_1"))

    sub = synchronizer.get_subscription("ws_1")
    assert sub.postpaid_minutes_used == 0
    assert sub.pending_invoice_amount_cents == 0


def test_postpaid_usage_invoice_resets_only_postpaid(synchronizer, add_plan, add_subscription):
    add_plan("plan_metered", billing_type="postpaid", included_minutes=0, rate_cents=12)
    add_subscription(plan_id="plan_metered", billing_type="postpaid", minutes_used_this_period=40,
                     postpaid_minutes_used=40, pending_invoice_amount_cents=480)

    outcome = synchronizer.handle_invoice_paid(_invoice_paid(
        at=_at(0), event_id="evt_1", sub_id=None, postpaid_usage=True, postpaid_subscription_id="sub_1",
    ))

    assert outcome.applied
    sub = synchronizer.get_subscription("ws_1")
    assert sub.postpaid_minutes_used == 0
    assert sub.pending_invoice_amount_cents == 0
    assert sub.minutes_used_this_period == 40


def test_postpaid_usage_invoice_matched_by_workspace_only(synchronizer, add_plan, add_subscription):
    add_plan("plan_metered", billing_type="postpaid", included_minutes=0, rate_cents=10)
    add_subscription(plan_id="plan_metered", billing_type="postpaid",
                     postpaid_minutes_used=40, pending_invoice_amount_cents=400)

    # Connect-account invoice: internal row id in metadata, no gateway subscription
    outcome = synchronizer.handle_invoice_paid(_invoice_paid(
        at=_at(0), event_id="evt_1", sub_id=None, postpaid_usage=True,
        postpaid_subscription_id="1", workspace_id="ws_1",
    ))

    assert outcome.applied
    sub = synchronizer.get_subscription("ws_1")
    assert sub.postpaid_minutes_used == 0
    assert sub.pending_invoice_amount_cents == 0


def test_postpaid_usage_invoice_without_any_identifier(synchronizer):
    outcome = synchronizer.handle_invoice_paid(_invoice_paid(
        at=_at(0), event_id="evt_1", sub_id=None, postpaid_usage=True,
    ))
    assert outcome.reason == MISSING_IDENTIFIER


def test_invoice_without_subscription_is_skipped(synchronizer):
    outcome = synchronizer.handle_invoice_paid(_invoice_paid(at=_at(0), event_id="evt_1", sub_id=None))
    assert outcome.reason == MISSING_IDENTIFIER


def test_invoice_failed_marks_past_due(synchronizer, add_plan, add_subscription):
    add_plan()
    add_subscription()
    outcome = synchronizer.handle_invoice_failed(_invoice_failed(at=_at(0), event_id="evt_1"))

    assert outcome.applied
    assert synchronizer.get_subscription("ws_1").status == "past_due"


def test_invoice_failed_for_unknown_subscription(synchronizer):
    outcome = synchronizer.handle_invoice_failed(_invoice_failed(at=_at(0), event_id="evt_1", sub_id="sub_x"))
    assert outcome.reason == NOT_FOUND


# ── Postpaid period reset ─────────────────────────────────────────────────────

def test_postpaid_reset_is_idempotent(synchronizer, add_plan, add_subscription):
    add_plan("plan_metered", billing_type="postpaid", included_minutes=0, rate_cents=12)
    add_subscription(plan_id="plan_metered", billing_type="postpaid",
                     postpaid_minutes_used=40, pending_invoice_amount_cents=480)

    first = synchronizer.reset_postpaid_period("sub_1")
    assert (first.previous_usage, first.previous_charges_cents) == (40, 480)

    second = synchronizer.reset_postpaid_period("sub_1")
    assert (second.previous_usage, second.previous_charges_cents) == (0, 0)

    sub = synchronizer.get_subscription("ws_1")
    assert sub.postpaid_minutes_used == 0
    assert sub.pending_invoice_amount_cents == 0


def test_postpaid_reset_sets_new_period(synchronizer, add_plan, add_subscription, settings):
    add_plan("plan_metered", billing_type="postpaid", included_minutes=0, rate_cents=12)
    add_subscription(plan_id="plan_metered", billing_type="postpaid",
                     postpaid_minutes_used=1, pending_invoice_amount_cents=12)

    synchronizer.reset_postpaid_period("sub_1", period_start=T0)
    sub = synchronizer.get_subscription("ws_1")
    assert sub.current_period_start == T0
    assert sub.current_period_end == T0 + timedelta(days=settings.postpaid_period_days)


def test_postpaid_reset_leaves_prepaid_subscription_alone(synchronizer, add_plan, add_subscription):
    add_plan()
    add_subscription(minutes_used_this_period=30, overage_charges_cents=0)

    result = synchronizer.reset_postpaid_period("sub_1")
    assert (result.previous_usage, result.previous_charges_cents) == (0, 0)
    assert synchronizer.get_subscription("ws_1").minutes_used_this_period == 30


def test_postpaid_reset_unknown_subscription(synchronizer):
    result = synchronizer.reset_postpaid_period("sub_missing")
    assert result.found is False
    assert result.previous_usage == 0


def test_postpaid_due_for_invoicing(synchronizer, add_plan, add_subscription):
    add_plan()
    add_plan("plan_metered", billing_type="postpaid", included_minutes=0, rate_cents=12)
    add_subscription("ws_due", plan_id="plan_metered", billing_type="postpaid",
                     external_subscription_id="sub_due", postpaid_minutes_used=10,
                     pending_invoice_amount_cents=120)
    add_subscription("ws_empty", plan_id="plan_metered", billing_type="postpaid",
                     external_subscription_id="sub_empty")
    add_subscription("ws_prepaid", external_subscription_id="sub_prepaid", overage_charges_cents=500)

    assert synchronizer.list_postpaid_due_for_invoicing() == []

    due = synchronizer.list_postpaid_due_for_invoicing(now=datetime.now(timezone.utc) + timedelta(days=31))
    assert [d.workspace_id for d in due] == ["ws_due"]
    assert due[0].pending_invoice_amount_cents == 120
