"""Subscription Synchronizer.

Consumes payment-gateway lifecycle events and keeps ``workspace_subscriptions``
in step with the gateway:

    customer.subscription.created/updated  → sync_subscription (upsert)
    customer.subscription.deleted          → cancel_subscription
    invoice.payment_succeeded              → handle_invoice_paid (period reset)
    invoice.payment_failed                 → handle_invoice_failed (past_due)

Delivery is at-least-once and unordered, so every handler:
    - records the gateway event id in the same transaction as its effect
      (a redelivered event is a no-op),
    - drops status changes older than the last applied event,
    - never leaves the terminal ``canceled`` state for the same gateway
      subscription,
    - writes through SQLAlchemy optimistic locking (``version`` column) and
      retries on a version conflict.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from app.billing.errors import (
    BILLING_TYPE_CHANGE,
    DUPLICATE_EVENT,
    INVALID_TRANSITION,
    MISSING_IDENTIFIER,
    NOT_FOUND,
    STALE_EVENT,
    UNKNOWN_PLAN,
    StoreUnavailable,
    store_guard,
)
from app.billing.events import InvoicePaid, InvoicePaymentFailed, SubscriptionChanged, SubscriptionDeleted
from app.billing.plans import POSTPAID, get_plan
from app.core.db import SessionLocal, supports_row_locks
from app.core.models import ProcessedGatewayEvent, WorkspaceSubscription
from config.settings import Settings, get_settings

logger = structlog.get_logger()

ACTIVE = "active"
PAST_DUE = "past_due"
CANCELED = "canceled"
INCOMPLETE = "incomplete"
TRIALING = "trialing"
PAUSED = "paused"

# Gateway status → internal status
STATUS_MAP = {
    "active": ACTIVE,
    "past_due": PAST_DUE,
    "canceled": CANCELED,
    "incomplete": INCOMPLETE,
    "incomplete_expired": CANCELED,
    "trialing": TRIALING,
    "unpaid": PAST_DUE,
    "paused": PAUSED,
}

ALLOWED_TRANSITIONS = {
    INCOMPLETE: {ACTIVE, PAST_DUE, CANCELED},
    TRIALING: {ACTIVE, CANCELED, PAST_DUE, PAUSED},
    ACTIVE: {PAST_DUE, CANCELED, PAUSED},
    PAST_DUE: {ACTIVE, CANCELED},
    PAUSED: {ACTIVE, CANCELED},
    CANCELED: set(),
}

BILLABLE_STATUSES = {ACTIVE, TRIALING}


def map_external_status(external_status: Optional[str]) -> str:
    return STATUS_MAP.get(external_status or "", INCOMPLETE)


def can_transition(current: str, new: str) -> bool:
    if current == new:
        return True
    return new in ALLOWED_TRANSITIONS.get(current, set())


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _later(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    a, b = _as_utc(a), _as_utc(b)
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


@dataclass(frozen=True)
class SyncOutcome:
    applied: bool
    reason: Optional[str] = None
    status: Optional[str] = None
    workspace_id: Optional[str] = None


@dataclass(frozen=True)
class PostpaidReset:
    previous_usage: int
    previous_charges_cents: int
    found: bool = True

    @property
    def applied(self) -> bool:
        return self.found


@dataclass(frozen=True)
class SubscriptionSnapshot:
    workspace_id: str
    plan_id: str
    billing_type: str
    status: str
    external_subscription_id: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    minutes_used_this_period: int
    overage_charges_cents: int
    postpaid_minutes_used: int
    pending_invoice_amount_cents: int
    version: int

    @classmethod
    def from_row(cls, sub: WorkspaceSubscription) -> "SubscriptionSnapshot":
        return cls(
            workspace_id=sub.workspace_id,
            plan_id=sub.plan_id,
            billing_type=sub.billing_type,
            status=sub.status,
            external_subscription_id=sub.external_subscription_id,
            current_period_start=_as_utc(sub.current_period_start),
            current_period_end=_as_utc(sub.current_period_end),
            minutes_used_this_period=sub.minutes_used_this_period,
            overage_charges_cents=sub.overage_charges_cents,
            postpaid_minutes_used=sub.postpaid_minutes_used,
            pending_invoice_amount_cents=sub.pending_invoice_amount_cents,
            version=sub.version,
        )


@dataclass(frozen=True)
class DueInvoice:
    workspace_id: str
    plan_id: str
    external_subscription_id: Optional[str]
    external_customer_id: Optional[str]
    postpaid_minutes_used: int
    pending_invoice_amount_cents: int
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]


class SubscriptionSynchronizer:
    """Applies payment-gateway lifecycle events to workspace subscriptions."""

    def __init__(self, session_factory=None, settings: Optional[Settings] = None) -> None:
        self._session_factory = session_factory or SessionLocal
        self._settings = settings or get_settings()

    # ── Transaction runner ───────────────────────────────────────────────────

    def _transact(self, operation: str, apply: Callable, event=None):
        """Run ``apply(db)`` in one transaction with event dedup and version-conflict retries.

        ``apply`` returns a result with an ``applied`` attribute; only applied
        results are committed and mark the event as processed.
        """
        event_id = getattr(event, "event_id", None)
        attempts = max(1, self._settings.billing_max_retries)
        for attempt in range(1, attempts + 1):
            with store_guard(operation):
                db = self._session_factory()
                try:
                    if event_id and self._seen(db, event_id):
                        logger.info("billing.subscription.duplicate_event",
                                    operation=operation, event_id=event_id)
                        return SyncOutcome(applied=False, reason=DUPLICATE_EVENT)

                    result = apply(db)
                    if not result.applied:
                        db.rollback()
                        return result

                    if event_id:
                        db.add(ProcessedGatewayEvent(event_id=event_id, event_type=event.event_type))
                    db.commit()
                    return result
                except StaleDataError:
                    db.rollback()
                    logger.info("billing.subscription.version_conflict",
                                operation=operation, attempt=attempt)
                except IntegrityError:
                    db.rollback()
                    if event_id and self._seen(db, event_id):
                        logger.info("billing.subscription.duplicate_event",
                                    operation=operation, event_id=event_id)
                        return SyncOutcome(applied=False, reason=DUPLICATE_EVENT)
                    # Concurrent first insert of the same workspace row; retry as update
                    logger.info("billing.subscription.insert_conflict",
                                operation=operation, attempt=attempt)
                finally:
                    db.close()
        logger.error("billing.subscription.retries_exhausted", operation=operation, attempts=attempts)
        raise StoreUnavailable(f"{operation}: could not serialize subscription update")

    @staticmethod
    def _seen(db, event_id: str) -> bool:
        return db.query(ProcessedGatewayEvent.id).filter(
            ProcessedGatewayEvent.event_id == event_id
        ).first() is not None

    @staticmethod
    def _query(db):
        q = db.query(WorkspaceSubscription)
        if supports_row_locks(db):
            q = q.with_for_update()
        return q

    def _find(self, db, workspace_id: Optional[str], external_subscription_id: Optional[str]):
        """Lookup by workspace first, then by gateway subscription id."""
        if workspace_id:
            sub = self._query(db).filter(WorkspaceSubscription.workspace_id == workspace_id).first()
            if sub:
                return sub
        if external_subscription_id:
            return self._query(db).filter(
                WorkspaceSubscription.external_subscription_id == external_subscription_id
            ).first()
        return None

    @staticmethod
    def _is_stale(sub: WorkspaceSubscription, event_created: datetime) -> bool:
        last = _as_utc(sub.last_event_at)
        return last is not None and _as_utc(event_created) < last

    # ── Subscription created / updated ───────────────────────────────────────

    def sync_subscription(self, event: SubscriptionChanged) -> SyncOutcome:
        """Upsert the workspace subscription from a created/updated event."""

        def apply(db) -> SyncOutcome:
            status = map_external_status(event.external_status)
            sub = self._find(db, event.workspace_id, event.external_subscription_id)

            if sub is None:
                return self._create(db, event, status)

            resubscribed = bool(
                sub.external_subscription_id
                and sub.external_subscription_id != event.external_subscription_id
            )
            if self._is_stale(sub, event.created):
                logger.warning("billing.subscription.stale_event",
                               workspace_id=sub.workspace_id, event_id=event.event_id,
                               current_status=sub.status, event_status=status)
                return SyncOutcome(applied=False, reason=STALE_EVENT, status=sub.status,
                                   workspace_id=sub.workspace_id)
            if resubscribed and status == CANCELED and sub.status != CANCELED:
                # Ending a gateway subscription the workspace has already moved off
                logger.warning("billing.subscription.superseded_event",
                               workspace_id=sub.workspace_id, event_id=event.event_id,
                               sub_id=event.external_subscription_id,
                               current_sub_id=sub.external_subscription_id)
                return SyncOutcome(applied=False, reason=STALE_EVENT, status=sub.status,
                                   workspace_id=sub.workspace_id)
            # A new gateway subscription starts its own lifecycle
            if not resubscribed and not can_transition(sub.status, status):
                logger.warning("billing.subscription.invalid_transition",
                               workspace_id=sub.workspace_id, event_id=event.event_id,
                               from_status=sub.status, to_status=status)
                return SyncOutcome(applied=False, reason=INVALID_TRANSITION, status=sub.status,
                                   workspace_id=sub.workspace_id)

            if event.plan_id and event.plan_id != sub.plan_id:
                plan = get_plan(db, event.plan_id)
                if plan is None:
                    logger.warning("billing.subscription.unknown_plan",
                                   workspace_id=sub.workspace_id, plan_id=event.plan_id)
                    return SyncOutcome(applied=False, reason=UNKNOWN_PLAN, workspace_id=sub.workspace_id)
                if plan.billing_type != sub.billing_type:
                    logger.warning("billing.subscription.billing_type_change_refused",
                                   workspace_id=sub.workspace_id, plan_id=event.plan_id,
                                   current=sub.billing_type, requested=plan.billing_type)
                    return SyncOutcome(applied=False, reason=BILLING_TYPE_CHANGE, workspace_id=sub.workspace_id)
                sub.plan_id = plan.plan_id

            previous = sub.status
            sub.status = status
            self._copy_gateway_fields(sub, event)
            sub.last_event_at = _later(sub.last_event_at, event.created)
            logger.info("billing.subscription.updated", workspace_id=sub.workspace_id,
                        sub_id=event.external_subscription_id, from_status=previous,
                        status=status, resubscribed=resubscribed)
            return SyncOutcome(applied=True, status=status, workspace_id=sub.workspace_id)

        return self._transact("sync_subscription", apply, event)

    def _create(self, db, event: SubscriptionChanged, status: str) -> SyncOutcome:
        if not event.workspace_id:
            logger.warning("billing.subscription.no_identifier",
                           sub_id=event.external_subscription_id, event_id=event.event_id)
            return SyncOutcome(applied=False, reason=MISSING_IDENTIFIER)

        plan = get_plan(db, event.plan_id)
        if plan is None:
            logger.warning("billing.subscription.unknown_plan",
                           workspace_id=event.workspace_id, plan_id=event.plan_id)
            return SyncOutcome(applied=False, reason=UNKNOWN_PLAN, workspace_id=event.workspace_id)

        sub = WorkspaceSubscription(
            workspace_id=event.workspace_id,
            plan_id=plan.plan_id,
            billing_type=plan.billing_type,
            status=status,
            minutes_used_this_period=0,
            overage_charges_cents=0,
            postpaid_minutes_used=0,
            pending_invoice_amount_cents=0,
            last_event_at=event.created,
        )
        self._copy_gateway_fields(sub, event)
        db.add(sub)
        db.flush()
        logger.info("billing.subscription.created", workspace_id=event.workspace_id,
                    sub_id=event.external_subscription_id, plan_id=plan.plan_id,
                    billing_type=plan.billing_type, status=status)
        return SyncOutcome(applied=True, status=status, workspace_id=event.workspace_id)

    @staticmethod
    def _copy_gateway_fields(sub: WorkspaceSubscription, event: SubscriptionChanged) -> None:
        sub.external_subscription_id = event.external_subscription_id
        if event.external_customer_id:
            sub.external_customer_id = event.external_customer_id
        if event.period_start:
            sub.current_period_start = event.period_start
        if event.period_end:
            sub.current_period_end = event.period_end
        sub.cancel_at_period_end = event.cancel_at_period_end
        sub.canceled_at = event.canceled_at
        sub.trial_start = event.trial_start
        sub.trial_end = event.trial_end

    # ── Subscription deleted ─────────────────────────────────────────────────

    def cancel_subscription(self, event: SubscriptionDeleted) -> SyncOutcome:
        """Force ``canceled``. The row is kept for history."""

        def apply(db) -> SyncOutcome:
            sub = self._find(db, event.workspace_id, event.external_subscription_id)
            if sub is None:
                logger.warning("billing.subscription.cancel_not_found",
                               sub_id=event.external_subscription_id, workspace_id=event.workspace_id)
                return SyncOutcome(applied=False, reason=NOT_FOUND)

            if sub.external_subscription_id and sub.external_subscription_id != event.external_subscription_id:
                # The workspace has since re-subscribed; this deletion is for the old one
                logger.warning("billing.subscription.cancel_superseded",
                               workspace_id=sub.workspace_id, sub_id=event.external_subscription_id,
                               current_sub_id=sub.external_subscription_id)
                return SyncOutcome(applied=False, reason=STALE_EVENT, status=sub.status,
                                   workspace_id=sub.workspace_id)

            if sub.status != CANCELED:
                sub.status = CANCELED
                sub.canceled_at = event.created
            sub.last_event_at = _later(sub.last_event_at, event.created)
            logger.info("billing.subscription.canceled", workspace_id=sub.workspace_id,
                        sub_id=event.external_subscription_id)
            return SyncOutcome(applied=True, status=CANCELED, workspace_id=sub.workspace_id)

        return self._transact("cancel_subscription", apply, event)

    # ── Invoices ─────────────────────────────────────────────────────────────

    def handle_invoice_paid(self, event: InvoicePaid) -> SyncOutcome:
        """Reset period counters after a paid invoice.

        Postpaid usage invoices (tagged ``type=postpaid_usage``) only reset the
        postpaid accumulators. Regular subscription invoices start a new
        period: prepaid counters (and postpaid ones on postpaid plans) go to
        zero and the subscription becomes ``active``.
        """
        if event.postpaid_usage:
            return self._handle_postpaid_invoice(event)

        def apply(db) -> SyncOutcome:
            if not event.external_subscription_id:
                logger.info("billing.invoice.not_subscription", invoice_id=event.invoice_id)
                return SyncOutcome(applied=False, reason=MISSING_IDENTIFIER)

            sub = self._find(db, None, event.external_subscription_id)
            if sub is None:
                logger.warning("billing.invoice.subscription_not_found",
                               invoice_id=event.invoice_id, sub_id=event.external_subscription_id)
                return SyncOutcome(applied=False, reason=NOT_FOUND)
            if sub.status == CANCELED:
                logger.warning("billing.invoice.paid_on_canceled", workspace_id=sub.workspace_id,
                               invoice_id=event.invoice_id)
                return SyncOutcome(applied=False, reason=INVALID_TRANSITION, status=sub.status,
                                   workspace_id=sub.workspace_id)

            logger.info("billing.invoice.period_reset", workspace_id=sub.workspace_id,
                        invoice_id=event.invoice_id,
                        previous_minutes=sub.minutes_used_this_period,
                        previous_overage_cents=sub.overage_charges_cents)
            sub.minutes_used_this_period = 0
            sub.overage_charges_cents = 0
            if sub.billing_type == POSTPAID:
                sub.postpaid_minutes_used = 0
                sub.pending_invoice_amount_cents = 0

            if not self._is_stale(sub, event.created):
                sub.status = ACTIVE
            current_end = _as_utc(sub.current_period_end)
            if event.period_end and (current_end is None or event.period_end >= current_end):
                sub.current_period_start = event.period_start or sub.current_period_start
                sub.current_period_end = event.period_end
            sub.last_event_at = _later(sub.last_event_at, event.created)
            return SyncOutcome(applied=True, status=sub.status, workspace_id=sub.workspace_id)

        return self._transact("handle_invoice_paid", apply, event)

    def _handle_postpaid_invoice(self, event: InvoicePaid) -> SyncOutcome:
        # metadata.subscription_id may be an internal id on Connect-account invoices
        external_id = event.postpaid_subscription_id or event.external_subscription_id
        if not event.workspace_id and not external_id:
            logger.warning("billing.invoice.postpaid_missing_subscription", invoice_id=event.invoice_id)
            return SyncOutcome(applied=False, reason=MISSING_IDENTIFIER)

        def apply(db) -> SyncOutcome:
            sub = self._find(db, event.workspace_id, external_id)
            if sub is None:
                logger.warning("billing.invoice.subscription_not_found", invoice_id=event.invoice_id,
                               workspace_id=event.workspace_id, sub_id=external_id)
                return SyncOutcome(applied=False, reason=NOT_FOUND)
            reset = self._reset_postpaid(db, sub)
            logger.info("billing.invoice.postpaid_paid", invoice_id=event.invoice_id,
                        workspace_id=sub.workspace_id, previous_usage=reset.previous_usage,
                        previous_charges_cents=reset.previous_charges_cents)
            return SyncOutcome(applied=True, status=sub.status, workspace_id=sub.workspace_id)

        return self._transact("handle_postpaid_invoice", apply, event)

    def handle_invoice_failed(self, event: InvoicePaymentFailed) -> SyncOutcome:
        """Mark ``past_due``. Matched by gateway subscription id only."""

        def apply(db) -> SyncOutcome:
            if not event.external_subscription_id:
                return SyncOutcome(applied=False, reason=MISSING_IDENTIFIER)
            sub = self._find(db, None, event.external_subscription_id)
            if sub is None:
                logger.warning("billing.invoice.subscription_not_found",
                               invoice_id=event.invoice_id, sub_id=event.external_subscription_id)
                return SyncOutcome(applied=False, reason=NOT_FOUND)
            if self._is_stale(sub, event.created):
                logger.warning("billing.subscription.stale_event", workspace_id=sub.workspace_id,
                               event_id=event.event_id, current_status=sub.status, event_status=PAST_DUE)
                return SyncOutcome(applied=False, reason=STALE_EVENT, status=sub.status,
                                   workspace_id=sub.workspace_id)
            if not can_transition(sub.status, PAST_DUE):
                logger.warning("billing.subscription.invalid_transition", workspace_id=sub.workspace_id,
                               from_status=sub.status, to_status=PAST_DUE)
                return SyncOutcome(applied=False, reason=INVALID_TRANSITION, status=sub.status,
                                   workspace_id=sub.workspace_id)
            sub.status = PAST_DUE
            sub.last_event_at = _later(sub.last_event_at, event.created)
            logger.info("billing.invoice.payment_failed", workspace_id=sub.workspace_id,
                        invoice_id=event.invoice_id)
            return SyncOutcome(applied=True, status=PAST_DUE, workspace_id=sub.workspace_id)

        return self._transact("handle_invoice_failed", apply, event)

    # ── Postpaid period reset ────────────────────────────────────────────────

    def reset_postpaid_period(
        self,
        external_subscription_id: str,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> PostpaidReset:
        """Zero the postpaid accumulators and return the pre-reset snapshot.

        Calling it again returns zeros and changes nothing.
        """

        def apply(db) -> PostpaidReset:
            sub = self._find(db, None, external_subscription_id)
            if sub is None:
                logger.warning("billing.postpaid.reset_not_found", sub_id=external_subscription_id)
                return PostpaidReset(previous_usage=0, previous_charges_cents=0, found=False)
            return self._reset_postpaid(db, sub, period_start, period_end)

        return self._transact("reset_postpaid_period", apply)

    def _reset_postpaid(
        self,
        db,
        sub: WorkspaceSubscription,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> PostpaidReset:
        if sub.billing_type != POSTPAID:
            logger.warning("billing.postpaid.reset_on_prepaid", workspace_id=sub.workspace_id)
            return PostpaidReset(previous_usage=0, previous_charges_cents=0)

        previous_usage = sub.postpaid_minutes_used or 0
        previous_charges = sub.pending_invoice_amount_cents or 0
        if previous_usage == 0 and previous_charges == 0 and period_start is None:
            return PostpaidReset(previous_usage=0, previous_charges_cents=0)

        start = period_start or datetime.now(timezone.utc)
        end = period_end or start + timedelta(days=self._settings.postpaid_period_days)
        sub.postpaid_minutes_used = 0
        sub.pending_invoice_amount_cents = 0
        sub.current_period_start = start
        sub.current_period_end = end
        db.flush()
        logger.info("billing.postpaid.period_reset", workspace_id=sub.workspace_id,
                    previous_usage=previous_usage, previous_charges_cents=previous_charges)
        return PostpaidReset(previous_usage=previous_usage, previous_charges_cents=previous_charges)

    # ── Reads ────────────────────────────────────────────────────────────────

    def get_subscription(self, workspace_id: str) -> Optional[SubscriptionSnapshot]:
        with store_guard("get_subscription"):
            db = self._session_factory()
            try:
                sub = db.query(WorkspaceSubscription).filter(
                    WorkspaceSubscription.workspace_id == workspace_id
                ).first()
                return SubscriptionSnapshot.from_row(sub) if sub else None
            finally:
                db.close()

    def list_postpaid_due_for_invoicing(self, now: Optional[datetime] = None) -> list[DueInvoice]:
        """Active postpaid subscriptions whose period ended with usage still to invoice."""
        now = now or datetime.now(timezone.utc)
        with store_guard("list_postpaid_due_for_invoicing"):
            db = self._session_factory()
            try:
                rows = (
                    db.query(WorkspaceSubscription)
                    .filter(
                        WorkspaceSubscription.status == ACTIVE,
                        WorkspaceSubscription.billing_type == POSTPAID,
                        WorkspaceSubscription.pending_invoice_amount_cents > 0,
                        WorkspaceSubscription.current_period_end <= now,
                    )
                    .order_by(WorkspaceSubscription.current_period_end)
                    .all()
                )
                return [
                    DueInvoice(
                        workspace_id=s.workspace_id,
                        plan_id=s.plan_id,
                        external_subscription_id=s.external_subscription_id,
                        external_customer_id=s.external_customer_id,
                        postpaid_minutes_used=s.postpaid_minutes_used,
                        pending_invoice_amount_cents=s.pending_invoice_amount_cents,
                        current_period_start=_as_utc(s.current_period_start),
                        current_period_end=_as_utc(s.current_period_end),
                    )
                    for s in rows
                ]
            finally:
                db.close()


def reset_postpaid_period(external_subscription_id: str) -> PostpaidReset:
    """Module-level entry point used by the invoice-payment-succeeded handler."""
    return SubscriptionSynchronizer().reset_postpaid_period(external_subscription_id)
