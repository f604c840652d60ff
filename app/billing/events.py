"""Payment-gateway events as a tagged union.

Raw Stripe-shaped payloads (``id``, ``type``, ``created``, ``data.object``)
are parsed into one of a few known event kinds with explicit fields. Anything
else, or a known kind with a malformed body, becomes ``UnknownEvent`` and is
ignored downstream.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

import structlog
from pydantic import BaseModel, Field, ValidationError

logger = structlog.get_logger()

TOPUP_METADATA_TYPE = "workspace_credits_topup"
PARTNER_TOPUP_METADATA_TYPE = "credits_topup"
POSTPAID_METADATA_TYPE = "postpaid_usage"


class _Event(BaseModel):
    event_id: str
    event_type: str
    created: datetime


class SubscriptionChanged(_Event):
    kind: Literal["subscription_changed"] = "subscription_changed"
    external_subscription_id: str
    external_customer_id: Optional[str] = None
    external_status: str
    workspace_id: Optional[str] = None
    plan_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None


class SubscriptionDeleted(_Event):
    kind: Literal["subscription_deleted"] = "subscription_deleted"
    external_subscription_id: str
    workspace_id: Optional[str] = None


class InvoicePaid(_Event):
    kind: Literal["invoice_paid"] = "invoice_paid"
    invoice_id: str
    external_subscription_id: Optional[str] = None
    postpaid_usage: bool = False
    postpaid_subscription_id: Optional[str] = None  # metadata.subscription_id on usage invoices
    workspace_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    amount_paid_cents: int = 0


class InvoicePaymentFailed(_Event):
    kind: Literal["invoice_payment_failed"] = "invoice_payment_failed"
    invoice_id: str
    external_subscription_id: Optional[str] = None


class PaymentSucceeded(_Event):
    kind: Literal["payment_succeeded"] = "payment_succeeded"
    payment_id: str
    workspace_id: Optional[str] = None
    partner_id: Optional[str] = None
    metadata_type: Optional[str] = None
    amount_cents: Optional[int] = None

    @property
    def is_workspace_topup(self) -> bool:
        return self.metadata_type == TOPUP_METADATA_TYPE and bool(self.workspace_id)

    @property
    def is_partner_topup(self) -> bool:
        return self.metadata_type == PARTNER_TOPUP_METADATA_TYPE and bool(self.partner_id)


class UnknownEvent(_Event):
    kind: Literal["unknown"] = "unknown"


GatewayEvent = Annotated[
    Union[
        SubscriptionChanged,
        SubscriptionDeleted,
        InvoicePaid,
        InvoicePaymentFailed,
        PaymentSucceeded,
        UnknownEvent,
    ],
    Field(discriminator="kind"),
]


# ── Parsing ──────────────────────────────────────────────────────────────────

def _ts(value: Any) -> Optional[datetime]:
    if value in (None, "", 0):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _ref(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _first_item(obj: dict) -> dict:
    items = (obj.get("items") or {}).get("data") or [{}]
    return items[0] or {}


def _parse_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _subscription_changed(base: dict, obj: dict) -> SubscriptionChanged:
    metadata = obj.get("metadata") or {}
    item = _first_item(obj)
    # Newer API versions moved the billing period onto subscription items.
    period_start = obj.get("current_period_start") or item.get("current_period_start")
    period_end = obj.get("current_period_end") or item.get("current_period_end")
    return SubscriptionChanged(
        **base,
        external_subscription_id=obj["id"],
        external_customer_id=_ref(obj.get("customer")),
        external_status=obj.get("status") or "incomplete",
        workspace_id=metadata.get("workspace_id"),
        plan_id=metadata.get("plan_id"),
        period_start=_ts(period_start),
        period_end=_ts(period_end),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        canceled_at=_ts(obj.get("canceled_at")),
        trial_start=_ts(obj.get("trial_start")),
        trial_end=_ts(obj.get("trial_end")),
    )


def _invoice_subscription_id(obj: dict) -> Optional[str]:
    sub = _ref(obj.get("subscription"))
    if sub:
        return sub
    details = ((obj.get("parent") or {}).get("subscription_details")) or {}
    return _ref(details.get("subscription"))


def _invoice_paid(base: dict, obj: dict) -> InvoicePaid:
    metadata = obj.get("metadata") or {}
    lines = (obj.get("lines") or {}).get("data") or [{}]
    period = (lines[0] or {}).get("period") or {}
    return InvoicePaid(
        **base,
        invoice_id=obj["id"],
        external_subscription_id=_invoice_subscription_id(obj),
        postpaid_usage=metadata.get("type") == POSTPAID_METADATA_TYPE,
        postpaid_subscription_id=metadata.get("subscription_id"),
        workspace_id=metadata.get("workspace_id"),
        period_start=_ts(period.get("start")),
        period_end=_ts(period.get("end")),
        amount_paid_cents=_parse_int(obj.get("amount_paid")) or 0,
    )


def _payment_succeeded(base: dict, obj: dict) -> PaymentSucceeded:
    metadata = obj.get("metadata") or {}
    return PaymentSucceeded(
        **base,
        payment_id=obj["id"],
        workspace_id=metadata.get("workspace_id"),
        partner_id=metadata.get("partner_id"),
        metadata_type=metadata.get("type"),
        amount_cents=_parse_int(metadata.get("amount_cents")),
    )


_PARSERS = {
    "customer.subscription.created": _subscription_changed,
    "customer.subscription.updated": _subscription_changed,
    "customer.subscription.deleted": lambda base, obj: SubscriptionDeleted(
        **base,
        external_subscription_id=obj["id"],
        workspace_id=(obj.get("metadata") or {}).get("workspace_id"),
    ),
    "invoice.payment_succeeded": _invoice_paid,
    "invoice.paid": _invoice_paid,
    "invoice.payment_failed": lambda base, obj: InvoicePaymentFailed(
        **base,
        invoice_id=obj["id"],
        external_subscription_id=_invoice_subscription_id(obj),
    ),
    "payment_intent.succeeded": _payment_succeeded,
}


def parse_gateway_event(payload: dict) -> GatewayEvent:
    """Parse a raw gateway event payload into a typed event."""
    event_type = payload.get("type") or ""
    base = {
        "event_id": payload.get("id") or "",
        "event_type": event_type,
        "created": _ts(payload.get("created")) or datetime.now(timezone.utc),
    }
    obj = (payload.get("data") or {}).get("object") or {}

    parser = _PARSERS.get(event_type)
    if parser is None:
        return UnknownEvent(**base)
    try:
        return parser(base, obj)
    except (KeyError, TypeError, ValueError, ValidationError) as exc:
        logger.warning("billing.event.malformed", event_type=event_type,
                       event_id=base["event_id"], error=str(exc))
        return UnknownEvent(**base)
