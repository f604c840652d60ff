"""Payment-gateway event dispatch.

Routes parsed gateway events to the subscription synchronizer and the
workspace and partner credit ledgers. Returns a short outcome string for
logging; only ``StoreUnavailable`` escapes so the HTTP layer can ask the
gateway to redeliver.
"""

from __future__ import annotations

from typing import Optional

import structlog

from app.billing.credits import CreditLedger
from app.billing.events import (
    GatewayEvent,
    InvoicePaid,
    InvoicePaymentFailed,
    PaymentSucceeded,
    SubscriptionChanged,
    SubscriptionDeleted,
)
from app.billing.partners import PartnerLedger
from app.billing.subscriptions import SubscriptionSynchronizer
from app.core.instrumentation import GATEWAY_EVENTS

logger = structlog.get_logger()


class WebhookDispatcher:
    def __init__(
        self,
        synchronizer: Optional[SubscriptionSynchronizer] = None,
        ledger: Optional[CreditLedger] = None,
        partners: Optional[PartnerLedger] = None,
    ) -> None:
        self.synchronizer = synchronizer or SubscriptionSynchronizer()
        self.ledger = ledger or CreditLedger()
        self.partners = partners or PartnerLedger()

    def dispatch(self, event: GatewayEvent) -> str:
        if isinstance(event, SubscriptionChanged):
            outcome = self._sync_outcome(self.synchronizer.sync_subscription(event))
        elif isinstance(event, SubscriptionDeleted):
            outcome = self._sync_outcome(self.synchronizer.cancel_subscription(event))
        elif isinstance(event, InvoicePaid):
            outcome = self._sync_outcome(self.synchronizer.handle_invoice_paid(event))
        elif isinstance(event, InvoicePaymentFailed):
            outcome = self._sync_outcome(self.synchronizer.handle_invoice_failed(event))
        elif isinstance(event, PaymentSucceeded):
            outcome = self._payment_succeeded(event)
        else:
            outcome = "ignored"

        GATEWAY_EVENTS.labels(event_type=event.event_type or "unknown", outcome=outcome).inc()
        logger.info("billing.webhook.dispatched", event_id=event.event_id,
                    event_type=event.event_type, outcome=outcome)
        return outcome

    @staticmethod
    def _sync_outcome(result) -> str:
        return "applied" if result.applied else (result.reason or "skipped")

    def _payment_succeeded(self, event: PaymentSucceeded) -> str:
        if not (event.is_workspace_topup or event.is_partner_topup):
            return "ignored"
        if not event.amount_cents or event.amount_cents <= 0:
            logger.warning("billing.topup.invalid_amount", payment_id=event.payment_id,
                           workspace_id=event.workspace_id, partner_id=event.partner_id,
                           amount_cents=event.amount_cents)
            return "invalid_amount"
        if event.is_workspace_topup:
            result = self.ledger.apply_topup(event.workspace_id, event.amount_cents, event.payment_id)
        else:
            result = self.partners.apply_topup(event.partner_id, event.amount_cents, event.payment_id)
        return "already_applied" if result.already_applied else "applied"
