"""app/gateway/billing.py — Billing ingress.

Endpoints:
    POST /billing/webhook          → Stripe webhook receiver (raw body, HMAC signature)
    POST /billing/calls/completed  → Call-provider completion hook → orchestrator

Design:
    - No billing logic here; handlers map engine outcomes to HTTP status codes
    - StoreUnavailable → 503 so the sender redelivers (idempotency keys make that safe)
    - Any other webhook handler failure is logged and ACKed with 200,
      otherwise Stripe retries endlessly
"""

from __future__ import annotations

import json as _json
from dataclasses import asdict
from typing import Optional

import stripe
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from app.billing.errors import StoreUnavailable
from app.billing.events import parse_gateway_event
from app.billing.orchestrator import BillingOrchestrator
from app.billing.webhooks import WebhookDispatcher
from config.settings import Settings, get_settings

logger = structlog.get_logger()

router = APIRouter(prefix="/billing", tags=["billing"])


# ── Dependencies ───────────────────────────────────────────────────────────────

def get_dispatcher() -> WebhookDispatcher:
    return WebhookDispatcher()


def get_orchestrator() -> BillingOrchestrator:
    return BillingOrchestrator()


def _json_response(body: dict, status_code: int = 200) -> Response:
    return Response(content=_json.dumps(body), status_code=status_code, media_type="application/json")


# ── Stripe webhook ─────────────────────────────────────────────────────────────

@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
) -> Response:
    """Stripe Webhook Endpoint.

    - Validates the HMAC signature (whsec_...) against stripe_webhook_secret
    - Dispatches subscription, invoice and payment-intent events
    - 200 for everything except bad signatures (400) and store outages (503)
    """
    # Read raw body for signature verification
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    webhook_secret = (settings.stripe_webhook_secret or "").strip()
    if not webhook_secret:
        logger.warning("billing.webhook.received_without_secret")
        return Response(content="webhook_secret not configured", status_code=400)

    try:
        stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=webhook_secret)
    except ValueError:
        logger.warning("billing.webhook.invalid_payload")
        return Response(content="invalid payload", status_code=400)
    except stripe.SignatureVerificationError as exc:
        logger.warning("billing.webhook.signature_invalid", error=str(exc))
        return Response(content="invalid signature", status_code=400)

    event = parse_gateway_event(_json.loads(payload))
    logger.info("billing.webhook.received", event_type=event.event_type, event_id=event.event_id)

    try:
        outcome = await run_in_threadpool(dispatcher.dispatch, event)
    except StoreUnavailable as exc:
        logger.error("billing.webhook.store_unavailable", event_type=event.event_type,
                     event_id=event.event_id, error=str(exc))
        return Response(content="processing failed, will retry", status_code=503)
    except Exception as exc:
        # Non-200 here makes Stripe redeliver endlessly
        logger.error("billing.webhook.handler_failed", event_type=event.event_type,
                     event_id=event.event_id, error=str(exc))
        outcome = "failed"

    return _json_response({"received": True, "outcome": outcome})


# ── Call completion ────────────────────────────────────────────────────────────

class CallCompletedRequest(BaseModel):
    workspace_id: str = Field(min_length=1)
    external_call_id: str = Field(min_length=1)
    duration_seconds: float = 0
    conversation_id: Optional[str] = None
    partner_id: Optional[str] = None
    provider: Optional[str] = None


@router.post("/calls/completed")
async def call_completed(
    req: CallCompletedRequest,
    orchestrator: BillingOrchestrator = Depends(get_orchestrator),
) -> Response:
    try:
        outcome = await run_in_threadpool(
            orchestrator.process_call_completion,
            req.conversation_id,
            req.workspace_id,
            req.partner_id,
            req.duration_seconds,
            req.provider,
            req.external_call_id,
        )
    except StoreUnavailable as exc:
        logger.error("billing.call.store_unavailable", workspace_id=req.workspace_id,
                     call_id=req.external_call_id, error=str(exc))
        raise HTTPException(status_code=503, detail="processing failed, will retry")

    return _json_response(asdict(outcome))
