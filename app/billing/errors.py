"""Billing error taxonomy.

Only infrastructure failures are exceptions. Expected outcomes (duplicates,
rejections, stale events) are reported through result objects carrying one of
the reason constants below.
"""

from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy.exc import DBAPIError, OperationalError, TimeoutError as PoolTimeoutError

# ── Outcome reasons ──────────────────────────────────────────────────────────

# Idempotent no-ops
ALREADY_PROCESSED = "already_processed"
ALREADY_APPLIED = "already_applied"
DUPLICATE_EVENT = "duplicate_event"

# Domain rejections
NO_SUBSCRIPTION = "no_subscription"
UNKNOWN_PLAN = "unknown_plan"
INSUFFICIENT_BALANCE = "insufficient_balance"
BILLING_TYPE_CHANGE = "billing_type_change"
INVALID_TRANSITION = "invalid_transition"
MISSING_IDENTIFIER = "missing_identifier"
NOT_FOUND = "not_found"
POSTPAID_LIMIT_REACHED = "postpaid_limit_reached"

# Out-of-order delivery
STALE_EVENT = "stale_event"


class BillingError(Exception):
    """Base class for billing engine errors."""


class StoreUnavailable(BillingError):
    """The ledger store failed or could not serialize the mutation. Retry upstream."""


@contextmanager
def store_guard(operation: str):
    """Translate driver/pool failures into StoreUnavailable."""
    try:
        yield
    except (OperationalError, PoolTimeoutError) as exc:
        raise StoreUnavailable(f"{operation}: {exc}") from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise StoreUnavailable(f"{operation}: connection lost") from exc
        raise
