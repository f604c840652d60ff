"""Plan catalog lookups.

Plans are owned by the partner admin surface; the billing engine only reads
them. Lookups always hit the database so that price edits apply to the next
call without a restart.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

PREPAID = "prepaid"
POSTPAID = "postpaid"
BILLING_TYPES = (PREPAID, POSTPAID)


@dataclass(frozen=True)
class PlanTerms:
    """The subset of a plan the usage calculator needs."""

    plan_id: str
    billing_type: str
    included_minutes: int
    overage_rate_per_minute_cents: int
    postpaid_minutes_limit: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "PlanTerms":
        return cls(
            plan_id=row.id,
            billing_type=row.billing_type,
            included_minutes=row.included_minutes or 0,
            overage_rate_per_minute_cents=row.overage_rate_per_minute_cents or 0,
            postpaid_minutes_limit=row.postpaid_minutes_limit,
        )


def get_plan(db, plan_id: Optional[str]) -> Optional[PlanTerms]:
    """Return the plan terms for ``plan_id`` or None if the id is unknown."""
    from app.core.models import BillingPlan

    if not plan_id:
        return None
    row = db.query(BillingPlan).filter(BillingPlan.id == plan_id).first()
    if not row:
        return None
    if row.billing_type not in BILLING_TYPES:
        raise ValueError(f"Plan {plan_id} has invalid billing_type {row.billing_type!r}")
    return PlanTerms.from_row(row)
