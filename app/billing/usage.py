"""Usage Calculator.

Pure mapping from (plan terms, current counters, call duration) to the charge
for one call. No I/O: the orchestrator applies the result transactionally.

Prepaid plans consume included minutes first and draw overage from the
credit balance. Postpaid plans never block; every minute accrues to the
pending invoice.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace

from app.billing.plans import POSTPAID, PlanTerms


@dataclass(frozen=True)
class UsageCounters:
    minutes_used_this_period: int = 0
    overage_charges_cents: int = 0
    postpaid_minutes_used: int = 0
    pending_invoice_amount_cents: int = 0

    @classmethod
    def from_subscription(cls, sub) -> "UsageCounters":
        return cls(
            minutes_used_this_period=sub.minutes_used_this_period or 0,
            overage_charges_cents=sub.overage_charges_cents or 0,
            postpaid_minutes_used=sub.postpaid_minutes_used or 0,
            pending_invoice_amount_cents=sub.pending_invoice_amount_cents or 0,
        )


@dataclass(frozen=True)
class ChargeResult:
    minutes_added: int
    free_minutes: int
    overage_minutes: int
    overage_cents: int            # full charge for the call
    amount_deducted_cents: int    # drawn from the credit balance now
    deficit_cents: int            # charge the balance could not cover
    blocked: bool
    new_counters: UsageCounters


def minutes_for_duration(duration_seconds: float) -> int:
    """Whole minutes billed for a call: partial minutes round up, 0s bills 0."""
    if not duration_seconds or duration_seconds <= 0:
        return 0
    return math.ceil(duration_seconds / 60)


def drawable_cents(balance_cents: int, floor_cents: int = 0, overdraft_limit_cents: int = 0) -> int:
    """How much can be deducted before the balance would cross floor - overdraft."""
    return max(0, balance_cents - (floor_cents - overdraft_limit_cents))


def compute_charge(
    plan: PlanTerms,
    counters: UsageCounters,
    duration_seconds: float,
    *,
    balance_cents: int = 0,
    floor_cents: int = 0,
    overdraft_limit_cents: int = 0,
) -> ChargeResult:
    minutes = minutes_for_duration(duration_seconds)
    rate = plan.overage_rate_per_minute_cents

    if plan.billing_type == POSTPAID:
        charge = minutes * rate
        return ChargeResult(
            minutes_added=minutes,
            free_minutes=0,
            overage_minutes=minutes,
            overage_cents=charge,
            amount_deducted_cents=0,
            deficit_cents=0,
            blocked=False,
            new_counters=replace(
                counters,
                postpaid_minutes_used=counters.postpaid_minutes_used + minutes,
                pending_invoice_amount_cents=counters.pending_invoice_amount_cents + charge,
            ),
        )

    free_remaining = max(0, plan.included_minutes - counters.minutes_used_this_period)
    free = min(minutes, free_remaining)
    overage_minutes = minutes - free
    overage_cents = overage_minutes * rate

    deducted = min(overage_cents, drawable_cents(balance_cents, floor_cents, overdraft_limit_cents))
    deficit = overage_cents - deducted

    # The counter tracks true cumulative usage; overage comes from the delta.
    return ChargeResult(
        minutes_added=minutes,
        free_minutes=free,
        overage_minutes=overage_minutes,
        overage_cents=overage_cents,
        amount_deducted_cents=deducted,
        deficit_cents=deficit,
        blocked=deficit > 0,
        new_counters=replace(
            counters,
            minutes_used_this_period=counters.minutes_used_this_period + minutes,
            overage_charges_cents=counters.overage_charges_cents + overage_cents,
        ),
    )


@dataclass(frozen=True)
class PartnerCharge:
    minutes_added: int
    charge_cents: int
    amount_deducted_cents: int
    deficit_cents: int

    @property
    def blocked(self) -> bool:
        return self.deficit_cents > 0


def compute_partner_charge(
    duration_seconds: float,
    per_minute_rate_cents: int,
    *,
    balance_cents: int = 0,
    floor_cents: int = 0,
    overdraft_limit_cents: int = 0,
) -> PartnerCharge:
    """Charge for a billing-exempt workspace's call, paid from the partner balance.

    No included minutes: every billed minute costs the partner's per-minute rate.
    """
    minutes = minutes_for_duration(duration_seconds)
    charge = minutes * max(0, per_minute_rate_cents)
    deducted = min(charge, drawable_cents(balance_cents, floor_cents, overdraft_limit_cents))
    return PartnerCharge(
        minutes_added=minutes,
        charge_cents=charge,
        amount_deducted_cents=deducted,
        deficit_cents=charge - deducted,
    )
