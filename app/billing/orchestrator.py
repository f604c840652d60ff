"""Billing Orchestrator.

Entry point invoked after a call ends. Produces exactly one billing outcome per
``(workspace_id, external_call_id)``:

    1. already billed?          → already_processed
    1b. billing-exempt?         → charge the partner's credits instead
    2. subscription + plan      → no_subscription / unknown_plan
    3. compute charge, then ONE transaction:
         counters (version CAS) + credit deduction + ledger row
         + deficit + billed-call marker
    4. BillingOutcome

A redelivered call webhook hits the marker in step 1, or the unique
constraint in step 3 when two deliveries race. Counter writes lost to a
concurrent update are recomputed from fresh state.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from app.billing.credits import (
    CreditLedger,
    current_balance,
    deduct_in_session,
    is_billing_exempt,
    record_deficit_in_session,
)
from app.billing.errors import (
    ALREADY_PROCESSED,
    INSUFFICIENT_BALANCE,
    MISSING_IDENTIFIER,
    NOT_FOUND,
    NO_SUBSCRIPTION,
    POSTPAID_LIMIT_REACHED,
    UNKNOWN_PLAN,
    StoreUnavailable,
    store_guard,
)
from app.billing.partners import (
    PartnerLedger,
    deduct_partner_in_session,
    partner_account,
    record_partner_deficit_in_session,
)
from app.billing.plans import POSTPAID, get_plan
from app.billing.subscriptions import BILLABLE_STATUSES
from app.billing.usage import UsageCounters, compute_charge, compute_partner_charge, drawable_cents
from app.core.db import SessionLocal, supports_row_locks
from app.core.instrumentation import CALLS_BILLED, MINUTES_BILLED
from app.core.models import BilledCall, WorkspaceSubscription
from config.settings import Settings, get_settings

logger = structlog.get_logger()

# BilledCall.billing_type for usage paid from partner credits
PARTNER_BILLING = "partner"


@dataclass(frozen=True)
class BillingOutcome:
    success: bool
    already_processed: bool = False
    minutes_added: int = 0
    amount_deducted_cents: int = 0
    overage_minutes: int = 0
    deficit_cents: int = 0
    blocked: bool = False
    new_balance_cents: Optional[int] = None
    billing_type: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class CallAllowance:
    allowed: bool
    billing_type: Optional[str] = None
    remaining_minutes: Optional[int] = None  # None = no limit
    reason: Optional[str] = None


class _BalanceMoved(Exception):
    """The balance changed between the charge computation and the deduction."""


class BillingOrchestrator:
    def __init__(
        self,
        session_factory=None,
        settings: Optional[Settings] = None,
        ledger: Optional[CreditLedger] = None,
        partners: Optional[PartnerLedger] = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._settings = settings or get_settings()
        self._ledger = ledger or CreditLedger(self._session_factory, self._settings)
        self._partners = partners or PartnerLedger(self._session_factory, self._settings)

    def process_call_completion(
        self,
        conversation_id: Optional[str],
        workspace_id: str,
        partner_id: Optional[str],
        duration_seconds: float,
        provider: Optional[str],
        external_call_id: str,
    ) -> BillingOutcome:
        if not workspace_id or not external_call_id:
            raise ValueError("workspace_id and external_call_id are required")

        # Balance row lives outside the billing transaction (lazy creation commits separately)
        self._ledger.ensure_account(workspace_id)
        if partner_id and self._ledger.is_billing_exempt(workspace_id):
            self._partners.ensure_account(partner_id)

        attempts = max(1, self._settings.billing_max_retries)
        for attempt in range(1, attempts + 1):
            with store_guard("process_call_completion"):
                db = self._session_factory()
                try:
                    outcome = self._bill(
                        db,
                        conversation_id=conversation_id,
                        workspace_id=workspace_id,
                        partner_id=partner_id,
                        duration_seconds=duration_seconds,
                        provider=provider,
                        external_call_id=external_call_id,
                    )
                except (StaleDataError, _BalanceMoved):
                    db.rollback()
                    logger.info("billing.call.version_conflict", workspace_id=workspace_id,
                                call_id=external_call_id, attempt=attempt)
                    continue
                except IntegrityError:
                    db.rollback()
                    logger.info("billing.call.already_processed", workspace_id=workspace_id,
                                call_id=external_call_id, race=True)
                    CALLS_BILLED.labels(billing_type="unknown", outcome=ALREADY_PROCESSED).inc()
                    return BillingOutcome(success=True, already_processed=True, reason=ALREADY_PROCESSED)
                finally:
                    db.close()

            if outcome.success and not outcome.already_processed and outcome.new_balance_cents is not None:
                if outcome.billing_type == PARTNER_BILLING:
                    self._partners.check_low_balance(partner_id, outcome.new_balance_cents)
                else:
                    self._ledger.check_low_balance(workspace_id, outcome.new_balance_cents)
            return outcome

        logger.error("billing.call.retries_exhausted", workspace_id=workspace_id,
                     call_id=external_call_id, attempts=attempts)
        raise StoreUnavailable(f"process_call_completion: could not serialize billing for {external_call_id}")

    def _bill(
        self,
        db,
        *,
        conversation_id: Optional[str],
        workspace_id: str,
        partner_id: Optional[str],
        duration_seconds: float,
        provider: Optional[str],
        external_call_id: str,
    ) -> BillingOutcome:
        # 1. Idempotency
        billed = db.query(BilledCall).filter(
            BilledCall.workspace_id == workspace_id,
            BilledCall.external_call_id == external_call_id,
        ).first()
        if billed:
            logger.info("billing.call.already_processed", workspace_id=workspace_id,
                        call_id=external_call_id)
            CALLS_BILLED.labels(billing_type=billed.billing_type, outcome=ALREADY_PROCESSED).inc()
            return BillingOutcome(
                success=True,
                already_processed=True,
                minutes_added=billed.minutes_billed,
                amount_deducted_cents=billed.amount_deducted_cents,
                overage_minutes=billed.overage_minutes,
                deficit_cents=billed.deficit_cents,
                blocked=billed.deficit_cents > 0,
                billing_type=billed.billing_type,
                reason=ALREADY_PROCESSED,
            )

        if is_billing_exempt(db, workspace_id):
            return self._bill_partner(
                db,
                conversation_id=conversation_id,
                workspace_id=workspace_id,
                partner_id=partner_id,
                duration_seconds=duration_seconds,
                provider=provider,
                external_call_id=external_call_id,
            )

        # 2. Subscription + plan
        query = db.query(WorkspaceSubscription).filter(WorkspaceSubscription.workspace_id == workspace_id)
        if supports_row_locks(db):
            query = query.with_for_update()
        sub = query.first()
        if sub is None or sub.status not in BILLABLE_STATUSES:
            logger.warning("billing.call.no_subscription", workspace_id=workspace_id,
                           call_id=external_call_id, status=sub.status if sub else None)
            CALLS_BILLED.labels(billing_type="none", outcome=NO_SUBSCRIPTION).inc()
            return BillingOutcome(success=False, reason=NO_SUBSCRIPTION)

        plan = get_plan(db, sub.plan_id)
        if plan is None:
            logger.warning("billing.call.unknown_plan", workspace_id=workspace_id, plan_id=sub.plan_id)
            CALLS_BILLED.labels(billing_type=sub.billing_type, outcome=UNKNOWN_PLAN).inc()
            return BillingOutcome(success=False, billing_type=sub.billing_type, reason=UNKNOWN_PLAN)
        if plan.billing_type != sub.billing_type:
            # The subscription's billing type is fixed at creation; catalog edits do not move it
            logger.warning("billing.call.plan_billing_type_mismatch", workspace_id=workspace_id,
                           plan_id=plan.plan_id, plan_billing_type=plan.billing_type,
                           subscription_billing_type=sub.billing_type)
            plan = replace(plan, billing_type=sub.billing_type)

        # 3. Charge
        floor = self._settings.credit_floor_cents
        overdraft = self._settings.overdraft_limit_cents
        balance = current_balance(db, workspace_id)
        charge = compute_charge(
            plan,
            UsageCounters.from_subscription(sub),
            duration_seconds,
            balance_cents=balance,
            floor_cents=floor,
            overdraft_limit_cents=overdraft,
        )

        counters = charge.new_counters
        sub.minutes_used_this_period = counters.minutes_used_this_period
        sub.overage_charges_cents = counters.overage_charges_cents
        sub.postpaid_minutes_used = counters.postpaid_minutes_used
        sub.pending_invoice_amount_cents = counters.pending_invoice_amount_cents
        db.flush()  # version CAS; raises StaleDataError on conflict

        new_balance = balance
        if charge.amount_deducted_cents > 0:
            deduction = deduct_in_session(
                db,
                workspace_id,
                charge.amount_deducted_cents,
                floor_cents=floor,
                allow_overdraft_cents=overdraft,
                conversation_id=conversation_id,
                description=f"Call {external_call_id}: {charge.overage_minutes} overage min",
            )
            if not deduction.success:
                raise _BalanceMoved()
            new_balance = deduction.new_balance_cents
        record_deficit_in_session(db, workspace_id, charge.deficit_cents)

        db.add(BilledCall(
            workspace_id=workspace_id,
            external_call_id=external_call_id,
            conversation_id=conversation_id,
            partner_id=partner_id,
            provider=provider,
            billing_type=plan.billing_type,
            duration_seconds=max(0, int(duration_seconds or 0)),
            minutes_billed=charge.minutes_added,
            overage_minutes=charge.overage_minutes,
            amount_deducted_cents=charge.amount_deducted_cents,
            deficit_cents=charge.deficit_cents,
        ))
        db.commit()

        # 4. Outcome
        outcome_label = "blocked" if charge.blocked else "billed"
        CALLS_BILLED.labels(billing_type=plan.billing_type, outcome=outcome_label).inc()
        MINUTES_BILLED.observe(charge.minutes_added)
        if charge.blocked:
            logger.warning("billing.call.blocked", workspace_id=workspace_id, call_id=external_call_id,
                           deficit_cents=charge.deficit_cents, balance_cents=new_balance)
        logger.info("billing.call.billed", workspace_id=workspace_id, call_id=external_call_id,
                    provider=provider, billing_type=plan.billing_type, minutes=charge.minutes_added,
                    free_minutes=charge.free_minutes, overage_minutes=charge.overage_minutes,
                    amount_deducted_cents=charge.amount_deducted_cents)

        return BillingOutcome(
            success=True,
            minutes_added=charge.minutes_added,
            amount_deducted_cents=charge.amount_deducted_cents,
            overage_minutes=charge.overage_minutes,
            deficit_cents=charge.deficit_cents,
            blocked=charge.blocked,
            new_balance_cents=new_balance if plan.billing_type != POSTPAID else None,
            billing_type=plan.billing_type,
            reason=INSUFFICIENT_BALANCE if charge.blocked else None,
        )

    def _bill_partner(
        self,
        db,
        *,
        conversation_id: Optional[str],
        workspace_id: str,
        partner_id: Optional[str],
        duration_seconds: float,
        provider: Optional[str],
        external_call_id: str,
    ) -> BillingOutcome:
        """Billing-exempt workspace: the partner pays at its own per-minute rate."""
        if not partner_id:
            logger.warning("billing.call.exempt_without_partner", workspace_id=workspace_id,
                           call_id=external_call_id)
            CALLS_BILLED.labels(billing_type=PARTNER_BILLING, outcome=MISSING_IDENTIFIER).inc()
            return BillingOutcome(success=False, billing_type=PARTNER_BILLING, reason=MISSING_IDENTIFIER)

        account = partner_account(db, partner_id)
        if account is None:
            logger.warning("billing.call.partner_not_found", workspace_id=workspace_id,
                           partner_id=partner_id, call_id=external_call_id)
            CALLS_BILLED.labels(billing_type=PARTNER_BILLING, outcome=NOT_FOUND).inc()
            return BillingOutcome(success=False, billing_type=PARTNER_BILLING, reason=NOT_FOUND)

        floor = self._settings.credit_floor_cents
        overdraft = self._settings.overdraft_limit_cents
        charge = compute_partner_charge(
            duration_seconds,
            account.per_minute_rate_cents,
            balance_cents=account.balance_cents,
            floor_cents=floor,
            overdraft_limit_cents=overdraft,
        )

        new_balance = account.balance_cents
        if charge.amount_deducted_cents > 0:
            deduction = deduct_partner_in_session(
                db,
                partner_id,
                charge.amount_deducted_cents,
                floor_cents=floor,
                allow_overdraft_cents=overdraft,
                workspace_id=workspace_id,
                conversation_id=conversation_id,
                description=f"Call {external_call_id} from workspace {workspace_id} (exempt)",
            )
            if not deduction.success:
                raise _BalanceMoved()
            new_balance = deduction.new_balance_cents
        record_partner_deficit_in_session(db, partner_id, charge.deficit_cents)

        db.add(BilledCall(
            workspace_id=workspace_id,
            external_call_id=external_call_id,
            conversation_id=conversation_id,
            partner_id=partner_id,
            provider=provider,
            billing_type=PARTNER_BILLING,
            duration_seconds=max(0, int(duration_seconds or 0)),
            minutes_billed=charge.minutes_added,
            overage_minutes=0,
            amount_deducted_cents=charge.amount_deducted_cents,
            deficit_cents=charge.deficit_cents,
        ))
        db.commit()

        CALLS_BILLED.labels(billing_type=PARTNER_BILLING,
                            outcome="blocked" if charge.blocked else "billed").inc()
        MINUTES_BILLED.observe(charge.minutes_added)
        if charge.blocked:
            logger.warning("billing.call.blocked", workspace_id=workspace_id, partner_id=partner_id,
                           call_id=external_call_id, deficit_cents=charge.deficit_cents,
                           balance_cents=new_balance)
        logger.info("billing.call.billed_to_partner", workspace_id=workspace_id, partner_id=partner_id,
                    call_id=external_call_id, provider=provider, minutes=charge.minutes_added,
                    amount_deducted_cents=charge.amount_deducted_cents)

        return BillingOutcome(
            success=True,
            minutes_added=charge.minutes_added,
            amount_deducted_cents=charge.amount_deducted_cents,
            deficit_cents=charge.deficit_cents,
            blocked=charge.blocked,
            new_balance_cents=new_balance,
            billing_type=PARTNER_BILLING,
            reason=INSUFFICIENT_BALANCE if charge.blocked else None,
        )

    def check_call_allowance(
        self,
        workspace_id: str,
        estimated_minutes: int = 1,
        partner_id: Optional[str] = None,
    ) -> CallAllowance:
        """Advisory preflight before a call starts. Billing itself never refuses a finished call."""
        with store_guard("check_call_allowance"):
            db = self._session_factory()
            try:
                if is_billing_exempt(db, workspace_id):
                    return self._partner_allowance(db, partner_id, estimated_minutes)

                sub = db.query(WorkspaceSubscription).filter(
                    WorkspaceSubscription.workspace_id == workspace_id
                ).first()
                if sub is None or sub.status not in BILLABLE_STATUSES:
                    return CallAllowance(allowed=False, reason=NO_SUBSCRIPTION)
                plan = get_plan(db, sub.plan_id)
                if plan is None:
                    return CallAllowance(allowed=False, billing_type=sub.billing_type, reason=UNKNOWN_PLAN)

                if sub.billing_type == POSTPAID:
                    if plan.postpaid_minutes_limit is None:
                        return CallAllowance(allowed=True, billing_type=POSTPAID)
                    remaining = max(0, plan.postpaid_minutes_limit - sub.postpaid_minutes_used)
                    if remaining < estimated_minutes:
                        return CallAllowance(allowed=False, billing_type=POSTPAID, remaining_minutes=remaining,
                                             reason=POSTPAID_LIMIT_REACHED)
                    return CallAllowance(allowed=True, billing_type=POSTPAID, remaining_minutes=remaining)

                free_remaining = max(0, plan.included_minutes - sub.minutes_used_this_period)
                if plan.overage_rate_per_minute_cents <= 0:
                    return CallAllowance(allowed=True, billing_type=sub.billing_type)
                available = drawable_cents(
                    current_balance(db, workspace_id),
                    self._settings.credit_floor_cents,
                    self._settings.overdraft_limit_cents,
                )
                remaining = free_remaining + available // plan.overage_rate_per_minute_cents
                if remaining < estimated_minutes:
                    return CallAllowance(allowed=False, billing_type=sub.billing_type,
                                         remaining_minutes=remaining, reason=INSUFFICIENT_BALANCE)
                return CallAllowance(allowed=True, billing_type=sub.billing_type, remaining_minutes=remaining)
            finally:
                db.close()

    @staticmethod
    def _partner_allowance(db, partner_id: Optional[str], estimated_minutes: int) -> CallAllowance:
        if not partner_id:
            return CallAllowance(allowed=False, billing_type=PARTNER_BILLING, reason=MISSING_IDENTIFIER)
        account = partner_account(db, partner_id)
        if account is None:
            return CallAllowance(allowed=False, billing_type=PARTNER_BILLING, remaining_minutes=0,
                                 reason=INSUFFICIENT_BALANCE)
        if account.per_minute_rate_cents <= 0:
            return CallAllowance(allowed=True, billing_type=PARTNER_BILLING)
        remaining = max(0, account.balance_cents) // account.per_minute_rate_cents
        if remaining < estimated_minutes:
            return CallAllowance(allowed=False, billing_type=PARTNER_BILLING, remaining_minutes=remaining,
                                 reason=INSUFFICIENT_BALANCE)
        return CallAllowance(allowed=True, billing_type=PARTNER_BILLING, remaining_minutes=remaining)


def process_call_completion(
    conversation_id: Optional[str],
    workspace_id: str,
    partner_id: Optional[str],
    duration_seconds: float,
    provider: Optional[str],
    external_call_id: str,
) -> BillingOutcome:
    """Module-level entry point used by the call-provider webhook handler."""
    return BillingOrchestrator().process_call_completion(
        conversation_id, workspace_id, partner_id, duration_seconds, provider, external_call_id
    )
