"""Partner Credit Ledger.

Billing-exempt workspaces do not pay for their own calls: the owning partner
does, at the partner's per-minute rate, out of a prepaid partner balance.
Same shape as the workspace ledger (materialized balance + append-only
``partner_credit_transactions``, idempotent top-ups on
``external_payment_id``, compare-and-set deductions).

Usage:
    partners = PartnerLedger()
    partners.apply_topup("partner_1", 10000, "pi_abc")
    partners.get_balance("partner_1")   # 10000
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from app.billing.credits import BalanceAudit, DeductionResult, TopupResult
from app.billing.errors import ALREADY_APPLIED, INSUFFICIENT_BALANCE, store_guard
from app.billing.usage import drawable_cents
from app.core.db import SessionLocal
from app.core.instrumentation import CREDIT_TOPUPS
from app.core.models import PartnerCreditTransaction, PartnerCredits
from config.settings import Settings, get_settings

logger = structlog.get_logger()


@dataclass(frozen=True)
class PartnerAccount:
    partner_id: str
    balance_cents: int
    per_minute_rate_cents: int
    low_balance_threshold_cents: int
    deficit_cents: int


# ── Session-level helpers (shared with the orchestrator) ──────────────────────

def partner_balance(db, partner_id: str) -> int:
    value = db.query(PartnerCredits.balance_cents).filter(
        PartnerCredits.partner_id == partner_id
    ).scalar()
    return value or 0


def partner_account(db, partner_id: str) -> Optional[PartnerAccount]:
    row = db.query(PartnerCredits).filter(PartnerCredits.partner_id == partner_id).first()
    if row is None:
        return None
    return PartnerAccount(
        partner_id=row.partner_id,
        balance_cents=row.balance_cents,
        per_minute_rate_cents=row.per_minute_rate_cents,
        low_balance_threshold_cents=row.low_balance_threshold_cents,
        deficit_cents=row.deficit_cents,
    )


def deduct_partner_in_session(
    db,
    partner_id: str,
    amount_cents: int,
    *,
    floor_cents: int = 0,
    allow_overdraft_cents: int = 0,
    workspace_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    description: Optional[str] = None,
) -> DeductionResult:
    """Conditionally deduct inside the caller's transaction. Caller commits or rolls back."""
    limit = floor_cents - allow_overdraft_cents
    res = db.execute(
        update(PartnerCredits)
        .where(
            PartnerCredits.partner_id == partner_id,
            PartnerCredits.balance_cents - amount_cents >= limit,
        )
        .values(balance_cents=PartnerCredits.balance_cents - amount_cents)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        balance = partner_balance(db, partner_id)
        return DeductionResult(
            success=False,
            new_balance_cents=balance,
            shortfall_cents=amount_cents - drawable_cents(balance, floor_cents, allow_overdraft_cents),
            reason=INSUFFICIENT_BALANCE,
        )

    balance = partner_balance(db, partner_id)
    db.add(PartnerCreditTransaction(
        partner_id=partner_id,
        kind="usage",
        amount_cents=-amount_cents,
        balance_after_cents=balance,
        workspace_id=workspace_id,
        conversation_id=conversation_id,
        description=description or f"Usage from workspace {workspace_id} (exempt)",
    ))
    return DeductionResult(success=True, new_balance_cents=balance)


def record_partner_deficit_in_session(db, partner_id: str, deficit_cents: int) -> None:
    if deficit_cents <= 0:
        return
    db.execute(
        update(PartnerCredits)
        .where(PartnerCredits.partner_id == partner_id)
        .values(deficit_cents=PartnerCredits.deficit_cents + deficit_cents)
        .execution_options(synchronize_session=False)
    )


# ── Service ──────────────────────────────────────────────────────────────────

class PartnerLedger:
    """Top-ups and reads for partner credit balances."""

    def __init__(self, session_factory=None, settings: Optional[Settings] = None) -> None:
        self._session_factory = session_factory or SessionLocal
        self._settings = settings or get_settings()

    def ensure_account(self, partner_id: str) -> None:
        """Create the partner balance row if absent. Safe under concurrent first use."""
        with store_guard("ensure_partner_account"):
            db = self._session_factory()
            try:
                exists = db.query(PartnerCredits.id).filter(PartnerCredits.partner_id == partner_id).first()
                if exists:
                    return
                db.add(PartnerCredits(
                    partner_id=partner_id,
                    balance_cents=0,
                    per_minute_rate_cents=self._settings.partner_per_minute_rate_cents,
                    low_balance_threshold_cents=self._settings.partner_low_balance_threshold_cents,
                ))
                db.commit()
                logger.info("billing.partner.account_created", partner_id=partner_id)
            except IntegrityError:
                db.rollback()
            finally:
                db.close()

    def apply_topup(self, partner_id: str, amount_cents: int, external_payment_id: str) -> TopupResult:
        """Credit ``amount_cents`` exactly once per ``external_payment_id``."""
        if amount_cents <= 0:
            raise ValueError(f"Top-up amount must be positive, got {amount_cents}")
        if not external_payment_id:
            raise ValueError("external_payment_id is required for top-ups")

        self.ensure_account(partner_id)

        with store_guard("apply_partner_topup"):
            db = self._session_factory()
            try:
                existing = db.query(PartnerCreditTransaction.id).filter(
                    PartnerCreditTransaction.external_payment_id == external_payment_id
                ).first()
                if existing:
                    return self._already_applied(db, partner_id, external_payment_id)

                db.execute(
                    update(PartnerCredits)
                    .where(PartnerCredits.partner_id == partner_id)
                    .values(balance_cents=PartnerCredits.balance_cents + amount_cents)
                    .execution_options(synchronize_session=False)
                )
                balance = partner_balance(db, partner_id)
                db.add(PartnerCreditTransaction(
                    partner_id=partner_id,
                    kind="topup",
                    amount_cents=amount_cents,
                    balance_after_cents=balance,
                    external_payment_id=external_payment_id,
                    description=f"Credit top-up: ${amount_cents / 100:.2f}",
                ))
                db.commit()
            except IntegrityError:
                db.rollback()
                return self._already_applied(db, partner_id, external_payment_id)
            finally:
                db.close()

        CREDIT_TOPUPS.labels(outcome="applied").inc()
        logger.info("billing.partner.topup_applied", partner_id=partner_id,
                    amount_cents=amount_cents, payment_id=external_payment_id, balance_cents=balance)
        return TopupResult(already_applied=False, new_balance_cents=balance)

    @staticmethod
    def _already_applied(db, partner_id: str, external_payment_id: str) -> TopupResult:
        CREDIT_TOPUPS.labels(outcome=ALREADY_APPLIED).inc()
        logger.info("billing.partner.topup_already_applied", partner_id=partner_id,
                    payment_id=external_payment_id)
        return TopupResult(already_applied=True, new_balance_cents=partner_balance(db, partner_id))

    def check_low_balance(self, partner_id: str, balance_cents: int) -> None:
        if balance_cents < self._settings.partner_low_balance_threshold_cents:
            logger.warning("billing.partner.low_balance", partner_id=partner_id, balance_cents=balance_cents,
                           threshold_cents=self._settings.partner_low_balance_threshold_cents)

    def get_balance(self, partner_id: str) -> int:
        with store_guard("get_partner_balance"):
            db = self._session_factory()
            try:
                return partner_balance(db, partner_id)
            finally:
                db.close()

    def get_account(self, partner_id: str) -> Optional[PartnerAccount]:
        with store_guard("get_partner_account"):
            db = self._session_factory()
            try:
                return partner_account(db, partner_id)
            finally:
                db.close()

    def audit_balance(self, partner_id: str) -> BalanceAudit:
        with store_guard("audit_partner_balance"):
            db = self._session_factory()
            try:
                ledger_sum = db.query(func.coalesce(func.sum(PartnerCreditTransaction.amount_cents), 0)).filter(
                    PartnerCreditTransaction.partner_id == partner_id
                ).scalar()
                audit = BalanceAudit(
                    balance_cents=partner_balance(db, partner_id),
                    ledger_sum_cents=int(ledger_sum or 0),
                )
            finally:
                db.close()
        if not audit.consistent:
            logger.error("billing.partner.ledger_drift", partner_id=partner_id,
                         balance_cents=audit.balance_cents, ledger_sum_cents=audit.ledger_sum_cents)
        return audit
