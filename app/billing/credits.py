"""Credit Ledger Service.

Workspace credit balances are a materialized column backed by an append-only
ledger (``workspace_credit_transactions``). Every balance change writes one
ledger row in the same transaction, so the balance always equals the sum of
the ledger deltas.

Concurrency:
    - Top-ups are idempotent on ``external_payment_id``. The unique constraint
      on the ledger is the guard: concurrent duplicate deliveries race on the
      insert and the loser reports ``already_applied``.
    - Deductions are a single conditional UPDATE (compare-and-set on the
      balance), so two calls ending at the same instant cannot both spend
      the same cents.

Usage:
    ledger = CreditLedger()
    ledger.apply_topup("ws_123", 5000, "pi_abc")   # TopupResult(already_applied=False, ...)
    ledger.deduct("ws_123", 250)                  # DeductionResult(success=True, ...)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from app.billing.errors import ALREADY_APPLIED, INSUFFICIENT_BALANCE, store_guard
from app.billing.usage import drawable_cents
from app.core.db import SessionLocal
from app.core.instrumentation import CREDIT_TOPUPS
from app.core.models import CreditTransaction, WorkspaceCredits
from config.settings import Settings, get_settings

logger = structlog.get_logger()

FREE_TIER_GRANT_PREFIX = "free_tier_grant"


@dataclass(frozen=True)
class TopupResult:
    already_applied: bool
    new_balance_cents: int

    @property
    def success(self) -> bool:
        return True


@dataclass(frozen=True)
class DeductionResult:
    success: bool
    new_balance_cents: int
    shortfall_cents: int = 0
    reason: Optional[str] = None


@dataclass(frozen=True)
class CreditsInfo:
    balance_cents: int
    low_balance_threshold_cents: int
    is_low_balance: bool
    estimated_minutes_remaining: int
    deficit_cents: int
    billing_exempt: bool = False


@dataclass(frozen=True)
class LedgerEntry:
    id: int
    kind: str
    amount_cents: int
    balance_after_cents: int
    description: Optional[str]
    external_payment_id: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class BalanceAudit:
    balance_cents: int
    ledger_sum_cents: int

    @property
    def consistent(self) -> bool:
        return self.balance_cents == self.ledger_sum_cents


# ── Session-level helpers (shared with the orchestrator) ──────────────────────

def current_balance(db, workspace_id: str) -> int:
    value = db.query(WorkspaceCredits.balance_cents).filter(
        WorkspaceCredits.workspace_id == workspace_id
    ).scalar()
    return value or 0


def is_billing_exempt(db, workspace_id: str) -> bool:
    value = db.query(WorkspaceCredits.billing_exempt).filter(
        WorkspaceCredits.workspace_id == workspace_id
    ).scalar()
    return bool(value)


def deduct_in_session(
    db,
    workspace_id: str,
    amount_cents: int,
    *,
    floor_cents: int = 0,
    allow_overdraft_cents: int = 0,
    kind: str = "usage",
    conversation_id: Optional[str] = None,
    description: Optional[str] = None,
) -> DeductionResult:
    """Conditionally deduct inside the caller's transaction. Caller commits or rolls back."""
    limit = floor_cents - allow_overdraft_cents
    res = db.execute(
        update(WorkspaceCredits)
        .where(
            WorkspaceCredits.workspace_id == workspace_id,
            WorkspaceCredits.balance_cents - amount_cents >= limit,
        )
        .values(balance_cents=WorkspaceCredits.balance_cents - amount_cents)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        balance = current_balance(db, workspace_id)
        available = drawable_cents(balance, floor_cents, allow_overdraft_cents)
        return DeductionResult(
            success=False,
            new_balance_cents=balance,
            shortfall_cents=amount_cents - available,
            reason=INSUFFICIENT_BALANCE,
        )

    balance = current_balance(db, workspace_id)
    db.add(CreditTransaction(
        workspace_id=workspace_id,
        kind=kind,
        amount_cents=-amount_cents,
        balance_after_cents=balance,
        conversation_id=conversation_id,
        description=description or f"Usage charge: ${amount_cents / 100:.2f}",
    ))
    return DeductionResult(success=True, new_balance_cents=balance)


def record_deficit_in_session(db, workspace_id: str, deficit_cents: int) -> None:
    """Track overage that could not be drawn from the balance. Not a ledger delta."""
    if deficit_cents <= 0:
        return
    db.execute(
        update(WorkspaceCredits)
        .where(WorkspaceCredits.workspace_id == workspace_id)
        .values(deficit_cents=WorkspaceCredits.deficit_cents + deficit_cents)
        .execution_options(synchronize_session=False)
    )


# ── Service ──────────────────────────────────────────────────────────────────

class CreditLedger:
    """Applies top-ups and deductions to workspace credit balances."""

    def __init__(self, session_factory=None, settings: Optional[Settings] = None) -> None:
        self._session_factory = session_factory or SessionLocal
        self._settings = settings or get_settings()

    # ── Accounts ─────────────────────────────────────────────────────────────

    def ensure_account(self, workspace_id: str) -> None:
        """Create the balance row if absent. Safe under concurrent first use."""
        with store_guard("ensure_account"):
            db = self._session_factory()
            try:
                exists = db.query(WorkspaceCredits.id).filter(
                    WorkspaceCredits.workspace_id == workspace_id
                ).first()
                if exists:
                    return
                db.add(WorkspaceCredits(
                    workspace_id=workspace_id,
                    balance_cents=0,
                    low_balance_threshold_cents=self._settings.low_balance_threshold_cents,
                ))
                db.commit()
                logger.info("billing.credits.account_created", workspace_id=workspace_id)
            except IntegrityError:
                # Another request created it first
                db.rollback()
            finally:
                db.close()

    def set_billing_exempt(self, workspace_id: str, exempt: bool) -> None:
        """Route the workspace's call usage to its partner's credits (or back)."""
        self.ensure_account(workspace_id)
        with store_guard("set_billing_exempt"):
            db = self._session_factory()
            try:
                db.execute(
                    update(WorkspaceCredits)
                    .where(WorkspaceCredits.workspace_id == workspace_id)
                    .values(billing_exempt=exempt)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
            finally:
                db.close()
        logger.info("billing.credits.billing_exempt_set", workspace_id=workspace_id, exempt=exempt)

    def is_billing_exempt(self, workspace_id: str) -> bool:
        with store_guard("is_billing_exempt"):
            db = self._session_factory()
            try:
                return is_billing_exempt(db, workspace_id)
            finally:
                db.close()

    # ── Top-ups ──────────────────────────────────────────────────────────────

    def apply_topup(
        self,
        workspace_id: str,
        amount_cents: int,
        external_payment_id: str,
        *,
        kind: str = "topup",
        description: Optional[str] = None,
    ) -> TopupResult:
        """Credit ``amount_cents`` exactly once per ``external_payment_id``."""
        if amount_cents <= 0:
            raise ValueError(f"Top-up amount must be positive, got {amount_cents}")
        if not external_payment_id:
            raise ValueError("external_payment_id is required for top-ups")

        self.ensure_account(workspace_id)

        with store_guard("apply_topup"):
            db = self._session_factory()
            try:
                existing = db.query(CreditTransaction.id).filter(
                    CreditTransaction.external_payment_id == external_payment_id
                ).first()
                if existing:
                    return self._already_applied(db, workspace_id, external_payment_id)

                db.execute(
                    update(WorkspaceCredits)
                    .where(WorkspaceCredits.workspace_id == workspace_id)
                    .values(balance_cents=WorkspaceCredits.balance_cents + amount_cents)
                    .execution_options(synchronize_session=False)
                )
                balance = current_balance(db, workspace_id)
                db.add(CreditTransaction(
                    workspace_id=workspace_id,
                    kind=kind,
                    amount_cents=amount_cents,
                    balance_after_cents=balance,
                    external_payment_id=external_payment_id,
                    description=description or f"Credit top-up: ${amount_cents / 100:.2f}",
                ))
                db.commit()
            except IntegrityError:
                # Lost the race against a concurrent delivery of the same payment
                db.rollback()
                return self._already_applied(db, workspace_id, external_payment_id)
            finally:
                db.close()

        CREDIT_TOPUPS.labels(outcome="applied").inc()
        logger.info("billing.topup.applied", workspace_id=workspace_id,
                    amount_cents=amount_cents, payment_id=external_payment_id,
                    balance_cents=balance)
        return TopupResult(already_applied=False, new_balance_cents=balance)

    def _already_applied(self, db, workspace_id: str, external_payment_id: str) -> TopupResult:
        CREDIT_TOPUPS.labels(outcome=ALREADY_APPLIED).inc()
        logger.info("billing.topup.already_applied", workspace_id=workspace_id,
                    payment_id=external_payment_id)
        return TopupResult(already_applied=True, new_balance_cents=current_balance(db, workspace_id))

    def grant_free_tier_credits(self, workspace_id: str, amount_cents: Optional[int] = None) -> TopupResult:
        """One-time free tier grant, idempotent per workspace."""
        amount = amount_cents if amount_cents is not None else self._settings.free_tier_credits_cents
        return self.apply_topup(
            workspace_id,
            amount,
            f"{FREE_TIER_GRANT_PREFIX}:{workspace_id}",
            kind="grant",
            description=f"Free tier credits: ${amount / 100:.2f}",
        )

    # ── Deductions ───────────────────────────────────────────────────────────

    def deduct(
        self,
        workspace_id: str,
        amount_cents: int,
        *,
        allow_overdraft_cents: int = 0,
        conversation_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> DeductionResult:
        """Deduct without crossing the configured floor.

        ``allow_overdraft_cents`` is the explicit override path for going below
        the floor. Insufficient balance is a result, not an exception.
        """
        if amount_cents < 0:
            raise ValueError(f"Deduction amount must not be negative, got {amount_cents}")

        self.ensure_account(workspace_id)

        with store_guard("deduct"):
            db = self._session_factory()
            try:
                if amount_cents == 0:
                    return DeductionResult(success=True, new_balance_cents=current_balance(db, workspace_id))
                result = deduct_in_session(
                    db,
                    workspace_id,
                    amount_cents,
                    floor_cents=self._settings.credit_floor_cents,
                    allow_overdraft_cents=allow_overdraft_cents,
                    conversation_id=conversation_id,
                    description=description,
                )
                if result.success:
                    db.commit()
                else:
                    db.rollback()
            finally:
                db.close()

        if not result.success:
            logger.warning("billing.credits.insufficient_balance", workspace_id=workspace_id,
                           amount_cents=amount_cents, balance_cents=result.new_balance_cents)
        else:
            self.check_low_balance(workspace_id, result.new_balance_cents)
        return result

    def check_low_balance(self, workspace_id: str, balance_cents: int) -> None:
        if balance_cents < self._settings.low_balance_threshold_cents:
            logger.warning("billing.credits.low_balance", workspace_id=workspace_id,
                           balance_cents=balance_cents,
                           threshold_cents=self._settings.low_balance_threshold_cents)

    # ── Reads ────────────────────────────────────────────────────────────────

    def get_balance(self, workspace_id: str) -> int:
        with store_guard("get_balance"):
            db = self._session_factory()
            try:
                return current_balance(db, workspace_id)
            finally:
                db.close()

    def get_credits_info(self, workspace_id: str, per_minute_rate_cents: int = 0) -> CreditsInfo:
        self.ensure_account(workspace_id)
        with store_guard("get_credits_info"):
            db = self._session_factory()
            try:
                row = db.query(WorkspaceCredits).filter(
                    WorkspaceCredits.workspace_id == workspace_id
                ).one()
                balance = row.balance_cents
                estimated = balance // per_minute_rate_cents if per_minute_rate_cents > 0 and balance > 0 else 0
                return CreditsInfo(
                    balance_cents=balance,
                    low_balance_threshold_cents=row.low_balance_threshold_cents,
                    is_low_balance=balance < row.low_balance_threshold_cents,
                    estimated_minutes_remaining=estimated,
                    deficit_cents=row.deficit_cents,
                    billing_exempt=bool(row.billing_exempt),
                )
            finally:
                db.close()

    def list_transactions(self, workspace_id: str, limit: int = 20) -> list[LedgerEntry]:
        """Most recent ledger entries first."""
        with store_guard("list_transactions"):
            db = self._session_factory()
            try:
                rows = (
                    db.query(CreditTransaction)
                    .filter(CreditTransaction.workspace_id == workspace_id)
                    .order_by(CreditTransaction.id.desc())
                    .limit(limit)
                    .all()
                )
                return [
                    LedgerEntry(
                        id=r.id,
                        kind=r.kind,
                        amount_cents=r.amount_cents,
                        balance_after_cents=r.balance_after_cents,
                        description=r.description,
                        external_payment_id=r.external_payment_id,
                        created_at=r.created_at,
                    )
                    for r in rows
                ]
            finally:
                db.close()

    def audit_balance(self, workspace_id: str) -> BalanceAudit:
        """Compare the materialized balance against the ledger sum."""
        with store_guard("audit_balance"):
            db = self._session_factory()
            try:
                ledger_sum = db.query(func.coalesce(func.sum(CreditTransaction.amount_cents), 0)).filter(
                    CreditTransaction.workspace_id == workspace_id
                ).scalar()
                audit = BalanceAudit(
                    balance_cents=current_balance(db, workspace_id),
                    ledger_sum_cents=int(ledger_sum or 0),
                )
            finally:
                db.close()
        if not audit.consistent:
            logger.error("billing.credits.ledger_drift", workspace_id=workspace_id,
                         balance_cents=audit.balance_cents, ledger_sum_cents=audit.ledger_sum_cents)
        return audit


def apply_workspace_topup(workspace_id: str, amount_cents: int, external_payment_id: str) -> TopupResult:
    """Module-level entry point used by the payment-intent webhook handler."""
    return CreditLedger().apply_topup(workspace_id, amount_cents, external_payment_id)
