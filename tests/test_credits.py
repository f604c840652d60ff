"""Tests for the credit ledger: idempotent top-ups, guarded deductions, conservation."""

from unittest.mock import patch

import pytest
from sqlalchemy import false
from sqlalchemy.exc import OperationalError

from app.billing.credits import CreditLedger
from app.billing.errors import INSUFFICIENT_BALANCE, StoreUnavailable
from app.core.models import CreditTransaction


def test_topup_credits_balance(ledger):
    result = ledger.apply_topup("ws_1", 5000, "pi_1")

    assert result.success
    assert result.already_applied is False
    assert result.new_balance_cents == 5000
    assert ledger.get_balance("ws_1") == 5000


def test_duplicate_topup_applies_once(ledger):
    ledger.apply_topup("ws_1", 5000, "pi_1")
    second = ledger.apply_topup("ws_1", 5000, "pi_1")

    assert second.already_applied is True
    assert second.new_balance_cents == 5000
    assert ledger.get_balance("ws_1") == 5000
    assert len(ledger.list_transactions("ws_1")) == 1


def test_concurrent_duplicate_loses_on_unique_constraint(ledger, session_factory):
    """The pre-check misses a concurrent delivery; the unique index still rejects it."""
    ledger.apply_topup("ws_1", 5000, "pi_1")

    def _blind_session():
        db = session_factory()
        real_query = db.query

        def query(*entities, **kw):
            q = real_query(*entities, **kw)
            if entities and entities[0] is CreditTransaction.id:
                return q.filter(false())
            return q

        db.query = query
        return db

    racing = CreditLedger(_blind_session, ledger._settings)
    result = racing.apply_topup("ws_1", 5000, "pi_1")

    assert result.already_applied is True
    assert ledger.get_balance("ws_1") == 5000


def test_topup_rejects_invalid_input(ledger):
    with pytest.raises(ValueError):
        ledger.apply_topup("ws_1", 0, "pi_1")
    with pytest.raises(ValueError):
        ledger.apply_topup("ws_1", 100, "")


def test_deduct_within_balance(ledger):
    ledger.apply_topup("ws_1", 1000, "pi_1")
    result = ledger.deduct("ws_1", 250, conversation_id="conv_1")

    assert result.success
    assert result.new_balance_cents == 750
    entries = ledger.list_transactions("ws_1")
    assert entries[0].amount_cents == -250
    assert entries[0].balance_after_cents == 750


def test_deduct_never_crosses_floor(ledger):
    ledger.apply_topup("ws_1", 100, "pi_1")
    result = ledger.deduct("ws_1", 150)

    assert result.success is False
    assert result.reason == INSUFFICIENT_BALANCE
    assert result.shortfall_cents == 50
    assert ledger.get_balance("ws_1") == 100


def test_deduct_with_configured_floor(session_factory, settings):
    ledger = CreditLedger(session_factory, settings.model_copy(update={"credit_floor_cents": 200}))
    ledger.apply_topup("ws_1", 500, "pi_1")

    assert ledger.deduct("ws_1", 300).success
    assert ledger.deduct("ws_1", 1).success is False
    assert ledger.get_balance("ws_1") == 200


def test_explicit_overdraft_path(ledger):
    ledger.apply_topup("ws_1", 100, "pi_1")
    result = ledger.deduct("ws_1", 150, allow_overdraft_cents=100)

    assert result.success
    assert result.new_balance_cents == -50


def test_balance_equals_sum_of_ledger_deltas(ledger):
    ledger.apply_topup("ws_1", 1000, "pi_1")
    ledger.deduct("ws_1", 300)
    ledger.apply_topup("ws_1", 250, "pi_2")
    ledger.apply_topup("ws_1", 250, "pi_2")
    ledger.deduct("ws_1", 5000)  # refused
    ledger.deduct("ws_1", 450)

    audit = ledger.audit_balance("ws_1")
    assert audit.consistent
    assert audit.balance_cents == 500


def test_free_tier_grant_is_one_time(ledger, settings):
    first = ledger.grant_free_tier_credits("ws_1")
    second = ledger.grant_free_tier_credits("ws_1")

    assert first.new_balance_cents == settings.free_tier_credits_cents
    assert second.already_applied is True
    assert ledger.list_transactions("ws_1")[0].kind == "grant"


def test_credits_info(ledger):
    ledger.apply_topup("ws_1", 450, "pi_1")
    info = ledger.get_credits_info("ws_1", per_minute_rate_cents=10)

    assert info.balance_cents == 450
    assert info.is_low_balance is True
    assert info.estimated_minutes_remaining == 45
    assert info.deficit_cents == 0


def test_store_failure_raises_store_unavailable(session_factory, settings):
    def _locked(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    def _broken():
        db = session_factory()
        db.query = _locked
        return db

    ledger = CreditLedger(_broken, settings)
    with pytest.raises(StoreUnavailable):
        ledger.get_balance("ws_1")


def test_low_balance_is_logged(ledger):
    ledger.apply_topup("ws_1", 600, "pi_1")
    with patch("app.billing.credits.logger") as log:
        ledger.deduct("ws_1", 200)
    log.warning.assert_any_call("billing.credits.low_balance", workspace_id="ws_1",
                                balance_cents=400, threshold_cents=500)
