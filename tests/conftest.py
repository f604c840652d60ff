"""Voice Billing Engine – Pytest Configuration.

Shared fixtures for all tests. Every test gets its own SQLite file database
so that services can open as many sessions as they like.
"""

import os

# Force testing mode to allow SQLite fallback in app/core/db.py
os.environ["ENVIRONMENT"] = "testing"
if "DATABASE_URL" in os.environ:
    del os.environ["DATABASE_URL"]

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import sessionmaker

from app.billing.credits import CreditLedger
from app.billing.orchestrator import BillingOrchestrator
from app.billing.partners import PartnerLedger
from app.billing.subscriptions import SubscriptionSynchronizer
from app.billing.webhooks import WebhookDispatcher
from app.core.db import Base, make_engine
from app.core.models import BillingPlan, WorkspaceSubscription
from app.gateway import billing as billing_routes
from app.gateway.main import app
from config.settings import Settings, get_settings

WEBHOOK_SECRET = "whsec_test_secret_1234567890abcdef"


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def settings():
    return Settings(_env_file=None, environment="testing", stripe_webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def ledger(session_factory, settings):
    return CreditLedger(session_factory, settings)


@pytest.fixture
def partners(session_factory, settings):
    return PartnerLedger(session_factory, settings)


@pytest.fixture
def synchronizer(session_factory, settings):
    return SubscriptionSynchronizer(session_factory, settings)


@pytest.fixture
def orchestrator(session_factory, settings, ledger, partners):
    return BillingOrchestrator(session_factory, settings, ledger, partners)


@pytest.fixture
def add_plan(session_factory):
    """Insert a plan row. Returns the plan id."""

    def _add(plan_id="plan_starter", billing_type="prepaid", included_minutes=100,
             rate_cents=10, postpaid_minutes_limit=None):
        db = session_factory()
        try:
            db.add(BillingPlan(
                id=plan_id,
                name=plan_id.replace("_", " ").title(),
                billing_type=billing_type,
                included_minutes=included_minutes,
                overage_rate_per_minute_cents=rate_cents,
                postpaid_minutes_limit=postpaid_minutes_limit,
            ))
            db.commit()
        finally:
            db.close()
        return plan_id

    return _add


@pytest.fixture
def add_subscription(session_factory):
    """Insert a subscription row directly, bypassing the gateway events."""

    def _add(workspace_id="ws_1", plan_id="plan_starter", billing_type="prepaid", status="active",
             external_subscription_id="sub_1", last_event_at=None, **counters):
        db = session_factory()
        try:
            now = datetime.now(timezone.utc)
            db.add(WorkspaceSubscription(
                workspace_id=workspace_id,
                plan_id=plan_id,
                billing_type=billing_type,
                status=status,
                external_subscription_id=external_subscription_id,
                current_period_start=now,
                current_period_end=now + timedelta(days=30),
                last_event_at=last_event_at,
                **counters,
            ))
            db.commit()
        finally:
            db.close()
        return workspace_id

    return _add


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def client(session_factory, settings, ledger, partners, synchronizer, orchestrator):
    """Async test client for the FastAPI gateway, wired to the per-test database."""
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[billing_routes.get_dispatcher] = lambda: WebhookDispatcher(synchronizer, ledger, partners)
    app.dependency_overrides[billing_routes.get_orchestrator] = lambda: orchestrator
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides = {}
