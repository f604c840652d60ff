"""Voice Billing Engine – Gateway.

Hosts the billing ingress routes, health and Prometheus metrics.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import FastAPI

from app.core.db import run_migrations
from app.core.instrumentation import setup_instrumentation
from app.gateway.billing import router as billing_router
from config.settings import Settings, get_settings

logger = structlog.get_logger()

VERSION = "1.0.0"

settings: Settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[type-arg]
    """Create tables on startup (Alembic owns the schema in production)."""
    if not settings.is_production:
        run_migrations()
    logger.info("billing.gateway.startup", version=VERSION, env=settings.environment)
    yield
    logger.info("billing.gateway.shutdown")


app = FastAPI(
    title="Voice Billing Engine",
    description="Usage billing and credit reconciliation for voice calls",
    version=VERSION,
    lifespan=lifespan,
)

setup_instrumentation(app, settings.log_level)
app.include_router(billing_router)


@app.get("/health")
async def health_check() -> dict[str, Any]:
    return {
        "status": "ok",
        "service": "billing-gateway",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
