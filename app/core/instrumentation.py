"""Voice Billing Engine – Instrumentation.

Prometheus metrics for the billing engine plus structlog configuration.
"""

import time
import logging
from typing import Callable

import structlog
from fastapi import FastAPI, Request, Response, APIRouter
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Histogram,
    generate_latest,
)

router = APIRouter(tags=["monitoring"])

# --- HTTP Metrics ---

REQUEST_COUNT = Counter(
    "billing_http_requests_total",
    "Total HTTP requests by method, endpoint and status",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "billing_http_request_duration_seconds",
    "HTTP request latency by method and endpoint",
    ["method", "endpoint"],
)

# --- Billing Metrics ---

CALLS_BILLED = Counter(
    "billing_calls_total",
    "Call completions processed by billing type and outcome",
    ["billing_type", "outcome"],
)

MINUTES_BILLED = Histogram(
    "billing_call_minutes",
    "Billed minutes per call",
    buckets=(0, 1, 2, 5, 10, 20, 30, 60, 120),
)

CREDIT_TOPUPS = Counter(
    "billing_credit_topups_total",
    "Credit top-ups by outcome",
    ["outcome"],
)

GATEWAY_EVENTS = Counter(
    "billing_gateway_events_total",
    "Payment-gateway events by type and outcome",
    ["event_type", "outcome"],
)


@router.get("/metrics")
def metrics():
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def setup_logging(log_level: str = "info"):
    """Configure structlog JSON output."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_instrumentation(app: FastAPI, log_level: str = "info") -> None:
    """Attach request metrics middleware and the /metrics route."""
    setup_logging(log_level)
    app.include_router(router)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        path = request.url.path

        try:
            response = await call_next(request)
            status = str(response.status_code)
        except Exception:
            status = "500"
            raise
        finally:
            duration = time.time() - start_time
            REQUEST_COUNT.labels(
                method=request.method,
                endpoint=path,
                status=status,
            ).inc()

            REQUEST_LATENCY.labels(
                method=request.method,
                endpoint=path,
            ).observe(duration)

        return response
