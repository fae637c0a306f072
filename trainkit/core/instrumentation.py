"""TrainKit – Logging & Metrics.

structlog configuration (JSON, e-mail masking) and the Prometheus metrics
for the webhook pipeline.
"""

import logging
import re
import time
from typing import Callable

import structlog
from fastapi import APIRouter, FastAPI, Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Histogram,
    generate_latest,
)

router = APIRouter(tags=["monitoring"])

# --- Webhook Metrics ---

WEBHOOK_EVENTS = Counter(
    "trainkit_webhook_events_total",
    "Stripe webhook deliveries by event type and outcome",
    ["event_type", "outcome"],
)

WEBHOOK_HANDLER_LATENCY = Histogram(
    "trainkit_webhook_handler_duration_seconds",
    "Time spent inside a reconciliation handler, per event type",
    ["event_type"],
)

REQUEST_COUNT = Counter(
    "trainkit_http_requests_total",
    "Total HTTP requests by method, endpoint and status",
    ["method", "endpoint", "status"],
)


@router.get("/metrics")
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# --- Logging ---

_EMAIL = re.compile(r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}")


def mask_email(value: str) -> str:
    """``jane.doe@example.com`` → ``j****@e****.com``."""

    def _mask(match: re.Match[str]) -> str:
        local, _, domain = match.group(0).partition("@")
        host, _, tld = domain.rpartition(".")
        return f"{local[:1]}****@{host[:1]}****.{tld}"

    return _EMAIL.sub(_mask, value)


def mask_pii(logger, method_name: str, event_dict: dict) -> dict:
    """structlog processor: mask e-mail addresses in string values."""
    for key, value in event_dict.items():
        if isinstance(value, str) and "@" in value:
            event_dict[key] = mask_email(value)
    return event_dict


def setup_logging(log_level: str = "info") -> None:
    """Configure structlog with PII masking."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            mask_pii,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def setup_instrumentation(app: FastAPI, log_level: str = "info") -> None:
    """Configure logging and attach the request-counting middleware."""
    setup_logging(log_level)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
        finally:
            REQUEST_COUNT.labels(
                method=request.method,
                endpoint=request.url.path,
                status=status,
            ).inc()
            structlog.get_logger().debug(
                "gateway.request",
                method=request.method,
                path=request.url.path,
                status=status,
                duration_ms=round((time.time() - start_time) * 1000, 1),
            )
        return response
