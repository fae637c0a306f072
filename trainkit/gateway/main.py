"""TrainKit – Billing Gateway.

FastAPI app hosting the Stripe webhook endpoint, health and metrics.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import FastAPI

from config.settings import get_settings
from trainkit.core.db import SQLALCHEMY_DATABASE_URL, run_migrations
from trainkit.core.instrumentation import router as metrics_router
from trainkit.core.instrumentation import setup_instrumentation
from trainkit.gateway.routers.stripe_webhook import router as stripe_webhook_router

logger = structlog.get_logger()
settings = get_settings()

VERSION = "1.0.0"


def _enforce_startup_guards() -> None:
    if not settings.is_production:
        return

    if not settings.stripe_webhook_secret.strip().startswith("whsec_"):
        raise RuntimeError("Refusing startup in production without a Stripe webhook secret.")

    if not SQLALCHEMY_DATABASE_URL.startswith("postgresql"):
        raise RuntimeError("Refusing startup in production without a PostgreSQL DATABASE_URL.")


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[type-arg]
    """Application lifespan: guard config, bootstrap schema."""
    _enforce_startup_guards()
    run_migrations()
    logger.info("trainkit.gateway.startup", version=VERSION, env=settings.environment)
    yield
    logger.info("trainkit.gateway.shutdown")


app = FastAPI(
    title="TrainKit Billing Gateway",
    description="TrainKit – Stripe payment & subscription reconciliation",
    version=VERSION,
    lifespan=lifespan,
)

setup_instrumentation(app, settings.log_level)

app.include_router(stripe_webhook_router)
app.include_router(metrics_router)


@app.get("/health")
async def health_check() -> dict[str, Any]:
    return {
        "status": "ok",
        "service": "trainkit-billing",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("trainkit.gateway.main:app", host=settings.gateway_host, port=settings.gateway_port)
