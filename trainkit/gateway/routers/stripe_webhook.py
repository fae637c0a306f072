"""TrainKit – Stripe Webhook Endpoint.

``POST /api/webhooks/stripe`` takes the raw body plus ``Stripe-Signature``
and hands it to the ``WebhookProcessor``. Authenticity comes from the
signature, so the route sits outside any session/CSRF handling.

Responses:
    200 {"received": true}                      processed or ignored
    200 {"received": true, "duplicate": true}   already processed
    400 {"error": ...}                          bad signature / bad body
    500 {"error": "Webhook handler failed"}     Stripe will redeliver
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from config.settings import get_settings
from trainkit.billing.processor import WebhookProcessor
from trainkit.billing.signature import InvalidPayload, InvalidSignature
from trainkit.core.instrumentation import WEBHOOK_EVENTS

logger = structlog.get_logger()

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def get_webhook_processor() -> WebhookProcessor:
    return WebhookProcessor.from_settings(get_settings())


@router.get("/stripe")
async def stripe_webhook_status() -> dict[str, Any]:
    return {"message": "TrainKit Stripe Webhook Endpoint", "status": "active"}


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> JSONResponse:
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        result = await run_in_threadpool(processor.process, payload, sig_header)
    except InvalidSignature as exc:
        WEBHOOK_EVENTS.labels(event_type="unknown", outcome="invalid_signature").inc()
        return JSONResponse({"error": f"Webhook signature verification failed: {exc}"}, status_code=400)
    except InvalidPayload as exc:
        WEBHOOK_EVENTS.labels(event_type="unknown", outcome="invalid_payload").inc()
        return JSONResponse({"error": f"Invalid payload: {exc}"}, status_code=400)
    except Exception as exc:
        logger.error("billing.webhook.failed", error=str(exc))
        return JSONResponse({"error": "Webhook handler failed"}, status_code=500)

    body: dict[str, Any] = {"received": True}
    if result.duplicate:
        body["duplicate"] = True
    return JSONResponse(body)
