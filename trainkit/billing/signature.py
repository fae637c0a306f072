"""Stripe webhook signature verification.

The ``Stripe-Signature`` header carries ``t=<unix ts>,v1=<hex hmac>``; the HMAC
is SHA-256 over ``"{t}.{raw body}"`` keyed with the endpoint secret. The
stripe SDK does the comparison and the replay-window check.
"""

from __future__ import annotations

import json

import stripe
import structlog
from pydantic import ValidationError

from trainkit.billing.events import StripeEvent

logger = structlog.get_logger()


class InvalidSignature(Exception):
    """Raised when a webhook body cannot be attributed to Stripe."""
    pass


class InvalidPayload(Exception):
    """Raised when a verified body is not a usable Stripe event."""
    pass


class StripeSignatureVerifier:
    """Authenticates raw webhook bodies and parses them into ``StripeEvent``."""

    def __init__(self, webhook_secret: str, tolerance_seconds: int = 300) -> None:
        self._secret = (webhook_secret or "").strip()
        self._tolerance = tolerance_seconds

    def verify(self, payload: bytes, signature_header: str) -> StripeEvent:
        """Verify ``payload`` against ``signature_header`` and parse it.

        Raises:
            InvalidSignature: secret not configured, header missing, or mismatch.
            InvalidPayload: body is not UTF-8 JSON with an event id.
        """
        if not self._secret:
            logger.warning("billing.webhook.no_secret_configured")
            raise InvalidSignature("webhook secret not configured")

        if not signature_header:
            logger.warning("billing.webhook.signature_missing")
            raise InvalidSignature("missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidPayload("body is not valid UTF-8") from exc

        try:
            stripe.WebhookSignature.verify_header(body, signature_header, self._secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            logger.warning("billing.webhook.sig_invalid", error=str(exc))
            raise InvalidSignature(str(exc)) from exc

        try:
            return StripeEvent.model_validate(json.loads(body))
        except (ValueError, ValidationError) as exc:
            # json.JSONDecodeError is a ValueError
            logger.warning("billing.webhook.invalid_payload", error=str(exc))
            raise InvalidPayload(str(exc)) from exc
