"""TrainKit – Webhook Processor.

One delivery, end to end:

    verify signature → record in ledger → dispatch in one transaction
    (handler writes + processed=True) → notify after commit

Handler exceptions propagate to the caller after the transaction is rolled
back and the error is noted on the ledger row, so Stripe's redelivery re-runs
the event from a clean state. A ``data.object`` that fails validation is
logged and marked processed, since no redelivery can repair it.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass
from typing import Any, Callable

import structlog
from pydantic import ValidationError
from sqlalchemy.orm import Session

from config.settings import Settings
from trainkit.billing.dispatcher import EventDispatcher, build_dispatcher
from trainkit.billing.events import StripeEvent
from trainkit.billing.ledger import IdempotencyLedger, LedgerOutcome
from trainkit.billing.notifications import (
    BillingNotifier,
    BookingConfirmation,
    LoggingNotifier,
    TrialEndingNotice,
)
from trainkit.billing.signature import StripeSignatureVerifier
from trainkit.core.db import SessionLocal
from trainkit.core.instrumentation import WEBHOOK_EVENTS, WEBHOOK_HANDLER_LATENCY

logger = structlog.get_logger()


class WebhookOutcome(str, enum.Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    outcome: WebhookOutcome
    retried: bool = False

    @property
    def duplicate(self) -> bool:
        return self.outcome == WebhookOutcome.DUPLICATE


class WebhookProcessor:
    def __init__(
        self,
        verifier: StripeSignatureVerifier,
        dispatcher: EventDispatcher,
        ledger: IdempotencyLedger | None = None,
        notifier: BillingNotifier | None = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ) -> None:
        self._verifier = verifier
        self._dispatcher = dispatcher
        self._ledger = ledger or IdempotencyLedger(session_factory)
        self._notifier = notifier or LoggingNotifier()
        self._session_factory = session_factory

    @classmethod
    def from_settings(cls, settings: Settings, notifier: BillingNotifier | None = None) -> "WebhookProcessor":
        return cls(
            verifier=StripeSignatureVerifier(
                settings.stripe_webhook_secret,
                tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
            ),
            dispatcher=build_dispatcher(past_due_grace=settings.billing_past_due_grace),
            notifier=notifier,
        )

    def process(self, payload: bytes, signature_header: str) -> WebhookResult:
        """Verify and handle one raw delivery. Raises InvalidSignature/InvalidPayload."""
        event = self._verifier.verify(payload, signature_header)
        return self.process_event(event)

    def process_event(self, event: StripeEvent) -> WebhookResult:
        logger.info("billing.webhook.received", event_type=event.type, id=event.id, livemode=event.livemode)

        ledger_outcome = self._ledger.record(event)
        if ledger_outcome == LedgerOutcome.DUPLICATE:
            WEBHOOK_EVENTS.labels(event_type=event.type, outcome="duplicate").inc()
            return WebhookResult(event.id, event.type, WebhookOutcome.DUPLICATE)
        retried = ledger_outcome == LedgerOutcome.RETRY

        if not self._dispatcher.handles(event.type):
            db = self._session_factory()
            try:
                self._ledger.mark_processed(db, event.id)
                db.commit()
            finally:
                db.close()
            logger.info("billing.webhook.event_ignored", event_type=event.type, id=event.id)
            WEBHOOK_EVENTS.labels(event_type=event.type, outcome="ignored").inc()
            return WebhookResult(event.id, event.type, WebhookOutcome.IGNORED, retried)

        notification = self._run_handler(event)

        WEBHOOK_EVENTS.labels(event_type=event.type, outcome="processed").inc()
        logger.info("billing.webhook.processed", event_type=event.type, id=event.id, retried=retried)
        self._notify(notification, event)
        return WebhookResult(event.id, event.type, WebhookOutcome.PROCESSED, retried)

    # ── Internals ────────────────────────────────────────────────────────────

    def _run_handler(self, event: StripeEvent) -> Any:
        started = time.perf_counter()
        db = self._session_factory()
        try:
            notification = self._dispatcher.dispatch(db, event.type, event.data_object)
            self._ledger.mark_processed(db, event.id)
            db.commit()
            return notification
        except ValidationError as exc:
            # Malformed data.object: redelivery cannot fix it.
            db.rollback()
            logger.error(
                "billing.webhook.invalid_object",
                event_type=event.type,
                id=event.id,
                errors=exc.error_count(),
                error=str(exc),
            )
            WEBHOOK_EVENTS.labels(event_type=event.type, outcome="invalid_object").inc()
            self._ledger.mark_processed(db, event.id)
            db.commit()
            return None
        except Exception as exc:
            db.rollback()
            logger.error(
                "billing.webhook.handler_failed",
                event_type=event.type,
                id=event.id,
                error=str(exc),
                exc_info=True,
            )
            WEBHOOK_EVENTS.labels(event_type=event.type, outcome="failed").inc()
            self._ledger.record_failure(event.id, f"{type(exc).__name__}: {exc}")
            raise
        finally:
            db.close()
            WEBHOOK_HANDLER_LATENCY.labels(event_type=event.type).observe(time.perf_counter() - started)

    def _notify(self, notification: Any, event: StripeEvent) -> None:
        if notification is None:
            return
        try:
            if isinstance(notification, BookingConfirmation):
                self._notifier.booking_confirmed(notification)
            elif isinstance(notification, TrialEndingNotice):
                self._notifier.trial_ending(notification)
        except Exception as exc:
            logger.warning(
                "billing.notify.failed",
                event_type=event.type,
                id=event.id,
                error=str(exc),
            )
