"""TrainKit – Idempotency Ledger.

Every verified Stripe event is inserted into ``webhook_events`` BEFORE any
handler runs. The unique ``stripe_event_id`` column is the gate:

    insert ok                         → NEW        (run the handler)
    collision, row processed          → DUPLICATE  (no-op)
    collision, row not yet processed  → RETRY      (an earlier attempt failed; run again)

``mark_processed`` is called with the handler's own session so the handler's
writes and the ``processed=True`` flip commit together.
"""

from __future__ import annotations

import enum
import json
from datetime import datetime, timedelta, timezone
from typing import Callable

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from trainkit.billing.events import StripeEvent
from trainkit.core.db import SessionLocal
from trainkit.core.models import WebhookEvent

logger = structlog.get_logger()


class LedgerOutcome(str, enum.Enum):
    NEW = "new"
    RETRY = "retry"
    DUPLICATE = "duplicate"


class IdempotencyLedger:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    def record(self, event: StripeEvent) -> LedgerOutcome:
        """Insert the ledger row for ``event`` (own transaction) and classify the delivery."""
        db = self._session_factory()
        try:
            db.add(WebhookEvent(
                stripe_event_id=event.id,
                event_type=event.type,
                payload_json=json.dumps(event.data, ensure_ascii=False),
                processed=False,
            ))
            db.commit()
            return LedgerOutcome.NEW
        except IntegrityError:
            db.rollback()
            row = db.query(WebhookEvent).filter(WebhookEvent.stripe_event_id == event.id).first()
            if row is None:
                raise
            if row.processed:
                logger.info("billing.ledger.duplicate", event_id=event.id, event_type=event.type)
                return LedgerOutcome.DUPLICATE
            row.attempts = (row.attempts or 1) + 1
            db.commit()
            logger.info(
                "billing.ledger.retry",
                event_id=event.id,
                event_type=event.type,
                attempts=row.attempts,
            )
            return LedgerOutcome.RETRY
        finally:
            db.close()

    def mark_processed(self, db: Session, event_id: str) -> None:
        """Flip the row to processed inside the caller's transaction."""
        updated = db.query(WebhookEvent).filter(WebhookEvent.stripe_event_id == event_id).update(
            {
                WebhookEvent.processed: True,
                WebhookEvent.processed_at: datetime.now(timezone.utc),
                WebhookEvent.last_error: None,
            },
            synchronize_session=False,
        )
        if not updated:
            raise LookupError(f"ledger row for event {event_id} is missing")

    def record_failure(self, event_id: str, error: str) -> None:
        """Keep the last handler error on the (still unprocessed) row."""
        db = self._session_factory()
        try:
            db.query(WebhookEvent).filter(WebhookEvent.stripe_event_id == event_id).update(
                {WebhookEvent.last_error: error[:2000]},
                synchronize_session=False,
            )
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.warning("billing.ledger.failure_write_failed", event_id=event_id, error=str(exc))
        finally:
            db.close()

    def find_stale_events(self, older_than: timedelta) -> list[WebhookEvent]:
        """Unprocessed rows received more than ``older_than`` ago, oldest first."""
        cutoff = datetime.now(timezone.utc) - older_than
        db = self._session_factory()
        try:
            rows = (
                db.query(WebhookEvent)
                .filter(WebhookEvent.processed.is_(False), WebhookEvent.received_at < cutoff)
                .order_by(WebhookEvent.received_at)
                .all()
            )
            db.expunge_all()
            return rows
        finally:
            db.close()
