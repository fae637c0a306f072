"""Idempotency ledger: record-before-process, retry after failure, backlog."""

from datetime import datetime, timedelta, timezone

import pytest

from config.settings import get_settings
from trainkit.billing.dispatcher import EventDispatcher, build_dispatcher
from trainkit.billing.events import StripeEvent
from trainkit.billing.ledger import IdempotencyLedger, LedgerOutcome
from trainkit.billing.processor import WebhookOutcome, WebhookProcessor
from trainkit.billing.signature import StripeSignatureVerifier
from trainkit.core.instrumentation import setup_logging
from trainkit.core.models import Booking, CourseSession, WebhookEvent

from factories import WEBHOOK_SECRET, event, invoice, make_booking, payment_intent, subscription


def _event(payload: dict) -> StripeEvent:
    return StripeEvent.model_validate(payload)


def _row(db, event_id: str) -> WebhookEvent:
    db.expire_all()
    return db.query(WebhookEvent).filter(WebhookEvent.stripe_event_id == event_id).one()


# ── record ────────────────────────────────────────────────────────────────────

def test_record_classifies_new_retry_and_duplicate(db) -> None:
    ledger = IdempotencyLedger()
    stripe_event = _event(event("invoice.created", {"id": "in_1"}, event_id="evt_1"))

    assert ledger.record(stripe_event) == LedgerOutcome.NEW
    assert ledger.record(stripe_event) == LedgerOutcome.RETRY
    assert _row(db, "evt_1").attempts == 2

    ledger.mark_processed(db, "evt_1")
    db.commit()

    assert ledger.record(stripe_event) == LedgerOutcome.DUPLICATE
    row = _row(db, "evt_1")
    assert row.processed is True
    assert row.processed_at is not None


def test_mark_processed_without_row_raises(db) -> None:
    with pytest.raises(LookupError):
        IdempotencyLedger().mark_processed(db, "evt_never_recorded")


# ── failure → retry ───────────────────────────────────────────────────────────

def _exploding_processor(calls: list) -> WebhookProcessor:
    real = build_dispatcher()

    def flaky(db, obj):
        calls.append(obj["id"])
        result = real.dispatch(db, "payment_intent.succeeded", obj)
        if len(calls) == 1:
            raise RuntimeError("database went away")
        return result

    return WebhookProcessor(
        verifier=StripeSignatureVerifier(WEBHOOK_SECRET),
        dispatcher=EventDispatcher({"payment_intent.succeeded": flaky}),
    )


def test_failed_handler_rolls_back_and_rerun_applies_once(db) -> None:
    make_booking(db, booking_id="b1")
    payload = event("payment_intent.succeeded", payment_intent("b1"), event_id="evt_flaky")
    calls: list = []
    processor = _exploding_processor(calls)

    with pytest.raises(RuntimeError):
        processor.process_event(_event(payload))

    row = _row(db, "evt_flaky")
    assert row.processed is False
    assert "database went away" in row.last_error
    booking = db.query(Booking).filter(Booking.id == "b1").one()
    assert booking.status == "PENDING"
    assert db.query(CourseSession).filter(CourseSession.id == booking.session_id).one().booked_spots == 0

    result = processor.process_event(_event(payload))

    assert result.outcome == WebhookOutcome.PROCESSED
    assert result.retried is True
    row = _row(db, "evt_flaky")
    assert row.processed is True
    assert row.last_error is None
    assert row.attempts == 2
    booking = db.query(Booking).filter(Booking.id == "b1").one()
    assert booking.status == "CONFIRMED"
    assert db.query(CourseSession).filter(CourseSession.id == booking.session_id).one().booked_spots == 1


# ── unhandled types ───────────────────────────────────────────────────────────

def test_unhandled_event_type_is_recorded_and_processed(db) -> None:
    processor = WebhookProcessor.from_settings(get_settings())

    result = processor.process_event(_event(event("charge.refunded", {"id": "ch_1"}, event_id="evt_other")))

    assert result.outcome == WebhookOutcome.IGNORED
    row = _row(db, "evt_other")
    assert row.processed is True
    assert row.event_type == "charge.refunded"


def test_dispatcher_covers_all_reconciled_event_types() -> None:
    assert build_dispatcher().event_types == sorted([
        "customer.subscription.created",
        "customer.subscription.deleted",
        "customer.subscription.trial_will_end",
        "customer.subscription.updated",
        "invoice.created",
        "invoice.finalized",
        "invoice.payment_failed",
        "invoice.payment_succeeded",
        "payment_intent.payment_failed",
        "payment_intent.succeeded",
    ])


# ── unresolvable references ───────────────────────────────────────────────────

@pytest.fixture
def debug_logging():
    setup_logging("debug")
    yield
    setup_logging(get_settings().log_level)


@pytest.mark.parametrize(
    ("event_type", "obj"),
    [
        ("customer.subscription.updated", subscription("sub_unknown", "active")),
        ("customer.subscription.deleted", subscription("sub_unknown", "canceled")),
        ("customer.subscription.trial_will_end", subscription("sub_unknown", "trialing")),
        ("invoice.created", invoice("in_orphan", "sub_unknown")),
        ("invoice.created", invoice("in_one_off", None)),
        ("invoice.payment_succeeded", invoice("in_orphan", "sub_unknown", status="paid")),
        ("invoice.payment_failed", invoice("in_orphan", "sub_unknown", status="open")),
        ("invoice.finalized", invoice("in_unknown", "sub_unknown", status="open")),
    ],
)
def test_unresolvable_references_are_processed_no_ops(db, debug_logging, event_type, obj) -> None:
    processor = WebhookProcessor.from_settings(get_settings())

    result = processor.process_event(_event(event(event_type, obj, event_id="evt_orphan")))

    assert result.outcome == WebhookOutcome.PROCESSED
    row = _row(db, "evt_orphan")
    assert row.processed is True
    assert row.last_error is None


# ── malformed objects ─────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    ("event_type", "obj"),
    [
        ("invoice.created", {}),
        ("customer.subscription.updated", {"status": "active"}),
        ("payment_intent.succeeded", {"id": "pi_1", "amount": "forty-five pounds"}),
    ],
)
def test_malformed_object_is_marked_processed_without_raising(db, event_type, obj) -> None:
    processor = WebhookProcessor.from_settings(get_settings())
    payload = event(event_type, obj, event_id="evt_malformed")

    result = processor.process_event(_event(payload))

    assert result.outcome == WebhookOutcome.PROCESSED
    row = _row(db, "evt_malformed")
    assert row.processed is True
    assert row.last_error is None
    assert processor.process_event(_event(payload)).outcome == WebhookOutcome.DUPLICATE


# ── backlog ───────────────────────────────────────────────────────────────────

def test_find_stale_events_returns_old_unprocessed_rows(db) -> None:
    old = datetime.now(timezone.utc) - timedelta(hours=2)
    db.add_all([
        WebhookEvent(stripe_event_id="evt_stale", event_type="invoice.created", payload_json="{}", received_at=old),
        WebhookEvent(stripe_event_id="evt_done", event_type="invoice.created", payload_json="{}",
                     received_at=old, processed=True),
        WebhookEvent(stripe_event_id="evt_fresh", event_type="invoice.created", payload_json="{}"),
    ])
    db.commit()

    stale = IdempotencyLedger().find_stale_events(timedelta(minutes=60))

    assert [row.stripe_event_id for row in stale] == ["evt_stale"]
