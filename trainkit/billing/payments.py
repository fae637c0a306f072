"""TrainKit – Payment Reconciliation.

Handles ``payment_intent.succeeded`` and ``payment_intent.payment_failed`` for
one-off course purchases. The intent's metadata names either a single booking
or a bundle booking; both go through the same flow, the bundle variant fanning
the capacity update out over every session it covers.

Booking status rules:
    PENDING   → CONFIRMED  on success (session counters +1, once)
    PENDING   → CANCELLED  on failure
    CONFIRMED / COMPLETED  never regress
    CANCELLED is terminal; a late success only records the money
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy.orm import Session

from trainkit.billing.events import (
    BundleBookingRef,
    PaymentIntentObject,
    PurchaseReference,
)
from trainkit.billing.notifications import BookingConfirmation
from trainkit.core.models import (
    Booking,
    BookingStatus,
    BundleBooking,
    BundlePayment,
    CourseSession,
    Payment,
    PaymentStatus,
)

logger = structlog.get_logger()


@dataclass
class _Purchase:
    """A loaded booking row plus the payment table that belongs to it."""

    kind: str
    booking: Booking | BundleBooking
    payment_model: type
    payment_fk: Any
    session_ids: list[str]


# ── Helpers ──────────────────────────────────────────────────────────────────

def _load_purchase(db: Session, ref: PurchaseReference) -> _Purchase | None:
    if isinstance(ref, BundleBookingRef):
        bundle = (
            db.query(BundleBooking)
            .filter(BundleBooking.id == ref.bundle_booking_id)
            .with_for_update()
            .first()
        )
        if bundle is None:
            return None
        return _Purchase(
            kind="bundle",
            booking=bundle,
            payment_model=BundlePayment,
            payment_fk=BundlePayment.bundle_booking_id,
            session_ids=[s.session_id for s in bundle.sessions],
        )

    booking = db.query(Booking).filter(Booking.id == ref.booking_id).with_for_update().first()
    if booking is None:
        return None
    return _Purchase(
        kind="course",
        booking=booking,
        payment_model=Payment,
        payment_fk=Payment.booking_id,
        session_ids=[booking.session_id],
    )


def _matching_payments(db: Session, purchase: _Purchase, payment_intent_id: str) -> list:
    model = purchase.payment_model
    return (
        db.query(model)
        .filter(purchase.payment_fk == purchase.booking.id)
        .filter(model.stripe_payment_intent_id == payment_intent_id)
        .with_for_update()
        .all()
    )


def _ref_id(ref: PurchaseReference) -> str:
    if isinstance(ref, BundleBookingRef):
        return ref.bundle_booking_id
    return ref.booking_id


def paid_total(booking: Booking | BundleBooking) -> int:
    """Sum of PAID payment amounts, in pence."""
    return sum(
        p.amount_pence for p in booking.payments
        if p.status == PaymentStatus.PAID.value
    )


def is_fully_paid(booking: Booking | BundleBooking) -> bool:
    return paid_total(booking) >= booking.total_amount_pence


# ── payment_intent.succeeded ─────────────────────────────────────────────────

def handle_payment_succeeded(db: Session, obj: dict) -> BookingConfirmation | None:
    intent = PaymentIntentObject.model_validate(obj)
    ref = intent.purchase_reference()
    if ref is None:
        logger.error("billing.payment.no_booking_reference", payment_intent=intent.id)
        return None

    purchase = _load_purchase(db, ref)
    if purchase is None:
        logger.error(
            "billing.payment.booking_not_found",
            payment_intent=intent.id,
            kind="bundle" if isinstance(ref, BundleBookingRef) else "course",
            booking_id=_ref_id(ref),
        )
        return None

    booking = purchase.booking
    now = datetime.now(timezone.utc)

    payments = _matching_payments(db, purchase, intent.id)
    if not payments:
        logger.warning(
            "billing.payment.payment_row_not_found",
            payment_intent=intent.id,
            booking_id=booking.id,
            kind=purchase.kind,
        )
    for payment in payments:
        if payment.status in (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value):
            payment.status = PaymentStatus.PAID.value
            payment.paid_at = now

    prior = booking.status
    if prior == BookingStatus.CANCELLED.value:
        logger.warning(
            "billing.payment.succeeded_for_cancelled_booking",
            payment_intent=intent.id,
            booking_id=booking.id,
            kind=purchase.kind,
            amount_received=intent.amount_received,
            refund_required=True,
        )
        return None
    if prior != BookingStatus.PENDING.value:
        logger.info(
            "billing.payment.already_confirmed",
            booking_id=booking.id,
            kind=purchase.kind,
            status=prior,
        )
        return None

    booking.status = BookingStatus.CONFIRMED.value
    sessions = (
        db.query(CourseSession)
        .filter(CourseSession.id.in_(purchase.session_ids))
        .with_for_update()
        .all()
    )
    if len(sessions) != len(set(purchase.session_ids)):
        logger.error(
            "billing.payment.session_missing",
            booking_id=booking.id,
            expected=len(set(purchase.session_ids)),
            found=len(sessions),
        )
    for session in sessions:
        session.booked_spots = (session.booked_spots or 0) + 1

    db.flush()
    if not is_fully_paid(booking):
        logger.info(
            "billing.payment.confirmed_with_balance_due",
            booking_id=booking.id,
            kind=purchase.kind,
            paid_pence=paid_total(booking),
            total_pence=booking.total_amount_pence,
        )

    logger.info(
        "billing.payment.booking_confirmed",
        booking_id=booking.id,
        kind=purchase.kind,
        payment_intent=intent.id,
        sessions=len(sessions),
    )
    customer = booking.customer
    return BookingConfirmation(
        kind=purchase.kind,
        booking_id=booking.id,
        tenant_id=booking.tenant_id,
        customer_email=customer.email if customer else None,
        amount_pence=intent.amount_received or intent.amount,
        session_ids=list(purchase.session_ids),
    )


# ── payment_intent.payment_failed ────────────────────────────────────────────

def handle_payment_failed(db: Session, obj: dict) -> None:
    intent = PaymentIntentObject.model_validate(obj)
    ref = intent.purchase_reference()
    if ref is None:
        logger.warning("billing.payment.no_booking_reference", payment_intent=intent.id)
        return

    purchase = _load_purchase(db, ref)
    if purchase is None:
        logger.error("billing.payment.booking_not_found", payment_intent=intent.id, booking_id=_ref_id(ref))
        return

    for payment in _matching_payments(db, purchase, intent.id):
        if payment.status == PaymentStatus.PENDING.value:
            payment.status = PaymentStatus.FAILED.value

    booking = purchase.booking
    if booking.status != BookingStatus.PENDING.value:
        logger.info(
            "billing.payment.failure_ignored",
            booking_id=booking.id,
            kind=purchase.kind,
            status=booking.status,
        )
        return

    booking.status = BookingStatus.CANCELLED.value
    logger.info(
        "billing.payment.booking_cancelled",
        booking_id=booking.id,
        kind=purchase.kind,
        payment_intent=intent.id,
    )
