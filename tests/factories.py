"""Row builders and Stripe event payloads shared by the test modules."""

import hashlib
import hmac
import json
import time
import uuid

from trainkit.core.models import (
    Booking,
    Bundle,
    BundleBooking,
    BundleBookingSession,
    BundlePayment,
    Course,
    CourseSession,
    Customer,
    Payment,
    Tenant,
    TenantSubscription,
)

WEBHOOK_SECRET = "whsec_test_secret_1234567890abcdef"


def _uid(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ── Rows ─────────────────────────────────────────────────────────────────────

def make_tenant(db, *, status: str | None = "ACTIVE", active: bool = True) -> Tenant:
    slug = _uid("studio")
    tenant = Tenant(slug=slug, name=f"Studio {slug}", active=active, subscription_status=status)
    db.add(tenant)
    db.commit()
    return tenant


def make_session(db, tenant: Tenant, *, booked: int = 0) -> CourseSession:
    course = Course(tenant_id=tenant.id, title="First Aid at Work", price_pence=45000)
    db.add(course)
    db.flush()
    session = CourseSession(tenant_id=tenant.id, course_id=course.id, available_spots=12, booked_spots=booked)
    db.add(session)
    db.commit()
    return session


def make_customer(db, tenant: Tenant) -> Customer:
    customer = Customer(tenant_id=tenant.id, first_name="Jane", last_name="Doe", email="jane.doe@example.com")
    db.add(customer)
    db.commit()
    return customer


def make_booking(
    db,
    *,
    booking_id: str | None = None,
    status: str = "PENDING",
    total: int = 45000,
    payment_amount: int | None = None,
    payment_intent: str = "pi_test_1",
) -> Booking:
    tenant = make_tenant(db)
    customer = make_customer(db, tenant)
    session = make_session(db, tenant)
    booking = Booking(
        id=booking_id or _uid("bk"),
        tenant_id=tenant.id,
        customer_id=customer.id,
        session_id=session.id,
        total_amount_pence=total,
        status=status,
    )
    db.add(booking)
    db.flush()
    db.add(Payment(
        booking_id=booking.id,
        amount_pence=total if payment_amount is None else payment_amount,
        status="PENDING",
        stripe_payment_intent_id=payment_intent,
        payment_method="card",
    ))
    db.commit()
    return booking


def make_bundle_booking(db, *, sessions: int = 3, status: str = "PENDING", payment_intent: str = "pi_bundle_1") -> BundleBooking:
    tenant = make_tenant(db)
    customer = make_customer(db, tenant)
    bundle = Bundle(tenant_id=tenant.id, title="Instructor pathway", bundle_price_pence=90000)
    db.add(bundle)
    db.flush()
    booking = BundleBooking(
        tenant_id=tenant.id,
        customer_id=customer.id,
        bundle_id=bundle.id,
        total_amount_pence=90000,
        status=status,
    )
    db.add(booking)
    db.flush()
    for _ in range(sessions):
        session = make_session(db, tenant)
        db.add(BundleBookingSession(bundle_booking_id=booking.id, session_id=session.id, course_id=session.course_id))
    db.add(BundlePayment(
        bundle_booking_id=booking.id,
        amount_pence=90000,
        status="PENDING",
        stripe_payment_intent_id=payment_intent,
        payment_method="card",
    ))
    db.commit()
    return booking


def make_subscription(db, tenant: Tenant, *, sub_id: str = "sub_test_1", status: str = "ACTIVE") -> TenantSubscription:
    record = TenantSubscription(
        tenant_id=tenant.id,
        stripe_subscription_id=sub_id,
        stripe_customer_id="cus_test_1",
        stripe_price_id="price_monthly",
        status=status,
    )
    db.add(record)
    db.commit()
    return record


# ── Stripe payloads ──────────────────────────────────────────────────────────

def event(event_type: str, obj: dict, *, event_id: str | None = None) -> dict:
    return {
        "id": event_id or _uid("evt"),
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


def payment_intent(booking_id: str, *, pi_id: str = "pi_test_1", amount: int = 45000) -> dict:
    return {
        "id": pi_id,
        "object": "payment_intent",
        "amount": amount,
        "amount_received": amount,
        "currency": "gbp",
        "metadata": {"bookingId": booking_id},
    }


def bundle_payment_intent(bundle_booking_id: str, *, pi_id: str = "pi_bundle_1", amount: int = 90000) -> dict:
    return {
        "id": pi_id,
        "object": "payment_intent",
        "amount": amount,
        "amount_received": amount,
        "currency": "gbp",
        "metadata": {"bookingType": "bundle", "bundleBookingId": bundle_booking_id},
    }


def subscription(
    sub_id: str,
    status: str,
    *,
    tenant_id: str | None = None,
    price_id: str | None = "price_monthly",
    cancel_at_period_end: bool = False,
    canceled_at: int | None = None,
    trial_end: int | None = None,
) -> dict:
    now = int(time.time())
    items = {"data": [{"price": {"id": price_id}}]} if price_id else {"data": []}
    return {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "customer": "cus_test_1",
        "current_period_start": now,
        "current_period_end": now + 30 * 86400,
        "trial_start": None,
        "trial_end": trial_end,
        "canceled_at": canceled_at,
        "cancel_at_period_end": cancel_at_period_end,
        "items": items,
        "metadata": {"tenantId": tenant_id} if tenant_id else {},
    }


def invoice(
    inv_id: str,
    sub_id: str | None,
    *,
    status: str | None = "draft",
    amount_paid: int = 0,
    amount_due: int = 4900,
) -> dict:
    return {
        "id": inv_id,
        "object": "invoice",
        "subscription": sub_id,
        "status": status,
        "amount_paid": amount_paid,
        "amount_due": amount_due,
        "currency": "gbp",
        "due_date": None,
        "hosted_invoice_url": f"https://invoice.stripe.com/i/{inv_id}",
        "status_transitions": {"paid_at": int(time.time()) if amount_paid else None},
    }


def signed(payload: dict, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> tuple[bytes, str]:
    """Serialize ``payload`` and build a matching Stripe-Signature header."""
    body = json.dumps(payload).encode()
    ts = timestamp or int(time.time())
    mac = hmac.new(secret.encode(), f"{ts}.{body.decode()}".encode(), hashlib.sha256).hexdigest()
    return body, f"t={ts},v1={mac}"
