"""TrainKit – ORM models touched by payment/subscription reconciliation.

Money columns hold integer pence, the unit Stripe reports amounts in.
Status columns hold the upper-case value of the matching ``str`` enum.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from trainkit.core.db import Base


def _uuid() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ─── Status vocabularies ─────────────────────────────────────────────────────

class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class SubscriptionStatus(str, enum.Enum):
    """Stripe's subscription vocabulary, upper-cased."""

    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    UNPAID = "UNPAID"
    INCOMPLETE = "INCOMPLETE"
    INCOMPLETE_EXPIRED = "INCOMPLETE_EXPIRED"
    PAUSED = "PAUSED"

    @classmethod
    def from_stripe(cls, value: str | None) -> "SubscriptionStatus":
        """Map ``"past_due"`` → ``PAST_DUE``. Unknown values raise ValueError."""
        return cls((value or "").strip().upper())


class InvoiceStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    OPEN = "OPEN"
    PAID = "PAID"
    VOID = "VOID"
    UNCOLLECTIBLE = "UNCOLLECTIBLE"


# ─── Tenancy ─────────────────────────────────────────────────────────────────

class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String, primary_key=True, default=_uuid)
    slug = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)

    # Activation gate, derived from subscription_status (see trainkit.billing.activation)
    active = Column(Boolean, default=True, nullable=False)
    subscription_status = Column(String, nullable=True)
    subscription_ends_at = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), index=True, nullable=False)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    email = Column(String, index=True, nullable=False)
    created_at = Column(DateTime, default=_now)


# ─── Courses & capacity ──────────────────────────────────────────────────────

class Course(Base):
    __tablename__ = "courses"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), index=True, nullable=False)
    title = Column(String, nullable=False)
    price_pence = Column(Integer, nullable=False, default=0)


class CourseSession(Base):
    __tablename__ = "course_sessions"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), index=True, nullable=False)
    course_id = Column(String, ForeignKey("courses.id"), index=True, nullable=False)
    start_date = Column(DateTime, nullable=True)
    available_spots = Column(Integer, nullable=False, default=12)
    booked_spots = Column(Integer, nullable=False, default=0)

    course = relationship("Course")


# ─── Single-session bookings ─────────────────────────────────────────────────

class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), index=True, nullable=False)
    customer_id = Column(String, ForeignKey("customers.id"), index=True, nullable=False)
    session_id = Column(String, ForeignKey("course_sessions.id"), index=True, nullable=False)
    total_amount_pence = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=BookingStatus.PENDING.value)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    customer = relationship("Customer")
    session = relationship("CourseSession")
    payments = relationship("Payment", back_populates="booking")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=_uuid)
    booking_id = Column(String, ForeignKey("bookings.id"), index=True, nullable=False)
    amount_pence = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    stripe_payment_intent_id = Column(String, index=True, nullable=True)
    payment_method = Column(String, nullable=True)  # "card"
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now)

    booking = relationship("Booking", back_populates="payments")


# ─── Bundle bookings (several sessions, one purchase) ────────────────────────

class Bundle(Base):
    __tablename__ = "bundles"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), index=True, nullable=False)
    title = Column(String, nullable=False)
    bundle_price_pence = Column(Integer, nullable=False, default=0)


class BundleBooking(Base):
    __tablename__ = "bundle_bookings"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), index=True, nullable=False)
    customer_id = Column(String, ForeignKey("customers.id"), index=True, nullable=False)
    bundle_id = Column(String, ForeignKey("bundles.id"), index=True, nullable=False)
    total_amount_pence = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=BookingStatus.PENDING.value)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    customer = relationship("Customer")
    bundle = relationship("Bundle")
    sessions = relationship("BundleBookingSession", back_populates="bundle_booking")
    payments = relationship("BundlePayment", back_populates="bundle_booking")


class BundleBookingSession(Base):
    """One selected session inside a bundle booking."""

    __tablename__ = "bundle_booking_sessions"

    id = Column(String, primary_key=True, default=_uuid)
    bundle_booking_id = Column(String, ForeignKey("bundle_bookings.id"), index=True, nullable=False)
    session_id = Column(String, ForeignKey("course_sessions.id"), index=True, nullable=False)
    course_id = Column(String, ForeignKey("courses.id"), nullable=True)

    bundle_booking = relationship("BundleBooking", back_populates="sessions")
    session = relationship("CourseSession")

    __table_args__ = (
        UniqueConstraint("bundle_booking_id", "session_id", name="uq_bundle_booking_session"),
    )


class BundlePayment(Base):
    __tablename__ = "bundle_payments"

    id = Column(String, primary_key=True, default=_uuid)
    bundle_booking_id = Column(String, ForeignKey("bundle_bookings.id"), index=True, nullable=False)
    amount_pence = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    stripe_payment_intent_id = Column(String, index=True, nullable=True)
    payment_method = Column(String, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now)

    bundle_booking = relationship("BundleBooking", back_populates="payments")


# ─── Platform subscription billing ───────────────────────────────────────────

class TenantSubscription(Base):
    __tablename__ = "tenant_subscriptions"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column(String, ForeignKey("tenants.id"), index=True, nullable=False)
    stripe_subscription_id = Column(String, unique=True, index=True, nullable=False)
    stripe_customer_id = Column(String, nullable=True)
    stripe_price_id = Column(String, nullable=False, default="")
    status = Column(String, nullable=False)

    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    tenant = relationship("Tenant")
    invoices = relationship("SubscriptionInvoice", back_populates="subscription")


class SubscriptionInvoice(Base):
    __tablename__ = "subscription_invoices"

    id = Column(String, primary_key=True, default=_uuid)
    subscription_id = Column(String, ForeignKey("tenant_subscriptions.id"), index=True, nullable=False)
    stripe_invoice_id = Column(String, unique=True, index=True, nullable=False)
    status = Column(String, nullable=False, default=InvoiceStatus.DRAFT.value)
    amount_paid_pence = Column(Integer, nullable=False, default=0)
    amount_due_pence = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=True)
    due_date = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    invoice_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    subscription = relationship("TenantSubscription", back_populates="invoices")


# ─── Idempotency ledger ──────────────────────────────────────────────────────

class WebhookEvent(Base):
    """Append-only record of every verified provider event, keyed by its id."""

    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True, default=_uuid)
    stripe_event_id = Column(String, unique=True, index=True, nullable=False)
    event_type = Column(String, index=True, nullable=False)
    payload_json = Column(Text, nullable=False)
    processed = Column(Boolean, default=False, nullable=False, index=True)
    processed_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, default=1, nullable=False)
    last_error = Column(Text, nullable=True)
    received_at = Column(DateTime, default=_now, index=True)
