"""TrainKit – Subscription Invoices.

Tracks ``invoice.*`` events for platform subscriptions. Invoices only move
forward (DRAFT → OPEN → PAID); a late ``finalized`` or ``payment_failed``
never drags a PAID invoice back. Tenant status changes go through the
activation gate, and never for a deleted subscription or a canceled tenant.
"""

from __future__ import annotations

import structlog
from sqlalchemy.orm import Session

from trainkit.billing.activation import apply_subscription_status, mark_past_due
from trainkit.billing.events import InvoiceObject, ts_to_dt
from trainkit.core.models import (
    InvoiceStatus,
    SubscriptionInvoice,
    SubscriptionStatus,
    TenantSubscription,
)

logger = structlog.get_logger()


# ── Helpers ──────────────────────────────────────────────────────────────────

def _parent_subscription(db: Session, invoice: InvoiceObject, stripe_event: str) -> TenantSubscription | None:
    sub_id = invoice.subscription_id
    if not sub_id:
        logger.debug("billing.invoice.no_subscription", invoice_id=invoice.id, stripe_event=stripe_event)
        return None
    record = (
        db.query(TenantSubscription)
        .filter(TenantSubscription.stripe_subscription_id == sub_id)
        .first()
    )
    if record is None:
        logger.warning(
            "billing.invoice.subscription_not_found",
            invoice_id=invoice.id,
            subscription_id=sub_id,
            stripe_event=stripe_event,
        )
    return record


def _find_invoice(db: Session, stripe_invoice_id: str) -> SubscriptionInvoice | None:
    return (
        db.query(SubscriptionInvoice)
        .filter(SubscriptionInvoice.stripe_invoice_id == stripe_invoice_id)
        .with_for_update()
        .first()
    )


def _initial_status(raw: str | None) -> InvoiceStatus:
    try:
        return InvoiceStatus((raw or "").upper())
    except ValueError:
        return InvoiceStatus.DRAFT


def _new_invoice(record: TenantSubscription, invoice: InvoiceObject, status: InvoiceStatus) -> SubscriptionInvoice:
    return SubscriptionInvoice(
        subscription_id=record.id,
        stripe_invoice_id=invoice.id,
        status=status.value,
        amount_paid_pence=invoice.amount_paid,
        amount_due_pence=invoice.amount_due,
        currency=invoice.currency,
        due_date=ts_to_dt(invoice.due_date),
        invoice_url=invoice.hosted_invoice_url,
    )


def _leave_tenant_alone(record: TenantSubscription, invoice: InvoiceObject) -> bool:
    if record.status == SubscriptionStatus.CANCELED.value:
        logger.info(
            "billing.invoice.subscription_canceled",
            invoice_id=invoice.id,
            subscription_id=record.stripe_subscription_id,
            tenant_id=record.tenant_id,
        )
        return True
    if record.tenant is None:
        logger.error("billing.invoice.tenant_missing", subscription_id=record.stripe_subscription_id)
        return True
    # Invoices never bring a canceled tenant back; subscription events do.
    if record.tenant.subscription_status == SubscriptionStatus.CANCELED.value:
        logger.info(
            "billing.invoice.tenant_canceled",
            invoice_id=invoice.id,
            subscription_id=record.stripe_subscription_id,
            tenant_id=record.tenant_id,
        )
        return True
    return False


# ── Handlers ─────────────────────────────────────────────────────────────────

def handle_invoice_created(db: Session, obj: dict) -> None:
    invoice = InvoiceObject.model_validate(obj)
    record = _parent_subscription(db, invoice, "created")
    if record is None:
        return

    if _find_invoice(db, invoice.id) is not None:
        logger.info("billing.invoice.already_recorded", invoice_id=invoice.id)
        return

    status = _initial_status(invoice.status)
    db.add(_new_invoice(record, invoice, status))
    logger.info(
        "billing.invoice.created",
        invoice_id=invoice.id,
        subscription_id=record.stripe_subscription_id,
        status=status.value,
        amount_due=invoice.amount_due,
    )


def handle_invoice_finalized(db: Session, obj: dict) -> None:
    invoice = InvoiceObject.model_validate(obj)
    row = _find_invoice(db, invoice.id)
    if row is None:
        logger.warning("billing.invoice.not_found", invoice_id=invoice.id, stripe_event="finalized")
        return

    if invoice.hosted_invoice_url:
        row.invoice_url = invoice.hosted_invoice_url
    if row.status == InvoiceStatus.PAID.value:
        logger.info("billing.invoice.finalized_after_paid", invoice_id=invoice.id)
        return
    row.status = InvoiceStatus.OPEN.value
    logger.info("billing.invoice.finalized", invoice_id=invoice.id)


def handle_invoice_payment_succeeded(db: Session, obj: dict) -> None:
    invoice = InvoiceObject.model_validate(obj)
    record = _parent_subscription(db, invoice, "payment_succeeded")
    if record is None:
        return

    row = _find_invoice(db, invoice.id)
    if row is None:
        row = _new_invoice(record, invoice, InvoiceStatus.PAID)
        db.add(row)
    row.status = InvoiceStatus.PAID.value
    row.amount_paid_pence = invoice.amount_paid
    row.amount_due_pence = invoice.amount_due
    row.paid_at = row.paid_at or invoice.paid_at
    if invoice.currency:
        row.currency = invoice.currency
    if invoice.hosted_invoice_url:
        row.invoice_url = invoice.hosted_invoice_url

    logger.info(
        "billing.invoice.paid",
        invoice_id=invoice.id,
        subscription_id=record.stripe_subscription_id,
        amount_paid=invoice.amount_paid,
    )

    if _leave_tenant_alone(record, invoice):
        return
    apply_subscription_status(record.tenant, SubscriptionStatus.ACTIVE)


def handle_invoice_payment_failed(db: Session, obj: dict, *, grace: bool = True) -> None:
    invoice = InvoiceObject.model_validate(obj)
    record = _parent_subscription(db, invoice, "payment_failed")
    if record is None:
        return

    row = _find_invoice(db, invoice.id)
    if row is None:
        row = _new_invoice(record, invoice, InvoiceStatus.OPEN)
        db.add(row)
    elif row.status == InvoiceStatus.PAID.value:
        logger.info("billing.invoice.failure_after_paid", invoice_id=invoice.id)
        return
    row.status = InvoiceStatus.OPEN.value
    row.amount_due_pence = invoice.amount_due
    if invoice.hosted_invoice_url:
        row.invoice_url = invoice.hosted_invoice_url

    logger.warning(
        "billing.invoice.payment_failed",
        invoice_id=invoice.id,
        subscription_id=record.stripe_subscription_id,
        amount_due=invoice.amount_due,
    )

    if _leave_tenant_alone(record, invoice):
        return
    mark_past_due(record.tenant, grace=grace)
