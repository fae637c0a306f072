"""TrainKit – Subscription Lifecycle.

Keeps ``TenantSubscription`` in step with Stripe's
``customer.subscription.*`` events and pushes the resulting status through the
activation gate. A CANCELED subscription is final for its Stripe id; a tenant
comes back only through a new subscription.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy.orm import Session

from trainkit.billing.activation import apply_subscription_status, sync_billing_period
from trainkit.billing.events import SubscriptionObject, ts_to_dt
from trainkit.billing.notifications import TrialEndingNotice
from trainkit.core.models import SubscriptionStatus, Tenant, TenantSubscription

logger = structlog.get_logger()


# ── Helpers ──────────────────────────────────────────────────────────────────

def _find(db: Session, stripe_subscription_id: str) -> TenantSubscription | None:
    return (
        db.query(TenantSubscription)
        .filter(TenantSubscription.stripe_subscription_id == stripe_subscription_id)
        .with_for_update()
        .first()
    )


def _parse_status(sub: SubscriptionObject) -> SubscriptionStatus | None:
    try:
        return SubscriptionStatus.from_stripe(sub.status)
    except ValueError:
        logger.error("billing.subscription.unknown_status", subscription_id=sub.id, status=sub.status)
        return None


def _is_canceled(record: TenantSubscription) -> bool:
    return record.status == SubscriptionStatus.CANCELED.value


def _write_fields(record: TenantSubscription, sub: SubscriptionObject, status: SubscriptionStatus) -> None:
    record.status = status.value
    record.current_period_start = sub.period_start
    record.current_period_end = sub.period_end
    record.trial_start = ts_to_dt(sub.trial_start)
    record.trial_end = ts_to_dt(sub.trial_end)
    record.canceled_at = ts_to_dt(sub.canceled_at)
    record.cancel_at_period_end = sub.cancel_at_period_end
    if sub.price_id:
        record.stripe_price_id = sub.price_id
    if sub.customer:
        record.stripe_customer_id = sub.customer


def _sync_tenant(tenant: Tenant | None, record: TenantSubscription, status: SubscriptionStatus) -> None:
    if tenant is None:
        logger.error("billing.subscription.tenant_missing", subscription_id=record.stripe_subscription_id)
        return
    apply_subscription_status(tenant, status)
    sync_billing_period(tenant, record.current_period_end, record.cancel_at_period_end)


# ── Handlers ─────────────────────────────────────────────────────────────────

def handle_subscription_created(db: Session, obj: dict) -> None:
    sub = SubscriptionObject.model_validate(obj)
    tenant_id = sub.tenant_id
    if not tenant_id:
        logger.error("billing.subscription.missing_tenant_id", subscription_id=sub.id)
        return

    status = _parse_status(sub)
    if status is None:
        return

    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).with_for_update().first()
    if tenant is None:
        logger.error("billing.subscription.tenant_not_found", subscription_id=sub.id, tenant_id=tenant_id)
        return

    record = _find(db, sub.id)
    if record is not None and _is_canceled(record):
        logger.warning("billing.subscription.event_after_cancel", subscription_id=sub.id, stripe_event="created")
        return

    if record is None:
        record = TenantSubscription(tenant_id=tenant.id, stripe_subscription_id=sub.id)
        db.add(record)
        logger.info("billing.subscription.created", subscription_id=sub.id, tenant_id=tenant.id, status=status.value)
    else:
        # "updated" got here first, or Stripe redelivered: merge.
        logger.info("billing.subscription.merged", subscription_id=sub.id, tenant_id=tenant.id, status=status.value)

    _write_fields(record, sub, status)
    _sync_tenant(tenant, record, status)


def handle_subscription_updated(db: Session, obj: dict) -> None:
    sub = SubscriptionObject.model_validate(obj)
    record = _find(db, sub.id)
    if record is None:
        logger.warning("billing.subscription.not_found", subscription_id=sub.id, stripe_event="updated")
        return
    if _is_canceled(record):
        logger.warning("billing.subscription.event_after_cancel", subscription_id=sub.id, stripe_event="updated")
        return

    status = _parse_status(sub)
    if status is None:
        return

    _write_fields(record, sub, status)
    _sync_tenant(record.tenant, record, status)
    logger.info(
        "billing.subscription.updated",
        subscription_id=sub.id,
        tenant_id=record.tenant_id,
        status=status.value,
        cancel_at_period_end=record.cancel_at_period_end,
    )


def handle_subscription_deleted(db: Session, obj: dict) -> None:
    sub = SubscriptionObject.model_validate(obj)
    record = _find(db, sub.id)
    if record is None:
        logger.warning("billing.subscription.not_found", subscription_id=sub.id, stripe_event="deleted")
        return

    record.status = SubscriptionStatus.CANCELED.value
    record.canceled_at = record.canceled_at or ts_to_dt(sub.canceled_at) or datetime.now(timezone.utc)
    record.cancel_at_period_end = False

    tenant = record.tenant
    if tenant is None:
        logger.error("billing.subscription.tenant_missing", subscription_id=sub.id)
        return
    apply_subscription_status(tenant, SubscriptionStatus.CANCELED)
    sync_billing_period(tenant, record.current_period_end, False)
    logger.info("billing.subscription.deleted", subscription_id=sub.id, tenant_id=tenant.id)


def handle_trial_will_end(db: Session, obj: dict) -> TrialEndingNotice | None:
    sub = SubscriptionObject.model_validate(obj)
    record = (
        db.query(TenantSubscription)
        .filter(TenantSubscription.stripe_subscription_id == sub.id)
        .first()
    )
    if record is None:
        logger.warning("billing.subscription.not_found", subscription_id=sub.id, stripe_event="trial_will_end")
        return None

    trial_end = ts_to_dt(sub.trial_end) or record.trial_end
    logger.info(
        "billing.subscription.trial_will_end",
        subscription_id=sub.id,
        tenant_id=record.tenant_id,
        trial_end=trial_end.isoformat() if trial_end else None,
    )
    return TrialEndingNotice(
        tenant_id=record.tenant_id,
        stripe_subscription_id=sub.id,
        trial_end=trial_end,
    )
