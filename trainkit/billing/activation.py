"""TrainKit – Tenant Activation Gate.

``Tenant.active`` is derived from the tenant's subscription status and is
written only through this module. Subscription and invoice handlers call
``apply_subscription_status`` with the status they learned; the boolean rule
lives here once so the two writers can never disagree.
"""

from __future__ import annotations

from datetime import datetime

import structlog

from trainkit.core.models import SubscriptionStatus, Tenant

logger = structlog.get_logger()

OPERATIONAL_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


def is_operational(status: SubscriptionStatus | str | None) -> bool:
    if status is None:
        return False
    try:
        return SubscriptionStatus(status) in OPERATIONAL_STATUSES
    except ValueError:
        return False


def apply_subscription_status(tenant: Tenant, status: SubscriptionStatus) -> None:
    """Set the denormalized status and recompute ``active`` from it."""
    was_active = tenant.active
    tenant.subscription_status = status.value
    tenant.active = is_operational(status)
    if was_active != tenant.active:
        logger.info(
            "billing.tenant.activation_changed",
            tenant_id=tenant.id,
            status=status.value,
            active=tenant.active,
        )


def mark_past_due(tenant: Tenant, *, grace: bool) -> None:
    """Record a failed renewal.

    With ``grace`` the tenant keeps operating until the subscription itself is
    deleted; without it the status goes through the normal gate.
    """
    if grace:
        tenant.subscription_status = SubscriptionStatus.PAST_DUE.value
        logger.info("billing.tenant.past_due_grace", tenant_id=tenant.id, active=tenant.active)
        return
    apply_subscription_status(tenant, SubscriptionStatus.PAST_DUE)


def sync_billing_period(
    tenant: Tenant,
    ends_at: datetime | None,
    cancel_at_period_end: bool,
) -> None:
    tenant.subscription_ends_at = ends_at
    tenant.cancel_at_period_end = cancel_at_period_end
