"""TrainKit – Post-commit billing notifications.

Handlers return one of the dataclasses below when something happened that a
customer or tenant admin should hear about. The processor hands them to a
``BillingNotifier`` after the transaction commits; a notifier failure never
fails the webhook.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from trainkit.core.instrumentation import mask_email

logger = structlog.get_logger()


@dataclass
class BookingConfirmation:
    kind: str  # "course" | "bundle"
    booking_id: str
    tenant_id: str
    customer_email: str | None
    amount_pence: int
    session_ids: list[str] = field(default_factory=list)


@dataclass
class TrialEndingNotice:
    tenant_id: str
    stripe_subscription_id: str
    trial_end: datetime | None


class BillingNotifier(ABC):
    """Outbound side of billing events (mail, chat, whatever the tenant uses)."""

    @abstractmethod
    def booking_confirmed(self, confirmation: BookingConfirmation) -> None:
        ...

    @abstractmethod
    def trial_ending(self, notice: TrialEndingNotice) -> None:
        ...


class LoggingNotifier(BillingNotifier):
    """Default notifier: records the notification as a structured log line."""

    def booking_confirmed(self, confirmation: BookingConfirmation) -> None:
        logger.info(
            "billing.notify.booking_confirmed",
            kind=confirmation.kind,
            booking_id=confirmation.booking_id,
            tenant_id=confirmation.tenant_id,
            customer_email=mask_email(confirmation.customer_email or ""),
            sessions=len(confirmation.session_ids),
        )

    def trial_ending(self, notice: TrialEndingNotice) -> None:
        logger.info(
            "billing.notify.trial_ending",
            tenant_id=notice.tenant_id,
            subscription_id=notice.stripe_subscription_id,
            trial_end=notice.trial_end.isoformat() if notice.trial_end else None,
        )
