"""TrainKit – Event Dispatcher.

Maps a Stripe event type to exactly one handler. Handlers take the open
session and the event's ``data.object`` and may return a notification for
the processor to deliver after commit.
"""

from __future__ import annotations

from functools import partial
from typing import Any, Callable

from sqlalchemy.orm import Session

from trainkit.billing import invoices, payments, subscriptions

Handler = Callable[[Session, dict], Any]


class EventDispatcher:
    def __init__(self, handlers: dict[str, Handler] | None = None) -> None:
        self._handlers: dict[str, Handler] = dict(handlers or {})

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    def dispatch(self, db: Session, event_type: str, obj: dict) -> Any:
        handler = self._handlers.get(event_type)
        if handler is None:
            raise KeyError(event_type)
        return handler(db, obj)


def build_dispatcher(past_due_grace: bool = True) -> EventDispatcher:
    """The production handler table."""
    return EventDispatcher({
        "payment_intent.succeeded": payments.handle_payment_succeeded,
        "payment_intent.payment_failed": payments.handle_payment_failed,
        "customer.subscription.created": subscriptions.handle_subscription_created,
        "customer.subscription.updated": subscriptions.handle_subscription_updated,
        "customer.subscription.deleted": subscriptions.handle_subscription_deleted,
        "customer.subscription.trial_will_end": subscriptions.handle_trial_will_end,
        "invoice.created": invoices.handle_invoice_created,
        "invoice.finalized": invoices.handle_invoice_finalized,
        "invoice.payment_succeeded": invoices.handle_invoice_payment_succeeded,
        "invoice.payment_failed": partial(invoices.handle_invoice_payment_failed, grace=past_due_grace),
    })
