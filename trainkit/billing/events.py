"""TrainKit – Stripe event payload schemas.

Pydantic models for the parts of Stripe's event JSON the reconciliation
handlers read. Unknown fields are ignored; everything optional on Stripe's
side is optional here too.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def ts_to_dt(ts: int | None) -> datetime | None:
    """Unix seconds → aware UTC datetime (``None`` stays ``None``)."""
    if ts:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    return None


def _expandable_id(value: Any) -> Any:
    # Stripe sends either "cus_123" or the expanded object {"id": "cus_123", ...}
    if isinstance(value, dict):
        return value.get("id")
    return value


class StripeEvent(BaseModel):
    """Envelope of every webhook delivery."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    type: str = ""
    created: int | None = None
    livemode: bool = False
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def data_object(self) -> dict[str, Any]:
        obj = self.data.get("object")
        return obj if isinstance(obj, dict) else {}


# ─── Purchase references ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class SingleBookingRef:
    booking_id: str


@dataclass(frozen=True)
class BundleBookingRef:
    bundle_booking_id: str


PurchaseReference = Union[SingleBookingRef, BundleBookingRef]


class PaymentIntentObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    amount: int = 0
    amount_received: int = 0
    currency: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_metadata(cls, value: Any) -> Any:
        return value or {}

    def purchase_reference(self) -> PurchaseReference | None:
        """Resolve the booking this payment is for, once, from the metadata tag."""
        meta = self.metadata
        bundle_booking_id = meta.get("bundleBookingId")
        booking_id = meta.get("bookingId")
        if meta.get("bookingType") == "bundle" and bundle_booking_id:
            return BundleBookingRef(bundle_booking_id=str(bundle_booking_id))
        if booking_id:
            return SingleBookingRef(booking_id=str(booking_id))
        return None


class SubscriptionObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str = ""
    customer: str | None = None
    current_period_start: int | None = None
    current_period_end: int | None = None
    trial_start: int | None = None
    trial_end: int | None = None
    canceled_at: int | None = None
    cancel_at_period_end: bool = False
    items: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("customer", mode="before")
    @classmethod
    def _customer_id(cls, value: Any) -> Any:
        return _expandable_id(value)

    @field_validator("items", "metadata", mode="before")
    @classmethod
    def _none_to_dict(cls, value: Any) -> Any:
        return value or {}

    @field_validator("cancel_at_period_end", mode="before")
    @classmethod
    def _none_to_false(cls, value: Any) -> Any:
        return bool(value)

    @property
    def first_item(self) -> dict[str, Any]:
        data = self.items.get("data") or []
        return data[0] if data and isinstance(data[0], dict) else {}

    @property
    def price_id(self) -> str | None:
        return (self.first_item.get("price") or {}).get("id")

    @property
    def tenant_id(self) -> str | None:
        value = self.metadata.get("tenantId")
        return str(value) if value else None

    @property
    def period_start(self) -> datetime | None:
        # Newer API versions report the billing period on the item only.
        return ts_to_dt(self.current_period_start or self.first_item.get("current_period_start"))

    @property
    def period_end(self) -> datetime | None:
        return ts_to_dt(self.current_period_end or self.first_item.get("current_period_end"))


class InvoiceObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    subscription: str | None = None
    status: str | None = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str | None = None
    due_date: int | None = None
    hosted_invoice_url: str | None = None
    status_transitions: dict[str, Any] = Field(default_factory=dict)
    parent: dict[str, Any] = Field(default_factory=dict)

    @field_validator("subscription", mode="before")
    @classmethod
    def _subscription_id(cls, value: Any) -> Any:
        return _expandable_id(value)

    @field_validator("status_transitions", "parent", mode="before")
    @classmethod
    def _none_to_dict(cls, value: Any) -> Any:
        return value or {}

    @field_validator("amount_paid", "amount_due", mode="before")
    @classmethod
    def _none_to_zero(cls, value: Any) -> Any:
        return value or 0

    @property
    def subscription_id(self) -> str | None:
        if self.subscription:
            return self.subscription
        # 2025+ API versions moved the link under parent.subscription_details
        details = self.parent.get("subscription_details") or {}
        return _expandable_id(details.get("subscription"))

    @property
    def paid_at(self) -> datetime:
        return ts_to_dt(self.status_transitions.get("paid_at")) or datetime.now(timezone.utc)
