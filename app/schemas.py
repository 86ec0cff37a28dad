from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, field_validator

from .models import SubscriptionStatus, WebhookEventStatus


class TokenData(BaseModel):
    user_id: str
    email: Optional[str] = None


# --- Stripe event payloads -------------------------------------------------

def _expandable_id(value):
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


class Price(BaseModel):
    model_config = ConfigDict(extra="allow")
    id: Optional[str] = None


class SubscriptionItem(BaseModel):
    model_config = ConfigDict(extra="allow")
    price: Optional[Price] = None
    current_period_end: Optional[int] = None


class SubscriptionItemList(BaseModel):
    model_config = ConfigDict(extra="allow")
    data: List[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    customer: str
    status: Optional[str] = None
    current_period_end: Optional[int] = None
    canceled_at: Optional[int] = None
    items: SubscriptionItemList = Field(default_factory=SubscriptionItemList)

    @field_validator("customer", mode="before")
    @classmethod
    def normalize_customer(cls, v):
        return _expandable_id(v)

    @property
    def period_end(self) -> Optional[int]:
        # Newer API versions report the period on the subscription item.
        if self.current_period_end is not None:
            return self.current_period_end
        if self.items.data:
            return self.items.data[0].current_period_end
        return None

    @property
    def price_id(self) -> Optional[str]:
        if self.items.data and self.items.data[0].price:
            return self.items.data[0].price.id
        return None


class LinePeriod(BaseModel):
    model_config = ConfigDict(extra="allow")
    start: Optional[int] = None
    end: Optional[int] = None


class InvoiceLine(BaseModel):
    model_config = ConfigDict(extra="allow")
    period: Optional[LinePeriod] = None


class InvoiceLineList(BaseModel):
    model_config = ConfigDict(extra="allow")
    data: List[InvoiceLine] = Field(default_factory=list)


class InvoiceObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None
    parent: Optional[Dict[str, Any]] = None
    lines: InvoiceLineList = Field(default_factory=InvoiceLineList)

    @field_validator("customer", "subscription", mode="before")
    @classmethod
    def normalize_refs(cls, v):
        return _expandable_id(v)

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        details = (self.parent or {}).get("subscription_details") or {}
        return _expandable_id(details.get("subscription"))

    @property
    def period_end(self) -> Optional[int]:
        if self.lines.data and self.lines.data[0].period:
            return self.lines.data[0].period.end
        return None


class EventData(BaseModel):
    model_config = ConfigDict(extra="allow")
    object: Dict[str, Any]


class StripeEvent(BaseModel):
    """A verified webhook event as delivered by Stripe."""
    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False
    data: EventData

    def subscription(self) -> SubscriptionObject:
        return SubscriptionObject.model_validate(self.data.object)

    def invoice(self) -> InvoiceObject:
        return InvoiceObject.model_validate(self.data.object)


# --- Webhook responses -----------------------------------------------------

class WebhookAck(BaseModel):
    received: bool = True
    event_id: str
    already_processed: Optional[bool] = None
    changes_applied: Optional[bool] = None
    error: Optional[str] = None


class WebhookEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: str
    event_type: str
    status: WebhookEventStatus
    user_id: Optional[str] = None
    error: Optional[str] = None
    received_at: datetime
    processed_at: Optional[datetime] = None


# --- Subscriptions ---------------------------------------------------------

class SubscriptionStatusOut(BaseModel):
    subscription_status: SubscriptionStatus
    trial_expires_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    plan_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    has_access: bool


class CheckoutRequest(BaseModel):
    price_id: str = Field(min_length=1)
    success_url: AnyHttpUrl
    cancel_url: AnyHttpUrl


class CheckoutSessionOut(BaseModel):
    checkout_url: str
    session_id: str


class PortalRequest(BaseModel):
    return_url: AnyHttpUrl


class PortalSessionOut(BaseModel):
    portal_url: str


class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    change_type: str
    previous: Optional[Dict[str, Any]] = None
    current: Optional[Dict[str, Any]] = None
    created_at: datetime
