"""Translation of Stripe events into partial subscription-state updates.

Every function here is pure: it reads the event and returns the fields to
write. A field absent from ``StateUpdate.fields`` keeps its stored value.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from app.models import SubscriptionStatus
from app.schemas import StripeEvent


@dataclass(frozen=True)
class StateUpdate:
    change_type: str
    customer_id: str
    fields: Dict[str, Any] = field(default_factory=dict)


# Stripe subscription status -> internal status. Anything else keeps the stored value.
STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.CANCELED,
    "trialing": SubscriptionStatus.TRIAL,
}


def from_epoch(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def map_subscription_created(event: StripeEvent) -> Optional[StateUpdate]:
    subscription = event.subscription()
    fields = {
        "stripe_subscription_id": subscription.id,
        "subscription_status": SubscriptionStatus.ACTIVE,
        # A paid subscription ends the trial.
        "trial_expires_at": None,
    }
    if subscription.period_end is not None:
        fields["current_period_end"] = from_epoch(subscription.period_end)
    if subscription.price_id:
        fields["plan_id"] = subscription.price_id
    return StateUpdate("subscription_created", subscription.customer, fields)


def map_subscription_updated(event: StripeEvent) -> Optional[StateUpdate]:
    subscription = event.subscription()
    fields = {}
    status = STRIPE_STATUS_MAP.get(subscription.status)
    if status is not None:
        fields["subscription_status"] = status
    if subscription.period_end is not None:
        fields["current_period_end"] = from_epoch(subscription.period_end)
    if subscription.price_id:
        fields["plan_id"] = subscription.price_id
    return StateUpdate("subscription_updated", subscription.customer, fields)


def map_subscription_deleted(event: StripeEvent) -> Optional[StateUpdate]:
    subscription = event.subscription()
    fields = {"subscription_status": SubscriptionStatus.CANCELED}
    if subscription.canceled_at is not None:
        fields["current_period_end"] = from_epoch(subscription.canceled_at)
    return StateUpdate("subscription_canceled", subscription.customer, fields)


def map_payment_succeeded(event: StripeEvent) -> Optional[StateUpdate]:
    invoice = event.invoice()
    if not invoice.subscription_id or not invoice.customer:
        return None
    fields = {"subscription_status": SubscriptionStatus.ACTIVE}
    if invoice.period_end is not None:
        fields["current_period_end"] = from_epoch(invoice.period_end)
    return StateUpdate("payment_succeeded", invoice.customer, fields)


def map_payment_failed(event: StripeEvent) -> Optional[StateUpdate]:
    invoice = event.invoice()
    if not invoice.subscription_id or not invoice.customer:
        return None
    return StateUpdate("payment_failed", invoice.customer, {"subscription_status": SubscriptionStatus.PAST_DUE})


EVENT_MAPPERS: Dict[str, Callable[[StripeEvent], Optional[StateUpdate]]] = {
    "customer.subscription.created": map_subscription_created,
    "customer.subscription.updated": map_subscription_updated,
    "customer.subscription.deleted": map_subscription_deleted,
    "invoice.payment_succeeded": map_payment_succeeded,
    "invoice.payment_failed": map_payment_failed,
}

SUPPORTED_EVENTS = frozenset(EVENT_MAPPERS)


def map_event(event: StripeEvent) -> Optional[StateUpdate]:
    """Return the update for a supported event, or None when the event changes nothing."""
    return EVENT_MAPPERS[event.type](event)
