import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Enum, Index, JSON, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from .db import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStatus(str, enum.Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


JSONPayload = JSONB().with_variant(JSON(), "sqlite")


class AppUser(Base):
    """Subscription-bearing user row, keyed by the auth backend's uid."""
    __tablename__ = "app_users"
    auth_uid = Column(String(36), primary_key=True)
    stripe_customer_id = Column(String(255), unique=True, index=True)
    subscription_status = Column(
        Enum(SubscriptionStatus, name="subscription_status", values_callable=_enum_values),
        nullable=False,
        default=SubscriptionStatus.TRIAL,
    )
    trial_expires_at = Column(DateTime(timezone=True))
    current_period_end = Column(DateTime(timezone=True))
    plan_id = Column(String(255))
    stripe_subscription_id = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    deleted_at = Column(DateTime(timezone=True))


class StripeWebhookEvent(Base):
    """Ledger of every webhook event received, one row per provider event id."""
    __tablename__ = "stripe_webhook_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSONPayload)
    status = Column(
        Enum(WebhookEventStatus, name="webhook_event_status", values_callable=_enum_values),
        nullable=False,
        default=WebhookEventStatus.RECEIVED,
    )
    error = Column(Text)
    user_id = Column(String(36))
    received_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    processed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_stripe_webhook_events_status", "status", "received_at"),
        Index("ix_stripe_webhook_events_type", "event_type"),
    )


class SubscriptionAudit(Base):
    """Append-only before/after snapshots of subscription field changes."""
    __tablename__ = "subscription_audit"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(36), nullable=False, index=True)
    change_type = Column(String(100), nullable=False)
    previous = Column(JSONPayload)
    current = Column(JSONPayload)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
