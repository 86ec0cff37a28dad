from datetime import datetime, timezone
from typing import List, Optional
import logging

import stripe
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.exceptions import DatabaseError, ExternalServiceError, NoCustomerError, UserNotFoundError
from app.models import AppUser, SubscriptionAudit, SubscriptionStatus, utc_now
from app.schemas import CheckoutSessionOut, PortalSessionOut, SubscriptionStatusOut
from app.services.audit import AuditLog

logger = logging.getLogger(__name__)

ACCESS_STATUSES = {SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def has_access(user: AppUser, now: Optional[datetime] = None) -> bool:
    """Trial or active status, or a trial that has not expired yet."""
    now = now or utc_now()
    trial_expires_at = _as_utc(user.trial_expires_at)
    trial_valid = trial_expires_at is not None and trial_expires_at > now
    return user.subscription_status in ACCESS_STATUSES or trial_valid


def get_user(db: Session, auth_uid: str) -> AppUser:
    try:
        user = db.query(AppUser).filter(
            AppUser.auth_uid == auth_uid,
            AppUser.deleted_at.is_(None),
        ).first()
    except SQLAlchemyError as e:
        raise DatabaseError("get_user", str(e)) from e
    if not user:
        raise UserNotFoundError(auth_uid)
    return user


def get_subscription_status(db: Session, auth_uid: str) -> SubscriptionStatusOut:
    user = get_user(db, auth_uid)
    return SubscriptionStatusOut(
        subscription_status=user.subscription_status,
        trial_expires_at=user.trial_expires_at,
        current_period_end=user.current_period_end,
        plan_id=user.plan_id,
        stripe_subscription_id=user.stripe_subscription_id,
        has_access=has_access(user),
    )


def create_or_get_customer(db: Session, auth_uid: str, email: Optional[str]) -> str:
    """Return the user's Stripe customer id, creating the customer on first use.

    The id is written once and never reassigned.
    """
    user = get_user(db, auth_uid)
    if user.stripe_customer_id:
        return user.stripe_customer_id

    try:
        customer = stripe.Customer.create(email=email, metadata={"auth_uid": auth_uid})
    except stripe.StripeError as e:
        logger.error(f"Stripe API error creating customer for {auth_uid}: {e}")
        raise ExternalServiceError("stripe", str(e), getattr(e, "http_status", None)) from e

    try:
        user.stripe_customer_id = customer.id
        user.updated_at = utc_now()
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("save_stripe_customer", str(e)) from e

    AuditLog(db).append(auth_uid, "stripe_customer_created", None, {"stripe_customer_id": customer.id})
    logger.info(f"Created Stripe customer {customer.id} for user {auth_uid}")
    return customer.id


def create_checkout_session(
    db: Session,
    auth_uid: str,
    email: Optional[str],
    price_id: str,
    success_url: str,
    cancel_url: str,
) -> CheckoutSessionOut:
    customer_id = create_or_get_customer(db, auth_uid, email)
    try:
        session = stripe.checkout.Session.create(
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            allow_promotion_codes=True,
            billing_address_collection="auto",
            metadata={"auth_uid": auth_uid, "customer_id": customer_id},
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe API error creating checkout session for {auth_uid}: {e}")
        raise ExternalServiceError("stripe", str(e), getattr(e, "http_status", None)) from e

    if not session.url:
        raise ExternalServiceError("stripe", "checkout session created but URL is missing")

    return CheckoutSessionOut(checkout_url=session.url, session_id=session.id)


def create_portal_session(db: Session, auth_uid: str, return_url: str) -> PortalSessionOut:
    user = get_user(db, auth_uid)
    if not user.stripe_customer_id:
        raise NoCustomerError()

    try:
        session = stripe.billing_portal.Session.create(
            customer=user.stripe_customer_id,
            return_url=return_url,
        )
    except stripe.StripeError as e:
        logger.error(f"Stripe API error creating portal session for {auth_uid}: {e}")
        raise ExternalServiceError("stripe", str(e), getattr(e, "http_status", None)) from e

    return PortalSessionOut(portal_url=session.url)


def get_audit_history(db: Session, auth_uid: str, limit: int = 50) -> List[SubscriptionAudit]:
    get_user(db, auth_uid)
    return AuditLog(db).history(auth_uid, limit=limit)
