from typing import List

import stripe
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..config import settings
from ..db import get_db
from ..schemas import (
    AuditEntryOut,
    CheckoutRequest,
    CheckoutSessionOut,
    PortalRequest,
    PortalSessionOut,
    SubscriptionStatusOut,
    TokenData,
)
from ..services import subscriptions

stripe.api_key = settings.stripe_secret_key
stripe.api_version = settings.stripe_api_version
stripe.max_network_retries = settings.stripe_max_network_retries

router = APIRouter()

@router.get('/status', response_model=SubscriptionStatusOut)
def status(current_user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    return subscriptions.get_subscription_status(db, current_user.user_id)

@router.post('/checkout', response_model=CheckoutSessionOut)
def checkout(
    payload: CheckoutRequest,
    current_user: TokenData = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return subscriptions.create_checkout_session(
        db,
        current_user.user_id,
        current_user.email,
        price_id=payload.price_id,
        success_url=str(payload.success_url),
        cancel_url=str(payload.cancel_url),
    )

@router.post('/portal', response_model=PortalSessionOut)
def portal(
    payload: PortalRequest,
    current_user: TokenData = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return subscriptions.create_portal_session(db, current_user.user_id, str(payload.return_url))

@router.get('/audit', response_model=List[AuditEntryOut])
def audit_history(
    limit: int = Query(50, ge=1, le=200),
    current_user: TokenData = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return subscriptions.get_audit_history(db, current_user.user_id, limit=limit)
