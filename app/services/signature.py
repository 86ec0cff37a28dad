"""Verification of inbound Stripe webhook deliveries.

The signature covers the exact bytes Stripe sent, so the body must reach
this module before anything parses or re-serializes it.
"""
import json
import logging
from typing import Optional

import stripe
from pydantic import ValidationError

from app.exceptions import InvalidPayloadError, MissingSignatureError, SignatureInvalidError
from app.schemas import StripeEvent

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 300


def verify_webhook(
    payload: bytes,
    signature: Optional[str],
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE,
) -> StripeEvent:
    """Check the ``stripe-signature`` header against the raw body and parse the event.

    Raises:
        MissingSignatureError: the header is absent or empty.
        SignatureInvalidError: the signature does not match, or its timestamp
            is outside ``tolerance`` seconds.
        InvalidPayloadError: the body is correctly signed but is not an event.
    """
    if not signature:
        raise MissingSignatureError()

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise SignatureInvalidError("Webhook payload is not valid UTF-8")

    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        raise SignatureInvalidError()

    try:
        return StripeEvent.model_validate(json.loads(body))
    except (ValueError, ValidationError) as e:
        logger.error(f"Signed webhook payload could not be parsed: {e}")
        raise InvalidPayloadError()
