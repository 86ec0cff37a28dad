from fastapi import HTTPException, status
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)

class BillingError(Exception):
    """Base exception for the billing backend."""

    log_level = logging.ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

        # Log the exception for monitoring
        logger.log(self.log_level, f"{self.__class__.__name__}: {message}", extra={"details": self.details})

class WebhookError(BillingError):
    """Base class for webhook ingestion failures."""

    code = "WEBHOOK_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, retryable: bool = False, details: Optional[Dict[str, Any]] = None):
        self.retryable = retryable
        super().__init__(message, {"code": self.code, "retryable": retryable, **(details or {})})

class MissingSignatureError(WebhookError):
    """Raised when the signature header is absent (malformed caller, not a forgery)."""

    code = "MISSING_SIGNATURE"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "Missing stripe-signature header"):
        super().__init__(message, retryable=False)

class SignatureInvalidError(WebhookError):
    """Raised when the payload was not signed by the payment platform."""

    code = "INVALID_SIGNATURE"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message, retryable=False)

class InvalidPayloadError(WebhookError):
    """Raised when a correctly signed body is not a webhook event."""

    code = "INVALID_PAYLOAD"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "Invalid webhook payload"):
        super().__init__(message, retryable=False)

class EventProcessingError(WebhookError):
    """Raised when an event failed after it was logged to the ledger."""

    code = "PROCESSING_ERROR"

    def __init__(self, message: str, event_id: str = None, retryable: bool = True):
        self.event_id = event_id
        super().__init__(message, retryable=retryable, details={"event_id": event_id})

class DatabaseError(BillingError):
    """Raised when database operations fail."""

    def __init__(self, operation: str, error: str):
        message = f"Database operation '{operation}' failed: {error}"
        details = {"operation": operation, "database_error": error}
        self.retryable = True
        super().__init__(message, details)

class DuplicateEventError(BillingError):
    """Raised when a ledger insert loses the unique-constraint race."""

    log_level = logging.INFO

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event {event_id} already recorded", {"event_id": event_id})

class UserNotFoundError(BillingError):
    """Raised when the caller has no (non-deleted) user record."""

    log_level = logging.WARNING

    def __init__(self, user_id: str = None):
        super().__init__("User not found", {"user_id": user_id})

class NoCustomerError(BillingError):
    """Raised when a billing action needs a Stripe customer that does not exist yet."""

    log_level = logging.WARNING

    def __init__(self, message: str = "No subscription found"):
        super().__init__(message)

class AuthenticationError(BillingError):
    """Raised when authentication fails."""

    log_level = logging.WARNING

    def __init__(self, reason: str = "Authentication failed"):
        super().__init__(reason, {"auth_failure_reason": reason})

class TokenExpiredError(AuthenticationError):
    """Raised when JWT token has expired."""

    def __init__(self):
        super().__init__("Authentication token has expired")

class InvalidTokenError(AuthenticationError):
    """Raised when JWT token is invalid."""

    def __init__(self, reason: str = "Invalid token"):
        super().__init__(f"Invalid authentication token: {reason}")

class ExternalServiceError(BillingError):
    """Raised when external service calls fail."""

    def __init__(self, service: str, error: str, status_code: int = None):
        message = f"External service '{service}' error: {error}"
        details = {
            "service": service,
            "error": error,
            "status_code": status_code
        }
        super().__init__(message, details)

# Exception to HTTP status code mapping
def to_http_exception(exc: BillingError) -> HTTPException:
    """Convert a billing exception to an HTTP exception with the matching status code."""

    if isinstance(exc, WebhookError):
        status_code = exc.status_code
    else:
        status_code_mapping = {
            UserNotFoundError: status.HTTP_404_NOT_FOUND,
            NoCustomerError: status.HTTP_404_NOT_FOUND,
            AuthenticationError: status.HTTP_401_UNAUTHORIZED,
            TokenExpiredError: status.HTTP_401_UNAUTHORIZED,
            InvalidTokenError: status.HTTP_401_UNAUTHORIZED,
            DatabaseError: status.HTTP_500_INTERNAL_SERVER_ERROR,
            ExternalServiceError: status.HTTP_502_BAD_GATEWAY,
        }
        status_code = status_code_mapping.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)

    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None

    return HTTPException(
        status_code=status_code,
        detail={
            "error": exc.__class__.__name__,
            "message": exc.message,
        },
        headers=headers,
    )
