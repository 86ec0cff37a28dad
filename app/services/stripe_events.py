from dataclasses import dataclass
from typing import Optional
import enum
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.exceptions import DatabaseError, DuplicateEventError, EventProcessingError
from app.models import AppUser, utc_now
from app.schemas import StripeEvent
from app.services.alerts import FailedEventAlerter, LoggingAlerter
from app.services.audit import AuditLog
from app.services.event_ledger import EventLedger
from app.services.subscription_mapper import SUPPORTED_EVENTS, StateUpdate, map_event

logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass(frozen=True)
class ProcessResult:
    outcome: Outcome
    event_id: str
    user_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def already_processed(self) -> bool:
        return self.outcome is Outcome.ALREADY_PROCESSED

    @property
    def changes_applied(self) -> bool:
        return self.outcome is Outcome.PROCESSED

    @classmethod
    def failed(cls, exc: EventProcessingError) -> "ProcessResult":
        return cls(Outcome.FAILED, exc.event_id, error=exc.message)


class WebhookOrchestrator:
    """Apply verified Stripe events to user subscriptions exactly once.

    Stripe delivers at least once; the ledger row keyed by the event id turns
    that into exactly-once application. Each event ends ``processed`` or
    ``failed`` within the request that first logged it.
    """

    def __init__(self, db: Session, alerter: Optional[FailedEventAlerter] = None):
        self.db = db
        self.ledger = EventLedger(db)
        self.audit = AuditLog(db)
        self.alerter = alerter or LoggingAlerter()

    async def process_event(self, event: StripeEvent) -> ProcessResult:
        """
        Process a verified event with insert-first idempotency.

        Returns:
            ProcessResult tagged PROCESSED, ALREADY_PROCESSED or IGNORED.

        Raises:
            EventProcessingError: the event was logged but could not be applied;
                the ledger row is marked failed.
        """
        logger.info(f"Processing Stripe event {event.id} ({event.type})")

        try:
            if self.ledger.exists(event.id):
                return self._already_processed(event)

            try:
                self.ledger.insert(event)
            except DuplicateEventError:
                # A concurrent delivery of the same event won the insert.
                return self._already_processed(event)

            if event.type not in SUPPORTED_EVENTS:
                logger.info(f"Ignoring unsupported event type: {event.type}")
                self.ledger.mark_processed(event.id)
                return ProcessResult(Outcome.IGNORED, event.id)

            result = self._dispatch(event)
            self.ledger.mark_processed(event.id, result.user_id)

        except Exception as e:
            self.db.rollback()
            message = str(e) or e.__class__.__name__
            self.ledger.mark_failed(event.id, message)
            self._alert(event, message)
            logger.error(f"Failed to process event {event.id}: {message}")
            raise EventProcessingError(message, event_id=event.id) from e

        logger.info(
            f"Processed Stripe event {event.id} ({event.type}): "
            f"user={result.user_id} changes_applied={result.changes_applied}"
        )
        return result

    def _already_processed(self, event: StripeEvent) -> ProcessResult:
        logger.info(f"Event {event.id} already processed")
        return ProcessResult(Outcome.ALREADY_PROCESSED, event.id)

    def _dispatch(self, event: StripeEvent) -> ProcessResult:
        update = map_event(event)
        if update is None:
            logger.info(f"Event {event.id} is not linked to a subscription, ignoring")
            return ProcessResult(Outcome.IGNORED, event.id)

        user = self._find_user_by_customer(update.customer_id)
        if user is None:
            # Out-of-order delivery can precede the customer being linked.
            logger.warning(f"User not found for customer: {update.customer_id}")
            return ProcessResult(Outcome.IGNORED, event.id)

        user_id = self._apply(user, update)
        return ProcessResult(Outcome.PROCESSED, event.id, user_id=user_id)

    def _find_user_by_customer(self, customer_id: str) -> Optional[AppUser]:
        try:
            return self.db.query(AppUser).filter(
                AppUser.stripe_customer_id == customer_id,
                AppUser.deleted_at.is_(None),
            ).first()
        except SQLAlchemyError as e:
            raise DatabaseError("find_user_by_customer", str(e)) from e

    def _apply(self, user: AppUser, update: StateUpdate) -> str:
        """Write the update, then append the audit entry. Returns the user's auth uid."""
        user_id = user.auth_uid
        previous = {name: getattr(user, name) for name in update.fields}
        previous.setdefault("subscription_status", user.subscription_status)

        try:
            for name, value in update.fields.items():
                setattr(user, name, value)
            user.updated_at = utc_now()
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("update_user", str(e)) from e

        # Best effort: the update above is already committed.
        self.audit.append(user_id, update.change_type, previous, update.fields)

        logger.info(
            f"Updated user {user_id}: {update.change_type} "
            f"({previous['subscription_status']} -> {update.fields.get('subscription_status', 'unchanged')})"
        )
        return user_id

    def _alert(self, event: StripeEvent, message: str) -> None:
        try:
            self.alerter.notify(event.id, event.type, message)
        except Exception as e:
            logger.error(f"Failed-event alerter raised for {event.id}: {e}")
