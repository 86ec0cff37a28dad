from datetime import datetime
from typing import Dict, Optional
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.exceptions import DatabaseError, DuplicateEventError
from app.models import StripeWebhookEvent, WebhookEventStatus, utc_now
from app.schemas import StripeEvent

logger = logging.getLogger(__name__)


class EventLedger:
    """Persistence for webhook event processing state.

    The unique constraint on ``event_id`` is the only concurrency control:
    of two requests inserting the same event, exactly one wins.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, event_id: str) -> Optional[StripeWebhookEvent]:
        return self.db.query(StripeWebhookEvent).filter(
            StripeWebhookEvent.event_id == event_id
        ).first()

    def exists(self, event_id: str) -> bool:
        try:
            return self.db.query(StripeWebhookEvent.id).filter(
                StripeWebhookEvent.event_id == event_id
            ).first() is not None
        except SQLAlchemyError as e:
            raise DatabaseError("ledger_exists", str(e)) from e

    def insert(
        self,
        event: StripeEvent,
        status: WebhookEventStatus = WebhookEventStatus.PROCESSING,
    ) -> StripeWebhookEvent:
        """Record first sight of an event. Raises DuplicateEventError if it is already recorded."""
        row = StripeWebhookEvent(
            event_id=event.id,
            event_type=event.type,
            payload=event.model_dump(mode="json"),
            status=status,
            received_at=utc_now(),
        )
        try:
            self.db.add(row)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise DuplicateEventError(event.id) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("ledger_insert", str(e)) from e
        return row

    def mark_processed(self, event_id: str, user_id: Optional[str] = None) -> None:
        try:
            self._update(event_id, {
                "status": WebhookEventStatus.PROCESSED,
                "processed_at": utc_now(),
                "user_id": user_id,
                "error": None,
            })
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DatabaseError("ledger_mark_processed", str(e)) from e

    def mark_failed(self, event_id: str, message: str) -> None:
        """Record a terminal failure. Never raises; the caller is already handling one."""
        try:
            self._update(event_id, {
                "status": WebhookEventStatus.FAILED,
                "processed_at": utc_now(),
                "error": message,
            })
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to mark event {event_id} as failed: {e}")

    def count_by_status(self, since: Optional[datetime] = None) -> Dict[str, int]:
        query = self.db.query(StripeWebhookEvent.status, func.count(StripeWebhookEvent.id))
        if since is not None:
            query = query.filter(StripeWebhookEvent.received_at >= since)
        counts = {status.value: 0 for status in WebhookEventStatus}
        for status, count in query.group_by(StripeWebhookEvent.status).all():
            counts[WebhookEventStatus(status).value] = count
        return counts

    def count_stuck(self, older_than: datetime) -> int:
        """Rows left in ``processing`` by a crash between ledger insert and completion."""
        return self.db.query(StripeWebhookEvent).filter(
            StripeWebhookEvent.status == WebhookEventStatus.PROCESSING,
            StripeWebhookEvent.received_at < older_than,
        ).count()

    def _update(self, event_id: str, values: dict) -> None:
        self.db.query(StripeWebhookEvent).filter(
            StripeWebhookEvent.event_id == event_id
        ).update(values, synchronize_session="fetch")
        self.db.commit()
