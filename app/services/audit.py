from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from app.models import SubscriptionAudit, utc_now

logger = logging.getLogger(__name__)


def snapshot(values: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """JSON-safe copy of a partial subscription state."""
    if values is None:
        return None
    result = {}
    for key, value in values.items():
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        result[key] = value
    return result


class AuditLog:
    """Append-only trail of subscription changes per user.

    Writes are best-effort: the audit trail is for observability, so a
    failed append is logged and discarded instead of failing the caller.
    """

    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        user_id: str,
        change_type: str,
        previous: Optional[Dict[str, Any]],
        current: Optional[Dict[str, Any]],
    ) -> Optional[SubscriptionAudit]:
        try:
            entry = SubscriptionAudit(
                user_id=user_id,
                change_type=change_type,
                previous=snapshot(previous),
                current=snapshot(current),
                created_at=utc_now(),
            )
            self.db.add(entry)
            self.db.commit()
            return entry
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to write audit entry {change_type} for user {user_id}: {e}")
            return None

    def history(self, user_id: str, limit: int = 50) -> List[SubscriptionAudit]:
        return self.db.query(SubscriptionAudit).filter(
            SubscriptionAudit.user_id == user_id
        ).order_by(SubscriptionAudit.created_at.desc()).limit(limit).all()
