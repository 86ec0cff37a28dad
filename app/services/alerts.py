import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class FailedEventAlerter(Protocol):
    def notify(self, event_id: str, event_type: str, error: str) -> None: ...


class LoggingAlerter:
    """Reports failed ledger rows through the log pipeline.

    Stripe receives 200 for processing failures and will not redeliver, so
    these rows need an operator to reprocess them.
    """

    def notify(self, event_id: str, event_type: str, error: str) -> None:
        logger.critical(
            f"Webhook event {event_id} ({event_type}) failed and needs reprocessing: {error}",
            extra={"event_id": event_id, "event_type": event_type},
        )
