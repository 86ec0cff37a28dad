import logging
from fastapi import APIRouter, Depends, HTTPException, Request, Header
from sqlalchemy.orm import Session

from app.db import get_db
from app.config import settings
from app.exceptions import EventProcessingError, WebhookError
from app.schemas import WebhookAck, WebhookEventOut
from app.services.event_ledger import EventLedger
from app.services.signature import verify_webhook
from app.services.stripe_events import Outcome, ProcessResult, WebhookOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)

def _ack(result: ProcessResult) -> WebhookAck:
    if result.outcome is Outcome.FAILED:
        # Internal detail stays in the ledger row
        return WebhookAck(event_id=result.event_id, error="Processing failed")
    return WebhookAck(
        event_id=result.event_id,
        already_processed=result.already_processed,
        changes_applied=result.changes_applied,
    )

@router.post("/payments", response_model=WebhookAck, response_model_exclude_none=True)
async def payments_webhook(
    request: Request,
    db: Session = Depends(get_db),
    stripe_signature: str = Header(None, alias="stripe-signature")
):
    """Stripe webhook receiver.

    Signature failures return 400 so the integration gets fixed. Everything
    after verification returns 200: a processing failure is recorded on the
    ledger row for ops follow-up instead of triggering provider retries.
    """
    # Raw body: any re-serialization invalidates the signature
    body = await request.body()

    try:
        event = verify_webhook(
            body,
            stripe_signature,
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance,
        )
    except WebhookError as e:
        logger.error(f"Webhook authentication failed: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.message)

    logger.info(f"Signature verified for Stripe event {event.id} ({event.type})")

    orchestrator = WebhookOrchestrator(db)
    try:
        result = await orchestrator.process_event(event)
    except EventProcessingError as e:
        result = ProcessResult.failed(e)
        logger.error(f"Processing error for {event.id} (returning 200 to Stripe): {e.message}")

    return _ack(result)

@router.get("/events/{event_id}", response_model=WebhookEventOut)
async def get_event_status(
    event_id: str,
    db: Session = Depends(get_db)
):
    """Get processing status of a Stripe event."""
    event_log = EventLedger(db).get(event_id)

    if not event_log:
        raise HTTPException(status_code=404, detail="Event not found")

    return event_log
