"""
Payment gateway callbacks

Razorpay calls /api/payments/webhook for payment.* and payout.* events.
The route stores the event, processes it once inline and answers 200; a
failed inline attempt is left to the worker's retry queue.
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from typing import Optional
import logging

from ..database import get_db
from ..models.payment_webhook_event import WebhookEventStatus
from ..schemas.common import ok
from ..schemas.payout import WebhookAck, WebhookEventResponse
from ..services.payment_webhook import PaymentWebhookProcessor, PaymentWebhookReceiver
from ..utils.dependencies import Principal, require_admin
from ..utils.rate_limiter import limiter, get_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["Payments"])


@router.post("/webhook")
@limiter.limit(get_rate_limit("webhook"))
async def payment_webhook(request: Request, db: Session = Depends(get_db)):
    # Signature is computed over the raw bytes, so the body is not parsed by FastAPI
    body = await request.body()
    received = PaymentWebhookReceiver(db).receive(body, request.headers)
    if received.ignored:
        return ok(WebhookAck(action="ignored").model_dump(), "Webhook ignored")

    ack = WebhookAck(event_id=received.event.id, duplicate=received.duplicate)
    if not received.duplicate:
        result = PaymentWebhookProcessor(db).process_event(received.event)
        ack.action = result.action
        if result.retry_scheduled:
            logger.info(f"Webhook {received.event.id} queued for retry: {result.action}")

    return ok(ack.model_dump(), "Webhook received")


@router.get("/webhook-events")
def list_webhook_events(
    status: Optional[WebhookEventStatus] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    events = PaymentWebhookProcessor(db).list_events(status=status.value if status else None, limit=limit)
    return ok([WebhookEventResponse.model_validate(e) for e in events])


@router.post("/webhook-events/{event_id}/retry")
def retry_webhook_event(
    event_id: str,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    processor = PaymentWebhookProcessor(db)
    event = processor.requeue(event_id)
    result = processor.process_event(event)
    db.refresh(event)
    logger.info(f"Admin {admin.user_id} reprocessed webhook {event_id}: {result.action}")
    return ok(WebhookEventResponse.model_validate(event), f"Webhook reprocessed: {result.action}")
