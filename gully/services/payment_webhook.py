"""
Razorpay Webhook Handling

Receiver (fast path, inside the HTTP request):
1. Verify X-Razorpay-Signature
2. Validate size and that the body is a JSON object; a signed event with
   no payment or payout entity is acknowledged and dropped
3. Dedup on x-razorpay-event-id or payload hash
4. Store the raw event

Processor (inline once, then by the background worker):
- payment.* events -> OrderReconciliationEngine.apply_payment_status
- payout.* events  -> PayoutManager.handle_gateway_event
- A webhook that arrives before its order is committed is retried with
  backoff until max_attempts, then marked failed and logged for follow-up
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Mapping, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..config import settings
from ..models.payment_webhook_event import PaymentWebhookEvent, WebhookEventStatus, WebhookEntityType
from ..utils.clock import utcnow
from ..utils.db_helpers import get_pending_with_skip_locked
from ..utils.errors import NotFound, Unauthorized, ValidationError
from .order_service import OrderReconciliationEngine
from .payout_service import PayoutManager
from .razorpay_client import RazorpayClient, verify_webhook_signature

logger = logging.getLogger(__name__)


# Maximum payload size (256KB)
MAX_PAYLOAD_SIZE = 256 * 1024

SIGNATURE_HEADER = "x-razorpay-signature"
EVENT_ID_HEADER = "x-razorpay-event-id"


@dataclass
class WebhookReceiveResult:
    event: Optional[PaymentWebhookEvent]
    duplicate: bool = False
    ignored: bool = False


@dataclass
class WebhookProcessResult:
    success: bool
    action: str  # applied, already_applied, ignored, order_not_found, payout_not_found, error
    retry_scheduled: bool = False
    error: Optional[str] = None


def extract_entity(payload: dict) -> Tuple[WebhookEntityType, dict]:
    """Pull the payment or payout entity out of a Razorpay event body."""
    body = payload.get("payload")
    if not isinstance(body, dict):
        raise ValidationError("Webhook payload is missing 'payload'")

    for entity_type in (WebhookEntityType.PAYMENT, WebhookEntityType.PAYOUT):
        wrapper = body.get(entity_type.value)
        if isinstance(wrapper, dict) and isinstance(wrapper.get("entity"), dict):
            return entity_type, wrapper["entity"]

    raise ValidationError("Webhook payload has no payment or payout entity")


class PaymentWebhookReceiver:
    def __init__(self, db: Session, webhook_secret: Optional[str] = None):
        self.db = db
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.razorpay_webhook_secret

    def _compute_hash(self, payload: dict) -> str:
        normalized = json.dumps(payload, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(normalized.encode()).hexdigest()

    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        """True if valid or no secret configured."""
        if not self.webhook_secret:
            return True
        return verify_webhook_signature(body, headers.get(SIGNATURE_HEADER), self.webhook_secret)

    def receive(self, body: bytes, headers: Mapping[str, str]) -> WebhookReceiveResult:
        """
        Validate and store one delivery.

        Raises:
            Unauthorized: bad or missing signature
            ValidationError: oversized or unparsable body
        """
        headers = {k.lower(): v for k, v in headers.items()}

        if not self.verify_signature(body, headers):
            logger.warning("Rejected webhook with invalid signature")
            raise Unauthorized("Invalid webhook signature")

        if len(body) > MAX_PAYLOAD_SIZE:
            raise ValidationError(f"Payload too large: {len(body)} > {MAX_PAYLOAD_SIZE}")

        try:
            payload = json.loads(body)
        except ValueError:
            raise ValidationError("Webhook body is not valid JSON")
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")

        event_id = headers.get(EVENT_ID_HEADER)
        try:
            entity_type, entity = extract_entity(payload)
        except ValidationError as e:
            logger.warning(
                f"Ignoring webhook {payload.get('event') or '<unnamed>'} "
                f"({event_id or 'no event id'}): {e.message}"
            )
            return WebhookReceiveResult(event=None, ignored=True)

        payload_hash = self._compute_hash(payload)

        dedup_filter = (
            PaymentWebhookEvent.event_id == event_id if event_id
            else PaymentWebhookEvent.payload_hash == payload_hash
        )
        existing = self.db.query(PaymentWebhookEvent).filter(
            PaymentWebhookEvent.provider == "razorpay",
            dedup_filter,
            PaymentWebhookEvent.status.in_([
                WebhookEventStatus.PROCESSED.value,
                WebhookEventStatus.PROCESSING.value,
            ]),
        ).first()
        if existing:
            logger.info(f"Duplicate webhook {event_id or payload_hash[:12]}, stored as {existing.id}")
            return WebhookReceiveResult(event=existing, duplicate=True)

        external_id = entity.get("order_id") if entity_type == WebhookEntityType.PAYMENT else entity.get("id")
        event = PaymentWebhookEvent(
            provider="razorpay",
            event_id=event_id,
            event_type=payload.get("event") or f"{entity_type.value}.{entity.get('status', 'unknown')}",
            entity_type=entity_type.value,
            external_id=external_id,
            entity_status=entity.get("status"),
            payload_json=body.decode("utf-8"),
            payload_hash=payload_hash,
            status=WebhookEventStatus.RECEIVED.value,
            max_attempts=settings.webhook_max_attempts,
        )
        self.db.add(event)
        self.db.commit()

        logger.info(f"Received webhook {event.event_type} for {external_id}, stored as {event.id}")
        return WebhookReceiveResult(event=event)


class PaymentWebhookProcessor:
    """Applies stored webhook events. Used inline by the route and by the worker."""

    def __init__(
        self,
        db: Session,
        gateway: Optional[RazorpayClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.gateway = gateway
        self.clock = clock

    def get_pending_events(self, limit: int = 50) -> List[PaymentWebhookEvent]:
        now = self.clock()
        return get_pending_with_skip_locked(
            self.db,
            PaymentWebhookEvent,
            PaymentWebhookEvent.status.in_([
                WebhookEventStatus.RECEIVED.value,
                WebhookEventStatus.RETRYING.value,
            ]) & or_(PaymentWebhookEvent.next_retry_at.is_(None), PaymentWebhookEvent.next_retry_at <= now),
            order_by=PaymentWebhookEvent.received_at,
            limit=limit,
        )

    def process_event(self, event: PaymentWebhookEvent) -> WebhookProcessResult:
        event.status = WebhookEventStatus.PROCESSING.value
        event.attempts += 1
        self.db.commit()

        try:
            payload = json.loads(event.payload_json)
            entity_type, entity = extract_entity(payload)
            if entity_type == WebhookEntityType.PAYMENT:
                action = self._handle_payment(entity)
            else:
                action = self._handle_payout(entity, payload)
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Error processing webhook {event.id}: {e}")
            return self._schedule_retry(event, "error", str(e))

        if action in ("order_not_found", "payout_not_found"):
            return self._schedule_retry(event, action, f"No matching record for {event.external_id}")

        event.status = WebhookEventStatus.PROCESSED.value
        event.result_action = action
        event.error_message = None
        event.next_retry_at = None
        event.processed_at = self.clock()
        self.db.commit()
        return WebhookProcessResult(success=True, action=action)

    def _handle_payment(self, entity: dict) -> str:
        order_id = entity.get("order_id")
        if not order_id:
            return "ignored"
        result = OrderReconciliationEngine(self.db, gateway=self.gateway, clock=self.clock).apply_payment_status(
            order_id,
            entity.get("status"),
            amount_minor=entity.get("amount"),
            razorpay_payment_id=entity.get("id"),
            method=entity.get("method"),
        )
        return result.action

    def _handle_payout(self, entity: dict, payload: dict) -> str:
        payout_id = entity.get("id")
        status = entity.get("status")
        if not payout_id or not status:
            return "ignored"
        reason = entity.get("failure_reason") or (entity.get("status_details") or {}).get("description")
        payout = PayoutManager(self.db, gateway=self.gateway, clock=self.clock).handle_gateway_event(
            payout_id, status, failure_reason=reason, payload=payload, reference_id=entity.get("reference_id"),
        )
        return "applied" if payout else "payout_not_found"

    def _schedule_retry(self, event: PaymentWebhookEvent, action: str, error: str) -> WebhookProcessResult:
        """Backoff: base, 2x base, 4x base... seconds until max_attempts."""
        event.result_action = action
        event.error_message = error[:1000]

        if event.attempts >= event.max_attempts:
            event.status = WebhookEventStatus.FAILED.value
            event.processed_at = self.clock()
            event.next_retry_at = None
            self.db.commit()
            logger.error(
                f"Webhook {event.id} ({event.event_type} {event.external_id}) failed after "
                f"{event.attempts} attempts: {error}"
            )
            return WebhookProcessResult(success=False, action=action, error=error)

        delay = settings.webhook_retry_base_seconds * (2 ** (event.attempts - 1))
        event.status = WebhookEventStatus.RETRYING.value
        event.next_retry_at = self.clock() + timedelta(seconds=delay)
        self.db.commit()
        logger.warning(f"Webhook {event.id} {action}; retry {event.attempts}/{event.max_attempts} in {delay}s")
        return WebhookProcessResult(success=False, action=action, retry_scheduled=True, error=error)

    def process_batch(self, limit: int = 50) -> Tuple[int, int]:
        processed = failed = 0
        for event in self.get_pending_events(limit=limit):
            result = self.process_event(event)
            if result.success:
                processed += 1
            else:
                failed += 1
        return processed, failed

    # ==================
    # Admin
    # ==================

    def list_events(self, status: Optional[str] = None, limit: int = 100) -> List[PaymentWebhookEvent]:
        query = self.db.query(PaymentWebhookEvent)
        if status:
            query = query.filter(PaymentWebhookEvent.status == status)
        return query.order_by(PaymentWebhookEvent.received_at.desc()).limit(limit).all()

    def requeue(self, event_id: str) -> PaymentWebhookEvent:
        event = self.db.get(PaymentWebhookEvent, event_id)
        if not event:
            raise NotFound("Webhook event not found")
        if event.status != WebhookEventStatus.FAILED.value:
            raise ValidationError(f"Only failed events can be requeued (status: {event.status})")
        event.status = WebhookEventStatus.RETRYING.value
        event.attempts = 0
        event.next_retry_at = None
        event.error_message = None
        self.db.commit()
        logger.info(f"Webhook {event.id} requeued by admin")
        return event
