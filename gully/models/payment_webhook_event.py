"""
Payment Webhook Event Model

Stores raw Razorpay webhook deliveries so they can be processed, retried
and audited. A payment webhook can arrive before the order rows it refers
to are committed; such events stay here in RETRYING until they match.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, Index, Integer
from ..database import Base
import enum


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    RETRYING = "retrying"
    FAILED = "failed"


class WebhookEntityType(str, enum.Enum):
    PAYMENT = "payment"
    PAYOUT = "payout"


class PaymentWebhookEvent(Base):
    __tablename__ = "payment_webhook_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider = Column(String(50), default="razorpay", nullable=False)

    # x-razorpay-event-id header when present
    event_id = Column(String(255), nullable=True)
    event_type = Column(String(100), nullable=True)  # payment.captured, payout.processed, ...

    entity_type = Column(String(20), nullable=False)
    external_id = Column(String(255), nullable=True)  # order_id for payments, payout id for payouts
    entity_status = Column(String(30), nullable=True)

    payload_json = Column(Text, nullable=False)
    payload_hash = Column(String(64), nullable=True)

    status = Column(String(20), default=WebhookEventStatus.RECEIVED.value, nullable=False)

    # Retry logic
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=5, nullable=False)
    next_retry_at = Column(DateTime, nullable=True)

    result_action = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)

    received_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_payment_webhook_provider_hash", "provider", "payload_hash"),
        Index("ix_payment_webhook_provider_event_id", "provider", "event_id"),
        Index("ix_payment_webhook_retry", "status", "next_retry_at"),
        Index("ix_payment_webhook_external", "entity_type", "external_id"),
    )

    def __repr__(self):
        return f"<PaymentWebhookEvent {self.event_type} {self.external_id} status={self.status}>"
