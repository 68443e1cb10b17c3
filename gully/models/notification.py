import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, Integer, JSON, Index
from ..database import Base
import enum


class NotificationChannel(str, enum.Enum):
    PUSH = "push"
    EMAIL = "email"


class NotificationStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    SKIPPED = "skipped"  # Channel not configured


class NotificationOutbox(Base):
    """
    Outbox for user notifications.
    Rows are written in the same transaction as the state change they
    announce and delivered later by the background worker.
    """
    __tablename__ = "notification_outbox"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    channel = Column(String(10), nullable=False)
    event_type = Column(String(50), nullable=False)  # payment_successful, payout_processed, ...
    user_id = Column(String(36), nullable=True, index=True)
    recipient = Column(String(512), nullable=False)  # FCM token or email address

    # {"title", "body", "image", "subject", "data"}
    payload = Column(JSON, nullable=False)

    status = Column(String(20), default=NotificationStatus.PENDING.value, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=5, nullable=False)
    next_attempt_at = Column(DateTime, default=datetime.utcnow)

    last_error = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    idempotency_key = Column(String(255), nullable=False, unique=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_notification_status_next", "status", "next_attempt_at"),
    )

    def __repr__(self):
        return f"<NotificationOutbox {self.channel} {self.event_type} status={self.status}>"
