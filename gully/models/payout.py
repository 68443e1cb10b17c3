import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Boolean, Integer, Numeric, Text, JSON, Index
from ..database import Base
import enum


class PayoutStatus(str, enum.Enum):
    QUEUED = "queued"
    PENDING = "pending"
    REJECTED = "rejected"
    PROCESSING = "processing"
    PROCESSED = "processed"
    CANCELLED = "cancelled"
    REVERSED = "reversed"
    FAILED = "failed"


class PayoutPurpose(str, enum.Enum):
    REFUND = "refund"
    CASHBACK = "cashback"
    PAYOUT = "payout"
    SALARY = "salary"
    UTILITY_BILL = "utility_bill"
    VENDOR_PAYMENTS = "vendor_payments"


class BeneficiaryType(str, enum.Enum):
    VENUE = "venue"
    INDIVIDUAL = "individual"


class Payout(Base):
    """Outbound transfer to a venue or individual's UPI fund account."""
    __tablename__ = "payouts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    razorpay_payout_id = Column(String(64), unique=True, nullable=True)
    fund_account_id = Column(String(64), nullable=True)

    user_id = Column(String(36), nullable=True, index=True)
    beneficiary_type = Column(String(20), nullable=False)
    beneficiary_id = Column(String(36), nullable=False)
    booking_id = Column(String(36), nullable=True)
    recipient_vpa = Column(String(100), nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="INR", nullable=False)
    mode = Column(String(20), default="UPI", nullable=False)
    purpose = Column(String(30), default=PayoutPurpose.PAYOUT.value, nullable=False)
    reference_id = Column(String(64), nullable=True, index=True)  # per gateway transfer
    narration = Column(String(100), nullable=True)

    idempotency_key = Column(String(100), unique=True, nullable=False)
    # X-Payout-Idempotency of the current gateway transfer; changes only after a definitive failure
    gateway_idempotency_key = Column(String(120), nullable=True)

    status = Column(String(20), default=PayoutStatus.QUEUED.value, nullable=False)
    failure_reason = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    # Retry bookkeeping
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    last_retry_at = Column(DateTime, nullable=True)
    needs_manual_review = Column(Boolean, default=False, nullable=False)
    # Submission timed out or never got an answer; the gateway may hold the transfer
    submission_unconfirmed = Column(Boolean, default=False, nullable=False)

    gateway_response = Column(JSON, nullable=True)
    webhook_data = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_payout_status_retry", "status", "last_retry_at"),
        Index("ix_payout_beneficiary", "beneficiary_type", "beneficiary_id"),
    )

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    def __repr__(self):
        return f"<Payout {self.id} {self.status} retries={self.retry_count}/{self.max_retries}>"
