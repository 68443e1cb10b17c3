from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal

from ..models.payout import BeneficiaryType, PayoutPurpose


class PayoutCreate(BaseModel):
    idempotency_key: str = Field(..., min_length=8, max_length=100)
    beneficiary_type: BeneficiaryType
    beneficiary_id: str = Field(..., min_length=1, max_length=36)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    purpose: PayoutPurpose = PayoutPurpose.PAYOUT
    booking_id: Optional[str] = Field(None, max_length=36)
    narration: Optional[str] = Field(None, max_length=30, description="Shown on the recipient's statement")


class PayoutResponse(BaseModel):
    id: str
    razorpay_payout_id: Optional[str] = None
    beneficiary_type: str
    beneficiary_id: str
    booking_id: Optional[str] = None
    recipient_vpa: Optional[str] = None
    amount: Decimal
    currency: str
    mode: str
    purpose: str
    idempotency_key: str
    status: str
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    retry_count: int
    max_retries: int
    last_retry_at: Optional[datetime] = None
    needs_manual_review: bool
    submission_unconfirmed: bool = False
    reference_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WebhookEventResponse(BaseModel):
    id: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    entity_type: str
    external_id: Optional[str] = None
    entity_status: Optional[str] = None
    status: str
    attempts: int
    max_attempts: int
    next_retry_at: Optional[datetime] = None
    result_action: Optional[str] = None
    error_message: Optional[str] = None
    received_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WebhookAck(BaseModel):
    event_id: Optional[str] = None
    duplicate: bool = False
    action: Optional[str] = None
