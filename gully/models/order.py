"""
Order History and Payment Models

Every gateway order is recorded twice: an OrderHistory row (the order and
what it buys) and a Payment row (how it was paid). Both carry the same
status and are only moved by webhook processing.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Numeric, Index, CheckConstraint
from ..database import Base
import enum


class OrderType(str, enum.Enum):
    TOURNAMENT = "tournament"
    BANNER = "banner"
    SPONSOR = "sponsor"
    SHOP = "shop"
    VENUE = "venue"
    INDIVIDUAL = "individual"
    BOOKING = "booking"


class OrderStatus(str, enum.Enum):
    PENDING = "Pending"
    SUCCESSFUL = "Successful"
    FAILED = "Failed"


class PaymentMode(str, enum.Enum):
    CARD = "Card"
    UPI = "UPI"
    NET_BANKING = "Net Banking"
    WALLET = "Wallet"


# Razorpay payment.method -> PaymentMode
GATEWAY_METHOD_MAP = {
    "card": PaymentMode.CARD.value,
    "upi": PaymentMode.UPI.value,
    "netbanking": PaymentMode.NET_BANKING.value,
    "wallet": PaymentMode.WALLET.value,
}

_ORDER_TYPES_SQL = ", ".join(f"'{t.value}'" for t in OrderType)


class OrderHistory(Base):
    __tablename__ = "order_history"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column(String(64), unique=True, nullable=False)  # Razorpay order id
    user_id = Column(String(36), nullable=False, index=True)

    # Tagged target
    order_type = Column(String(20), nullable=False)
    target_id = Column(String(36), nullable=False)
    package_id = Column(String(36), nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)
    amount_paid = Column(Numeric(12, 2), default=0, nullable=False)
    amount_due = Column(Numeric(12, 2), default=0, nullable=False)

    base_amount = Column(Numeric(12, 2), default=0)
    processing_fee = Column(Numeric(12, 2), default=0)
    convenience_fee = Column(Numeric(12, 2), default=0)
    gst_amount = Column(Numeric(12, 2), default=0)
    total_amount = Column(Numeric(12, 2), default=0)
    amount_without_coupon = Column(Numeric(12, 2), nullable=True)
    coupon = Column(String(50), nullable=True)

    currency = Column(String(3), default="INR", nullable=False)
    receipt = Column(String(64), nullable=True)
    status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(f"order_type IN ({_ORDER_TYPES_SQL})", name="ck_order_history_type"),
        Index("ix_order_history_user_created", "user_id", "created_at"),
        Index("ix_order_history_target", "order_type", "target_id"),
    )

    def __repr__(self):
        return f"<OrderHistory {self.order_id} {self.order_type} {self.status}>"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column(String(64), unique=True, nullable=False)
    user_id = Column(String(36), nullable=False, index=True)

    order_type = Column(String(20), nullable=False)
    target_id = Column(String(36), nullable=False)

    payment_mode = Column(String(20), nullable=True)
    transaction_id = Column(String(64), nullable=True)
    razorpay_payment_id = Column(String(64), nullable=True, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    amount_paid = Column(Numeric(12, 2), default=0, nullable=False)
    base_amount = Column(Numeric(12, 2), default=0)
    processing_fee = Column(Numeric(12, 2), default=0)
    convenience_fee = Column(Numeric(12, 2), default=0)
    gst_amount = Column(Numeric(12, 2), default=0)
    total_amount = Column(Numeric(12, 2), default=0)

    currency = Column(String(3), default="INR", nullable=False)
    receipt = Column(String(64), nullable=True)
    payment_status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False)
    payment_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Payment {self.order_id} {self.payment_status}>"
