"""
Venue Booking Model

A booking starts as a time-boxed lock on one or more slots during checkout
and becomes confirmed when its payment is captured. Slots live in their own
table so the conflict check can be done with a single indexed query.
"""

import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, DateTime, Date, Boolean, Integer, Numeric, ForeignKey, Index, CheckConstraint
)
from sqlalchemy.orm import relationship
from ..database import Base
import enum


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class BookingPaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    REFUNDED = "refunded"


class BookingPattern(str, enum.Enum):
    SINGLE_SLOTS = "single_slots"
    MULTIPLE_SLOTS = "multiple_slots"
    MULTIPLE_DATES = "multiple_dates"


# Statuses that hold a slot regardless of the lock
HOLDING_STATUSES = (BookingStatus.CONFIRMED.value, BookingStatus.COMPLETED.value)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    venue_id = Column(String(36), ForeignKey("venues.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    sport = Column(String(50), nullable=False)
    booking_pattern = Column(String(20), default=BookingPattern.SINGLE_SLOTS.value)
    duration_in_hours = Column(Numeric(6, 2), default=0)

    # Fee breakdown, filled when the order is created
    base_amount = Column(Numeric(12, 2), default=0)
    processing_fee = Column(Numeric(12, 2), default=0)
    convenience_fee = Column(Numeric(12, 2), default=0)
    gst_amount = Column(Numeric(12, 2), default=0)
    total_amount = Column(Numeric(12, 2), default=0)

    payment_status = Column(String(20), default=BookingPaymentStatus.PENDING.value, nullable=False)
    booking_status = Column(String(20), default=BookingStatus.PENDING.value, nullable=False)

    # Checkout lock
    is_locked = Column(Boolean, default=False, nullable=False)
    locked_until = Column(DateTime, nullable=True)
    session_id = Column(String(100), nullable=True)

    razorpay_payment_id = Column(String(64), nullable=True)
    cancellation_reason = Column(String(255), nullable=True)
    confirmed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    slots = relationship(
        "BookingSlot",
        back_populates="booking",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_booking_session", "venue_id", "sport", "session_id"),
        Index("ix_booking_lock_expiry", "is_locked", "locked_until"),
    )

    def lock_active(self, now: datetime) -> bool:
        return bool(
            self.is_locked
            and self.locked_until is not None
            and self.locked_until > now
            and self.booking_status == BookingStatus.PENDING.value
        )

    def scheduled_dates(self) -> list:
        """Slots grouped by date: [{"date", "time_slots": [...]}]"""
        grouped = {}
        for slot in sorted(self.slots, key=lambda s: (s.slot_date, s.start_time)):
            grouped.setdefault(slot.slot_date, []).append({
                "start_time": slot.start_time,
                "end_time": slot.end_time,
                "playable_area": slot.playable_area,
            })
        return [{"date": d, "time_slots": grouped[d]} for d in sorted(grouped)]

    def __repr__(self):
        return f"<Booking {self.id} {self.booking_status}/{self.payment_status} locked={self.is_locked}>"


class BookingSlot(Base):
    """One time range on one playable area on one date."""
    __tablename__ = "booking_slots"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)

    # Denormalised from the booking for the conflict query
    venue_id = Column(String(36), nullable=False)
    sport = Column(String(50), nullable=False)

    slot_date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)  # "HH:MM"
    end_time = Column(String(5), nullable=False)
    playable_area = Column(Integer, nullable=False, default=1)

    booking = relationship("Booking", back_populates="slots")

    __table_args__ = (
        Index("ix_slot_lookup", "venue_id", "sport", "slot_date", "playable_area"),
        CheckConstraint("playable_area >= 1", name="ck_slot_playable_area"),
    )

    def __repr__(self):
        return f"<BookingSlot {self.slot_date} {self.start_time}-{self.end_time} area={self.playable_area}>"
