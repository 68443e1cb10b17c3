"""
Slot Lock Manager

Holds venue slots for a user for a short checkout window so that two people
cannot pay for the same slot.

A slot is "taken" when an overlapping booking for the same venue, sport,
date and playable area is either confirmed/completed, or pending with an
unexpired lock. Expired locks stop counting the moment ``locked_until``
passes; the background sweep deletes them later.

Concurrency:
- the venue row is locked FOR UPDATE on PostgreSQL
- every successful acquisition bumps ``venues.slot_version`` with a
  compare-and-swap, so of two overlapping checkouts that both passed the
  conflict check only one can commit
"""

import logging
from dataclasses import dataclass, asdict
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.booking import (
    Booking,
    BookingSlot,
    BookingStatus,
    BookingPaymentStatus,
    BookingPattern,
    HOLDING_STATUSES,
)
from ..models.order import OrderHistory, OrderStatus, OrderType
from ..models.venue import Venue
from ..schemas.booking import ScheduledDate, TimeSlot, minutes_of
from ..utils.clock import utcnow
from ..utils.db_helpers import acquire_row_lock, compare_and_swap_version, AtomicCounter
from ..utils.errors import AppError, NotFound, SlotUnavailable, ValidationError, Forbidden
from ..utils.logging_config import get_logger

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)


@dataclass
class SlotConflict:
    booking_id: str
    date: date
    start_time: str
    end_time: str
    playable_area: int

    def to_dict(self) -> dict:
        data = asdict(self)
        data["date"] = self.date.isoformat()
        return data


def normalize_sport(sport: str) -> str:
    return (sport or "").strip().lower()


def open_booking_order(db: Session, booking_id: str) -> Optional[OrderHistory]:
    """The Pending or Successful order priced for a booking, if any."""
    return db.query(OrderHistory).filter(
        OrderHistory.order_type == OrderType.BOOKING.value,
        OrderHistory.target_id == booking_id,
        OrderHistory.status.in_([OrderStatus.PENDING.value, OrderStatus.SUCCESSFUL.value]),
    ).order_by(OrderHistory.created_at.desc()).first()


class SlotLockManager:
    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utcnow,
        lock_minutes: Optional[int] = None,
    ):
        self.db = db
        self.clock = clock
        self.lock_window = timedelta(minutes=lock_minutes or settings.slot_lock_minutes)

    # ==================
    # Queries
    # ==================

    def active_booking_clause(self, now: datetime):
        return or_(
            Booking.booking_status.in_(HOLDING_STATUSES),
            and_(
                Booking.booking_status == BookingStatus.PENDING.value,
                Booking.is_locked.is_(True),
                Booking.locked_until > now,
            ),
        )

    def find_conflicts(
        self,
        venue_id: str,
        sport: str,
        requested: Sequence[Tuple[date, TimeSlot]],
        now: datetime,
        exclude_booking_id: Optional[str] = None,
    ) -> List[SlotConflict]:
        """Active slots overlapping any requested (date, slot)."""
        if not requested:
            return []

        overlap = or_(*[
            and_(
                BookingSlot.slot_date == slot_date,
                BookingSlot.playable_area == slot.playable_area,
                BookingSlot.start_time < slot.end_time,
                BookingSlot.end_time > slot.start_time,
            )
            for slot_date, slot in requested
        ])

        query = self.db.query(BookingSlot).join(Booking, BookingSlot.booking_id == Booking.id).filter(
            BookingSlot.venue_id == venue_id,
            BookingSlot.sport == normalize_sport(sport),
            overlap,
            self.active_booking_clause(now),
        )
        if exclude_booking_id:
            query = query.filter(Booking.id != exclude_booking_id)

        return [
            SlotConflict(
                booking_id=row.booking_id,
                date=row.slot_date,
                start_time=row.start_time,
                end_time=row.end_time,
                playable_area=row.playable_area,
            )
            for row in query.all()
        ]

    def get_booked_slots(
        self,
        venue_id: str,
        sport: str,
        on_date: date,
        playable_area: Optional[int] = None,
    ) -> List[dict]:
        """Slots currently unavailable on a date, for the availability grid."""
        now = self.clock()
        query = self.db.query(BookingSlot, Booking).join(Booking, BookingSlot.booking_id == Booking.id).filter(
            BookingSlot.venue_id == venue_id,
            BookingSlot.sport == normalize_sport(sport),
            BookingSlot.slot_date == on_date,
            self.active_booking_clause(now),
        )
        if playable_area is not None:
            query = query.filter(BookingSlot.playable_area == playable_area)

        return [
            {
                "booking_id": booking.id,
                "date": slot.slot_date,
                "start_time": slot.start_time,
                "end_time": slot.end_time,
                "playable_area": slot.playable_area,
                "booking_status": booking.booking_status,
                "is_locked": booking.is_locked,
            }
            for slot, booking in query.order_by(BookingSlot.playable_area, BookingSlot.start_time).all()
        ]

    def get_booking(self, booking_id: str, user_id: str, is_admin: bool = False) -> Booking:
        booking = self.db.get(Booking, booking_id)
        if not booking:
            raise NotFound("Booking not found")
        if booking.user_id != user_id and not is_admin:
            raise Forbidden("This booking belongs to another user")
        return booking

    # ==================
    # Locking
    # ==================

    def _flatten(self, dates: Iterable[ScheduledDate]) -> List[Tuple[date, TimeSlot]]:
        requested: List[Tuple[date, TimeSlot]] = []
        for scheduled in dates:
            for slot in scheduled.time_slots:
                for other_date, other in requested:
                    if other_date == scheduled.date and slot.overlaps(other):
                        raise ValidationError(
                            f"Requested slots overlap on {scheduled.date}: "
                            f"{other.start_time}-{other.end_time} and {slot.start_time}-{slot.end_time}"
                        )
                requested.append((scheduled.date, slot))
        if not requested:
            raise ValidationError("At least one time slot is required")
        return requested

    def _session_booking(self, user_id: str, venue_id: str, sport: str, session_id: str, now: datetime) -> Optional[Booking]:
        return self.db.query(Booking).filter(
            Booking.user_id == user_id,
            Booking.venue_id == venue_id,
            Booking.sport == sport,
            Booking.session_id == session_id,
            Booking.booking_status == BookingStatus.PENDING.value,
            Booking.is_locked.is_(True),
            Booking.locked_until > now,
        ).first()

    @staticmethod
    def _pattern_for(booking: Booking) -> str:
        dates = {slot.slot_date for slot in booking.slots}
        if len(dates) > 1:
            return BookingPattern.MULTIPLE_DATES.value
        if len(booking.slots) > 1:
            return BookingPattern.MULTIPLE_SLOTS.value
        return BookingPattern.SINGLE_SLOTS.value

    @staticmethod
    def _duration_hours(booking: Booking) -> Decimal:
        minutes = sum(minutes_of(s.end_time) - minutes_of(s.start_time) for s in booking.slots)
        return (Decimal(minutes) / Decimal(60)).quantize(Decimal("0.01"))

    def acquire_lock(
        self,
        user_id: str,
        venue_id: str,
        sport: str,
        session_id: str,
        dates: Sequence[ScheduledDate],
        booking_pattern: Optional[BookingPattern] = None,
    ) -> Booking:
        """
        Lock the requested slots for ``lock_window`` and return the pending booking.

        Re-entering with the same session adds slots to the session's existing
        lock and extends it, unless an order was already created for that booking.

        Raises:
            NotFound: venue missing or inactive
            ValidationError: sport not offered, bad playable area, overlapping request,
                session already has an order in progress
            SlotUnavailable: any slot is held by someone else, or a concurrent
                checkout won the race
        """
        sport_key = normalize_sport(sport)
        requested = self._flatten(dates)
        now = self.clock()

        try:
            venue = acquire_row_lock(self.db, Venue, Venue.id == venue_id)
            if not venue or not venue.is_active:
                raise NotFound("Venue not found")
            if not venue.supports_sport(sport_key):
                raise ValidationError(f"Venue does not offer {sport}")
            for slot_date, slot in requested:
                if slot.playable_area > (venue.playable_areas or 1):
                    raise ValidationError(
                        f"Playable area {slot.playable_area} does not exist at this venue"
                    )
            seen_version = venue.slot_version or 0

            booking = self._session_booking(user_id, venue_id, sport_key, session_id, now)
            if booking and open_booking_order(self.db, booking.id):
                # The order amount covers only the slots held when it was created
                raise ValidationError(
                    "A payment is already in progress for this checkout; release it before changing slots"
                )
            if booking:
                held = {(s.slot_date, s.start_time, s.end_time, s.playable_area) for s in booking.slots}
                requested = [
                    (d, s) for d, s in requested
                    if (d, s.start_time, s.end_time, s.playable_area) not in held
                ]

            conflicts = self.find_conflicts(
                venue_id, sport_key, requested, now,
                exclude_booking_id=booking.id if booking else None,
            )
            if conflicts:
                raise SlotUnavailable(
                    "Some of the selected slots are already booked or being booked",
                    details={"conflicts": [c.to_dict() for c in conflicts]},
                )

            if booking is None:
                booking = Booking(
                    venue_id=venue_id,
                    user_id=user_id,
                    sport=sport_key,
                    session_id=session_id,
                    booking_status=BookingStatus.PENDING.value,
                    payment_status=BookingPaymentStatus.PENDING.value,
                )
                self.db.add(booking)

            for slot_date, slot in requested:
                booking.slots.append(BookingSlot(
                    venue_id=venue_id,
                    sport=sport_key,
                    slot_date=slot_date,
                    start_time=slot.start_time,
                    end_time=slot.end_time,
                    playable_area=slot.playable_area,
                ))

            booking.is_locked = True
            booking.locked_until = now + self.lock_window
            booking.booking_pattern = booking_pattern.value if booking_pattern else self._pattern_for(booking)
            booking.duration_in_hours = self._duration_hours(booking)
            self.db.flush()

            if not compare_and_swap_version(self.db, Venue, Venue.id == venue_id, "slot_version", seen_version):
                raise SlotUnavailable("Slots were just taken by another checkout, please choose again")

            self.db.commit()
        except AppError:
            self.db.rollback()
            raise
        except OperationalError as e:
            # Lock timeout / "database is locked" means another checkout holds the venue
            self.db.rollback()
            logger.warning(f"Slot lock contention on venue {venue_id}: {e}")
            raise SlotUnavailable("Slots are being booked by someone else, please try again")

        self.db.refresh(booking)
        structured_logger.booking_locked(booking.id, venue_id, len(booking.slots), booking.locked_until)
        return booking

    def release_lock(self, booking: Booking, reason: Optional[str] = None, payment_failed: bool = False) -> bool:
        """
        Clear the checkout lock now instead of waiting for expiry.

        Does not commit. Confirmed bookings are left untouched.
        """
        if booking.booking_status != BookingStatus.PENDING.value:
            return False

        booking.is_locked = False
        booking.locked_until = None
        booking.booking_status = BookingStatus.CANCELLED.value
        booking.cancellation_reason = reason
        if payment_failed:
            booking.payment_status = BookingPaymentStatus.FAILED.value
        logger.info(f"Released lock on booking {booking.id}: {reason or 'released'}")
        return True

    def release_booking(self, booking_id: str, user_id: str, is_admin: bool = False) -> Booking:
        booking = self.get_booking(booking_id, user_id, is_admin)
        if booking.booking_status != BookingStatus.PENDING.value:
            raise ValidationError(f"Booking is {booking.booking_status} and cannot be released")
        self.release_lock(booking, reason="Released by user")
        self.db.commit()
        return booking

    def release_session(self, user_id: str, venue_id: str, sport: str, session_id: str) -> int:
        """Release every pending lock the user holds for this checkout session."""
        bookings = self.db.query(Booking).filter(
            Booking.user_id == user_id,
            Booking.venue_id == venue_id,
            Booking.sport == normalize_sport(sport),
            Booking.session_id == session_id,
            Booking.booking_status == BookingStatus.PENDING.value,
        ).all()
        released = sum(1 for booking in bookings if self.release_lock(booking, reason="Session released"))
        self.db.commit()
        return released

    def confirm_booking(self, booking: Booking, razorpay_payment_id: Optional[str] = None) -> bool:
        """
        Confirm a booking after its payment was captured. Does not commit.

        If the lock had lapsed and someone else holds the slot now, the
        booking is cancelled and flagged for a manual refund instead.
        """
        if booking.booking_status in HOLDING_STATUSES:
            return True

        now = self.clock()
        if not booking.lock_active(now):
            requested = [(slot.slot_date, slot) for slot in booking.slots]
            conflicts = self.find_conflicts(booking.venue_id, booking.sport, requested, now, exclude_booking_id=booking.id)
            if conflicts:
                booking.is_locked = False
                booking.locked_until = None
                booking.booking_status = BookingStatus.CANCELLED.value
                booking.payment_status = BookingPaymentStatus.SUCCESSFUL.value
                booking.razorpay_payment_id = razorpay_payment_id
                booking.cancellation_reason = "Slot taken after checkout lock expired; refund required"
                logger.error(
                    f"Captured payment {razorpay_payment_id} for booking {booking.id} but slots were "
                    f"taken by {[c.booking_id for c in conflicts]}; manual refund required"
                )
                return False

        booking.booking_status = BookingStatus.CONFIRMED.value
        booking.payment_status = BookingPaymentStatus.SUCCESSFUL.value
        booking.is_locked = False
        booking.locked_until = None
        booking.cancellation_reason = None
        booking.razorpay_payment_id = razorpay_payment_id
        booking.confirmed_at = now

        base_amount = booking.base_amount or Decimal("0")
        venue_filter = Venue.id == booking.venue_id
        AtomicCounter.increment(self.db, Venue, venue_filter, "total_bookings", 1)
        AtomicCounter.increment(self.db, Venue, venue_filter, "total_amount", base_amount)
        AtomicCounter.increment(self.db, Venue, venue_filter, "amount_need_to_pay", base_amount)
        # A confirmation can reclaim a lapsed lock; invalidate in-flight checkouts
        AtomicCounter.increment(self.db, Venue, venue_filter, "slot_version", 1)

        logger.info(f"Booking {booking.id} confirmed (payment {razorpay_payment_id})")
        return True

    def expire_stale_locks(self, limit: int = 500) -> int:
        """Delete pending bookings whose lock lapsed more than the grace period ago."""
        cutoff = self.clock() - timedelta(minutes=settings.slot_lock_reap_grace_minutes)
        stale = self.db.query(Booking).filter(
            Booking.booking_status == BookingStatus.PENDING.value,
            Booking.is_locked.is_(True),
            Booking.locked_until <= cutoff,
        ).limit(limit).all()

        for booking in stale:
            self.db.delete(booking)
        if stale:
            self.db.commit()
            logger.info(f"Removed {len(stale)} expired slot lock(s)")
        return len(stale)
