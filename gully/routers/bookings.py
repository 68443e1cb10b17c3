from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from typing import Optional
from datetime import date
import logging

from ..database import get_db
from ..schemas.booking import BookingResponse, BookedSlot, SlotLockRequest, ReleaseSessionRequest
from ..schemas.common import ok
from ..services.slot_lock_service import SlotLockManager
from ..utils.dependencies import Principal, get_current_principal
from ..utils.rate_limiter import limiter, get_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["Bookings"])


@router.post("/lock", status_code=201)
@limiter.limit(get_rate_limit("slot_lock"))
def lock_slots(
    request: Request,
    payload: SlotLockRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """Hold the requested slots for checkout. 409 if any slot is taken."""
    booking = SlotLockManager(db).acquire_lock(
        user_id=principal.user_id,
        venue_id=payload.venue_id,
        sport=payload.sport,
        session_id=payload.session_id,
        dates=payload.dates,
        booking_pattern=payload.booking_pattern,
    )
    return ok(BookingResponse.from_booking(booking), "Slots locked successfully")


@router.post("/release-session")
def release_session(
    payload: ReleaseSessionRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    released = SlotLockManager(db).release_session(
        principal.user_id, payload.venue_id, payload.sport, payload.session_id
    )
    return ok({"released": released}, "Session released")


@router.get("/availability")
def availability(
    venue_id: str = Query(...),
    sport: str = Query(...),
    on_date: date = Query(..., alias="date"),
    playable_area: Optional[int] = Query(None, ge=1),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    slots = SlotLockManager(db).get_booked_slots(venue_id, sport, on_date, playable_area)
    return ok([BookedSlot(**slot) for slot in slots])


@router.get("/{booking_id}")
def get_booking(
    booking_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    booking = SlotLockManager(db).get_booking(booking_id, principal.user_id, principal.is_admin)
    return ok(BookingResponse.from_booking(booking))


@router.post("/{booking_id}/release")
def release_booking(
    booking_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    booking = SlotLockManager(db).release_booking(booking_id, principal.user_id, principal.is_admin)
    return ok(BookingResponse.from_booking(booking), "Booking released")
