from pydantic import BaseModel, Field, field_validator, model_validator
from typing import List, Optional
from datetime import datetime, date
from decimal import Decimal
import re

from ..models.booking import BookingPattern

_TIME_RE = re.compile(r"^([01]?\d|2[0-4]):([0-5]\d)$")


def normalize_time(value: str) -> str:
    """Accept "9:00" / "09:00" and return zero-padded "HH:MM"."""
    match = _TIME_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"Invalid time '{value}', expected HH:MM")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours == 24 and minutes != 0:
        raise ValueError(f"Invalid time '{value}'")
    return f"{hours:02d}:{minutes:02d}"


def minutes_of(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


class TimeSlot(BaseModel):
    start_time: str
    end_time: str
    playable_area: int = Field(1, ge=1)

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def validate_time(cls, v):
        return normalize_time(v)

    @model_validator(mode="after")
    def validate_range(self):
        if minutes_of(self.start_time) >= minutes_of(self.end_time):
            raise ValueError(f"Slot {self.start_time}-{self.end_time}: start must be before end")
        return self

    def overlaps(self, other: "TimeSlot") -> bool:
        return (
            self.playable_area == other.playable_area
            and self.start_time < other.end_time
            and other.start_time < self.end_time
        )


class ScheduledDate(BaseModel):
    date: date
    time_slots: List[TimeSlot] = Field(..., min_length=1)


class SlotLockRequest(BaseModel):
    venue_id: str = Field(..., min_length=1, max_length=36)
    sport: str = Field(..., min_length=1, max_length=50)
    session_id: str = Field(..., min_length=1, max_length=100)
    booking_pattern: Optional[BookingPattern] = None
    dates: List[ScheduledDate] = Field(..., min_length=1)


class ReleaseSessionRequest(BaseModel):
    venue_id: str
    sport: str
    session_id: str


class BookingResponse(BaseModel):
    id: str
    venue_id: str
    user_id: Optional[str] = None
    sport: str
    booking_pattern: Optional[str] = None
    duration_in_hours: Optional[Decimal] = None
    base_amount: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    payment_status: str
    booking_status: str
    is_locked: bool
    locked_until: Optional[datetime] = None
    session_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    scheduled_dates: List[ScheduledDate] = Field(default_factory=list)
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @classmethod
    def from_booking(cls, booking) -> "BookingResponse":
        fields = {name: getattr(booking, name) for name in cls.model_fields if name != "scheduled_dates"}
        return cls(**fields, scheduled_dates=booking.scheduled_dates())


class BookedSlot(BaseModel):
    booking_id: str
    date: date
    start_time: str
    end_time: str
    playable_area: int
    booking_status: str
    is_locked: bool
