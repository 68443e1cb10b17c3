import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Boolean, Integer, Numeric, ForeignKey, JSON
from ..database import Base


class Venue(Base):
    """Bookable sports venue and payout beneficiary."""
    __tablename__ = "venues"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String(200), nullable=False)
    sports = Column(JSON, default=list)  # ["cricket", "football"]
    playable_areas = Column(Integer, default=1, nullable=False)
    upi_id = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True)

    # Subscription
    is_subscription_purchased = Column(Boolean, default=False)
    package_id = Column(String(36), ForeignKey("packages.id", ondelete="SET NULL"), nullable=True)
    subscription_expiry = Column(DateTime, nullable=True)

    # Booking bookkeeping
    total_bookings = Column(Integer, default=0)
    total_amount = Column(Numeric(12, 2), default=0)
    amount_need_to_pay = Column(Numeric(12, 2), default=0)
    total_amount_paid = Column(Numeric(12, 2), default=0)

    # Razorpay payout beneficiary
    razorpay_contact_id = Column(String(64), nullable=True)
    razorpay_fund_account_id = Column(String(64), nullable=True)

    # Bumped on every slot lock; guards concurrent checkouts
    slot_version = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def supports_sport(self, sport: str) -> bool:
        wanted = (sport or "").strip().lower()
        return any(str(s).strip().lower() == wanted for s in (self.sports or []))

    def __repr__(self):
        return f"<Venue {self.name} v{self.slot_version}>"
