import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey
from ..database import Base


class Individual(Base):
    """Individual service provider (coach, umpire, ...)."""
    __tablename__ = "individuals"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    full_name = Column(String(150), nullable=False)
    upi_id = Column(String(100), nullable=True)

    # Subscription
    has_active_subscription = Column(Boolean, default=False)
    package_id = Column(String(36), ForeignKey("packages.id", ondelete="SET NULL"), nullable=True)
    subscription_expiry = Column(DateTime, nullable=True)

    # Razorpay payout beneficiary
    razorpay_contact_id = Column(String(64), nullable=True)
    razorpay_fund_account_id = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Individual {self.full_name} subscribed={self.has_active_subscription}>"
