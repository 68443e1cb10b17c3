import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey
from ..database import Base


class Shop(Base):
    __tablename__ = "shops"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    shop_name = Column(String(200), nullable=False)

    # Subscription
    package_id = Column(String(36), ForeignKey("packages.id", ondelete="SET NULL"), nullable=True)
    is_subscription_purchased = Column(Boolean, default=False)
    package_start_date = Column(DateTime, nullable=True)
    package_end_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Shop {self.shop_name} subscribed={self.is_subscription_purchased}>"
