import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Boolean, Integer, Numeric
from ..database import Base
import enum


class PackageFor(str, enum.Enum):
    SHOP = "shop"
    VENUE = "venue"
    INDIVIDUAL = "individual"
    SPONSOR = "sponsor"
    BANNER = "banner"


class Package(Base):
    """Subscription / sponsorship package that an order can purchase."""
    __tablename__ = "packages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(150), nullable=False)
    package_for = Column(String(20), nullable=False)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    duration_days = Column(Integer, nullable=False, default=30)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Package {self.name} for={self.package_for} days={self.duration_days}>"
