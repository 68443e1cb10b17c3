import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Boolean
from ..database import Base
import enum


class UserRole(str, enum.Enum):
    PLAYER = "player"
    PROVIDER = "provider"
    ADMIN = "admin"


class User(Base):
    """Platform account. Only the fields payments and notifications read are mapped."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    full_name = Column(String(150), nullable=True)
    email = Column(String(255), nullable=True, index=True)
    phone_number = Column(String(20), unique=True, nullable=True)
    role = Column(String(20), default=UserRole.PLAYER.value, nullable=False)

    # Firebase Cloud Messaging device token
    fcm_token = Column(String(512), nullable=True)

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<User {self.id} {self.role}>"
