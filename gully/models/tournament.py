import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Boolean, Numeric, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from ..database import Base


class Tournament(Base):
    __tablename__ = "tournaments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String(200), nullable=False)

    # Becomes active once the organiser's entry payment is captured
    is_active = Column(Boolean, default=False)

    is_sponsored = Column(Boolean, default=False)
    sponsor_package_id = Column(String(36), ForeignKey("packages.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    payments = relationship("TournamentPayment", back_populates="tournament", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Tournament {self.name} active={self.is_active}>"


class TournamentPayment(Base):
    """Captured payment attached to a tournament. One row per (tournament, payment)."""
    __tablename__ = "tournament_payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tournament_id = Column(String(36), ForeignKey("tournaments.id", ondelete="CASCADE"), nullable=False)
    payment_id = Column(String(36), ForeignKey("payments.id", ondelete="CASCADE"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    tournament = relationship("Tournament", back_populates="payments")

    __table_args__ = (
        UniqueConstraint("tournament_id", "payment_id", name="uq_tournament_payment"),
    )
