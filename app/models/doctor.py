from sqlalchemy import Column, Integer, String, DateTime, Boolean
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from typing import Optional

from ..core.database import Base

class Doctor(Base):
    __tablename__ = "doctors"

    id = Column(Integer, primary_key=True, index=True)

    # Public profile
    display_name = Column(String(150), nullable=False)
    specialty = Column(String(100), nullable=False)
    specialty_label = Column(String(100), nullable=True)
    specialty_slug = Column(String(100), nullable=False, index=True)

    # Availability
    is_available = Column(Boolean, default=True)
    auto_confirm_bookings = Column(Boolean, default=False)

    # Subscription
    subscription_ends_at = Column(DateTime, nullable=True)
    subscription_grace_ends_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    appointments = relationship("Appointment", back_populates="doctor")

    @property
    def role_label(self) -> str:
        return self.specialty_label or self.specialty

    def accepts_bookings(self, now: Optional[datetime] = None) -> bool:
        """Whether patients may book: available and within an active or grace subscription."""
        if not self.is_available:
            return False
        if self.subscription_ends_at is None:
            return False
        now = now or datetime.now(timezone.utc).replace(tzinfo=None)
        if self.subscription_ends_at >= now:
            return True
        return bool(self.subscription_grace_ends_at and self.subscription_grace_ends_at >= now)

    def __repr__(self):
        return f"<Doctor(id={self.id}, name='{self.display_name}', specialty='{self.specialty_slug}')>"
