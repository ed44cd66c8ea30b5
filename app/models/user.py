"""
User model referenced by bookings, payments and results.
"""
from sqlalchemy import Boolean, Column, Integer, String, DateTime
from sqlalchemy.orm import relationship

from app.core.clock import now
from app.db.base import Base


class User(Base):
    """User model."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    role = Column(String, default="candidate")  # candidate, special, admin
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=now)

    # Relationships
    bookings = relationship("Booking", back_populates="user")
    payments = relationship("PaymentRecord", back_populates="user")
    exam_results = relationship("ExamResult", back_populates="user")

    @property
    def is_special(self) -> bool:
        """Special-category users may take tests without a booking."""
        return self.role == "special"
