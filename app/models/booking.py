"""
Booking model and its lifecycle statuses.
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, Integer, String, Date, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship

from app.core.clock import now
from app.db.base import Base


class BookingStatus(str, Enum):
    """Booking lifecycle.

    Pending -> Confirmed | Failed, Confirmed -> Completed, and any live row ->
    Superseded | Abandoned. Everything except Pending and Confirmed is terminal.
    """

    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    FAILED = "Failed"
    COMPLETED = "Completed"
    SUPERSEDED = "Superseded"
    ABANDONED = "Abandoned"

    @classmethod
    def live(cls):
        return (cls.PENDING.value, cls.CONFIRMED.value)

    @property
    def is_terminal(self) -> bool:
        return self.value not in self.live()


class Booking(Base):
    """A candidate's booking of a test, driven by payment reconciliation."""

    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_test_user_status", "test_id", "user_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    test_id = Column(Integer, ForeignKey("tests.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    requested_date = Column(Date, nullable=False)
    # Informational window, not an access gate
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)

    # Minted at booking-intent time and echoed back by the provider
    correlation_token = Column(String(64), unique=True, index=True, nullable=False)
    provider_order_id = Column(String, index=True, nullable=True)
    provider_payment_id = Column(String, index=True, nullable=True)

    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value, index=True)
    status_reason = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=now)
    updated_at = Column(DateTime, nullable=False, default=now)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    test = relationship("Test", back_populates="bookings")
    user = relationship("User", back_populates="bookings")
    payments = relationship("PaymentRecord", back_populates="booking")

    def transition(self, new_status: BookingStatus, reason: str, at: Optional[datetime] = None) -> None:
        """Move to ``new_status`` and stamp the audit fields."""
        self.status = new_status.value
        self.status_reason = reason
        self.updated_at = at or now()

    @property
    def can_start(self) -> bool:
        return self.status == BookingStatus.CONFIRMED.value
