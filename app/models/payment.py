"""
Payment ledger model. Rows are appended once per terminal payment event and
never updated.
"""
from enum import Enum

from sqlalchemy import CheckConstraint, Column, Integer, String, DateTime, ForeignKey, Numeric
from sqlalchemy.orm import relationship

from app.core.clock import now
from app.db.base import Base


class PaymentRecordStatus(str, Enum):
    COMPLETED = "Completed"
    FAILED = "Failed"


class PaymentRecord(Base):
    """Payment record model."""

    __tablename__ = "payment_records"
    __table_args__ = (
        CheckConstraint(
            "status != 'Completed' OR (paid_at IS NOT NULL AND transaction_id IS NOT NULL)",
            name="ck_payment_records_completed_paid",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(String(20), nullable=False)
    # Provider payment id, the idempotency key for payment events
    transaction_id = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime, nullable=False, default=now)
    paid_at = Column(DateTime, nullable=True)

    # Relationships
    user = relationship("User", back_populates="payments")
    booking = relationship("Booking", back_populates="payments")
