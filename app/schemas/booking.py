"""
Pydantic schemas for bookings and checkout.
"""
from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class BookingIntent(BaseModel):
    """Schema for a candidate choosing a test and date."""

    test_id: int = Field(..., gt=0)
    requested_date: date
    time_hint: Optional[str] = Field(
        default=None, description="Preferred start time of day, HH:MM"
    )

    @field_validator("time_hint", mode="before")
    @classmethod
    def empty_str_to_none(cls, v):
        """Convert empty string or null-like values to None."""
        if v in ("", "null", "undefined", None):
            return None
        return v


class Booking(BaseModel):
    """Schema for booking response."""

    id: int
    test_id: int
    user_id: int
    requested_date: date
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: str
    status_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        """Pydantic config."""

        from_attributes = True


class CheckoutOrder(BaseModel):
    """Everything the browser needs to open the provider checkout."""

    key_id: str
    order_id: str
    amount: int = Field(..., description="Amount in minor currency units")
    currency: str
    correlation_token: str
    callback_url: str
    notes: Dict[str, str] = {}


class BookingCheckout(BaseModel):
    """Schema for a booking-intent response."""

    booking: Booking
    checkout: CheckoutOrder


class BookingStatusView(BaseModel):
    """Schema for the status-poll response."""

    test_id: int
    booking: Optional[Booking] = None
    can_start: bool = False
    payment_status: Optional[str] = None
    message: str


class BookingList(BaseModel):
    bookings: List[Booking]


class AbandonResult(BaseModel):
    test_id: int
    abandoned: int
