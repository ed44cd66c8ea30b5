"""
Pydantic schemas for payment confirmation events and their outcomes.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class ConfirmationSource(str, Enum):
    """Channel a confirmation event arrived through."""

    REDIRECT = "redirect"
    WEBHOOK = "webhook"
    POLL = "poll"


class ProviderPaymentStatus(str, Enum):
    CAPTURED = "captured"
    AUTHORIZED = "authorized"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ProviderPaymentStatus":
        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_success(self) -> bool:
        return self in (ProviderPaymentStatus.CAPTURED, ProviderPaymentStatus.AUTHORIZED)


class ConfirmationEvent(BaseModel):
    """A payment confirmation from any channel.

    Each channel supplies a different subset of the identifying fields. For
    webhooks ``reported_status`` comes from the signed body; for the other
    channels it is looked up from the provider.
    """

    source: ConfirmationSource
    provider_order_id: Optional[str] = None
    provider_payment_id: Optional[str] = None
    provider_signature: Optional[str] = None
    correlation_token: Optional[str] = None
    test_id: Optional[int] = None
    user_id: Optional[int] = None
    reported_status: Optional[ProviderPaymentStatus] = None


class ReconciliationOutcome(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    DUPLICATE = "duplicate"
    UNMATCHED = "unmatched"
    INDETERMINATE = "indeterminate"
    IGNORED = "ignored"


class ReconciliationResult(BaseModel):
    """Schema for the acknowledgement returned to any confirmation channel."""

    outcome: ReconciliationOutcome
    source: ConfirmationSource
    booking_id: Optional[int] = None
    test_id: Optional[int] = None
    booking_status: Optional[str] = None
    payment_record_id: Optional[int] = None
    match_strategy: Optional[str] = None
    message: str


class PaymentRecord(BaseModel):
    """Schema for payment record response."""

    id: int
    user_id: int
    booking_id: Optional[int] = None
    amount: Decimal
    currency: str
    status: str
    transaction_id: str
    created_at: datetime
    paid_at: Optional[datetime] = None

    class Config:
        """Pydantic config."""

        from_attributes = True
