"""Schemas module - Import all schemas."""
from app.schemas.booking import (
    AbandonResult,
    Booking,
    BookingCheckout,
    BookingIntent,
    BookingList,
    BookingStatusView,
    CheckoutOrder,
)
from app.schemas.payment import (
    ConfirmationEvent,
    ConfirmationSource,
    PaymentRecord,
    ProviderPaymentStatus,
    ReconciliationOutcome,
    ReconciliationResult,
)
from app.schemas.exam import (
    ExamOption,
    ExamQuestion,
    ExamResult,
    ExamSheet,
    ExamSubmission,
    SubmissionResult,
)
from app.schemas.common import ErrorResponse

__all__ = [
    "AbandonResult",
    "Booking",
    "BookingCheckout",
    "BookingIntent",
    "BookingList",
    "BookingStatusView",
    "CheckoutOrder",
    "ConfirmationEvent",
    "ConfirmationSource",
    "PaymentRecord",
    "ProviderPaymentStatus",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "ExamOption",
    "ExamQuestion",
    "ExamResult",
    "ExamSheet",
    "ExamSubmission",
    "SubmissionResult",
    "ErrorResponse",
]
