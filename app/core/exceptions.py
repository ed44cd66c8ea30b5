"""
Domain errors raised by the booking, payment and exam services.

Handlers in ``app.main`` turn these into JSON responses. ``message`` is the
text shown to the end user; operator detail goes to the logs.
"""
from typing import Optional

from fastapi import status


class AppError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal_error"
    message: str = "Something went wrong. Please retry."
    retryable: bool = False

    def __init__(self, message: Optional[str] = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class BookingValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_request"
    message = "The booking request is invalid."


class TestNotFoundError(AppError):
    __test__ = False

    status_code = status.HTTP_404_NOT_FOUND
    code = "test_not_found"
    message = "The test you're looking for doesn't exist."


class BookingNotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "booking_not_found"
    message = "Booking not found."


class BookingNotConfirmedError(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "booking_not_confirmed"
    message = "Your booking payment is not confirmed. Please complete the payment before taking the test."


class SignatureVerificationError(AppError):
    """Event could not be proven to come from the payment provider."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_signature"
    message = "The payment could not be verified."


class GatewayUnavailableError(AppError):
    """Network failure or timeout talking to the payment provider."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "gateway_unavailable"
    message = "The payment service is temporarily unavailable. Please try again."
    retryable = True


class GatewayRejectedError(AppError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "gateway_rejected"
    message = "The payment service could not process the request. Please try again later."


class PaymentIndeterminateError(AppError):
    """The payment outcome could not be established right now."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "payment_indeterminate"
    message = "We could not confirm your payment yet. Please try again in a moment."
    retryable = True


class QuestionBankChangedError(AppError):
    status_code = status.HTTP_409_CONFLICT
    code = "question_bank_changed"
    message = "This test's questions have changed since it was published. Please contact support."
