"""
Booking endpoints: booking intent, order retry, abandon and status poll.
"""
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status

from app.core.dependencies import get_current_active_user, get_reconciler
from app.models.user import User
from app.schemas.booking import (
    AbandonResult,
    Booking as BookingSchema,
    BookingCheckout,
    BookingIntent,
    BookingList,
    BookingStatusView,
)
from app.services.reconciler import BookingReconciler

router = APIRouter()


@router.post("", response_model=BookingCheckout, status_code=status.HTTP_201_CREATED)
def create_booking(
    intent: BookingIntent,
    reconciler: BookingReconciler = Depends(get_reconciler),
    current_user: User = Depends(get_current_active_user),
) -> Any:
    """
    Book a test and open a payment order for it.

    Any earlier Pending or Confirmed booking of the same test by the caller
    is superseded.

    Args:
        intent: Test, requested date and optional time of day
        reconciler: Booking reconciler
        current_user: Current authenticated user

    Returns:
        The new Pending booking and the checkout details

    Raises:
        AppError: Validation failure (400), unknown test (404) or payment
            service unavailable (503, retry with ``/bookings/{id}/order``)
    """
    booking, checkout = reconciler.book(current_user, intent)
    return {"booking": booking, "checkout": checkout}


@router.get("", response_model=BookingList)
def list_bookings(
    reconciler: BookingReconciler = Depends(get_reconciler),
    current_user: User = Depends(get_current_active_user),
) -> Any:
    """List the caller's bookings, newest first."""
    return {"bookings": reconciler.store.list_for_user(current_user.id)}


@router.post("/{booking_id}/order", response_model=BookingCheckout)
def retry_order(
    booking_id: int,
    reconciler: BookingReconciler = Depends(get_reconciler),
    current_user: User = Depends(get_current_active_user),
) -> Any:
    """Open a fresh payment order for a Pending booking."""
    booking, checkout = reconciler.retry_order(current_user, booking_id)
    return {"booking": booking, "checkout": checkout}


@router.post("/tests/{test_id}/abandon", response_model=AbandonResult)
def abandon_booking(
    test_id: int,
    reconciler: BookingReconciler = Depends(get_reconciler),
    current_user: User = Depends(get_current_active_user),
) -> Any:
    """Back out of the payment flow for a test."""
    abandoned = reconciler.abandon(current_user, test_id)
    return AbandonResult(test_id=test_id, abandoned=abandoned)


@router.get("/tests/{test_id}/status", response_model=BookingStatusView)
def booking_status(
    test_id: int,
    payment_id: Optional[str] = Query(default=None),
    reconciler: BookingReconciler = Depends(get_reconciler),
    current_user: User = Depends(get_current_active_user),
) -> Any:
    """
    Current booking and payment status for the caller.

    Used by the UI to recover after losing client state. When the booking is
    still Pending the provider is asked for the payment outcome and any
    change is applied with the usual reconciliation rules.
    """
    return reconciler.status(current_user, test_id, payment_id=payment_id)


@router.get("/{booking_id}", response_model=BookingSchema)
def get_booking(
    booking_id: int,
    reconciler: BookingReconciler = Depends(get_reconciler),
    current_user: User = Depends(get_current_active_user),
) -> Any:
    """Get one of the caller's bookings."""
    return reconciler.get_booking(current_user, booking_id)
