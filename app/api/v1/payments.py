"""
Payment confirmation endpoints: browser redirect callback and provider webhook.

Both are anonymous-allowed; trust comes from the provider signature.
"""
from typing import Any, Optional

from fastapi import APIRouter, Depends, Form, Header, Query, Request

from app.core.dependencies import get_optional_user, get_reconciler
from app.models.user import User
from app.schemas.payment import ReconciliationResult
from app.services.reconciler import BookingReconciler

router = APIRouter()


async def raw_body(request: Request) -> bytes:
    """Request body exactly as received, for signature verification."""
    return await request.body()


@router.post("/callback", response_model=ReconciliationResult)
def payment_callback(
    razorpay_payment_id: Optional[str] = Form(default=None),
    razorpay_order_id: Optional[str] = Form(default=None),
    razorpay_signature: Optional[str] = Form(default=None),
    form_test_id: Optional[int] = Form(default=None, alias="test_id"),
    query_test_id: Optional[int] = Query(default=None, alias="test_id"),
    reconciler: BookingReconciler = Depends(get_reconciler),
    current_user: Optional[User] = Depends(get_optional_user),
) -> Any:
    """
    Checkout redirect after the candidate pays.

    Args:
        razorpay_payment_id: Provider payment id
        razorpay_order_id: Provider order id
        razorpay_signature: HMAC of ``order_id|payment_id``
        form_test_id: Test id echoed by the checkout form
        query_test_id: Test id carried on the callback URL
        reconciler: Booking reconciler
        current_user: Caller, when the browser still holds a session

    Returns:
        Reconciliation outcome

    Raises:
        AppError: Invalid signature (400) or payment status unavailable (503)
    """
    return reconciler.confirm_redirect(
        order_id=razorpay_order_id,
        payment_id=razorpay_payment_id,
        signature=razorpay_signature,
        test_id=form_test_id or query_test_id,
        user_id=current_user.id if current_user else None,
    )


@router.post("/webhook", response_model=ReconciliationResult)
def payment_webhook(
    body: bytes = Depends(raw_body),
    x_razorpay_signature: Optional[str] = Header(default=None),
    x_razorpay_event_time: Optional[str] = Header(default=None),
    reconciler: BookingReconciler = Depends(get_reconciler),
) -> Any:
    """
    Provider webhook for ``payment.authorized``, ``payment.captured`` and
    ``payment.failed``.

    Events that match no booking are still acknowledged with 200 so the
    provider stops retrying; they are logged for manual reconciliation.
    """
    return reconciler.confirm_webhook(body, x_razorpay_signature, x_razorpay_event_time)
