"""
Booking reconciler: the booking/payment state machine.

Turns booking intents and payment confirmation events into booking status
transitions. Confirmations arrive through three channels (browser redirect,
provider webhook and status polling) in any order and possibly more than
once; all of them go through the same matching cascade so that applying an
event twice has the same effect as applying it once.

Matching cascade, first hit wins:

1. correlation token / provider order id
2. (test, user) among Pending rows; older duplicates are superseded
3. test alone        \\
4. user alone         > only when coarse fallback is enabled and the event
5. latest Pending    /  does not carry a correlation token of its own
"""
import json
import logging
import secrets
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.clock import now
from app.core.config import settings
from app.core.exceptions import (
    BookingNotFoundError,
    BookingValidationError,
    GatewayRejectedError,
    GatewayUnavailableError,
    PaymentIndeterminateError,
    SignatureVerificationError,
    TestNotFoundError,
)
from app.models.booking import Booking, BookingStatus
from app.models.payment import PaymentRecord, PaymentRecordStatus
from app.models.test import Test
from app.models.user import User
from app.schemas.booking import BookingIntent, BookingStatusView, CheckoutOrder
from app.schemas.booking import Booking as BookingSchema
from app.schemas.payment import (
    ConfirmationEvent,
    ConfirmationSource,
    ProviderPaymentStatus,
    ReconciliationOutcome,
    ReconciliationResult,
)
from app.services.booking_store import BookingStore
from app.services.payment_gateway import RazorpayClient

logger = logging.getLogger(__name__)

MATCH_TOKEN = "correlation_token"
MATCH_TEST_AND_USER = "test_and_user"
MATCH_TEST = "test"
MATCH_USER = "user"
MATCH_LATEST = "latest_pending"
COARSE_MATCHES = (MATCH_TEST, MATCH_USER, MATCH_LATEST)

WEBHOOK_STATUSES = {
    "payment.authorized": ProviderPaymentStatus.AUTHORIZED,
    "payment.captured": ProviderPaymentStatus.CAPTURED,
    "payment.failed": ProviderPaymentStatus.FAILED,
}

OUTCOME_MESSAGES = {
    ReconciliationOutcome.CONFIRMED: "Payment successful! Your booking is confirmed. You can now start your test.",
    ReconciliationOutcome.FAILED: "Your payment was declined. You can book the test again to retry.",
    ReconciliationOutcome.DUPLICATE: "This payment has already been processed.",
    ReconciliationOutcome.UNMATCHED: "We received your payment notification but could not match it to a booking. Our team will reconcile it shortly.",
    ReconciliationOutcome.INDETERMINATE: "We could not confirm your payment yet. Please try again in a moment.",
    ReconciliationOutcome.IGNORED: "Event ignored.",
}

STATUS_MESSAGES = {
    BookingStatus.PENDING.value: "Your payment is still being processed. Please check again shortly.",
    BookingStatus.CONFIRMED.value: "Your booking is confirmed. You can start the test.",
    BookingStatus.FAILED.value: "Your payment was declined. Please book the test again to retry.",
    BookingStatus.COMPLETED.value: "You have completed this test.",
    BookingStatus.SUPERSEDED.value: "This booking was replaced by a newer booking.",
    BookingStatus.ABANDONED.value: "This booking was abandoned. Please book the test again.",
}


def mint_correlation_token() -> str:
    return secrets.token_hex(16)


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


class BookingReconciler:
    """Booking intents and payment confirmations for one database session."""

    def __init__(
        self,
        db: Session,
        gateway: RazorpayClient,
        clock: Callable[[], datetime] = now,
        coarse_fallback: Optional[bool] = None,
    ):
        self.db = db
        self.store = BookingStore(db)
        self.gateway = gateway
        self.clock = clock
        self.coarse_fallback = (
            settings.PAYMENT_MATCH_COARSE_FALLBACK if coarse_fallback is None else coarse_fallback
        )

    # ============= Booking intent =============

    def _get_test(self, test_id: int) -> Test:
        test = self.db.query(Test).filter(Test.id == test_id).first()
        if test is None:
            raise TestNotFoundError()
        return test

    def _booking_window(self, test: Test, requested_date: date, time_hint: Optional[str]) -> Tuple[Optional[datetime], Optional[datetime]]:
        if not time_hint:
            return None, None
        try:
            start_of_day = time.fromisoformat(time_hint)
        except ValueError:
            raise BookingValidationError("Invalid time of day, expected HH:MM.")
        start_time = datetime.combine(requested_date, start_of_day)
        return start_time, start_time + timedelta(minutes=test.duration_minutes)

    def book(self, user: User, intent: BookingIntent) -> Tuple[Booking, CheckoutOrder]:
        """
        Record a booking intent and open a provider order for it.

        Any live booking for the same (test, user) is superseded first so
        only the new row can receive later confirmations.

        Returns:
            Tuple of (new Pending booking, checkout order)

        Raises:
            TestNotFoundError: Unknown test
            BookingValidationError: Date in the past or malformed time hint
            GatewayUnavailableError: Order could not be opened; the booking
                stays Pending and the order can be retried
        """
        test = self._get_test(intent.test_id)
        current_time = self.clock()
        if intent.requested_date < current_time.date():
            raise BookingValidationError("The requested date is in the past.")
        start_time, end_time = self._booking_window(test, intent.requested_date, intent.time_hint)

        try:
            self.store.lock_user(user.id)
            for live in self.store.live_for_pair(test.id, user.id):
                if live.status == BookingStatus.CONFIRMED.value:
                    logger.warning(
                        f"Superseding confirmed booking {live.id} for test {test.id} and user {user.id} with a new booking intent"
                    )
                live.transition(BookingStatus.SUPERSEDED, "replaced by new booking", at=current_time)
                logger.info(f"Booking {live.id} superseded by new booking intent for test {test.id} and user {user.id}")
            self.db.flush()

            booking = Booking(
                test_id=test.id,
                user_id=user.id,
                requested_date=intent.requested_date,
                start_time=start_time,
                end_time=end_time,
                correlation_token=mint_correlation_token(),
                status=BookingStatus.PENDING.value,
                status_reason="awaiting payment",
                created_at=current_time,
                updated_at=current_time,
            )
            self.store.add(booking)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception(f"Failed to record booking intent for test {test.id} and user {user.id}")
            raise

        self.db.refresh(booking)
        logger.info(
            f"Created pending booking {booking.id} for test {test.id} and user {user.id} with token {booking.correlation_token}"
        )
        return booking, self.open_order(booking)

    def open_order(self, booking: Booking) -> CheckoutOrder:
        """
        Open a provider order for a Pending booking.

        Gateway errors propagate unchanged and leave the booking untouched.
        """
        if booking.status != BookingStatus.PENDING.value:
            raise BookingValidationError("Only pending bookings can be paid for.")

        test = booking.test
        notes = {
            "test_id": str(test.id),
            "user_id": str(booking.user_id),
            "booking_id": str(booking.id),
        }
        order_id = self.gateway.create_order(
            booking.correlation_token, test.price, settings.PAYMENT_CURRENCY, notes
        )

        try:
            booking.provider_order_id = order_id
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception(f"Failed to store order {order_id} on booking {booking.id}")
            raise

        logger.info(f"Opened order {order_id} for booking {booking.id}")
        notes["correlation_token"] = booking.correlation_token
        return self.gateway.checkout_options(
            order_id, test.price, settings.PAYMENT_CURRENCY, booking.correlation_token, notes
        )

    def get_booking(self, user: User, booking_id: int) -> Booking:
        booking = self.store.get(booking_id)
        if booking is None or booking.user_id != user.id:
            raise BookingNotFoundError()
        return booking

    def retry_order(self, user: User, booking_id: int) -> Tuple[Booking, CheckoutOrder]:
        booking = self.get_booking(user, booking_id)
        return booking, self.open_order(booking)

    def abandon(self, user: User, test_id: int) -> int:
        """Mark the caller's Pending bookings for a test as Abandoned."""
        self._get_test(test_id)
        current_time = self.clock()
        try:
            pending = self.store.with_status_for_pair(test_id, user.id, (BookingStatus.PENDING.value,))
            for booking in pending:
                booking.transition(
                    BookingStatus.ABANDONED,
                    "user returned from payment gateway without completing payment",
                    at=current_time,
                )
                logger.info(f"Booking {booking.id} abandoned by user {user.id}")
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception(f"Failed to abandon bookings for test {test_id} and user {user.id}")
            raise

        if not pending:
            logger.warning(f"No pending bookings to abandon for test {test_id} and user {user.id}")
        return len(pending)

    # ============= Confirmation channels =============

    def confirm_redirect(
        self,
        order_id: Optional[str],
        payment_id: Optional[str],
        signature: Optional[str],
        test_id: Optional[int] = None,
        user_id: Optional[int] = None,
        correlation_token: Optional[str] = None,
    ) -> ReconciliationResult:
        """Browser redirect after checkout. The status is fetched from the provider."""
        event = ConfirmationEvent(
            source=ConfirmationSource.REDIRECT,
            provider_order_id=order_id or None,
            provider_payment_id=payment_id or None,
            provider_signature=signature or None,
            correlation_token=correlation_token or None,
            test_id=test_id,
            user_id=user_id,
        )
        if not self.gateway.verify_signature(event.provider_order_id, event.provider_payment_id, event.provider_signature):
            logger.warning(
                f"Redirect signature verification failed for order {order_id}, payment {payment_id}; possible tampering"
            )
            raise SignatureVerificationError()
        return self.reconcile(event)

    def confirm_webhook(
        self, raw_body: bytes, signature: Optional[str], timestamp: Optional[str]
    ) -> ReconciliationResult:
        """Server-to-server webhook. Verified byte-for-byte before parsing."""
        if not self.gateway.verify_webhook_signature(raw_body, signature, timestamp):
            logger.warning("Webhook signature verification failed; possible tampering")
            raise SignatureVerificationError()

        try:
            body = json.loads(raw_body)
        except ValueError:
            raise BookingValidationError("Malformed webhook body.")
        if not isinstance(body, dict):
            raise BookingValidationError("Malformed webhook body.")

        event_type = body.get("event")
        if event_type not in WEBHOOK_STATUSES:
            logger.info(f"Ignoring webhook event type {event_type}")
            return ReconciliationResult(
                outcome=ReconciliationOutcome.IGNORED,
                source=ConfirmationSource.WEBHOOK,
                message=OUTCOME_MESSAGES[ReconciliationOutcome.IGNORED],
            )

        payment = (body.get("payload") or {}).get("payment") or {}
        entity = payment.get("entity", payment) or {}
        notes = entity.get("notes") or {}
        if not isinstance(notes, dict):
            # the provider sends an empty list when there are no notes
            notes = {}

        reported = ProviderPaymentStatus.parse(entity.get("status"))
        if reported is ProviderPaymentStatus.UNKNOWN:
            reported = WEBHOOK_STATUSES[event_type]

        event = ConfirmationEvent(
            source=ConfirmationSource.WEBHOOK,
            provider_order_id=entity.get("order_id"),
            provider_payment_id=entity.get("id"),
            correlation_token=notes.get("correlation_token"),
            test_id=_to_int(notes.get("test_id")),
            user_id=_to_int(notes.get("user_id")),
            reported_status=reported,
        )
        logger.info(
            f"Webhook {event_type} for order {event.provider_order_id}, payment {event.provider_payment_id}"
        )
        return self.reconcile(event)

    def status(self, user: User, test_id: int, payment_id: Optional[str] = None) -> BookingStatusView:
        """
        Status poll for the caller's latest booking of a test.

        A Pending booking with a known order is checked against the provider
        and reconciled through the same rules as the other channels.
        """
        self._get_test(test_id)
        booking = self.store.latest_for_pair(test_id, user.id)
        message = None

        if booking is not None and booking.status == BookingStatus.PENDING.value and (
            payment_id or booking.provider_order_id
        ):
            try:
                result = self.confirm_poll(booking, payment_id)
                if result is not None:
                    message = result.message
            except (GatewayUnavailableError, GatewayRejectedError, PaymentIndeterminateError) as e:
                logger.warning(f"Status poll for booking {booking.id} could not reach the provider: {e}")
                message = OUTCOME_MESSAGES[ReconciliationOutcome.INDETERMINATE]
            booking = self.store.latest_for_pair(test_id, user.id)

        if booking is None:
            return BookingStatusView(test_id=test_id, message="No booking found for this test.")

        payment = self.store.latest_payment_for_booking(booking.id)
        return BookingStatusView(
            test_id=test_id,
            booking=BookingSchema.model_validate(booking),
            can_start=booking.can_start,
            payment_status=payment.status if payment else None,
            message=message or STATUS_MESSAGES[booking.status],
        )

    def confirm_poll(self, booking: Booking, payment_id: Optional[str] = None) -> Optional[ReconciliationResult]:
        """Ask the provider about a Pending booking's order and reconcile what it reports."""
        if payment_id:
            payment = self.gateway.fetch_payment(payment_id)
            if payment.get("order_id") != booking.provider_order_id:
                logger.warning(
                    f"Payment {payment_id} belongs to order {payment.get('order_id')}, not booking {booking.id}; ignoring"
                )
                return None
        else:
            payments = self.gateway.list_order_payments(booking.provider_order_id)
            if not payments:
                return None
            payment = payments[0]

        event = ConfirmationEvent(
            source=ConfirmationSource.POLL,
            provider_order_id=booking.provider_order_id,
            provider_payment_id=payment.get("id"),
            correlation_token=booking.correlation_token,
            test_id=booking.test_id,
            user_id=booking.user_id,
            reported_status=ProviderPaymentStatus.parse(payment.get("status")),
        )
        return self.reconcile(event)

    # ============= Reconciliation =============

    def reconcile(self, event: ConfirmationEvent) -> ReconciliationResult:
        """
        Apply a verified confirmation event.

        Raises:
            PaymentIndeterminateError: The provider could not be asked for the
                payment status; nothing was changed.
        """
        if not event.provider_payment_id:
            logger.warning(
                f"{event.source.value} event for order {event.provider_order_id} carries no payment id;"
                f" flagged for manual reconciliation"
            )
            return self._result(event, ReconciliationOutcome.UNMATCHED)

        duplicate = self._find_duplicate(event)
        if duplicate is not None:
            self.db.rollback()
            return duplicate

        status = self._resolve_status(event)
        if status is ProviderPaymentStatus.UNKNOWN:
            self.db.rollback()
            logger.info(
                f"Payment {event.provider_payment_id} via {event.source.value} has no final status yet"
            )
            return self._result(event, ReconciliationOutcome.INDETERMINATE)

        for attempt in (1, 2):
            try:
                return self._apply(event, status)
            except (StaleDataError, IntegrityError) as e:
                self.db.rollback()
                if attempt == 2:
                    logger.exception(
                        f"Could not reconcile payment {event.provider_payment_id} after concurrent update"
                    )
                    raise
                logger.warning(
                    f"Concurrent update while reconciling payment {event.provider_payment_id}: {e}; re-evaluating"
                )
            except Exception:
                self.db.rollback()
                logger.exception(f"Failed to reconcile payment {event.provider_payment_id} via {event.source.value}")
                raise

    def _resolve_status(self, event: ConfirmationEvent) -> ProviderPaymentStatus:
        if event.reported_status is not None:
            return event.reported_status
        try:
            return self.gateway.query_payment_status(event.provider_payment_id)
        except (GatewayUnavailableError, GatewayRejectedError) as e:
            logger.warning(f"Status query for payment {event.provider_payment_id} failed: {e}")
            raise PaymentIndeterminateError() from e

    def _find_duplicate(self, event: ConfirmationEvent) -> Optional[ReconciliationResult]:
        payment_id = event.provider_payment_id
        if not payment_id:
            return None

        record = self.store.payment_by_transaction(payment_id)
        booking = self.store.by_payment_id(payment_id)
        if record is not None and booking is None and record.booking_id is not None:
            booking = self.store.get(record.booking_id)

        if record is not None or (booking is not None and booking.status != BookingStatus.PENDING.value):
            logger.info(
                f"Duplicate {event.source.value} event for payment {payment_id}"
                f" (booking {booking.id if booking else None}); acknowledged without changes"
            )
            return self._result(
                event,
                ReconciliationOutcome.DUPLICATE,
                booking=booking,
                record=record,
            )
        return None

    def _match(self, event: ConfirmationEvent) -> Tuple[Optional[Booking], Optional[str]]:
        booking = self.store.by_reference(event.correlation_token, event.provider_order_id)
        if booking is not None:
            return booking, MATCH_TOKEN

        if event.test_id and event.user_id:
            candidates = self.store.pending_for_pair(event.test_id, event.user_id)
            if candidates:
                keep = candidates[0]
                for stale in candidates[1:]:
                    stale.transition(BookingStatus.SUPERSEDED, "duplicate booking superseded", at=self.clock())
                    logger.warning(
                        f"Booking {stale.id} superseded as a duplicate of booking {keep.id} for test {event.test_id} and user {event.user_id}"
                    )
                return keep, MATCH_TEST_AND_USER

        if event.correlation_token or not self.coarse_fallback:
            return None, None

        if event.test_id:
            booking = self.store.latest_pending_for_test(event.test_id)
            if booking is not None:
                return booking, MATCH_TEST
        if event.user_id:
            booking = self.store.latest_pending_for_user(event.user_id)
            if booking is not None:
                return booking, MATCH_USER
        booking = self.store.latest_pending()
        if booking is not None:
            return booking, MATCH_LATEST
        return None, None

    def _apply(self, event: ConfirmationEvent, status: ProviderPaymentStatus) -> ReconciliationResult:
        duplicate = self._find_duplicate(event)
        if duplicate is not None:
            self.db.rollback()
            return duplicate

        booking, strategy = self._match(event)
        if booking is None:
            self.db.rollback()
            logger.warning(
                f"Unmatchable {event.source.value} event: order {event.provider_order_id}, payment {event.provider_payment_id},"
                f" token {event.correlation_token}, test {event.test_id}, user {event.user_id}; flagged for manual reconciliation"
            )
            return self._result(event, ReconciliationOutcome.UNMATCHED)

        if booking.status != BookingStatus.PENDING.value:
            self.db.rollback()
            return self._already_resolved(event, booking, status)

        if strategy in COARSE_MATCHES:
            logger.warning(
                f"Payment {event.provider_payment_id} matched booking {booking.id} by {strategy} only; flagged for manual review"
            )

        current_time = self.clock()
        if event.provider_payment_id and not booking.provider_payment_id:
            booking.provider_payment_id = event.provider_payment_id
        if event.provider_order_id and not booking.provider_order_id:
            booking.provider_order_id = event.provider_order_id

        if status.is_success:
            booking.transition(BookingStatus.CONFIRMED, "payment confirmed", at=current_time)
            outcome = ReconciliationOutcome.CONFIRMED
            record_status, paid_at = PaymentRecordStatus.COMPLETED, current_time
        else:
            booking.transition(BookingStatus.FAILED, "payment failed", at=current_time)
            outcome = ReconciliationOutcome.FAILED
            record_status, paid_at = PaymentRecordStatus.FAILED, None

        record = None
        if self.store.payment_by_transaction(event.provider_payment_id) is None:
            record = self.store.add_payment(
                PaymentRecord(
                    user_id=booking.user_id,
                    booking_id=booking.id,
                    # Amount always comes from our own test record
                    amount=booking.test.price,
                    currency=settings.PAYMENT_CURRENCY,
                    status=record_status.value,
                    transaction_id=event.provider_payment_id,
                    created_at=current_time,
                    paid_at=paid_at,
                )
            )

        self.db.commit()
        logger.info(
            f"Booking {booking.id} -> {booking.status} via {event.source.value} (matched by {strategy});"
            f" order {event.provider_order_id}, payment {event.provider_payment_id}, provider status {status.value}"
        )
        return self._result(event, outcome, booking=booking, record=record, strategy=strategy)

    def _already_resolved(
        self, event: ConfirmationEvent, booking: Booking, status: ProviderPaymentStatus
    ) -> ReconciliationResult:
        agrees = (
            status.is_success
            and booking.status in (BookingStatus.CONFIRMED.value, BookingStatus.COMPLETED.value)
        ) or (not status.is_success and booking.status == BookingStatus.FAILED.value)

        if agrees:
            logger.info(
                f"Booking {booking.id} already {booking.status}; {event.source.value} event for payment"
                f" {event.provider_payment_id} acknowledged without changes"
            )
            return self._result(event, ReconciliationOutcome.DUPLICATE, booking=booking, strategy=MATCH_TOKEN)

        logger.error(
            f"Payment {event.provider_payment_id} reported {status.value} for booking {booking.id} which is already"
            f" {booking.status}; flagged for manual reconciliation"
        )
        return self._result(event, ReconciliationOutcome.UNMATCHED, booking=booking, strategy=MATCH_TOKEN)

    def _result(
        self,
        event: ConfirmationEvent,
        outcome: ReconciliationOutcome,
        booking: Optional[Booking] = None,
        record: Optional[PaymentRecord] = None,
        strategy: Optional[str] = None,
    ) -> ReconciliationResult:
        message = OUTCOME_MESSAGES[outcome]
        if outcome is ReconciliationOutcome.DUPLICATE and booking is not None:
            message = STATUS_MESSAGES.get(booking.status, message)
        return ReconciliationResult(
            outcome=outcome,
            source=event.source,
            booking_id=booking.id if booking else None,
            test_id=booking.test_id if booking else event.test_id,
            booking_status=booking.status if booking else None,
            payment_record_id=record.id if record else None,
            match_strategy=strategy,
            message=message,
        )
