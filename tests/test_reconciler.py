"""
Tests for the booking reconciler: booking intent, the three confirmation
channels and the matching cascade.
"""
from datetime import timedelta

import pytest
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    BookingNotFoundError,
    BookingValidationError,
    GatewayUnavailableError,
    PaymentIndeterminateError,
    SignatureVerificationError,
    TestNotFoundError,
)
from app.models import Booking, BookingStatus, PaymentRecord, PaymentRecordStatus
from app.schemas.booking import BookingIntent
from app.schemas.payment import (
    ConfirmationEvent,
    ConfirmationSource,
    ProviderPaymentStatus,
    ReconciliationOutcome,
)
from app.services.reconciler import BookingReconciler


def book(reconciler, user, test, requested_date, time_hint=None):
    intent = BookingIntent(test_id=test.id, requested_date=requested_date, time_hint=time_hint)
    return reconciler.book(user, intent)


def live_bookings(db, test, user):
    return (
        db.query(Booking)
        .filter(
            Booking.test_id == test.id,
            Booking.user_id == user.id,
            Booking.status.in_(BookingStatus.live()),
        )
        .all()
    )


def pending_row(db, test, user, token, created_at, order_id=None):
    booking = Booking(
        test_id=test.id,
        user_id=user.id,
        requested_date=created_at.date(),
        correlation_token=token,
        provider_order_id=order_id,
        status=BookingStatus.PENDING.value,
        status_reason="awaiting payment",
        created_at=created_at,
        updated_at=created_at,
    )
    db.add(booking)
    db.commit()
    db.refresh(booking)
    return booking


def captured_event(**kwargs):
    kwargs.setdefault("source", ConfirmationSource.WEBHOOK)
    kwargs.setdefault("reported_status", ProviderPaymentStatus.CAPTURED)
    return ConfirmationEvent(**kwargs)


class TestBookingIntent:
    """Tests for BookingReconciler.book."""

    def test_book_creates_pending_booking_and_order(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        booking, checkout = book(reconciler, candidate, exam_test, booking_date, "09:30")

        assert booking.status == BookingStatus.PENDING.value
        assert booking.provider_order_id == checkout.order_id == "order_1"
        assert len(booking.correlation_token) == 32
        assert checkout.amount == 49900
        assert checkout.correlation_token == booking.correlation_token
        assert checkout.notes["correlation_token"] == booking.correlation_token

        order = gateway.orders["order_1"]
        assert order["receipt"] == booking.correlation_token
        assert order["notes"]["test_id"] == str(exam_test.id)
        assert order["notes"]["user_id"] == str(candidate.id)

    def test_book_sets_informational_window(self, reconciler, candidate, exam_test, booking_date):
        booking, _ = book(reconciler, candidate, exam_test, booking_date, "09:30")

        assert booking.start_time.date() == booking_date
        assert (booking.start_time.hour, booking.start_time.minute) == (9, 30)
        assert booking.end_time - booking.start_time == timedelta(minutes=30)

    def test_book_without_time_hint(self, reconciler, candidate, exam_test, booking_date):
        booking, _ = book(reconciler, candidate, exam_test, booking_date)
        assert booking.start_time is None
        assert booking.end_time is None

    def test_book_unknown_test(self, db, reconciler, candidate, exam_test, booking_date):
        with pytest.raises(TestNotFoundError):
            reconciler.book(candidate, BookingIntent(test_id=9999, requested_date=booking_date))
        assert db.query(Booking).count() == 0

    def test_book_past_date_rejected(self, db, reconciler, candidate, exam_test, clock):
        with pytest.raises(BookingValidationError):
            book(reconciler, candidate, exam_test, clock().date() - timedelta(days=1))
        assert db.query(Booking).count() == 0

    def test_book_today_allowed(self, reconciler, candidate, exam_test, clock):
        booking, _ = book(reconciler, candidate, exam_test, clock().date())
        assert booking.status == BookingStatus.PENDING.value

    def test_book_malformed_time_hint(self, db, reconciler, candidate, exam_test, booking_date):
        with pytest.raises(BookingValidationError):
            book(reconciler, candidate, exam_test, booking_date, "half past nine")
        assert db.query(Booking).count() == 0

    def test_rebooking_supersedes_pending(self, db, reconciler, candidate, exam_test, booking_date):
        """Abandon-and-retry: the first row is superseded, the second is the only live row."""
        first, _ = book(reconciler, candidate, exam_test, booking_date)
        second, _ = book(reconciler, candidate, exam_test, booking_date)

        db.refresh(first)
        assert first.status == BookingStatus.SUPERSEDED.value
        assert first.status_reason == "replaced by new booking"
        assert [b.id for b in live_bookings(db, exam_test, candidate)] == [second.id]

    def test_rebooking_supersedes_confirmed(self, db, reconciler, candidate, exam_test, booking_date, confirmed_booking):
        booking, _ = book(reconciler, candidate, exam_test, booking_date)

        db.refresh(confirmed_booking)
        assert confirmed_booking.status == BookingStatus.SUPERSEDED.value
        assert [b.id for b in live_bookings(db, exam_test, candidate)] == [booking.id]

    def test_rebooking_other_test_leaves_booking_alone(self, db, reconciler, candidate, exam_test, other_test, booking_date):
        first, _ = book(reconciler, candidate, exam_test, booking_date)
        book(reconciler, candidate, other_test, booking_date)

        db.refresh(first)
        assert first.status == BookingStatus.PENDING.value

    def test_order_failure_leaves_booking_pending(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        """A gateway outage surfaces as retryable and keeps the booking Pending."""
        gateway.fail_create = True

        with pytest.raises(GatewayUnavailableError):
            book(reconciler, candidate, exam_test, booking_date)

        booking = db.query(Booking).one()
        assert booking.status == BookingStatus.PENDING.value
        assert booking.provider_order_id is None

        gateway.fail_create = False
        booking, checkout = reconciler.retry_order(candidate, booking.id)
        assert booking.provider_order_id == checkout.order_id

    def test_retry_order_other_users_booking(self, reconciler, candidate, other_candidate, exam_test, booking_date):
        booking, _ = book(reconciler, candidate, exam_test, booking_date)
        with pytest.raises(BookingNotFoundError):
            reconciler.retry_order(other_candidate, booking.id)

    def test_retry_order_requires_pending(self, reconciler, candidate, confirmed_booking):
        with pytest.raises(BookingValidationError):
            reconciler.retry_order(candidate, confirmed_booking.id)


class TestAbandon:
    def test_abandon_pending(self, db, reconciler, candidate, exam_test, booking_date):
        booking, _ = book(reconciler, candidate, exam_test, booking_date)

        assert reconciler.abandon(candidate, exam_test.id) == 1

        db.refresh(booking)
        assert booking.status == BookingStatus.ABANDONED.value
        assert booking.status_reason == "user returned from payment gateway without completing payment"

    def test_abandon_leaves_confirmed_alone(self, db, reconciler, candidate, exam_test, confirmed_booking):
        assert reconciler.abandon(candidate, exam_test.id) == 0
        db.refresh(confirmed_booking)
        assert confirmed_booking.status == BookingStatus.CONFIRMED.value

    def test_abandoned_booking_ignores_late_payment(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        """A payment for an abandoned booking is flagged, not applied."""
        booking, checkout = book(reconciler, candidate, exam_test, booking_date)
        reconciler.abandon(candidate, exam_test.id)
        payment_id, signature = gateway.pay(checkout.order_id)

        result = reconciler.confirm_redirect(checkout.order_id, payment_id, signature)

        assert result.outcome == ReconciliationOutcome.UNMATCHED
        db.refresh(booking)
        assert booking.status == BookingStatus.ABANDONED.value
        assert db.query(PaymentRecord).count() == 0


class TestConfirmationScenarios:
    """End-to-end scenarios across the confirmation channels."""

    def test_webhook_then_redirect(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        """Happy path: webhook confirms, the later redirect is a no-op."""
        booking, checkout = book(reconciler, candidate, exam_test, booking_date)
        payment_id, signature = gateway.pay(checkout.order_id, "captured")

        result = reconciler.confirm_webhook(*gateway.webhook(payment_id))

        assert result.outcome == ReconciliationOutcome.CONFIRMED
        assert result.booking_id == booking.id
        assert result.match_strategy == "correlation_token"
        db.refresh(booking)
        assert booking.status == BookingStatus.CONFIRMED.value
        assert booking.status_reason == "payment confirmed"
        assert booking.provider_payment_id == payment_id

        record = db.query(PaymentRecord).one()
        assert record.status == PaymentRecordStatus.COMPLETED.value
        assert record.transaction_id == payment_id
        assert record.paid_at is not None
        assert record.amount == exam_test.price
        assert record.booking_id == booking.id

        second = reconciler.confirm_redirect(checkout.order_id, payment_id, signature, test_id=exam_test.id)

        assert second.outcome == ReconciliationOutcome.DUPLICATE
        assert db.query(PaymentRecord).count() == 1
        db.refresh(booking)
        assert booking.status == BookingStatus.CONFIRMED.value

    def test_redirect_queries_provider_status(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        booking, checkout = book(reconciler, candidate, exam_test, booking_date)
        payment_id, signature = gateway.pay(checkout.order_id, "authorized")

        result = reconciler.confirm_redirect(checkout.order_id, payment_id, signature)

        assert result.outcome == ReconciliationOutcome.CONFIRMED
        db.refresh(booking)
        assert booking.status == BookingStatus.CONFIRMED.value

    def test_webhook_before_any_booking(self, db, reconciler, gateway, candidate, exam_test):
        """A replayed webhook whose token matches nothing is acknowledged without writes."""
        gateway.orders["order_replay"] = {
            "notes": {"correlation_token": "f" * 32, "test_id": str(exam_test.id), "user_id": str(candidate.id)}
        }
        payment_id, _ = gateway.pay("order_replay", "captured")

        result = reconciler.confirm_webhook(*gateway.webhook(payment_id))

        assert result.outcome == ReconciliationOutcome.UNMATCHED
        assert db.query(Booking).count() == 0
        assert db.query(PaymentRecord).count() == 0

    def test_failed_payment_then_rebook(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        """A declined payment fails the booking; a new intent is not blocked by it."""
        booking, checkout = book(reconciler, candidate, exam_test, booking_date)
        payment_id, signature = gateway.pay(checkout.order_id, "failed")

        result = reconciler.confirm_redirect(checkout.order_id, payment_id, signature)

        assert result.outcome == ReconciliationOutcome.FAILED
        assert "declined" in result.message
        db.refresh(booking)
        assert booking.status == BookingStatus.FAILED.value
        record = db.query(PaymentRecord).one()
        assert record.status == PaymentRecordStatus.FAILED.value
        assert record.paid_at is None

        retry, _ = book(reconciler, candidate, exam_test, booking_date)
        db.refresh(booking)
        assert booking.status == BookingStatus.FAILED.value
        assert retry.status == BookingStatus.PENDING.value
        assert [b.id for b in live_bookings(db, exam_test, candidate)] == [retry.id]

    def test_webhook_failed_event(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        booking, checkout = book(reconciler, candidate, exam_test, booking_date)
        payment_id, _ = gateway.pay(checkout.order_id, "failed")

        result = reconciler.confirm_webhook(*gateway.webhook(payment_id, event="payment.failed"))

        assert result.outcome == ReconciliationOutcome.FAILED
        db.refresh(booking)
        assert booking.status == BookingStatus.FAILED.value

    def test_conflicting_outcome_is_flagged(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        """A different payment disagreeing with a settled booking never flips it."""
        booking, checkout = book(reconciler, candidate, exam_test, booking_date)
        first, _ = gateway.pay(checkout.order_id, "captured")
        reconciler.confirm_webhook(*gateway.webhook(first))
        second, _ = gateway.pay(checkout.order_id, "failed")

        result = reconciler.confirm_webhook(*gateway.webhook(second))

        assert result.outcome == ReconciliationOutcome.UNMATCHED
        db.refresh(booking)
        assert booking.status == BookingStatus.CONFIRMED.value
        assert db.query(PaymentRecord).count() == 1


CHANNEL_SEQUENCES = [
    ("webhook",),
    ("redirect",),
    ("poll",),
    ("webhook", "redirect"),
    ("redirect", "webhook"),
    ("poll", "webhook", "redirect"),
    ("webhook", "webhook", "webhook"),
    ("redirect", "poll", "redirect", "webhook", "poll"),
]


class TestIdempotentConfirmation:
    """Any number of duplicate events for one payment equals exactly one."""

    def deliver(self, channel, reconciler, gateway, candidate, exam_test, order_id, payment_id):
        if channel == "webhook":
            return reconciler.confirm_webhook(*gateway.webhook(payment_id))
        if channel == "redirect":
            return reconciler.confirm_redirect(order_id, payment_id, gateway.sign(order_id, payment_id))
        return reconciler.status(candidate, exam_test.id, payment_id=payment_id)

    @pytest.mark.parametrize("provider_status,booking_status,record_status", [
        ("captured", "Confirmed", "Completed"),
        ("failed", "Failed", "Failed"),
    ])
    @pytest.mark.parametrize("sequence", CHANNEL_SEQUENCES)
    def test_duplicate_events(
        self, db, reconciler, gateway, candidate, exam_test, booking_date,
        sequence, provider_status, booking_status, record_status,
    ):
        booking, checkout = book(reconciler, candidate, exam_test, booking_date)
        payment_id, _ = gateway.pay(checkout.order_id, provider_status)

        for channel in sequence:
            self.deliver(channel, reconciler, gateway, candidate, exam_test, checkout.order_id, payment_id)

        db.refresh(booking)
        assert booking.status == booking_status
        records = db.query(PaymentRecord).all()
        assert len(records) == 1
        assert records[0].status == record_status
        assert records[0].transaction_id == payment_id

    def test_repeat_reports_duplicate(self, reconciler, gateway, candidate, exam_test, booking_date):
        _, checkout = book(reconciler, candidate, exam_test, booking_date)
        payment_id, _ = gateway.pay(checkout.order_id)

        outcomes = [reconciler.confirm_webhook(*gateway.webhook(payment_id)).outcome for _ in range(3)]

        assert outcomes == [
            ReconciliationOutcome.CONFIRMED,
            ReconciliationOutcome.DUPLICATE,
            ReconciliationOutcome.DUPLICATE,
        ]


class TestMatchingCascade:
    """Each step of the fallback cascade, most specific first."""

    def test_match_by_correlation_token(self, db, reconciler, candidate, exam_test, clock):
        booking = pending_row(db, exam_test, candidate, "b" * 32, clock())

        result = reconciler.reconcile(captured_event(provider_payment_id="pay_t", correlation_token="b" * 32))

        assert result.outcome == ReconciliationOutcome.CONFIRMED
        assert result.booking_id == booking.id
        assert result.match_strategy == "correlation_token"

    def test_match_by_token_inside_order_id(self, db, reconciler, candidate, exam_test, clock):
        booking = pending_row(db, exam_test, candidate, "c" * 32, clock(), order_id="order_x")

        result = reconciler.reconcile(
            captured_event(provider_payment_id="pay_o", provider_order_id=f"rcpt_{'c' * 32}")
        )

        assert result.booking_id == booking.id
        assert result.match_strategy == "correlation_token"

    def test_match_by_stored_order_id(self, db, reconciler, candidate, exam_test, clock):
        booking = pending_row(db, exam_test, candidate, "d" * 32, clock(), order_id="order_77")

        result = reconciler.reconcile(captured_event(provider_payment_id="pay_s", provider_order_id="order_77"))

        assert result.booking_id == booking.id

    def test_match_by_test_and_user_demotes_duplicates(self, db, reconciler, candidate, exam_test, clock):
        older = pending_row(db, exam_test, candidate, "1" * 32, clock() - timedelta(minutes=5))
        newer = pending_row(db, exam_test, candidate, "2" * 32, clock())

        result = reconciler.reconcile(
            captured_event(provider_payment_id="pay_tu", test_id=exam_test.id, user_id=candidate.id)
        )

        assert result.booking_id == newer.id
        assert result.match_strategy == "test_and_user"
        db.refresh(older)
        db.refresh(newer)
        assert older.status == BookingStatus.SUPERSEDED.value
        assert older.status_reason == "duplicate booking superseded"
        assert newer.status == BookingStatus.CONFIRMED.value
        assert len(live_bookings(db, exam_test, candidate)) == 1

    def test_match_by_test_only(self, db, reconciler, candidate, other_candidate, exam_test, other_test, clock):
        target = pending_row(db, exam_test, candidate, "3" * 32, clock() - timedelta(minutes=1))
        pending_row(db, other_test, other_candidate, "4" * 32, clock())

        result = reconciler.reconcile(captured_event(provider_payment_id="pay_to", test_id=exam_test.id))

        assert result.booking_id == target.id
        assert result.match_strategy == "test"

    def test_match_by_user_only(self, db, reconciler, candidate, other_candidate, exam_test, other_test, clock):
        target = pending_row(db, other_test, candidate, "5" * 32, clock() - timedelta(minutes=1))
        pending_row(db, exam_test, other_candidate, "6" * 32, clock())

        result = reconciler.reconcile(captured_event(provider_payment_id="pay_uo", user_id=candidate.id))

        assert result.booking_id == target.id
        assert result.match_strategy == "user"

    def test_match_latest_pending(self, db, reconciler, candidate, other_candidate, exam_test, clock):
        pending_row(db, exam_test, candidate, "7" * 32, clock() - timedelta(minutes=2))
        latest = pending_row(db, exam_test, other_candidate, "8" * 32, clock())

        result = reconciler.reconcile(captured_event(provider_payment_id="pay_lp"))

        assert result.booking_id == latest.id
        assert result.match_strategy == "latest_pending"

    def test_no_pending_rows_is_unmatched(self, db, reconciler, confirmed_booking):
        result = reconciler.reconcile(captured_event(provider_payment_id="pay_none"))

        assert result.outcome == ReconciliationOutcome.UNMATCHED
        assert db.query(PaymentRecord).count() == 0

    def test_foreign_token_skips_coarse_matching(self, db, reconciler, candidate, exam_test, clock):
        """An event carrying a token of its own never falls back to coarse matches."""
        booking = pending_row(db, exam_test, candidate, "9" * 32, clock())

        result = reconciler.reconcile(
            captured_event(provider_payment_id="pay_ft", correlation_token="e" * 32, test_id=exam_test.id)
        )

        assert result.outcome == ReconciliationOutcome.UNMATCHED
        db.refresh(booking)
        assert booking.status == BookingStatus.PENDING.value

    def test_coarse_fallback_disabled(self, db, gateway, clock, candidate, exam_test):
        strict = BookingReconciler(db, gateway, clock=clock, coarse_fallback=False)
        booking = pending_row(db, exam_test, candidate, "0" * 32, clock())

        result = strict.reconcile(captured_event(provider_payment_id="pay_cd", test_id=exam_test.id))

        assert result.outcome == ReconciliationOutcome.UNMATCHED
        db.refresh(booking)
        assert booking.status == BookingStatus.PENDING.value

    def test_coarse_fallback_disabled_still_matches_pair(self, db, gateway, clock, candidate, exam_test):
        strict = BookingReconciler(db, gateway, clock=clock, coarse_fallback=False)
        booking = pending_row(db, exam_test, candidate, "0" * 32, clock())

        result = strict.reconcile(
            captured_event(provider_payment_id="pay_cp", test_id=exam_test.id, user_id=candidate.id)
        )

        assert result.booking_id == booking.id
        assert result.outcome == ReconciliationOutcome.CONFIRMED


class TestVerificationAndIndeterminate:
    """Signature failures and unknown outcomes never change state."""

    def test_redirect_bad_signature(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        booking, checkout = book(reconciler, candidate, exam_test, booking_date)
        payment_id, _ = gateway.pay(checkout.order_id)

        with pytest.raises(SignatureVerificationError):
            reconciler.confirm_redirect(checkout.order_id, payment_id, "0" * 64)

        db.refresh(booking)
        assert booking.status == BookingStatus.PENDING.value
        assert db.query(PaymentRecord).count() == 0

    def test_redirect_missing_signature(self, reconciler, gateway, candidate, exam_test, booking_date):
        _, checkout = book(reconciler, candidate, exam_test, booking_date)
        payment_id, _ = gateway.pay(checkout.order_id)

        with pytest.raises(SignatureVerificationError):
            reconciler.confirm_redirect(checkout.order_id, payment_id, None)

    def test_webhook_bad_signature(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        booking, checkout = book(reconciler, candidate, exam_test, booking_date)
        payment_id, _ = gateway.pay(checkout.order_id)
        body, _, timestamp = gateway.webhook(payment_id)

        with pytest.raises(SignatureVerificationError):
            reconciler.confirm_webhook(body, "deadbeef", timestamp)

        db.refresh(booking)
        assert booking.status == BookingStatus.PENDING.value

    def test_webhook_tampered_body(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        _, checkout = book(reconciler, candidate, exam_test, booking_date)
        payment_id, _ = gateway.pay(checkout.order_id, "failed")
        body, signature, timestamp = gateway.webhook(payment_id)

        with pytest.raises(SignatureVerificationError):
            reconciler.confirm_webhook(body.replace(b'"failed"', b'"captured"'), signature, timestamp)

    def test_webhook_other_event_ignored(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        booking, checkout = book(reconciler, candidate, exam_test, booking_date)
        payment_id, _ = gateway.pay(checkout.order_id)

        result = reconciler.confirm_webhook(*gateway.webhook(payment_id, event="order.paid"))

        assert result.outcome == ReconciliationOutcome.IGNORED
        db.refresh(booking)
        assert booking.status == BookingStatus.PENDING.value

    def test_gateway_outage_is_indeterminate(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        """A status query that cannot be answered is never treated as a failure."""
        booking, checkout = book(reconciler, candidate, exam_test, booking_date)
        payment_id, signature = gateway.pay(checkout.order_id)
        gateway.unavailable = True

        with pytest.raises(PaymentIndeterminateError) as exc_info:
            reconciler.confirm_redirect(checkout.order_id, payment_id, signature)

        assert exc_info.value.retryable is True
        db.refresh(booking)
        assert booking.status == BookingStatus.PENDING.value
        assert db.query(PaymentRecord).count() == 0

    def test_unsettled_payment_is_indeterminate(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        booking, checkout = book(reconciler, candidate, exam_test, booking_date)
        payment_id, signature = gateway.pay(checkout.order_id, "created")

        result = reconciler.confirm_redirect(checkout.order_id, payment_id, signature)

        assert result.outcome == ReconciliationOutcome.INDETERMINATE
        assert "try again" in result.message
        db.refresh(booking)
        assert booking.status == BookingStatus.PENDING.value

    def test_webhook_without_payment_id_changes_nothing(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        """Every terminal outcome writes a ledger row, so an event with no payment id is not applied."""
        booking, checkout = book(reconciler, candidate, exam_test, booking_date)
        payment_id, _ = gateway.pay(checkout.order_id)
        gateway.payments["pay_blank"] = {k: v for k, v in gateway.payments[payment_id].items() if k != "id"}

        result = reconciler.confirm_webhook(*gateway.webhook("pay_blank"))

        assert result.outcome == ReconciliationOutcome.UNMATCHED
        db.refresh(booking)
        assert booking.status == BookingStatus.PENDING.value
        assert db.query(PaymentRecord).count() == 0

    def test_event_without_payment_id_is_unmatched(self, db, reconciler, candidate, exam_test, clock):
        booking = pending_row(db, exam_test, candidate, "f" * 32, clock())

        result = reconciler.reconcile(captured_event(correlation_token="f" * 32))

        assert result.outcome == ReconciliationOutcome.UNMATCHED
        db.refresh(booking)
        assert booking.status == BookingStatus.PENDING.value


class TestStatusPoll:
    """Tests for BookingReconciler.status."""

    def test_poll_applies_provider_outcome(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        booking, checkout = book(reconciler, candidate, exam_test, booking_date)
        gateway.pay(checkout.order_id, "captured")

        view = reconciler.status(candidate, exam_test.id)

        assert view.booking.id == booking.id
        assert view.booking.status == BookingStatus.CONFIRMED.value
        assert view.can_start is True
        assert view.payment_status == PaymentRecordStatus.COMPLETED.value

    def test_poll_without_payment_stays_pending(self, reconciler, candidate, exam_test, booking_date):
        book(reconciler, candidate, exam_test, booking_date)

        view = reconciler.status(candidate, exam_test.id)

        assert view.booking.status == BookingStatus.PENDING.value
        assert view.can_start is False
        assert view.payment_status is None

    def test_poll_gateway_outage_reports_retry(self, reconciler, gateway, candidate, exam_test, booking_date):
        _, checkout = book(reconciler, candidate, exam_test, booking_date)
        gateway.pay(checkout.order_id, "captured")
        gateway.unavailable = True

        view = reconciler.status(candidate, exam_test.id)

        assert view.booking.status == BookingStatus.PENDING.value
        assert "try again" in view.message

    def test_poll_ignores_payment_for_other_order(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        booking, _ = book(reconciler, candidate, exam_test, booking_date)
        gateway.orders["order_elsewhere"] = {"notes": {}}
        payment_id, _ = gateway.pay("order_elsewhere", "captured")

        view = reconciler.status(candidate, exam_test.id, payment_id=payment_id)

        assert view.booking.status == BookingStatus.PENDING.value
        assert db.query(PaymentRecord).count() == 0

    def test_poll_no_booking(self, reconciler, candidate, exam_test):
        view = reconciler.status(candidate, exam_test.id)
        assert view.booking is None
        assert view.can_start is False

    def test_poll_only_sees_own_bookings(self, reconciler, gateway, candidate, other_candidate, exam_test, booking_date):
        book(reconciler, candidate, exam_test, booking_date)
        view = reconciler.status(other_candidate, exam_test.id)
        assert view.booking is None


class TestConcurrency:
    def test_retries_once_after_concurrent_update(self, db, reconciler, gateway, candidate, exam_test, booking_date, monkeypatch):
        booking, checkout = book(reconciler, candidate, exam_test, booking_date)
        payment_id, _ = gateway.pay(checkout.order_id)
        original = reconciler._apply
        calls = []

        def flaky(event, status):
            calls.append(event.provider_payment_id)
            if len(calls) == 1:
                raise StaleDataError("row was updated concurrently")
            return original(event, status)

        monkeypatch.setattr(reconciler, "_apply", flaky)

        result = reconciler.confirm_webhook(*gateway.webhook(payment_id))

        assert len(calls) == 2
        assert result.outcome == ReconciliationOutcome.CONFIRMED
        assert db.query(PaymentRecord).count() == 1

    def test_at_most_one_live_booking(self, db, reconciler, gateway, candidate, exam_test, booking_date):
        """Through any mix of intents, abandons and confirmations, one live row at most."""
        steps = ["book", "book", "abandon", "book", "pay", "book", "book", "pay", "abandon", "book"]
        checkout = None
        for step in steps:
            if step == "book":
                _, checkout = book(reconciler, candidate, exam_test, booking_date)
            elif step == "abandon":
                reconciler.abandon(candidate, exam_test.id)
            elif step == "pay" and checkout is not None:
                payment_id, _ = gateway.pay(checkout.order_id)
                reconciler.confirm_webhook(*gateway.webhook(payment_id))
            assert len(live_bookings(db, exam_test, candidate)) <= 1

    def test_booking_intent_locks_user_before_reading_live_rows(
        self, reconciler, candidate, exam_test, booking_date, monkeypatch
    ):
        """With no live row to lock yet, concurrent intents still serialise on the user row."""
        store = reconciler.store
        lock_user, live_for_pair = store.lock_user, store.live_for_pair
        calls = []

        def spy_lock_user(user_id):
            calls.append(("lock_user", user_id))
            return lock_user(user_id)

        def spy_live_for_pair(test_id, user_id, lock=True):
            calls.append(("live_for_pair", user_id))
            return live_for_pair(test_id, user_id, lock)

        monkeypatch.setattr(store, "lock_user", spy_lock_user)
        monkeypatch.setattr(store, "live_for_pair", spy_live_for_pair)

        book(reconciler, candidate, exam_test, booking_date)

        assert calls == [("lock_user", candidate.id), ("live_for_pair", candidate.id)]

    def test_lock_user_returns_user(self, db, reconciler, candidate):
        assert reconciler.store.lock_user(candidate.id).id == candidate.id
