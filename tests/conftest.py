"""
Shared fixtures: in-memory database, seeded users and test, a fake payment
gateway with real signature checks, and an API client wired to both.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "test_key_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "test_webhook_secret"
os.environ["PAYMENT_MATCH_COARSE_FALLBACK"] = "true"

import itertools  # noqa: E402
import json  # noqa: E402
from datetime import datetime, timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.core.dependencies import get_db, get_payment_gateway  # noqa: E402
from app.core.exceptions import GatewayRejectedError, GatewayUnavailableError  # noqa: E402
from app.core.security import create_access_token  # noqa: E402
from app.db.base import SessionLocal, engine  # noqa: E402
from app.main import app  # noqa: E402
from app.models import Base, Booking, BookingStatus, QuestionBank, Test, User  # noqa: E402
from app.services.payment_gateway import RazorpayClient, hmac_sha256_hex  # noqa: E402
from app.services.question_sampler import freeze_question_bank  # noqa: E402
from app.services.reconciler import BookingReconciler  # noqa: E402
from app.services.submission import SubmissionGuard  # noqa: E402

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"


def make_questions(count):
    return [
        {
            "title": f"Question {i}",
            "text": f"What is the answer to question {i}?",
            "type": "MultipleChoice",
            "answer_options": [
                {"text": f"Right {i}", "is_correct": True},
                {"text": f"Wrong {i}a", "is_correct": False},
                {"text": f"Wrong {i}b", "is_correct": False},
            ],
        }
        for i in range(count)
    ]


class FakeClock:
    """Settable clock for services under test."""

    def __init__(self, current):
        self.current = current

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)


class FakeGateway(RazorpayClient):
    """Provider stand-in: network calls are simulated, signatures are real."""

    def __init__(self):
        super().__init__(
            key_id="rzp_test_key",
            key_secret=KEY_SECRET,
            webhook_secret=WEBHOOK_SECRET,
            callback_url="http://testserver/api/v1/payments/callback",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        self.orders = {}
        self.payments = {}
        self.fail_create = False
        self.unavailable = False
        self._order_ids = itertools.count(1)
        self._payment_ids = itertools.count(1)

    def create_order(self, correlation_token, amount, currency, metadata=None):
        if self.fail_create:
            raise GatewayUnavailableError()
        order_id = f"order_{next(self._order_ids)}"
        notes = {key: str(value) for key, value in (metadata or {}).items()}
        notes["correlation_token"] = correlation_token
        self.orders[order_id] = {"amount": amount, "currency": currency, "receipt": correlation_token, "notes": notes}
        return order_id

    def fetch_payment(self, payment_id):
        if self.unavailable:
            raise GatewayUnavailableError()
        if payment_id not in self.payments:
            raise GatewayRejectedError()
        return dict(self.payments[payment_id])

    def list_order_payments(self, order_id):
        if self.unavailable:
            raise GatewayUnavailableError()
        found = [dict(p) for p in self.payments.values() if p["order_id"] == order_id]
        return sorted(found, key=lambda p: p["created_at"], reverse=True)

    # ---- helpers for tests ----

    def pay(self, order_id, status="captured"):
        """Simulate the candidate paying; returns (payment_id, redirect signature)."""
        number = next(self._payment_ids)
        payment_id = f"pay_{number}"
        self.payments[payment_id] = {
            "id": payment_id,
            "order_id": order_id,
            "status": status,
            "created_at": number,
            "notes": self.orders.get(order_id, {}).get("notes", {}),
        }
        return payment_id, self.sign(order_id, payment_id)

    def sign(self, order_id, payment_id):
        return hmac_sha256_hex(KEY_SECRET, f"{order_id}|{payment_id}".encode("utf-8"))

    def webhook(self, payment_id, event=None, timestamp="1760781600"):
        """Signed webhook body and headers for a simulated payment."""
        payment = self.payments[payment_id]
        event = event or f"payment.{payment['status']}"
        body = json.dumps(
            {"entity": "event", "event": event, "payload": {"payment": {"entity": payment}}}
        ).encode("utf-8")
        signature = hmac_sha256_hex(WEBHOOK_SECRET, timestamp.encode("utf-8") + b"|" + body)
        return body, signature, timestamp


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def candidate(db):
    user = User(email="candidate@example.com", full_name="Candidate One", role="candidate", is_active=True)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def other_candidate(db):
    user = User(email="other@example.com", full_name="Candidate Two", role="candidate", is_active=True)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def special_user(db):
    user = User(email="special@example.com", full_name="Special User", role="special", is_active=True)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def question_bank(db):
    bank = QuestionBank(category="Backend", questions=make_questions(6))
    db.add(bank)
    db.commit()
    db.refresh(bank)
    return bank


@pytest.fixture
def exam_test(db, question_bank):
    test = Test(
        title="Backend Fundamentals",
        description="Assessment",
        duration_minutes=30,
        price=Decimal("499.00"),
        question_count=4,
    )
    db.add(test)
    db.flush()
    freeze_question_bank(test, question_bank)
    db.commit()
    db.refresh(test)
    return test


@pytest.fixture
def other_test(db, question_bank):
    test = Test(title="Second Test", duration_minutes=45, price=Decimal("99.50"), question_count=2)
    db.add(test)
    db.flush()
    freeze_question_bank(test, question_bank)
    db.commit()
    db.refresh(test)
    return test


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 18, 10, 0, 0))


@pytest.fixture
def booking_date(clock):
    return clock().date() + timedelta(days=2)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def reconciler(db, gateway, clock):
    return BookingReconciler(db, gateway, clock=clock, coarse_fallback=True)


@pytest.fixture
def guard(db, clock):
    return SubmissionGuard(db, clock=clock, dedupe_seconds=60, start_cap_minutes=10)


@pytest.fixture
def confirmed_booking(db, candidate, exam_test, clock):
    booking = Booking(
        test_id=exam_test.id,
        user_id=candidate.id,
        requested_date=clock().date(),
        correlation_token="a" * 32,
        provider_order_id="order_confirmed",
        provider_payment_id="pay_confirmed",
        status=BookingStatus.CONFIRMED.value,
        status_reason="payment confirmed",
        created_at=clock(),
        updated_at=clock(),
    )
    db.add(booking)
    db.commit()
    db.refresh(booking)
    return booking


@pytest.fixture
def client(db, gateway):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(candidate):
    token = create_access_token(str(candidate.id))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def special_auth_headers(special_user):
    token = create_access_token(str(special_user.id))
    return {"Authorization": f"Bearer {token}"}
