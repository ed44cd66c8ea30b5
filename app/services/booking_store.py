"""
Booking store: the queries the reconciler and submission guard run against
bookings and the payment ledger.

Queries that feed a status change lock the rows they return
(``SELECT ... FOR UPDATE`` where the database supports it).
"""
from typing import List, Optional

from sqlalchemy import literal, or_
from sqlalchemy.orm import Query, Session

from app.models.booking import Booking, BookingStatus
from app.models.payment import PaymentRecord
from app.models.user import User


class BookingStore:
    """Query helpers bound to one database session."""

    def __init__(self, db: Session):
        self.db = db

    def _newest_first(self, query: Query, lock: bool = False) -> Query:
        query = query.order_by(Booking.created_at.desc(), Booking.id.desc())
        if lock:
            query = query.with_for_update()
        return query

    def get(self, booking_id: int) -> Optional[Booking]:
        return self.db.query(Booking).filter(Booking.id == booking_id).first()

    def add(self, booking: Booking) -> Booking:
        self.db.add(booking)
        return booking

    def lock_user(self, user_id: int) -> Optional[User]:
        """
        Lock the user row.

        Serialises booking intents for one user even when no booking row
        exists yet to lock.
        """
        return self.db.query(User).filter(User.id == user_id).with_for_update().first()

    def live_for_pair(self, test_id: int, user_id: int, lock: bool = True) -> List[Booking]:
        """Pending or Confirmed bookings for (test, user), newest first."""
        query = self.db.query(Booking).filter(
            Booking.test_id == test_id,
            Booking.user_id == user_id,
            Booking.status.in_(BookingStatus.live()),
        )
        return self._newest_first(query, lock).all()

    def with_status_for_pair(
        self, test_id: int, user_id: int, statuses: tuple, lock: bool = True
    ) -> List[Booking]:
        query = self.db.query(Booking).filter(
            Booking.test_id == test_id,
            Booking.user_id == user_id,
            Booking.status.in_(statuses),
        )
        return self._newest_first(query, lock).all()

    def latest_for_pair(self, test_id: int, user_id: int) -> Optional[Booking]:
        query = self.db.query(Booking).filter(
            Booking.test_id == test_id, Booking.user_id == user_id
        )
        return self._newest_first(query).first()

    def list_for_user(self, user_id: int) -> List[Booking]:
        return self._newest_first(
            self.db.query(Booking).filter(Booking.user_id == user_id)
        ).all()

    # ---- confirmation matching ----

    def by_reference(
        self, correlation_token: Optional[str], order_id: Optional[str]
    ) -> Optional[Booking]:
        """
        Booking whose correlation token matches the event, in any status.

        Matches the token carried in the provider metadata, the stored
        provider order id, or the stored token appearing inside the order id.
        """
        conditions = []
        if correlation_token:
            conditions.append(Booking.correlation_token == correlation_token)
        if order_id:
            conditions.append(Booking.provider_order_id == order_id)
            conditions.append(literal(order_id).contains(Booking.correlation_token))
        if not conditions:
            return None
        query = self.db.query(Booking).filter(or_(*conditions))
        # Pending rows first so a live candidate wins over an older resolved one
        pending_first = self._newest_first(
            query.filter(Booking.status == BookingStatus.PENDING.value), lock=True
        ).first()
        if pending_first is not None:
            return pending_first
        return self._newest_first(query).first()

    def by_payment_id(self, payment_id: str) -> Optional[Booking]:
        return self._newest_first(
            self.db.query(Booking).filter(Booking.provider_payment_id == payment_id)
        ).first()

    def pending_for_pair(self, test_id: int, user_id: int) -> List[Booking]:
        query = self.db.query(Booking).filter(
            Booking.status == BookingStatus.PENDING.value,
            Booking.test_id == test_id,
            Booking.user_id == user_id,
        )
        return self._newest_first(query, lock=True).all()

    def latest_pending_for_test(self, test_id: int) -> Optional[Booking]:
        query = self.db.query(Booking).filter(
            Booking.status == BookingStatus.PENDING.value, Booking.test_id == test_id
        )
        return self._newest_first(query, lock=True).first()

    def latest_pending_for_user(self, user_id: int) -> Optional[Booking]:
        query = self.db.query(Booking).filter(
            Booking.status == BookingStatus.PENDING.value, Booking.user_id == user_id
        )
        return self._newest_first(query, lock=True).first()

    def latest_pending(self) -> Optional[Booking]:
        query = self.db.query(Booking).filter(Booking.status == BookingStatus.PENDING.value)
        return self._newest_first(query, lock=True).first()

    # ---- payment ledger ----

    def payment_by_transaction(self, transaction_id: str) -> Optional[PaymentRecord]:
        return (
            self.db.query(PaymentRecord)
            .filter(PaymentRecord.transaction_id == transaction_id)
            .first()
        )

    def latest_payment_for_booking(self, booking_id: int) -> Optional[PaymentRecord]:
        return (
            self.db.query(PaymentRecord)
            .filter(PaymentRecord.booking_id == booking_id)
            .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
            .first()
        )

    def add_payment(self, record: PaymentRecord) -> PaymentRecord:
        self.db.add(record)
        return record
