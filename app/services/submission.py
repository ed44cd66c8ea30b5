"""
Submission guard and scorer.

Produces exactly one ExamResult per logical attempt even when the client
submits several times (navigation, auto-submit on tab close, manual retry),
and completes the owning booking in the same transaction.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.clock import now
from app.core.config import settings
from app.core.exceptions import AppError, BookingNotConfirmedError, BookingValidationError, TestNotFoundError
from app.models.booking import Booking, BookingStatus
from app.models.exam_result import ExamResult
from app.models.test import Test
from app.models.user import User
from app.schemas.exam import ExamSheet, SubmissionResult
from app.services.booking_store import BookingStore
from app.services.question_sampler import sample_questions, score_answers

logger = logging.getLogger(__name__)


class SubmissionGuard:
    """Exam start, question sheet, submission and results for one session."""

    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = now,
        dedupe_seconds: Optional[int] = None,
        start_cap_minutes: Optional[int] = None,
    ):
        self.db = db
        self.store = BookingStore(db)
        self.clock = clock
        self.dedupe_window = timedelta(
            seconds=settings.SUBMISSION_DEDUPE_SECONDS if dedupe_seconds is None else dedupe_seconds
        )
        self.start_cap = timedelta(
            minutes=settings.START_TIME_ESTIMATE_CAP_MINUTES if start_cap_minutes is None else start_cap_minutes
        )

    def _get_test(self, test_id: int) -> Test:
        test = self.db.query(Test).filter(Test.id == test_id).first()
        if test is None:
            raise TestNotFoundError()
        return test

    def _authorize(self, user: User, test: Test) -> Optional[Booking]:
        """Confirmed booking for the pair; special users need none."""
        confirmed = self.store.with_status_for_pair(
            test.id, user.id, (BookingStatus.CONFIRMED.value,), lock=False
        )
        if confirmed:
            return confirmed[0]
        if user.is_special:
            logger.info(f"Special user {user.id} taking test {test.id} without a booking")
            return None
        logger.warning(f"User {user.id} requested test {test.id} without a confirmed booking")
        raise BookingNotConfirmedError()

    # ---- result queries ----

    def _results(self, test_id: int, user_id: int):
        return self.db.query(ExamResult).filter(
            ExamResult.test_id == test_id, ExamResult.user_id == user_id
        )

    def _latest_placeholder(self, test_id: int, user_id: int) -> Optional[ExamResult]:
        return (
            self._results(test_id, user_id)
            .filter(ExamResult.total_questions == 0)
            .order_by(ExamResult.submitted_at.desc(), ExamResult.id.desc())
            .first()
        )

    def _recent_result(self, test_id: int, user_id: int, since: datetime) -> Optional[ExamResult]:
        return (
            self._results(test_id, user_id)
            .filter(ExamResult.submitted_at >= since)
            .order_by(ExamResult.submitted_at.desc(), ExamResult.id.desc())
            .first()
        )

    def _next_attempt_number(self, test_id: int, user_id: int) -> int:
        highest = (
            self.db.query(func.max(ExamResult.attempt_number))
            .filter(
                ExamResult.test_id == test_id,
                ExamResult.user_id == user_id,
                ExamResult.total_questions > 0,
            )
            .scalar()
        )
        return (highest or 0) + 1

    # ---- operations ----

    def _sheet(self, test: Test, started_at: Optional[datetime]) -> ExamSheet:
        questions = sample_questions(test)
        return ExamSheet(
            test_id=test.id,
            title=test.title,
            duration_minutes=test.duration_minutes,
            started_at=started_at,
            questions=[question.to_exam_question() for question in questions],
        )

    def start(self, user: User, test_id: int) -> ExamSheet:
        """
        Begin an attempt.

        Writes a zero-question placeholder result carrying the real start time,
        unless one is already open for the pair.

        Raises:
            TestNotFoundError: Unknown test
            BookingNotConfirmedError: No confirmed booking and not a special user
            QuestionBankChangedError: The bank changed since publication
        """
        test = self._get_test(test_id)
        self._authorize(user, test)
        sheet = self._sheet(test, None)

        placeholder = self._latest_placeholder(test.id, user.id)
        if placeholder is None:
            started_at = self.clock()
            placeholder = ExamResult(
                test_id=test.id,
                user_id=user.id,
                attempt_number=self._next_attempt_number(test.id, user.id),
                total_questions=0,
                correct_count=0,
                score=0.0,
                submitted_at=started_at,
                start_time=started_at,
            )
            try:
                self.db.add(placeholder)
                self.db.commit()
            except IntegrityError:
                # Concurrent start for the same attempt won
                self.db.rollback()
                placeholder = self._latest_placeholder(test.id, user.id)
            else:
                logger.info(
                    f"Started attempt {placeholder.attempt_number} of test {test.id} for user {user.id}"
                )

        sheet.started_at = placeholder.start_time if placeholder else None
        return sheet

    def questions(self, user: User, test_id: int) -> ExamSheet:
        """Read-only question sheet for the caller."""
        test = self._get_test(test_id)
        self._authorize(user, test)
        placeholder = self._latest_placeholder(test.id, user.id)
        return self._sheet(test, placeholder.start_time if placeholder else None)

    def submit(self, user: User, test_id: int, answers: Dict[int, int]) -> SubmissionResult:
        """
        Score a submission exactly once per attempt.

        A missing booking does not block scoring; it is logged and the
        result is kept.

        Args:
            user: Submitting user
            test_id: Test ID
            answers: Question id -> selected option id

        Returns:
            The stored result; ``is_duplicate`` is set when an earlier call
            already scored this attempt
        """
        test = self._get_test(test_id)
        for attempt in (1, 2):
            try:
                return self._submit(user, test, answers)
            except (IntegrityError, StaleDataError) as e:
                self.db.rollback()
                if attempt == 2:
                    logger.exception(f"Could not store submission for test {test.id} and user {user.id}")
                    raise
                logger.warning(
                    f"Concurrent submission for test {test.id} and user {user.id}: {e}; re-evaluating"
                )
            except AppError:
                self.db.rollback()
                raise
            except Exception:
                self.db.rollback()
                logger.exception(f"Failed to store submission for test {test.id} and user {user.id}")
                raise

    def _submit(self, user: User, test: Test, answers: Dict[int, int]) -> SubmissionResult:
        end_time = self.clock()

        recent = self._recent_result(test.id, user.id, end_time - self.dedupe_window)
        if recent is not None and recent.is_complete:
            self.db.rollback()
            logger.info(
                f"Duplicate submission for test {test.id} by user {user.id}; returning result {recent.id}"
            )
            return self._to_response(recent, is_duplicate=True)

        questions = sample_questions(test)
        if not questions:
            raise BookingValidationError("This test has no questions to score.")

        result = self._latest_placeholder(test.id, user.id)
        attempt_number = self._next_attempt_number(test.id, user.id)
        if result is None:
            result = ExamResult(test_id=test.id, user_id=user.id)
            self.db.add(result)
        result.attempt_number = attempt_number

        correct_count = score_answers(questions, answers)
        result.total_questions = len(questions)
        result.correct_count = correct_count
        result.score = float(correct_count)
        result.submitted_at = end_time
        result.end_time = end_time
        if result.start_time is None:
            result.start_time = end_time - min(timedelta(minutes=test.duration_minutes), self.start_cap)

        self._complete_booking(user, test, end_time)

        self.db.commit()
        self.db.refresh(result)
        logger.info(
            f"Scored attempt {result.attempt_number} of test {test.id} for user {user.id}:"
            f" {correct_count}/{result.total_questions} (result {result.id})"
        )
        return self._to_response(result, is_duplicate=False)

    def _complete_booking(self, user: User, test: Test, at: datetime) -> None:
        bookings = self.store.with_status_for_pair(
            test.id, user.id, (BookingStatus.CONFIRMED.value, BookingStatus.COMPLETED.value)
        )
        if not bookings:
            logger.warning(f"No confirmed booking to complete for test {test.id} and user {user.id}")
            return
        booking = bookings[0]
        booking.transition(BookingStatus.COMPLETED, "test completed by user", at=at)
        logger.info(f"Booking {booking.id} completed for test {test.id} and user {user.id}")

    def results(self, user: User, test_id: int) -> List[ExamResult]:
        """Complete results for the pair, newest first."""
        test = self._get_test(test_id)
        return (
            self._results(test.id, user.id)
            .filter(ExamResult.total_questions > 0)
            .order_by(ExamResult.attempt_number.desc())
            .all()
        )

    @staticmethod
    def _to_response(result: ExamResult, is_duplicate: bool) -> SubmissionResult:
        message = (
            "Your answers were already submitted." if is_duplicate else "Test submitted successfully."
        )
        return SubmissionResult(
            result_id=result.id,
            test_id=result.test_id,
            attempt_number=result.attempt_number,
            total_questions=result.total_questions,
            correct_count=result.correct_count,
            score=result.score,
            is_duplicate=is_duplicate,
            message=message,
        )
