"""
Exam endpoints: start, question sheet, submit and results.
"""
from typing import Any, List

from fastapi import APIRouter, Depends, status

from app.core.dependencies import get_current_active_user, get_submission_guard
from app.models.user import User
from app.schemas.exam import ExamResult as ExamResultSchema, ExamSheet, ExamSubmission, SubmissionResult
from app.services.submission import SubmissionGuard

router = APIRouter()


@router.post("/{test_id}/start", response_model=ExamSheet, status_code=status.HTTP_201_CREATED)
def start_exam(
    test_id: int,
    guard: SubmissionGuard = Depends(get_submission_guard),
    current_user: User = Depends(get_current_active_user),
) -> Any:
    """
    Start an attempt and get the question sheet.

    Args:
        test_id: Test ID
        guard: Submission guard
        current_user: Current authenticated user

    Returns:
        Questions without answers, plus the recorded start time

    Raises:
        AppError: No confirmed booking (403), unknown test (404) or the
            question bank changed since the test was published (409)
    """
    return guard.start(current_user, test_id)


@router.get("/{test_id}/questions", response_model=ExamSheet)
def get_questions(
    test_id: int,
    guard: SubmissionGuard = Depends(get_submission_guard),
    current_user: User = Depends(get_current_active_user),
) -> Any:
    """Question sheet for a test the caller may take."""
    return guard.questions(current_user, test_id)


@router.post("/{test_id}/submit", response_model=SubmissionResult)
def submit_exam(
    test_id: int,
    submission: ExamSubmission,
    guard: SubmissionGuard = Depends(get_submission_guard),
    current_user: User = Depends(get_current_active_user),
) -> Any:
    """
    Submit answers and get the score.

    Safe to call more than once: a repeat within the dedupe window returns
    the first result with ``is_duplicate`` set.
    """
    return guard.submit(current_user, test_id, submission.answers)


@router.get("/{test_id}/results", response_model=List[ExamResultSchema])
def get_results(
    test_id: int,
    guard: SubmissionGuard = Depends(get_submission_guard),
    current_user: User = Depends(get_current_active_user),
) -> Any:
    """Caller's completed attempts, newest first."""
    return guard.results(current_user, test_id)
