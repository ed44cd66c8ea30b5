"""
Pydantic schemas for taking and submitting exams.
"""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ExamOption(BaseModel):
    """Answer option as shown to the candidate (no correctness flag)."""

    id: int
    text: str


class ExamQuestion(BaseModel):
    """Question as shown to the candidate."""

    id: int
    title: str
    text: str
    type: str
    options: List[ExamOption]


class ExamSheet(BaseModel):
    """Schema for the question set of one test."""

    test_id: int
    title: str
    duration_minutes: int
    started_at: Optional[datetime] = None
    questions: List[ExamQuestion]


class ExamSubmission(BaseModel):
    """Schema for submitting answers: question id -> selected option id."""

    answers: Dict[int, int] = Field(default_factory=dict)


class SubmissionResult(BaseModel):
    """Schema for the response to a submission."""

    result_id: int
    test_id: int
    attempt_number: int
    total_questions: int
    correct_count: int
    score: float
    is_duplicate: bool
    message: str


class ExamResult(BaseModel):
    """Schema for a stored result."""

    id: int
    test_id: int
    user_id: int
    attempt_number: int
    total_questions: int
    correct_count: int
    score: float
    submitted_at: datetime
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    class Config:
        """Pydantic config."""

        from_attributes = True
