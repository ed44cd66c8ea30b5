"""
Exam result model.
"""
from sqlalchemy import Column, Integer, DateTime, ForeignKey, Float, UniqueConstraint
from sqlalchemy.orm import relationship

from app.core.clock import now
from app.db.base import Base


class ExamResult(Base):
    """One row per attempt.

    A row with ``total_questions == 0`` is a placeholder written when the
    attempt started; submission fills it in.
    """

    __tablename__ = "exam_results"
    __table_args__ = (
        UniqueConstraint("test_id", "user_id", "attempt_number", name="uq_exam_results_attempt"),
    )

    id = Column(Integer, primary_key=True, index=True)
    test_id = Column(Integer, ForeignKey("tests.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False, default=1)

    total_questions = Column(Integer, nullable=False, default=0)
    correct_count = Column(Integer, nullable=False, default=0)
    score = Column(Float, nullable=False, default=0.0)

    submitted_at = Column(DateTime, nullable=False, default=now)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)

    # Relationships
    test = relationship("Test", back_populates="exam_results")
    user = relationship("User", back_populates="exam_results")

    @property
    def is_complete(self) -> bool:
        return self.total_questions > 0

    @property
    def percentage(self) -> float:
        if not self.total_questions:
            return 0.0
        return self.correct_count * 100.0 / self.total_questions
