"""
Test and question bank models.

Both are managed outside this service; bookings, payments and results only
read them.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric, Text, JSON
from sqlalchemy.orm import relationship

from app.core.clock import now
from app.db.base import Base


class QuestionBank(Base):
    """Category question bank.

    ``questions`` is a JSON list of
    ``{"title", "text", "type", "answer_options": [{"text", "is_correct"}]}``.
    Tests sample from it by position, so it is treated as append-only.
    """

    __tablename__ = "question_banks"

    id = Column(Integer, primary_key=True, index=True)
    category = Column(String, nullable=False)
    questions = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=now)

    tests = relationship("Test", back_populates="question_bank")


class Test(Base):
    """Bookable, paid assessment."""

    __test__ = False
    __tablename__ = "tests"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    duration_minutes = Column(Integer, nullable=False, default=60)
    price = Column(Numeric(10, 2), nullable=False, default=1)
    question_bank_id = Column(Integer, ForeignKey("question_banks.id"), nullable=True)
    question_count = Column(Integer, nullable=False, default=20)
    # SHA-256 of the bank content when the test was published
    question_bank_hash = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=now)

    # Relationships
    question_bank = relationship("QuestionBank", back_populates="tests")
    bookings = relationship("Booking", back_populates="test")
    exam_results = relationship("ExamResult", back_populates="test")
