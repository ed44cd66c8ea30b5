"""Models module - Import all models here for Alembic."""
from app.db.base import Base
from app.models.user import User
from app.models.test import Test, QuestionBank
from app.models.booking import Booking, BookingStatus
from app.models.payment import PaymentRecord, PaymentRecordStatus
from app.models.exam_result import ExamResult

__all__ = ["Base", "User", "Test", "QuestionBank", "Booking", "BookingStatus", "PaymentRecord", "PaymentRecordStatus", "ExamResult"]
