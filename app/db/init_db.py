"""
Database initialization and seeding.
"""
import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from app.models.test import QuestionBank, Test
from app.models.user import User
from app.services.question_sampler import freeze_question_bank

logger = logging.getLogger(__name__)

SAMPLE_QUESTIONS = [
    {
        "title": "HTTP idempotency",
        "text": "Which HTTP method is idempotent by definition?",
        "type": "MultipleChoice",
        "answer_options": [
            {"text": "POST", "is_correct": False},
            {"text": "PUT", "is_correct": True},
            {"text": "PATCH", "is_correct": False},
        ],
    },
    {
        "title": "Transactions",
        "text": "Which property guarantees a transaction is applied entirely or not at all?",
        "type": "MultipleChoice",
        "answer_options": [
            {"text": "Atomicity", "is_correct": True},
            {"text": "Consistency", "is_correct": False},
            {"text": "Durability", "is_correct": False},
        ],
    },
    {
        "title": "Hashing",
        "text": "What does HMAC add on top of a plain hash?",
        "type": "MultipleChoice",
        "answer_options": [
            {"text": "Compression", "is_correct": False},
            {"text": "A shared secret key", "is_correct": True},
            {"text": "Encryption of the message", "is_correct": False},
        ],
    },
    {
        "title": "Indexes",
        "text": "A UNIQUE index on a column prevents what?",
        "type": "MultipleChoice",
        "answer_options": [
            {"text": "Duplicate values", "is_correct": True},
            {"text": "NULL values", "is_correct": False},
            {"text": "Slow reads", "is_correct": False},
        ],
    },
]


def init_db(db: Session) -> None:
    """
    Initialize database with default data.

    Args:
        db: Database session
    """
    admin = db.query(User).filter(User.email == "admin@example.com").first()
    if not admin:
        db.add(User(email="admin@example.com", full_name="System Administrator", role="admin", is_active=True))
        db.add(User(email="candidate@example.com", full_name="Demo Candidate", role="candidate", is_active=True))
        db.commit()
        logger.info("Demo users created")

    test = db.query(Test).filter(Test.title == "Backend Fundamentals").first()
    if not test:
        bank = QuestionBank(category="Backend", questions=SAMPLE_QUESTIONS)
        db.add(bank)
        test = Test(
            title="Backend Fundamentals",
            description="Short assessment of backend engineering basics.",
            duration_minutes=30,
            price=Decimal("499.00"),
            question_count=3,
        )
        db.add(test)
        db.flush()
        freeze_question_bank(test, bank)
        db.commit()
        logger.info(f"Demo test {test.id} created with question bank {bank.id}")
