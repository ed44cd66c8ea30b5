"""
Question sampler.

A test's question set is never stored per attempt. It is re-derived from the
category bank every time it is needed, seeded by the test id, so the sheet a
candidate sees and the sheet their submission is scored against are the same
ordered subset.

The bank is fingerprinted when the test is published; sampling refuses to run
once the bank content no longer matches.
"""
import hashlib
import json
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from app.core.exceptions import QuestionBankChangedError
from app.models.test import QuestionBank, Test
from app.schemas.exam import ExamOption, ExamQuestion

logger = logging.getLogger(__name__)

QUESTION_ID_BASE = 10000
OPTION_ID_BASE = 100000
OPTIONS_PER_QUESTION = 100
TITLE_FALLBACK_LENGTH = 100


@dataclass
class SampledOption:
    id: int
    text: str
    is_correct: bool = False


@dataclass
class SampledQuestion:
    """One question of a test sheet, with positional ids."""

    id: int
    title: str
    text: str
    type: str
    options: List[SampledOption] = field(default_factory=list)

    @property
    def correct_option_ids(self) -> set:
        return {option.id for option in self.options if option.is_correct}

    def to_exam_question(self) -> ExamQuestion:
        """Candidate-facing view, without correctness flags."""
        return ExamQuestion(
            id=self.id,
            title=self.title,
            text=self.text,
            type=self.type,
            options=[ExamOption(id=option.id, text=option.text) for option in self.options],
        )


def fingerprint_questions(questions: Optional[List[Dict[str, Any]]]) -> str:
    """SHA-256 over the canonical JSON of a question list."""
    canonical = json.dumps(questions or [], sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def freeze_question_bank(test: Test, bank: QuestionBank) -> str:
    """Attach ``bank`` to ``test`` and record its current fingerprint."""
    test.question_bank_id = bank.id
    test.question_bank = bank
    test.question_bank_hash = fingerprint_questions(bank.questions)
    logger.info(f"Froze question bank {bank.id} for test {test.id}: {test.question_bank_hash}")
    return test.question_bank_hash


def question_id(position: int) -> int:
    return QUESTION_ID_BASE + position


def option_id(position: int, index: int) -> int:
    return OPTION_ID_BASE + position * OPTIONS_PER_QUESTION + index


def _build_question(position: int, raw: Dict[str, Any]) -> SampledQuestion:
    text = raw.get("text") or ""
    options = [
        SampledOption(
            id=option_id(position, index),
            text=option.get("text") or "",
            is_correct=bool(option.get("is_correct")),
        )
        for index, option in enumerate(raw.get("answer_options") or [])
    ]
    return SampledQuestion(
        id=question_id(position),
        title=raw.get("title") or text[:TITLE_FALLBACK_LENGTH],
        text=text,
        type=raw.get("type") or "MultipleChoice",
        options=options,
    )


def sample_questions(test: Test, bank: Optional[QuestionBank] = None) -> List[SampledQuestion]:
    """
    Derive the ordered question subset for a test.

    Args:
        test: Test being taken; its id is the shuffle seed
        bank: Question bank, defaults to the test's own

    Returns:
        ``min(test.question_count, len(bank))`` questions, identical on every
        call for the same test and bank content

    Raises:
        QuestionBankChangedError: Bank content differs from the fingerprint
            frozen on the test
    """
    bank = bank or test.question_bank
    if bank is None:
        logger.warning(f"Test {test.id} has no question bank; no questions to show")
        return []

    questions = list(bank.questions or [])
    if test.question_bank_hash:
        current = fingerprint_questions(questions)
        if current != test.question_bank_hash:
            logger.error(
                f"Question bank {bank.id} changed since test {test.id} was published"
                f" (expected {test.question_bank_hash}, found {current})"
            )
            raise QuestionBankChangedError()

    rng = random.Random(test.id)
    rng.shuffle(questions)
    selected = questions[: min(test.question_count, len(questions))]
    logger.info(f"Selected {len(selected)} of {len(questions)} questions for test {test.id}")

    return [_build_question(position, raw) for position, raw in enumerate(selected)]


def score_answers(questions: List[SampledQuestion], answers: Dict[int, int]) -> int:
    """One point per question whose selected option is correct.

    Unknown question ids are ignored and unanswered questions score nothing.
    """
    correct = 0
    for question in questions:
        selected = answers.get(question.id)
        if selected is not None and selected in question.correct_option_ids:
            correct += 1
    return correct
