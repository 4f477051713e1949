"""Exam domain records: questions, sessions and results."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import FrozenSet, Mapping, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Difficulty(str, enum.Enum):
    EASY = "EASY"
    MEDIUM = "MEDIUM"
    HARD = "HARD"


class QuestionType(str, enum.Enum):
    SINGLE_ANSWER = "SINGLE_ANSWER"
    MULTI_ANSWER = "MULTI_ANSWER"


class ExamType(str, enum.Enum):
    MOCK = "MOCK"
    PRACTICE = "PRACTICE"
    CUSTOM = "CUSTOM"


class SessionStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.IN_PROGRESS


@dataclass(frozen=True)
class Question:
    id: str
    certification: str
    domain: str
    difficulty: Difficulty
    text: str
    type: QuestionType
    options: Tuple[str, ...]
    correct_answers: FrozenSet[int]
    explanation: str = ""
    references: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()

    def __post_init__(self):
        if not self.correct_answers:
            raise ValueError(f"question {self.id} has no correct answer")
        if self.type is QuestionType.SINGLE_ANSWER and len(self.correct_answers) != 1:
            raise ValueError(f"single-answer question {self.id} must have exactly one correct answer")
        if any(i < 0 or i >= len(self.options) for i in self.correct_answers):
            raise ValueError(f"question {self.id} has a correct answer outside its options")

    def to_dict(self, include_answers=True):
        data = {
            "id": self.id,
            "certification": self.certification,
            "domain": self.domain,
            "difficulty": self.difficulty.value,
            "question": self.text,
            "type": self.type.value,
            "options": list(self.options),
            "tags": list(self.tags),
        }
        if include_answers:
            data["correct"] = sorted(self.correct_answers)
            data["explanation"] = self.explanation
            data["references"] = list(self.references)
        return data


@dataclass(frozen=True)
class ExamSession:
    """One exam attempt.

    ``question_ids`` is fixed at start. ``answers`` is sparse: a missing
    question id means unanswered. ``version`` increases with every write and
    guards concurrent updates.
    """

    id: str
    user_id: str
    certification: str
    exam_type: ExamType
    question_ids: Tuple[str, ...]
    start_time: datetime
    time_limit: int  # minutes
    answers: Mapping[str, FrozenSet[int]] = field(default_factory=dict)
    marked_for_review: FrozenSet[str] = frozenset()
    status: SessionStatus = SessionStatus.IN_PROGRESS
    version: int = 1
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        # read-only view over a private copy; changes go through with_answer
        if not isinstance(self.answers, MappingProxyType):
            object.__setattr__(self, "answers", MappingProxyType(dict(self.answers)))

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.time_limit)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def with_answer(self, question_id, selected, now):
        answers = dict(self.answers)
        answers[question_id] = frozenset(selected)
        return replace(self, answers=answers, version=self.version + 1, updated_at=now)

    def with_review_mark(self, question_id, marked, now):
        if marked:
            review = self.marked_for_review | {question_id}
        else:
            review = self.marked_for_review - {question_id}
        return replace(self, marked_for_review=review, version=self.version + 1, updated_at=now)

    def with_status(self, status, now, completed_at=None):
        return replace(
            self,
            status=status,
            version=self.version + 1,
            updated_at=now,
            completed_at=completed_at or now,
        )

    def to_dict(self):
        return {
            "session_id": self.id,
            "user_id": self.user_id,
            "certification": self.certification,
            "exam_type": self.exam_type.value,
            "questions": list(self.question_ids),
            "answers": {qid: sorted(sel) for qid, sel in self.answers.items()},
            "marked_for_review": [qid for qid in self.question_ids if qid in self.marked_for_review],
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "time_limit": self.time_limit,
            "status": self.status.value,
            "version": self.version,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class DomainScore:
    domain: str
    correct: int
    total: int
    percentage: int
    scaled_score: int

    def to_dict(self):
        return {
            "domain": self.domain,
            "correct": self.correct,
            "total": self.total,
            "percentage": self.percentage,
            "scaled_score": self.scaled_score,
        }


@dataclass(frozen=True)
class ExamResult:
    id: str
    session_id: str
    user_id: str
    certification: str
    exam_type: ExamType
    scaled_score: int
    passed: bool
    passing_score: int
    total_questions: int
    correct_answers: int
    score_percentage: float
    domain_breakdown: Tuple[DomainScore, ...]
    completed_at: datetime
    time_spent: int  # whole minutes
    expired: bool = False

    def domain(self, name) -> Optional[DomainScore]:
        return next((d for d in self.domain_breakdown if d.domain == name), None)

    def to_dict(self):
        return {
            "result_id": self.id,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "certification": self.certification,
            "exam_type": self.exam_type.value,
            "scaled_score": self.scaled_score,
            "passed": self.passed,
            "passing_score": self.passing_score,
            "total_questions": self.total_questions,
            "correct_answers": self.correct_answers,
            "score_percentage": self.score_percentage,
            "domain_breakdown": [d.to_dict() for d in self.domain_breakdown],
            "completed_at": self.completed_at.isoformat(),
            "time_spent": self.time_spent,
            "expired": self.expired,
        }

