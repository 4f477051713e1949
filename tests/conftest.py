import json
from datetime import datetime, timedelta, timezone

import pytest

from app import create_app
from events import EventPublisher
from models import Difficulty, Question, QuestionType
from repositories import InMemoryResultRepository, InMemorySessionRepository
from scoring_engine import ScoringEngine
from session_manager import SessionManager

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """A clock the test moves by hand."""

    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


def make_question(qid, correct, domain="Cloud Concepts", qtype=None,
                  certification="CLF-C01", options=4, difficulty=Difficulty.MEDIUM):
    correct = frozenset(correct)
    if qtype is None:
        qtype = QuestionType.SINGLE_ANSWER if len(correct) == 1 else QuestionType.MULTI_ANSWER
    return Question(
        id=qid,
        certification=certification,
        domain=domain,
        difficulty=difficulty,
        text=f"Question {qid}?",
        type=qtype,
        options=tuple(f"Option {i}" for i in range(options)),
        correct_answers=correct,
        explanation=f"Explanation for {qid}",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_repo():
    return InMemorySessionRepository()


@pytest.fixture
def result_repo():
    return InMemoryResultRepository()


@pytest.fixture
def published():
    return []


@pytest.fixture
def events(published):
    publisher = EventPublisher()
    publisher.subscribe(published.append)
    return publisher


@pytest.fixture
def manager(session_repo, clock, events):
    return SessionManager(session_repo, clock=clock, events=events)


@pytest.fixture
def scoring(result_repo, clock, events):
    return ScoringEngine(result_repo, clock=clock, events=events)


# ── Flask app ──────────────────────────────────────────────────────

BANK = {
    "bank_id": "test-bank",
    "title": "Test bank",
    "certification": "CLF-C01",
    "questions": [
        {
            "id": "q1",
            "type": "SINGLE_ANSWER",
            "domain": "Cloud Concepts",
            "difficulty": "EASY",
            "question": "Pick B",
            "options": ["A", "B", "C", "D"],
            "correct": 1,
            "explanation": "B is right",
        },
        {
            "id": "q2",
            "type": "MULTI_ANSWER",
            "domain": "Technology",
            "difficulty": "MEDIUM",
            "question": "Pick A and C",
            "options": [
                {"id": "A", "text": "first"},
                {"id": "B", "text": "second"},
                {"id": "C", "text": "third"},
            ],
            "correct": ["A", "C"],
            "explanation": "A and C",
        },
        {
            "id": "q3",
            "type": "multiple_choice",
            "domain": "Technology",
            "difficulty": "HARD",
            "question": "Pick D",
            "options": ["A", "B", "C", "D"],
            "correct": 3,
        },
    ],
}


@pytest.fixture
def banks_dir(tmp_path):
    directory = tmp_path / "banks"
    directory.mkdir()
    (directory / "test-bank.json").write_text(json.dumps(BANK), encoding="utf-8")
    return directory


@pytest.fixture
def app(tmp_path, banks_dir, clock):
    return create_app({
        "TESTING": True,
        "DATABASE_PATH": str(tmp_path / "exam.db"),
        "QUESTION_BANKS_DIR": str(banks_dir),
        "CLOCK": clock,
    })


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers():
    return {"X-User-Id": "user-1"}
