"""Scoring engine: turns a finished exam session into its one exam result."""
from __future__ import annotations

import logging
import math
import uuid
from typing import Callable, Dict, List

import expiry
from config import (
    SCALE_ANCHOR_PERCENT,
    SCORE_SCALE_MAX,
    SCORE_SCALE_MIN,
    passing_score_for,
)
from errors import QuestionSetMismatch, SessionNotTerminal
from models import DomainScore, ExamResult, SessionStatus, utcnow

logger = logging.getLogger(__name__)


def round_half_up(value):
    """Round .5 away from zero for non-negative values, as exam reports do."""
    return int(math.floor(value + 0.5))


# ── Single question ────────────────────────────────────────────────

def is_answer_correct(question, selected):
    """Exact match: the selected options must equal the correct options."""
    if not selected:
        return False
    return frozenset(selected) == question.correct_answers


def score_question(question, selected):
    """
    Score a single question.

    Returns dict with:
      is_correct (bool), user_answer, correct_answer, feedback (str)
    """
    selected = frozenset(selected or ())
    return {
        "question_id": question.id,
        "domain": question.domain,
        "is_correct": is_answer_correct(question, selected),
        "user_answer": sorted(selected),
        "correct_answer": sorted(question.correct_answers),
        "feedback": question.explanation,
    }


# ── Scaled score ───────────────────────────────────────────────────

def unclamped_scaled_score(raw_percent):
    """Linear map with 70% raw -> 100 and 100% raw -> 1000."""
    slope = (SCORE_SCALE_MAX - SCORE_SCALE_MIN) / (100 - SCALE_ANCHOR_PERCENT)
    return round_half_up(SCORE_SCALE_MIN + (raw_percent - SCALE_ANCHOR_PERCENT) * slope)


def scaled_score(raw_percent):
    return max(SCORE_SCALE_MIN, min(SCORE_SCALE_MAX, unclamped_scaled_score(raw_percent)))


def raw_percent(correct, total):
    # divide first; multiplying first changes the float and flips some .5 roundings
    return correct / total * 100 if total else 0.0


# ── Full session scoring ───────────────────────────────────────────

def check_question_set(session, questions):
    """Raise QuestionSetMismatch unless ``questions`` covers exactly the session's ids."""
    supplied = [q.id for q in questions]
    expected = set(session.question_ids)
    if len(supplied) != len(set(supplied)) or set(supplied) != expected:
        missing = sorted(expected - set(supplied))
        unexpected = sorted(set(supplied) - expected)
        logger.error(
            "Question set mismatch for session %s: missing=%s unexpected=%s duplicates=%s",
            session.id, missing, unexpected, len(supplied) - len(set(supplied)),
        )
        raise QuestionSetMismatch(
            f"Questions do not match exam session {session.id} "
            f"(missing: {missing}, unexpected: {unexpected})"
        )


def completion_time(session, now):
    if session.completed_at is not None:
        return session.completed_at
    return min(now, session.end_time)


def score_session(session, questions, now, passing_score=None, result_id=None) -> ExamResult:
    """
    Score a terminal (or overdue) session against its question set.

    Pure: no I/O, no stored state. ``now`` only matters for a session that
    is still IN_PROGRESS, where it decides whether the deadline has passed.

    Raises:
        SessionNotTerminal: the session is IN_PROGRESS and time remains.
        QuestionSetMismatch: the questions are not the session's questions.
    """
    if session.status is SessionStatus.IN_PROGRESS and not expiry.is_expired(session, now):
        raise SessionNotTerminal()
    check_question_set(session, questions)

    by_id = {q.id: q for q in questions}
    correct_count = 0
    domains: Dict[str, Dict[str, int]] = {}

    for qid in session.question_ids:
        question = by_id[qid]
        dom = domains.setdefault(question.domain, {"total": 0, "correct": 0})
        dom["total"] += 1
        if is_answer_correct(question, session.answers.get(qid)):
            dom["correct"] += 1
            correct_count += 1

    total = len(session.question_ids)
    pct = raw_percent(correct_count, total)
    scaled = scaled_score(pct)
    if passing_score is None:
        passing_score = passing_score_for(session.certification)

    breakdown = tuple(
        DomainScore(
            domain=name,
            correct=data["correct"],
            total=data["total"],
            percentage=round_half_up(data["correct"] / data["total"] * 100),
            scaled_score=round_half_up(data["correct"] / data["total"] * SCORE_SCALE_MAX),
        )
        for name, data in domains.items()
    )

    completed_at = completion_time(session, now)
    time_spent = max(0, int((completed_at - session.start_time).total_seconds() // 60))

    return ExamResult(
        id=result_id or str(uuid.uuid4()),
        session_id=session.id,
        user_id=session.user_id,
        certification=session.certification,
        exam_type=session.exam_type,
        scaled_score=scaled,
        passed=scaled >= passing_score,
        passing_score=passing_score,
        total_questions=total,
        correct_answers=correct_count,
        score_percentage=round(pct, 1),
        domain_breakdown=breakdown,
        completed_at=completed_at,
        time_spent=time_spent,
        expired=session.status is not SessionStatus.COMPLETED,
    )


def review_answers(session, questions) -> List[dict]:
    """Per-question detail for a results page, in exam order."""
    by_id = {q.id: q for q in questions}
    responses = []
    for number, qid in enumerate(session.question_ids, start=1):
        detail = score_question(by_id[qid], session.answers.get(qid))
        detail["number"] = number
        detail["marked_for_review"] = qid in session.marked_for_review
        responses.append(detail)
    return responses


class ScoringEngine:
    """Produces exactly one stored result per terminal session.

    A repeated submit (a client retrying after a slow response) gets the
    result that was stored first instead of a freshly scored copy.
    """

    def __init__(self, results, clock: Callable = utcnow,
                 passing_scores: Callable[[str], int] = passing_score_for, events=None):
        self.results = results
        self.clock = clock
        self.passing_scores = passing_scores
        self.events = events

    def submit(self, session, questions) -> ExamResult:
        existing = self.results.get_by_session(session.id)
        if existing is not None:
            logger.info("Exam %s already scored as result %s", session.id, existing.id)
            return existing

        result = score_session(
            session, questions, self.clock(),
            passing_score=self.passing_scores(session.certification),
        )
        stored = self.results.add_if_absent(result)
        if stored.id != result.id:
            logger.info("Exam %s was scored concurrently; using result %s", session.id, stored.id)
            return stored

        logger.info(
            "Scored exam %s: %d/%d correct, scaled %d (%s)",
            session.id, result.correct_answers, result.total_questions,
            result.scaled_score, "pass" if result.passed else "fail",
        )
        if self.events is not None:
            self.events.publish("ExamCompleted", {
                "sessionId": result.session_id,
                "userId": result.user_id,
                "resultId": result.id,
                "certification": result.certification,
                "examType": result.exam_type.value,
                "scaledScore": result.scaled_score,
                "passed": result.passed,
                "completedAt": result.completed_at.isoformat(),
            })
        return stored
