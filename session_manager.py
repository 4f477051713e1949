"""Session manager: owns the mutable state of in-progress exam attempts."""
from __future__ import annotations

import logging
import threading
import uuid
import weakref
from typing import Callable, Iterable, List, Optional

import expiry
from errors import (
    InvalidAnswer,
    InvalidConfiguration,
    QuestionNotInSession,
    SessionExpired,
    SessionNotFound,
    SessionTerminal,
)
from models import ExamSession, ExamType, SessionStatus, utcnow
from repositories import SessionRepository

logger = logging.getLogger(__name__)


class SessionManager:
    """Start exam sessions and apply answer/review mutations to them.

    All writes to one session run under that session's lock and are stored
    with a version compare-and-set, so concurrent requests from several tabs
    resolve to last-write-wins and another process writing the same row
    surfaces as ``ConcurrentModification``.
    """

    def __init__(self, sessions: SessionRepository, clock: Callable = utcnow, events=None):
        self.sessions = sessions
        self.clock = clock
        self.events = events
        # entries drop out once no caller references the lock
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def lock_for(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.Lock()
            return lock

    # ── Lifecycle ──────────────────────────────────────────────────

    def start(self, user_id, certification, exam_type, question_ids, time_limit_minutes) -> ExamSession:
        if not user_id:
            raise InvalidConfiguration("A user id is required to start an exam")
        if not certification:
            raise InvalidConfiguration("A certification is required to start an exam")
        try:
            exam_type = ExamType(exam_type)
        except ValueError:
            raise InvalidConfiguration(f"Unknown exam type: {exam_type}") from None

        question_ids = tuple(question_ids or ())
        if not question_ids:
            raise InvalidConfiguration("An exam needs at least one question")
        if len(set(question_ids)) != len(question_ids):
            raise InvalidConfiguration("An exam cannot contain the same question twice")
        if (isinstance(time_limit_minutes, bool) or not isinstance(time_limit_minutes, int)
                or time_limit_minutes <= 0):
            raise InvalidConfiguration("Time limit must be a positive number of minutes")

        now = self.clock()
        session = ExamSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            certification=certification,
            exam_type=exam_type,
            question_ids=question_ids,
            start_time=now,
            time_limit=time_limit_minutes,
            updated_at=now,
        )
        self.sessions.add(session)
        logger.info(
            "Started %s exam %s for user %s (%s, %d questions, %d min)",
            exam_type.value, session.id, user_id, certification,
            len(question_ids), time_limit_minutes,
        )
        self._publish("ExamStarted", session, startTime=now.isoformat())
        return session

    def get_session(self, session_id) -> Optional[ExamSession]:
        return self.sessions.get(session_id)

    def record_answer(self, session_id, question_id, selected_option_indices: Iterable[int]) -> ExamSession:
        """Replace the selected options for one question; an empty selection clears it."""
        selected = _validate_selection(selected_option_indices)
        return self._mutate(
            session_id, question_id,
            lambda session, now: session.with_answer(question_id, selected, now),
        )

    def mark_for_review(self, session_id, question_id, marked: bool) -> ExamSession:
        return self._mutate(
            session_id, question_id,
            lambda session, now: session.with_review_mark(question_id, bool(marked), now),
        )

    def complete(self, session_id) -> ExamSession:
        """Close a session on user request.

        A session already past its deadline closes as EXPIRED instead.
        Terminal sessions are returned unchanged so retried submits are safe.
        """
        with self.lock_for(session_id):
            session = self._load(session_id)
            if session.is_terminal:
                return session
            now = self.clock()
            if expiry.is_expired(session, now):
                return self._expire_locked(session, now)
            closed = session.with_status(SessionStatus.COMPLETED, now)
            self.sessions.update(closed, session.version)
            logger.info("Completed exam %s", session_id)
            return closed

    def expire(self, session_id) -> ExamSession:
        """Move an overdue IN_PROGRESS session to EXPIRED; otherwise a no-op."""
        with self.lock_for(session_id):
            session = self._load(session_id)
            now = self.clock()
            if expiry.needs_forced_submit(session, now):
                return self._expire_locked(session, now)
            return session

    def reap_expired(self, on_expired: Optional[Callable[[ExamSession], None]] = None) -> List[ExamSession]:
        """Expire every abandoned session that ran out of time.

        ``on_expired`` is called with each newly expired session, typically
        to score it.
        """
        reaped = []
        for stale in self.sessions.list_overdue(self.clock()):
            session = self.expire(stale.id)
            if session.status is not SessionStatus.EXPIRED:
                continue
            reaped.append(session)
            if on_expired is not None:
                on_expired(session)
        if reaped:
            logger.info("Reaped %d expired exam sessions", len(reaped))
        return reaped

    # ── Internals ──────────────────────────────────────────────────

    def _load(self, session_id) -> ExamSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"Exam session not found: {session_id}")
        return session

    def _mutate(self, session_id, question_id, change) -> ExamSession:
        with self.lock_for(session_id):
            session = self._load(session_id)
            if session.is_terminal:
                raise SessionTerminal()
            now = self.clock()
            if expiry.is_expired(session, now):
                self._expire_locked(session, now)
                raise SessionExpired()
            if question_id not in session.question_ids:
                raise QuestionNotInSession(f"Question {question_id} is not part of this exam")
            updated = change(session, now)
            self.sessions.update(updated, session.version)
            return updated

    def _expire_locked(self, session, now) -> ExamSession:
        # time spent never runs past the deadline
        expired = session.with_status(SessionStatus.EXPIRED, now, completed_at=min(now, session.end_time))
        self.sessions.update(expired, session.version)
        logger.info("Exam %s expired at %s", session.id, session.end_time.isoformat())
        self._publish("ExamExpired", expired, reason="TIME_LIMIT_EXCEEDED")
        return expired

    def _publish(self, event_type, session, **detail):
        if self.events is None:
            return
        self.events.publish(event_type, {
            "sessionId": session.id,
            "userId": session.user_id,
            "certification": session.certification,
            "examType": session.exam_type.value,
            **detail,
        })


def _validate_selection(selected) -> frozenset:
    if selected is None:
        return frozenset()
    if isinstance(selected, (str, bytes, dict)):
        raise InvalidAnswer()
    try:
        indices = list(selected)
    except TypeError:
        raise InvalidAnswer() from None
    for index in indices:
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise InvalidAnswer()
    return frozenset(indices)
