"""
Repository ports for exam sessions and results, with in-memory adapters.

The SQLite adapters live in ``database.py``. Both guarantee:
- ``SessionRepository.update`` is a compare-and-set on ``version``.
- ``ResultRepository.add_if_absent`` stores at most one result per session
  and returns whichever result won.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from errors import ConcurrentModification
from models import ExamResult, ExamSession, SessionStatus


class SessionRepository(ABC):
    @abstractmethod
    def add(self, session: ExamSession) -> None:
        pass

    @abstractmethod
    def get(self, session_id: str) -> Optional[ExamSession]:
        pass

    @abstractmethod
    def update(self, session: ExamSession, expected_version: int) -> None:
        """Replace the stored session if its version is still ``expected_version``."""

    @abstractmethod
    def list_overdue(self, now) -> List[ExamSession]:
        """Sessions still IN_PROGRESS whose end time is not after ``now``."""


class ResultRepository(ABC):
    @abstractmethod
    def add_if_absent(self, result: ExamResult) -> ExamResult:
        pass

    @abstractmethod
    def get(self, result_id: str) -> Optional[ExamResult]:
        pass

    @abstractmethod
    def get_by_session(self, session_id: str) -> Optional[ExamResult]:
        pass

    @abstractmethod
    def list_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> List[ExamResult]:
        pass


class InMemorySessionRepository(SessionRepository):
    def __init__(self):
        self._sessions: Dict[str, ExamSession] = {}
        self._lock = threading.Lock()

    def add(self, session):
        with self._lock:
            if session.id in self._sessions:
                raise ValueError(f"session {session.id} already exists")
            self._sessions[session.id] = session

    def get(self, session_id):
        with self._lock:
            return self._sessions.get(session_id)

    def update(self, session, expected_version):
        with self._lock:
            current = self._sessions.get(session.id)
            if current is None or current.version != expected_version:
                raise ConcurrentModification()
            self._sessions[session.id] = session

    def list_overdue(self, now):
        with self._lock:
            return [
                s for s in self._sessions.values()
                if s.status is SessionStatus.IN_PROGRESS and s.end_time <= now
            ]


class InMemoryResultRepository(ResultRepository):
    def __init__(self):
        self._results: Dict[str, ExamResult] = {}
        self._by_session: Dict[str, str] = {}
        self._lock = threading.Lock()

    def add_if_absent(self, result):
        with self._lock:
            existing_id = self._by_session.get(result.session_id)
            if existing_id is not None:
                return self._results[existing_id]
            self._results[result.id] = result
            self._by_session[result.session_id] = result.id
            return result

    def get(self, result_id):
        with self._lock:
            return self._results.get(result_id)

    def get_by_session(self, session_id):
        with self._lock:
            result_id = self._by_session.get(session_id)
            return self._results.get(result_id) if result_id else None

    def list_for_user(self, user_id, limit=50, offset=0):
        with self._lock:
            results = [r for r in self._results.values() if r.user_id == user_id]
        results.sort(key=lambda r: r.completed_at, reverse=True)
        return results[offset:offset + limit]
