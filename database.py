"""SQLite persistence for exam sessions, results and statistics."""
import json
import os
import sqlite3
from datetime import timezone

from config import DATABASE_PATH
from errors import ConcurrentModification
from models import (
    DomainScore,
    ExamResult,
    ExamSession,
    ExamType,
    SessionStatus,
    parse_timestamp,
)
from repositories import ResultRepository, SessionRepository


def get_connection(db_path=DATABASE_PATH):
    """Get a database connection with row_factory."""
    directory = os.path.dirname(db_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db(db_path=DATABASE_PATH):
    """Initialize database tables."""
    conn = get_connection(db_path)
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS exam_sessions (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            certification TEXT NOT NULL,
            exam_type TEXT NOT NULL CHECK(exam_type IN ('MOCK', 'PRACTICE', 'CUSTOM')),
            question_ids_json TEXT NOT NULL,
            answers_json TEXT NOT NULL DEFAULT '{}',
            review_json TEXT NOT NULL DEFAULT '[]',
            start_time TEXT NOT NULL,
            time_limit INTEGER NOT NULL,
            end_time TEXT NOT NULL,
            status TEXT NOT NULL
                CHECK(status IN ('IN_PROGRESS', 'COMPLETED', 'EXPIRED')),
            version INTEGER NOT NULL DEFAULT 1,
            updated_at TEXT,
            completed_at TEXT
        );

        CREATE TABLE IF NOT EXISTS exam_results (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL UNIQUE,
            user_id TEXT NOT NULL,
            certification TEXT NOT NULL,
            exam_type TEXT NOT NULL,
            scaled_score INTEGER NOT NULL,
            passed INTEGER NOT NULL DEFAULT 0,
            passing_score INTEGER NOT NULL,
            total_questions INTEGER NOT NULL,
            correct_answers INTEGER NOT NULL,
            score_percentage REAL NOT NULL,
            completed_at TEXT NOT NULL,
            time_spent INTEGER NOT NULL,
            expired INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY (session_id) REFERENCES exam_sessions(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS domain_results (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            result_id TEXT NOT NULL,
            domain TEXT NOT NULL,
            correct INTEGER NOT NULL,
            total INTEGER NOT NULL,
            percentage INTEGER NOT NULL,
            scaled_score INTEGER NOT NULL,
            FOREIGN KEY (result_id) REFERENCES exam_results(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_sessions_status_end
            ON exam_sessions(status, end_time);
        CREATE INDEX IF NOT EXISTS idx_results_user
            ON exam_results(user_id, completed_at);
        CREATE INDEX IF NOT EXISTS idx_domain_results_result
            ON domain_results(result_id);
    """)
    conn.commit()
    conn.close()


def _ts(value):
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


# ── Session operations ─────────────────────────────────────────────

def _session_params(session):
    return {
        "id": session.id,
        "user_id": session.user_id,
        "certification": session.certification,
        "exam_type": session.exam_type.value,
        "question_ids_json": json.dumps(list(session.question_ids)),
        "answers_json": json.dumps({qid: sorted(sel) for qid, sel in session.answers.items()}),
        "review_json": json.dumps(sorted(session.marked_for_review)),
        "start_time": _ts(session.start_time),
        "time_limit": session.time_limit,
        "end_time": _ts(session.end_time),
        "status": session.status.value,
        "version": session.version,
        "updated_at": _ts(session.updated_at),
        "completed_at": _ts(session.completed_at),
    }


def session_from_row(row):
    answers = json.loads(row["answers_json"] or "{}")
    return ExamSession(
        id=row["id"],
        user_id=row["user_id"],
        certification=row["certification"],
        exam_type=ExamType(row["exam_type"]),
        question_ids=tuple(json.loads(row["question_ids_json"])),
        start_time=parse_timestamp(row["start_time"]),
        time_limit=row["time_limit"],
        answers={qid: frozenset(sel) for qid, sel in answers.items()},
        marked_for_review=frozenset(json.loads(row["review_json"] or "[]")),
        status=SessionStatus(row["status"]),
        version=row["version"],
        updated_at=parse_timestamp(row["updated_at"]),
        completed_at=parse_timestamp(row["completed_at"]),
    )


class SqliteSessionRepository(SessionRepository):
    def __init__(self, db_path=DATABASE_PATH):
        self.db_path = db_path

    def add(self, session):
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """INSERT INTO exam_sessions
                   (id, user_id, certification, exam_type, question_ids_json,
                    answers_json, review_json, start_time, time_limit, end_time,
                    status, version, updated_at, completed_at)
                   VALUES (:id, :user_id, :certification, :exam_type,
                           :question_ids_json, :answers_json, :review_json,
                           :start_time, :time_limit, :end_time, :status,
                           :version, :updated_at, :completed_at)""",
                _session_params(session),
            )
            conn.commit()
        finally:
            conn.close()

    def get(self, session_id):
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM exam_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        finally:
            conn.close()
        return session_from_row(row) if row else None

    def update(self, session, expected_version):
        params = _session_params(session)
        params["expected_version"] = expected_version
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """UPDATE exam_sessions
                   SET answers_json = :answers_json,
                       review_json = :review_json,
                       status = :status,
                       version = :version,
                       updated_at = :updated_at,
                       completed_at = :completed_at
                   WHERE id = :id AND version = :expected_version""",
                params,
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise ConcurrentModification()
        finally:
            conn.close()

    def list_overdue(self, now):
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                """SELECT * FROM exam_sessions
                   WHERE status = 'IN_PROGRESS' AND end_time <= ?
                   ORDER BY end_time""",
                (_ts(now),),
            ).fetchall()
        finally:
            conn.close()
        return [session_from_row(r) for r in rows]


# ── Result operations ──────────────────────────────────────────────

class SqliteResultRepository(ResultRepository):
    def __init__(self, db_path=DATABASE_PATH):
        self.db_path = db_path

    def add_if_absent(self, result):
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """INSERT OR IGNORE INTO exam_results
                   (id, session_id, user_id, certification, exam_type,
                    scaled_score, passed, passing_score, total_questions,
                    correct_answers, score_percentage, completed_at,
                    time_spent, expired)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    result.id,
                    result.session_id,
                    result.user_id,
                    result.certification,
                    result.exam_type.value,
                    result.scaled_score,
                    1 if result.passed else 0,
                    result.passing_score,
                    result.total_questions,
                    result.correct_answers,
                    result.score_percentage,
                    _ts(result.completed_at),
                    result.time_spent,
                    1 if result.expired else 0,
                ),
            )
            if cursor.rowcount == 0:
                conn.rollback()
                return self._fetch_one(conn, "session_id", result.session_id)
            conn.executemany(
                """INSERT INTO domain_results
                   (result_id, domain, correct, total, percentage, scaled_score)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (result.id, d.domain, d.correct, d.total, d.percentage, d.scaled_score)
                    for d in result.domain_breakdown
                ],
            )
            conn.commit()
            return result
        finally:
            conn.close()

    def get(self, result_id):
        conn = get_connection(self.db_path)
        try:
            return self._fetch_one(conn, "id", result_id)
        finally:
            conn.close()

    def get_by_session(self, session_id):
        conn = get_connection(self.db_path)
        try:
            return self._fetch_one(conn, "session_id", session_id)
        finally:
            conn.close()

    def list_for_user(self, user_id, limit=50, offset=0):
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                """SELECT * FROM exam_results WHERE user_id = ?
                   ORDER BY completed_at DESC LIMIT ? OFFSET ?""",
                (user_id, limit, offset),
            ).fetchall()
            return [self._from_row(conn, r) for r in rows]
        finally:
            conn.close()

    def _fetch_one(self, conn, column, value):
        # column is always one of our own literal names
        row = conn.execute(
            f"SELECT * FROM exam_results WHERE {column} = ?", (value,)
        ).fetchone()
        return self._from_row(conn, row) if row else None

    @staticmethod
    def _from_row(conn, row):
        domains = conn.execute(
            """SELECT domain, correct, total, percentage, scaled_score
               FROM domain_results WHERE result_id = ? ORDER BY id""",
            (row["id"],),
        ).fetchall()
        return ExamResult(
            id=row["id"],
            session_id=row["session_id"],
            user_id=row["user_id"],
            certification=row["certification"],
            exam_type=ExamType(row["exam_type"]),
            scaled_score=row["scaled_score"],
            passed=bool(row["passed"]),
            passing_score=row["passing_score"],
            total_questions=row["total_questions"],
            correct_answers=row["correct_answers"],
            score_percentage=row["score_percentage"],
            domain_breakdown=tuple(DomainScore(**dict(d)) for d in domains),
            completed_at=parse_timestamp(row["completed_at"]),
            time_spent=row["time_spent"],
            expired=bool(row["expired"]),
        )


# ── Statistics ─────────────────────────────────────────────────────

def get_user_stats(user_id, db_path=DATABASE_PATH):
    """Aggregate exam statistics for one user."""
    conn = get_connection(db_path)

    overview = conn.execute("""
        SELECT
            COUNT(*) as total_exams,
            MAX(scaled_score) as best_score,
            ROUND(AVG(scaled_score), 1) as average_score,
            SUM(CASE WHEN passed = 1 THEN 1 ELSE 0 END) as pass_count
        FROM exam_results
        WHERE user_id = ?
    """, (user_id,)).fetchone()

    domain_stats = conn.execute("""
        SELECT
            d.domain,
            COUNT(*) as attempts,
            ROUND(AVG(d.percentage), 1) as average_percentage,
            MAX(d.percentage) as best_percentage,
            MIN(d.percentage) as worst_percentage
        FROM domain_results d
        JOIN exam_results r ON r.id = d.result_id
        WHERE r.user_id = ?
        GROUP BY d.domain
        ORDER BY d.domain
    """, (user_id,)).fetchall()

    recent = conn.execute("""
        SELECT scaled_score, passed, certification, exam_type, completed_at
        FROM exam_results
        WHERE user_id = ?
        ORDER BY completed_at DESC
        LIMIT 10
    """, (user_id,)).fetchall()

    conn.close()

    overview = dict(overview) if overview else {}
    total = overview.get("total_exams") or 0
    overview["pass_count"] = overview.get("pass_count") or 0
    overview["pass_rate"] = round(overview["pass_count"] / total * 100, 1) if total else 0
    return {
        "overview": overview,
        "domains": [dict(d) for d in domain_stats],
        "recent_scores": [
            {**dict(r), "passed": bool(r["passed"])} for r in recent
        ],
    }
