"""Cloud certification exam practice – Flask backend."""
import logging

import click
from flask import Flask, current_app, jsonify, request

import config
import database as db
import expiry
import question_bank as bank
from errors import (
    AuthenticationRequired,
    ExamError,
    InvalidConfiguration,
    QuestionNotFound,
    QuestionSetMismatch,
    ResultNotFound,
    SessionExpired,
    SessionNotFound,
)
from events import EventPublisher
from models import ExamType, utcnow
from scoring_engine import ScoringEngine, review_answers
from session_manager import SessionManager

logger = logging.getLogger(__name__)


class ExamServices:
    """The exam core wired to its collaborators for one application."""

    def __init__(self, db_path, banks_dir, clock=utcnow):
        self.clock = clock
        self.events = EventPublisher()
        self.questions = bank.QuestionBank(banks_dir)
        self.results = db.SqliteResultRepository(db_path)
        self.sessions = SessionManager(db.SqliteSessionRepository(db_path), clock, self.events)
        self.scoring = ScoringEngine(self.results, clock, events=self.events)

    def load_questions(self, session):
        try:
            return self.questions.get_questions(session.question_ids)
        except QuestionNotFound as exc:
            logger.error(
                "Exam %s references questions missing from the bank: %s",
                session.id, exc.missing_ids,
            )
            raise QuestionSetMismatch(
                f"Exam {session.id} references questions that no longer exist"
            ) from exc

    def submit(self, session_id):
        """Close the session (if still open) and return its one result."""
        session = self.sessions.complete(session_id)
        existing = self.results.get_by_session(session.id)
        if existing is not None:
            return session, existing
        return session, self.scoring.submit(session, self.load_questions(session))

    def submit_expired(self, session):
        self.scoring.submit(session, self.load_questions(session))


def create_app(overrides=None):
    app = Flask(__name__)
    app.config.from_mapping(
        DATABASE_PATH=config.DATABASE_PATH,
        QUESTION_BANKS_DIR=config.QUESTION_BANKS_DIR,
        LOG_LEVEL=config.LOG_LEVEL,
        CLOCK=utcnow,
    )
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(level=app.config["LOG_LEVEL"], format=config.LOG_FORMAT)

    # Initialize the database on startup
    db.init_db(app.config["DATABASE_PATH"])
    app.extensions["exam"] = ExamServices(
        app.config["DATABASE_PATH"],
        app.config["QUESTION_BANKS_DIR"],
        clock=app.config["CLOCK"],
    )

    app.register_error_handler(ExamError, _handle_exam_error)
    _register_routes(app)
    _register_commands(app)
    return app


def services() -> ExamServices:
    return current_app.extensions["exam"]


def _handle_exam_error(exc):
    if exc.status_code >= 500:
        logger.error("%s: %s", exc.code, exc)
    else:
        logger.info("%s: %s", exc.code, exc)
    return jsonify(exc.to_dict()), exc.status_code


# ── Helpers ────────────────────────────────────────────────────────

def _current_user():
    user_id = request.headers.get("X-User-Id", "").strip()
    if not user_id:
        raise AuthenticationRequired()
    return user_id


def _owned_session(session_id, user_id):
    session = services().sessions.get_session(session_id)
    if session is None or session.user_id != user_id:
        raise SessionNotFound(f"Exam session not found: {session_id}")
    return session


def _session_payload(session):
    now = services().clock()
    payload = session.to_dict()
    payload["remaining_seconds"] = expiry.remaining_seconds(session, now)
    payload["expired"] = expiry.needs_forced_submit(session, now)
    return payload


def _prepare_question_for_client(question, exam_type):
    """Hide answers and explanations while a mock exam is running."""
    return question.to_dict(include_answers=exam_type is not ExamType.MOCK)


def _mutate(session_id, change):
    user_id = _current_user()
    _owned_session(session_id, user_id)
    try:
        session = change()
    except SessionExpired:
        _score_expired(session_id)
        raise
    return jsonify(_session_payload(session))


def _score_expired(session_id):
    """Score a session that just expired; the client still gets SessionExpired."""
    try:
        services().submit_expired(services().sessions.get_session(session_id))
    except ExamError:
        logger.exception("Could not score expired exam %s", session_id)


# ── API routes ─────────────────────────────────────────────────────

def _register_routes(app):

    @app.route("/api/banks")
    def api_banks():
        """List available question banks."""
        return jsonify(bank.list_banks(current_app.config["QUESTION_BANKS_DIR"]))

    @app.route("/api/certifications")
    def api_certifications():
        return jsonify([
            {"code": code, **info} for code, info in config.CERTIFICATIONS.items()
        ])

    @app.route("/api/sessions", methods=["POST"])
    def api_start_session():
        """
        Start a new exam session.

        Expects JSON body:
          certification: certification code
          exam_type: 'MOCK', 'PRACTICE' or 'CUSTOM' (default MOCK)
          question_ids + time_limit: explicit exam (optional)
          count, domains, difficulty: custom/practice options (optional)
        """
        user_id = _current_user()
        data = request.get_json(silent=True) or {}
        certification = data.get("certification")
        if not certification:
            raise InvalidConfiguration("A certification is required")
        try:
            exam_type = ExamType(data.get("exam_type", "MOCK"))
        except ValueError:
            raise InvalidConfiguration(f"Unknown exam type: {data.get('exam_type')}") from None

        svc = services()
        if data.get("question_ids"):
            question_ids = list(data["question_ids"])
            time_limit = data.get("time_limit")
        else:
            if exam_type is ExamType.MOCK and "time_limit" in data:
                raise InvalidConfiguration("Mock exams use the certification's time limit")
            question_ids, time_limit = bank.build_exam(
                svc.questions.for_certification(certification),
                certification,
                exam_type,
                count=data.get("count"),
                domains=data.get("domains"),
                difficulty=data.get("difficulty"),
            )
            time_limit = data.get("time_limit", time_limit)

        questions = svc.questions.get_questions(question_ids)
        foreign = [q.id for q in questions if q.certification != certification]
        if foreign:
            raise InvalidConfiguration(
                f"Questions do not belong to {certification}: {', '.join(foreign)}"
            )
        session = svc.sessions.start(user_id, certification, exam_type, question_ids, time_limit)

        payload = _session_payload(session)
        payload["questions"] = [_prepare_question_for_client(q, exam_type) for q in questions]
        return jsonify(payload), 201

    @app.route("/api/sessions/<session_id>")
    def api_get_session(session_id):
        session = _owned_session(session_id, _current_user())
        return jsonify(_session_payload(session))

    @app.route("/api/sessions/<session_id>/answers", methods=["PATCH"])
    def api_record_answer(session_id):
        """
        Record (replace) the answer for one question.

        Expects JSON body:
          question_id: question id
          selected: list of option indices ([] clears the answer)
        """
        data = request.get_json(silent=True) or {}
        return _mutate(session_id, lambda: services().sessions.record_answer(
            session_id, data.get("question_id"), data.get("selected", []),
        ))

    @app.route("/api/sessions/<session_id>/review", methods=["PATCH"])
    def api_mark_for_review(session_id):
        data = request.get_json(silent=True) or {}
        return _mutate(session_id, lambda: services().sessions.mark_for_review(
            session_id, data.get("question_id"), data.get("marked", True),
        ))

    @app.route("/api/sessions/<session_id>/submit", methods=["POST"])
    def api_submit_session(session_id):
        """Submit an exam for scoring. Safe to retry: returns the same result."""
        _owned_session(session_id, _current_user())
        svc = services()
        session, result = svc.submit(session_id)
        return jsonify({
            "session": _session_payload(session),
            "result": result.to_dict(),
            "responses": review_answers(session, svc.load_questions(session)),
        })

    @app.route("/api/results")
    def api_results():
        """List the current user's results, newest first."""
        user_id = _current_user()
        limit = request.args.get("limit", 50, type=int)
        offset = request.args.get("offset", 0, type=int)
        results = services().results.list_for_user(user_id, limit=limit, offset=offset)
        return jsonify([r.to_dict() for r in results])

    @app.route("/api/results/<result_id>")
    def api_result(result_id):
        user_id = _current_user()
        result = services().results.get(result_id)
        if result is None or result.user_id != user_id:
            raise ResultNotFound(f"Exam result not found: {result_id}")
        return jsonify(result.to_dict())

    @app.route("/api/stats")
    def api_stats():
        """Get the current user's statistics."""
        return jsonify(db.get_user_stats(_current_user(), current_app.config["DATABASE_PATH"]))


# ── CLI commands ───────────────────────────────────────────────────

def _register_commands(app):

    @app.cli.command("reap-expired")
    def reap_expired_command():
        """Expire and score abandoned exam sessions past their deadline."""
        svc = services()

        def score(session):
            try:
                svc.submit_expired(session)
            except QuestionSetMismatch:
                click.echo(f"Could not score session {session.id}", err=True)

        reaped = svc.sessions.reap_expired(on_expired=score)
        click.echo(f"Expired and scored {len(reaped)} session(s)")


# ── Entry point ────────────────────────────────────────────────────

if __name__ == "__main__":
    create_app().run(debug=True, port=5000)
