"""Question banks: loads JSON bank files and assembles exams from them."""
import json
import logging
import os
import random
import threading

from config import (
    CERTIFICATIONS,
    CUSTOM_MINUTES_PER_QUESTION,
    CUSTOM_TIME_LIMIT_MAX,
    CUSTOM_TIME_LIMIT_MIN,
    LEGACY_QUESTION_TYPES,
    PRACTICE_QUESTION_COUNT,
    PRACTICE_TIME_LIMIT,
    QUESTION_BANKS_DIR,
)
from errors import InvalidConfiguration, QuestionNotFound, UnknownCertification
from models import Difficulty, ExamType, Question, QuestionType

logger = logging.getLogger(__name__)


class UnsupportedQuestion(ValueError):
    pass


# ── Question bank loading ──────────────────────────────────────────

def list_banks(banks_dir=QUESTION_BANKS_DIR):
    """Return metadata for all available question banks."""
    banks = []
    if not os.path.isdir(banks_dir):
        os.makedirs(banks_dir, exist_ok=True)
        return banks

    for fname in sorted(os.listdir(banks_dir)):
        if not fname.endswith(".json"):
            continue
        try:
            data = load_bank(fname, banks_dir)
        except (json.JSONDecodeError, IOError):
            logger.warning("Skipping unreadable question bank %s", fname, exc_info=True)
            continue
        questions = data.get("questions", [])
        type_counts = {}
        domain_counts = {}
        difficulty_counts = {}
        for q in questions:
            qtype = _normalize_type(q.get("type", "unknown"))
            type_counts[qtype] = type_counts.get(qtype, 0) + 1
            dom = q.get("domain", "?")
            domain_counts[dom] = domain_counts.get(dom, 0) + 1
            diff = str(q.get("difficulty", "MEDIUM")).upper()
            difficulty_counts[diff] = difficulty_counts.get(diff, 0) + 1
        banks.append({
            "file": fname,
            "bank_id": data.get("bank_id", fname),
            "title": data.get("title", fname),
            "certification": data.get("certification"),
            "description": data.get("description", ""),
            "version": data.get("version", "1.0"),
            "question_count": len(questions),
            "type_counts": type_counts,
            "domain_counts": domain_counts,
            "difficulty_counts": difficulty_counts,
        })
    return banks


def load_bank(filename, banks_dir=QUESTION_BANKS_DIR):
    """Load a raw question bank from a JSON file."""
    path = os.path.join(banks_dir, filename)
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_questions(bank_filenames=None, banks_dir=QUESTION_BANKS_DIR):
    """Load and merge questions from bank files (all banks when none are named)."""
    if bank_filenames is None:
        bank_filenames = [b["file"] for b in list_banks(banks_dir)]
    questions = []
    for fname in bank_filenames:
        bank = load_bank(fname, banks_dir)
        for raw in bank.get("questions", []):
            try:
                questions.append(parse_question(raw, bank.get("certification")))
            except UnsupportedQuestion as exc:
                logger.warning("Skipping question %s in %s: %s", raw.get("id"), fname, exc)
    return questions


# ── Record conversion ──────────────────────────────────────────────

def _normalize_type(qtype):
    return LEGACY_QUESTION_TYPES.get(qtype, qtype)


def option_ids(options):
    """Identifier of each option: its ``id`` for object options, else None."""
    return [opt.get("id") if isinstance(opt, dict) else None for opt in options]


def option_index(options, ref):
    """
    Convert a stored option reference to its index.

    ``ref`` is either an index or the ``id`` of an object option
    (e.g. "B" for {"id": "B", "text": ...}).
    """
    if isinstance(ref, bool):
        raise UnsupportedQuestion(f"invalid option reference {ref!r}")
    if isinstance(ref, int):
        if 0 <= ref < len(options):
            return ref
        raise UnsupportedQuestion(f"option index {ref} out of range")
    ids = option_ids(options)
    if ref in ids:
        return ids.index(ref)
    raise UnsupportedQuestion(f"unknown option id {ref!r}")


def parse_question(raw, certification=None):
    """Build a Question from a bank record, converting option ids to indices."""
    qtype = _normalize_type(raw.get("type"))
    try:
        qtype = QuestionType(qtype)
    except ValueError:
        raise UnsupportedQuestion(f"unsupported question type {raw.get('type')!r}") from None

    options = raw.get("options", [])
    correct = raw.get("correct", raw.get("correct_answers"))
    if correct is None:
        raise UnsupportedQuestion("no correct answer")
    if not isinstance(correct, list):
        correct = [correct]

    try:
        difficulty = Difficulty(str(raw.get("difficulty", "MEDIUM")).upper())
    except ValueError:
        raise UnsupportedQuestion(f"unknown difficulty {raw.get('difficulty')!r}") from None

    try:
        return Question(
            id=str(raw["id"]),
            certification=raw.get("certification", certification),
            domain=raw.get("domain", "?"),
            difficulty=difficulty,
            text=raw.get("question", raw.get("text", "")),
            type=qtype,
            options=tuple(opt["text"] if isinstance(opt, dict) else str(opt) for opt in options),
            correct_answers=frozenset(option_index(options, ref) for ref in correct),
            explanation=raw.get("explanation", ""),
            references=tuple(raw.get("references", [])),
            tags=tuple(raw.get("tags", [])),
        )
    except (KeyError, ValueError) as exc:
        if isinstance(exc, UnsupportedQuestion):
            raise
        raise UnsupportedQuestion(str(exc)) from exc


class QuestionBank:
    """All questions from a bank directory, keyed by id."""

    def __init__(self, banks_dir=QUESTION_BANKS_DIR):
        self.banks_dir = banks_dir
        self._questions = None
        self._lock = threading.Lock()

    def _index(self):
        with self._lock:
            if self._questions is None:
                questions = {}
                for q in load_questions(banks_dir=self.banks_dir):
                    if q.id in questions:
                        logger.warning("Duplicate question id %s; keeping the first", q.id)
                        continue
                    questions[q.id] = q
                self._questions = questions
            return self._questions

    def reload(self):
        with self._lock:
            self._questions = None

    def all(self):
        return list(self._index().values())

    def for_certification(self, certification):
        return [q for q in self._index().values() if q.certification == certification]

    def get_questions(self, question_ids):
        """Return the requested questions in order, or raise QuestionNotFound."""
        index = self._index()
        missing = [qid for qid in question_ids if qid not in index]
        if missing:
            raise QuestionNotFound(missing)
        return [index[qid] for qid in question_ids]


# ── Exam assembly ──────────────────────────────────────────────────

def build_exam(questions, certification, exam_type, count=None, domains=None,
               difficulty=None, rng=random):
    """
    Pick the questions for a new exam.

    Returns (question_ids, time_limit_minutes).
    """
    exam_type = ExamType(exam_type)
    pool = [q for q in questions if q.certification == certification]

    if exam_type is ExamType.MOCK:
        template = CERTIFICATIONS.get(certification)
        if template is None:
            raise UnknownCertification(f"Unsupported certification: {certification}")
        selected = _build_mock(pool, template, rng)
        time_limit = template["time_limit"]
    elif exam_type is ExamType.CUSTOM:
        if not count or count <= 0:
            raise InvalidConfiguration("Custom exams need a positive question count")
        filtered = pool
        if domains:
            filtered = [q for q in filtered if q.domain in domains]
        if difficulty and difficulty != "MIXED":
            filtered = [q for q in filtered if q.difficulty.value == difficulty]
        selected = _sample(filtered, count, rng)
        time_limit = max(CUSTOM_TIME_LIMIT_MIN,
                         min(CUSTOM_TIME_LIMIT_MAX, count * CUSTOM_MINUTES_PER_QUESTION))
    else:
        selected = _sample(pool, count or PRACTICE_QUESTION_COUNT, rng)
        time_limit = PRACTICE_TIME_LIMIT

    if not selected:
        raise InvalidConfiguration("No questions match the selected criteria")
    return [q.id for q in selected], time_limit


def _sample(pool, count, rng):
    shuffled = list(pool)
    rng.shuffle(shuffled)
    return shuffled[:count]


def _build_mock(pool, template, rng):
    selected = []
    for domain in template["domains"]:
        quota = template["total_questions"] * domain["percentage"] // 100
        domain_pool = [q for q in pool if q.domain == domain["name"]]
        if len(domain_pool) < quota:
            logger.warning(
                "Not enough questions for domain %s. Need %d, have %d",
                domain["name"], quota, len(domain_pool),
            )
        selected.extend(_sample(domain_pool, quota, rng))
    rng.shuffle(selected)
    return selected
