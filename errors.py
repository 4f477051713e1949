"""Exam error taxonomy.

Every error carries the HTTP status the API answers with. ``retryable``
tells callers whether reloading state and repeating the call can succeed.
"""


class ExamError(Exception):
    status_code = 400
    retryable = False

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__doc__)

    @property
    def code(self):
        return self.__class__.__name__

    def to_dict(self):
        return {"error": str(self), "code": self.code, "retryable": self.retryable}


class InvalidConfiguration(ExamError):
    """Invalid exam configuration."""


class InvalidAnswer(ExamError):
    """Selected options must be non-negative integer indices."""


class SessionNotFound(ExamError):
    """Exam session not found."""
    status_code = 404


class ResultNotFound(ExamError):
    """Exam result not found."""
    status_code = 404


class SessionTerminal(ExamError):
    """This exam can no longer be modified."""
    status_code = 409


class SessionExpired(SessionTerminal):
    """Your session has expired and was submitted automatically."""


class ConcurrentModification(ExamError):
    """The exam session was modified concurrently; reload and retry."""
    status_code = 409
    retryable = True


class SessionNotTerminal(ExamError):
    """The exam session is still in progress."""
    status_code = 409


class QuestionNotInSession(ExamError):
    """Question is not part of this exam."""


class QuestionSetMismatch(ExamError):
    """Question set does not match the exam session."""
    status_code = 500


class QuestionNotFound(ExamError):
    """Question not found."""
    status_code = 404

    def __init__(self, missing_ids):
        self.missing_ids = list(missing_ids)
        super().__init__(f"Questions not found: {', '.join(self.missing_ids)}")


class UnknownCertification(ExamError):
    """Unsupported certification."""
    status_code = 404


class AuthenticationRequired(ExamError):
    """User authentication required."""
    status_code = 401
