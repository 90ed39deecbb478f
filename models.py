# models.py
# -----------------------------------------------------------------------------
# Session data model + error taxonomy for the timed exam engine.
# -----------------------------------------------------------------------------

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTING = "SUBMITTING"
    COMPLETED = "COMPLETED"


_STATUS_ORDER = [
    SessionStatus.NOT_STARTED,
    SessionStatus.IN_PROGRESS,
    SessionStatus.SUBMITTING,
    SessionStatus.COMPLETED,
]


class SubmitReason(str, Enum):
    MANUAL = "manual"
    TIMEOUT = "timeout"
    INTEGRITY = "integrity"


# ---- Errors -------------------------------------------------------------------
class SessionError(Exception):
    """Base class for recoverable session faults."""


class PersistenceError(SessionError):
    """save_result failed; the computed Result is kept and can be retried."""

    def __init__(self, message: str, result: Optional["Result"] = None):
        super().__init__(message)
        self.result = result


class IntegrityUnavailable(SessionError):
    """Host cannot deliver visibility/focus notifications."""


class QuestionsUnavailable(SessionError):
    """The question provider returned nothing usable for the exam."""


class NotEnrolled(SessionError):
    """The student has no enrollment for the exam."""


class AttemptConflict(SessionError):
    """The student already has a live or submitted attempt at the exam."""

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.session_id = session_id


# ---- Records ------------------------------------------------------------------
@dataclass(frozen=True)
class Question:
    id: str
    text: str
    options: Tuple[str, ...]
    correct_option_index: int

    def public_dict(self) -> Dict[str, Any]:
        # never leak the key to the student
        return {"id": self.id, "text": self.text, "options": list(self.options)}


@dataclass(frozen=True)
class Answer:
    question_id: str
    selected_option_index: int
    recorded_at: datetime


@dataclass(frozen=True)
class CheatingEvent:
    session_id: str
    reason: str
    detected_at: datetime
    attempt_count: int


@dataclass(frozen=True)
class Result:
    session_id: str
    exam_id: str
    student_id: str
    score: float
    max_score: float
    percentage: int
    passed: bool
    cheating_attempts: int
    completed_at: datetime
    reason: str
    answers: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "exam_id": self.exam_id,
            "student_id": self.student_id,
            "score": self.score,
            "max_score": self.max_score,
            "percentage": self.percentage,
            "passed": self.passed,
            "cheating_attempts": self.cheating_attempts,
            "completed_at": self.completed_at.isoformat(),
            "reason": self.reason,
            "answers": dict(self.answers),
        }


@dataclass
class Session:
    """One student's single timed attempt. Passed by reference to every component."""
    id: str
    student_id: str
    exam_id: str
    status: SessionStatus = SessionStatus.NOT_STARTED
    started_at: Optional[datetime] = None
    deadline_at: Optional[datetime] = None
    cheating_attempts: int = 0
    submit_reason: Optional[str] = None

    def advance(self, new_status: SessionStatus) -> None:
        cur = _STATUS_ORDER.index(self.status)
        nxt = _STATUS_ORDER.index(new_status)
        assert nxt == cur + 1, f"illegal transition {self.status.value} -> {new_status.value}"
        self.status = new_status

    def fix_deadline(self, started_at: datetime, deadline_at: datetime) -> None:
        assert self.deadline_at is None, "deadline is fixed once per session"
        self.started_at = started_at
        self.deadline_at = deadline_at

    @property
    def in_progress(self) -> bool:
        return self.status is SessionStatus.IN_PROGRESS
