import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from models import AttemptConflict, CheatingEvent, NotEnrolled, Result  # noqa: E402
from policy import SessionPolicy  # noqa: E402
from store import PostgresStore  # noqa: E402


class FakeDB:
    def __init__(self, question_rows=None, exam_row=None, enrollment=None, result_row=None):
        self.question_rows = question_rows or []
        self.exam_row = exam_row
        self.enrollment = enrollment
        self.result_row = result_row
        self.executed = []
        self.fail_execute = None

    def fetch_one(self, sql, params=()):
        if "FROM public.exams" in sql:
            return self.exam_row
        if "FROM public.student_exams" in sql:
            return self.enrollment
        if "FROM public.exam_results" in sql:
            return self.result_row
        return None

    def fetch_all(self, sql, params=()):
        if "FROM public.exam_questions" in sql:
            return self.question_rows
        return []

    def execute(self, sql, params=()):
        if self.fail_execute and self.fail_execute in sql:
            raise RuntimeError("relation does not exist")
        self.executed.append((sql, params))


def _store(db):
    return PostgresStore({"fetch_one": db.fetch_one, "fetch_all": db.fetch_all, "execute": db.execute})


def test_fetch_questions_maps_text_and_index_answers():
    db = FakeDB(question_rows=[
        {"id": 11, "question_text": "Virtualisation?", "question_type": "multiple_choice",
         "options": ["A technique", "A language"], "correct_answer": "A technique", "order": 1},
        {"id": 12, "question_text": "Hypervisor type", "question_type": "multiple_choice",
         "options": json.dumps(["Type 1", "Type 2"]), "correct_answer": 1, "order": 2},
        {"id": 13, "question_text": "Explain", "question_type": "text",
         "options": [], "correct_answer": "", "order": 3},
        {"id": 14, "question_text": "Broken", "question_type": "multiple_choice",
         "options": ["x", "y"], "correct_answer": "z", "order": 4},
    ])
    qs = _store(db).fetch_questions("e1")
    assert [q.id for q in qs] == ["11", "12"]
    assert qs[0].correct_option_index == 0
    assert qs[0].options == ("A technique", "A language")
    assert qs[1].correct_option_index == 1


def test_save_result_is_idempotent_insert_and_marks_attempt():
    db = FakeDB()
    result = Result(
        session_id="s1", exam_id="e1", student_id="7", score=2.0, max_score=3.0,
        percentage=67, passed=True, cheating_attempts=1,
        completed_at=datetime(2026, 1, 1, tzinfo=timezone.utc), reason="manual",
        answers=MappingProxyType({"q1": 1}),
    )
    _store(db).save_result(result)
    (insert_sql, insert_params), (update_sql, update_params) = db.executed
    assert "ON CONFLICT (session_id) DO NOTHING" in insert_sql
    assert insert_params[0] == "s1"
    assert json.loads(insert_params[7]) == {"q1": 1}
    assert "attempt_status = 'submitted'" in update_sql
    assert update_params == ("e1", "7")


def test_save_result_errors_propagate():
    db = FakeDB()
    db.fail_execute = "exam_results"
    result = Result(
        session_id="s1", exam_id="e1", student_id="7", score=0.0, max_score=1.0,
        percentage=0, passed=False, cheating_attempts=0,
        completed_at=datetime(2026, 1, 1, tzinfo=timezone.utc), reason="timeout",
    )
    with pytest.raises(RuntimeError):
        _store(db).save_result(result)


def test_cheating_event_is_best_effort():
    db = FakeDB()
    db.fail_execute = "cheating_attempts"
    event = CheatingEvent("s1", "focus_lost", datetime(2026, 1, 1, tzinfo=timezone.utc), 1)
    _store(db).save_cheating_event(event)
    assert db.executed == []


def test_ensure_schema_creates_both_tables():
    db = FakeDB()
    _store(db).ensure_schema()
    sql = " ".join(s for s, _ in db.executed)
    assert "public.exam_results" in sql
    assert "public.cheating_attempts" in sql


def test_policy_from_env_and_exam_overrides():
    policy = SessionPolicy.from_env({
        "EXAM_TIME_LIMIT_MIN": "90",
        "EXAM_POINT_VALUE": "0.5",
        "EXAM_CHEATING_THRESHOLD": "5",
        "EXAM_QUESTION_COUNT": "20",
    })
    assert policy.duration_seconds == 5400
    assert policy.point_value == 0.5
    assert policy.cheating_threshold == 5
    assert policy.question_count == 20
    assert policy.episode_cooldown_seconds == 5.0

    db = FakeDB(exam_row={"id": 1, "title": "Virtualisation", "duration": 45, "passing_grade": 60})
    tailored = policy.for_exam(_store(db).fetch_exam("1"))
    assert tailored.duration_seconds == 2700
    assert tailored.pass_percent == 60
    assert policy.for_exam(None) is policy


def test_policy_defaults_and_validation():
    policy = SessionPolicy.from_env({})
    assert policy.duration_seconds == 1800
    assert policy.point_value == 1.0
    assert policy.cheating_threshold == 3
    assert policy.score_scale is None
    with pytest.raises(ValueError):
        SessionPolicy(cheating_threshold=0)


def test_admit_requires_enrollment_and_no_prior_submission():
    with pytest.raises(NotEnrolled):
        _store(FakeDB()).admit("e1", "7")

    with pytest.raises(AttemptConflict):
        _store(FakeDB(enrollment={"attempt_status": "submitted"})).admit("e1", "7")

    with pytest.raises(AttemptConflict) as exc:
        _store(FakeDB(enrollment={"attempt_status": "in_progress"},
                      result_row={"session_id": "old"})).admit("e1", "7")
    assert exc.value.session_id == "old"

    assert _store(FakeDB(enrollment={"attempt_status": None})).admit("e1", "7") is None
