# store.py
# -----------------------------------------------------------------------------
# PostgreSQL question provider + persistence gateway.
# Takes the app's psycopg helpers (fetch_one, fetch_all, execute) as deps.
# -----------------------------------------------------------------------------

import json
from typing import Any, Callable, Dict, List, Optional

from models import AttemptConflict, CheatingEvent, NotEnrolled, Question, Result

_SCHEMA_SQL = [
    """
    CREATE TABLE IF NOT EXISTS public.exam_results (
        id                BIGSERIAL PRIMARY KEY,
        session_id        TEXT NOT NULL UNIQUE,
        exam_id           TEXT NOT NULL,
        student_id        TEXT NOT NULL,
        score             DOUBLE PRECISION NOT NULL,
        max_score         DOUBLE PRECISION NOT NULL,
        percentage        INTEGER NOT NULL,
        passed            BOOLEAN NOT NULL,
        answers           JSONB NOT NULL DEFAULT '{}'::jsonb,
        cheating_attempts INTEGER NOT NULL DEFAULT 0,
        submit_reason     TEXT,
        submitted_at      TIMESTAMPTZ NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.cheating_attempts (
        id            BIGSERIAL PRIMARY KEY,
        session_id    TEXT NOT NULL,
        reason        TEXT,
        attempt_count INTEGER NOT NULL,
        detected_at   TIMESTAMPTZ NOT NULL
    );
    """,
]


def _as_options(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []
    if isinstance(raw, (list, tuple)):
        return [str(o) for o in raw]
    return []


def _correct_index(raw: Any, options: List[str]) -> Optional[int]:
    """correct_answer is stored either as the option text or as its index."""
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except ValueError:
            decoded = raw
        raw = decoded
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if 0 <= raw < len(options) else None
    text = str(raw)
    if text in options:
        return options.index(text)
    return None


class PostgresStore:
    def __init__(self, deps: Dict[str, Callable]):
        self.fetch_one: Callable = deps["fetch_one"]
        self.fetch_all: Callable = deps["fetch_all"]
        self.execute: Callable = deps["execute"]

    def ensure_schema(self) -> None:
        for sql in _SCHEMA_SQL:
            self.execute(sql, ())

    # ---- question provider -----------------------------------------------------
    def fetch_exam(self, exam_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self.fetch_one("""
                SELECT id, title, duration, passing_grade
                  FROM public.exams
                 WHERE id::text = %s;
            """, (str(exam_id),))
        except Exception as e:
            print(f"[store] exam lookup failed for {exam_id}: {e}")
            return None

    def fetch_questions(self, exam_id: str) -> List[Question]:
        rows = self.fetch_all("""
            SELECT id, question_text, question_type, options, correct_answer, "order"
              FROM public.exam_questions
             WHERE exam_id::text = %s
             ORDER BY "order" ASC;
        """, (str(exam_id),))
        out: List[Question] = []
        for r in rows or []:
            qtype = (r.get("question_type") or "multiple_choice").lower()
            if qtype != "multiple_choice":
                continue
            options = _as_options(r.get("options"))
            idx = _correct_index(r.get("correct_answer"), options)
            if not options or idx is None:
                print(f"[store] skipping question {r.get('id')}: no resolvable correct option")
                continue
            out.append(Question(
                id=str(r["id"]),
                text=str(r.get("question_text") or ""),
                options=tuple(options),
                correct_option_index=idx,
            ))
        return out

    # ---- admission -------------------------------------------------------------
    def admit(self, exam_id: str, student_id: str) -> None:
        """Raises NotEnrolled or AttemptConflict unless the student may start the exam."""
        row = self.fetch_one("""
            SELECT attempt_status
              FROM public.student_exams
             WHERE exam_id::text = %s AND student_id::text = %s;
        """, (str(exam_id), str(student_id)))
        if row is None:
            raise NotEnrolled(f"student {student_id} is not enrolled in exam {exam_id}")
        if (row.get("attempt_status") or "").lower() == "submitted":
            raise AttemptConflict(f"exam {exam_id} was already submitted")
        done = self.fetch_one("""
            SELECT session_id
              FROM public.exam_results
             WHERE exam_id = %s AND student_id = %s
             LIMIT 1;
        """, (str(exam_id), str(student_id)))
        if done is not None:
            raise AttemptConflict(f"exam {exam_id} was already submitted", done["session_id"])

    # ---- persistence gateway ---------------------------------------------------
    def save_result(self, result: Result) -> None:
        """Idempotent on session_id; errors propagate to the caller."""
        self.execute("""
            INSERT INTO public.exam_results
                (session_id, exam_id, student_id, score, max_score, percentage, passed,
                 answers, cheating_attempts, submit_reason, submitted_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s, %s, %s)
            ON CONFLICT (session_id) DO NOTHING;
        """, (
            result.session_id, result.exam_id, result.student_id,
            result.score, result.max_score, result.percentage, result.passed,
            json.dumps(dict(result.answers)), result.cheating_attempts,
            result.reason, result.completed_at,
        ))
        self.execute("""
            UPDATE public.student_exams
               SET attempt_status = 'submitted'
             WHERE exam_id::text = %s AND student_id::text = %s;
        """, (result.exam_id, result.student_id))

    def save_cheating_event(self, event: CheatingEvent) -> None:
        try:
            self.execute("""
                INSERT INTO public.cheating_attempts (session_id, reason, attempt_count, detected_at)
                VALUES (%s, %s, %s, %s);
            """, (event.session_id, event.reason, event.attempt_count, event.detected_at))
        except Exception as e:
            print(f"[store] cheating event insert failed (safe): {e}")
