# policy.py
# -----------------------------------------------------------------------------
# Session policy. One canonical default (1 point per question, 3 integrity
# episodes, 5 s episode cooldown); every knob can be overridden from env.
# -----------------------------------------------------------------------------

import os
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping, Optional


def _env_float(env: Mapping[str, str], key: str, default: Optional[float]) -> Optional[float]:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    return float(raw)


def _env_int(env: Mapping[str, str], key: str, default: Optional[int]) -> Optional[int]:
    raw = (env.get(key) or "").strip()
    if not raw:
        return default
    return int(raw)


@dataclass(frozen=True)
class SessionPolicy:
    duration_seconds: float = 30 * 60
    point_value: float = 1.0
    score_scale: Optional[float] = None
    pass_percent: float = 50.0
    cheating_threshold: int = 3
    episode_cooldown_seconds: float = 5.0
    visibility_poll_seconds: float = 2.0
    tick_seconds: float = 1.0
    question_count: Optional[int] = None
    save_attempts: int = 3
    save_backoff_seconds: float = 0.5

    def __post_init__(self):
        if self.duration_seconds <= 0:
            raise ValueError("duration_seconds must be positive")
        if self.cheating_threshold < 1:
            raise ValueError("cheating_threshold must be >= 1")
        if self.save_attempts < 1:
            raise ValueError("save_attempts must be >= 1")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SessionPolicy":
        env = os.environ if environ is None else environ
        d = cls()
        return cls(
            duration_seconds=_env_float(env, "EXAM_TIME_LIMIT_MIN", d.duration_seconds / 60) * 60,
            point_value=_env_float(env, "EXAM_POINT_VALUE", d.point_value),
            score_scale=_env_float(env, "EXAM_SCORE_SCALE", d.score_scale),
            pass_percent=_env_float(env, "EXAM_PASS_PERCENT", d.pass_percent),
            cheating_threshold=_env_int(env, "EXAM_CHEATING_THRESHOLD", d.cheating_threshold),
            episode_cooldown_seconds=_env_float(env, "EXAM_EPISODE_COOLDOWN_SEC", d.episode_cooldown_seconds),
            visibility_poll_seconds=_env_float(env, "EXAM_VISIBILITY_POLL_SEC", d.visibility_poll_seconds),
            tick_seconds=_env_float(env, "EXAM_TICK_SEC", d.tick_seconds),
            question_count=_env_int(env, "EXAM_QUESTION_COUNT", d.question_count),
            save_attempts=_env_int(env, "EXAM_SAVE_ATTEMPTS", d.save_attempts),
            save_backoff_seconds=_env_float(env, "EXAM_SAVE_BACKOFF_SEC", d.save_backoff_seconds),
        )

    def for_exam(self, exam: Optional[Dict[str, Any]]) -> "SessionPolicy":
        """Per-exam overrides from an exams row (duration in minutes, passing_grade in %)."""
        if not exam:
            return self
        changes: Dict[str, Any] = {}
        if exam.get("duration"):
            changes["duration_seconds"] = float(exam["duration"]) * 60
        if exam.get("passing_grade") is not None:
            changes["pass_percent"] = float(exam["passing_grade"])
        return replace(self, **changes) if changes else self
