# scoring.py
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from models import Question


def score(questions: Sequence[Question], answers: Mapping[str, int], point_value: float = 1.0) -> float:
    """point_value for every question answered with its correct option; 0 otherwise."""
    ids = {q.id for q in questions}
    assert set(answers).issubset(ids), f"answers for unknown questions: {sorted(set(answers) - ids)}"
    total = 0.0
    for q in questions:
        if answers.get(q.id) == q.correct_option_index:
            total += point_value
    return total


@dataclass(frozen=True)
class Grade:
    score: float
    max_score: float
    percentage: int
    passed: bool


class ScoreEngine:
    """Pure scoring with configurable per-question points, optional fixed scale and pass mark."""

    def __init__(self, point_value: float = 1.0, scale: Optional[float] = None, pass_percent: float = 50.0):
        if point_value <= 0:
            raise ValueError("point_value must be positive")
        self.point_value = float(point_value)
        self.scale = float(scale) if scale else None
        self.pass_percent = float(pass_percent)

    def _raw_max(self, questions: Sequence[Question]) -> float:
        return self.point_value * len(questions)

    def max_score(self, questions: Sequence[Question]) -> float:
        if self.scale is not None:
            return self.scale
        return self._raw_max(questions)

    def score(self, questions: Sequence[Question], answers: Mapping[str, int]) -> float:
        raw = score(questions, answers, self.point_value)
        if self.scale is None:
            return raw
        raw_max = self._raw_max(questions)
        return round(raw * self.scale / raw_max, 4) if raw_max else 0.0

    def grade(self, questions: Sequence[Question], answers: Mapping[str, int]) -> Grade:
        pts = self.score(questions, answers)
        mx = self.max_score(questions)
        percentage = int(round(100.0 * pts / (mx or 1.0)))
        return Grade(score=pts, max_score=mx, percentage=percentage,
                     passed=bool(percentage >= self.pass_percent))
