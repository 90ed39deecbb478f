# answers.py
from types import MappingProxyType
from typing import Callable, Dict, Iterable, Mapping
from datetime import datetime

from models import Answer, Question, Session, utcnow


class AnswerStore:
    """Current answer per question, last write wins.

    Writes are accepted only while the bound session is IN_PROGRESS and the store
    has not been frozen; anything else is a silent no-op (record() returns False).
    """

    def __init__(self, session: Session, now: Callable[[], datetime] = utcnow):
        self._session = session
        self._now = now
        self._questions: Dict[str, Question] = {}
        self._answers: Dict[str, Answer] = {}
        self._frozen = False

    def load(self, questions: Iterable[Question]) -> None:
        self._questions = {q.id: q for q in questions}
        self._answers = {}

    def record(self, question_id: str, option_index: int) -> bool:
        if self._frozen or not self._session.in_progress:
            return False
        q = self._questions.get(str(question_id))
        if q is None:
            return False
        if not isinstance(option_index, int) or isinstance(option_index, bool):
            return False
        if not (0 <= option_index < len(q.options)):
            return False
        self._answers[q.id] = Answer(q.id, option_index, self._now())
        return True

    def snapshot(self) -> Mapping[str, Answer]:
        return MappingProxyType(dict(self._answers))

    def selections(self) -> Mapping[str, int]:
        return MappingProxyType({qid: a.selected_option_index for qid, a in self._answers.items()})

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __len__(self) -> int:
        return len(self._answers)
