# sequencer.py
import random
from typing import List, Optional, Sequence, Tuple

from models import Question


class QuestionSequencer:
    """Session-local randomized question order + cursor.

    The order is fixed once by initialize(); navigation past either end is a no-op.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()
        self._order: Tuple[Question, ...] = ()
        self._index = 0
        self._frozen = False

    def initialize(self, questions: Sequence[Question], count: Optional[int] = None) -> None:
        order: List[Question] = list(questions)
        # Fisher-Yates
        self._rng.shuffle(order)
        if count is not None and 0 < count < len(order):
            order = order[:count]
        self._order = tuple(order)
        self._index = 0

    @property
    def order(self) -> Tuple[Question, ...]:
        return self._order

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def total(self) -> int:
        return len(self._order)

    def current_question(self) -> Optional[Question]:
        if not self._order:
            return None
        return self._order[self._index]

    def next(self) -> bool:
        if self._frozen or self._index >= len(self._order) - 1:
            return False
        self._index += 1
        return True

    def previous(self) -> bool:
        if self._frozen or self._index <= 0:
            return False
        self._index -= 1
        return True

    def go_to(self, index: int) -> bool:
        if self._frozen or not (0 <= index < len(self._order)):
            return False
        self._index = index
        return True

    def freeze(self) -> None:
        self._frozen = True
