import re
from typing import Optional

from agents.answer_parser import UNKNOWN
from agents.solver_agent import ERROR_ANSWER
from .evaluator import Evaluator

# "A" / "a" / "(A)" / "（A）" / "A: 父子" / "A. 父子"
ANSWER_LETTER = re.compile(r'^\s*[(（]?\s*([A-D])\s*(?:[)）:：.、．]|\s|$)', re.IGNORECASE)


def normalize_answer(value: Optional[str]) -> Optional[str]:
    """Reduce an answer or answer key to its bare option letter; None when there is none."""
    if not isinstance(value, str):
        return None
    match = ANSWER_LETTER.match(value)
    return match.group(1).upper() if match else None


class AnswerMatchEvaluator(Evaluator):
    """
    Grades a solver answer against a question's answer key.

    Both sides are reduced to a single option letter first, so keys written as
    ``"A: 父子"`` or ``"(A)"`` grade the same as ``"A"``. ``UNKNOWN`` and
    ``ERROR`` never score, and neither does a question without a key.
    """

    def __init__(self, answer_key: Optional[str]):
        self.answer_key = normalize_answer(answer_key)

    @property
    def gradable(self) -> bool:
        return self.answer_key is not None

    def evaluate_response(self, response: Optional[str]) -> int:
        if not self.gradable or response in (UNKNOWN, ERROR_ANSWER):
            return 0
        return 1 if normalize_answer(response) == self.answer_key else 0
