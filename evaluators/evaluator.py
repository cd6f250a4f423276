from abc import ABC, abstractmethod
from typing import Optional


class Evaluator(ABC):
    """Grades one solver answer."""

    @abstractmethod
    def evaluate_response(self, response: Optional[str]) -> int:
        """Return the score for one parsed answer (A-D, UNKNOWN or ERROR)."""
        ...
