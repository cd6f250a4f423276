import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence

VALID_LETTERS = ("A", "B", "C", "D")
UNKNOWN = "UNKNOWN"
REASONING_PREVIEW_CHARS = 200


@dataclass(frozen=True)
class ParsedAnswer:
    answer: str
    reasoning: str
    strategy: str = ""


class AnswerStrategy(ABC):
    """One way of reading an answer letter out of model output."""

    name = "base"

    @abstractmethod
    def try_parse(self, text: str) -> Optional[ParsedAnswer]:
        ...


class JsonLineStrategy(AnswerStrategy):
    """First line that starts with ``{`` and carries an ``"answer"`` key holding A-D."""

    name = "json"

    def try_parse(self, text: str) -> Optional[ParsedAnswer]:
        for line in text.split("\n"):
            line = line.strip()
            if not line.startswith("{") or '"answer"' not in line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(obj, dict) or not isinstance(obj.get("answer"), str):
                continue
            answer = obj["answer"].strip().upper()
            if answer not in VALID_LETTERS:
                continue
            reasoning = obj.get("reasoning")
            return ParsedAnswer(
                answer=answer,
                reasoning=reasoning if isinstance(reasoning, str) and reasoning else text,
                strategy=self.name,
            )
        return None


class RegexStrategy(AnswerStrategy):
    def __init__(self, name: str, pattern: str, flags: int = re.IGNORECASE):
        self.name = name
        self.regex = re.compile(pattern, flags)

    def try_parse(self, text: str) -> Optional[ParsedAnswer]:
        match = self.regex.search(text)
        if not match:
            return None
        return ParsedAnswer(answer=match.group(1).upper(), reasoning=text, strategy=self.name)


DEFAULT_STRATEGIES: List[AnswerStrategy] = [
    JsonLineStrategy(),
    RegexStrategy("answer_label", r"答案\**\s*[：:]\s*\**\s*([A-D])"),
    RegexStrategy("choose", r"選擇\s*([A-D])"),
    RegexStrategy("correct_answer", r"正確答案\s*[是為]?\s*[：:]?\s*([A-D])"),
    RegexStrategy("english_answer", r"\b(?i:answer)\s*(?:is|:)\s*\(?([A-D])\b", 0),
    # 行首单独的选项字母
    RegexStrategy("leading_letter", r"^[ \t]*([A-D])(?:[.。、)\s]|$)", re.IGNORECASE | re.MULTILINE),
]


class AnswerParser:
    """
    Ordered chain of answer strategies; first success wins.

    ``parse`` never raises: anything unreadable becomes ``UNKNOWN`` with a
    truncated copy of the raw text as reasoning.
    """

    def __init__(self, strategies: Optional[Sequence[AnswerStrategy]] = None):
        self.strategies = list(strategies if strategies is not None else DEFAULT_STRATEGIES)

    def parse(self, raw_text) -> ParsedAnswer:
        text = raw_text if isinstance(raw_text, str) else ""
        for strategy in self.strategies:
            parsed = strategy.try_parse(text)
            if parsed is not None:
                return parsed
        return ParsedAnswer(answer=UNKNOWN, reasoning=text[:REASONING_PREVIEW_CHARS])
