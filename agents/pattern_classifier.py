import json
import os
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Sequence, Tuple

from model import ParseError


def iter_jsonl(path: str) -> Iterator[Tuple[int, Dict]]:
    """
    Yield (line number, object) for every decodable line of a JSONL file.

    Undecodable lines are reported and skipped. A missing file yields nothing.
    """
    if not os.path.exists(path):
        print(f"[WARNING] File not found: {path}")
        return
    with open(path, 'r', encoding='utf-8') as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                yield line_no, json.loads(line)
            except json.JSONDecodeError as e:
                print(f"[WARNING] {path}:{line_no}: invalid JSON ({e.msg}), skipped")


@dataclass(frozen=True)
class QuestionTypePattern:
    """A question type, the regexes that recognise it, and the template it uses."""
    id: str
    description: str
    patterns: Tuple[str, ...]
    template_id: str
    compiled: Tuple[re.Pattern, ...] = field(default=(), compare=False, repr=False)

    @classmethod
    def from_dict(cls, data: Dict) -> "QuestionTypePattern":
        if not isinstance(data, dict) or not data.get('id'):
            raise ParseError("pattern needs an 'id'")
        patterns = data.get('patterns') or []
        if not isinstance(patterns, list):
            raise ParseError(f"pattern {data['id']}: 'patterns' must be a list")
        try:
            compiled = tuple(re.compile(p, re.IGNORECASE) for p in patterns)
        except re.error as e:
            raise ParseError(f"pattern {data['id']}: invalid regex ({e})") from e
        return cls(
            id=str(data['id']),
            description=str(data.get('description') or ''),
            patterns=tuple(patterns),
            template_id=str(data.get('template_id') or 'default'),
            compiled=compiled,
        )

    def matches(self, text: str) -> bool:
        return any(regex.search(text) for regex in self.compiled)


DEFAULT_PATTERN = QuestionTypePattern(
    id="general",
    description="一般題型",
    patterns=(),
    template_id="default",
)


class PatternClassifier:
    """
    Picks a question type by testing regexes in library order.

    The first pattern with any matching regex wins. When nothing matches, the
    first pattern in the library is used, so every question gets a template.
    """

    def __init__(self, patterns: Sequence[QuestionTypePattern]):
        self.patterns: List[QuestionTypePattern] = list(patterns) or [DEFAULT_PATTERN]

    @classmethod
    def from_file(cls, path: str) -> "PatternClassifier":
        patterns = []
        for line_no, data in iter_jsonl(path):
            try:
                patterns.append(QuestionTypePattern.from_dict(data))
            except ParseError as e:
                print(f"[WARNING] {path}:{line_no}: {e}, skipped")
        return cls(patterns)

    @property
    def default(self) -> QuestionTypePattern:
        return self.patterns[0]

    def classify(self, stem: str, options: Sequence[str]) -> QuestionTypePattern:
        full_text = stem + "\n" + "\n".join(options)
        for pattern in self.patterns:
            if pattern.matches(full_text):
                return pattern
        return self.default
