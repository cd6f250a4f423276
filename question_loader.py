import json
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

NUM_OPTIONS = 4


@dataclass(frozen=True)
class Question:
    """A multiple-choice question. Immutable once loaded."""
    id: str
    stem: str
    options: Tuple[str, ...]
    answer_key: Optional[str] = None
    category: Optional[str] = None

    def full_text(self) -> str:
        return self.stem + "\n" + "\n".join(self.options)


def question_from_dict(data: Dict, index: int = 0) -> Question:
    """
    Build a Question from one decoded record.

    Supports both the flat format and the nested one:
        {"id", "question_stem", "options", "verified_answer"?}
        {"id", "question": {"stem", "options"}, "answer": {"correct"}?}

    Args:
        data: Decoded JSON object
        index: Zero-based position in the source file, used as fallback ID and in errors

    Returns:
        Question
    """
    if not isinstance(data, dict):
        raise ValueError(f"Question {index + 1}: expected a JSON object")

    nested = data.get('question') if isinstance(data.get('question'), dict) else {}
    stem = data.get('question_stem', nested.get('stem'))
    options = data.get('options', nested.get('options'))

    # Validate required fields
    if not isinstance(stem, str) or not stem.strip():
        raise ValueError(f"Question {index + 1}: Missing required field 'question_stem'")
    if not isinstance(options, list) or len(options) != NUM_OPTIONS \
            or not all(isinstance(o, str) for o in options):
        raise ValueError(f"Question {index + 1}: 'options' must be a list of {NUM_OPTIONS} strings")

    answer_key = data.get('verified_answer')
    if answer_key is None and isinstance(data.get('answer'), dict):
        answer_key = data['answer'].get('correct')

    category = data.get('category')
    if isinstance(category, dict):
        category = category.get('main')

    return Question(
        id=str(data.get('id') or f"Q-{index + 1:03d}"),
        stem=stem,
        options=tuple(options),
        answer_key=str(answer_key).strip().upper() if answer_key else None,
        category=category,
    )


def load_questions(jsonl_path: str, max_questions: Optional[int] = None) -> List[Question]:
    """
    Load questions from a line-delimited JSON file.

    Args:
        jsonl_path: Path to the JSONL file, one question per line
        max_questions: Only keep the first N questions (None keeps all)

    Returns:
        List of Question objects in file order
    """
    questions = []
    with open(jsonl_path, 'r', encoding='utf-8') as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{jsonl_path}:{line_no}: invalid JSON ({e.msg})") from e
            questions.append(question_from_dict(data, index=len(questions)))

    if max_questions is not None:
        questions = questions[:max_questions]
    return questions
