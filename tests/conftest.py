import asyncio
import json
from typing import Callable, List, Optional, Union

import pytest

from model import InferenceResult, ModelProvider, TokenUsage
from question_loader import Question

LITERATURE = [
    {"id": "LIT-001", "topic": "唐宋八大家",
     "content": "唐代韓愈、柳宗元，宋代歐陽脩、蘇洵、蘇軾、蘇轍、王安石、曾鞏。名稱始於朱右，茅坤使之流行。",
     "key_facts": ["唐代二家", "宋代六家"]},
    {"id": "LIT-002", "topic": "三蘇",
     "content": "三蘇指蘇洵與其子蘇軾、蘇轍，三人為父子關係。",
     "common_errors": ["誤以為三蘇是三兄弟"]},
    {"id": "LIT-003", "topic": "建安七子", "content": "名稱出自曹丕《典論・論文》。"},
]

IDIOMS = [
    {"id": "IDM-001", "topic": "罄竹難書", "content": "罄竹難書：形容罪狀極多，不可寫作磬。"},
]

CHARACTER_FORMS = [
    {"id": "CHR-001", "topic": "厲／勵", "content": "「厲」如再接再厲；「勵」如勉勵。"},
]


def write_jsonl(path, rows, extra_lines=()):
    with open(path, 'w', encoding='utf-8') as f:
        for row in rows:
            f.write(json.dumps(row, ensure_ascii=False) + "\n")
        for line in extra_lines:
            f.write(line + "\n")


@pytest.fixture
def knowledge_dir(tmp_path):
    directory = tmp_path / "knowledge"
    directory.mkdir()
    write_jsonl(directory / "literature.jsonl", LITERATURE, extra_lines=["{not json 三蘇", '{"topic": "三蘇 no id"}'])
    write_jsonl(directory / "idioms.jsonl", IDIOMS)
    write_jsonl(directory / "character-forms.jsonl", CHARACTER_FORMS)
    return directory


@pytest.fixture
def san_su_question():
    return Question(
        id="LK-001",
        stem="「唐宋八大家」之「三蘇」關係為何？",
        options=("A: 父子", "B: 兄弟", "C: 師徒", "D: 同鄉"),
        answer_key="A",
    )


def make_question(qid: str, stem: str = "下列敘述何者正確？", answer_key: Optional[str] = "A") -> Question:
    return Question(id=qid, stem=stem, options=("A: 甲", "B: 乙", "C: 丙", "D: 丁"), answer_key=answer_key)


Responder = Callable[[str], Union[str, InferenceResult]]


class FakeModel(ModelProvider):
    """Scripted model: the responder maps each prompt to a reply."""

    def __init__(self, responder: Responder, delay: float = 0.0):
        super().__init__("fake-model")
        self.responder = responder
        self.delay = delay
        self.prompts: List[str] = []

    async def infer(self, prompt: str) -> InferenceResult:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self.responder(prompt)
        if isinstance(reply, InferenceResult):
            return reply
        return InferenceResult(content=reply, usage=TokenUsage(10, 2), response_time_ms=5.0, model=self.model_name)
