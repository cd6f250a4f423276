import re
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from agents.pattern_classifier import QuestionTypePattern, iter_jsonl
from agents.retrieval_agent import KnowledgeRecord
from model import ParseError

REQUIRED_SLOTS = ("knowledge", "question", "options")
SLOT_PATTERN = re.compile(r"\{\{(knowledge|question|options)\}\}")

NO_KNOWLEDGE_TEXT = "（無特定知識，請根據一般國文知識作答）"
KNOWLEDGE_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True)
class ReasoningTemplate:
    """
    Prompt skeleton with the named slots ``{{knowledge}}``, ``{{question}}`` and ``{{options}}``.

    All three slots are checked when the template is created, and ``render``
    fills every occurrence in a single pass, so slot text that happens to look
    like a placeholder is never expanded again.
    """
    id: str
    body: str

    def __post_init__(self):
        missing = [slot for slot in REQUIRED_SLOTS if "{{" + slot + "}}" not in self.body]
        if missing:
            raise ParseError(f"template {self.id}: missing slot(s) {', '.join(missing)}")

    @classmethod
    def from_dict(cls, data: Dict) -> "ReasoningTemplate":
        if not isinstance(data, dict) or not data.get('id'):
            raise ParseError("template needs an 'id'")
        body = data.get('prompt_template') or data.get('body')
        if not isinstance(body, str):
            raise ParseError(f"template {data['id']}: missing 'prompt_template'")
        return cls(id=str(data['id']), body=body)

    def render(self, knowledge: str, question: str, options: str) -> str:
        slots = {"knowledge": knowledge, "question": question, "options": options}
        return SLOT_PATTERN.sub(lambda m: slots[m.group(1)], self.body)


DEFAULT_TEMPLATE = ReasoningTemplate(
    id="default",
    body="""你是一位台灣高中國文老師，請根據參考知識回答下列學測選擇題。

【參考知識】
{{knowledge}}

【題目】
{{question}}

【選項】
{{options}}

【作答要求】
1. 逐一檢查每個選項，並與參考知識核對。
2. 最後一行只輸出一個 JSON 物件，例如：
{"answer": "B", "reasoning": "簡要理由"}
""",
)


def format_knowledge(record: KnowledgeRecord) -> str:
    text = f"### {record.topic}\n\n{record.content}"
    if record.key_facts:
        text += f"\n\n**重點**：{'；'.join(record.key_facts)}"
    if record.common_errors:
        text += f"\n\n**常見錯誤**：{'；'.join(record.common_errors)}"
    return text


class ContextAssembler:
    """Merges retrieved knowledge, the question and its options into one prompt."""

    def __init__(self, templates: Optional[Dict[str, ReasoningTemplate]] = None,
                 default_template: ReasoningTemplate = DEFAULT_TEMPLATE):
        self.templates = dict(templates or {})
        self.default_template = default_template

    @classmethod
    def from_file(cls, path: str) -> "ContextAssembler":
        templates = {}
        for line_no, data in iter_jsonl(path):
            try:
                template = ReasoningTemplate.from_dict(data)
            except ParseError as e:
                print(f"[WARNING] {path}:{line_no}: {e}, skipped")
                continue
            templates[template.id] = template
        return cls(templates)

    def template_for(self, pattern: Optional[QuestionTypePattern]) -> ReasoningTemplate:
        if pattern is None:
            return self.default_template
        return self.templates.get(pattern.template_id, self.default_template)

    def assemble(self,
                 pattern: Optional[QuestionTypePattern],
                 knowledge: Sequence[KnowledgeRecord],
                 stem: str,
                 options: Sequence[str]) -> str:
        if knowledge:
            knowledge_text = KNOWLEDGE_SEPARATOR.join(format_knowledge(k) for k in knowledge)
        else:
            knowledge_text = NO_KNOWLEDGE_TEXT
        return self.template_for(pattern).render(knowledge_text, stem, "\n".join(options))
