import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from model import ModelProvider, ParseError
from question_loader import Question

LITERATURE_FILE = "literature.jsonl"
IDIOM_FILE = "idioms.jsonl"
CHARACTER_FILE = "character-forms.jsonl"


# ============================================================
# 关键词标注类型
# ============================================================
@dataclass(frozen=True)
class ExplicitKeyword:
    """A term that literally appears in the stem or an option."""
    source: str
    keyword: str
    related: Tuple[str, ...] = ()
    knowledge_file: Optional[str] = None

    def terms(self) -> List[str]:
        return [self.keyword, *self.related]


@dataclass(frozen=True)
class ImplicitKeyword:
    """A concept the question needs but does not spell out."""
    source: str
    keyword: str
    reason: str = ""
    related: Tuple[str, ...] = ()
    knowledge_file: Optional[str] = None

    def terms(self) -> List[str]:
        return [self.keyword, *self.related]


@dataclass(frozen=True)
class ContrastKeywords:
    """Terms the options set against each other along one dimension."""
    keywords: Tuple[str, ...]
    dimension: str = ""
    knowledge_file: Optional[str] = None

    def terms(self) -> List[str]:
        return list(self.keywords)


@dataclass(frozen=True)
class TaggedKeywords:
    """Terms under any other category the model chose (person, work, 字形...)."""
    category: str
    keywords: Tuple[str, ...]
    source: str = "stem"
    knowledge_file: Optional[str] = None

    def terms(self) -> List[str]:
        return list(self.keywords)


KeywordAnnotation = Union[ExplicitKeyword, ImplicitKeyword, ContrastKeywords, TaggedKeywords]


def _string_tuple(value) -> Tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(v).strip() for v in value if isinstance(v, str) and v.strip())


def annotation_from_dict(obj: Dict) -> KeywordAnnotation:
    """
    Build an annotation from one decoded JSONL object.

    Any non-empty ``category`` is accepted as long as the line carries a
    ``keyword`` or ``keywords``; every ``keyword``/``keywords``/``related``
    term on the line is kept, whatever its shape.

    Raises:
        ParseError: missing ``category``, or neither ``keyword`` nor ``keywords``
    """
    if not isinstance(obj, dict):
        raise ParseError("annotation must be a JSON object")
    category = str(obj.get("category") or "").strip()
    keyword = obj.get("keyword")
    keyword = keyword.strip() if isinstance(keyword, str) else ""
    keywords = _string_tuple(obj.get("keywords"))
    related = _string_tuple(obj.get("related"))
    if not category or not (keyword or keywords):
        raise ParseError("annotation needs 'category' and 'keyword' or 'keywords'")

    source = str(obj.get("source") or "stem")
    if category == "explicit" and keyword:
        return ExplicitKeyword(source=source, keyword=keyword, related=keywords + related)
    if category == "implicit" and keyword:
        return ImplicitKeyword(source=source, keyword=keyword, reason=str(obj.get("reason") or ""),
                               related=keywords + related)

    terms = ((keyword,) if keyword else ()) + keywords + related
    if category == "contrast":
        return ContrastKeywords(keywords=terms, dimension=str(obj.get("dimension") or ""))
    return TaggedKeywords(category=category, keywords=terms, source=source)


def flatten_keywords(annotations: Iterable[KeywordAnnotation]) -> List[str]:
    """Union of every keyword/keywords/related term, deduplicated, first-seen order kept."""
    seen = set()
    keywords = []
    for annotation in annotations:
        for term in annotation.terms():
            term = term.strip()
            if term and term not in seen:
                seen.add(term)
                keywords.append(term)
    return keywords


OPTION_LABEL = re.compile(r'^\s*[A-D]\s*[:：.、]\s*')


def format_options(options: Sequence[str]) -> str:
    """Label options A-D, dropping any label the option already carries."""
    lines = []
    for i, option in enumerate(options):
        label = chr(ord('A') + i)
        lines.append(f"{label}: {OPTION_LABEL.sub('', option)}")
    return "\n".join(lines)


@dataclass(frozen=True)
class KeywordExtraction:
    annotations: Tuple[KeywordAnnotation, ...]
    keywords: Tuple[str, ...]
    raw_output: str = ""
    response_time_ms: float = 0.0
    error: Optional[str] = None

    @classmethod
    def from_annotations(cls, annotations: Sequence[KeywordAnnotation], **kwargs) -> "KeywordExtraction":
        return cls(annotations=tuple(annotations), keywords=tuple(flatten_keywords(annotations)), **kwargs)


class KeywordExtractor(ABC):
    """Derives search keywords from a question."""

    name = "base"

    @abstractmethod
    async def extract(self, question: Question) -> KeywordExtraction:
        ...


# ============================================================
# 规则提取：静态词表 + 形近字组
# ============================================================
LITERATURE_KEYWORDS = [
    '唐宋八大家', '三蘇', '韓愈', '柳宗元', '歐陽脩', '蘇洵', '蘇軾', '蘇轍', '王安石', '曾鞏',
    '建安七子', '三曹', '王粲', '曹丕', '曹操', '曹植', '典論',
    '竹林七賢', '阮籍', '嵇康', '山濤', '向秀', '劉伶', '王戎', '阮咸',
]

IDIOM_KEYWORDS = [
    '罄竹難書', '磬竹難書', '貌合神離', '貌和神離',
    '鋌而走險', '挺而走險', '直截了當', '直接了當',
    '成語', '用字',
]

# 常见形近字 / 同音字组
CHARACTER_PAIRS = [
    ('厲', '勵'), ('蜂', '鋒'), ('擁', '湧'), ('賑', '振'),
    ('弊', '蔽'), ('罄', '磬'), ('合', '和'), ('鋌', '挺'), ('截', '接'),
]

QUOTED_CHARACTER = re.compile(r'「([^」])」')
CJK_WORD = re.compile(r'[\u4e00-\u9fff]{2,4}')


def _option_source(options: Sequence[str], term: str) -> str:
    for i, option in enumerate(options):
        if term in option:
            return f"option_{chr(ord('A') + i)}"
    return "stem"


class RuleKeywordExtractor(KeywordExtractor):
    """
    Gazetteer-based extraction. Never touches the network and always succeeds.

    Strategy:
    1. Literature names / works / periods -> literature file
    2. Idioms and their common misspellings -> idiom file
    3. Single characters in 「」 plus near-form pairs -> character-form file
    4. Nothing matched -> first 10 CJK words, searched in every file
    """

    name = "rule"

    def __init__(self, fallback_word_limit: int = 10):
        self.fallback_word_limit = fallback_word_limit

    async def extract(self, question: Question) -> KeywordExtraction:
        return KeywordExtraction.from_annotations(self.annotate(question))

    def annotate(self, question: Question) -> List[KeywordAnnotation]:
        full_text = question.full_text()
        annotations: List[KeywordAnnotation] = []

        for keyword in LITERATURE_KEYWORDS:
            if keyword in full_text:
                annotations.append(ExplicitKeyword(
                    source="stem" if keyword in question.stem else _option_source(question.options, keyword),
                    keyword=keyword,
                    knowledge_file=LITERATURE_FILE,
                ))

        for keyword in IDIOM_KEYWORDS:
            if keyword in full_text:
                annotations.append(ExplicitKeyword(
                    source="stem" if keyword in question.stem else _option_source(question.options, keyword),
                    keyword=keyword,
                    knowledge_file=IDIOM_FILE,
                ))

        for char in dict.fromkeys(QUOTED_CHARACTER.findall(full_text)):
            annotations.append(ExplicitKeyword(source="stem", keyword=char, knowledge_file=CHARACTER_FILE))

        for pair in CHARACTER_PAIRS:
            if any(c in full_text for c in pair):
                annotations.append(ContrastKeywords(keywords=pair, dimension="形近字", knowledge_file=CHARACTER_FILE))

        if not annotations:
            words = list(dict.fromkeys(CJK_WORD.findall(full_text)))[:self.fallback_word_limit]
            annotations.extend(ExplicitKeyword(source="stem", keyword=w) for w in words)

        return annotations


# ============================================================
# LLM 提取：多角度关键词（JSONL 输出）
# ============================================================
EXTRACTION_PROMPT = """你是高中國文知識檢索專家。分析題目，找出需要查詢知識庫的關鍵字，但不要作答。

題目：{{question}}

選項：
{{options}}

請從三個角度提取：
1. explicit：題目或選項中明確出現、需要查證的詞（人名、作品、朝代、流派、成語、「」內的字），可附上相關詞 related。
2. implicit：題目沒寫出、但解題需要查證的概念，並以 reason 說明原因。
3. contrast：選項之間需要區分的對比項 keywords，並以 dimension 說明對比維度。

不可判斷選項對錯，不可提取「下列」「何者」「正確」「錯誤」「選項」「敘述」等指令詞。

只輸出 JSONL，每行一個 JSON 物件，不要任何其他文字：
{"category":"explicit","source":"stem","keyword":"唐宋八大家","related":["韓愈","柳宗元"]}
{"category":"implicit","source":"option_A","keyword":"父子關係","reason":"三蘇成員關係"}
{"category":"contrast","keywords":["父子","兄弟"],"dimension":"三蘇成員關係"}"""


def parse_annotation_lines(output: str) -> Tuple[List[KeywordAnnotation], int]:
    """
    Parse line-delimited JSON annotations.

    Lines that do not start with ``{`` are ignored; lines that start with ``{``
    but fail to decode or validate are reported and skipped.

    Returns:
        (annotations, number of rejected lines)
    """
    annotations = []
    rejected = 0
    for line in (output or "").split("\n"):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            annotations.append(annotation_from_dict(json.loads(line)))
        except (json.JSONDecodeError, ParseError) as e:
            rejected += 1
            print(f"[WARNING] Skipping keyword line ({e}): {line[:50]}...")
    return annotations, rejected


class LLMKeywordExtractor(KeywordExtractor):
    """Asks a model for explicit / implicit / contrast keyword annotations."""

    name = "llm"

    def __init__(self, model: ModelProvider):
        self.model = model

    def build_prompt(self, question: Question) -> str:
        return (EXTRACTION_PROMPT
                .replace("{{question}}", question.stem)
                .replace("{{options}}", format_options(question.options)))

    async def extract(self, question: Question) -> KeywordExtraction:
        result = await self.model.infer(self.build_prompt(question))
        if result.error:
            return KeywordExtraction.from_annotations(
                [], raw_output=result.content, response_time_ms=result.response_time_ms, error=result.content)

        annotations, _ = parse_annotation_lines(result.content)
        return KeywordExtraction.from_annotations(
            annotations, raw_output=result.content, response_time_ms=result.response_time_ms)


class FallbackKeywordExtractor(KeywordExtractor):
    """Uses the primary extractor; if it yields nothing usable, the rule-based one."""

    def __init__(self, primary: KeywordExtractor, fallback: Optional[KeywordExtractor] = None):
        self.primary = primary
        self.fallback = fallback or RuleKeywordExtractor()
        self.name = primary.name

    async def extract(self, question: Question) -> KeywordExtraction:
        extraction = await self.primary.extract(question)
        if extraction.keywords:
            return extraction
        print(f"[WARNING] [{question.id}] {self.primary.name} extraction empty, falling back to {self.fallback.name}")
        fallback = await self.fallback.extract(question)
        return KeywordExtraction(
            annotations=fallback.annotations,
            keywords=fallback.keywords,
            raw_output=extraction.raw_output,
            response_time_ms=extraction.response_time_ms,
            error=extraction.error,
        )
