import time
from dataclasses import asdict, dataclass, field
from typing import Dict, Optional, Tuple

from agents.answer_parser import AnswerParser
from agents.context_assembler import ContextAssembler
from agents.inference_client import InferenceClient
from agents.keyword_agent import (FallbackKeywordExtractor, KeywordExtractor, LLMKeywordExtractor,
                                  RuleKeywordExtractor)
from agents.pattern_classifier import PatternClassifier
from agents.retrieval_agent import SearchExecutor, build_knowledge_store
from config import SolverConfig
from model import ModelProvider, TokenUsage
from question_loader import Question

ERROR_ANSWER = "ERROR"


@dataclass(frozen=True)
class StageTiming:
    extraction_ms: float = 0.0
    search_ms: float = 0.0
    inference_ms: float = 0.0
    total_ms: float = 0.0


@dataclass(frozen=True)
class SolveResult:
    """Terminal record for one question. ``answer`` is A-D, UNKNOWN or ERROR."""
    question_id: str
    answer: str
    reasoning: str
    pattern_id: Optional[str] = None
    knowledge_count: int = 0
    knowledge_ids: Tuple[str, ...] = ()
    keywords: Tuple[str, ...] = ()
    prompt_length: int = 0
    timing: StageTiming = field(default_factory=StageTiming)
    usage: TokenUsage = field(default_factory=TokenUsage)
    error: bool = False

    @classmethod
    def failed(cls, question_id: str, reason: str, **kwargs) -> "SolveResult":
        return cls(question_id=question_id, answer=ERROR_ANSWER, reasoning=reason, error=True, **kwargs)

    def to_dict(self) -> Dict:
        return asdict(self)


class SolverAgent:
    """
    Solves one question end to end.

    Pipeline:
    1. Classify the question type (regex pattern library)
    2. Extract keywords (rule-based or model-based)
    3. Search the knowledge base for every keyword x file pair, dedup by id
    4. Assemble the prompt from the type's reasoning template
    5. Call the model
    6. Parse the answer letter
    """

    def __init__(self,
                 model: ModelProvider,
                 classifier: PatternClassifier,
                 extractor: KeywordExtractor,
                 executor: SearchExecutor,
                 assembler: ContextAssembler,
                 parser: Optional[AnswerParser] = None,
                 print_ongoing_status: bool = True):
        self.model = model
        self.classifier = classifier
        self.extractor = extractor
        self.executor = executor
        self.assembler = assembler
        self.parser = parser or AnswerParser()
        self.print_ongoing_status = print_ongoing_status
        self._owned_providers = []

    @classmethod
    def from_config(cls,
                    config: SolverConfig,
                    model: Optional[ModelProvider] = None,
                    extractor_model: Optional[ModelProvider] = None) -> "SolverAgent":
        """
        Wire up every component from one config.

        Providers passed in are used as-is and not closed by ``cleanup``;
        providers created here are.
        """
        owned = []
        if model is None:
            model = InferenceClient(config)
            owned.append(model)

        if config.keyword_strategy == "llm":
            if extractor_model is None:
                extractor_model = InferenceClient(
                    config, max_tokens=config.extractor_max_tokens, timeout=config.extractor_timeout)
                owned.append(extractor_model)
            extractor: KeywordExtractor = FallbackKeywordExtractor(LLMKeywordExtractor(extractor_model))
        else:
            extractor = RuleKeywordExtractor()

        agent = cls(
            model=model,
            classifier=PatternClassifier.from_file(config.patterns_path),
            extractor=extractor,
            executor=SearchExecutor(build_knowledge_store(config)),
            assembler=ContextAssembler.from_file(config.templates_path),
            print_ongoing_status=config.print_ongoing_status,
        )
        agent._owned_providers = owned
        return agent

    async def cleanup(self):
        for provider in self._owned_providers:
            await provider.cleanup()

    def _log(self, question: Question, message: str):
        if self.print_ongoing_status:
            print(f"[{question.id}] {message}")

    async def solve(self, question: Question) -> SolveResult:
        start = time.perf_counter()

        # 1. 题型识别
        pattern = self.classifier.classify(question.stem, question.options)
        self._log(question, f"题型: {pattern.description or pattern.id}")

        # 2. 关键词提取
        t0 = time.perf_counter()
        extraction = await self.extractor.extract(question)
        extraction_ms = (time.perf_counter() - t0) * 1000
        self._log(question, f"关键词 ({self.extractor.name}): {', '.join(extraction.keywords[:5])}"
                            f"{'...' if len(extraction.keywords) > 5 else ''}")

        # 3. 并行检索
        retrieval = await self.executor.retrieve(extraction.annotations)
        self._log(question, f"找到 {len(retrieval.records)} 条相关知识 "
                            f"({len(retrieval.pairs)} 次检索, {retrieval.elapsed_ms:.0f}ms)")

        # 4. 组装上下文
        prompt = self.assembler.assemble(pattern, retrieval.records, question.stem, question.options)

        # 5. 调用模型
        inference = await self.model.infer(prompt)
        self._log(question, f"回应时间: {inference.response_time_ms / 1000:.2f}s")

        timing = StageTiming(
            extraction_ms=extraction_ms,
            search_ms=retrieval.elapsed_ms,
            inference_ms=inference.response_time_ms,
            total_ms=(time.perf_counter() - start) * 1000,
        )
        common = dict(
            pattern_id=pattern.id,
            knowledge_count=len(retrieval.records),
            knowledge_ids=retrieval.ids,
            keywords=extraction.keywords,
            prompt_length=len(prompt),
            timing=timing,
            usage=inference.usage,
        )

        if inference.error:
            self._log(question, f"推理失败: {inference.content[:80]}")
            return SolveResult.failed(question.id, inference.content, **common)

        # 6. 解析答案
        parsed = self.parser.parse(inference.content)
        self._log(question, f"答案: {parsed.answer}")
        return SolveResult(
            question_id=question.id,
            answer=parsed.answer,
            reasoning=parsed.reasoning,
            **common,
        )
