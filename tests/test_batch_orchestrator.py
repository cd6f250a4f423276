import asyncio
import json

import pytest

from agents.context_assembler import ContextAssembler
from agents.keyword_agent import KeywordExtraction, KeywordExtractor, RuleKeywordExtractor
from agents.pattern_classifier import PatternClassifier
from agents.retrieval_agent import InMemoryKnowledgeStore, SearchExecutor
from agents.solver_agent import ERROR_ANSWER, SolveResult, SolverAgent, StageTiming
from batch_orchestrator import BatchOrchestrator, gather_isolated, summarize
from model import InferenceResult, TokenUsage
from tests.conftest import FakeModel, make_question

FILES = ("character-forms.jsonl", "idioms.jsonl", "literature.jsonl")


def build_solver(model, knowledge_dir, extractor=None):
    return SolverAgent(
        model=model,
        classifier=PatternClassifier([]),
        extractor=extractor or RuleKeywordExtractor(),
        executor=SearchExecutor(InMemoryKnowledgeStore(str(knowledge_dir), FILES)),
        assembler=ContextAssembler(),
        print_ongoing_status=False,
    )


class ExplodingExtractor(KeywordExtractor):
    """Raises for one question id and extracts nothing for the rest."""

    name = "exploding"

    def __init__(self, bad_id):
        self.bad_id = bad_id

    async def extract(self, question):
        if question.id == self.bad_id:
            raise RuntimeError("extractor crashed")
        return KeywordExtraction.from_annotations([])


def answer_with(letter):
    return lambda prompt: f'分析完畢\n{{"answer": "{letter}", "reasoning": "依據知識"}}'


# ============================================================
# gather_isolated
# ============================================================
@pytest.mark.asyncio
async def test_gather_isolated_preserves_order_and_isolates_errors():
    async def worker(n):
        await asyncio.sleep(0.01 * (5 - n))
        if n == 2:
            raise ValueError("bad item")
        return n * 10

    results = await gather_isolated([0, 1, 2, 3, 4], worker, lambda item, exc: f"error:{item}:{exc}")
    assert results == [0, 10, "error:2:bad item", 30, 40]


@pytest.mark.asyncio
async def test_gather_isolated_sequential():
    started = []

    async def worker(n):
        started.append(n)
        await asyncio.sleep(0)
        return n

    results = await gather_isolated([3, 1, 2], worker, lambda item, exc: None, parallel=False)
    assert results == [3, 1, 2]
    assert started == [3, 1, 2]


@pytest.mark.asyncio
async def test_gather_isolated_respects_max_concurrency():
    in_flight = 0
    peak = 0

    async def worker(n):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return n

    results = await gather_isolated(list(range(8)), worker, lambda item, exc: None, max_concurrency=2)
    assert results == list(range(8))
    assert peak <= 2


@pytest.mark.asyncio
async def test_gather_isolated_empty():
    assert await gather_isolated([], None, None) == []


# ============================================================
# SolverAgent
# ============================================================
@pytest.mark.asyncio
async def test_san_su_question_is_answered_from_knowledge(knowledge_dir, san_su_question):
    def responder(prompt):
        if "三蘇指蘇洵與其子蘇軾、蘇轍" in prompt:
            return '{"answer": "A", "reasoning": "蘇洵為父"}'
        return '{"answer": "B", "reasoning": "猜測"}'

    model = FakeModel(responder)
    result = await build_solver(model, knowledge_dir).solve(san_su_question)

    assert result.answer == "A"
    assert not result.error
    assert "LIT-002" in result.knowledge_ids
    assert result.knowledge_count == len(result.knowledge_ids)
    assert "三蘇" in result.keywords
    assert result.prompt_length == len(model.prompts[0])
    assert result.pattern_id == "general"
    assert result.usage == TokenUsage(10, 2)


@pytest.mark.asyncio
async def test_error_inference_becomes_error_result(knowledge_dir, san_su_question):
    model = FakeModel(lambda prompt: InferenceResult.failed("API Error 500: boom"))
    result = await build_solver(model, knowledge_dir).solve(san_su_question)

    assert result.answer == ERROR_ANSWER
    assert result.error
    assert result.reasoning.startswith("ERROR:")


@pytest.mark.asyncio
async def test_unparseable_output_is_unknown_not_error(knowledge_dir, san_su_question):
    model = FakeModel(lambda prompt: "我不確定")
    result = await build_solver(model, knowledge_dir).solve(san_su_question)

    assert result.answer == "UNKNOWN"
    assert not result.error


def test_from_config_wires_components(tmp_path, knowledge_dir):
    from config import SolverConfig

    patterns = tmp_path / "patterns.jsonl"
    patterns.write_text('{"id": "literature", "patterns": ["三蘇"], "template_id": "literature"}\n',
                        encoding='utf-8')
    config = SolverConfig(api_key="test-key", knowledge_dir=str(knowledge_dir), search_backend="memory",
                          patterns_path=str(patterns), templates_path=str(tmp_path / "missing.jsonl"),
                          print_ongoing_status=False)
    model = FakeModel(answer_with("A"))
    solver = SolverAgent.from_config(config, model=model)

    assert solver.model is model
    assert isinstance(solver.executor.store, InMemoryKnowledgeStore)
    assert [p.id for p in solver.classifier.patterns] == ["literature"]
    assert solver._owned_providers == []


# ============================================================
# BatchOrchestrator
# ============================================================
@pytest.mark.asyncio
async def test_batch_results_keep_input_order(knowledge_dir):
    questions = [make_question(f"Q-{i}") for i in range(5)]
    # 越前面的题目越慢完成
    delays = {f"Q-{i}": 0.01 * (5 - i) for i in range(5)}

    class SlowExtractor(KeywordExtractor):
        name = "slow"

        async def extract(self, question):
            await asyncio.sleep(delays[question.id])
            return KeywordExtraction.from_annotations([])

    solver = build_solver(FakeModel(answer_with("A")), knowledge_dir, extractor=SlowExtractor())
    results = await BatchOrchestrator(solver, print_ongoing_status=False).solve_batch(questions)

    assert [r.question_id for r in results] == [q.id for q in questions]


@pytest.mark.asyncio
async def test_failing_question_is_isolated(knowledge_dir):
    questions = [make_question("Q-1"), make_question("Q-2"), make_question("Q-3")]
    solver = build_solver(FakeModel(answer_with("A")), knowledge_dir, extractor=ExplodingExtractor("Q-2"))
    orchestrator = BatchOrchestrator(solver, print_ongoing_status=False)

    summary = await orchestrator.run(questions)
    results = orchestrator.results

    assert [r.answer for r in results] == ["A", ERROR_ANSWER, "A"]
    assert "extractor crashed" in results[1].reasoning
    assert summary.correct == 2
    assert summary.error == 1
    assert summary.accuracy == 100.0


@pytest.mark.asyncio
async def test_sequential_mode(knowledge_dir):
    questions = [make_question(f"Q-{i}") for i in range(3)]
    model = FakeModel(answer_with("B"))
    orchestrator = BatchOrchestrator(build_solver(model, knowledge_dir), parallel=False, print_ongoing_status=False)

    summary = await orchestrator.run(questions)

    assert summary.total_questions == 3
    assert summary.wrong == 3
    assert summary.accuracy == 0.0
    assert len(model.prompts) == 3


@pytest.mark.asyncio
async def test_run_saves_report(tmp_path, knowledge_dir, san_su_question):
    results_dir = tmp_path / "reports"
    orchestrator = BatchOrchestrator(build_solver(FakeModel(answer_with("A")), knowledge_dir),
                                     save_results=True, results_dir=str(results_dir), print_ongoing_status=False)

    await orchestrator.run([san_su_question, make_question("Q-2", answer_key=None)])

    with open(results_dir / "skill-solver-result.json", encoding='utf-8') as f:
        report = json.load(f)
    assert report["model"] == "fake-model"
    assert report["total_questions"] == 2
    assert report["correct"] == 1
    assert report["wrong"] == 1
    assert [r["question_id"] for r in report["results"]] == ["LK-001", "Q-2"]
    assert "三蘇" in report["results"][0]["keywords"]


# ============================================================
# summarize
# ============================================================
def make_result(qid, answer, inference_ms=100.0, error=False):
    return SolveResult(question_id=qid, answer=answer, reasoning="", error=error,
                       timing=StageTiming(extraction_ms=1.0, search_ms=2.0, inference_ms=inference_ms,
                                          total_ms=inference_ms + 3.0),
                       usage=TokenUsage(100, 10))


def test_summary_counts_and_accuracy():
    questions = [make_question("Q-1", answer_key="A"), make_question("Q-2", answer_key="B"),
                 make_question("Q-3", answer_key="C"), make_question("Q-4", answer_key="D")]
    results = [make_result("Q-1", "A", 100.0), make_result("Q-2", "C", 200.0),
               make_result("Q-3", "UNKNOWN", 300.0), make_result("Q-4", ERROR_ANSWER, 0.0, error=True)]

    summary = summarize(questions, results, wall_ms=350.0)

    assert (summary.correct, summary.wrong, summary.error) == (1, 2, 1)
    assert summary.correct + summary.wrong + summary.error == summary.total_questions
    assert summary.accuracy == 33.3
    assert summary.timing.inference_ms == 600.0
    assert summary.timing.avg_inference_ms == 150.0
    assert summary.timing.wall_ms == 350.0
    assert summary.usage == TokenUsage(400, 40)


def test_summary_all_errors_has_zero_accuracy():
    questions = [make_question("Q-1")]
    summary = summarize(questions, [make_result("Q-1", ERROR_ANSWER, error=True)])
    assert summary.error == 1
    assert summary.accuracy == 0.0


def test_summary_empty_batch():
    summary = summarize([], [])
    assert summary.total_questions == 0
    assert summary.accuracy == 0.0
    assert summary.timing.p95_inference_ms == 0.0
