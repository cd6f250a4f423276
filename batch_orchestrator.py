import asyncio
import json
import os
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

import numpy as np

from agents.solver_agent import SolveResult, SolverAgent
from evaluators.answer_match_evaluator import AnswerMatchEvaluator
from model import TokenUsage
from question_loader import Question

T = TypeVar('T')
R = TypeVar('R')


async def gather_isolated(items: Sequence[T],
                          worker: Callable[[T], Awaitable[R]],
                          on_error: Callable[[T, BaseException], R],
                          parallel: bool = True,
                          max_concurrency: int = 0) -> List[R]:
    """
    Run ``worker`` over every item and return results aligned with ``items``.

    A failing item is turned into ``on_error(item, exc)`` inside its own slot;
    it never cancels or delays the others. Cancellation itself is not captured.

    Args:
        items: Inputs, in order
        worker: Coroutine function producing one result per item
        on_error: Converts an item and its exception into a result
        parallel: Run all items concurrently (True) or one at a time (False)
        max_concurrency: Upper bound on in-flight items in parallel mode (0 = unbounded)
    """
    semaphore = asyncio.Semaphore(max_concurrency) if parallel and max_concurrency > 0 else None

    async def guarded(item: T) -> R:
        try:
            if semaphore is None:
                return await worker(item)
            async with semaphore:
                return await worker(item)
        except Exception as e:
            return on_error(item, e)

    if parallel:
        return list(await asyncio.gather(*(guarded(item) for item in items)))

    results = []
    for item in items:
        results.append(await guarded(item))
    return results


@dataclass(frozen=True)
class BatchTiming:
    extraction_ms: float = 0.0
    search_ms: float = 0.0
    inference_ms: float = 0.0
    total_ms: float = 0.0
    wall_ms: float = 0.0
    avg_inference_ms: float = 0.0
    p95_inference_ms: float = 0.0


@dataclass(frozen=True)
class BatchSummary:
    """Accounts for every input question: correct + wrong + error == total_questions."""
    total_questions: int
    correct: int
    wrong: int
    error: int
    accuracy: float
    timing: BatchTiming = field(default_factory=BatchTiming)
    usage: TokenUsage = field(default_factory=TokenUsage)

    def to_dict(self) -> Dict:
        return asdict(self)


def summarize(questions: Sequence[Question], results: Sequence[SolveResult], wall_ms: float = 0.0) -> BatchSummary:
    """
    Grade results against the answer keys and aggregate stage timings.

    Accuracy is ``correct / (total - error)`` as a percentage with one decimal,
    0.0 when no question produced a gradable answer.
    """
    correct = wrong = error = 0
    for question, result in zip(questions, results):
        if result.error:
            error += 1
        elif AnswerMatchEvaluator(question.answer_key).evaluate_response(result.answer):
            correct += 1
        else:
            wrong += 1

    gradable = len(results) - error
    accuracy = round(correct / gradable * 100, 1) if gradable > 0 else 0.0

    inference_ms = np.array([r.timing.inference_ms for r in results], dtype=float)
    timing = BatchTiming(
        extraction_ms=float(sum(r.timing.extraction_ms for r in results)),
        search_ms=float(sum(r.timing.search_ms for r in results)),
        inference_ms=float(inference_ms.sum()),
        total_ms=float(sum(r.timing.total_ms for r in results)),
        wall_ms=wall_ms,
        avg_inference_ms=float(inference_ms.mean()) if inference_ms.size else 0.0,
        p95_inference_ms=float(np.percentile(inference_ms, 95)) if inference_ms.size else 0.0,
    )

    usage = TokenUsage()
    for result in results:
        usage = usage + result.usage

    return BatchSummary(
        total_questions=len(results),
        correct=correct,
        wrong=wrong,
        error=error,
        accuracy=accuracy,
        timing=timing,
        usage=usage,
    )


class BatchOrchestrator:
    """
    Runs the solver over many questions.

    - Parallel mode launches one task per question; sequential mode runs them
      one at a time (debugging / rate limits).
    - Each question yields exactly one SolveResult in its input slot; any
      exception becomes an ``ERROR`` result for that question only.
    """

    def __init__(self,
                 solver: SolverAgent,
                 parallel: bool = True,
                 max_concurrency: int = 0,
                 save_results: bool = False,
                 results_dir: str = "reports",
                 print_ongoing_status: bool = True):
        self.solver = solver
        self.parallel = parallel
        self.max_concurrency = max_concurrency
        self.save_results = save_results
        self.results_dir = results_dir
        self.print_ongoing_status = print_ongoing_status
        self.summary: Optional[BatchSummary] = None
        self.results: List[SolveResult] = []

    @staticmethod
    def _error_result(question: Question, exc: BaseException) -> SolveResult:
        print(f"[WARNING] 题目 {question.id} 解题失败: {exc}")
        return SolveResult.failed(question.id, f"{type(exc).__name__}: {exc}")

    async def solve_batch(self, questions: Sequence[Question], parallel: Optional[bool] = None) -> List[SolveResult]:
        return await gather_isolated(
            questions,
            self.solver.solve,
            self._error_result,
            parallel=self.parallel if parallel is None else parallel,
            max_concurrency=self.max_concurrency,
        )

    async def run(self, questions: Sequence[Question]) -> BatchSummary:
        """Solve, grade, and optionally save a report."""
        if self.print_ongoing_status:
            self.print_start_summary(questions)

        start = time.perf_counter()
        self.results = await self.solve_batch(questions)
        wall_ms = (time.perf_counter() - start) * 1000

        self.summary = summarize(questions, self.results, wall_ms)
        if self.save_results:
            self.save_report(self.summary, self.results)
        return self.summary

    def print_start_summary(self, questions: Sequence[Question]):
        print("\n" + "=" * 60)
        print("Starting Batch Solve")
        print("=" * 60)
        print(f"Model: {self.solver.model.model_name}")
        print(f"Keyword strategy: {self.solver.extractor.name}")
        print(f"Questions: {len(questions)}")
        print(f"Mode: {'parallel' if self.parallel else 'sequential'}")
        print("=" * 60 + "\n")

    def save_report(self, summary: BatchSummary, results: Sequence[SolveResult]) -> str:
        if not os.path.exists(self.results_dir):
            os.makedirs(self.results_dir)

        report = {
            'timestamp': datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S%z'),
            'model': self.solver.model.model_name,
            **summary.to_dict(),
            'results': [r.to_dict() for r in results],
        }
        report_file = os.path.join(self.results_dir, 'skill-solver-result.json')
        with open(report_file, 'w', encoding='utf-8') as f:
            json.dump(report, f, indent=2, ensure_ascii=False)

        if self.print_ongoing_status:
            print(f"报告已储存: {report_file}")
        return report_file
