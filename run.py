import asyncio
import sys
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv
from jsonargparse import CLI

from agents.solver_agent import SolveResult, SolverAgent
from batch_orchestrator import BatchOrchestrator, BatchSummary
from config import ConfigError, SolverConfig
from evaluators.answer_match_evaluator import AnswerMatchEvaluator
from question_loader import Question, load_questions


@dataclass
class CommandArgs:
    """Command line arguments"""
    questions_jsonl: str

    api_key: Optional[str] = None
    base_url: Optional[str] = None
    model: Optional[str] = None

    keyword_strategy: Optional[str] = "rule"  # 'rule' or 'llm'
    search_backend: Optional[str] = "ripgrep"  # 'ripgrep' or 'memory'
    knowledge_dir: Optional[str] = "knowledge"
    patterns_path: Optional[str] = "patterns/question-types.jsonl"
    templates_path: Optional[str] = "templates/reasoning.jsonl"

    max_questions: Optional[int] = None
    sequential: Optional[bool] = False
    max_concurrency: Optional[int] = 0
    max_retries: Optional[int] = None
    timeout: Optional[float] = None

    results_dir: Optional[str] = "reports"
    save_results: Optional[bool] = True
    print_ongoing_status: Optional[bool] = True


def build_config(args: CommandArgs) -> SolverConfig:
    """
    Build the solver config: environment first, command line arguments on top.

    Raises:
        ConfigError: no credential or an invalid setting
    """
    return SolverConfig.from_env(
        api_key=args.api_key,
        base_url=args.base_url,
        model=args.model,
        keyword_strategy=args.keyword_strategy,
        search_backend=args.search_backend,
        knowledge_dir=args.knowledge_dir,
        patterns_path=args.patterns_path,
        templates_path=args.templates_path,
        parallel=not args.sequential,
        max_concurrency=args.max_concurrency,
        max_retries=args.max_retries,
        timeout=args.timeout,
        print_ongoing_status=args.print_ongoing_status,
    )


def print_results(questions: List[Question], results: List[SolveResult], summary: BatchSummary):
    print("\n" + "=" * 80)
    print("  测试结果")
    print("=" * 80)
    for i, (question, result) in enumerate(zip(questions, results), 1):
        evaluator = AnswerMatchEvaluator(question.answer_key)
        if result.error:
            print(f"[{i}] {result.question_id}: 错误 ({result.reasoning[:50]})")
        elif not evaluator.gradable:
            print(f"[{i}] {result.question_id}: ? 无标准答案 (答: {result.answer})")
        elif evaluator.evaluate_response(result.answer):
            print(f"[{i}] {result.question_id}: ✓ 正确 ({result.answer})")
        else:
            print(f"[{i}] {result.question_id}: ✗ 错误 (答: {result.answer}, 正确: {question.answer_key})")

    timing = summary.timing
    print("\n" + "=" * 80)
    print("OVERALL SUMMARY")
    print("=" * 80)
    print(f"Total questions: {summary.total_questions}")
    print(f"Correct: {summary.correct} | Wrong: {summary.wrong} | Error: {summary.error}")
    print(f"Accuracy: {summary.accuracy:.1f}%")
    print(f"\nTiming:")
    print(f"  Extraction: {timing.extraction_ms / 1000:.2f}s")
    print(f"  Search: {timing.search_ms / 1000:.2f}s")
    print(f"  Inference: {timing.inference_ms / 1000:.2f}s "
          f"(avg {timing.avg_inference_ms / 1000:.2f}s, p95 {timing.p95_inference_ms / 1000:.2f}s)")
    print(f"  Wall clock: {timing.wall_ms / 1000:.2f}s")
    print(f"Tokens: {summary.usage.prompt_tokens} in / {summary.usage.completion_tokens} out")
    print("=" * 80)


async def run_batch(config: SolverConfig, questions: List[Question], args: CommandArgs):
    solver = SolverAgent.from_config(config)
    orchestrator = BatchOrchestrator(
        solver,
        parallel=config.parallel,
        max_concurrency=config.max_concurrency,
        save_results=args.save_results,
        results_dir=args.results_dir,
        print_ongoing_status=config.print_ongoing_status,
    )
    try:
        summary = await orchestrator.run(questions)
    finally:
        await solver.cleanup()
    return orchestrator.results, summary


def main():
    """Main function"""
    load_dotenv()
    args = CLI(CommandArgs, as_positional=False)

    try:
        config = build_config(args)
    except ConfigError as e:
        print(f"\n❌ 错误: {e}")
        sys.exit(1)

    questions = load_questions(args.questions_jsonl, max_questions=args.max_questions)

    print("\n" + "=" * 80)
    print("  高中國文學測解題系統")
    print(f"Loaded {len(questions)} question(s) from {args.questions_jsonl}")
    print(f"Model: {config.model} | Keywords: {config.keyword_strategy} | Search: {config.search_backend}")
    print("=" * 80)

    results, summary = asyncio.run(run_batch(config, questions, args))
    print_results(questions, results, summary)


if __name__ == "__main__":
    main()
