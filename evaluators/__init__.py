from .evaluator import Evaluator
from .answer_match_evaluator import AnswerMatchEvaluator

__all__ = ['Evaluator', 'AnswerMatchEvaluator']
