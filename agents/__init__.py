from .answer_parser import AnswerParser
from .context_assembler import ContextAssembler, ReasoningTemplate
from .inference_client import InferenceClient
from .keyword_agent import LLMKeywordExtractor, RuleKeywordExtractor
from .pattern_classifier import PatternClassifier, QuestionTypePattern
from .retrieval_agent import InMemoryKnowledgeStore, RipgrepKnowledgeStore, SearchExecutor
from .solver_agent import SolveResult, SolverAgent

__all__ = [
    'AnswerParser', 'ContextAssembler', 'ReasoningTemplate', 'InferenceClient',
    'LLMKeywordExtractor', 'RuleKeywordExtractor', 'PatternClassifier', 'QuestionTypePattern',
    'InMemoryKnowledgeStore', 'RipgrepKnowledgeStore', 'SearchExecutor', 'SolveResult', 'SolverAgent',
]
