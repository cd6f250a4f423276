from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional

ERROR_MARKER = "ERROR:"


class ApiError(Exception):
    """Non-success HTTP status from the inference endpoint."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"API Error {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class InferenceTimeoutError(TimeoutError):
    """No response from the inference endpoint within the configured timeout."""


class ParseError(ValueError):
    """Malformed JSON line, knowledge record, template or model output."""


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "TokenUsage":
        if not data:
            return cls()
        return cls(
            prompt_tokens=int(data.get("prompt_tokens") or 0),
            completion_tokens=int(data.get("completion_tokens") or 0),
        )

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


@dataclass(frozen=True)
class InferenceResult:
    """Raw model output plus usage/timing metadata."""
    content: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    response_time_ms: float = 0.0
    model: str = ""
    error: bool = False

    @classmethod
    def failed(cls, reason: str, model: str = "", response_time_ms: float = 0.0) -> "InferenceResult":
        """Sentinel result returned once all retries are exhausted."""
        return cls(
            content=f"{ERROR_MARKER} {reason}",
            response_time_ms=response_time_ms,
            model=model,
            error=True,
        )


class ModelProvider(ABC):
    """
    Abstract base class for anything that can answer a prompt.

    The solver pipeline only depends on this interface, so tests and alternative
    endpoints can be swapped in without touching the pipeline.
    """

    def __init__(self, model_name: str = "custom-model"):
        self.model_name = model_name

    @abstractmethod
    async def infer(self, prompt: str) -> InferenceResult:
        """
        Send a prompt to the model.

        Implementations must not raise for endpoint failures once their retry
        policy is exhausted; they return an error-flagged InferenceResult instead.

        Args:
            prompt: Fully assembled prompt text

        Returns:
            The model's response
        """
        ...

    async def cleanup(self):
        """Release network resources (no-op by default)."""
        return None
