import asyncio
import time
from typing import Optional

import httpx
from openai import APIError, APIStatusError, APITimeoutError, AsyncOpenAI
from openai.types.chat import ChatCompletion

from config import SolverConfig
from model import ApiError, InferenceResult, InferenceTimeoutError, ModelProvider, ParseError, TokenUsage


class InferenceClient(ModelProvider):
    """
    Chat-completion client with a fixed timeout / retry policy.

    Every attempt is a single POST to ``{base_url}/chat/completions`` with body
    ``{model, messages: [{role: "user", content}], temperature, max_tokens}``.
    The SDK's built-in retry is disabled so that ``max_retries`` here is the
    exact number of extra attempts.
    """

    def __init__(self,
                 config: SolverConfig,
                 max_tokens: Optional[int] = None,
                 timeout: Optional[float] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(config.model)
        self.temperature = config.temperature
        self.max_tokens = max_tokens if max_tokens is not None else config.max_tokens
        self.timeout = timeout if timeout is not None else config.timeout
        self.max_retries = config.max_retries
        self.retry_delay = config.retry_delay
        self.print_ongoing_status = config.print_ongoing_status
        self.client = AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=self.timeout,
            max_retries=0,
            default_headers=dict(config.extra_headers),
            http_client=http_client,
        )

    async def cleanup(self):
        """Close the underlying HTTP client to avoid event loop errors."""
        if hasattr(self.client, 'close'):
            await self.client.close()

    # ============================================================
    # 单次请求
    # ============================================================
    async def complete(self, prompt: str) -> InferenceResult:
        """
        Issue exactly one request.

        ``timeout`` bounds the whole call, not each connect/read step.

        Raises:
            ApiError: endpoint returned a non-success status
            InferenceTimeoutError: no response within ``self.timeout``
            ParseError: success status but the body is not a chat completion
        """
        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model_name,
                    messages=[{"role": "user", "content": prompt}],
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                ),
                timeout=self.timeout,
            )
        except (APITimeoutError, asyncio.TimeoutError) as e:
            raise InferenceTimeoutError(f"no response within {self.timeout}s") from e
        except APIStatusError as e:
            raise ApiError(e.status_code, e.response.text) from e
        except ValueError as e:
            # 200 但响应体不是合法 JSON
            raise ParseError(f"malformed completion body: {e}") from e
        elapsed_ms = (time.perf_counter() - start) * 1000

        # 非 JSON content-type 时 SDK 直接返回文本
        if not isinstance(response, ChatCompletion):
            raise ParseError(f"unexpected completion body: {str(response)[:80]}")

        content = ""
        if response.choices:
            message = response.choices[0].message
            content = message.content or ""
            # 推理模型可能只返回 reasoning 字段
            if not content:
                for attr in ("reasoning", "reasoning_content"):
                    value = getattr(message, attr, None)
                    if value:
                        content = value
                        break

        usage = TokenUsage()
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
            )

        return InferenceResult(
            content=content,
            usage=usage,
            response_time_ms=elapsed_ms,
            model=response.model or self.model_name,
        )

    # ============================================================
    # 带重试的调用
    # ============================================================
    async def infer(self, prompt: str) -> InferenceResult:
        """
        Call the endpoint, retrying on any failure with a fixed delay.

        After ``1 + max_retries`` failed attempts an error-flagged sentinel is
        returned instead of raising, so a single question never aborts a batch.
        """
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self.complete(prompt)
            except (ApiError, InferenceTimeoutError, ParseError, APIError) as e:
                if attempt == attempts:
                    print(f"[WARNING] Inference failed after {attempts} attempt(s): {e}")
                    return InferenceResult.failed(str(e), model=self.model_name)
                print(f"[WARNING] 重试 {attempt}/{self.max_retries}: {e}")
                await asyncio.sleep(self.retry_delay)
