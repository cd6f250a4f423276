import asyncio
import json

import httpx
import pytest

from agents.inference_client import InferenceClient
from agents.keyword_agent import FallbackKeywordExtractor, LLMKeywordExtractor
from config import SolverConfig
from model import ERROR_MARKER, ApiError, InferenceTimeoutError


def make_config(**overrides):
    values = dict(api_key="test-key", base_url="http://test/v1", retry_delay=0, print_ongoing_status=False)
    values.update(overrides)
    return SolverConfig(**values)


def completion(content, reasoning=None, usage=None):
    message = {"role": "assistant", "content": content}
    if reasoning is not None:
        message["reasoning"] = reasoning
    body = {
        "id": "gen-1",
        "object": "chat.completion",
        "created": 0,
        "model": "google/gemma-3-12b-it",
        "choices": [{"index": 0, "message": message, "finish_reason": "stop"}],
    }
    if usage is not None:
        body["usage"] = usage
    return body


class Endpoint:
    """httpx handler that records requests and replays scripted responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.responses[min(len(self.requests), len(self.responses)) - 1]
        if isinstance(reply, Exception):
            raise reply
        return reply

    def client(self, config, **kwargs):
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(self))
        return InferenceClient(config, http_client=http_client, **kwargs)


@pytest.mark.asyncio
async def test_successful_completion():
    usage = {"prompt_tokens": 120, "completion_tokens": 30, "total_tokens": 150}
    endpoint = Endpoint(httpx.Response(200, json=completion('{"answer":"A"}', usage=usage)))
    client = endpoint.client(make_config())

    result = await client.infer("題目")
    await client.cleanup()

    assert result.content == '{"answer":"A"}'
    assert not result.error
    assert result.usage.prompt_tokens == 120
    assert result.usage.completion_tokens == 30
    assert result.model == "google/gemma-3-12b-it"
    assert result.response_time_ms >= 0


@pytest.mark.asyncio
async def test_request_shape():
    endpoint = Endpoint(httpx.Response(200, json=completion("ok")))
    client = endpoint.client(make_config(model="some/model", temperature=0.1), max_tokens=123)

    await client.infer("你好")
    await client.cleanup()

    request = endpoint.requests[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer test-key"
    assert request.headers["x-title"] == "TAIDE Botrun Skill Solver"
    body = json.loads(request.content)
    assert body["model"] == "some/model"
    assert body["messages"] == [{"role": "user", "content": "你好"}]
    assert body["temperature"] == 0.1
    assert body["max_tokens"] == 123


@pytest.mark.asyncio
async def test_reasoning_field_fallback():
    endpoint = Endpoint(httpx.Response(200, json=completion(None, reasoning="答案：B")))
    client = endpoint.client(make_config())

    result = await client.infer("題目")
    await client.cleanup()

    assert result.content == "答案：B"


@pytest.mark.asyncio
async def test_missing_usage_defaults_to_zero():
    endpoint = Endpoint(httpx.Response(200, json=completion("ok")))
    client = endpoint.client(make_config())

    result = await client.infer("題目")
    await client.cleanup()

    assert result.usage.prompt_tokens == 0
    assert result.usage.completion_tokens == 0


@pytest.mark.asyncio
async def test_server_error_retries_then_returns_sentinel():
    endpoint = Endpoint(httpx.Response(500, json={"error": {"message": "boom"}}))
    client = endpoint.client(make_config(max_retries=2))

    result = await client.infer("題目")
    await client.cleanup()

    assert len(endpoint.requests) == 3
    assert result.error
    assert result.content.startswith(ERROR_MARKER)
    assert "500" in result.content


@pytest.mark.asyncio
async def test_recovers_after_transient_failure():
    endpoint = Endpoint(httpx.Response(429, json={"error": {"message": "slow down"}}),
                        httpx.Response(200, json=completion("答案：C")))
    client = endpoint.client(make_config(max_retries=2))

    result = await client.infer("題目")
    await client.cleanup()

    assert len(endpoint.requests) == 2
    assert result.content == "答案：C"
    assert not result.error


@pytest.mark.asyncio
async def test_zero_retries_means_single_attempt():
    endpoint = Endpoint(httpx.Response(503, text="unavailable"))
    client = endpoint.client(make_config(max_retries=0))

    result = await client.infer("題目")
    await client.cleanup()

    assert len(endpoint.requests) == 1
    assert result.error


@pytest.mark.asyncio
async def test_complete_raises_api_error():
    endpoint = Endpoint(httpx.Response(500, text="internal"))
    client = endpoint.client(make_config())

    with pytest.raises(ApiError) as excinfo:
        await client.complete("題目")
    await client.cleanup()

    assert excinfo.value.status_code == 500
    assert "internal" in excinfo.value.body


@pytest.mark.asyncio
async def test_complete_raises_timeout():
    endpoint = Endpoint(httpx.ReadTimeout("too slow"))
    client = endpoint.client(make_config(timeout=1.0))

    with pytest.raises(InferenceTimeoutError):
        await client.complete("題目")
    await client.cleanup()


@pytest.mark.asyncio
async def test_connection_errors_are_retried():
    endpoint = Endpoint(httpx.ConnectError("refused"))
    client = endpoint.client(make_config(max_retries=1))

    result = await client.infer("題目")
    await client.cleanup()

    assert len(endpoint.requests) == 2
    assert result.error


@pytest.mark.parametrize("response", [
    httpx.Response(200, text="<html>gateway</html>"),
    httpx.Response(200, content=b"<html>gateway</html>", headers={"content-type": "application/json"}),
])
@pytest.mark.asyncio
async def test_malformed_success_body_is_retried_then_sentinel(response):
    endpoint = Endpoint(response)
    client = endpoint.client(make_config(max_retries=2))

    result = await client.infer("題目")
    await client.cleanup()

    assert len(endpoint.requests) == 3
    assert result.error
    assert result.content.startswith(ERROR_MARKER)


@pytest.mark.asyncio
async def test_malformed_body_lets_keyword_extraction_fall_back_to_rules(san_su_question):
    endpoint = Endpoint(httpx.Response(200, text="<html>gateway</html>"))
    client = endpoint.client(make_config(max_retries=0))

    extraction = await FallbackKeywordExtractor(LLMKeywordExtractor(client)).extract(san_su_question)
    await client.cleanup()

    assert "三蘇" in extraction.keywords
    assert extraction.error is not None


@pytest.mark.asyncio
async def test_timeout_bounds_the_whole_call():
    requests = []

    async def stalled(request):
        requests.append(request)
        await asyncio.sleep(5)
        return httpx.Response(200, json=completion("太慢"))

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(stalled))
    client = InferenceClient(make_config(timeout=0.05, max_retries=1), http_client=http_client)

    result = await asyncio.wait_for(client.infer("題目"), timeout=2)
    await client.cleanup()

    assert len(requests) == 2
    assert result.error
    assert "0.05" in result.content


@pytest.mark.asyncio
async def test_complete_raises_timeout_for_stalled_endpoint():
    async def stalled(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json=completion("太慢"))

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(stalled))
    client = InferenceClient(make_config(timeout=0.05), http_client=http_client)

    with pytest.raises(InferenceTimeoutError):
        await client.complete("題目")
    await client.cleanup()
