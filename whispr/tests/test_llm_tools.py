"""Tests for the LLM-backed analysis client, its providers and the retry policies."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import aiohttp
import openai
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from whispr.common_tools.llm_tools import (
    AnalysisRequest,
    LLMAnalysisClient,
    LLMError,
    LLMRequest,
    LLMResponse,
    OllamaProvider,
    OpenAIProvider,
    create_provider,
)
from whispr.common_tools.retry_framework import (
    RetryPolicy,
    RetryStrategy,
    get_retry_policy,
    policy_from_dict,
    retry_with_policy,
)
from whispr.config.settings import LLMConfig


def completion(content):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason="stop")],
        usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15),
    )


class TestLLMAnalysisClient:

    @pytest.mark.asyncio
    async def test_request_mapping(self):
        provider = Mock()
        provider.model_name = "test-model"
        provider.provider_name = "test"
        provider.default_temperature = 0.2
        provider.default_max_tokens = 500
        provider.generate_async = AsyncMock(return_value=LLMResponse(
            content='{"patterns": []}', model="test-model", usage={}, metadata={}, timestamp=None))
        client = LLMAnalysisClient(provider)

        raw = await client.analyze(AnalysisRequest(
            system_instructions="You analyse team metadata.",
            task_instructions="Find patterns.",
            serialized_inputs='{"records": []}',
            stage_id="pulse",
            metadata={"tenant_id": "acme"},
        ))

        assert raw == '{"patterns": []}'
        sent = provider.generate_async.await_args.args[0]
        assert isinstance(sent, LLMRequest)
        assert sent.system_prompt == "You analyse team metadata."
        assert sent.prompt == 'Find patterns.\n\n{"records": []}'
        assert sent.metadata == {"stage_id": "pulse", "tenant_id": "acme"}
        assert sent.max_tokens == 500
        assert client.model_name == "test-model"


class TestOpenAIProvider:

    @pytest.mark.asyncio
    async def test_json_mode_completion(self):
        provider = OpenAIProvider(api_key="sk-test", model_name="gpt-4o-mini")
        provider._client = Mock()
        provider._client.chat.completions.create = AsyncMock(return_value=completion('{"anomalies": []}'))

        response = await provider.generate_async(LLMRequest(prompt="p", model="", system_prompt="s"))

        kwargs = provider._client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0] == {"role": "system", "content": "s"}
        assert response.content == '{"anomalies": []}'
        assert response.usage["total_tokens"] == 15
        assert provider.get_stats()["requests_successful"] == 1

    @pytest.mark.asyncio
    async def test_api_error_wrapped(self):
        provider = OpenAIProvider(api_key="sk-test")
        provider._client = Mock()
        provider._client.chat.completions.create = AsyncMock(side_effect=openai.OpenAIError("quota exceeded"))

        with pytest.raises(LLMError) as exc_info:
            await provider.generate_async(LLMRequest(prompt="p", model="gpt-4o-mini"))

        assert exc_info.value.error_code == "OpenAIError"
        assert provider.get_stats()["requests_failed"] == 1

    def test_availability_depends_on_key(self):
        assert OpenAIProvider(api_key="sk-test").is_available()
        assert not OpenAIProvider(api_key="").is_available()


class TestOllamaProvider:

    @pytest.mark.asyncio
    async def test_chat_round_trip(self):
        received = {}

        async def chat(request):
            received.update(await request.json())
            return web.json_response({"message": {"content": '{"whispers": []}'},
                                      "prompt_eval_count": 7, "eval_count": 3})

        app = web.Application()
        app.router.add_post("/api/chat", chat)
        async with TestServer(app) as server:
            provider = OllamaProvider(base_url=str(server.make_url("")), model_name="llama3")
            try:
                response = await provider.generate_async(LLMRequest(prompt="p", model="llama3",
                                                                    system_prompt="s"))
            finally:
                await provider.close()

        assert response.content == '{"whispers": []}'
        assert response.usage == {"input_tokens": 7, "output_tokens": 3, "total_tokens": 10}
        assert received["format"] == "json"
        assert received["stream"] is False
        assert [m["role"] for m in received["messages"]] == ["system", "user"]


class TestCreateProvider:

    def test_ollama(self):
        provider = create_provider(LLMConfig(provider="ollama", model_name="llama3"))

        assert isinstance(provider, OllamaProvider)
        assert provider.model_name == "llama3"

    def test_openai(self):
        provider = create_provider(LLMConfig(api_key="sk-test", temperature=0.5))

        assert isinstance(provider, OpenAIProvider)
        assert provider.default_temperature == 0.5


class TestRetryPolicies:

    def test_llm_policy_loaded_from_yaml(self):
        policy = get_retry_policy("llm_analysis")

        assert policy.max_attempts == 3
        assert aiohttp.ClientError in policy.retry_on_exceptions

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            get_retry_policy("missing")

    def test_policy_from_dict_rejects_unknown_exception(self):
        with pytest.raises(ValueError):
            policy_from_dict({"retry_on_exceptions": ["NoSuchError"]})

    def test_exponential_backoff_is_capped(self):
        policy = RetryPolicy(base_delay=5.0, max_delay=12.0, jitter=False)

        assert [policy.backoff_ms(n) for n in (1, 2, 3)] == [5000, 10000, 12000]
        assert RetryPolicy(strategy=RetryStrategy.FIXED_DELAY, base_delay=2.0).backoff_seconds(5) == 2.0

    @pytest.mark.asyncio
    async def test_transient_errors_retried(self):
        policy = RetryPolicy(max_attempts=3, base_delay=0, jitter=False, metrics_enabled=False)
        calls = []

        @retry_with_policy("inline", policy=policy)
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("reset")
            return "ok"

        assert await flaky() == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_non_retryable_errors_raised_immediately(self):
        policy = RetryPolicy(max_attempts=3, base_delay=0, jitter=False, metrics_enabled=False)
        calls = []

        @retry_with_policy("inline", policy=policy)
        async def invalid():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await invalid()
        assert len(calls) == 1
