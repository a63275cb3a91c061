"""
LLM integration tools for whispr pipeline stages.

The pipeline treats the language model as an opaque analysis collaborator:
it sends an ``AnalysisRequest`` and receives raw text that the stage then
parses. Providers are interchangeable behind ``BaseLLMProvider``.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiohttp
import openai

from .logging import setup_logging
from .metrics import ExternalCallTimer, WhisprMetrics
from .retry_framework import retry_with_policy
from ..config.settings import LLMConfig


@dataclass
class LLMRequest:
    """Represents a request to an LLM."""
    prompt: str
    model: str
    temperature: float = 0.2
    max_tokens: Optional[int] = None
    system_prompt: Optional[str] = None
    json_mode: bool = True
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class LLMResponse:
    """Represents a response from an LLM."""
    content: str
    model: str
    usage: Dict[str, Any]
    metadata: Dict[str, Any]
    timestamp: datetime
    request_id: Optional[str] = None


class LLMError(Exception):
    """Custom exception for LLM-related errors."""

    def __init__(self, message: str, model: Optional[str] = None, error_code: Optional[str] = None):
        super().__init__(message)
        self.model = model
        self.error_code = error_code


class BaseLLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    Defines the interface that all LLM providers must implement.
    """

    provider_name = "base"

    def __init__(self, model_name: str, **kwargs):
        self.model_name = model_name
        self.logger = setup_logging(f"llm_{self.__class__.__name__.lower()}")

        self.default_temperature = kwargs.get('temperature', 0.2)
        self.default_max_tokens = kwargs.get('max_tokens', 2000)
        self.timeout = kwargs.get('timeout', 60)

        self.stats = {
            'requests_made': 0,
            'requests_successful': 0,
            'requests_failed': 0,
            'total_tokens_used': 0
        }

    @abstractmethod
    async def generate_async(self, request: LLMRequest) -> LLMResponse:
        """Generate response asynchronously."""

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the provider is available and configured."""

    async def close(self) -> None:
        """Release network resources held by the provider."""

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()


class OpenAIProvider(BaseLLMProvider):
    """
    OpenAI chat-completions provider.

    Works with any OpenAI-compatible endpoint through ``base_url``.
    """

    provider_name = "openai"

    def __init__(self, api_key: str, model_name: str = "gpt-4o-mini",
                 base_url: Optional[str] = None, **kwargs):
        super().__init__(model_name, **kwargs)
        self.api_key = api_key
        self.base_url = base_url
        self.max_retries = kwargs.get('max_retries', 2)
        self._client: Optional[openai.AsyncOpenAI] = None

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            self._client = openai.AsyncOpenAI(
                api_key=self.api_key or None,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=self.max_retries,
            )
        return self._client

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def generate_async(self, request: LLMRequest) -> LLMResponse:
        self.stats['requests_made'] += 1
        start_time = time.time()

        messages: List[Dict[str, str]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})

        kwargs: Dict[str, Any] = {
            "model": request.model or self.model_name,
            "messages": messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens or self.default_max_tokens,
        }
        if request.json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self._get_client().chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            self.stats['requests_failed'] += 1
            self.logger.error(f"OpenAI generation failed: {e}")
            raise LLMError(f"OpenAI generation failed: {e}", model=self.model_name,
                           error_code=type(e).__name__) from e

        content = response.choices[0].message.content if response.choices else ""
        usage = {}
        if response.usage is not None:
            usage = {
                'input_tokens': response.usage.prompt_tokens,
                'output_tokens': response.usage.completion_tokens,
                'total_tokens': response.usage.total_tokens
            }
            self.stats['total_tokens_used'] += usage['total_tokens']
        self.stats['requests_successful'] += 1

        return LLMResponse(
            content=content or "",
            model=self.model_name,
            usage=usage,
            metadata={
                'provider': self.provider_name,
                'response_time': time.time() - start_time,
                'finish_reason': response.choices[0].finish_reason if response.choices else None
            },
            timestamp=datetime.now(),
            request_id=request.metadata.get('request_id') if request.metadata else None
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()


class OllamaProvider(BaseLLMProvider):
    """Local models served by Ollama's ``/api/chat`` endpoint."""

    provider_name = "ollama"

    def __init__(self, base_url: str = "http://localhost:11434", model_name: str = "mistral", **kwargs):
        super().__init__(model_name, **kwargs)
        self.base_url = base_url.rstrip('/')
        self._session: Optional[aiohttp.ClientSession] = None

    def is_available(self) -> bool:
        return bool(self.base_url)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    @retry_with_policy('llm_analysis', service='ollama', operation='chat')
    async def _post_chat(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._get_session()
        async with session.post(f"{self.base_url}/api/chat", json=payload) as response:
            response.raise_for_status()
            return await response.json()

    async def generate_async(self, request: LLMRequest) -> LLMResponse:
        self.stats['requests_made'] += 1
        start_time = time.time()

        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        payload: Dict[str, Any] = {
            "model": request.model or self.model_name,
            "messages": messages,
            "stream": False,
            "options": {"temperature": request.temperature},
        }
        if request.json_mode:
            payload["format"] = "json"

        try:
            data = await self._post_chat(payload)
        except (aiohttp.ClientError, TimeoutError) as e:
            self.stats['requests_failed'] += 1
            self.logger.error(f"Ollama generation failed: {e}")
            raise LLMError(f"Ollama generation failed: {e}", model=self.model_name,
                           error_code=type(e).__name__) from e

        self.stats['requests_successful'] += 1
        usage = {
            'input_tokens': data.get('prompt_eval_count', 0),
            'output_tokens': data.get('eval_count', 0),
        }
        usage['total_tokens'] = usage['input_tokens'] + usage['output_tokens']
        self.stats['total_tokens_used'] += usage['total_tokens']

        return LLMResponse(
            content=(data.get('message') or {}).get('content', ""),
            model=self.model_name,
            usage=usage,
            metadata={'provider': self.provider_name, 'response_time': time.time() - start_time},
            timestamp=datetime.now(),
        )

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()


def create_provider(config: LLMConfig) -> BaseLLMProvider:
    """Build the provider named in the configuration."""
    common = dict(temperature=config.temperature, max_tokens=config.max_tokens,
                  timeout=config.timeout_seconds)
    if config.provider == "ollama":
        return OllamaProvider(base_url=config.ollama_base_url, model_name=config.model_name, **common)
    return OpenAIProvider(api_key=config.api_key, model_name=config.model_name,
                          base_url=config.base_url, **common)


@dataclass
class AnalysisRequest:
    """What a pipeline stage sends to the analysis collaborator."""
    system_instructions: str
    task_instructions: str
    serialized_inputs: str
    stage_id: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


class AnalysisClient(ABC):
    """The analysis collaborator contract: request in, raw text out."""

    @abstractmethod
    async def analyze(self, request: AnalysisRequest) -> str:
        """Return the raw response text; raise on transport failure."""


class LLMAnalysisClient(AnalysisClient):
    """Analysis collaborator backed by an LLM provider."""

    def __init__(self, provider: BaseLLMProvider, metrics: Optional[WhisprMetrics] = None,
                 temperature: Optional[float] = None, max_tokens: Optional[int] = None):
        self.provider = provider
        self.metrics = metrics
        self.temperature = provider.default_temperature if temperature is None else temperature
        self.max_tokens = max_tokens or provider.default_max_tokens

    async def analyze(self, request: AnalysisRequest) -> str:
        llm_request = LLMRequest(
            prompt=f"{request.task_instructions}\n\n{request.serialized_inputs}",
            model=self.provider.model_name,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            system_prompt=request.system_instructions,
            metadata={"stage_id": request.stage_id, **request.metadata},
        )
        if self.metrics is None:
            response = await self.provider.generate_async(llm_request)
        else:
            with ExternalCallTimer(self.metrics, self.provider.provider_name, request.stage_id or "analyze"):
                response = await self.provider.generate_async(llm_request)
        return response.content

    @property
    def model_name(self) -> str:
        return self.provider.model_name

    async def close(self) -> None:
        await self.provider.close()
