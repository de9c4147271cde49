"""
LLM Service

Provides a unified interface for the language model providers used to
generate grounded answers:
- OpenAI API (GPT-4o, GPT-4o-mini, etc.)
- Anthropic API (Claude models)
- Local Ollama models

Provider SDK errors are classified into transient (timeouts, rate limits,
upstream 5xx) and permanent (credentials, malformed requests) failures.
"""

import asyncio
from typing import Dict, Any, List, Optional
from abc import ABC, abstractmethod
import structlog
from pydantic import BaseModel, Field
import httpx
import openai
from openai import AsyncOpenAI
import anthropic
from anthropic import AsyncAnthropic
import ollama

from knowledge_rag.config.settings import AISettings
from knowledge_rag.core.exceptions import (
    ConfigurationError,
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)
from knowledge_rag.core.metrics import record_ai_model_metrics

logger = structlog.get_logger(__name__)

_TRANSIENT_TRANSPORT_ERRORS = (
    asyncio.TimeoutError,
    ConnectionError,
    httpx.TimeoutException,
    httpx.TransportError,
    openai.APIConnectionError,
    anthropic.APIConnectionError,
)


def classify_provider_error(provider: str, operation: str, exc: Exception) -> ProviderError:
    """Map an SDK exception onto the provider error taxonomy.

    The SDK message is not propagated since it may echo request material.

    Args:
        provider: Provider name
        operation: Operation that failed (embed, generate, ...)
        exc: Original exception

    Returns:
        TransientProviderError or PermanentProviderError
    """
    if isinstance(exc, ProviderError):
        return exc

    if isinstance(exc, _TRANSIENT_TRANSPORT_ERRORS):
        return TransientProviderError(provider, operation, type(exc).__name__)

    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        message = f"{type(exc).__name__} (status {status})"
        if status == 429 or status >= 500:
            return TransientProviderError(provider, operation, message, details={"status": status})
        return PermanentProviderError(provider, operation, message, details={"status": status})

    return PermanentProviderError(provider, operation, type(exc).__name__)


class LLMMessage(BaseModel):
    """Message format for LLM interactions"""
    role: str  # 'system', 'user', 'assistant'
    content: str


class LLMRequest(BaseModel):
    """Request model for LLM calls"""
    messages: List[LLMMessage]
    model: str
    temperature: float = 0.3
    max_tokens: int = 500
    system_prompt: Optional[str] = None


class LLMResponse(BaseModel):
    """Response model for LLM calls"""
    content: str
    model: str
    tokens_used: int
    finish_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BaseLLMProvider(ABC):
    """Abstract base class for LLM providers"""

    name: str = "base"

    @abstractmethod
    async def generate(self, request: LLMRequest) -> LLMResponse:
        """Generate a response from the LLM"""

    async def close(self) -> None:
        """Release client resources."""


class OpenAIProvider(BaseLLMProvider):
    """OpenAI API provider"""

    name = "openai"

    def __init__(self, api_key: str, timeout: float = 30.0, client: Optional[AsyncOpenAI] = None):
        # Retries are owned by the caller
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    async def generate(self, request: LLMRequest) -> LLMResponse:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend({"role": msg.role, "content": msg.content} for msg in request.messages)

        try:
            response = await self.client.chat.completions.create(
                model=request.model,
                messages=messages,
                temperature=request.temperature,
                max_tokens=request.max_tokens
            )
        except Exception as e:
            raise classify_provider_error(self.name, "generate", e) from e

        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=response.model,
            tokens_used=response.usage.total_tokens if response.usage else 0,
            finish_reason=response.choices[0].finish_reason,
            metadata={"provider": self.name}
        )

    async def close(self) -> None:
        await self.client.close()


class AnthropicProvider(BaseLLMProvider):
    """Anthropic API provider"""

    name = "anthropic"

    def __init__(self, api_key: str, timeout: float = 30.0, client: Optional[AsyncAnthropic] = None):
        self.client = client or AsyncAnthropic(api_key=api_key, timeout=timeout, max_retries=0)

    async def generate(self, request: LLMRequest) -> LLMResponse:
        messages = [
            {"role": msg.role, "content": msg.content}
            for msg in request.messages
            if msg.role != "system"
        ]

        try:
            response = await self.client.messages.create(
                model=request.model,
                max_tokens=request.max_tokens,
                temperature=request.temperature,
                system=request.system_prompt or anthropic.NOT_GIVEN,
                messages=messages
            )
        except Exception as e:
            raise classify_provider_error(self.name, "generate", e) from e

        return LLMResponse(
            content="".join(block.text for block in response.content if block.type == "text"),
            model=response.model,
            tokens_used=response.usage.input_tokens + response.usage.output_tokens,
            finish_reason=response.stop_reason,
            metadata={"provider": self.name}
        )

    async def close(self) -> None:
        await self.client.close()


class OllamaProvider(BaseLLMProvider):
    """Local Ollama provider"""

    name = "ollama"

    def __init__(self, base_url: str, timeout: float = 30.0, client: Optional[ollama.AsyncClient] = None):
        self.client = client or ollama.AsyncClient(host=base_url, timeout=timeout)

    async def generate(self, request: LLMRequest) -> LLMResponse:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.extend({"role": msg.role, "content": msg.content} for msg in request.messages)

        try:
            response = await self.client.chat(
                model=request.model,
                messages=messages,
                options={
                    "temperature": request.temperature,
                    "num_predict": request.max_tokens
                }
            )
        except Exception as e:
            raise classify_provider_error(self.name, "generate", e) from e

        return LLMResponse(
            content=response["message"]["content"],
            model=response["model"],
            tokens_used=(response.get("eval_count") or 0) + (response.get("prompt_eval_count") or 0),
            finish_reason="stop",
            metadata={"provider": self.name}
        )


class LLMService:
    """
    Unified LLM service routing requests to the provider serving a model.

    Providers are built from settings once and closed with ``close()``.
    """

    def __init__(self, ai_settings: AISettings, providers: Optional[Dict[str, BaseLLMProvider]] = None):
        self.settings = ai_settings
        self.providers: Dict[str, BaseLLMProvider] = providers if providers is not None else {}
        if providers is None:
            self._initialize_providers()

    def _initialize_providers(self):
        """Initialize the configured LLM providers"""
        timeout = self.settings.request_timeout

        if self.settings.openai_api_key:
            self.providers["openai"] = OpenAIProvider(self.settings.openai_api_key.get_secret_value(), timeout)
            logger.info("OpenAI provider initialized")

        if self.settings.anthropic_api_key:
            self.providers["anthropic"] = AnthropicProvider(self.settings.anthropic_api_key.get_secret_value(), timeout)
            logger.info("Anthropic provider initialized")

        if self.settings.enable_ollama:
            self.providers["ollama"] = OllamaProvider(self.settings.ollama_base_url, timeout)
            logger.info("Ollama provider initialized", base_url=self.settings.ollama_base_url)

    def get_available_providers(self) -> List[str]:
        """Get list of available providers"""
        return list(self.providers.keys())

    @staticmethod
    def get_provider_for_model(model: str) -> str:
        """Get the provider serving a given model"""
        if model.startswith(("gpt-", "o1", "o3", "o4")):
            return "openai"
        if model.startswith("claude"):
            return "anthropic"
        return "ollama"

    async def generate(self, request: LLMRequest) -> LLMResponse:
        """Generate response using the appropriate provider"""
        provider_name = self.get_provider_for_model(request.model)
        provider = self.providers.get(provider_name)
        if not provider:
            raise ConfigurationError("llm_service", f"Provider {provider_name} not available for model {request.model}")

        logger.debug("Generating LLM response", provider=provider_name, model=request.model)

        response = await provider.generate(request)
        record_ai_model_metrics(provider_name, response.model, response.tokens_used)
        return response

    async def close(self) -> None:
        """Close all provider clients"""
        for name, provider in self.providers.items():
            try:
                await provider.close()
            except Exception as e:
                logger.warning("Error closing LLM provider", provider=name, error=str(e))
