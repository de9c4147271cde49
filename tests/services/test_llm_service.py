"""Unit tests for the LLM service and provider error classification."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from knowledge_rag.config.settings import AISettings
from knowledge_rag.core.exceptions import ConfigurationError, PermanentProviderError, TransientProviderError
from knowledge_rag.services.llm_service import (
    LLMMessage,
    LLMRequest,
    LLMService,
    OpenAIProvider,
    classify_provider_error,
)


def _status_error(status):
    error = Exception("upstream said no")
    error.status_code = status
    return error


def _request(model="gpt-4o-mini"):
    return LLMRequest(
        messages=[LLMMessage(role="user", content="What is the flow rate?")],
        model=model,
        system_prompt="Context Information:\n[1] Pump\nFlow Rate: 300 L/min\n\nInstructions:",
    )


@pytest.mark.parametrize("status,expected", [
    (429, TransientProviderError),
    (500, TransientProviderError),
    (503, TransientProviderError),
    (400, PermanentProviderError),
    (401, PermanentProviderError),
    (404, PermanentProviderError),
])
def test_classify_by_status(status, expected):
    error = classify_provider_error("openai", "generate", _status_error(status))

    assert isinstance(error, expected)
    assert error.details["status"] == status
    assert "upstream said no" not in error.message


def test_classify_transport_errors_as_transient():
    assert isinstance(
        classify_provider_error("ollama", "generate", httpx.ConnectTimeout("timed out")),
        TransientProviderError,
    )
    assert isinstance(
        classify_provider_error("ollama", "generate", ConnectionError("refused")),
        TransientProviderError,
    )


def test_classify_unknown_error_as_permanent():
    assert isinstance(classify_provider_error("openai", "generate", KeyError("x")), PermanentProviderError)


def test_classify_passes_provider_errors_through():
    original = TransientProviderError("openai", "embed", "rate limited")
    assert classify_provider_error("openai", "embed", original) is original


@pytest.mark.parametrize("model,provider", [
    ("gpt-4o-mini", "openai"),
    ("o3-mini", "openai"),
    ("claude-3-5-haiku-latest", "anthropic"),
    ("llama3.1", "ollama"),
])
def test_provider_routing(model, provider):
    assert LLMService.get_provider_for_model(model) == provider


def test_no_providers_without_credentials():
    service = LLMService(AISettings(openai_api_key=None, anthropic_api_key=None, enable_ollama=False))
    assert service.get_available_providers() == []


async def test_missing_provider_raises_configuration_error():
    service = LLMService(AISettings(), providers={})

    with pytest.raises(ConfigurationError):
        await service.generate(_request())


async def test_openai_provider_sends_system_prompt():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
        model="gpt-4o-mini",
        choices=[SimpleNamespace(message=SimpleNamespace(content="300 L/min [1]"), finish_reason="stop")],
        usage=SimpleNamespace(total_tokens=57),
    ))
    service = LLMService(AISettings(), providers={"openai": OpenAIProvider("key", client=client)})

    response = await service.generate(_request())

    assert response.content == "300 L/min [1]"
    assert response.tokens_used == 57
    messages = client.chat.completions.create.await_args.kwargs["messages"]
    assert messages[0]["role"] == "system"
    assert messages[1] == {"role": "user", "content": "What is the flow rate?"}


async def test_openai_provider_classifies_failures():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=_status_error(401))
    provider = OpenAIProvider("key", client=client)

    with pytest.raises(PermanentProviderError):
        await provider.generate(_request())
