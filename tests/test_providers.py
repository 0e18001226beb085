"""Unit tests for the provider adapters: SDK clients are mocked, no network."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from config.config_loader import ModelConfig
from copilot.providers.anthropic import AnthropicProvider
from copilot.providers.base import ProviderError, RetryingLanguageModel, model_for_tier
from copilot.providers.openai_provider import OpenAIProvider
from tests.conftest import MockLanguageModel


def _config(sdk: str, timeout_sec: int = 30, base_url: str | None = None) -> ModelConfig:
    return ModelConfig(
        name=sdk,
        sdk=sdk,
        api_key_env="TEST_PROVIDER_KEY",
        timeout_sec=timeout_sec,
        max_tokens=512,
        tiers={"fast": f"{sdk}-fast", "capable": f"{sdk}-capable"},
        base_url=base_url,
    )


@pytest.fixture(autouse=True)
def api_key(monkeypatch):
    monkeypatch.setenv("TEST_PROVIDER_KEY", "sk-test")


def test_model_for_tier():
    tiers = {"fast": "small", "capable": "large"}
    assert model_for_tier(tiers, "capable", "p") == "large"
    assert model_for_tier({"fast": "small"}, "capable", "p") == "small"
    with pytest.raises(ProviderError):
        model_for_tier({}, "fast", "p")


def test_missing_api_key_raises(monkeypatch):
    monkeypatch.delenv("TEST_PROVIDER_KEY")
    with pytest.raises(ProviderError, match="Missing API key"):
        OpenAIProvider(_config("openai"))


async def test_openai_sends_system_message_and_tier_model():
    provider = OpenAIProvider(_config("openai"))
    create = AsyncMock(return_value=SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content="On track."))],
        usage=SimpleNamespace(total_tokens=42),
    ))
    provider._client = MagicMock()
    provider._client.chat.completions.create = create

    reply = await provider.complete("You are the Analyst perspective.", "Status?", model_tier="capable")

    assert reply == "On track."
    kwargs = create.call_args.kwargs
    assert kwargs["model"] == "openai-capable"
    assert kwargs["max_tokens"] == 512
    assert kwargs["messages"][0] == {"role": "system", "content": "You are the Analyst perspective."}


async def test_openai_empty_response_raises():
    provider = OpenAIProvider(_config("openai"))
    provider._client = MagicMock()
    provider._client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(choices=[], usage=None))

    with pytest.raises(ProviderError, match="Empty response"):
        await provider.complete("sys", "hi")


async def test_openai_timeout_becomes_provider_error():
    provider = OpenAIProvider(_config("openai", timeout_sec=0))

    async def slow(**kwargs):
        await asyncio.sleep(1)

    provider._client = MagicMock()
    provider._client.chat.completions.create = slow

    with pytest.raises(ProviderError, match="timed out"):
        await provider.complete("sys", "hi")


async def test_anthropic_uses_system_parameter():
    provider = AnthropicProvider(_config("anthropic"))
    create = AsyncMock(return_value=SimpleNamespace(
        content=[SimpleNamespace(type="text", text="Two blockers.")],
        usage=SimpleNamespace(input_tokens=10, output_tokens=5),
    ))
    provider._client = MagicMock()
    provider._client.messages.create = create

    reply = await provider.complete("sys prompt", "Blockers?", max_tokens=100)

    assert reply == "Two blockers."
    kwargs = create.call_args.kwargs
    assert kwargs["system"] == "sys prompt"
    assert kwargs["max_tokens"] == 100
    assert kwargs["model"] == "anthropic-fast"


async def test_anthropic_api_failure_wrapped():
    provider = AnthropicProvider(_config("anthropic"))
    provider._client = MagicMock()
    provider._client.messages.create = AsyncMock(side_effect=RuntimeError("overloaded"))

    with pytest.raises(ProviderError, match="overloaded"):
        await provider.complete("sys", "hi")


async def test_retry_once_on_timeout():
    inner = MockLanguageModel()
    inner.complete.side_effect = [ProviderError("mock", "Request timed out after 30s"), "Recovered."]

    reply = await RetryingLanguageModel(inner).complete("sys", "hi", model_tier="capable")

    assert reply == "Recovered."
    assert inner.complete.await_count == 2
    assert inner.complete.call_args.kwargs == {"max_tokens": None, "model_tier": "capable"}


async def test_retry_gives_up_after_second_timeout():
    inner = MockLanguageModel()
    inner.complete.side_effect = ProviderError("mock", "Request timed out after 30s")

    with pytest.raises(ProviderError):
        await RetryingLanguageModel(inner).complete("sys", "hi")
    assert inner.complete.await_count == 2


async def test_no_retry_on_other_errors():
    inner = MockLanguageModel(provider_name="claude")
    inner.complete.side_effect = ProviderError("claude", "API call failed: 401")

    wrapped = RetryingLanguageModel(inner)
    with pytest.raises(ProviderError, match="401"):
        await wrapped.complete("sys", "hi")
    assert inner.complete.await_count == 1
    assert wrapped.name() == "claude"
