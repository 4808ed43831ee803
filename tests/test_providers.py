"""Tests for model providers using httpx.MockTransport."""

import json

import httpx
import pytest

from ghost_core.config import ProviderSpec
from ghost_core.errors import EscalationReasonRequired
from ghost_core.models import Task, Tier
from ghost_core.providers import (
    AnthropicProvider, OllamaProvider, OpenAIProvider, ProviderKind, ProviderResult, build_providers,
)

TASK = Task(id="task_1", prompt="summarise the incident", system_prompt="You are Helm.")

OLLAMA = ProviderSpec(name="ollama-qwen3", kind="ollama", model="qwen3:8b", base_url="http://ollama.local:11434")
ANTHROPIC = ProviderSpec(
    name="claude-haiku", kind="anthropic", model="claude-haiku-4-5-20251001",
    base_url="https://api.anthropic.com/v1", api_key_env="ANTHROPIC_API_KEY",
    input_price_per_million=1.0, output_price_per_million=5.0,
)
OPENAI = ProviderSpec(
    name="gpt-4o-mini", kind="openai", model="gpt-4o-mini", base_url="https://api.openai.com/v1",
    api_key_env="OPENAI_API_KEY", input_price_per_million=0.15, output_price_per_million=0.60,
)


def test_escalating_result_requires_reason():
    with pytest.raises(EscalationReasonRequired):
        ProviderResult(result=None, escalate=True)
    with pytest.raises(EscalationReasonRequired):
        ProviderResult(result=None, escalate=True, reason="   ")

    assert ProviderResult.failed("timeout", unavailable=True).escalate


@pytest.mark.asyncio
async def test_ollama_chat_success():
    seen = {}

    def handler(request):
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "qwen3:8b"}]})
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"message": {"content": "All green."}, "eval_count": 12})

    provider = OllamaProvider(OLLAMA, ProviderKind.FREE, transport=httpx.MockTransport(handler), env={})
    result = await provider.try_invoke(TASK)

    assert not result.escalate
    assert result.result == "All green."
    assert result.cost == 0.0
    assert seen["body"]["stream"] is False
    assert seen["body"]["messages"][0] == {"role": "system", "content": "You are Helm."}


@pytest.mark.asyncio
async def test_ollama_unreachable_requests_escalation():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    provider = OllamaProvider(OLLAMA, ProviderKind.FREE, transport=httpx.MockTransport(handler), env={})
    result = await provider.try_invoke(TASK)

    assert result.escalate
    assert result.unavailable
    assert result.reason == "Ollama not reachable"


@pytest.mark.asyncio
async def test_ollama_host_and_model_follow_env():
    def handler(request):
        assert request.url.host == "gpu-box"
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": []})
        assert json.loads(request.content)["model"] == "llama3:70b"
        return httpx.Response(200, json={"message": {"content": "ok"}})

    provider = OllamaProvider(
        OLLAMA, ProviderKind.FREE, transport=httpx.MockTransport(handler),
        env={"OLLAMA_HOST": "http://gpu-box:11434", "OLLAMA_MODEL": "llama3:70b"},
    )

    assert (await provider.try_invoke(TASK)).result == "ok"


@pytest.mark.asyncio
async def test_anthropic_success_computes_cost():
    def handler(request):
        assert request.headers["x-api-key"] == "test-key"
        body = json.loads(request.content)
        assert body["system"] == "You are Helm."
        return httpx.Response(200, json={
            "content": [{"type": "text", "text": "Root cause: disk full."}],
            "usage": {"input_tokens": 1000, "output_tokens": 2000},
        })

    provider = AnthropicProvider(ANTHROPIC, ProviderKind.PAID_LOW, transport=httpx.MockTransport(handler),
                                 env={"ANTHROPIC_API_KEY": "test-key"})
    result = await provider.try_invoke(TASK)

    assert result.result == "Root cause: disk full."
    assert result.cost == pytest.approx(0.011)


@pytest.mark.asyncio
async def test_anthropic_without_key_is_unavailable():
    provider = AnthropicProvider(ANTHROPIC, ProviderKind.PAID_LOW, env={})
    result = await provider.try_invoke(TASK)

    assert result.escalate and result.unavailable
    assert "ANTHROPIC_API_KEY" in result.reason


@pytest.mark.asyncio
@pytest.mark.parametrize("status,unavailable", [(529, True), (503, True), (400, False), (401, False)])
async def test_http_errors_are_classified(status, unavailable):
    def handler(request):
        return httpx.Response(status, json={"error": {"message": "nope"}})

    provider = AnthropicProvider(ANTHROPIC, ProviderKind.PAID_HIGH, transport=httpx.MockTransport(handler),
                                 env={"ANTHROPIC_API_KEY": "test-key"})
    result = await provider.try_invoke(TASK)

    assert result.escalate
    assert result.unavailable is unavailable
    assert str(status) in result.reason


@pytest.mark.asyncio
async def test_openai_lateral_success():
    def handler(request):
        assert request.headers["authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["messages"][0]["role"] == "system"
        return httpx.Response(200, json={
            "choices": [{"message": {"content": "Drafted."}}],
            "usage": {"prompt_tokens": 1_000_000, "completion_tokens": 0},
        })

    provider = OpenAIProvider(OPENAI, ProviderKind.LATERAL, transport=httpx.MockTransport(handler),
                              env={"OPENAI_API_KEY": "sk-test"})
    result = await provider.try_invoke(TASK)

    assert result.result == "Drafted."
    assert result.cost == pytest.approx(0.15)


def test_build_providers_from_config(config):
    providers = build_providers(config, env={})

    assert isinstance(providers[Tier.FREE].primary, OllamaProvider)
    assert providers[Tier.FREE].primary.kind == ProviderKind.FREE
    assert isinstance(providers[Tier.PAID_LOW].primary, AnthropicProvider)
    assert isinstance(providers[Tier.PAID_LOW].lateral, OpenAIProvider)
    assert providers[Tier.PAID_LOW].lateral.kind == ProviderKind.LATERAL
    assert providers[Tier.PAID_HIGH].lateral is None
