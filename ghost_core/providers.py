"""
Model Providers
===============

Closed set of provider variants behind one capability:

    result = await provider.try_invoke(task)
    if result.escalate:
        ...  # the Governor decides whether to retry, go lateral or climb

Variants:
- FREE:      local Ollama server (free-first default)
- PAID_LOW:  Anthropic, small model
- PAID_HIGH: Anthropic, large model
- LATERAL:   OpenAI, same-tier alternate when the primary is unreachable

try_invoke() never raises for transport or API failures; it reports them
as an escalation with a reason. `unavailable` separates "could not reach
the backend" from "the backend answered with an error".
"""

import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

import httpx

from ghost_core.config import GhostConfig, ProviderSpec
from ghost_core.errors import EscalationReasonRequired
from ghost_core.models import Task, Tier

logger = logging.getLogger("providers")


class ProviderKind(Enum):
    FREE = "free"
    PAID_LOW = "paid_low"
    PAID_HIGH = "paid_high"
    LATERAL = "lateral"


_KIND_FOR_TIER = {
    Tier.FREE: ProviderKind.FREE,
    Tier.PAID_LOW: ProviderKind.PAID_LOW,
    Tier.PAID_HIGH: ProviderKind.PAID_HIGH,
}


@dataclass(frozen=True)
class ProviderResult:
    """Outcome of one provider call. `reason` is mandatory when escalating."""
    result: Optional[str]
    escalate: bool = False
    reason: Optional[str] = None
    unavailable: bool = False
    cost: float = 0.0
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: float = 0.0

    def __post_init__(self):
        if self.escalate and not (self.reason and self.reason.strip()):
            raise EscalationReasonRequired("an escalating provider result must carry a reason")

    @classmethod
    def failed(cls, reason: str, model: str = "", unavailable: bool = False) -> "ProviderResult":
        return cls(result=None, escalate=True, reason=reason, unavailable=unavailable, model=model)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.result,
            "escalate": self.escalate,
            "reason": self.reason,
            "unavailable": self.unavailable,
            "cost": self.cost,
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "latency_ms": self.latency_ms,
        }


class Provider:
    """Base class; subclasses implement _invoke()."""

    def __init__(
        self,
        spec: ProviderSpec,
        kind: ProviderKind,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        env: Optional[Mapping[str, str]] = None,
    ):
        self.spec = spec
        self.kind = kind
        self._transport = transport
        self._env = env if env is not None else os.environ

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def model(self) -> str:
        return self.spec.model

    @property
    def timeout_seconds(self) -> float:
        return float(self.spec.timeout_seconds or 60.0)

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout if timeout is not None else self.timeout_seconds,
            transport=self._transport,
        )

    def _cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            (input_tokens * self.spec.input_price_per_million / 1_000_000) +
            (output_tokens * self.spec.output_price_per_million / 1_000_000)
        )

    def _api_key(self) -> Optional[str]:
        if not self.spec.api_key_env:
            return None
        return self._env.get(self.spec.api_key_env)

    async def try_invoke(self, task: Task) -> ProviderResult:
        try:
            return await self._invoke(task)
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            logger.warning(f"{self.name} unreachable: {e!r}")
            return ProviderResult.failed(f"{self.name} unreachable: {type(e).__name__}",
                                         model=self.model, unavailable=True)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            # Overload and throttling mean "try elsewhere", not "bad request".
            unavailable = status in (429, 502, 503, 504, 529)
            logger.warning(f"{self.name} returned HTTP {status}")
            return ProviderResult.failed(f"{self.name} HTTP {status}", model=self.model,
                                         unavailable=unavailable)
        except (httpx.HTTPError, ValueError, KeyError, IndexError) as e:
            logger.warning(f"{self.name} failed: {e}")
            return ProviderResult.failed(f"{self.name} failed: {e}", model=self.model)

    async def _invoke(self, task: Task) -> ProviderResult:
        raise NotImplementedError


class OllamaProvider(Provider):
    """Local Ollama REST API. Zero cost."""

    @property
    def base_url(self) -> str:
        return (self._env.get("OLLAMA_HOST") or self.spec.base_url or "http://localhost:11434").rstrip("/")

    @property
    def model(self) -> str:
        return self._env.get("OLLAMA_MODEL") or self.spec.model

    async def is_available(self) -> bool:
        try:
            async with self._client(timeout=3.0) as client:
                response = await client.get(f"{self.base_url}/api/tags")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def _invoke(self, task: Task) -> ProviderResult:
        if not await self.is_available():
            logger.warning("Ollama not reachable - escalation required")
            return ProviderResult.failed("Ollama not reachable", model=self.model, unavailable=True)

        messages = list(task.messages)
        if task.system_prompt:
            messages.insert(0, {"role": "system", "content": task.system_prompt})
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "options": {"num_ctx": 8192},
        }

        start_time = time.time()
        async with self._client() as client:
            response = await client.post(f"{self.base_url}/api/chat", json=payload)
            response.raise_for_status()
            data = response.json()
        latency_ms = (time.time() - start_time) * 1000

        content = (data.get("message") or {}).get("content", "")
        if not content:
            return ProviderResult.failed("Ollama returned an empty reply", model=self.model)
        return ProviderResult(
            result=content,
            model=self.model,
            input_tokens=data.get("prompt_eval_count", 0) or 0,
            output_tokens=data.get("eval_count", 0) or 0,
            latency_ms=latency_ms,
        )


class AnthropicProvider(Provider):
    """Anthropic Messages API."""

    async def _invoke(self, task: Task) -> ProviderResult:
        api_key = self._api_key()
        if not api_key:
            return ProviderResult.failed(f"{self.spec.api_key_env} not set", model=self.model, unavailable=True)

        payload = {
            "model": self.model,
            "max_tokens": task.max_tokens,
            "messages": task.messages,
        }
        if task.system_prompt:
            payload["system"] = task.system_prompt

        headers = {
            "x-api-key": api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }

        start_time = time.time()
        async with self._client() as client:
            response = await client.post(
                f"{self.spec.base_url.rstrip('/')}/messages",
                json=payload,
                headers=headers,
            )
            response.raise_for_status()
            data = response.json()
        latency_ms = (time.time() - start_time) * 1000

        content = ""
        if data.get("content"):
            content = data["content"][0].get("text", "")

        input_tokens = data.get("usage", {}).get("input_tokens", 0)
        output_tokens = data.get("usage", {}).get("output_tokens", 0)

        return ProviderResult(
            result=content,
            model=self.model,
            cost=self._cost(input_tokens, output_tokens),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=latency_ms,
        )


class OpenAIProvider(Provider):
    """OpenAI Chat Completions API."""

    async def _invoke(self, task: Task) -> ProviderResult:
        api_key = self._api_key()
        if not api_key:
            return ProviderResult.failed(f"{self.spec.api_key_env} not set", model=self.model, unavailable=True)

        messages = list(task.messages)
        if task.system_prompt:
            messages.insert(0, {"role": "system", "content": task.system_prompt})

        payload = {
            "model": self.model,
            "max_tokens": task.max_tokens,
            "messages": messages,
        }
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

        start_time = time.time()
        async with self._client() as client:
            response = await client.post(
                f"{self.spec.base_url.rstrip('/')}/chat/completions",
                json=payload,
                headers=headers,
            )
            response.raise_for_status()
            data = response.json()
        latency_ms = (time.time() - start_time) * 1000

        content = ""
        if data.get("choices"):
            content = data["choices"][0].get("message", {}).get("content", "")

        usage = data.get("usage", {})
        input_tokens = usage.get("prompt_tokens", 0)
        output_tokens = usage.get("completion_tokens", 0)

        return ProviderResult(
            result=content,
            model=self.model,
            cost=self._cost(input_tokens, output_tokens),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=latency_ms,
        )


ScriptedResponse = Union[ProviderResult, BaseException, Callable[[Task], ProviderResult]]


class StaticProvider(Provider):
    """
    Offline provider. Replays scripted responses in order (the last one
    repeats); without a script it echoes the prompt.
    """

    def __init__(
        self,
        spec: ProviderSpec,
        kind: ProviderKind,
        responses: Optional[Iterable[ScriptedResponse]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        env: Optional[Mapping[str, str]] = None,
    ):
        super().__init__(spec, kind, transport=transport, env=env)
        self.responses: List[ScriptedResponse] = list(responses or [])
        self.calls: List[Task] = []

    async def try_invoke(self, task: Task) -> ProviderResult:
        self.calls.append(task)
        if not self.responses:
            return ProviderResult(result=f"[{self.name}] {task.prompt}", model=self.model)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(task)
        return response


_PROVIDER_CLASSES = {
    "ollama": OllamaProvider,
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "static": StaticProvider,
}


@dataclass(frozen=True)
class TierProviders:
    primary: Optional[Provider]
    lateral: Optional[Provider] = None


def create_provider(
    spec: ProviderSpec,
    kind: ProviderKind,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Provider:
    return _PROVIDER_CLASSES[spec.kind](spec, kind, transport=transport, env=env)


def build_providers(
    config: GhostConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Dict[Tier, TierProviders]:
    """Instantiate the primary and lateral provider of every configured tier."""
    providers: Dict[Tier, TierProviders] = {}
    for tier, tier_config in config.tiers.items():
        primary = lateral = None
        if tier_config.provider is not None:
            primary = create_provider(tier_config.provider, _KIND_FOR_TIER[tier], transport, env)
        if tier_config.lateral is not None:
            lateral = create_provider(tier_config.lateral, ProviderKind.LATERAL, transport, env)
        providers[tier] = TierProviders(primary=primary, lateral=lateral)
    return providers
