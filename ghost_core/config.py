"""
Configuration loader for the orchestration policy.

Routing table, dangerous-action taxonomy, escalation triggers, tier budgets
and rate limits all live in config/ghost.yaml. The file is parsed once into
frozen dataclasses and treated as immutable for the life of the process.
"""

import fnmatch
import functools
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

import yaml
from dotenv import load_dotenv

from ghost_core.errors import ConfigError
from ghost_core.models import Tier

PROJECT_ROOT = Path(__file__).parent.parent
CONFIG_PATH = PROJECT_ROOT / "config" / "ghost.yaml"
DEFAULT_STATE_DIR = PROJECT_ROOT / ".ghost"

PROVIDER_KINDS = {"ollama", "anthropic", "openai", "static"}


@dataclass(frozen=True)
class ProviderSpec:
    """Connection details for one model backend."""
    name: str
    kind: str
    model: str
    base_url: str = ""
    api_key_env: Optional[str] = None
    timeout_seconds: Optional[float] = None
    input_price_per_million: float = 0.0
    output_price_per_million: float = 0.0


@dataclass(frozen=True)
class TierConfig:
    tier: Tier
    monthly_cap: Optional[float]
    estimated_cost: float
    provider: Optional[ProviderSpec] = None
    lateral: Optional[ProviderSpec] = None


@dataclass(frozen=True)
class RouteRule:
    pattern: str
    label: str
    handler: Optional[str] = None
    confidence: float = 0.9
    priority: int = 0

    @property
    def compiled(self) -> "re.Pattern[str]":
        return _compile(self.pattern)


@dataclass(frozen=True)
class TriggerRule:
    name: str
    tier: Tier
    reason: str


@dataclass(frozen=True)
class RateLimitRule:
    pattern: str
    window_seconds: float
    limit: int


@dataclass(frozen=True)
class ClassifierConfig:
    """Model fallback for text no routing rule matches."""
    tier: Tier = Tier.FREE
    escalate_tier: Optional[Tier] = None


@dataclass(frozen=True)
class AgentMapping:
    domain: str
    handler: str
    requires_approval: bool = False


@dataclass(frozen=True)
class GhostConfig:
    version: str
    confidence_threshold: float = 0.80
    approval_ttl_seconds: float = 24 * 3600
    approval_retention_seconds: float = 7 * 24 * 3600
    sweep_interval_seconds: float = 30.0
    provider_timeout_seconds: float = 60.0
    outbound_queue_size: int = 100
    state_dir: Path = DEFAULT_STATE_DIR
    tiers: Mapping[Tier, TierConfig] = field(default_factory=dict)
    rate_limits: Tuple[RateLimitRule, ...] = ()
    dangerous_actions: FrozenSet[str] = frozenset()
    escalation_triggers: Mapping[str, TriggerRule] = field(default_factory=dict)
    agents: Mapping[str, AgentMapping] = field(default_factory=dict)
    routes: Tuple[RouteRule, ...] = ()
    gated_operations: Mapping[str, str] = field(default_factory=dict)
    classifier: Optional[ClassifierConfig] = None

    @property
    def audit_log_path(self) -> Path:
        return self.state_dir / "run_log.md"

    @property
    def budget_db_path(self) -> Path:
        return self.state_dir / "budget.db"

    def is_dangerous(self, label: str) -> bool:
        """Static taxonomy lookup; supports `domain/*` wildcards."""
        return any(fnmatch.fnmatchcase(label, entry) for entry in self.dangerous_actions)

    def rate_limit_for(self, key: str) -> Optional[RateLimitRule]:
        for rule in self.rate_limits:
            if fnmatch.fnmatchcase(key, rule.pattern):
                return rule
        return None

    def agent_for_domain(self, domain: str) -> Optional[AgentMapping]:
        return self.agents.get(domain)

    def tier_config(self, tier: Tier) -> TierConfig:
        if tier not in self.tiers:
            raise ConfigError(f"No configuration for tier '{tier.value}'")
        return self.tiers[tier]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], env: Optional[Mapping[str, str]] = None) -> "GhostConfig":
        """Build and validate a config from a parsed YAML document."""
        source = env if env is not None else os.environ
        problems: List[str] = []
        data = dict(data or {})

        version = str(data.get("version") or "").strip()
        if not version:
            problems.append("missing 'version'")

        threshold = _as_float(
            source.get("GHOST_CONFIDENCE_THRESHOLD", data.get("confidence_threshold", 0.80)),
            "confidence_threshold", problems,
        )
        if threshold is not None and not 0.0 <= threshold <= 1.0:
            problems.append("confidence_threshold must be between 0 and 1")

        ttl = _as_float(
            source.get("GHOST_APPROVAL_TTL_SECONDS", data.get("approval_ttl_seconds", 24 * 3600)),
            "approval_ttl_seconds", problems,
        )
        if ttl is not None and ttl <= 0:
            problems.append("approval_ttl_seconds must be positive")

        sweep_interval = _as_float(data.get("sweep_interval_seconds", 30.0), "sweep_interval_seconds", problems)
        provider_timeout = _as_float(data.get("provider_timeout_seconds", 60.0), "provider_timeout_seconds", problems)
        queue_size = _as_int(data.get("outbound_queue_size", 100), "outbound_queue_size", problems)
        if queue_size is not None and queue_size < 1:
            problems.append("outbound_queue_size must be at least 1")
        retention = _as_float(data.get("approval_retention_seconds", 7 * 24 * 3600), "approval_retention_seconds", problems)
        if retention is not None and retention < 0:
            problems.append("approval_retention_seconds must not be negative")

        state_dir = Path(source.get("GHOST_STATE_DIR") or data.get("state_dir") or DEFAULT_STATE_DIR)
        if not state_dir.is_absolute():
            state_dir = PROJECT_ROOT / state_dir

        tiers = _parse_tiers(data.get("tiers") or {}, problems)
        triggers = _parse_triggers(data.get("escalation_triggers") or {}, problems)
        agents = _parse_agents(data.get("agents") or {}, problems)
        routes = _parse_routes(data.get("routes") or [], agents, problems)

        rate_limits = []
        for pattern, spec in (data.get("rate_limits") or {}).items():
            try:
                rate_limits.append(RateLimitRule(
                    pattern=str(pattern),
                    window_seconds=float(spec["window_seconds"]),
                    limit=int(spec["limit"]),
                ))
            except (KeyError, TypeError, ValueError):
                problems.append(f"rate_limits.{pattern} needs numeric window_seconds and limit")

        dangerous = data.get("dangerous_actions") or []
        if not isinstance(dangerous, list) or not dangerous:
            problems.append("dangerous_actions must be a non-empty list of labels")
            dangerous = []

        gated = {str(k): str(v) for k, v in (data.get("gated_operations") or {}).items()}
        classifier = _parse_classifier(data.get("classifier"), problems)

        if problems:
            raise ConfigError(problems)

        return cls(
            version=version,
            confidence_threshold=threshold,
            approval_ttl_seconds=ttl,
            approval_retention_seconds=retention,
            sweep_interval_seconds=sweep_interval,
            provider_timeout_seconds=provider_timeout,
            outbound_queue_size=queue_size,
            state_dir=state_dir,
            tiers=MappingProxyType(tiers),
            rate_limits=tuple(rate_limits),
            dangerous_actions=frozenset(str(d) for d in dangerous),
            escalation_triggers=MappingProxyType(triggers),
            agents=MappingProxyType(agents),
            routes=tuple(routes),
            gated_operations=MappingProxyType(gated),
            classifier=classifier,
        )


@functools.lru_cache(maxsize=None)
def _compile(pattern: str) -> "re.Pattern[str]":
    return re.compile(pattern, re.IGNORECASE)


def _as_float(value, name: str, problems: List[str]) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        problems.append(f"{name} must be a number, got {value!r}")
        return None


def _as_int(value, name: str, problems: List[str]) -> Optional[int]:
    if isinstance(value, bool):
        problems.append(f"{name} must be a whole number, got {value!r}")
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        problems.append(f"{name} must be a whole number, got {value!r}")
        return None
    if not number.is_integer():
        problems.append(f"{name} must be a whole number, got {value!r}")
        return None
    return int(number)


def _parse_provider(name: str, spec: Any, problems: List[str]) -> Optional[ProviderSpec]:
    if spec is None:
        return None
    if not isinstance(spec, dict):
        problems.append(f"provider for {name} must be a mapping")
        return None
    kind = str(spec.get("kind", "")).lower()
    if kind not in PROVIDER_KINDS:
        problems.append(f"provider for {name} has unknown kind {kind!r}")
        return None
    timeout = spec.get("timeout_seconds")
    if timeout is not None:
        timeout = _as_float(timeout, f"provider for {name}: timeout_seconds", problems)
    input_price = _as_float(spec.get("input_price_per_million", 0.0), f"provider for {name}: input_price_per_million", problems)
    output_price = _as_float(spec.get("output_price_per_million", 0.0), f"provider for {name}: output_price_per_million", problems)
    if input_price is None or output_price is None:
        return None
    return ProviderSpec(
        name=str(spec.get("name") or f"{kind}:{spec.get('model', '')}"),
        kind=kind,
        model=str(spec.get("model", "")),
        base_url=str(spec.get("base_url", "")),
        api_key_env=spec.get("api_key_env"),
        timeout_seconds=timeout,
        input_price_per_million=input_price,
        output_price_per_million=output_price,
    )


def _parse_tiers(raw: Dict[str, Any], problems: List[str]) -> Dict[Tier, TierConfig]:
    tiers: Dict[Tier, TierConfig] = {}
    for name, spec in raw.items():
        try:
            tier = Tier.parse(name)
        except ValueError as e:
            problems.append(str(e))
            continue
        spec = spec or {}
        cap = spec.get("monthly_cap")
        if cap is not None:
            cap = _as_float(cap, f"tiers.{name}.monthly_cap", problems)
        estimated_cost = _as_float(spec.get("estimated_cost", 0.0), f"tiers.{name}.estimated_cost", problems)
        if estimated_cost is None:
            estimated_cost = 0.0
        tiers[tier] = TierConfig(
            tier=tier,
            monthly_cap=cap,
            estimated_cost=estimated_cost,
            provider=_parse_provider(name, spec.get("provider"), problems),
            lateral=_parse_provider(f"{name} (lateral)", spec.get("lateral"), problems),
        )
    missing = [t.value for t in Tier if t not in tiers]
    if missing:
        problems.append(f"tiers missing: {', '.join(missing)}")
    return tiers


def _parse_triggers(raw: Dict[str, Any], problems: List[str]) -> Dict[str, TriggerRule]:
    triggers: Dict[str, TriggerRule] = {}
    for name, spec in raw.items():
        spec = spec or {}
        reason = str(spec.get("reason") or "").strip()
        if not reason:
            problems.append(f"escalation trigger '{name}' has no reason")
            continue
        try:
            tier = Tier.parse(spec.get("tier", "free"))
        except ValueError as e:
            problems.append(f"escalation trigger '{name}': {e}")
            continue
        triggers[str(name)] = TriggerRule(name=str(name), tier=tier, reason=reason)
    return triggers


def _parse_agents(raw: Dict[str, Any], problems: List[str]) -> Dict[str, AgentMapping]:
    agents: Dict[str, AgentMapping] = {}
    for domain, spec in raw.items():
        spec = spec or {}
        handler = spec.get("handler")
        if not handler:
            problems.append(f"agents.{domain} has no handler")
            continue
        agents[str(domain)] = AgentMapping(
            domain=str(domain),
            handler=str(handler),
            requires_approval=bool(spec.get("requires_approval", False)),
        )
    return agents


def _parse_routes(raw: List[Any], agents: Dict[str, AgentMapping], problems: List[str]) -> List[RouteRule]:
    routes: List[RouteRule] = []
    for i, spec in enumerate(raw):
        if not isinstance(spec, dict):
            problems.append(f"routes[{i}] must be a mapping")
            continue
        pattern = str(spec.get("pattern") or "")
        label = str(spec.get("label") or "")
        if not pattern or "/" not in label:
            problems.append(f"routes[{i}] needs a pattern and a domain/action label")
            continue
        try:
            _compile(pattern)
        except re.error as e:
            problems.append(f"routes[{i}] pattern {pattern!r} does not compile: {e}")
            continue
        confidence = _as_float(spec.get("confidence", 0.9), f"routes[{i}] confidence", problems)
        priority = _as_int(spec.get("priority", 0), f"routes[{i}] priority", problems)
        if confidence is None or priority is None:
            continue
        if not 0.0 <= confidence <= 1.0:
            problems.append(f"routes[{i}] confidence must be between 0 and 1")
            continue
        handler = spec.get("handler")
        if handler is None:
            mapping = agents.get(label.split("/", 1)[0])
            handler = mapping.handler if mapping else None
        routes.append(RouteRule(
            pattern=pattern,
            label=label,
            handler=handler,
            confidence=confidence,
            priority=priority,
        ))
    return routes


_cached_config: Optional[GhostConfig] = None


def load_config(path: Optional[Path] = None, force_reload: bool = False) -> GhostConfig:
    """
    Load and validate the orchestration config.

    Args:
        path: Explicit YAML path; defaults to GHOST_CONFIG_PATH or config/ghost.yaml
        force_reload: If True, bypass cache and reload from disk

    Returns:
        Frozen GhostConfig
    """
    global _cached_config

    if _cached_config is not None and not force_reload and path is None:
        return _cached_config

    load_dotenv(PROJECT_ROOT / ".env")
    config_path = Path(path or os.getenv("GHOST_CONFIG_PATH") or CONFIG_PATH)

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse {config_path}: {e}") from e

    config = GhostConfig.from_dict(data or {})
    if path is None:
        _cached_config = config
    return config


def _parse_classifier(raw: Any, problems: List[str]) -> Optional[ClassifierConfig]:
    if not raw:
        return None
    if not isinstance(raw, dict):
        problems.append("classifier must be a mapping")
        return None
    try:
        tier = Tier.parse(raw.get("tier", "free"))
        escalate = raw.get("escalate_tier")
        escalate_tier = Tier.parse(escalate) if escalate else None
    except ValueError as e:
        problems.append(f"classifier: {e}")
        return None
    if escalate_tier is not None and escalate_tier.rank <= tier.rank:
        problems.append("classifier.escalate_tier must be above classifier.tier")
        return None
    return ClassifierConfig(tier=tier, escalate_tier=escalate_tier)
