"""Pytest configuration and fixtures for ghost_core tests."""

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import yaml

from ghost_core.audit_trail import AuditLog
from ghost_core.budget_ledger import BudgetLedger
from ghost_core.config import CONFIG_PATH, GhostConfig, ProviderSpec
from ghost_core.escalation_governor import EscalationGovernor
from ghost_core.models import Tier
from ghost_core.providers import ProviderKind, StaticProvider, TierProviders
from ghost_core.rate_limiter import RateLimiter


class FakeClock:
    """Controllable UTC clock for datetime-based components."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 10, 17, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class FakeTime:
    """Controllable epoch-seconds clock for the rate limiter."""

    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class SlowProvider(StaticProvider):
    """Never answers within its timeout."""

    async def try_invoke(self, task):
        self.calls.append(task)
        await asyncio.sleep(10)


@pytest.fixture
def raw_config():
    with open(CONFIG_PATH, "r", encoding="utf-8") as f:
        return yaml.safe_load(f)


@pytest.fixture
def make_config(tmp_path, raw_config):
    """Factory: the shipped config with overrides and state under tmp_path."""
    def _make(**overrides):
        data = copy.deepcopy(raw_config)
        data.update(overrides)
        data["state_dir"] = str(tmp_path / "state")
        return GhostConfig.from_dict(data, env={})
    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def audit(config):
    return AuditLog(config.audit_log_path)


@pytest.fixture
def ledger(config, audit, clock):
    caps = {tier: tc.monthly_cap for tier, tc in config.tiers.items()}
    return BudgetLedger(config.budget_db_path, caps, audit=audit, clock=clock)


def static_spec(name, timeout_seconds=None):
    return ProviderSpec(name=name, kind="static", model=name, timeout_seconds=timeout_seconds)


@pytest.fixture
def make_providers():
    """Factory: StaticProvider per tier with optional scripted responses."""
    def _make(free=None, paid_low=None, paid_high=None, lateral=None, slow_free=False):
        if slow_free:
            free_provider = SlowProvider(static_spec("free-static", timeout_seconds=0.05), ProviderKind.FREE)
        else:
            free_provider = StaticProvider(static_spec("free-static"), ProviderKind.FREE, free)
        lateral_provider = None
        if lateral is not None:
            lateral_provider = StaticProvider(static_spec("lateral-static"), ProviderKind.LATERAL, lateral)
        return {
            Tier.FREE: TierProviders(primary=free_provider),
            Tier.PAID_LOW: TierProviders(
                primary=StaticProvider(static_spec("paid-low-static"), ProviderKind.PAID_LOW, paid_low),
                lateral=lateral_provider,
            ),
            Tier.PAID_HIGH: TierProviders(
                primary=StaticProvider(static_spec("paid-high-static"), ProviderKind.PAID_HIGH, paid_high),
            ),
        }
    return _make


@pytest.fixture
def make_governor(config, audit, ledger, clock):
    """Factory: governor over the given providers; surfaced runs land in `surfaced`."""
    def _make(providers, limiter=None, surfaced=None, audit_log=None, ledger_=None):
        log = audit_log or audit
        if limiter is None:
            limiter = RateLimiter(audit=log, rules=config.rate_limits)

        def on_surface(task, result):
            if surfaced is not None:
                surfaced.append(result)

        return EscalationGovernor(
            config, providers, ledger_ or ledger, limiter, log, on_surface=on_surface, clock=clock,
        )
    return _make
