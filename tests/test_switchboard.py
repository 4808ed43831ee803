"""Tests for Switchboard routing, overrides and instant replies."""

import pytest

from ghost_core.audit_trail import AuditLevel, AuditLog
from ghost_core.budget_ledger import BudgetLedger
from ghost_core.config import RateLimitRule
from ghost_core.models import NEEDS_CLARIFICATION_LABEL, Event, Role, Tier
from ghost_core.providers import ProviderResult
from ghost_core.rate_limiter import RateLimiter
from ghost_core.switchboard import (
    REASON_DANGEROUS, REASON_DOMAIN_APPROVAL, REASON_LOW_CONFIDENCE, ModelClassifier, Switchboard, instant_reply,
)


@pytest.fixture
def switchboard(config, audit):
    return Switchboard(config, audit)


def _event(text, role=Role.MEMBER, actor="user-1"):
    return Event.create(text, actor_id=actor, actor_role=role, source="discord")


@pytest.mark.asyncio
async def test_confident_safe_request_routes_directly(switchboard, audit):
    intent = await switchboard.classify(_event("can you refactor the auth module"))

    assert intent.label == "dev/refactor"
    assert intent.target_handler == "Forge"
    assert not intent.requires_review
    [entry] = audit.query(agent="Switchboard")
    assert entry.outcome == "routed"
    assert entry.model == "rules"
    assert entry.fields["label"] == "dev/refactor"
    assert entry.fields["config"] == "2026.10.1"


@pytest.mark.asyncio
@pytest.mark.parametrize("role", list(Role))
async def test_dangerous_action_needs_review_for_every_role(switchboard, role):
    intent = await switchboard.classify(_event("ban @spammer now", role=role))

    assert intent.label == "discord/ban"
    assert intent.is_dangerous
    assert intent.requires_review
    assert intent.reasons == (REASON_DANGEROUS,)


@pytest.mark.asyncio
async def test_low_confidence_needs_review(make_config, audit):
    config = make_config(routes=[{"pattern": r"\brefactor\b", "label": "dev/refactor", "confidence": 0.62}])
    intent = await Switchboard(config, audit).classify(_event("refactor the billing module"))

    assert intent.label == "dev/refactor"
    assert intent.requires_review
    assert not intent.is_dangerous
    assert intent.reasons == (REASON_LOW_CONFIDENCE,)
    assert audit.tail(1)[0].outcome == "review"


@pytest.mark.asyncio
async def test_low_confidence_and_dangerous_report_both_reasons(make_config, audit):
    config = make_config(routes=[{"pattern": r"\bwipe\b", "label": "data/delete", "confidence": 0.5}])
    intent = await Switchboard(config, audit).classify(_event("wipe the staging rows"))

    assert intent.reasons == (REASON_LOW_CONFIDENCE, REASON_DANGEROUS)
    assert audit.tail(1)[0].fields["reasons"] == "low confidence,dangerous action"


@pytest.mark.asyncio
async def test_approval_domain_adds_reason(switchboard):
    intent = await switchboard.classify(_event("draft an email template for onboarding"))

    assert intent.label == "email/campaign-draft"
    assert intent.target_handler == "Courier"
    assert intent.reasons == (REASON_DOMAIN_APPROVAL,)


@pytest.mark.asyncio
async def test_priority_beats_a_longer_generic_match(switchboard):
    intent = await switchboard.classify(_event("deploy to prod please"))

    assert intent.label == "sre/deploy-prod"
    assert intent.is_dangerous


@pytest.mark.asyncio
async def test_longer_match_wins_at_equal_priority(switchboard):
    intent = await switchboard.classify(_event("research a competitive analysis of rivals"))

    assert intent.label == "research/competitive"


@pytest.mark.asyncio
async def test_unmatched_text_needs_clarification(switchboard, audit):
    intent = await switchboard.classify(_event("flurb the wibble"))

    assert intent.needs_clarification
    assert intent.label == NEEDS_CLARIFICATION_LABEL
    assert intent.target_handler is None
    assert audit.tail(1)[0].outcome == "needs_clarification"


@pytest.mark.asyncio
async def test_empty_text_needs_clarification(switchboard):
    intent = await switchboard.classify(_event("   "))

    assert intent.needs_clarification
    assert intent.reasons == ("empty message",)


@pytest.mark.asyncio
async def test_classifier_is_used_only_when_no_rule_matches(config, audit):
    calls = []

    def classifier(event):
        calls.append(event.text)
        return "analytics/query", 0.91, "asks for numbers"

    switchboard = Switchboard(config, audit, classifier=classifier)

    routed = await switchboard.classify(_event("how big did the community get"))
    await switchboard.classify(_event("refactor the parser"))

    assert routed.label == "analytics/query"
    assert routed.target_handler == "Lens"
    assert calls == ["how big did the community get"]
    assert audit.query(agent="Switchboard")[0].model == "classifier"


@pytest.mark.asyncio
async def test_classifier_label_outside_agent_map_needs_clarification(config, audit):
    async def classifier(event):
        return "weather/forecast", 0.99, "guess"

    intent = await Switchboard(config, audit, classifier=classifier).classify(_event("will it rain"))

    assert intent.needs_clarification
    assert "weather" in intent.reasons[0]


def _classifier(make_governor, config, providers, **kwargs):
    governor = make_governor(providers, **{k: kwargs.pop(k) for k in ("limiter", "surfaced", "ledger_") if k in kwargs})
    return ModelClassifier(governor, domains=list(config.agents), **kwargs)


@pytest.mark.asyncio
async def test_model_classifier_parses_json_reply(config, make_governor, make_providers, audit):
    providers = make_providers(
        free=[ProviderResult(result='Sure! {"label": "Dev/Bug-Fix", "confidence": 1.4, "reason": "stack trace"}')],
    )
    classifier = _classifier(make_governor, config, providers)

    label, confidence, reason = await classifier(_event("my build explodes"))

    assert label == "dev/bug-fix"
    assert confidence == 1.0
    assert reason == "stack trace"
    [attempt] = audit.query(agent="EscalationGovernor", action="attempt")
    assert attempt.fields["task"].startswith("classify_")
    assert attempt.fields["tier"] == "free"


@pytest.mark.asyncio
async def test_model_classifier_rejects_garbage_and_unknown_domains(config, make_governor, make_providers):
    surfaced = []
    garbage = _classifier(make_governor, config, make_providers(free=[ProviderResult(result="no idea")]))
    unknown = _classifier(make_governor, config, make_providers(free=[ProviderResult(result='{"label": "cooking/recipe"}')]))
    down = _classifier(
        make_governor, config,
        make_providers(free=[ProviderResult.failed("Ollama not reachable", unavailable=True)]),
        surfaced=surfaced,
    )

    assert await garbage(_event("x")) is None
    assert await unknown(_event("x")) is None
    assert await down(_event("x")) is None
    assert surfaced == []


@pytest.mark.asyncio
async def test_unsure_local_answer_is_asked_one_tier_up(config, make_governor, make_providers, audit):
    providers = make_providers(
        free=[ProviderResult(result='{"label": "dev/bug-fix", "confidence": 0.4}')],
        paid_low=[ProviderResult(result='{"label": "analytics/query", "confidence": 0.93, "reason": "numbers"}')],
    )
    classifier = _classifier(make_governor, config, providers,
                             tier=Tier.FREE, escalate_tier=Tier.PAID_LOW, threshold=0.8)

    assert await classifier(_event("how big did the community get")) == ("analytics/query", 0.93, "numbers")

    [paid_call] = providers[Tier.PAID_LOW].primary.calls
    assert paid_call.id.endswith("_paid_low")
    [escalation] = audit.query(agent="EscalationGovernor", level=AuditLevel.ESCALATE)
    assert escalation.fields["reason"] == "unresolved ambiguity"


@pytest.mark.asyncio
async def test_classifier_respects_budget_and_rate_limits(config, make_governor, make_providers, tmp_path, audit, clock):
    broke = BudgetLedger(tmp_path / "broke.db", {Tier.FREE: None, Tier.PAID_LOW: 0.0, Tier.PAID_HIGH: 0.0},
                         audit=audit, clock=clock)
    providers = make_providers(free=[ProviderResult(result="no idea")])
    capped = _classifier(make_governor, config, providers, ledger_=broke,
                         tier=Tier.FREE, escalate_tier=Tier.PAID_LOW)

    assert await capped(_event("what is this")) is None
    assert providers[Tier.PAID_LOW].primary.calls == []
    assert audit.query(agent="EscalationGovernor", action="reserve")[-1].outcome == "budget_exhausted"

    throttled = _classifier(
        make_governor, config, make_providers(),
        limiter=RateLimiter(audit=audit, rules=[RateLimitRule(pattern="tier:*", window_seconds=60, limit=0)]),
    )
    assert await throttled(_event("what is this")) is None


@pytest.mark.parametrize("text", ["hi", "Hello!", "thanks", "ok", "ping", "who are you?", "bye"])
def test_instant_reply_covers_greetings_and_acks(text):
    assert instant_reply(text, choose=lambda replies: replies[0])


@pytest.mark.parametrize("text", ["", "hi, can you refactor the parser", "hello " * 30])
def test_instant_reply_ignores_real_requests(text):
    assert instant_reply(text) is None


def test_switchboard_instant_reply_is_audited(config, tmp_path):
    audit = AuditLog(tmp_path / "run_log.md")
    switchboard = Switchboard(config, audit)

    assert switchboard.instant_reply(_event("thanks!")) is not None
    assert switchboard.instant_reply(_event("ban @spammer")) is None
    assert [e.action for e in audit.entries()] == ["instant_reply"]
