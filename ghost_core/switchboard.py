"""
Switchboard - classifies inbound events into routed intents.

Passes:
    0. Instant replies   (greetings/acks, no routing, no model)
    1. Routing table     (regex rules from config, versioned)
    2. Model classifier  (optional, only when no rule matches)

The dangerous-action override and the low-confidence override are applied
after classification, from the label alone; the actor's role never lowers
the bar. Anything left unmatched becomes a needs-clarification intent and is
sent back to the requester instead of being guessed.
"""

import inspect
import json
import logging
import random
import re
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Union

from ghost_core.audit_trail import AuditLevel, AuditLog, format_note
from ghost_core.config import GhostConfig, RouteRule
from ghost_core.errors import RateLimitExceeded
from ghost_core.models import NEEDS_CLARIFICATION_LABEL, Event, Intent, Task, Tier

logger = logging.getLogger("switchboard")

AGENT_NAME = "Switchboard"

REASON_LOW_CONFIDENCE = "low confidence"
REASON_DANGEROUS = "dangerous action"
REASON_DOMAIN_APPROVAL = "domain requires approval"

_INSTANT_MAX_LENGTH = 100

INSTANT_RULES: Sequence[Tuple["re.Pattern[str]", Tuple[str, ...]]] = (
    (re.compile(r"^(hi|hello|hey|howdy|hiya|yo|sup|what'?s up|greetings|good (morning|afternoon|evening)|morning|evening)[!?.\s]*$", re.I),
     ("Hey! What do you need?", "Hello! What can I help with?", "Hi! Ready when you are.")),
    (re.compile(r"^(thanks|thank you|thx|ty|cheers|appreciated|much appreciated)[!?.\s]*$", re.I),
     ("Anytime.", "You got it.", "Happy to help.")),
    (re.compile(r"^(ok|okay|k|got it|understood|sounds good|perfect|great|nice|cool|awesome|noted)[!?.\s]*$", re.I),
     ("Got it.", "Noted.", "Sounds good.")),
    (re.compile(r"^(ping|you there|are you there|you alive|you awake|test)[!?.\s]*$", re.I),
     ("Pong. I'm here.",)),
    (re.compile(r"^(who are you|what are you|what'?s your name|what is your name)[?!.\s]*$", re.I),
     ("I'm Ghost, your ops system. Give me a task or ask me anything.",)),
    (re.compile(r"^(what can you do|how does this work|what do you do|help)[?!.\s]*$", re.I),
     ("I can research, draft emails, manage Discord, analyze data, and more. Just tell me what you need.",)),
    (re.compile(r"^(bye|goodbye|see you|later|ttyl|peace)[!?.\s]*$", re.I),
     ("Later.", "See you.")),
)


def instant_reply(text: str, choose: Callable[[Sequence[str]], str] = random.choice) -> Optional[str]:
    """Canned reply for short greetings and acks, or None."""
    if not text:
        return None
    text = text.strip()
    if not text or len(text) > _INSTANT_MAX_LENGTH:
        return None
    for pattern, replies in INSTANT_RULES:
        if pattern.match(text):
            return choose(replies)
    return None


ClassifierResult = Optional[Tuple[str, float, str]]
Classifier = Callable[[Event], Union[ClassifierResult, Awaitable[ClassifierResult]]]


class ModelClassifier:
    """
    Fallback classifier run through the escalation governor, so its calls
    are rate limited, reserved against the tier budget and audited like any
    other model call.

    Asks the configured tier (normally the free local model) for a JSON
    object {"label": "domain/action", "confidence": 0-1, "reason": "..."}
    and discards anything that does not parse or names a domain outside the
    agent map. When that answer is missing or below `threshold`, the
    question is asked once more at `escalate_tier`.
    """

    def __init__(
        self,
        governor,
        domains: Sequence[str],
        tier: Tier = Tier.FREE,
        escalate_tier: Optional[Tier] = None,
        threshold: float = 0.80,
    ):
        self.governor = governor
        self.domains = list(domains)
        self.tier = tier
        self.escalate_tier = escalate_tier
        self.threshold = threshold

    def _prompt(self, event: Event) -> str:
        return (
            "Classify the request into one label of the form domain/action.\n"
            f"Domains: {', '.join(self.domains)}.\n"
            'Reply with JSON only: {"label": "...", "confidence": 0.0, "reason": "..."}\n\n'
            f"Request: {event.text}"
        )

    async def __call__(self, event: Event) -> ClassifierResult:
        result = await self._ask(event, self.tier)
        if self.escalate_tier is not None and (result is None or result[1] < self.threshold):
            logger.info(f"Classifier on {self.tier.value} was not sure about {event.id}; "
                        f"asking {self.escalate_tier.value}")
            better = await self._ask(event, self.escalate_tier, triggers=("unresolved_ambiguity",))
            if better is not None:
                result = better
        return result

    async def _ask(self, event: Event, tier: Tier, triggers: Tuple[str, ...] = ()) -> ClassifierResult:
        known = self.governor.config.escalation_triggers
        task = Task(
            id=f"classify_{event.id}_{tier.value}",
            prompt=self._prompt(event),
            event_id=event.id,
            max_tokens=200,
            triggers=tuple(t for t in triggers if t in known and known[t].tier.rank <= tier.rank),
        )
        try:
            run = await self.governor.run(task, candidate_tiers=[tier], surface=False)
        except RateLimitExceeded as e:
            logger.info(f"Classifier skipped for {event.id}: {e}")
            return None
        if not run.succeeded:
            logger.info(f"Classifier unavailable for {event.id}: {run.reason}")
            return None
        return self.parse(run.text, event.id)

    def parse(self, text: Optional[str], event_id: str = "") -> ClassifierResult:
        match = re.search(r"\{.*\}", text or "", re.S)
        if not match:
            return None
        try:
            data = json.loads(match.group(0))
            label = str(data["label"]).strip().lower()
            confidence = max(0.0, min(1.0, float(data.get("confidence", 0.0))))
        except (ValueError, KeyError, TypeError):
            logger.info(f"Unparseable classifier reply for {event_id}")
            return None
        if "/" not in label or label.split("/", 1)[0] not in self.domains:
            return None
        return label, confidence, str(data.get("reason") or "model classification")


class Switchboard:
    """Routing table + overrides. Stateless per call."""

    def __init__(self, config: GhostConfig, audit: AuditLog, classifier: Optional[Classifier] = None):
        self.config = config
        self.audit = audit
        self.classifier = classifier

    def instant_reply(self, event: Event) -> Optional[str]:
        reply = instant_reply(event.text)
        if reply is not None:
            self.audit.append(
                AuditLevel.INFO, agent=AGENT_NAME, action="instant_reply", role=event.actor_role,
                outcome="replied", note=format_note(event=event.id, actor=event.actor_id),
            )
        return reply

    def match(self, text: str) -> Optional[Tuple[RouteRule, "re.Match[str]"]]:
        """
        Best routing rule for `text`: highest priority, then longest matched
        text, then longest pattern. Earlier rules win exact ties.
        """
        best = None
        best_key = None
        for rule in self.config.routes:
            m = rule.compiled.search(text)
            if not m:
                continue
            key = (rule.priority, m.end() - m.start(), len(rule.pattern))
            if best_key is None or key > best_key:
                best, best_key = (rule, m), key
        return best

    def build_intent(
        self,
        label: str,
        confidence: float,
        handler: Optional[str],
        matched_pattern: Optional[str] = None,
    ) -> Intent:
        """Apply the review overrides to a classified label."""
        reasons: List[str] = []
        if confidence < self.config.confidence_threshold:
            reasons.append(REASON_LOW_CONFIDENCE)
        dangerous = self.config.is_dangerous(label)
        if dangerous:
            reasons.append(REASON_DANGEROUS)
        mapping = self.config.agent_for_domain(label.split("/", 1)[0])
        if mapping is not None and mapping.requires_approval:
            reasons.append(REASON_DOMAIN_APPROVAL)
        return Intent(
            label=label,
            confidence=confidence,
            target_handler=handler,
            is_dangerous=dangerous,
            requires_review=bool(reasons),
            reasons=tuple(reasons),
            matched_pattern=matched_pattern,
        )

    @staticmethod
    def clarification(reason: str) -> Intent:
        return Intent(
            label=NEEDS_CLARIFICATION_LABEL,
            confidence=0.0,
            target_handler=None,
            reasons=(reason,),
            needs_clarification=True,
        )

    async def classify(self, event: Event) -> Intent:
        text = (event.text or "").strip()
        source = "none"

        if not text:
            intent = self.clarification("empty message")
        else:
            best = self.match(text)
            if best is not None:
                rule, _ = best
                source = "rules"
                intent = self.build_intent(rule.label, rule.confidence, rule.handler, rule.pattern)
            else:
                intent = await self._classify_with_model(event)
                if not intent.needs_clarification:
                    source = "classifier"

            if not intent.needs_clarification and not intent.target_handler:
                intent = self.clarification(f"no handler for domain '{intent.domain}'")

        self._audit(event, intent, source)
        return intent

    async def _classify_with_model(self, event: Event) -> Intent:
        if self.classifier is None:
            return self.clarification("no routing rule matched")
        result = self.classifier(event)
        if inspect.isawaitable(result):
            result = await result
        if not result:
            return self.clarification("no routing rule matched")
        label, confidence, _reason = result
        mapping = self.config.agent_for_domain(label.split("/", 1)[0])
        return self.build_intent(label, float(confidence), mapping.handler if mapping else None)

    def _audit(self, event: Event, intent: Intent, source: str) -> None:
        if intent.needs_clarification:
            outcome = "needs_clarification"
        elif intent.requires_review:
            outcome = "review"
        else:
            outcome = "routed"
        self.audit.append(
            AuditLevel.INFO, agent=AGENT_NAME, action="route", role=event.actor_role, model=source,
            outcome=outcome,
            note=format_note(
                event=event.id, actor=event.actor_id, source=event.source, label=intent.label,
                confidence=f"{intent.confidence:.2f}", handler=intent.target_handler,
                reasons=list(intent.reasons) or None, config=self.config.version,
            ),
        )
        logger.info(
            f"{event.id} -> {intent.label} ({intent.confidence:.2f}) handler={intent.target_handler} {outcome}"
        )
