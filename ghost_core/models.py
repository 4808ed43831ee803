"""
Shared value types: roles, tiers, events and intents.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class Role(Enum):
    """Actor roles assigned by the identity collaborator."""
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    AGENT = "AGENT"
    MEMBER = "MEMBER"

    @classmethod
    def parse(cls, value) -> "Role":
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"Unknown role: {value!r}") from None


APPROVER_ROLES = frozenset({Role.OWNER, Role.ADMIN})


class Tier(Enum):
    """Cost tiers of the escalation ladder, cheapest first."""
    FREE = "free"
    PAID_LOW = "paid_low"
    PAID_HIGH = "paid_high"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    @classmethod
    def parse(cls, value) -> "Tier":
        if isinstance(value, Tier):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown tier: {value!r}") from None

    def next_up(self) -> Optional["Tier"]:
        idx = self.rank + 1
        return _TIER_ORDER[idx] if idx < len(_TIER_ORDER) else None


_TIER_ORDER = (Tier.FREE, Tier.PAID_LOW, Tier.PAID_HIGH)
TIER_LADDER: Tuple[Tier, ...] = _TIER_ORDER


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Event:
    """An inbound unit of work. Immutable once created."""
    id: str
    source: str
    actor_id: str
    actor_role: Role
    text: str
    timestamp: datetime = field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        text: str,
        actor_id: str,
        actor_role,
        source: str = "api",
        event_id: Optional[str] = None,
    ) -> "Event":
        return cls(
            id=event_id or f"evt_{uuid.uuid4().hex[:12]}",
            source=source,
            actor_id=actor_id,
            actor_role=Role.parse(actor_role),
            text=text or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role.value,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
        }


NEEDS_CLARIFICATION_LABEL = "unknown/needs-clarification"


@dataclass(frozen=True)
class Intent:
    """Classification result for an event."""
    label: str
    confidence: float
    target_handler: Optional[str]
    is_dangerous: bool = False
    requires_review: bool = False
    reasons: Tuple[str, ...] = ()
    needs_clarification: bool = False
    matched_pattern: Optional[str] = None

    @property
    def domain(self) -> str:
        return self.label.split("/", 1)[0]

    @property
    def action(self) -> str:
        parts = self.label.split("/", 1)
        return parts[1] if len(parts) > 1 else ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "confidence": self.confidence,
            "target_handler": self.target_handler,
            "is_dangerous": self.is_dangerous,
            "requires_review": self.requires_review,
            "reasons": list(self.reasons),
            "needs_clarification": self.needs_clarification,
            "matched_pattern": self.matched_pattern,
        }


@dataclass(frozen=True)
class Task:
    """A unit of model work handed to the Escalation Governor."""
    id: str
    prompt: str
    system_prompt: Optional[str] = None
    triggers: Tuple[str, ...] = ()
    override_tier: Optional[str] = None
    override_reason: Optional[str] = None
    override_role: Optional[Role] = None
    actor_id: Optional[str] = None
    event_id: Optional[str] = None
    max_tokens: int = 1024

    @classmethod
    def for_event(cls, event: Event, intent: Optional[Intent] = None, **kwargs) -> "Task":
        system_prompt = kwargs.pop("system_prompt", None)
        if system_prompt is None and intent is not None and intent.target_handler:
            system_prompt = f"You are {intent.target_handler}, handling a '{intent.label}' request."
        return cls(
            id=kwargs.pop("task_id", None) or f"task_{uuid.uuid4().hex[:12]}",
            prompt=event.text,
            system_prompt=system_prompt,
            actor_id=event.actor_id,
            event_id=event.id,
            **kwargs,
        )

    @property
    def messages(self):
        return [{"role": "user", "content": self.prompt}]
