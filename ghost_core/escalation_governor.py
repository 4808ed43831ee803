"""
Escalation Governor - chooses the cheapest permitted tier for a task.

Ladder: free -> paid_low -> paid_high.

For every attempt, in order:
1. rate-limit admission for "tier:<name>" (denial raised to the caller,
   nothing reserved)
2. budget reservation of the tier's estimated cost (exhaustion surfaced,
   never downgraded)
3. provider call bounded by a timeout
4. commit the reservation on success, release it on failure

A failed tier is retried once (through the lateral alternate when the
primary could not be reached). Two consecutive failures climb one tier. A
failure at the top of the ladder is surfaced, never retried.

Every attempt and every escalation is written to the audit log before the
governor moves on, so per-task attempt history can be replayed.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ghost_core.audit_trail import (
    AuditEntry, AuditLevel, AuditLog, format_note, format_timestamp, parse_timestamp,
)
from ghost_core.budget_ledger import BudgetLedger
from ghost_core.config import GhostConfig
from ghost_core.errors import BudgetExhausted, EscalationReasonRequired, Unauthorized
from ghost_core.models import APPROVER_ROLES, TIER_LADDER, Role, Task, Tier, utc_now
from ghost_core.providers import Provider, ProviderResult, TierProviders
from ghost_core.rate_limiter import RateLimiter

logger = logging.getLogger("escalation_governor")

AGENT_NAME = "EscalationGovernor"
CLIMB_REASON = "two consecutive failures"
FREE_FIRST_REASON = "free-first default"

OUTCOME_SUCCESS = "success"
OUTCOME_UNAVAILABLE = "provider_unavailable"
OUTCOME_ERROR = "provider_error"
OUTCOME_BUDGET_EXHAUSTED = "budget_exhausted"
OUTCOME_LADDER_EXHAUSTED = "ladder_exhausted"


@dataclass(frozen=True)
class EscalationAttempt:
    task_id: str
    tier: Tier
    provider: str
    trigger_reason: str
    started_at: datetime
    outcome: str
    cost: float = 0.0
    detail: str = ""

    @property
    def failed(self) -> bool:
        return self.outcome != OUTCOME_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "tier": self.tier.value,
            "provider": self.provider,
            "trigger_reason": self.trigger_reason,
            "started_at": format_timestamp(self.started_at),
            "outcome": self.outcome,
            "cost": self.cost,
            "detail": self.detail,
        }


@dataclass
class RunResult:
    task_id: str
    outcome: str
    tier_used: Optional[Tier]
    attempts: List[EscalationAttempt] = field(default_factory=list)
    result: Optional[ProviderResult] = None
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome == OUTCOME_SUCCESS

    @property
    def text(self) -> Optional[str]:
        return self.result.result if self.result else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "outcome": self.outcome,
            "tier_used": self.tier_used.value if self.tier_used else None,
            "attempts": [a.to_dict() for a in self.attempts],
            "result": self.result.to_dict() if self.result else None,
            "reason": self.reason,
        }


SurfaceCallback = Callable[[Task, RunResult], Any]


class EscalationGovernor:
    """Stateless per call; history lives in the ledger, limiter and audit log."""

    def __init__(
        self,
        config: GhostConfig,
        providers: Mapping[Tier, TierProviders],
        ledger: BudgetLedger,
        limiter: RateLimiter,
        audit: AuditLog,
        on_surface: Optional[SurfaceCallback] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.providers = dict(providers)
        self.ledger = ledger
        self.limiter = limiter
        self.audit = audit
        self.on_surface = on_surface
        self._clock = clock

    # ------------------------------------------------------------------
    # Tier selection
    # ------------------------------------------------------------------

    def start_tier(self, task: Task) -> Tuple[Tier, str]:
        """Minimum tier implied by the task's triggers and any override."""
        tier, reason = Tier.FREE, FREE_FIRST_REASON

        for name in task.triggers:
            rule = self.config.escalation_triggers.get(name)
            if rule is None:
                raise ValueError(f"Unknown escalation trigger: {name!r}")
            if rule.tier.rank > tier.rank or reason == FREE_FIRST_REASON:
                tier, reason = rule.tier, rule.reason

        if task.override_tier is not None:
            role = Role.parse(task.override_role) if task.override_role else None
            if role not in APPROVER_ROLES:
                raise Unauthorized(role.value if role else "none", "override the escalation tier")
            if not (task.override_reason and task.override_reason.strip()):
                raise EscalationReasonRequired("an explicit tier override needs a reason")
            override = Tier.parse(task.override_tier)
            if override.rank >= tier.rank:
                tier, reason = override, f"explicit override: {task.override_reason.strip()}"

        return tier, reason

    def _plan(self, start: Tier, candidate_tiers: Optional[Sequence[Tier]]) -> List[Tier]:
        if candidate_tiers is None:
            return [t for t in TIER_LADDER if t.rank >= start.rank]
        tiers = [Tier.parse(t) for t in candidate_tiers]
        for prev, nxt in zip(tiers, tiers[1:]):
            if nxt.rank < prev.rank:
                raise ValueError("candidate tiers must be ordered cheapest first")
        tiers = [t for t in tiers if t.rank >= start.rank]
        if not tiers:
            raise ValueError(f"no candidate tier at or above {start.value}")
        return tiers

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(
        self,
        task: Task,
        candidate_tiers: Optional[Sequence[Tier]] = None,
        surface: bool = True,
    ) -> RunResult:
        """
        Run `task` up the ladder. With `surface=False` budget and ladder
        exhaustion are still audited and returned but not passed to on_surface.
        """
        start, start_reason = self.start_tier(task)
        tiers = self._plan(start, candidate_tiers)
        attempts: List[EscalationAttempt] = []

        if tiers[0] != start:
            start_reason = f"candidate tier {tiers[0].value}"
        if tiers[0] != Tier.FREE:
            self._audit_escalation(task, None, tiers[0], start_reason)

        for index, tier in enumerate(tiers):
            if index > 0:
                self._audit_escalation(task, tiers[index - 1], tier, CLIMB_REASON)
                reason = CLIMB_REASON
            else:
                reason = start_reason

            tier_providers = self.providers.get(tier) or TierProviders(primary=None)
            primary = tier_providers.primary or tier_providers.lateral
            if primary is None:
                attempts.append(self._record(task, tier, "none", reason, self._clock(), OUTCOME_UNAVAILABLE,
                                             detail="no provider configured"))
                continue

            provider = primary
            for retry in range(2):
                if retry == 1:
                    last = attempts[-1]
                    lateral = tier_providers.lateral
                    if last.outcome == OUTCOME_UNAVAILABLE and lateral is not None and lateral is not provider:
                        reason = f"lateral alternate: {provider.name} unavailable"
                        self._audit_escalation(task, tier, tier, reason, provider=lateral.name)
                        provider = lateral
                    else:
                        reason = f"retry after {last.outcome}"

                outcome = await self._attempt(task, tier, provider, reason, attempts, surface)
                if isinstance(outcome, RunResult):
                    return outcome

        result = RunResult(
            task_id=task.id,
            outcome=OUTCOME_LADDER_EXHAUSTED,
            tier_used=tiers[-1],
            attempts=attempts,
            reason=f"all tiers failed (last: {attempts[-1].detail or attempts[-1].outcome})",
        )
        self.audit.append(
            AuditLevel.ERROR, agent=AGENT_NAME, action="run", role=task.override_role or "system",
            model=tiers[-1].value, outcome=OUTCOME_LADDER_EXHAUSTED, escalated=len(tiers) > 1,
            note=format_note(task=task.id, event=task.event_id, reason=result.reason),
        )
        logger.error(f"Task {task.id}: escalation ladder exhausted")
        if surface:
            await self._surface(task, result)
        return result

    async def _attempt(
        self,
        task: Task,
        tier: Tier,
        provider: Provider,
        reason: str,
        attempts: List[EscalationAttempt],
        surface: bool = True,
    ) -> Optional[RunResult]:
        """One admitted, reserved, bounded provider call. Returns a RunResult when the run ends."""
        self.limiter.check(f"tier:{tier.value}")

        tier_config = self.config.tier_config(tier)
        try:
            reservation = await self.ledger.reserve(tier, tier_config.estimated_cost, task.id)
        except BudgetExhausted as e:
            self.audit.append(
                AuditLevel.BLOCK, agent=AGENT_NAME, action="reserve", role=task.override_role or "system",
                model=tier.value, outcome=OUTCOME_BUDGET_EXHAUSTED,
                note=format_note(task=task.id, event=task.event_id, month=e.month_key,
                                 requested=f"{e.requested:.4f}", remaining=f"{e.remaining:.4f}"),
            )
            result = RunResult(
                task_id=task.id,
                outcome=OUTCOME_BUDGET_EXHAUSTED,
                tier_used=tier,
                attempts=list(attempts),
                reason=str(e),
            )
            if surface:
                await self._surface(task, result)
            return result

        started_at = self._clock()
        timeout = float(provider.spec.timeout_seconds or self.config.provider_timeout_seconds)
        response: Optional[ProviderResult] = None
        try:
            response = await asyncio.wait_for(provider.try_invoke(task), timeout=timeout)
        except asyncio.TimeoutError:
            outcome, detail = OUTCOME_UNAVAILABLE, f"timed out after {timeout:g}s"
        except Exception as e:
            logger.exception(f"Provider {provider.name} raised during task {task.id}")
            outcome, detail = OUTCOME_ERROR, f"{type(e).__name__}: {e}"
        else:
            if response.escalate:
                outcome = OUTCOME_UNAVAILABLE if response.unavailable else OUTCOME_ERROR
                detail = response.reason or ""
            else:
                outcome, detail = OUTCOME_SUCCESS, ""

        if outcome == OUTCOME_SUCCESS:
            charged = await self.ledger.commit(reservation, response.cost if response.cost else None)
        else:
            await self.ledger.release(reservation)
            charged = 0.0

        attempt = self._record(task, tier, provider.name, reason, started_at, outcome, charged, detail)
        attempts.append(attempt)

        if outcome == OUTCOME_SUCCESS:
            return RunResult(
                task_id=task.id,
                outcome=OUTCOME_SUCCESS,
                tier_used=tier,
                attempts=list(attempts),
                result=response,
                reason=reason,
            )
        return None

    def _record(
        self,
        task: Task,
        tier: Tier,
        provider: str,
        reason: str,
        started_at: datetime,
        outcome: str,
        cost: float = 0.0,
        detail: str = "",
    ) -> EscalationAttempt:
        # Millisecond precision, matching the log, so replayed attempts compare equal.
        started_at = started_at.replace(microsecond=started_at.microsecond // 1000 * 1000)
        attempt = EscalationAttempt(
            task_id=task.id,
            tier=tier,
            provider=provider,
            trigger_reason=reason,
            started_at=started_at,
            outcome=outcome,
            cost=round(cost, 6),
            detail=detail,
        )
        level = AuditLevel.INFO if outcome == OUTCOME_SUCCESS else AuditLevel.WARN
        self.audit.append(
            level, agent=AGENT_NAME, action="attempt", role=task.override_role or "system",
            model=f"{tier.value}/{provider}", outcome=outcome, escalated=tier != Tier.FREE,
            note=format_note(task=task.id, event=task.event_id, tier=tier.value, provider=provider,
                             reason=reason, started=started_at, cost=f"{cost:.6f}", detail=detail or None),
        )
        if attempt.failed:
            logger.warning(f"Task {task.id}: {tier.value}/{provider} {outcome} ({detail})")
        return attempt

    def _audit_escalation(
        self,
        task: Task,
        from_tier: Optional[Tier],
        to_tier: Tier,
        reason: str,
        provider: Optional[str] = None,
    ) -> AuditEntry:
        """Written before the escalated call; a write failure aborts the run."""
        if not reason:
            raise EscalationReasonRequired("every escalation needs a reason")
        logger.info(f"Task {task.id}: escalating to {to_tier.value} ({reason})")
        return self.audit.append(
            AuditLevel.ESCALATE, agent=AGENT_NAME, action="escalate", role=task.override_role or "system",
            model=to_tier.value if provider is None else f"{to_tier.value}/{provider}",
            outcome="escalated", escalated=True,
            note=format_note(task=task.id, event=task.event_id,
                             from_tier=from_tier.value if from_tier else None,
                             to_tier=to_tier.value, reason=reason),
        )

    async def _surface(self, task: Task, result: RunResult) -> None:
        if self.on_surface is None:
            return
        outcome = self.on_surface(task, result)
        if inspect.isawaitable(outcome):
            await outcome

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    @staticmethod
    def replay(entries: Iterable[AuditEntry]) -> Dict[str, List[EscalationAttempt]]:
        """Rebuild per-task attempt sequences from audit entries."""
        history: Dict[str, List[EscalationAttempt]] = {}
        for entry in entries:
            if entry.agent != AGENT_NAME or entry.action != "attempt":
                continue
            fields = entry.fields
            task_id = fields.get("task")
            if not task_id:
                continue
            started = fields.get("started")
            history.setdefault(task_id, []).append(EscalationAttempt(
                task_id=task_id,
                tier=Tier.parse(fields["tier"]),
                provider=fields.get("provider", "none"),
                trigger_reason=fields.get("reason", ""),
                started_at=parse_timestamp(started) if started else entry.timestamp,
                outcome=entry.outcome,
                cost=float(fields.get("cost", 0.0)),
                detail=fields.get("detail", ""),
            ))
        return history
