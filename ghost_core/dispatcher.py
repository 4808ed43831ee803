"""
Dispatcher - wires Switchboard, Warden and Escalation Governor together.

    event -> instant reply?           -> reply, done
          -> Switchboard.classify     -> needs clarification -> ask requester
          -> requires review          -> Warden.submit, DM the owner
          -> otherwise / once approved -> handler (ModelHandler or GatedActionHandler)

Replies and owner notifications go out through an OutboundQueue, which
admits each send through the rate limiter and holds back whatever was
denied until its window closes. An approved request whose model call is
rate limited is held in DeferredExecutions and re-run by the sweep.
"""

import asyncio
import collections
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional

from ghost_core.audit_trail import AuditLevel, AuditLog, format_note
from ghost_core.budget_ledger import BudgetLedger
from ghost_core.config import GhostConfig, load_config
from ghost_core.errors import (
    AlreadyResolved, ApprovalNotFound, AuditWriteError, QueueFull, RateLimitExceeded, Unauthorized,
)
from ghost_core.escalation_governor import EscalationGovernor, RunResult
from ghost_core.models import Event, Intent, Task, Tier, utc_now
from ghost_core.providers import TierProviders, build_providers
from ghost_core.rate_limiter import RateLimiter
from ghost_core.switchboard import Classifier, ModelClassifier, Switchboard
from ghost_core.warden import ApprovalRequest, ApprovalState, Warden

logger = logging.getLogger("dispatcher")

AGENT_NAME = "Dispatcher"

AGENT_NAMES = ("Warden", "Scribe", "Scout", "Sentinel", "Crow", "Forge", "Lens", "Courier", "Archivist", "Helm")


# =============================================================================
# CONNECTOR
# =============================================================================

class Connector:
    """Outbound side of a chat/ops integration."""

    async def send_message(self, target_id: str, content: str) -> None:
        raise NotImplementedError

    async def send_direct(self, actor_id: str, content: str) -> None:
        raise NotImplementedError

    async def execute(self, operation: str, params: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


class RecordingConnector(Connector):
    """Keeps everything in memory. Used when no real integration is attached."""

    def __init__(self):
        self.messages: List[Dict[str, str]] = []
        self.directs: List[Dict[str, str]] = []
        self.executed: List[Dict[str, Any]] = []

    async def send_message(self, target_id: str, content: str) -> None:
        self.messages.append({"target_id": target_id, "content": content})

    async def send_direct(self, actor_id: str, content: str) -> None:
        self.directs.append({"actor_id": actor_id, "content": content})

    async def execute(self, operation: str, params: Dict[str, Any]) -> Dict[str, Any]:
        self.executed.append({"operation": operation, "params": dict(params)})
        return {"operation": operation, "status": "done"}


class ApprovedActionGuard:
    """
    Gated connector operations run only against an APPROVED request whose
    label maps to that operation, and only once per request.
    """

    def __init__(self, warden: Warden, config: GhostConfig, audit: AuditLog):
        self.warden = warden
        self.config = config
        self.audit = audit
        self._executed: set = set()
        self._lock = asyncio.Lock()

    def operation_for(self, label: str) -> Optional[str]:
        return self.config.gated_operations.get(label)

    def forget(self, request_ids: Iterable[str]) -> None:
        """Drop execution markers for requests the Warden no longer holds."""
        for request_id in request_ids:
            self._executed.discard(request_id)

    def authorize(self, request_id: Optional[str], operation: str) -> ApprovalRequest:
        if request_id is None:
            raise Unauthorized("unapproved", f"execute {operation}")
        request = self.warden.get(request_id)
        if request.state != ApprovalState.APPROVED:
            raise Unauthorized(request.state.value, f"execute {operation} for {request_id}")
        if self.operation_for(request.intent.label) != operation:
            raise Unauthorized(request.intent.label, f"execute {operation} for {request_id}")
        return request

    async def execute(
        self,
        connector: Connector,
        request_id: Optional[str],
        operation: str,
        params: Dict[str, Any],
    ) -> Dict[str, Any]:
        try:
            request = self.authorize(request_id, operation)
        except Unauthorized:
            self.audit.append(
                AuditLevel.BLOCK, agent="ApprovedActionGuard", action=operation, outcome="unauthorized",
                note=format_note(id=request_id),
            )
            raise
        async with self._lock:
            if request.id in self._executed:
                raise AlreadyResolved(request.id, "executed")
            self._executed.add(request.id)
        self.audit.append(
            AuditLevel.INFO, agent="ApprovedActionGuard", action=operation, role=request.event.actor_role,
            outcome="executing", note=format_note(id=request.id, event=request.event.id, label=request.intent.label),
        )
        return await connector.execute(operation, params)


# =============================================================================
# HANDLERS
# =============================================================================

@dataclass
class HandlerResult:
    reply: Optional[str]
    succeeded: bool
    detail: str = ""
    run: Optional[RunResult] = None
    action_result: Optional[Dict[str, Any]] = None


def triggers_for(intent: Intent, config: GhostConfig) -> List[str]:
    """Map an intent onto configured escalation trigger names."""
    triggers = []
    if "low confidence" in intent.reasons:
        triggers.append("unresolved_ambiguity")
    if intent.domain in ("social", "email", "outreach"):
        triggers.append("external_communication")
    if intent.domain in ("control", "finance") or "credential" in intent.label:
        triggers.append("security_sensitive")
    if intent.domain == "sre" and intent.is_dangerous:
        triggers.append("production_action")
    if intent.action in ("refactor", "architecture"):
        triggers.append("multi_resource_change")
    return [t for t in triggers if t in config.escalation_triggers]


class Handler:
    name = "handler"

    async def handle(self, event: Event, intent: Intent, approval: Optional[ApprovalRequest] = None) -> HandlerResult:
        raise NotImplementedError


class ModelHandler(Handler):
    """Runs the event through the Escalation Governor and returns the model's reply."""

    def __init__(self, name: str, governor: EscalationGovernor):
        self.name = name
        self.governor = governor

    async def handle(self, event: Event, intent: Intent, approval: Optional[ApprovalRequest] = None) -> HandlerResult:
        task = Task.for_event(event, intent, triggers=tuple(triggers_for(intent, self.governor.config)))
        run = await self.governor.run(task)
        if run.succeeded:
            return HandlerResult(reply=run.text, succeeded=True, run=run)
        return HandlerResult(
            reply=f"I couldn't finish that ({run.outcome.replace('_', ' ')}). The owner has been notified.",
            succeeded=False,
            detail=run.reason,
            run=run,
        )


class GatedActionHandler(Handler):
    """Executes the connector operation mapped to an approved label; other labels go to the model."""

    def __init__(self, name: str, guard: ApprovedActionGuard, connector: Connector, fallback: Optional[Handler] = None):
        self.name = name
        self.guard = guard
        self.connector = connector
        self.fallback = fallback

    async def handle(self, event: Event, intent: Intent, approval: Optional[ApprovalRequest] = None) -> HandlerResult:
        operation = self.guard.operation_for(intent.label)
        if operation is None:
            if self.fallback is None:
                return HandlerResult(reply=None, succeeded=False, detail=f"no operation for {intent.label}")
            return await self.fallback.handle(event, intent, approval)

        params = {"text": event.text, "actor_id": event.actor_id, "event_id": event.id, "label": intent.label}
        result = await self.guard.execute(self.connector, approval.id if approval else None, operation, params)
        return HandlerResult(reply=f"Done: {operation} ({approval.id}).", succeeded=True, action_result=result)


class HandlerRegistry:
    """Agent name -> handler."""

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register(self, name: str, handler: Handler) -> None:
        self._handlers[name] = handler

    def get(self, name: Optional[str]) -> Handler:
        if name not in self._handlers:
            raise KeyError(f"No handler registered for {name!r}")
        return self._handlers[name]

    def __contains__(self, name) -> bool:
        return name in self._handlers

    def names(self) -> List[str]:
        return sorted(self._handlers)


# =============================================================================
# OUTBOUND QUEUE
# =============================================================================

@dataclass
class OutboundMessage:
    key: str
    kind: str  # "direct" | "message"
    target: str
    content: str
    not_before: float = 0.0
    attempts: int = 0


class OutboundQueue:
    """Bounded hold-back queue for rate-limited sends."""

    def __init__(
        self,
        connector: Connector,
        limiter: RateLimiter,
        audit: AuditLog,
        capacity: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.connector = connector
        self.limiter = limiter
        self.audit = audit
        self.capacity = capacity
        self._clock = clock
        self._items: Deque[OutboundMessage] = collections.deque()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._items)

    async def _deliver(self, message: OutboundMessage) -> None:
        if message.kind == "direct":
            await self.connector.send_direct(message.target, message.content)
        else:
            await self.connector.send_message(message.target, message.content)

    async def send(self, key: str, kind: str, target: str, content: str) -> bool:
        """Deliver now if admitted; otherwise hold it back. Returns True when delivered."""
        message = OutboundMessage(key=key, kind=kind, target=target, content=content)
        if self.limiter.admit_configured(key):
            await self._deliver(message)
            return True
        await self._hold(message)
        return False

    async def _hold(self, message: OutboundMessage) -> None:
        async with self._lock:
            if len(self._items) >= self.capacity:
                self.audit.append(
                    AuditLevel.ERROR, agent="OutboundQueue", action="enqueue", outcome="queue_full",
                    note=format_note(key=message.key, target=message.target, capacity=self.capacity),
                )
                raise QueueFull("outbound", self.capacity)
            message.attempts += 1
            message.not_before = self._clock() + self.limiter.retry_after(message.key)
            self._items.append(message)
        logger.info(f"Outbound to {message.target} held back until window for {message.key} closes")

    async def flush(self) -> int:
        """Retry held messages whose window has closed. Returns the number delivered."""
        async with self._lock:
            now = self._clock()
            due = [m for m in self._items if m.not_before <= now]
            for m in due:
                self._items.remove(m)

        delivered = 0
        for message in due:
            if self.limiter.admit_configured(message.key):
                await self._deliver(message)
                delivered += 1
            else:
                await self._hold(message)
        return delivered


@dataclass
class DeferredExecution:
    request_id: str
    not_before: float
    attempts: int = 0


class DeferredExecutions:
    """
    Approved requests whose handler was rate limited. They stay APPROVED in
    the Warden and are re-run by the sweep once their window has closed.
    """

    def __init__(self, audit: AuditLog, capacity: int = 100, clock: Callable[[], float] = time.time):
        self.audit = audit
        self.capacity = capacity
        self._clock = clock
        self._items: Dict[str, DeferredExecution] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, request_id) -> bool:
        return request_id in self._items

    def ids(self) -> List[str]:
        return list(self._items)

    async def hold(self, request_id: str, retry_after: float, attempts: int = 0) -> DeferredExecution:
        async with self._lock:
            item = self._items.get(request_id)
            if item is None:
                if len(self._items) >= self.capacity:
                    self.audit.append(
                        AuditLevel.ERROR, agent=AGENT_NAME, action="defer", outcome="queue_full",
                        note=format_note(id=request_id, capacity=self.capacity),
                    )
                    raise QueueFull("deferred", self.capacity)
                item = self._items[request_id] = DeferredExecution(request_id, 0.0, attempts)
            item.attempts += 1
            item.not_before = self._clock() + max(0.0, retry_after)
        return item

    async def take_due(self) -> List[DeferredExecution]:
        async with self._lock:
            now = self._clock()
            due = [item for item in self._items.values() if item.not_before <= now]
            for item in due:
                del self._items[item.request_id]
        return due


# =============================================================================
# DISPATCHER
# =============================================================================

@dataclass
class DispatchOutcome:
    status: str
    event_id: str
    intent: Optional[Intent] = None
    reply: Optional[str] = None
    approval_id: Optional[str] = None
    run: Optional[RunResult] = None
    detail: str = ""
    retry_after: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "event_id": self.event_id,
            "intent": self.intent.to_dict() if self.intent else None,
            "reply": self.reply,
            "approval_id": self.approval_id,
            "run": self.run.to_dict() if self.run else None,
            "detail": self.detail,
            "retry_after": self.retry_after,
        }


class Dispatcher:
    def __init__(
        self,
        config: GhostConfig,
        audit: AuditLog,
        switchboard: Switchboard,
        warden: Warden,
        governor: EscalationGovernor,
        registry: HandlerRegistry,
        connector: Connector,
        outbound: OutboundQueue,
        ledger: Optional[BudgetLedger] = None,
        limiter: Optional[RateLimiter] = None,
        owner_id: Optional[str] = None,
        deferred: Optional[DeferredExecutions] = None,
        guard: Optional[ApprovedActionGuard] = None,
    ):
        self.config = config
        self.audit = audit
        self.switchboard = switchboard
        self.warden = warden
        self.governor = governor
        self.registry = registry
        self.connector = connector
        self.outbound = outbound
        self.ledger = ledger
        self.limiter = limiter
        self.owner_id = owner_id or os.getenv("GHOST_OWNER_ID")
        self.deferred = deferred or DeferredExecutions(audit, capacity=config.outbound_queue_size)
        self.guard = guard
        self._sweeper: Optional[asyncio.Task] = None
        self.governor.on_surface = self._surface_run

    @classmethod
    def build(
        cls,
        config: Optional[GhostConfig] = None,
        connector: Optional[Connector] = None,
        providers: Optional[Mapping[Tier, TierProviders]] = None,
        classifier: Optional[Classifier] = None,
        owner_id: Optional[str] = None,
        rebuild: bool = True,
        clock: Callable[[], datetime] = utc_now,
        timer: Callable[[], float] = time.time,
    ) -> "Dispatcher":
        """
        Assemble the full pipeline from config. Approval state is rebuilt from
        the audit log and budget reservations left held by a previous run are
        released. `clock` drives approval times, `timer` the rate-limit windows.
        """
        config = config or load_config()
        connector = connector or RecordingConnector()
        audit = AuditLog(config.audit_log_path)
        limiter = RateLimiter(audit=audit, rules=config.rate_limits, clock=timer)
        ledger = BudgetLedger(
            config.budget_db_path,
            {tier: tc.monthly_cap for tier, tc in config.tiers.items()},
            audit=audit,
            recover_held=True,
        )
        governor = EscalationGovernor(
            config,
            providers if providers is not None else build_providers(config),
            ledger,
            limiter,
            audit,
        )
        if rebuild:
            warden = Warden.rebuild(audit.entries(), audit, ttl_seconds=config.approval_ttl_seconds, clock=clock)
        else:
            warden = Warden(audit, ttl_seconds=config.approval_ttl_seconds, clock=clock)

        guard = ApprovedActionGuard(warden, config, audit)
        registry = HandlerRegistry()
        for name in sorted({m.handler for m in config.agents.values()} | set(AGENT_NAMES)):
            model_handler = ModelHandler(name, governor)
            registry.register(name, GatedActionHandler(name, guard, connector, fallback=model_handler))

        if classifier is None and config.classifier is not None:
            classifier = ModelClassifier(
                governor,
                domains=list(config.agents),
                tier=config.classifier.tier,
                escalate_tier=config.classifier.escalate_tier,
                threshold=config.confidence_threshold,
            )

        return cls(
            config=config,
            audit=audit,
            switchboard=Switchboard(config, audit, classifier=classifier),
            warden=warden,
            governor=governor,
            registry=registry,
            connector=connector,
            outbound=OutboundQueue(connector, limiter, audit, capacity=config.outbound_queue_size, clock=timer),
            ledger=ledger,
            limiter=limiter,
            owner_id=owner_id,
            deferred=DeferredExecutions(audit, capacity=config.outbound_queue_size, clock=timer),
            guard=guard,
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_event(self, event: Event) -> DispatchOutcome:
        reply = self.switchboard.instant_reply(event)
        if reply is not None:
            await self._reply(event.actor_id, reply)
            return DispatchOutcome(status="instant_reply", event_id=event.id, reply=reply)

        intent = await self.switchboard.classify(event)

        if intent.needs_clarification:
            reply = "I'm not sure what you need. Could you rephrase or add a bit more detail?"
            await self._reply(event.actor_id, reply)
            return DispatchOutcome(status="needs_clarification", event_id=event.id, intent=intent,
                                   reply=reply, detail=", ".join(intent.reasons))

        if intent.requires_review:
            request = self.warden.submit(event, intent)
            await self._notify_owner(
                f"Approval needed {request.id}: {intent.label} from {event.actor_id} "
                f"({', '.join(intent.reasons)}): {event.text[:200]}"
            )
            reply = f"That needs sign-off first. Queued as {request.id}."
            await self._reply(event.actor_id, reply)
            return DispatchOutcome(status="queued", event_id=event.id, intent=intent, reply=reply,
                                   approval_id=request.id)

        return await self._execute(event, intent)

    async def _execute(
        self,
        event: Event,
        intent: Intent,
        approval: Optional[ApprovalRequest] = None,
        deferred: Optional[DeferredExecution] = None,
    ) -> DispatchOutcome:
        handler = self.registry.get(intent.target_handler)
        approval_id = approval.id if approval else None
        try:
            result = await handler.handle(event, intent, approval)
        except RateLimitExceeded as e:
            if approval is not None:
                return await self._defer(event, intent, approval, e, deferred)
            reply = f"Busy right now, try again in {e.retry_after or 0:.0f}s."
            await self._reply(event.actor_id, reply)
            return DispatchOutcome(status="rate_limited", event_id=event.id, intent=intent, reply=reply,
                                   approval_id=approval_id, detail=str(e), retry_after=e.retry_after)

        status = "completed" if result.succeeded else "failed"
        self.audit.append(
            AuditLevel.INFO if result.succeeded else AuditLevel.ERROR,
            agent=AGENT_NAME, action="execute", role=event.actor_role,
            model=result.run.tier_used.value if result.run and result.run.tier_used else "none",
            outcome="success" if result.succeeded else "failed", escalated=bool(result.run and result.run.tier_used not in (None, Tier.FREE)),
            note=format_note(event=event.id, handler=handler.name, label=intent.label, id=approval_id,
                             detail=result.detail or None),
        )
        if result.reply:
            await self._reply(event.actor_id, result.reply)
        return DispatchOutcome(status=status, event_id=event.id, intent=intent, reply=result.reply,
                               approval_id=approval_id, run=result.run, detail=result.detail)

    async def _defer(
        self,
        event: Event,
        intent: Intent,
        approval: ApprovalRequest,
        error: RateLimitExceeded,
        previous: Optional[DeferredExecution] = None,
    ) -> DispatchOutcome:
        """An approved request hit a rate limit: hold it for the sweep instead of dropping it."""
        retry_after = error.retry_after or 0.0
        item = await self.deferred.hold(approval.id, retry_after, attempts=previous.attempts if previous else 0)
        self.audit.append(
            AuditLevel.WARN, agent=AGENT_NAME, action="defer", role=event.actor_role, outcome="deferred",
            note=format_note(event=event.id, id=approval.id, label=intent.label, key=error.key,
                             retry_after=f"{retry_after:.1f}s", attempt=item.attempts),
        )
        logger.info(f"Approved {approval.id} deferred {retry_after:.1f}s on {error.key}")
        reply = None
        if previous is None:
            reply = f"Approved. {approval.id} is waiting on a rate limit and will run in about {retry_after:.0f}s."
            await self._reply(event.actor_id, reply)
        return DispatchOutcome(status="deferred", event_id=event.id, intent=intent, reply=reply,
                               approval_id=approval.id, detail=str(error), retry_after=retry_after)

    async def run_deferred(self) -> List[DispatchOutcome]:
        """Re-run approved requests whose rate-limit window has closed."""
        outcomes = []
        for item in await self.deferred.take_due():
            try:
                request = self.warden.get(item.request_id)
            except ApprovalNotFound:
                logger.warning(f"Deferred {item.request_id} is no longer known; dropping it")
                continue
            try:
                outcomes.append(await self._execute(request.event, request.intent, request, deferred=item))
            except (AuditWriteError, QueueFull):
                raise
            except Exception as e:
                logger.exception(f"Deferred execution of {request.id} failed")
                self.audit.append(
                    AuditLevel.ERROR, agent=AGENT_NAME, action="execute", role=request.event.actor_role,
                    outcome="failed",
                    note=format_note(event=request.event.id, id=request.id, label=request.intent.label,
                                     detail=f"{type(e).__name__}: {e}"),
                )
        return outcomes

    # ------------------------------------------------------------------
    # Approval flow
    # ------------------------------------------------------------------

    async def resolve(self, request_id: str, decision, approver_role, approver_id: str, note: str = "") -> DispatchOutcome:
        request = self.warden.resolve(request_id, decision, approver_role, approver_id, note)
        if request.state == ApprovalState.APPROVED:
            return await self._execute(request.event, request.intent, request)
        reply = f"Your request {request.id} was denied." + (f" Reason: {note}" if note else "")
        await self._reply(request.event.actor_id, reply)
        return DispatchOutcome(status="denied", event_id=request.event.id, intent=request.intent,
                               reply=reply, approval_id=request.id)

    async def cancel(self, request_id: str, actor_id: str, actor_role, reason: str = "") -> DispatchOutcome:
        request = self.warden.cancel(request_id, actor_id, actor_role, reason)
        if actor_id != request.event.actor_id:
            await self._reply(request.event.actor_id, f"Your request {request.id} was cancelled.")
        return DispatchOutcome(status="cancelled", event_id=request.event.id, intent=request.intent,
                               approval_id=request.id, detail=request.resolution_reason or "")

    async def sweep(self) -> List[ApprovalRequest]:
        """
        Expire overdue approvals, re-run deferred approved requests, flush held
        replies and forget state past its retention. A failed notification
        never stops the rest of the sweep.
        """
        expired = self.warden.sweep_expired()
        for request in expired:
            await self._notify(
                request.event.actor_id,
                f"Your request {request.id} expired without a decision. Send it again if it's still needed.",
            )
        await self.run_deferred()
        await self.outbound.flush()
        self.prune()
        return expired

    def prune(self) -> None:
        dropped = self.warden.prune(self.config.approval_retention_seconds, keep=self.deferred.ids())
        if self.guard is not None:
            self.guard.forget(dropped)
        if self.limiter is not None:
            self.limiter.prune()

    async def run_sweeper(self, interval: Optional[float] = None) -> None:
        interval = interval or self.config.sweep_interval_seconds
        while True:
            try:
                await self.sweep()
            except AuditWriteError:
                logger.critical("Audit log is not writable; approval sweeper stopping")
                raise
            except Exception:
                logger.exception("Approval sweep failed; retrying next interval")
            await asyncio.sleep(interval)

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self.run_sweeper())
            logger.info("Approval sweeper started")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
            logger.info("Approval sweeper stopped")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _reply(self, actor_id: str, content: str) -> None:
        await self.outbound.send(f"user:{actor_id}", "direct", actor_id, content)

    async def _notify(self, actor_id: str, content: str) -> bool:
        """Best-effort direct message; only an audit write failure propagates."""
        try:
            await self._reply(actor_id, content)
            return True
        except AuditWriteError:
            raise
        except Exception as e:
            logger.warning(f"Notification to {actor_id} failed: {e}")
            return False

    async def _notify_owner(self, content: str) -> None:
        if not self.owner_id:
            logger.info("No owner configured; approval notification skipped")
            return
        await self._notify(self.owner_id, content)

    async def _surface_run(self, task: Task, run: RunResult) -> None:
        tier = run.tier_used.value if run.tier_used else "none"
        await self._notify_owner(f"Task {task.id} stopped: {run.outcome} at {tier}. {run.reason}")
