"""
Warden - Approval Queue for Dangerous and Low-Confidence Actions
================================================================

State machine per request:

    PENDING -> APPROVED   resolve() by an Owner/Admin naming the exact id
    PENDING -> DENIED     resolve() by an Owner/Admin, or cancel()
    PENDING -> EXPIRED    sweep_expired() only

Terminal requests never change again; resubmitting creates a new request.

Every transition is written to the audit log before the in-memory state
changes, under that request's lock, so the log is the source of truth and
rebuild() reproduces the live state after a crash.
"""

import dataclasses
import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ghost_core.audit_trail import AuditEntry, AuditLevel, AuditLog, format_note, format_timestamp, parse_timestamp
from ghost_core.errors import AlreadyResolved, ApprovalExpired, ApprovalNotFound, Unauthorized
from ghost_core.models import APPROVER_ROLES, Event, Intent, Role, utc_now

logger = logging.getLogger("warden")

AGENT_NAME = "Warden"
_ID_RE = re.compile(r"^APR-(\d+)$")


class ApprovalState(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"


class Decision(Enum):
    APPROVE = "approve"
    DENY = "deny"

    @classmethod
    def parse(cls, value) -> "Decision":
        if isinstance(value, Decision):
            return value
        if isinstance(value, bool):
            return cls.APPROVE if value else cls.DENY
        text = str(value).strip().lower()
        if text in ("approve", "approved", "yes"):
            return cls.APPROVE
        if text in ("deny", "denied", "reject", "rejected", "no"):
            return cls.DENY
        raise ValueError(f"Unknown decision: {value!r}")


def _ms(ts: datetime) -> datetime:
    return ts.replace(microsecond=ts.microsecond // 1000 * 1000)


@dataclass
class ApprovalRequest:
    id: str
    event: Event
    intent: Intent
    requested_at: datetime
    expires_at: datetime
    approver_roles_required: Tuple[Role, ...] = (Role.OWNER, Role.ADMIN)
    state: ApprovalState = ApprovalState.PENDING
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_reason: Optional[str] = None

    @property
    def reasons(self) -> Tuple[str, ...]:
        return self.intent.reasons

    @property
    def is_terminal(self) -> bool:
        return self.state != ApprovalState.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event": self.event.to_dict(),
            "intent": self.intent.to_dict(),
            "requested_at": format_timestamp(self.requested_at),
            "expires_at": format_timestamp(self.expires_at),
            "approver_roles_required": [r.value for r in self.approver_roles_required],
            "state": self.state.value,
            "resolved_by": self.resolved_by,
            "resolved_at": format_timestamp(self.resolved_at) if self.resolved_at else None,
            "resolution_reason": self.resolution_reason,
            "reasons": list(self.reasons),
        }


class Warden:
    """Owns the ApprovalRequest lifecycle."""

    def __init__(
        self,
        audit: AuditLog,
        ttl_seconds: float = 24 * 3600,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.audit = audit
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._registry_lock = threading.Lock()
        self._requests: Dict[str, ApprovalRequest] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._counter = 0

    def _now(self) -> datetime:
        return _ms(self._clock())

    def _lookup(self, request_id: str) -> Tuple[ApprovalRequest, threading.Lock]:
        with self._registry_lock:
            request = self._requests.get(request_id)
            if request is None:
                raise ApprovalNotFound(request_id)
            return request, self._locks[request_id]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def submit(self, event: Event, intent: Intent) -> ApprovalRequest:
        """Queue a gated event for human review."""
        now = self._now()
        with self._registry_lock:
            request_id = f"APR-{self._counter + 1:04d}"
            request = ApprovalRequest(
                id=request_id,
                event=event,
                intent=intent,
                requested_at=now,
                expires_at=now + self.ttl,
            )
            self.audit.append(
                AuditLevel.BLOCK, agent=AGENT_NAME, action="submit", role=event.actor_role,
                outcome="pending",
                note=format_note(
                    id=request_id, event=event.id, actor=event.actor_id, source=event.source,
                    label=intent.label, confidence=f"{intent.confidence:.2f}", handler=intent.target_handler,
                    dangerous=intent.is_dangerous, reasons=list(intent.reasons) or None,
                    requested=now, expires=request.expires_at, text=event.text,
                ),
            )
            self._counter += 1
            self._requests[request_id] = request
            self._locks[request_id] = threading.Lock()

        logger.info(f"Approval {request_id} queued for {intent.label} ({', '.join(intent.reasons)})")
        return dataclasses.replace(request)

    def resolve(
        self,
        request_id: str,
        decision,
        approver_role,
        approver_id: str,
        note: str = "",
    ) -> ApprovalRequest:
        """
        Approve or deny a pending request.

        Raises:
            ApprovalNotFound: unknown id
            Unauthorized: approver is not Owner/Admin
            AlreadyResolved: request is no longer pending
            ApprovalExpired: TTL passed, awaiting the sweep
        """
        decision = Decision.parse(decision)
        role = Role.parse(approver_role)
        request, lock = self._lookup(request_id)

        if role not in request.approver_roles_required:
            self._audit_unauthorized(request_id, role, approver_id, "resolve")
            raise Unauthorized(role.value, f"resolve {request_id}")

        with lock:
            if request.state != ApprovalState.PENDING:
                raise AlreadyResolved(request_id, request.state.value)
            now = self._now()
            if now >= request.expires_at:
                raise ApprovalExpired(request_id)

            approved = decision == Decision.APPROVE
            self.audit.append(
                AuditLevel.APPROVE if approved else AuditLevel.DENY,
                agent=AGENT_NAME, action="resolve", role=role,
                outcome="approved" if approved else "denied",
                note=format_note(id=request_id, event=request.event.id, by=approver_id,
                                 label=request.intent.label, reason=note or None, at=now),
            )
            request.state = ApprovalState.APPROVED if approved else ApprovalState.DENIED
            request.resolved_by = approver_id
            request.resolved_at = now
            request.resolution_reason = note or None
            snapshot = dataclasses.replace(request)

        logger.info(f"Approval {request_id} {snapshot.state.value} by {approver_id}")
        return snapshot

    def cancel(self, request_id: str, actor_id: str, actor_role, reason: str = "") -> ApprovalRequest:
        """Withdraw a pending request. Allowed for the requester and for Owner/Admin."""
        role = Role.parse(actor_role)
        request, lock = self._lookup(request_id)

        if actor_id != request.event.actor_id and role not in APPROVER_ROLES:
            self._audit_unauthorized(request_id, role, actor_id, "cancel")
            raise Unauthorized(role.value, f"cancel {request_id}")

        with lock:
            if request.state != ApprovalState.PENDING:
                raise AlreadyResolved(request_id, request.state.value)
            now = self._now()
            if now >= request.expires_at:
                raise ApprovalExpired(request_id)

            resolution = f"cancelled: {reason or 'withdrawn'}"
            self.audit.append(
                AuditLevel.DENY, agent=AGENT_NAME, action="cancel", role=role, outcome="cancelled",
                note=format_note(id=request_id, event=request.event.id, by=actor_id,
                                 label=request.intent.label, reason=resolution, at=now),
            )
            request.state = ApprovalState.DENIED
            request.resolved_by = actor_id
            request.resolved_at = now
            request.resolution_reason = resolution
            snapshot = dataclasses.replace(request)

        logger.info(f"Approval {request_id} cancelled by {actor_id}")
        return snapshot

    def sweep_expired(self, now: Optional[datetime] = None) -> List[ApprovalRequest]:
        """Expire every pending request past its TTL. The only producer of EXPIRED."""
        now = _ms(now or self._clock())
        with self._registry_lock:
            candidates = [(r, self._locks[r.id]) for r in self._requests.values()
                          if r.state == ApprovalState.PENDING]

        expired = []
        for request, lock in candidates:
            with lock:
                if request.state != ApprovalState.PENDING or now < request.expires_at:
                    continue
                self.audit.append(
                    AuditLevel.WARN, agent=AGENT_NAME, action="expire", outcome="expired",
                    note=format_note(id=request.id, event=request.event.id, label=request.intent.label,
                                     expires=request.expires_at, at=now),
                )
                request.state = ApprovalState.EXPIRED
                request.resolved_by = "system"
                request.resolved_at = now
                request.resolution_reason = "approval window elapsed"
                expired.append(dataclasses.replace(request))

        if expired:
            logger.info(f"Expired {len(expired)} approval request(s)")
        return expired

    def prune(
        self,
        older_than: float,
        now: Optional[datetime] = None,
        keep: Iterable[str] = (),
    ) -> List[str]:
        """
        Forget terminal requests resolved more than `older_than` seconds ago,
        except those named in `keep`.

        Pending requests are never dropped, and ids are never reused because
        the counter keeps running. The audit log still holds the full history.
        """
        cutoff = _ms(now or self._clock()) - timedelta(seconds=older_than)
        keep = set(keep)
        with self._registry_lock:
            dropped = [r.id for r in self._requests.values()
                       if r.is_terminal and r.id not in keep
                       and r.resolved_at is not None and r.resolved_at <= cutoff]
            for request_id in dropped:
                del self._requests[request_id]
                del self._locks[request_id]
        if dropped:
            logger.info(f"Pruned {len(dropped)} resolved approval request(s)")
        return dropped

    def _audit_unauthorized(self, request_id: str, role: Role, actor_id: str, operation: str) -> None:
        logger.warning(f"{actor_id} ({role.value}) tried to {operation} {request_id}")
        self.audit.append(
            AuditLevel.BLOCK, agent=AGENT_NAME, action=operation, role=role, outcome="unauthorized",
            note=format_note(id=request_id, by=actor_id),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, request_id: str) -> ApprovalRequest:
        request, lock = self._lookup(request_id)
        with lock:
            return dataclasses.replace(request)

    def pending(self) -> List[ApprovalRequest]:
        return [r for r in self.all() if r.state == ApprovalState.PENDING]

    def all(self) -> List[ApprovalRequest]:
        with self._registry_lock:
            ids = list(self._requests)
        return [self.get(request_id) for request_id in ids]

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    @classmethod
    def rebuild(
        cls,
        entries: Iterable[AuditEntry],
        audit: AuditLog,
        ttl_seconds: float = 24 * 3600,
        clock: Callable[[], datetime] = utc_now,
    ) -> "Warden":
        """Reconstruct every request from Warden audit entries."""
        warden = cls(audit, ttl_seconds=ttl_seconds, clock=clock)
        for entry in entries:
            if entry.agent != AGENT_NAME:
                continue
            fields = entry.fields
            request_id = fields.get("id")
            if not request_id:
                continue

            if entry.action == "submit":
                warden._restore_submitted(entry, fields)
                continue

            request = warden._requests.get(request_id)
            if request is None or request.state != ApprovalState.PENDING:
                continue
            if entry.action == "resolve" and entry.outcome in ("approved", "denied"):
                request.state = ApprovalState.APPROVED if entry.outcome == "approved" else ApprovalState.DENIED
                request.resolution_reason = fields.get("reason")
            elif entry.action == "cancel" and entry.outcome == "cancelled":
                request.state = ApprovalState.DENIED
                request.resolution_reason = fields.get("reason")
            elif entry.action == "expire":
                request.state = ApprovalState.EXPIRED
                request.resolution_reason = "approval window elapsed"
            else:
                continue
            request.resolved_by = fields.get("by", "system")
            request.resolved_at = parse_timestamp(fields["at"]) if "at" in fields else entry.timestamp

        logger.info(f"Rebuilt {len(warden._requests)} approval request(s) from the audit log")
        return warden

    def _restore_submitted(self, entry: AuditEntry, fields: Dict[str, str]) -> None:
        request_id = fields["id"]
        requested_at = parse_timestamp(fields["requested"]) if "requested" in fields else entry.timestamp
        event = Event(
            id=fields.get("event", ""),
            source=fields.get("source", "api"),
            actor_id=fields.get("actor", ""),
            actor_role=Role.parse(entry.role),
            text=fields.get("text", ""),
            timestamp=requested_at,
        )
        reasons = tuple(r for r in fields.get("reasons", "").split(",") if r)
        intent = Intent(
            label=fields.get("label", ""),
            confidence=float(fields.get("confidence", 0.0)),
            target_handler=fields.get("handler"),
            is_dangerous=fields.get("dangerous") == "true",
            requires_review=True,
            reasons=reasons,
        )
        self._requests[request_id] = ApprovalRequest(
            id=request_id,
            event=event,
            intent=intent,
            requested_at=requested_at,
            expires_at=parse_timestamp(fields["expires"]) if "expires" in fields else requested_at + self.ttl,
        )
        self._locks[request_id] = threading.Lock()
        m = _ID_RE.match(request_id)
        if m:
            self._counter = max(self._counter, int(m.group(1)))
