"""
Error taxonomy for the orchestration core.

Every error the core raises on purpose derives from GhostError so callers
(the dispatcher, the HTTP layer, the CLI) can map them in one place.
"""

from typing import Optional


class GhostError(Exception):
    """Base class for orchestration errors."""


class ConfigError(GhostError):
    """Raised when the orchestration config cannot be loaded or validated."""

    def __init__(self, problems):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("Invalid configuration: " + "; ".join(self.problems))


class ClassificationAmbiguous(GhostError):
    """No confident match for an event; surfaced to the requester."""

    def __init__(self, event_id: str, reason: str = "no routing rule matched"):
        self.event_id = event_id
        self.reason = reason
        super().__init__(f"Event {event_id} needs clarification: {reason}")


class Unauthorized(GhostError):
    """Actor role is not allowed to perform the operation."""

    def __init__(self, role: str, operation: str):
        self.role = role
        self.operation = operation
        super().__init__(f"Role '{role}' is not authorized to {operation}")


class ApprovalNotFound(GhostError, KeyError):
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"No approval found with ID {request_id}")

    def __str__(self):
        return self.args[0]


class AlreadyResolved(GhostError):
    """Second resolution attempt on a terminal request; no state change."""

    def __init__(self, request_id: str, state: str):
        self.request_id = request_id
        self.state = state
        super().__init__(f"{request_id} is already {state}")


class ApprovalExpired(GhostError):
    """Approval TTL elapsed; the request can no longer be resolved."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"{request_id} has expired without a decision")


class ProviderUnavailable(GhostError):
    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"Provider '{provider}' unavailable: {reason}")


class ProviderError(GhostError):
    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"Provider '{provider}' failed: {reason}")


class BudgetExhausted(GhostError):
    """Reservation would push a tier past its monthly cap."""

    def __init__(self, tier: str, month_key: str, requested: float, remaining: float):
        self.tier = tier
        self.month_key = month_key
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Budget exhausted for {tier} ({month_key}): "
            f"requested {requested:.4f}, remaining {remaining:.4f}"
        )


class RateLimitExceeded(GhostError):
    """Admission denied; the caller must queue and retry after the window."""

    def __init__(self, key: str, limit: int, observed: int, retry_after: Optional[float] = None):
        self.key = key
        self.limit = limit
        self.observed = observed
        self.retry_after = retry_after
        msg = f"Rate limit for '{key}' exceeded ({observed}/{limit})"
        if retry_after:
            msg += f" - retry in {retry_after:.1f}s"
        super().__init__(msg)


class AuditWriteError(GhostError):
    """The audit log could not be written. Fatal for the invoking component."""

    def __init__(self, path, cause: Exception):
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to append audit entry to {path}: {cause}")


class EscalationReasonRequired(GhostError, ValueError):
    """An escalation (ladder, lateral or override) was requested without a reason."""


class QueueFull(GhostError):
    def __init__(self, name: str, capacity: int):
        self.name = name
        self.capacity = capacity
        super().__init__(f"Queue '{name}' is full ({capacity} items)")
