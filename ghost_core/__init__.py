"""
Ghost orchestration core: routing, approval gating, tier escalation and audit.
"""

from ghost_core.errors import GhostError
from ghost_core.models import Event, Intent, Role, Task, Tier
from ghost_core.config import GhostConfig, load_config
from ghost_core.audit_trail import AuditEntry, AuditLevel, AuditLog

__version__ = "1.0.0"
