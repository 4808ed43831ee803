"""
Append-only Audit Trail
=======================

Single writer for the decision log shared by every component. One line per
entry, in the stable run-log format:

    [LEVEL] <ISO-8601 UTC> | agent=<name> | action=<action> | user_role=<role>
        | model=<tier/provider> | outcome=<outcome> | escalated=<bool> | note="<text>"

The sequence number of an entry is its 1-based line ordinal in the file. The
writer resumes numbering from the existing file, so numbers stay gap-free and
strictly increasing across restarts without changing the line format.

Notes carry `key=value` fields (values JSON-quoted when needed) so the
Warden and the Escalation Governor can be rebuilt from the log after a crash.
"""

import json
import logging
import os
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from ghost_core.errors import AuditWriteError
from ghost_core.models import utc_now

logger = logging.getLogger("audit_trail")


class AuditLevel(Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    BLOCK = "BLOCK"
    ESCALATE = "ESCALATE"
    APPROVE = "APPROVE"
    DENY = "DENY"


_LINE_RE = re.compile(
    r'^\[(?P<level>[A-Z]+)\] (?P<timestamp>\S+)'
    r' \| agent=(?P<agent>[^|]*?)'
    r' \| action=(?P<action>[^|]*?)'
    r' \| user_role=(?P<role>[^|]*?)'
    r' \| model=(?P<model>[^|]*?)'
    r' \| outcome=(?P<outcome>[^|]*?)'
    r' \| escalated=(?P<escalated>true|false)'
    r' \| note=(?P<note>".*")$'
)
_NOTE_FIELD_RE = re.compile(r'(\w+)=("(?:[^"\\]|\\.)*"|\S+)')
_BARE_VALUE_RE = re.compile(r'^[^\s"=]+$')

# key=value secrets, e.g. "api_key=sk-...". Redacted before anything hits disk.
_SECRET_RE = re.compile(
    r'((?:api[_-]?key|token|secret|password|authorization)\s*[:=]\s*)([A-Za-z0-9_\-\.]{12,})',
    re.IGNORECASE,
)


def redact_secrets(text: str) -> str:
    return _SECRET_RE.sub(lambda m: m.group(1) + "[REDACTED]", text)


def format_timestamp(ts: datetime) -> str:
    ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


def format_note(**fields: Any) -> str:
    """Render note fields as `key=value` tokens; None values are skipped."""
    parts = []
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        elif isinstance(value, datetime):
            value = format_timestamp(value)
        elif isinstance(value, (list, tuple, set, frozenset)):
            value = ",".join(str(v) for v in value)
        value = str(value)
        if not value or not _BARE_VALUE_RE.match(value):
            value = json.dumps(value, ensure_ascii=False)
        parts.append(f"{key}={value}")
    return " ".join(parts)


def parse_note(note: str) -> Dict[str, str]:
    """Inverse of format_note; free text between fields is ignored."""
    fields = {}
    for key, raw in _NOTE_FIELD_RE.findall(note or ""):
        if raw.startswith('"'):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError:
                raw = raw.strip('"')
        fields[key] = raw
    return fields


def _clean(value: Any) -> str:
    text = str(value if value is not None else "none").strip()
    return re.sub(r"[\s|]+", "_", text) or "none"


@dataclass(frozen=True)
class AuditEntry:
    """A single, immutable audit log line."""
    sequence_no: int
    timestamp: datetime
    level: AuditLevel
    agent: str
    action: str
    role: str
    model: str
    outcome: str
    escalated: bool
    note: str

    @property
    def fields(self) -> Dict[str, str]:
        return parse_note(self.note)

    def to_line(self) -> str:
        return " ".join([
            f"[{self.level.value}]",
            format_timestamp(self.timestamp),
            f"| agent={self.agent}",
            f"| action={self.action}",
            f"| user_role={self.role}",
            f"| model={self.model}",
            f"| outcome={self.outcome}",
            f"| escalated={'true' if self.escalated else 'false'}",
            f"| note={json.dumps(self.note, ensure_ascii=False)}",
        ])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence_no": self.sequence_no,
            "timestamp": format_timestamp(self.timestamp),
            "level": self.level.value,
            "agent": self.agent,
            "action": self.action,
            "user_role": self.role,
            "model": self.model,
            "outcome": self.outcome,
            "escalated": self.escalated,
            "note": self.note,
        }


def parse_line(line: str, sequence_no: int) -> AuditEntry:
    """Parse one run-log line. Raises ValueError for malformed lines."""
    m = _LINE_RE.match(line.rstrip("\n"))
    if not m:
        raise ValueError(f"Malformed audit line {sequence_no}: {line[:80]!r}")
    return AuditEntry(
        sequence_no=sequence_no,
        timestamp=parse_timestamp(m.group("timestamp")),
        level=AuditLevel(m.group("level")),
        agent=m.group("agent"),
        action=m.group("action"),
        role=m.group("role"),
        model=m.group("model"),
        outcome=m.group("outcome"),
        escalated=m.group("escalated") == "true",
        note=json.loads(m.group("note")),
    )


class AuditLog:
    """
    The only component that writes the run log.

    append() is safe to call from any thread or coroutine. A failed write
    raises AuditWriteError and does not consume a sequence number; callers
    must not proceed with the action they were about to log.
    """

    def __init__(
        self,
        path: Path,
        durable: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.path = Path(path)
        self.durable = durable
        self._clock = clock
        self._lock = threading.Lock()
        self._next_seq: Optional[int] = None

    def _count_existing(self) -> int:
        if not self.path.exists():
            return 0
        with open(self.path, "r", encoding="utf-8") as f:
            return sum(1 for line in f if line.strip())

    @property
    def last_sequence(self) -> int:
        with self._lock:
            if self._next_seq is None:
                self._next_seq = self._count_existing() + 1
            return self._next_seq - 1

    def append(
        self,
        level: AuditLevel,
        agent: str,
        action: str,
        role: Any = "system",
        model: str = "none",
        outcome: str = "success",
        escalated: bool = False,
        note: str = "",
    ) -> AuditEntry:
        """Append one entry and return it with its assigned sequence number."""
        role_value = getattr(role, "value", role)
        note = redact_secrets(str(note or ""))

        with self._lock:
            try:
                if self._next_seq is None:
                    self._next_seq = self._count_existing() + 1
                entry = AuditEntry(
                    sequence_no=self._next_seq,
                    timestamp=self._clock(),
                    level=AuditLevel(level),
                    agent=_clean(agent),
                    action=_clean(action),
                    role=_clean(role_value),
                    model=_clean(model),
                    outcome=_clean(outcome),
                    escalated=bool(escalated),
                    note=note,
                )
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(entry.to_line() + "\n")
                    f.flush()
                    if self.durable:
                        os.fsync(f.fileno())
            except OSError as e:
                logger.critical(f"Audit write failed ({self.path}): {e}")
                raise AuditWriteError(self.path, e) from e
            self._next_seq += 1

        return entry

    def __iter__(self) -> Iterator[AuditEntry]:
        return iter(self.entries())

    def entries(self) -> List[AuditEntry]:
        """Read the full history in sequence order."""
        if not self.path.exists():
            return []
        result = []
        seq = 0
        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                seq += 1
                try:
                    result.append(parse_line(line, seq))
                except ValueError as e:
                    logger.warning(str(e))
        return result

    def tail(self, n: int = 20) -> List[AuditEntry]:
        return self.entries()[-n:] if n > 0 else []

    def query(
        self,
        agent: Optional[str] = None,
        action: Optional[str] = None,
        level: Optional[AuditLevel] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        """Filter the history; newest entries last."""
        matches = [
            e for e in self.entries()
            if (agent is None or e.agent == agent)
            and (action is None or e.action == action)
            and (level is None or e.level == AuditLevel(level))
        ]
        if limit is not None:
            matches = matches[-limit:]
        return matches
