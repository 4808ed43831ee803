"""
Per-key fixed-window rate limiter for outbound actions.

Keys are free-form strings such as "channel:general", "user:42" or
"tier:paid_high". Windows are aligned to floor(now / window), so every
request is counted in exactly one window even when it straddles a boundary.
Rejected requests are never counted. Retry scheduling is the caller's job;
denials are written to the audit log with enough context to explain them.
"""

import fnmatch
import logging
import math
import threading
import time
from dataclasses import dataclass, asdict
from typing import Callable, Dict, Optional, Sequence, Tuple

from ghost_core.audit_trail import AuditLevel, AuditLog, format_note
from ghost_core.config import RateLimitRule
from ghost_core.errors import RateLimitExceeded

logger = logging.getLogger("rate_limiter")


@dataclass
class RateLimitBucket:
    key: str
    window_start: float
    count: int
    limit: int
    window_seconds: float = 0.0

    def ends_at(self) -> float:
        return self.window_start + self.window_seconds

    def to_dict(self) -> Dict:
        return asdict(self)


class RateLimiter:
    """Atomic per-key admission control."""

    def __init__(
        self,
        audit: Optional[AuditLog] = None,
        rules: Sequence[RateLimitRule] = (),
        clock: Callable[[], float] = time.time,
    ):
        self.audit = audit
        self.rules = tuple(rules)
        self._clock = clock
        self._registry_lock = threading.Lock()
        self._buckets: Dict[str, RateLimitBucket] = {}
        self._key_locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    @staticmethod
    def _window_start(now: float, window: float) -> float:
        return math.floor(now / window) * window

    def rule_for(self, key: str) -> Optional[RateLimitRule]:
        for rule in self.rules:
            if fnmatch.fnmatchcase(key, rule.pattern):
                return rule
        return None

    def _try_admit(self, key: str, window: float, limit: int) -> Tuple[bool, RateLimitBucket, float]:
        while True:
            lock = self._lock_for(key)
            with lock:
                with self._registry_lock:
                    # prune() may have retired this lock while we waited on it
                    if self._key_locks.get(key) is not lock:
                        continue
                now = self._clock()
                start = self._window_start(now, window)
                bucket = self._buckets.get(key)
                if bucket is None or bucket.window_start != start:
                    bucket = RateLimitBucket(key=key, window_start=start, count=0, limit=limit)
                    self._buckets[key] = bucket
                bucket.limit = limit
                bucket.window_seconds = window
                if bucket.count >= limit:
                    return False, RateLimitBucket(**asdict(bucket)), start + window - now
                bucket.count += 1
                return True, RateLimitBucket(**asdict(bucket)), 0.0

    def admit(self, key: str, window: float, limit: int) -> bool:
        """
        Admit one action for `key` if fewer than `limit` were admitted in the
        current `window` (seconds). Returns False and logs the denial otherwise.
        """
        if window <= 0:
            raise ValueError("window must be positive")
        if limit < 0:
            raise ValueError("limit must not be negative")

        allowed, snapshot, retry_after = self._try_admit(key, window, limit)
        if not allowed:
            logger.info(f"Rate limit hit for {key}: {snapshot.count}/{limit} in {window:.0f}s window")
            if self.audit is not None:
                self.audit.append(
                    AuditLevel.WARN,
                    agent="RateLimiter",
                    action="admit",
                    outcome="rate_limited",
                    note=format_note(
                        key=key,
                        limit=limit,
                        observed=snapshot.count,
                        window=f"{window:g}s",
                        retry_after=f"{retry_after:.1f}s",
                    ),
                )
        return allowed

    def admit_configured(self, key: str) -> bool:
        """Admit using the configured rule for `key`; unconfigured keys are unlimited."""
        rule = self.rule_for(key)
        if rule is None:
            return True
        return self.admit(key, rule.window_seconds, rule.limit)

    def check(self, key: str, window: Optional[float] = None, limit: Optional[int] = None) -> None:
        """Like admit(), but raises RateLimitExceeded with a retry hint."""
        if window is None or limit is None:
            rule = self.rule_for(key)
            if rule is None:
                return
            window, limit = rule.window_seconds, rule.limit
        if not self.admit(key, window, limit):
            bucket = self.get_usage(key)
            observed = bucket.count if bucket else limit
            raise RateLimitExceeded(key, limit, observed, self.retry_after(key, window))

    def retry_after(self, key: str, window: Optional[float] = None) -> float:
        """Seconds until the current window for `key` closes."""
        if window is None:
            rule = self.rule_for(key)
            if rule is None:
                return 0.0
            window = rule.window_seconds
        now = self._clock()
        return max(0.0, self._window_start(now, window) + window - now)

    def get_usage(self, key: str) -> Optional[RateLimitBucket]:
        with self._lock_for(key):
            bucket = self._buckets.get(key)
            return RateLimitBucket(**asdict(bucket)) if bucket else None

    def prune(self, now: Optional[float] = None) -> int:
        """Drop buckets whose window has closed, with their key locks. Returns how many went."""
        now = self._clock() if now is None else now
        dropped = 0
        with self._registry_lock:
            for key, lock in list(self._key_locks.items()):
                if not lock.acquire(blocking=False):
                    continue
                try:
                    bucket = self._buckets.get(key)
                    if bucket is None or bucket.ends_at() <= now:
                        self._buckets.pop(key, None)
                        del self._key_locks[key]
                        dropped += 1
                finally:
                    lock.release()
        if dropped:
            logger.debug(f"Pruned {dropped} closed rate limit window(s)")
        return dropped
