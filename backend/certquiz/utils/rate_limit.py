"""In-memory rate limiting for the auth and quiz endpoints."""

from __future__ import annotations

import os
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitRule:
    """`max_requests` per `window_seconds`, overridable through env vars."""
    name: str
    max_requests: int
    window_seconds: int

    @classmethod
    def from_env(cls, name: str, default_max: int, default_window: int) -> "RateLimitRule":
        prefix = name.upper()
        try:
            max_requests = int(os.getenv(f"{prefix}_RATE_LIMIT", str(default_max)))
            window = int(os.getenv(f"{prefix}_RATE_WINDOW_SECONDS", str(default_window)))
        except ValueError:
            max_requests, window = default_max, default_window
        return cls(name=name, max_requests=max(1, max_requests), window_seconds=max(1, window))


def auth_rule() -> RateLimitRule:
    # 5 attempts per 15 minutes
    return RateLimitRule.from_env("auth", 5, 15 * 60)


def quiz_rule() -> RateLimitRule:
    # 30 quiz actions per minute
    return RateLimitRule.from_env("quiz", 30, 60)


class InMemoryRateLimiter:
    """Sliding-window limiter keyed by rule name and client key."""

    def __init__(self):
        self._hits = defaultdict(deque)
        self._lock = threading.Lock()

    def allow(self, key: str, rule: RateLimitRule) -> tuple[bool, int]:
        """Record a hit for `key` and return `(allowed, retry_after_seconds)`."""
        now = time.monotonic()
        with self._lock:
            q = self._hits[(rule.name, key)]
            cutoff = now - rule.window_seconds
            while q and q[0] < cutoff:
                q.popleft()
            if len(q) >= rule.max_requests:
                return False, max(1, int(rule.window_seconds - (now - q[0])))
            q.append(now)
        return True, 0

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
