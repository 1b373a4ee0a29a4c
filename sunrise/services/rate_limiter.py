from __future__ import annotations

import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

DEFAULT_INTERVAL_S = 60
DEFAULT_MAX_TOKENS = 500


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    # epoch seconds when the window frees up
    reset: int

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset),
        }

    def retry_after(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(1, int(self.reset - now))


class RateLimiter:
    """In-memory sliding window rate limiter.

    Each token keeps the timestamps of its requests inside the window. Tokens
    live in an LRU bounded by ``max_tokens`` and expire after ``interval_s``.

    Note: This limiter is process-local. In HA deployments, use a shared store
    (Redis, etc.) to enforce limits across instances.
    """

    def __init__(self, *, limit: int, interval_s: float = DEFAULT_INTERVAL_S, max_tokens: int = DEFAULT_MAX_TOKENS) -> None:
        self.limit = max(1, int(limit))
        self.interval_s = max(0.001, float(interval_s))
        self.max_tokens = max(1, int(max_tokens))
        self._lock = threading.Lock()
        # token -> (last_touched_s, [request timestamps in ms])
        self._state: "OrderedDict[str, Tuple[float, List[float]]]" = OrderedDict()

    def _window(self, token: str, now: float) -> List[float]:
        entry = self._state.get(token)
        if entry is None:
            return []
        touched, stamps = entry
        if now - touched >= self.interval_s:
            del self._state[token]
            return []
        cutoff_ms = (now - self.interval_s) * 1000
        return [t for t in stamps if t > cutoff_ms]

    def _store(self, token: str, now: float, stamps: List[float]) -> None:
        self._state[token] = (now, stamps)
        self._state.move_to_end(token)
        while len(self._state) > self.max_tokens:
            self._state.popitem(last=False)

    def _reset_at(self, now: float) -> int:
        return int(math.ceil((now * 1000 + self.interval_s * 1000) / 1000))

    def check(self, token: str) -> RateLimitResult:
        now = time.time()
        with self._lock:
            stamps = self._window(token, now)
            success = len(stamps) < self.limit
            remaining = max(0, self.limit - len(stamps) - (1 if success else 0))
            if success:
                stamps.append(now * 1000)
            self._store(token, now, stamps)
        return RateLimitResult(success, self.limit, remaining, self._reset_at(now))

    def peek(self, token: str) -> RateLimitResult:
        now = time.time()
        with self._lock:
            count = len(self._window(token, now))
        return RateLimitResult(count < self.limit, self.limit, max(0, self.limit - count), self._reset_at(now))

    def reset(self, token: str) -> None:
        with self._lock:
            self._state.pop(token, None)

    def clear(self) -> None:
        with self._lock:
            self._state.clear()


# name -> (limit, interval seconds)
LIMITER_PRESETS: Dict[str, Tuple[int, int]] = {
    "auth": (5, 60),
    "api": (100, 60),
    "admin": (30, 60),
    "password_reset": (3, 15 * 60),
    "contact": (5, 60 * 60),
    "accept_invite": (5, 60),
    "upload": (10, 15 * 60),
    "invite": (10, 15 * 60),
    "csp_report": (20, 60),
    "verification_email": (3, 15 * 60),
}


class RateLimiters:
    """Named limiter instances shared by the app (one per preset)."""

    def __init__(self, presets: Optional[Dict[str, Tuple[int, int]]] = None) -> None:
        self._limiters: Dict[str, RateLimiter] = {
            name: RateLimiter(limit=limit, interval_s=interval)
            for name, (limit, interval) in (presets or LIMITER_PRESETS).items()
        }

    def get(self, name: str) -> RateLimiter:
        try:
            return self._limiters[name]
        except KeyError:
            raise KeyError(f"Unknown rate limiter: {name}") from None

    __getitem__ = get
