"""Fixed-window, in-memory request rate limiting."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Request

from .errors import RateLimitExceeded


@dataclass
class _Window:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitStatus:
    limited: bool
    remaining: int
    reset_seconds: int


class RateLimiter:
    """Count requests per key inside a fixed time window."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._max = max_requests
        self._window = window_seconds
        self._clock = clock
        self._entries: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    @property
    def max_requests(self) -> int:
        return self._max

    def hit(self, key: str) -> RateLimitStatus:
        now = self._clock()
        with self._lock:
            self._evict(now)
            entry = self._entries.get(key)
            if entry is None or entry.reset_at <= now:
                entry = _Window(count=1, reset_at=now + self._window)
                self._entries[key] = entry
                return RateLimitStatus(False, self._max - 1, self._seconds_left(entry, now))
            if entry.count >= self._max:
                return RateLimitStatus(True, 0, self._seconds_left(entry, now))
            entry.count += 1
            return RateLimitStatus(False, self._max - entry.count, self._seconds_left(entry, now))

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    def _evict(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if entry.reset_at <= now]
        for key in expired:
            del self._entries[key]

    @staticmethod
    def _seconds_left(entry: _Window, now: float) -> int:
        return max(0, math.ceil(entry.reset_at - now))


def client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",", 1)[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def rate_limit_dependency(limiter: RateLimiter, *, scope: Optional[str] = None):
    """Build a FastAPI dependency that rejects requests over ``limiter``'s budget."""

    prefix = f"{scope}:" if scope else ""

    def dependency(request: Request) -> None:
        result = limiter.hit(prefix + client_key(request))
        if result.limited:
            raise RateLimitExceeded(limit=limiter.max_requests, reset_seconds=result.reset_seconds)

    return dependency


__all__ = ["RateLimitStatus", "RateLimiter", "client_key", "rate_limit_dependency"]
