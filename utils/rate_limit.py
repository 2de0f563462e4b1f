"""
Sliding-window request limits for the auth endpoints.

Counters are per process and keyed by "<group>:<client host>".
"""

from __future__ import annotations

import os
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict

from fastapi import HTTPException, Request


RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "1").strip().lower() in ("1", "true", "yes")


class RateLimiter:
    """Keys with no hits left inside their window are swept at most once per sweep_interval."""

    def __init__(self, clock: Callable[[], float] = time.monotonic, *, sweep_interval: float = 60.0):
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._windows: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def allow_request(self, key: str, *, max_requests: int, window_seconds: int) -> bool:
        now = self._clock()
        cutoff = now - window_seconds
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            hits = self._hits.setdefault(key, deque())
            self._windows[key] = window_seconds
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= max_requests:
                return False
            hits.append(now)
            return True

    def _sweep(self, now: float) -> int:
        stale = [k for k, hits in self._hits.items() if not hits or hits[-1] <= now - self._windows.get(k, 0)]
        for k in stale:
            del self._hits[k]
            self._windows.pop(k, None)
        self._next_sweep = now + self._sweep_interval
        return len(stale)

    def purge_stale(self) -> int:
        with self._lock:
            return self._sweep(self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._windows.clear()


limiter = RateLimiter()


def rate_limited(group: str, *, max_requests: int, window_seconds: int, message: str):
    """Builds a FastAPI dependency enforcing one limit."""

    def _dependency(request: Request) -> None:
        if not RATE_LIMIT_ENABLED:
            return
        host = request.client.host if request.client else "unknown"
        if not limiter.allow_request(f"{group}:{host}", max_requests=max_requests, window_seconds=window_seconds):
            raise HTTPException(429, message)

    return _dependency


login_limit = rate_limited(
    "login",
    max_requests=15,
    window_seconds=60 * 60,
    message="Too many login attempts, please try again after an hour.",
)
otp_limit = rate_limited(
    "otp",
    max_requests=5,
    window_seconds=15 * 60,
    message="Too many OTP verification attempts, please try again later.",
)
password_reset_limit = rate_limited(
    "password_reset",
    max_requests=3,
    window_seconds=60 * 60,
    message="Too many password reset attempts, please try again after an hour.",
)
