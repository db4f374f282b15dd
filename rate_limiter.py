"""
Fixed-window rate limiting for the send-whatsapp endpoint

Counters live in a pluggable store:
- database: the shared rate_limit_windows table, so every server
  instance sees the same windows (default)
- memory: a per-process dict, for single-instance/local runs
"""
import os
import math
import time
import threading
from dataclasses import dataclass
from typing import Optional, Tuple
from sqlalchemy.exc import IntegrityError

import database
from database import RateLimitWindow

DEFAULT_WINDOW_SECONDS = 60
DEFAULT_MAX_REQUESTS = 10
# Hits between sweeps of expired windows
PRUNE_INTERVAL = 100


@dataclass
class RateLimitResult:
    allowed: bool
    retry_after: int = 0
    remaining: int = 0


def advance_window(state: Optional[Tuple[int, float]], now: float, window_seconds: float,
                   max_requests: int) -> Tuple[Tuple[int, float], RateLimitResult]:
    """
    Apply one request to a (count, window_start) state.
    Rejected requests leave the state unchanged.
    """
    if state is None or now - state[1] > window_seconds:
        return (1, now), RateLimitResult(allowed=True, remaining=max_requests - 1)

    count, window_start = state
    if count >= max_requests:
        retry_after = max(1, math.ceil(window_start + window_seconds - now))
        return state, RateLimitResult(allowed=False, retry_after=retry_after)

    return (count + 1, window_start), RateLimitResult(allowed=True, remaining=max_requests - count - 1)


class MemoryWindowStore:
    """In-process counters keyed by client"""

    def __init__(self, prune_interval: int = PRUNE_INTERVAL):
        self._windows = {}
        self._lock = threading.Lock()
        self._hits = 0
        self.prune_interval = prune_interval

    def hit(self, key: str, now: float, window_seconds: float, max_requests: int) -> RateLimitResult:
        with self._lock:
            state, result = advance_window(self._windows.get(key), now, window_seconds, max_requests)
            self._windows[key] = state
            self._hits += 1
            if self._hits % self.prune_interval == 0:
                self._prune_locked(now, window_seconds)
            return result

    def _prune_locked(self, now: float, window_seconds: float) -> int:
        expired = [k for k, (_, start) in self._windows.items() if start < now - window_seconds]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def prune(self, now: float, window_seconds: float) -> int:
        """Drop expired windows, returning how many were removed"""
        with self._lock:
            return self._prune_locked(now, window_seconds)


class DatabaseWindowStore:
    """Counters shared through the database"""

    def __init__(self, session_factory=None, prune_interval: int = PRUNE_INTERVAL):
        self._session_factory = session_factory
        self._hits = 0
        self.prune_interval = prune_interval

    def _session(self):
        factory = self._session_factory or database.SessionLocal
        return factory()

    def hit(self, key: str, now: float, window_seconds: float, max_requests: int) -> RateLimitResult:
        result = self._hit(key, now, window_seconds, max_requests)
        # Per-instance count; every instance prunes the shared table now and then
        self._hits += 1
        if self._hits % self.prune_interval == 0:
            self.prune(now, window_seconds)
        return result

    def _hit(self, key: str, now: float, window_seconds: float, max_requests: int) -> RateLimitResult:
        # Second pass only when another instance inserted the same key first
        for attempt in range(2):
            db = self._session()
            try:
                row = db.query(RateLimitWindow).filter(RateLimitWindow.key == key).with_for_update().first()
                state = (row.count, row.window_start) if row else None
                (count, window_start), result = advance_window(state, now, window_seconds, max_requests)

                if row is None:
                    db.add(RateLimitWindow(key=key, count=count, window_start=window_start))
                else:
                    row.count = count
                    row.window_start = window_start
                db.commit()
                return result
            except IntegrityError:
                db.rollback()
                if attempt:
                    raise
            finally:
                db.close()

    def prune(self, now: float, window_seconds: float) -> int:
        """Delete expired windows, returning how many were removed"""
        db = self._session()
        try:
            removed = db.query(RateLimitWindow).filter(
                RateLimitWindow.window_start < now - window_seconds
            ).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()
        if removed:
            print(f"[RateLimit] Pruned {removed} expired window(s)")
        return removed


class FixedWindowRateLimiter:
    """Allow max_requests per window_seconds per key"""

    def __init__(self, store, window_seconds: float = DEFAULT_WINDOW_SECONDS,
                 max_requests: int = DEFAULT_MAX_REQUESTS, clock=time.time):
        self.store = store
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.clock = clock

    def check(self, key: str) -> RateLimitResult:
        return self.store.hit(key, self.clock(), self.window_seconds, self.max_requests)

    def prune(self) -> int:
        return self.store.prune(self.clock(), self.window_seconds)


def create_rate_limiter() -> FixedWindowRateLimiter:
    """Build the limiter from RATE_LIMIT_* environment variables"""
    backend = os.getenv("RATE_LIMIT_BACKEND", "database").lower()
    window_seconds = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", DEFAULT_WINDOW_SECONDS))
    max_requests = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", DEFAULT_MAX_REQUESTS))

    if backend == "memory":
        store = MemoryWindowStore()
    elif backend == "database":
        store = DatabaseWindowStore()
    else:
        raise ValueError(f"Unknown RATE_LIMIT_BACKEND '{backend}' (expected 'database' or 'memory')")

    print(f"[RateLimit] {backend} store, {max_requests} requests per {window_seconds:.0f}s")
    return FixedWindowRateLimiter(store, window_seconds=window_seconds, max_requests=max_requests)
