from __future__ import annotations

import asyncio
import hashlib
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Protocol, Tuple

from authcore.logging import get_logger
from authcore.service.errors import RateLimitExceededError

logger = get_logger(__name__)

# How long sliding-log entries are kept for audit queries
DEFAULT_LOG_RETENTION_SECONDS = 24 * 3600


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float

    def retry_after(self, now: float) -> int:
        return max(0, math.ceil(self.reset_at - now))


class RateLimitBackend(Protocol):
    async def increment_window(
        self, key: str, window_seconds: int, max_attempts: int
    ) -> Tuple[bool, int]: ...

    async def append_to_log(
        self,
        key: str,
        now: float,
        window_seconds: int,
        max_attempts: int,
        *,
        retention_seconds: int,
    ) -> Tuple[bool, int, float]: ...

    async def log_entries(self, key: str, limit: int) -> List[float]: ...


def rate_key(action: str, identity_key: str, window_start: Optional[int] = None) -> str:
    """Collision-resistant storage key for an action and identity.

    The identity is hashed so attacker-controlled input cannot inject
    delimiters or leak addresses into the backing store.
    """
    digest = hashlib.sha256(f"{action}\x00{identity_key}".encode()).hexdigest()
    if window_start is None:
        return f"rate:{action}:{digest}"
    return f"rate:{action}:{digest}:{window_start}"


class MemoryRateLimitBackend:
    """Process-local backend; every read-modify-write happens under one lock.

    Expired window counters and stale logs are swept at most once per
    ``sweep_interval_seconds`` so the tables stay bounded by live identities.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        sweep_interval_seconds: float = 60.0,
    ) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._counters: Dict[str, Tuple[int, float]] = {}
        self._logs: Dict[str, Deque[float]] = {}
        self._log_horizon_seconds = 0.0
        self._sweep_interval = sweep_interval_seconds
        self._next_sweep = 0.0

    def _sweep(self, now: float) -> None:
        # caller holds the lock
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval
        expired = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]
        horizon = now - self._log_horizon_seconds
        stale = [key for key, log in self._logs.items() if not log or log[-1] <= horizon]
        for key in stale:
            del self._logs[key]
        if expired or stale:
            logger.debug("rate_limit_swept", counters=len(expired), logs=len(stale))

    def table_sizes(self) -> Tuple[int, int]:
        with self._lock:
            return len(self._counters), len(self._logs)

    def _increment(self, key: str, window_seconds: int, max_attempts: int) -> Tuple[bool, int]:
        now = self._clock()
        with self._lock:
            self._sweep(now)
            count, expires_at = self._counters.get(key, (0, now + window_seconds))
            if expires_at <= now:
                count, expires_at = 0, now + window_seconds
            if count >= max_attempts:
                return False, count
            count += 1
            self._counters[key] = (count, expires_at)
            return True, count

    def _append(
        self,
        key: str,
        now: float,
        window_seconds: int,
        max_attempts: int,
        retention_seconds: int,
    ) -> Tuple[bool, int, float]:
        with self._lock:
            self._log_horizon_seconds = max(
                self._log_horizon_seconds, retention_seconds, window_seconds
            )
            self._sweep(now)
            log = self._logs.setdefault(key, deque())
            horizon = now - max(retention_seconds, window_seconds)
            while log and log[0] <= horizon:
                log.popleft()
            in_window = [ts for ts in log if ts > now - window_seconds]
            oldest = in_window[0] if in_window else now
            if len(in_window) >= max_attempts:
                return False, len(in_window), oldest
            log.append(now)
            return True, len(in_window) + 1, oldest

    async def increment_window(
        self, key: str, window_seconds: int, max_attempts: int
    ) -> Tuple[bool, int]:
        return self._increment(key, window_seconds, max_attempts)

    async def append_to_log(
        self,
        key: str,
        now: float,
        window_seconds: int,
        max_attempts: int,
        *,
        retention_seconds: int,
    ) -> Tuple[bool, int, float]:
        return self._append(key, now, window_seconds, max_attempts, retention_seconds)

    async def log_entries(self, key: str, limit: int) -> List[float]:
        with self._lock:
            entries = list(self._logs.get(key, ()))
        return list(reversed(entries))[:limit]


class RateLimiter:
    """Per-identity throttling for auth-sensitive actions.

    Backend failures fail open: the attempt is allowed and the failure is
    logged, so an unreachable store never blocks authentication.
    """

    def __init__(
        self,
        backend: RateLimitBackend,
        *,
        clock: Callable[[], float] = time.time,
        timeout: Optional[float] = None,
        log_retention_seconds: int = DEFAULT_LOG_RETENTION_SECONDS,
    ) -> None:
        self.backend = backend
        self._clock = clock
        self._timeout = timeout
        self._log_retention_seconds = log_retention_seconds

    async def _bounded(self, awaitable):
        if self._timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self._timeout)

    async def check_and_increment(
        self,
        identity_key: str,
        action: str,
        window_seconds: int,
        max_attempts: int,
    ) -> RateLimitDecision:
        """Atomically count one attempt in the current fixed window.

        Denied attempts are not counted.
        """
        now = self._clock()
        if max_attempts <= 0:
            return RateLimitDecision(allowed=True, remaining=0, reset_at=now)
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", action=action, window_seconds=window_seconds)
            window_seconds = 60
        window_start = int(now // window_seconds) * window_seconds
        reset_at = float(window_start + window_seconds)
        key = rate_key(action, identity_key, window_start)
        try:
            allowed, count = await self._bounded(
                self.backend.increment_window(key, window_seconds, max_attempts)
            )
        except Exception as exc:
            logger.error(
                "rate_limit_backend_unavailable",
                action=action,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return RateLimitDecision(allowed=True, remaining=max_attempts, reset_at=reset_at)
        if not allowed:
            logger.warning("rate_limit_exceeded", action=action, count=count)
        return RateLimitDecision(
            allowed=allowed,
            remaining=max(0, max_attempts - count),
            reset_at=reset_at,
        )

    async def check_sliding_window(
        self,
        identity_key: str,
        action: str,
        window_seconds: int,
        max_attempts: int,
    ) -> RateLimitDecision:
        """Allow while fewer than ``max_attempts`` logged attempts fall in the trailing window."""
        now = self._clock()
        if max_attempts <= 0:
            return RateLimitDecision(allowed=True, remaining=0, reset_at=now)
        key = rate_key(action, identity_key)
        try:
            allowed, count, oldest = await self._bounded(
                self.backend.append_to_log(
                    key,
                    now,
                    window_seconds,
                    max_attempts,
                    retention_seconds=self._log_retention_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "rate_limit_backend_unavailable",
                action=action,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return RateLimitDecision(
                allowed=True, remaining=max_attempts, reset_at=now + window_seconds
            )
        if not allowed:
            logger.warning("rate_limit_exceeded", action=action, count=count)
        return RateLimitDecision(
            allowed=allowed,
            remaining=max(0, max_attempts - count),
            reset_at=oldest + window_seconds,
        )

    async def recent_attempts(
        self, identity_key: str, action: str, *, limit: int = 5
    ) -> List[float]:
        """Newest-first timestamps from the sliding log of ``action``."""
        key = rate_key(action, identity_key)
        try:
            return await self._bounded(self.backend.log_entries(key, limit))
        except Exception as exc:
            logger.error("rate_limit_log_unavailable", action=action, error=str(exc))
            return []

    async def enforce(
        self,
        identity_key: str,
        action: str,
        window_seconds: int,
        max_attempts: int,
        *,
        message: str,
        sliding: bool = False,
    ) -> RateLimitDecision:
        """Count an attempt and raise ``RateLimitExceededError`` when it is denied."""
        check = self.check_sliding_window if sliding else self.check_and_increment
        decision = await check(identity_key, action, window_seconds, max_attempts)
        if not decision.allowed:
            raise RateLimitExceededError(message, retry_after=decision.retry_after(self._clock()))
        return decision
