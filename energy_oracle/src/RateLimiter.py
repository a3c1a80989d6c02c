"""RateLimiter: Fixed-window request limiting per operation and caller.

Windows are keyed by ``(operation, caller)``. The first call, or the first
call after ``reset_at``, opens a fresh window; each call increments the
count and calls beyond ``max_requests`` are rejected until the window ends.
Every decision carries the limit/remaining/reset metadata so callers can
throttle themselves.

State lives behind the ``RateLimitStore`` protocol. The default in-memory
store suits a single instance; a multi-instance deployment needs a shared
store implementation.

.. code-block:: python

    >>> limiter = RateLimiter({"verify": RateLimitRule(window_ms=60_000, max_requests=2)})
    >>> limiter.check("verify", "user-1").allowed
    True
    >>> limiter.check("verify", "user-1").remaining
    0
    >>> limiter.check("verify", "user-1").allowed
    False
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from .ProviderRegistry import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    """Limit for one operation type.

    :ivar window_ms: Window length in milliseconds.
    :ivar max_requests: Calls allowed per window.
    :ivar message: Human-readable rejection message.
    """

    window_ms: int
    max_requests: int
    message: str = "Rate limit exceeded"

    def __post_init__(self) -> None:
        if self.window_ms <= 0:
            raise ConfigurationError("window_ms must be positive")
        if self.max_requests < 1:
            raise ConfigurationError("max_requests must be at least 1")


HOUR_MS = 60 * 60 * 1000

DEFAULT_RATE_LIMITS: dict[str, RateLimitRule] = {
    "verify": RateLimitRule(HOUR_MS, 20, "Too many verification requests. Maximum 20 per hour."),
    "subscribe": RateLimitRule(HOUR_MS, 100, "Too many oracle requests. Please try again later."),
    "feeds": RateLimitRule(HOUR_MS, 10_000, "Too many requests. Please try again later."),
    "health": RateLimitRule(HOUR_MS, 10_000, "Too many requests. Please try again later."),
}


@dataclass
class RateLimitWindow:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one rate-limit check.

    :ivar allowed: Whether the call may proceed.
    :ivar limit: Calls allowed per window.
    :ivar remaining: Calls left in the current window.
    :ivar reset_at: Unix seconds when the window ends.
    :ivar current: Calls counted in the window, this one included.
    :ivar retry_after_seconds: Whole seconds until the window ends (rejections).
    :ivar operation: Operation type checked.
    :ivar message: Rejection message.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    current: int
    retry_after_seconds: int = 0
    operation: str = ""
    message: str = ""

    def headers(self) -> dict[str, str]:
        """``X-RateLimit-*`` response headers (plus Retry-After on rejection)."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at))),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class RateLimitExceeded(Exception):
    """Raised by ``RateLimiter.enforce`` when a caller is over its limit.

    :ivar decision: The rejecting decision (metadata for the response).
    """

    def __init__(self, decision: RateLimitDecision):
        self.decision = decision
        super().__init__(
            f"{decision.message or 'Rate limit exceeded'} "
            f"(retry after {decision.retry_after_seconds}s)"
        )

    @property
    def retry_after_seconds(self) -> int:
        return self.decision.retry_after_seconds


class RateLimitStore(Protocol):
    def get(self, key: str) -> RateLimitWindow | None: ...

    def set(self, key: str, window: RateLimitWindow) -> None: ...

    def delete(self, key: str) -> None: ...

    def expired_keys(self, now: float) -> list[str]: ...


class InMemoryRateLimitStore:
    """Dict-backed store for single-instance deployments."""

    def __init__(self) -> None:
        self._windows: dict[str, RateLimitWindow] = {}

    def get(self, key: str) -> RateLimitWindow | None:
        return self._windows.get(key)

    def set(self, key: str, window: RateLimitWindow) -> None:
        self._windows[key] = window

    def delete(self, key: str) -> None:
        self._windows.pop(key, None)

    def expired_keys(self, now: float) -> list[str]:
        """Keys whose window reset time has passed."""
        return [key for key, window in list(self._windows.items()) if now >= window.reset_at]

    def __len__(self) -> int:
        return len(self._windows)


class RateLimiter:
    """Fixed-window limiter with striped per-key locking.

    :ivar rules: Operation type -> rule.
    :ivar store: Window storage.
    """

    LOCK_STRIPES = 64

    def __init__(
        self,
        rules: dict[str, RateLimitRule] | None = None,
        store: RateLimitStore | None = None,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.rules = dict(DEFAULT_RATE_LIMITS if rules is None else rules)
        self.store = store if store is not None else InMemoryRateLimitStore()
        self._clock = clock or time.time
        self._locks = [threading.Lock() for _ in range(self.LOCK_STRIPES)]

    @staticmethod
    def key(operation: str, caller: str) -> str:
        return f"ratelimit:{caller}:{operation}"

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % self.LOCK_STRIPES]

    def rule_for(self, operation: str) -> RateLimitRule:
        try:
            return self.rules[operation]
        except KeyError:
            raise ConfigurationError(f"No rate limit configured for operation '{operation}'") from None

    def check(self, operation: str, caller: str) -> RateLimitDecision:
        """Count a call and decide whether it is allowed.

        :param operation: Operation type (e.g. "verify").
        :param caller: Caller identity (user id or network address).
        :returns: RateLimitDecision.
        :raises ConfigurationError: If the operation has no rule.
        """
        rule = self.rule_for(operation)
        key = self.key(operation, caller)

        with self._lock_for(key):
            now = self._clock()
            window = self.store.get(key)
            if window is None or now >= window.reset_at:
                window = RateLimitWindow(count=0, reset_at=now + rule.window_ms / 1000.0)
            window.count += 1
            self.store.set(key, window)
            count, reset_at = window.count, window.reset_at

        allowed = count <= rule.max_requests
        decision = RateLimitDecision(
            allowed=allowed,
            limit=rule.max_requests,
            remaining=max(0, rule.max_requests - count),
            reset_at=reset_at,
            current=count,
            retry_after_seconds=0 if allowed else max(1, math.ceil(reset_at - now)),
            operation=operation,
            message="" if allowed else rule.message,
        )
        if not allowed:
            logger.warning(f"Rate limit exceeded: {key} ({count}/{rule.max_requests})")
        elif decision.remaining < 5:
            logger.debug(f"Rate limit warning: {key} - {decision.remaining} requests remaining")
        return decision

    def enforce(self, operation: str, caller: str) -> RateLimitDecision:
        """Like ``check`` but raise on rejection.

        :raises RateLimitExceeded: If the caller is over its limit.
        """
        decision = self.check(operation, caller)
        if not decision.allowed:
            raise RateLimitExceeded(decision)
        return decision

    def status(self, operation: str, caller: str) -> RateLimitDecision:
        """Current window state without counting a call."""
        rule = self.rule_for(operation)
        key = self.key(operation, caller)
        with self._lock_for(key):
            now = self._clock()
            window = self.store.get(key)
        if window is None or now >= window.reset_at:
            return RateLimitDecision(True, rule.max_requests, rule.max_requests, now, 0, operation=operation)
        return RateLimitDecision(
            allowed=window.count < rule.max_requests,
            limit=rule.max_requests,
            remaining=max(0, rule.max_requests - window.count),
            reset_at=window.reset_at,
            current=window.count,
            operation=operation,
        )

    def clear(self, operation: str, caller: str) -> None:
        """Drop a caller's window (operator action)."""
        key = self.key(operation, caller)
        with self._lock_for(key):
            self.store.delete(key)

    def sweep(self) -> int:
        """Evict expired windows to bound memory.

        Each key is re-checked under its stripe lock, so a window that a
        concurrent ``check`` renewed after the listing survives.

        :returns: Number of evicted windows.
        """
        now = self._clock()
        evicted = 0
        for key in self.store.expired_keys(now):
            with self._lock_for(key):
                window = self.store.get(key)
                if window is not None and now >= window.reset_at:
                    self.store.delete(key)
                    evicted += 1
        if evicted:
            logger.debug(f"Rate limiter swept {evicted} expired windows")
        return evicted
