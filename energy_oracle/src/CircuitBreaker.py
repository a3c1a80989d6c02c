"""CircuitBreaker: Per-provider failure isolation.

Each provider gets its own breaker so one dead source cannot stall a whole
consensus round; its slot is simply dropped from the round.

State machine:
    - CLOSED: calls pass. Failures accumulate; at ``failure_threshold`` the
      breaker opens. Failures further apart than ``monitoring_period`` do not
      accumulate (the count restarts).
    - OPEN: calls short-circuit with CircuitOpenError. Once
      ``recovery_timeout`` has elapsed since ``opened_at`` the breaker moves to
      HALF_OPEN.
    - HALF_OPEN: exactly one trial call is admitted. Success closes the
      breaker, failure re-opens it with a fresh ``opened_at``.

.. code-block:: python

    >>> board = CircuitBreakerBoard(CircuitBreakerConfig(failure_threshold=2))
    >>> breaker = board.get("meter-a")
    >>> breaker.record_failure(); breaker.record_failure()
    >>> breaker.state
    <CircuitStateName.OPEN: 'OPEN'>
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .ProviderRegistry import ConfigurationError

logger = logging.getLogger(__name__)


class CircuitStateName(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitOpenError(Exception):
    """Raised when a call is short-circuited by an open breaker.

    :ivar provider_id: Provider whose breaker rejected the call.
    :ivar retry_after: Seconds until the breaker may admit a trial call.
    """

    def __init__(self, provider_id: str, retry_after: float = 0.0):
        self.provider_id = provider_id
        self.retry_after = retry_after
        super().__init__(f"Circuit open for provider '{provider_id}' (retry in {retry_after:.1f}s)")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Circuit breaker parameters.

    :ivar failure_threshold: Failures in CLOSED state that open the breaker.
    :ivar recovery_timeout: Seconds an open breaker waits before a trial call.
    :ivar monitoring_period: Seconds after which an old failure stops counting.
    """

    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    monitoring_period: float = 300.0

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be at least 1")
        if self.recovery_timeout < 0:
            raise ConfigurationError("recovery_timeout must not be negative")
        if self.monitoring_period <= 0:
            raise ConfigurationError("monitoring_period must be positive")


@dataclass
class CircuitState:
    """Snapshot of one provider's breaker.

    :ivar provider_id: Provider id.
    :ivar state: Current state.
    :ivar failure_count: Failures counted toward the threshold.
    :ivar opened_at: Unix timestamp the breaker last opened, or None.
    :ivar last_failure_at: Unix timestamp of the most recent failure, or None.
    """

    provider_id: str
    state: CircuitStateName = CircuitStateName.CLOSED
    failure_count: int = 0
    opened_at: float | None = None
    last_failure_at: float | None = None


class CircuitBreaker:
    """Breaker for a single provider.

    All transitions happen under the breaker's own lock.
    """

    def __init__(
        self,
        provider_id: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.provider_id = provider_id
        self.config = config or CircuitBreakerConfig()
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._state = CircuitState(provider_id=provider_id)
        self._trial_in_flight = False

    def _refresh(self, now: float) -> None:
        """Move OPEN to HALF_OPEN once the recovery timeout has elapsed."""
        s = self._state
        if (
            s.state is CircuitStateName.OPEN
            and s.opened_at is not None
            and now - s.opened_at >= self.config.recovery_timeout
        ):
            s.state = CircuitStateName.HALF_OPEN
            self._trial_in_flight = False
            logger.info(f"[{self.provider_id}] Circuit half-open, admitting one trial call")

    def _open(self, now: float) -> None:
        self._state.state = CircuitStateName.OPEN
        self._state.opened_at = now
        self._trial_in_flight = False
        logger.warning(
            f"[{self.provider_id}] Circuit opened after {self._state.failure_count} failures"
        )

    @property
    def state(self) -> CircuitStateName:
        with self._lock:
            self._refresh(self._clock())
            return self._state.state

    def snapshot(self) -> CircuitState:
        with self._lock:
            self._refresh(self._clock())
            s = self._state
            return CircuitState(
                provider_id=s.provider_id,
                state=s.state,
                failure_count=s.failure_count,
                opened_at=s.opened_at,
                last_failure_at=s.last_failure_at,
            )

    def is_open(self) -> bool:
        return self.state is CircuitStateName.OPEN

    def before_call(self) -> None:
        """Admit or reject a call.

        :raises CircuitOpenError: If the breaker is OPEN, or HALF_OPEN with
            its single trial call already taken.
        """
        with self._lock:
            now = self._clock()
            self._refresh(now)
            s = self._state
            if s.state is CircuitStateName.CLOSED:
                return
            if s.state is CircuitStateName.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return
            retry_after = 0.0
            if s.opened_at is not None:
                retry_after = max(0.0, s.opened_at + self.config.recovery_timeout - now)
            raise CircuitOpenError(self.provider_id, retry_after)

    def record_success(self) -> None:
        with self._lock:
            s = self._state
            if s.state is not CircuitStateName.CLOSED:
                logger.info(f"[{self.provider_id}] Circuit closed after successful trial call")
            s.state = CircuitStateName.CLOSED
            s.failure_count = 0
            s.opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._refresh(now)
            s = self._state
            if s.state is CircuitStateName.HALF_OPEN:
                s.failure_count += 1
                s.last_failure_at = now
                self._open(now)
                return
            if s.state is CircuitStateName.OPEN:
                s.last_failure_at = now
                return
            if (
                s.last_failure_at is not None
                and now - s.last_failure_at > self.config.monitoring_period
            ):
                s.failure_count = 0
            s.failure_count += 1
            s.last_failure_at = now
            if s.failure_count >= self.config.failure_threshold:
                self._open(now)

    def release_trial(self) -> None:
        """Give back an unused HALF_OPEN trial slot (call was never made)."""
        with self._lock:
            self._trial_in_flight = False

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState(provider_id=self.provider_id)
            self._trial_in_flight = False


class CircuitBreakerBoard:
    """One CircuitBreaker per provider, created on first use."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._guard = threading.Lock()

    def get(self, provider_id: str) -> CircuitBreaker:
        breaker = self._breakers.get(provider_id)
        if breaker is None:
            with self._guard:
                breaker = self._breakers.setdefault(
                    provider_id,
                    CircuitBreaker(provider_id, self.config, clock=self._clock),
                )
        return breaker

    def get_all_states(self) -> dict[str, CircuitState]:
        return {pid: b.snapshot() for pid, b in list(self._breakers.items())}
