"""ReputationTracker: Per-provider reliability score with decay and recovery.

Every fetch attempt outcome feeds the tracker. A failure subtracts a fixed
penalty, a success adds a small bonus (or the larger recovery bonus when it
ends a failure streak). Scores are clamped to [min_reputation, max_reputation].

The score scales a provider's static weight in consensus:
``weight = provider.weight * score / max_reputation``.

A provider whose failure streak reaches ``max_consecutive_failures`` is
disabled in the ProviderRegistry and stays disabled until an operator calls
``reset()``. This is independent of the circuit breaker, which recovers on
its own.

.. code-block:: python

    >>> tracker = ReputationTracker(registry, ReputationConfig())
    >>> tracker.record_failure("meter-a")
    95.0
    >>> tracker.record_success("meter-a")
    97.0
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable

from .ProviderRegistry import ConfigurationError, ProviderRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReputationConfig:
    """Reputation tuning parameters.

    :ivar max_reputation: Upper score bound (a fully trusted provider).
    :ivar min_reputation: Lower score bound.
    :ivar failure_penalty: Subtracted on each failure.
    :ivar success_bonus: Added on a success outside a failure streak.
    :ivar recovery_rate: Added on the success that ends a failure streak.
    :ivar max_consecutive_failures: Streak length that disables a provider.
    """

    max_reputation: float = 100.0
    min_reputation: float = 10.0
    failure_penalty: float = 5.0
    success_bonus: float = 1.0
    recovery_rate: float = 2.0
    max_consecutive_failures: int = 10

    def __post_init__(self) -> None:
        if self.max_reputation <= 0:
            raise ConfigurationError("max_reputation must be positive")
        if not 0 <= self.min_reputation <= self.max_reputation:
            raise ConfigurationError("min_reputation must be within [0, max_reputation]")
        if self.failure_penalty < 0 or self.success_bonus < 0 or self.recovery_rate < 0:
            raise ConfigurationError("Reputation adjustments must not be negative")
        if self.max_consecutive_failures < 1:
            raise ConfigurationError("max_consecutive_failures must be at least 1")


@dataclass
class ReputationRecord:
    """Reliability state of one provider.

    :ivar provider_id: Provider id.
    :ivar score: Current score, always within the configured bounds.
    :ivar consecutive_failures: Current failure streak.
    :ivar last_updated: Unix timestamp of the last change.
    :ivar total_successes: Successes since tracking began.
    :ivar total_failures: Failures since tracking began.
    :ivar last_response_ms: Latency of the most recent successful fetch.
    :ivar last_success_at: Unix timestamp of the most recent success.
    :ivar last_failure_at: Unix timestamp of the most recent failure.
    """

    provider_id: str
    score: float
    consecutive_failures: int = 0
    last_updated: float = 0.0
    total_successes: int = 0
    total_failures: int = 0
    last_response_ms: float | None = None
    last_success_at: float | None = None
    last_failure_at: float | None = None


class ReputationTracker:
    """Tracks and updates per-provider reputation.

    Each provider record is guarded by its own lock so that concurrent
    verification cycles never lose an update, while different providers are
    updated in parallel.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        config: ReputationConfig | None = None,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """Initialize records from each provider's initial reputation.

        :param registry: Provider registry (weights, enable switch).
        :param config: Reputation parameters.
        :param clock: Time source returning Unix seconds (default: time.time).
        """
        self.registry = registry
        self.config = config or ReputationConfig()
        self._clock = clock or time.time
        self._records: dict[str, ReputationRecord] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        for provider in registry.list_providers():
            self._records[provider.id] = self._initial_record(provider.id)
            self._locks[provider.id] = threading.Lock()

    def _initial_record(self, provider_id: str) -> ReputationRecord:
        provider = self.registry.get(provider_id)
        score = self._clamp(provider.initial_reputation)
        return ReputationRecord(provider_id=provider_id, score=score, last_updated=self._clock())

    def _clamp(self, score: float) -> float:
        return max(self.config.min_reputation, min(self.config.max_reputation, score))

    def _lock_for(self, provider_id: str) -> threading.Lock:
        lock = self._locks.get(provider_id)
        if lock is None:
            with self._guard:
                lock = self._locks.get(provider_id)
                if lock is None:
                    # Validates that the provider exists before tracking it
                    self._records[provider_id] = self._initial_record(provider_id)
                    lock = self._locks[provider_id] = threading.Lock()
        return lock

    def record_success(self, provider_id: str, response_time_ms: float | None = None) -> float:
        """Record a successful fetch.

        :param provider_id: Provider that succeeded.
        :param response_time_ms: Optional latency of the fetch.
        :returns: The new score.
        """
        with self._lock_for(provider_id):
            record = self._records[provider_id]
            bonus = self.config.recovery_rate if record.consecutive_failures > 0 else self.config.success_bonus
            record.score = self._clamp(record.score + bonus)
            record.consecutive_failures = 0
            record.total_successes += 1
            now = self._clock()
            record.last_updated = now
            record.last_success_at = now
            if response_time_ms is not None:
                record.last_response_ms = response_time_ms
            return record.score

    def record_failure(self, provider_id: str) -> float:
        """Record a failed fetch.

        :param provider_id: Provider that failed.
        :returns: The new score.
        """
        with self._lock_for(provider_id):
            record = self._records[provider_id]
            record.consecutive_failures += 1
            record.total_failures += 1
            record.score = self._clamp(record.score - self.config.failure_penalty)
            now = self._clock()
            record.last_updated = now
            record.last_failure_at = now
            if record.consecutive_failures > 1:
                logger.debug(
                    f"[{provider_id}] Failure streak {record.consecutive_failures}, "
                    f"reputation {record.score:.1f}"
                )
            return record.score

    def disable_if_exhausted(self, provider_id: str) -> bool:
        """Disable a provider whose failure streak reached the limit.

        :param provider_id: Provider to check.
        :returns: True if the provider was disabled by this call.
        """
        with self._lock_for(provider_id):
            streak = self._records[provider_id].consecutive_failures
        if streak < self.config.max_consecutive_failures:
            return False
        if not self.registry.get(provider_id).enabled:
            return False
        self.registry.set_enabled(provider_id, False)
        logger.warning(
            f"[{provider_id}] Disabled after {streak} consecutive failures; "
            "operator reset required"
        )
        return True

    def reset(self, provider_id: str) -> ReputationRecord:
        """Operator reset: restore the initial score and re-enable the provider.

        :param provider_id: Provider to reset.
        :returns: The fresh record.
        """
        with self._lock_for(provider_id):
            record = self._initial_record(provider_id)
            self._records[provider_id] = record
        self.registry.set_enabled(provider_id, True)
        logger.info(f"[{provider_id}] Reputation reset to {record.score:.1f}")
        return record

    def get_record(self, provider_id: str) -> ReputationRecord:
        """Get a snapshot of a provider's record."""
        with self._lock_for(provider_id):
            return replace(self._records[provider_id])

    def get_score(self, provider_id: str) -> float:
        with self._lock_for(provider_id):
            return self._records[provider_id].score

    def get_weight(self, provider_id: str) -> float:
        """Reputation-scaled consensus weight of a provider.

        :param provider_id: Provider id.
        :returns: ``provider.weight * score / max_reputation``.
        """
        provider = self.registry.get(provider_id)
        return provider.weight * (self.get_score(provider_id) / self.config.max_reputation)

    def reliability(self, provider_id: str) -> float:
        """Score as a percentage of ``max_reputation``."""
        return self.get_score(provider_id) / self.config.max_reputation * 100.0
