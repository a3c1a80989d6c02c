"""OracleOrchestrator: One milestone verification cycle, end to end.

Architecture:
    - Select eligible providers: enabled and circuit not OPEN (a HALF_OPEN
      provider takes part as the breaker's single trial call)
    - Fetch from every eligible provider concurrently; each fetch has its own
      timeout and retry budget, and the cycle as a whole has an outer deadline
    - Record every outcome in the ReputationTracker, CircuitBreaker and
      FeedMonitor
    - Run the ConsensusEngine with the post-update weights
    - Report consensus outliers and stale feeds to the FeedMonitor
    - Build, save and return a VerificationRecord

Per-provider problems never escape as exceptions: the result is always a
VerificationRecord, FAILED when consensus could not be formed.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .AlgorithmParameters import AlgorithmConfig
from .CircuitBreaker import CircuitBreakerBoard, CircuitOpenError, CircuitStateName
from .ConsensusEngine import ConsensusConfig, ConsensusEngine, ConsensusResult
from .FeedFetcher import FeedFetcher, FetchError, FetchErrorReason, FetchOutcome, Reading
from .FeedMonitor import FeedMonitor
from .ProviderRegistry import ProviderConfig, ProviderNotFoundError, ProviderRegistry
from .ReputationTracker import ReputationTracker
from .Stores import InMemoryVerificationStore, VerificationStore

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHM_VERSION = "1.0.0"


class VerificationStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"
    DISPUTED = "DISPUTED"


class FailureReason(str, Enum):
    NO_ELIGIBLE_PROVIDERS = "NO_ELIGIBLE_PROVIDERS"
    INSUFFICIENT_SOURCES = "INSUFFICIENT_SOURCES"
    NO_CONSENSUS = "NO_CONSENSUS"


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class VerificationRecord:
    """Result of one verification cycle for a milestone.

    :ivar milestone_id: Milestone being verified.
    :ivar consensus_result: Consensus outcome (always present).
    :ivar algorithm_version: Version of the verification algorithm.
    :ivar status: VERIFIED when consensus was reached, else FAILED.
    :ivar created_at: Unix seconds.
    :ivar failure_reason: Why the cycle failed, None when VERIFIED.
    :ivar provider_ids: Providers the cycle dispatched fetches to.
    :ivar id: Record id.
    """

    milestone_id: str
    consensus_result: ConsensusResult
    algorithm_version: str
    status: VerificationStatus
    created_at: float = field(default_factory=time.time)
    failure_reason: FailureReason | None = None
    provider_ids: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def settlement_payload(self) -> dict[str, Any]:
        """Fields the settlement workflow consumes, unchanged."""
        return {
            "milestoneId": self.milestone_id,
            "value": self.consensus_result.value,
            "confidence": self.consensus_result.confidence,
            "status": self.status.value,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "milestoneId": self.milestone_id,
            "status": self.status.value,
            "failureReason": self.failure_reason.value if self.failure_reason else None,
            "algorithmVersion": self.algorithm_version,
            "createdAt": _iso(self.created_at),
            "providerIds": list(self.provider_ids),
            "consensusResult": self.consensus_result.to_dict(),
        }


class OracleOrchestrator:
    """Coordinates providers, consensus and reliability state.

    :ivar registry: Provider configuration.
    :ivar reputation: Per-provider reputation.
    :ivar breakers: Per-provider circuit breakers.
    :ivar fetcher: Provider reader.
    :ivar engine: Consensus engine.
    :ivar store: Verification record store.
    :ivar algorithm: Active algorithm (None keeps the engine configuration).
    :ivar monitor: Feed quality metrics and alerts.
    :ivar cycle_margin: Seconds added to the slowest provider budget to form
        the cycle deadline.
    """

    DEFAULT_CYCLE_MARGIN_MS = 1000

    def __init__(
        self,
        registry: ProviderRegistry,
        reputation: ReputationTracker,
        breakers: CircuitBreakerBoard,
        fetcher: FeedFetcher,
        engine: ConsensusEngine,
        *,
        store: VerificationStore | None = None,
        algorithm: AlgorithmConfig | None = None,
        monitor: FeedMonitor | None = None,
        cycle_margin_ms: int = DEFAULT_CYCLE_MARGIN_MS,
    ) -> None:
        self.registry = registry
        self.reputation = reputation
        self.breakers = breakers
        self.fetcher = fetcher
        self.engine = engine
        self.store = store if store is not None else InMemoryVerificationStore()
        self.algorithm = algorithm
        self.monitor = monitor if monitor is not None else FeedMonitor()
        self.cycle_margin = cycle_margin_ms / 1000.0

    @property
    def consensus_config(self) -> ConsensusConfig:
        if self.algorithm is None:
            return self.engine.config
        return self.algorithm.consensus_config(self.engine.config)

    @property
    def algorithm_version(self) -> str:
        return self.algorithm.version if self.algorithm else DEFAULT_ALGORITHM_VERSION

    def select_providers(self, provider_ids: list[str] | None = None) -> list[ProviderConfig]:
        """Admit eligible providers for a cycle.

        Admission consumes the HALF_OPEN trial slot of a recovering provider,
        so the returned providers must be fetched.

        :param provider_ids: Restrict the cycle to these providers.
        :returns: Providers admitted for fetching.
        """
        if provider_ids is None:
            candidates = self.registry.list_providers()
        else:
            candidates = []
            for pid in dict.fromkeys(provider_ids):
                try:
                    candidates.append(self.registry.get(pid))
                except ProviderNotFoundError:
                    logger.warning(f"[{pid}] Ignoring unknown provider in verification request")

        admitted: list[ProviderConfig] = []
        for provider in candidates:
            if not provider.enabled:
                logger.debug(f"[{provider.id}] Skipped: disabled")
                continue
            try:
                self.breakers.get(provider.id).before_call()
            except CircuitOpenError as e:
                logger.info(f"[{provider.id}] Skipped: {e}")
                continue
            admitted.append(provider)
        return admitted

    def cycle_deadline(self, providers: list[ProviderConfig]) -> float:
        """Outer deadline of a cycle, seconds."""
        budgets = [self.fetcher.retry_policy.budget(p) for p in providers]
        return max(budgets, default=0.0) + self.cycle_margin

    async def _fetch_all(self, providers: list[ProviderConfig]) -> dict[str, FetchOutcome]:
        tasks = {p.id: asyncio.create_task(self.fetcher.fetch(p)) for p in providers}
        deadline = self.cycle_deadline(providers)
        try:
            _, pending = await asyncio.wait(tasks.values(), timeout=deadline)
        finally:
            stragglers = [t for t in tasks.values() if not t.done()]
            for task in stragglers:
                task.cancel()
            if stragglers:
                await asyncio.gather(*stragglers, return_exceptions=True)

        outcomes: dict[str, FetchOutcome] = {}
        for pid, task in tasks.items():
            if task in pending or task.cancelled():
                logger.warning(f"[{pid}] Still pending at cycle deadline ({deadline:.1f}s)")
                outcomes[pid] = FetchError(
                    pid, FetchErrorReason.TIMEOUT, f"Cycle deadline of {deadline:.1f}s exceeded"
                )
                continue
            exc = task.exception()
            if exc is not None:
                logger.error(f"[{pid}] Fetch crashed: {exc!r}")
                outcomes[pid] = FetchError(pid, FetchErrorReason.NETWORK, repr(exc))
            else:
                outcomes[pid] = task.result()
        return outcomes

    def _record_outcomes(self, outcomes: dict[str, FetchOutcome]) -> None:
        for pid, outcome in outcomes.items():
            breaker = self.breakers.get(pid)
            if isinstance(outcome, Reading):
                self.reputation.record_success(pid, outcome.response_time_ms)
                breaker.record_success()
            else:
                self.reputation.record_failure(pid)
                breaker.record_failure()
                self.reputation.disable_if_exhausted(pid)
            self.monitor.record_outcome(pid, outcome)

    async def run_verification_cycle(
        self,
        milestone_id: str,
        provider_ids: list[str] | None = None,
    ) -> VerificationRecord:
        """Verify a milestone against the current provider readings.

        :param milestone_id: Milestone to verify.
        :param provider_ids: Optional subset of providers to consult.
        :returns: VerificationRecord (VERIFIED or FAILED).
        """
        providers = self.select_providers(provider_ids)

        if not providers:
            logger.warning(f"[{milestone_id}] No eligible oracle providers, skipping fetch")
            record = VerificationRecord(
                milestone_id=milestone_id,
                consensus_result=ConsensusResult(
                    value=None,
                    confidence=0.0,
                    source_count=0,
                    consensus_reached=False,
                    timestamp=time.time(),
                ),
                algorithm_version=self.algorithm_version,
                status=VerificationStatus.FAILED,
                failure_reason=FailureReason.NO_ELIGIBLE_PROVIDERS,
            )
            self._save(record)
            return record

        logger.info(
            f"[{milestone_id}] Verification cycle with {len(providers)} providers: "
            f"{[p.id for p in providers]}"
        )
        try:
            outcomes = await self._fetch_all(providers)
        except asyncio.CancelledError:
            for provider in providers:
                self.breakers.get(provider.id).release_trial()
            raise
        self._record_outcomes(outcomes)

        weights = {pid: self.reputation.get_weight(pid) for pid in outcomes}
        fallback_confidence = {
            pid: self.reputation.get_score(pid) / self.reputation.config.max_reputation
            for pid in outcomes
        }
        config = self.consensus_config
        result = self.engine.compute(outcomes, weights, fallback_confidence, config=config)
        self.monitor.record_outliers(result, outcomes)
        self.monitor.check_staleness(outcomes)

        candidates = sum(1 for o in outcomes.values() if isinstance(o, Reading))
        if result.consensus_reached:
            status, reason = VerificationStatus.VERIFIED, None
        elif candidates < config.min_sources:
            status, reason = VerificationStatus.FAILED, FailureReason.INSUFFICIENT_SOURCES
        else:
            status, reason = VerificationStatus.FAILED, FailureReason.NO_CONSENSUS

        record = VerificationRecord(
            milestone_id=milestone_id,
            consensus_result=result,
            algorithm_version=self.algorithm_version,
            status=status,
            failure_reason=reason,
            provider_ids=[p.id for p in providers],
        )
        self._save(record)
        logger.info(
            f"[{milestone_id}] Verification {status.value}"
            + (f" ({reason.value})" if reason else "")
            + f": value={result.value}, confidence={result.confidence:.3f}"
        )
        return record

    def _save(self, record: VerificationRecord) -> None:
        try:
            self.store.save(record)
        except Exception:
            logger.exception(f"[{record.milestone_id}] Failed to persist verification record {record.id}")

    def provider_health(self, provider_id: str) -> dict[str, Any]:
        """Health view of one provider.

        :param provider_id: Provider id.
        :returns: Connection flag, reliability percent, last and rolling
            latency, success rate, uptime, data quality and last check.
        :raises ProviderNotFoundError: If the provider is unknown.
        """
        provider = self.registry.get(provider_id)
        record = self.reputation.get_record(provider_id)
        circuit = self.breakers.get(provider_id).snapshot()
        metrics = self.monitor.metrics(provider_id)
        last_check = max(
            (t for t in (record.last_success_at, record.last_failure_at) if t is not None),
            default=None,
        )
        return {
            "providerId": provider_id,
            "isConnected": (
                provider.enabled
                and circuit.state is not CircuitStateName.OPEN
                and record.consecutive_failures == 0
            ),
            "enabled": provider.enabled,
            "reliability": round(record.score / self.reputation.config.max_reputation * 100.0, 2),
            "responseTime": record.last_response_ms,
            "averageResponseTime": metrics.average_response_ms,
            "successRate": round(metrics.success_rate * 100.0, 2),
            "uptime": round(metrics.uptime * 100.0, 2),
            "dataQuality": metrics.quality.value,
            "lastHealthCheck": _iso(last_check),
            "circuitState": circuit.state.value,
            "consecutiveFailures": record.consecutive_failures,
        }

    def reset_provider(self, provider_id: str) -> dict[str, Any]:
        """Operator reset: reputation, circuit, enabled flag and feed metrics.

        :raises ProviderNotFoundError: If the provider is unknown.
        """
        self.reputation.reset(provider_id)
        self.breakers.get(provider_id).reset()
        self.monitor.reset(provider_id)
        return self.provider_health(provider_id)
