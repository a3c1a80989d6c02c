"""FeedMonitor: Rolling feed quality metrics and operator alerts.

Every fetch outcome of a verification cycle is fed in. Per provider the
monitor keeps a rolling window of recent outcomes and derives:

    - success rate and failure rate over the window
    - average response time of the successful fetches in the window
    - uptime = success rate x response score (1.0 under 1s, 0.9 under 3s,
      0.7 under 5s, else 0.5)
    - a data quality rating (EXCELLENT / GOOD / FAIR / POOR)

Alerts are raised when a threshold is crossed:

    - FEED_FAILURE: window failure rate >= failure_rate
    - PERFORMANCE_DEGRADATION: average response time >= response_time_ms
    - STALE_DATA: no successful reading for staleness_ms
    - DATA_ANOMALY: a HIGH or CRITICAL consensus outlier, or
      anomalies_per_hour outliers for one provider within the last hour

Failed fetches are kept as MISSING_DATA anomalies; they escalate through
FEED_FAILURE only.

Each (alert type, provider) pair has a cooldown so a flapping feed raises one
alert, not one per cycle. Alerts and anomalies are kept most recent first,
capped at history_limit entries.

.. code-block:: python

    >>> monitor = FeedMonitor(AlertThresholds(failure_rate=0.5))
    >>> monitor.record_failure("meter-1", "TIMEOUT")[0].type
    <AlertType.FEED_FAILURE: 'FEED_FAILURE'>
    >>> monitor.metrics("meter-1").failure_rate
    1.0
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from .ConsensusEngine import ConsensusResult
from .FeedFetcher import FetchOutcome, Reading
from .ProviderRegistry import ConfigurationError

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    FEED_FAILURE = "FEED_FAILURE"
    DATA_ANOMALY = "DATA_ANOMALY"
    PERFORMANCE_DEGRADATION = "PERFORMANCE_DEGRADATION"
    STALE_DATA = "STALE_DATA"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AnomalyType(str, Enum):
    OUTLIER = "OUTLIER"
    MISSING_DATA = "MISSING_DATA"
    STALE_DATA = "STALE_DATA"


class DataQuality(str, Enum):
    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"


class AlertNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class AlertThresholds:
    """Alerting parameters.

    :ivar failure_rate: Window failure rate (0-1) that raises FEED_FAILURE.
    :ivar response_time_ms: Average latency that raises PERFORMANCE_DEGRADATION.
    :ivar staleness_ms: Time without a successful reading that raises STALE_DATA.
    :ivar anomalies_per_hour: Anomalies per provider per hour that raise DATA_ANOMALY.
    :ivar window_size: Outcomes kept per provider for the rolling metrics.
    :ivar failure_cooldown: Seconds between FEED_FAILURE or STALE_DATA alerts
        for one provider.
    :ivar performance_cooldown: Seconds between PERFORMANCE_DEGRADATION alerts.
    :ivar anomaly_cooldown: Seconds between DATA_ANOMALY alerts.
    :ivar history_limit: Alerts and anomalies retained.
    """

    failure_rate: float = 0.10
    response_time_ms: float = 5000.0
    staleness_ms: int = 600_000
    anomalies_per_hour: int = 5
    window_size: int = 100
    failure_cooldown: float = 300.0
    performance_cooldown: float = 900.0
    anomaly_cooldown: float = 300.0
    history_limit: int = 1000

    def __post_init__(self) -> None:
        if not 0.0 < self.failure_rate <= 1.0:
            raise ConfigurationError("failure_rate must be within (0, 1]")
        if self.response_time_ms <= 0 or self.staleness_ms <= 0:
            raise ConfigurationError("response_time_ms and staleness_ms must be positive")
        if self.anomalies_per_hour < 1 or self.window_size < 1 or self.history_limit < 1:
            raise ConfigurationError("anomalies_per_hour, window_size and history_limit must be at least 1")
        if min(self.failure_cooldown, self.performance_cooldown, self.anomaly_cooldown) < 0:
            raise ConfigurationError("Alert cooldowns must not be negative")


@dataclass
class Alert:
    """An operator alert.

    :ivar acknowledged_by: Who acknowledged the alert, if anyone.
    :ivar acknowledged_at: Unix seconds of the acknowledgement.
    """

    type: AlertType
    severity: Severity
    provider_id: str
    message: str
    timestamp: float
    details: dict[str, Any] = field(default_factory=dict)
    acknowledged: bool = False
    acknowledged_by: str | None = None
    acknowledged_at: float | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "providerId": self.provider_id,
            "message": self.message,
            "details": dict(self.details),
            "timestamp": self.timestamp,
            "acknowledged": self.acknowledged,
            "acknowledgedBy": self.acknowledged_by,
            "acknowledgedAt": self.acknowledged_at,
        }


@dataclass(frozen=True)
class Anomaly:
    provider_id: str
    type: AnomalyType
    severity: Severity
    description: str
    timestamp: float
    value: float | None = None
    expected_value: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "providerId": self.provider_id,
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "timestamp": self.timestamp,
            "value": self.value,
            "expectedValue": self.expected_value,
        }


@dataclass(frozen=True)
class FeedMetrics:
    """Snapshot of one provider's rolling metrics.

    :ivar window_requests: Outcomes currently in the rolling window.
    :ivar average_response_ms: Mean latency of successful fetches in the
        window, None when there are none.
    :ivar last_success_at: Unix seconds of the last successful reading.
    """

    provider_id: str
    total_requests: int = 0
    total_failures: int = 0
    window_requests: int = 0
    failure_rate: float = 0.0
    success_rate: float = 0.0
    average_response_ms: float | None = None
    uptime: float = 0.0
    quality: DataQuality = DataQuality.POOR
    last_success_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "providerId": self.provider_id,
            "totalRequests": self.total_requests,
            "totalFailures": self.total_failures,
            "windowRequests": self.window_requests,
            "failureRate": self.failure_rate,
            "successRate": self.success_rate,
            "averageResponseTime": self.average_response_ms,
            "uptime": self.uptime,
            "dataQuality": self.quality.value,
            "lastSuccessAt": self.last_success_at,
        }


@dataclass
class _FeedStats:
    samples: deque
    total_requests: int = 0
    total_failures: int = 0
    last_success_at: float | None = None


def response_score(average_response_ms: float | None) -> float:
    if average_response_ms is None:
        return 0.0
    if average_response_ms < 1000:
        return 1.0
    if average_response_ms < 3000:
        return 0.9
    if average_response_ms < 5000:
        return 0.7
    return 0.5


def quality_rating(success_rate: float, average_response_ms: float | None) -> DataQuality:
    """Rate a feed from its success rate (0-1) and average latency."""
    if average_response_ms is None:
        return DataQuality.POOR
    if success_rate >= 0.99 and average_response_ms < 1000:
        return DataQuality.EXCELLENT
    if success_rate >= 0.95 and average_response_ms < 3000:
        return DataQuality.GOOD
    if success_rate >= 0.90 and average_response_ms < 5000:
        return DataQuality.FAIR
    return DataQuality.POOR


def failure_severity(failure_rate: float) -> Severity:
    if failure_rate > 0.5:
        return Severity.CRITICAL
    if failure_rate > 0.3:
        return Severity.HIGH
    if failure_rate > 0.15:
        return Severity.MEDIUM
    return Severity.LOW


def latency_severity(response_ms: float) -> Severity:
    if response_ms > 30_000:
        return Severity.CRITICAL
    if response_ms > 15_000:
        return Severity.HIGH
    if response_ms > 10_000:
        return Severity.MEDIUM
    return Severity.LOW


def deviation_severity(deviation: float) -> Severity:
    """Severity of an outlier from its relative deviation from consensus."""
    if deviation > 0.5:
        return Severity.CRITICAL
    if deviation > 0.2:
        return Severity.HIGH
    if deviation > 0.1:
        return Severity.MEDIUM
    return Severity.LOW


class FeedMonitor:
    """Tracks feed quality per provider and raises alerts.

    :ivar thresholds: Alerting parameters.
    """

    ANOMALY_WINDOW_SECONDS = 3600

    def __init__(
        self,
        thresholds: AlertThresholds | None = None,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.thresholds = thresholds or AlertThresholds()
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._stats: dict[str, _FeedStats] = {}
        self._alerts: deque[Alert] = deque(maxlen=self.thresholds.history_limit)
        self._anomalies: deque[Anomaly] = deque(maxlen=self.thresholds.history_limit)
        self._last_alert: dict[tuple[AlertType, str], float] = {}

    def _stats_for(self, provider_id: str) -> _FeedStats:
        stats = self._stats.get(provider_id)
        if stats is None:
            stats = _FeedStats(samples=deque(maxlen=self.thresholds.window_size))
            self._stats[provider_id] = stats
        return stats

    def record_outcome(self, provider_id: str, outcome: FetchOutcome) -> list[Alert]:
        """Feed one fetch outcome in.

        :returns: Alerts raised by this outcome.
        """
        if isinstance(outcome, Reading):
            return self.record_success(provider_id, outcome.response_time_ms)
        return self.record_failure(provider_id, outcome.reason.value)

    def record_success(self, provider_id: str, response_time_ms: float | None) -> list[Alert]:
        with self._lock:
            now = self._clock()
            stats = self._stats_for(provider_id)
            stats.samples.append((True, response_time_ms))
            stats.total_requests += 1
            stats.last_success_at = now
            metrics = self._snapshot(provider_id, stats)

            alerts = []
            average = metrics.average_response_ms
            if average is not None and average >= self.thresholds.response_time_ms:
                alert = self._raise(
                    AlertType.PERFORMANCE_DEGRADATION,
                    latency_severity(average),
                    provider_id,
                    f"Average response time {average:.0f}ms exceeds {self.thresholds.response_time_ms:.0f}ms",
                    {"averageResponseTime": average, "threshold": self.thresholds.response_time_ms},
                    self.thresholds.performance_cooldown,
                    now,
                )
                if alert:
                    alerts.append(alert)
            return alerts

    def record_failure(self, provider_id: str, reason: str) -> list[Alert]:
        with self._lock:
            now = self._clock()
            stats = self._stats_for(provider_id)
            stats.samples.append((False, None))
            stats.total_requests += 1
            stats.total_failures += 1
            metrics = self._snapshot(provider_id, stats)

            self._anomalies.appendleft(
                Anomaly(
                    provider_id,
                    AnomalyType.MISSING_DATA,
                    failure_severity(metrics.failure_rate),
                    f"Fetch failed: {reason}",
                    now,
                )
            )

            alerts = []
            if metrics.failure_rate >= self.thresholds.failure_rate:
                alert = self._raise(
                    AlertType.FEED_FAILURE,
                    failure_severity(metrics.failure_rate),
                    provider_id,
                    f"Failure rate {metrics.failure_rate:.0%} over the last "
                    f"{metrics.window_requests} requests (last error: {reason})",
                    {"failureRate": metrics.failure_rate, "threshold": self.thresholds.failure_rate},
                    self.thresholds.failure_cooldown,
                    now,
                )
                if alert:
                    alerts.append(alert)
            return alerts

    def record_outliers(self, result: ConsensusResult, outcomes: Mapping[str, FetchOutcome]) -> list[Alert]:
        """Record an OUTLIER anomaly for every provider excluded from consensus.

        :returns: DATA_ANOMALY alerts raised.
        """
        alerts = []
        with self._lock:
            now = self._clock()
            for pid in sorted(result.outliers):
                reading = outcomes.get(pid)
                if not isinstance(reading, Reading):
                    continue
                expected = result.value
                if expected:
                    deviation = abs(reading.value - expected) / abs(expected)
                    description = f"Reading {reading.value} deviates {deviation:.1%} from consensus {expected}"
                else:
                    deviation = float("inf")
                    description = f"Reading {reading.value} excluded without a consensus value"
                alert = self._record_anomaly(
                    Anomaly(
                        pid,
                        AnomalyType.OUTLIER,
                        deviation_severity(deviation),
                        description,
                        now,
                        value=reading.value,
                        expected_value=expected,
                    ),
                    now,
                )
                if alert:
                    alerts.append(alert)
        return alerts

    def check_staleness(self, provider_ids: Iterable[str] | None = None) -> list[Alert]:
        """Raise STALE_DATA for providers without a recent successful reading.

        Providers that never delivered a reading are not judged.
        """
        alerts = []
        with self._lock:
            now = self._clock()
            ids = list(self._stats) if provider_ids is None else list(provider_ids)
            for pid in ids:
                stats = self._stats.get(pid)
                if stats is None or stats.last_success_at is None:
                    continue
                age_ms = (now - stats.last_success_at) * 1000
                if age_ms <= self.thresholds.staleness_ms:
                    continue
                self._anomalies.appendleft(
                    Anomaly(pid, AnomalyType.STALE_DATA, Severity.MEDIUM, f"No reading for {age_ms:.0f}ms", now)
                )
                alert = self._raise(
                    AlertType.STALE_DATA,
                    Severity.HIGH if age_ms > 2 * self.thresholds.staleness_ms else Severity.MEDIUM,
                    pid,
                    f"No successful reading for {age_ms / 1000:.0f}s",
                    {"ageMs": age_ms, "threshold": self.thresholds.staleness_ms},
                    self.thresholds.failure_cooldown,
                    now,
                )
                if alert:
                    alerts.append(alert)
        return alerts

    def _record_anomaly(self, anomaly: Anomaly, now: float) -> Alert | None:
        self._anomalies.appendleft(anomaly)
        recent = sum(
            1 for a in self._anomalies
            if a.provider_id == anomaly.provider_id
            and a.type is anomaly.type
            and now - a.timestamp <= self.ANOMALY_WINDOW_SECONDS
        )
        if anomaly.severity not in (Severity.HIGH, Severity.CRITICAL) and recent < self.thresholds.anomalies_per_hour:
            return None
        return self._raise(
            AlertType.DATA_ANOMALY,
            anomaly.severity,
            anomaly.provider_id,
            f"{anomaly.type.value}: {anomaly.description}",
            {"anomalyType": anomaly.type.value, "anomaliesLastHour": recent},
            self.thresholds.anomaly_cooldown,
            now,
        )

    def _raise(
        self,
        alert_type: AlertType,
        severity: Severity,
        provider_id: str,
        message: str,
        details: dict[str, Any],
        cooldown: float,
        now: float,
    ) -> Alert | None:
        key = (alert_type, provider_id)
        last = self._last_alert.get(key)
        if last is not None and now - last < cooldown:
            return None
        self._last_alert[key] = now

        alert = Alert(alert_type, severity, provider_id, message, now, details)
        self._alerts.appendleft(alert)
        level = logging.ERROR if severity is Severity.CRITICAL else logging.WARNING
        logger.log(level, f"[{provider_id}] {severity.value} {alert_type.value} alert: {message}")
        return alert

    def _snapshot(self, provider_id: str, stats: _FeedStats) -> FeedMetrics:
        window = len(stats.samples)
        if window == 0:
            return FeedMetrics(provider_id)
        latencies = [ms for ok, ms in stats.samples if ok and ms is not None]
        successes = sum(1 for ok, _ in stats.samples if ok)
        success_rate = successes / window
        average = sum(latencies) / len(latencies) if latencies else None
        return FeedMetrics(
            provider_id=provider_id,
            total_requests=stats.total_requests,
            total_failures=stats.total_failures,
            window_requests=window,
            failure_rate=1.0 - success_rate,
            success_rate=success_rate,
            average_response_ms=average,
            uptime=success_rate * response_score(average),
            quality=quality_rating(success_rate, average),
            last_success_at=stats.last_success_at,
        )

    def metrics(self, provider_id: str) -> FeedMetrics:
        """Rolling metrics of a provider (empty for an untracked one)."""
        with self._lock:
            stats = self._stats.get(provider_id)
            if stats is None:
                return FeedMetrics(provider_id)
            return self._snapshot(provider_id, stats)

    def alerts(
        self,
        provider_id: str | None = None,
        alert_type: AlertType | None = None,
        severity: Severity | None = None,
        *,
        unacknowledged_only: bool = False,
    ) -> list[Alert]:
        """Alerts matching the filters, most recent first."""
        with self._lock:
            return [
                a for a in self._alerts
                if (provider_id is None or a.provider_id == provider_id)
                and (alert_type is None or a.type is alert_type)
                and (severity is None or a.severity is severity)
                and not (unacknowledged_only and a.acknowledged)
            ]

    def anomalies(self, provider_id: str | None = None, limit: int | None = None) -> list[Anomaly]:
        with self._lock:
            found = [a for a in self._anomalies if provider_id is None or a.provider_id == provider_id]
        return found if limit is None else found[:limit]

    def acknowledge(self, alert_id: str, user: str) -> Alert:
        """Mark an alert acknowledged.

        :raises AlertNotFoundError: If no retained alert has this id.
        """
        with self._lock:
            for alert in self._alerts:
                if alert.id == alert_id:
                    if not alert.acknowledged:
                        alert.acknowledged = True
                        alert.acknowledged_by = user
                        alert.acknowledged_at = self._clock()
                        logger.info(f"[{alert.provider_id}] Alert {alert_id} acknowledged by {user}")
                    return alert
        raise AlertNotFoundError(f"Unknown alert '{alert_id}'")

    def summary(self) -> dict[str, Any]:
        with self._lock:
            alerts = list(self._alerts)
        return {
            "total": len(alerts),
            "unacknowledged": sum(1 for a in alerts if not a.acknowledged),
            "bySeverity": {s.value: sum(1 for a in alerts if a.severity is s) for s in Severity},
            "byType": {t.value: sum(1 for a in alerts if a.type is t) for t in AlertType},
        }

    def reset(self, provider_id: str) -> None:
        """Forget a provider's rolling metrics and alert cooldowns."""
        with self._lock:
            self._stats.pop(provider_id, None)
            for key in [k for k in self._last_alert if k[1] == provider_id]:
                del self._last_alert[key]
