"""Unit tests for FeedMonitor."""

import pytest

from energy_oracle.src.ConsensusEngine import ConsensusResult
from energy_oracle.src.FeedFetcher import FetchError, FetchErrorReason, Reading
from energy_oracle.src.FeedMonitor import (
    AlertNotFoundError,
    AlertThresholds,
    AlertType,
    AnomalyType,
    DataQuality,
    FeedMonitor,
    Severity,
    quality_rating,
)
from energy_oracle.src.ProviderRegistry import ConfigurationError

TS = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_monitor(**thresholds) -> tuple[FeedMonitor, FakeClock]:
    clock = FakeClock()
    return FeedMonitor(AlertThresholds(**thresholds), clock=clock), clock


def outlier_round(outliers: dict[str, float], value: float = 100.0) -> tuple[ConsensusResult, dict]:
    result = ConsensusResult(
        value=value,
        confidence=0.75,
        source_count=3,
        consensus_reached=True,
        outliers=frozenset(outliers),
    )
    return result, {pid: Reading(pid, v, TS, confidence=1.0) for pid, v in outliers.items()}


class TestAlertThresholds:
    """Test threshold validation."""

    def test_defaults(self) -> None:
        thresholds = AlertThresholds()
        assert thresholds.failure_rate == 0.10
        assert thresholds.response_time_ms == 5000
        assert thresholds.staleness_ms == 600_000
        assert thresholds.anomalies_per_hour == 5
        assert thresholds.history_limit == 1000

    def test_invalid_values(self) -> None:
        with pytest.raises(ConfigurationError, match="failure_rate"):
            AlertThresholds(failure_rate=0)
        with pytest.raises(ConfigurationError, match="staleness_ms"):
            AlertThresholds(staleness_ms=-1)
        with pytest.raises(ConfigurationError, match="window_size"):
            AlertThresholds(window_size=0)
        with pytest.raises(ConfigurationError, match="cooldowns"):
            AlertThresholds(anomaly_cooldown=-5)


class TestFeedMetrics:
    """Test rolling metrics."""

    def test_rolling_average_and_success_rate(self) -> None:
        monitor, _ = make_monitor()
        monitor.record_success("a", 200.0)
        monitor.record_success("a", 400.0)
        monitor.record_failure("a", "TIMEOUT")

        metrics = monitor.metrics("a")

        assert metrics.total_requests == 3
        assert metrics.total_failures == 1
        assert metrics.average_response_ms == pytest.approx(300.0)
        assert metrics.success_rate == pytest.approx(2 / 3)
        assert metrics.failure_rate == pytest.approx(1 / 3)
        assert metrics.uptime == pytest.approx(2 / 3)

    def test_window_forgets_old_outcomes(self) -> None:
        monitor, _ = make_monitor(window_size=3)
        monitor.record_failure("a", "NON_2XX")
        for ms in (100.0, 200.0, 300.0):
            monitor.record_success("a", ms)

        metrics = monitor.metrics("a")

        assert metrics.window_requests == 3
        assert metrics.success_rate == 1.0
        assert metrics.total_failures == 1
        assert metrics.average_response_ms == pytest.approx(200.0)

    def test_record_outcome_dispatch(self) -> None:
        monitor, clock = make_monitor()
        monitor.record_outcome("a", Reading("a", 10.0, TS, response_time_ms=50.0))
        monitor.record_outcome("b", FetchError("b", FetchErrorReason.TIMEOUT, "timed out"))

        assert monitor.metrics("a").last_success_at == clock.now
        assert monitor.metrics("b").total_failures == 1
        assert monitor.anomalies("b")[0].type is AnomalyType.MISSING_DATA

    def test_untracked_provider(self) -> None:
        monitor, _ = make_monitor()
        metrics = monitor.metrics("ghost")
        assert metrics.total_requests == 0
        assert metrics.average_response_ms is None
        assert metrics.quality is DataQuality.POOR

    @pytest.mark.parametrize(
        "success_rate, latency, expected",
        [
            (1.0, 500.0, DataQuality.EXCELLENT),
            (0.99, 1500.0, DataQuality.GOOD),
            (0.96, 800.0, DataQuality.GOOD),
            (0.92, 4000.0, DataQuality.FAIR),
            (0.85, 200.0, DataQuality.POOR),
            (1.0, 6000.0, DataQuality.POOR),
        ],
    )
    def test_quality_rating(self, success_rate, latency, expected) -> None:
        assert quality_rating(success_rate, latency) is expected

    def test_uptime_penalizes_slow_feeds(self) -> None:
        monitor, _ = make_monitor()
        monitor.record_success("a", 4000.0)
        assert monitor.metrics("a").uptime == pytest.approx(0.7)
        assert monitor.metrics("a").quality is DataQuality.FAIR


class TestAlerts:
    """Test threshold alerts and cooldowns."""

    def test_failure_rate_alert_with_cooldown(self) -> None:
        monitor, clock = make_monitor(failure_rate=0.3)
        for _ in range(3):
            monitor.record_success("a", 100.0)

        assert monitor.record_failure("a", "TIMEOUT") == []
        alerts = monitor.record_failure("a", "TIMEOUT")
        assert [a.type for a in alerts] == [AlertType.FEED_FAILURE]
        assert alerts[0].severity is Severity.HIGH
        assert alerts[0].details["failureRate"] == pytest.approx(0.4)

        assert monitor.record_failure("a", "TIMEOUT") == []
        clock.advance(301)
        assert [a.type for a in monitor.record_failure("a", "TIMEOUT")] == [AlertType.FEED_FAILURE]

    def test_performance_alert(self) -> None:
        monitor, clock = make_monitor()
        assert monitor.record_success("a", 4000.0) == []

        alerts = monitor.record_success("a", 25_000.0)

        assert [a.type for a in alerts] == [AlertType.PERFORMANCE_DEGRADATION]
        assert alerts[0].severity is Severity.MEDIUM
        clock.advance(600)
        assert monitor.record_success("a", 25_000.0) == []
        clock.advance(301)
        assert len(monitor.record_success("a", 25_000.0)) == 1

    def test_stale_feed_alert(self) -> None:
        monitor, clock = make_monitor(staleness_ms=60_000)
        monitor.record_success("a", 100.0)
        monitor.record_failure("b", "TIMEOUT")

        assert monitor.check_staleness() == []
        clock.advance(61)
        alerts = monitor.check_staleness()

        assert [(a.type, a.provider_id) for a in alerts] == [(AlertType.STALE_DATA, "a")]
        assert monitor.anomalies("a")[0].type is AnomalyType.STALE_DATA

    def test_critical_outlier_alerts_immediately(self) -> None:
        monitor, _ = make_monitor()
        result, outcomes = outlier_round({"d": 500.0})

        alerts = monitor.record_outliers(result, outcomes)

        assert [a.type for a in alerts] == [AlertType.DATA_ANOMALY]
        assert alerts[0].severity is Severity.CRITICAL
        anomaly = monitor.anomalies("d")[0]
        assert anomaly.type is AnomalyType.OUTLIER
        assert anomaly.expected_value == 100.0
        assert anomaly.value == 500.0

    def test_repeated_small_outliers_alert_on_hourly_count(self) -> None:
        monitor, clock = make_monitor(anomalies_per_hour=3, anomaly_cooldown=0)
        result, outcomes = outlier_round({"d": 105.0})

        assert monitor.record_outliers(result, outcomes) == []
        clock.advance(60)
        assert monitor.record_outliers(result, outcomes) == []
        clock.advance(60)
        alerts = monitor.record_outliers(result, outcomes)

        assert [a.severity for a in alerts] == [Severity.LOW]
        assert alerts[0].details["anomaliesLastHour"] == 3

    def test_old_outliers_fall_out_of_the_hour(self) -> None:
        monitor, clock = make_monitor(anomalies_per_hour=2)
        result, outcomes = outlier_round({"d": 105.0})

        monitor.record_outliers(result, outcomes)
        clock.advance(3601)

        assert monitor.record_outliers(result, outcomes) == []

    def test_history_is_capped_and_most_recent_first(self) -> None:
        monitor, clock = make_monitor(failure_cooldown=0, history_limit=3)
        for pid in ("a", "b", "c", "d"):
            monitor.record_failure(pid, "TIMEOUT")
            clock.advance(1)

        alerts = monitor.alerts()

        assert [a.provider_id for a in alerts] == ["d", "c", "b"]


class TestAlertManagement:
    """Test filtering, acknowledgement and summaries."""

    def test_filter_and_acknowledge(self) -> None:
        monitor, clock = make_monitor()
        failure = monitor.record_failure("a", "TIMEOUT")[0]
        result, outcomes = outlier_round({"b": 900.0})
        anomaly = monitor.record_outliers(result, outcomes)[0]

        assert monitor.alerts(provider_id="a") == [failure]
        assert monitor.alerts(alert_type=AlertType.DATA_ANOMALY) == [anomaly]

        clock.advance(5)
        acknowledged = monitor.acknowledge(failure.id, "ops@example.com")

        assert acknowledged.acknowledged is True
        assert acknowledged.acknowledged_by == "ops@example.com"
        assert acknowledged.acknowledged_at == clock.now
        assert monitor.alerts(unacknowledged_only=True) == [anomaly]

    def test_acknowledge_unknown(self) -> None:
        monitor, _ = make_monitor()
        with pytest.raises(AlertNotFoundError):
            monitor.acknowledge("missing", "ops")

    def test_summary(self) -> None:
        monitor, _ = make_monitor()
        monitor.record_failure("a", "TIMEOUT")
        monitor.record_failure("b", "TIMEOUT")
        monitor.acknowledge(monitor.alerts(provider_id="a")[0].id, "ops")

        summary = monitor.summary()

        assert summary["total"] == 2
        assert summary["unacknowledged"] == 1
        assert summary["bySeverity"]["CRITICAL"] == 2
        assert summary["byType"]["FEED_FAILURE"] == 2

    def test_to_dict(self) -> None:
        monitor, _ = make_monitor()
        data = monitor.record_failure("a", "NON_2XX")[0].to_dict()

        assert data["type"] == "FEED_FAILURE"
        assert data["providerId"] == "a"
        assert data["acknowledged"] is False
        assert "NON_2XX" in data["message"]

    def test_reset_clears_metrics_and_cooldown(self) -> None:
        monitor, _ = make_monitor()
        monitor.record_failure("a", "TIMEOUT")

        monitor.reset("a")

        assert monitor.metrics("a").total_requests == 0
        assert len(monitor.record_failure("a", "TIMEOUT")) == 1
