"""Unit tests for ReputationTracker."""

import random

import pytest

from energy_oracle.src.ProviderRegistry import ConfigurationError, ProviderConfig, ProviderRegistry
from energy_oracle.src.ReputationTracker import ReputationConfig, ReputationTracker


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_tracker(initial: float = 100.0, weight: float = 1.0, **config) -> ReputationTracker:
    registry = ProviderRegistry(
        [ProviderConfig("a", "http://a.local", weight=weight, initial_reputation=initial)],
        reputation_range=(10, 100),
    )
    return ReputationTracker(registry, ReputationConfig(**config), clock=FakeClock())


class TestReputationConfig:
    """Test parameter validation."""

    def test_defaults(self) -> None:
        config = ReputationConfig()
        assert config.max_reputation == 100
        assert config.min_reputation == 10
        assert config.failure_penalty == 5
        assert config.success_bonus == 1
        assert config.recovery_rate == 2
        assert config.max_consecutive_failures == 10

    def test_min_above_max_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="min_reputation"):
            ReputationConfig(min_reputation=150)

    def test_negative_penalty_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="must not be negative"):
            ReputationConfig(failure_penalty=-1)


class TestReputationUpdates:
    """Test score transitions."""

    def test_initial_score(self) -> None:
        tracker = make_tracker(initial=80)
        assert tracker.get_score("a") == 80
        assert tracker.get_record("a").consecutive_failures == 0

    def test_failure_subtracts_penalty(self) -> None:
        tracker = make_tracker(initial=80)
        assert tracker.record_failure("a") == 75
        record = tracker.get_record("a")
        assert record.consecutive_failures == 1
        assert record.total_failures == 1
        assert record.last_failure_at == 1_000.0

    def test_success_adds_bonus(self) -> None:
        tracker = make_tracker(initial=80)
        assert tracker.record_success("a", response_time_ms=42.0) == 81
        record = tracker.get_record("a")
        assert record.total_successes == 1
        assert record.last_response_ms == 42.0

    def test_success_after_streak_uses_recovery_rate(self) -> None:
        """The success that ends a failure streak adds recovery_rate."""
        tracker = make_tracker(initial=80)
        tracker.record_failure("a")
        tracker.record_failure("a")
        assert tracker.record_success("a") == 72
        assert tracker.get_record("a").consecutive_failures == 0
        assert tracker.record_success("a") == 73

    def test_score_clamped_at_max(self) -> None:
        tracker = make_tracker(initial=100)
        assert tracker.record_success("a") == 100

    def test_score_clamped_at_min(self) -> None:
        tracker = make_tracker(initial=12)
        assert tracker.record_failure("a") == 10
        assert tracker.record_failure("a") == 10

    def test_score_stays_bounded_for_any_sequence(self) -> None:
        """Score never leaves [min, max] for random update sequences."""
        rng = random.Random(7)
        for _ in range(50):
            tracker = make_tracker(initial=rng.uniform(10, 100), failure_penalty=13, recovery_rate=9)
            for _ in range(200):
                if rng.random() < 0.5:
                    score = tracker.record_failure("a")
                else:
                    score = tracker.record_success("a")
                assert 10 <= score <= 100

    def test_record_snapshot_is_a_copy(self) -> None:
        tracker = make_tracker()
        record = tracker.get_record("a")
        record.score = 0
        assert tracker.get_score("a") == 100


class TestWeightsAndDisabling:
    """Test derived weights and the exhaustion switch."""

    def test_weight_scales_with_score(self) -> None:
        tracker = make_tracker(initial=50, weight=0.8)
        assert tracker.get_weight("a") == pytest.approx(0.4)
        assert tracker.reliability("a") == pytest.approx(50.0)

    def test_disable_after_max_consecutive_failures(self) -> None:
        tracker = make_tracker(max_consecutive_failures=3)
        for _ in range(2):
            tracker.record_failure("a")
            assert tracker.disable_if_exhausted("a") is False
        tracker.record_failure("a")
        assert tracker.disable_if_exhausted("a") is True
        assert tracker.registry.get("a").enabled is False
        # Already disabled
        assert tracker.disable_if_exhausted("a") is False

    def test_reset_restores_initial_state(self) -> None:
        tracker = make_tracker(initial=90, max_consecutive_failures=1)
        tracker.record_failure("a")
        tracker.disable_if_exhausted("a")

        record = tracker.reset("a")

        assert record.score == 90
        assert record.consecutive_failures == 0
        assert tracker.registry.get("a").enabled is True
