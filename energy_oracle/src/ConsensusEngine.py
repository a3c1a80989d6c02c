"""ConsensusEngine: Weighted consensus with outlier detection.

Algorithm:
    1. Discard failed fetches; the successful readings form the candidate set
    2. Fail (no value, confidence 0) if fewer than min_sources candidates
    3. Flag readings below min_reading_confidence as outliers
    4. Weighted centre and spread of the remaining values
    5. Flag readings whose z-score exceeds outlier_threshold (single pass)
    6. Recompute weighted mean and standard deviation on the survivors
    7. Agreement ratio = surviving weight / total candidate weight
    8. Consensus if enough survivors, enough agreement, enough average
       provider confidence and (when set) a value of at least minimum_value
    9. Confidence = min(agreement ratio, average provider confidence)

Z-scores in step 4 use robust estimates: the weighted median as centre and
the weighted median absolute deviation scaled by 1.4826 as sigma (both equal
the mean and standard deviation for normally distributed readings). A plain
mean/std z-score cannot exceed sqrt(n - 1) because the outlier inflates its
own sigma, so a 2-sigma threshold would never trigger with five or fewer
sources. When more than half the weight sits on one value the MAD is zero and
the scaled mean absolute deviation is used instead. Sigma never drops below
relative_tolerance * |centre|, so readings within that fraction of the centre
always agree; three meters reading 100.0, 100.1 and 100.4 kWh form one
cluster. Rounds with fewer than three candidates, or no spread at all, never
produce outliers.

With weighted_voting off every candidate weighs 1.0 regardless of reputation.

.. code-block:: python

    >>> engine = ConsensusEngine(ConsensusConfig(min_sources=3, outlier_threshold=2.0))
    >>> readings = {p: Reading(p, v, 1_700_000_000_000, confidence=1.0)
    ...             for p, v in {"a": 100, "b": 102, "c": 99, "d": 500}.items()}
    >>> result = engine.compute(readings, {"a": 1, "b": 1, "c": 1, "d": 1})
    >>> result.outliers
    frozenset({'d'})
    >>> round(result.value, 2)
    100.33
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Mapping

from .FeedFetcher import FetchError, FetchOutcome, Reading
from .ProviderRegistry import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsensusConfig:
    """Consensus parameters.

    :ivar min_sources: Minimum agreeing sources for consensus.
    :ivar required_confidence: Minimum average provider confidence (0-1).
    :ivar outlier_threshold: Z-score beyond which a reading is an outlier.
    :ivar consensus_threshold: Minimum weighted agreement ratio (0-1).
    :ivar relative_tolerance: Floor of the outlier sigma as a fraction of
        the centre value.
    :ivar min_reading_confidence: Readings whose confidence is below this
        are excluded as outliers before z-scoring.
    :ivar weighted_voting: Weight readings by reputation (else equally).
    :ivar minimum_value: Consensus also requires value >= minimum_value.
    """

    min_sources: int = 3
    required_confidence: float = 0.8
    outlier_threshold: float = 2.0
    consensus_threshold: float = 0.7
    relative_tolerance: float = 0.01
    min_reading_confidence: float = 0.0
    weighted_voting: bool = True
    minimum_value: float | None = None

    def __post_init__(self) -> None:
        if self.min_sources < 1:
            raise ConfigurationError("min_sources must be at least 1")
        if not 0.0 <= self.required_confidence <= 1.0:
            raise ConfigurationError("required_confidence must be within [0, 1]")
        if self.outlier_threshold <= 0:
            raise ConfigurationError("outlier_threshold must be positive")
        if not 0.0 <= self.consensus_threshold <= 1.0:
            raise ConfigurationError("consensus_threshold must be within [0, 1]")
        if self.relative_tolerance < 0:
            raise ConfigurationError("relative_tolerance must not be negative")
        if not 0.0 <= self.min_reading_confidence <= 1.0:
            raise ConfigurationError("min_reading_confidence must be within [0, 1]")


@dataclass(frozen=True)
class ConsensusResult:
    """Outcome of one consensus round.

    :ivar value: Post-filter weighted mean, or None with too few sources.
    :ivar confidence: min(agreement_ratio, average_confidence), 0 on failure.
    :ivar source_count: Readings that contributed to ``value``.
    :ivar consensus_reached: Whether all consensus gates passed.
    :ivar outliers: Providers excluded as outliers.
    :ivar contributions: Provider -> weight applied to ``value``.
    :ivar timestamp: Unix seconds when the result was computed.
    :ivar agreement_ratio: Surviving weight / total candidate weight.
    :ivar average_confidence: Mean provider confidence of the survivors.
    :ivar std_dev: Weighted standard deviation of the survivors.
    :ivar errors: Provider -> failure reason for failed fetches.
    """

    value: float | None
    confidence: float
    source_count: int
    consensus_reached: bool
    outliers: frozenset[str] = frozenset()
    contributions: dict[str, float] = field(default_factory=dict)
    timestamp: float = 0.0
    agreement_ratio: float = 0.0
    average_confidence: float = 0.0
    std_dev: float = 0.0
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "confidence": self.confidence,
            "sourceCount": self.source_count,
            "consensusReached": self.consensus_reached,
            "outliers": sorted(self.outliers),
            "contributions": dict(self.contributions),
            "timestamp": self.timestamp,
            "agreementRatio": self.agreement_ratio,
            "averageConfidence": self.average_confidence,
            "stdDev": self.std_dev,
            "errors": dict(self.errors),
        }


def weighted_stats(values: list[float], weights: list[float]) -> tuple[float, float]:
    """Weighted mean and weighted (population) standard deviation.

    :param values: Sample values.
    :param weights: Non-negative weights, same length.
    :returns: (mean, std_dev). (nan, 0.0) if the weights sum to zero.
    """
    total = sum(weights)
    if total <= 0:
        return math.nan, 0.0
    mean = sum(v * w for v, w in zip(values, weights, strict=True)) / total
    variance = sum(w * (v - mean) ** 2 for v, w in zip(values, weights, strict=True)) / total
    return mean, math.sqrt(max(variance, 0.0))


MAD_TO_SIGMA = 1.4826
MEAN_AD_TO_SIGMA = 1.2533


def weighted_median(values: list[float], weights: list[float]) -> float:
    """Weighted median; averages the two middle values on an exact tie.

    :param values: Sample values.
    :param weights: Positive total weight.
    """
    pairs = sorted(zip(values, weights, strict=True))
    half = sum(weights) / 2.0
    cumulative = 0.0
    for i, (value, weight) in enumerate(pairs):
        cumulative += weight
        if math.isclose(cumulative, half, rel_tol=1e-12) and i + 1 < len(pairs):
            return (value + pairs[i + 1][0]) / 2.0
        if cumulative > half:
            return value
    return pairs[-1][0]


def robust_stats(values: list[float], weights: list[float]) -> tuple[float, float]:
    """Robust centre and sigma estimate of weighted values.

    :returns: (weighted median, scaled weighted MAD), falling back to the
        scaled weighted mean absolute deviation when the MAD is zero.
    """
    centre = weighted_median(values, weights)
    deviations = [abs(v - centre) for v in values]
    sigma = MAD_TO_SIGMA * weighted_median(deviations, weights)
    if sigma == 0:
        total = sum(weights)
        sigma = MEAN_AD_TO_SIGMA * sum(d * w for d, w in zip(deviations, weights, strict=True)) / total
    return centre, sigma


class ConsensusEngine:
    """Computes a consensus value from one round of provider outcomes.

    :ivar config: Consensus parameters.
    """

    MIN_CANDIDATES_FOR_OUTLIERS = 3

    def __init__(self, config: ConsensusConfig | None = None) -> None:
        self.config = config or ConsensusConfig()

    def compute(
        self,
        outcomes: Mapping[str, FetchOutcome],
        weights: Mapping[str, float],
        fallback_confidence: Mapping[str, float] | None = None,
        *,
        config: ConsensusConfig | None = None,
    ) -> ConsensusResult:
        """Run the consensus algorithm.

        :param outcomes: Provider -> Reading or FetchError for this round.
        :param weights: Provider -> reputation-scaled weight.
        :param fallback_confidence: Provider -> confidence used when a reading
            carries none (default 1.0).
        :param config: Per-call override of the engine configuration.
        :returns: ConsensusResult.
        """
        cfg = config or self.config
        now = time.time()
        fallback_confidence = fallback_confidence or {}

        errors = {pid: o.reason.value for pid, o in outcomes.items() if isinstance(o, FetchError)}
        candidates: dict[str, Reading] = {
            pid: o for pid, o in outcomes.items() if isinstance(o, Reading)
        }
        if cfg.weighted_voting:
            candidate_weights = {pid: max(0.0, float(weights.get(pid, 0.0))) for pid in candidates}
        else:
            candidate_weights = {pid: 1.0 for pid in candidates}

        if len(candidates) < cfg.min_sources:
            logger.warning(
                f"Insufficient readings for consensus: {len(candidates)}/{cfg.min_sources}"
            )
            return ConsensusResult(
                value=None,
                confidence=0.0,
                source_count=len(candidates),
                consensus_reached=False,
                timestamp=now,
                errors=errors,
            )

        reading_confidence = {
            pid: r.confidence if r.confidence is not None else fallback_confidence.get(pid, 1.0)
            for pid, r in candidates.items()
        }
        low_quality = {
            pid for pid, c in reading_confidence.items() if c < cfg.min_reading_confidence
        }
        if low_quality:
            logger.info(f"Readings below minimum confidence: {sorted(low_quality)}")

        scored = {pid: r for pid, r in candidates.items() if pid not in low_quality}
        outliers = low_quality | self._find_outliers(scored, candidate_weights, cfg)
        survivors = {pid: r for pid, r in candidates.items() if pid not in outliers}

        ids = list(survivors)
        mean, std_dev = weighted_stats(
            [survivors[pid].value for pid in ids],
            [candidate_weights[pid] for pid in ids],
        )
        surviving_weight = sum(candidate_weights[pid] for pid in ids)
        total_weight = sum(candidate_weights.values())
        agreement_ratio = surviving_weight / total_weight if total_weight > 0 else 0.0

        confidences = [reading_confidence[pid] for pid in ids]
        average_confidence = sum(confidences) / len(confidences) if confidences else 0.0

        consensus_reached = (
            len(survivors) >= cfg.min_sources
            and agreement_ratio >= cfg.consensus_threshold
            and average_confidence >= cfg.required_confidence
            and not math.isnan(mean)
            and (cfg.minimum_value is None or mean >= cfg.minimum_value)
        )
        confidence = min(agreement_ratio, average_confidence)

        result = ConsensusResult(
            value=None if math.isnan(mean) else mean,
            confidence=confidence,
            source_count=len(survivors),
            consensus_reached=consensus_reached,
            outliers=frozenset(outliers),
            contributions={pid: candidate_weights[pid] for pid in ids},
            timestamp=now,
            agreement_ratio=agreement_ratio,
            average_confidence=average_confidence,
            std_dev=std_dev,
            errors=errors,
        )

        logger.info(
            f"Consensus computed: candidates={len(candidates)}, survivors={len(survivors)}, "
            f"outliers={sorted(outliers)}, value={result.value}, "
            f"agreement={agreement_ratio:.3f}, confidence={confidence:.3f}, "
            f"reached={consensus_reached}"
        )
        return result

    def _find_outliers(
        self,
        candidates: Mapping[str, Reading],
        weights: Mapping[str, float],
        cfg: ConsensusConfig,
    ) -> set[str]:
        if len(candidates) < self.MIN_CANDIDATES_FOR_OUTLIERS:
            return set()

        ids = list(candidates)
        values = [candidates[pid].value for pid in ids]
        w = [weights[pid] for pid in ids]
        if sum(w) <= 0:
            return set()

        centre, sigma = robust_stats(values, w)
        sigma = max(sigma, cfg.relative_tolerance * abs(centre))
        if sigma == 0:
            return set()

        return {
            pid for pid, v in zip(ids, values, strict=True)
            if abs(v - centre) / sigma > cfg.outlier_threshold
        }
