"""OracleConfig: Settings loading and component wiring.

Settings come from an optional JSON file with camelCase keys:

.. code-block:: json

    {
      "environment": "production",
      "providers": [
        {"id": "meter-a", "endpoint": "https://a.example/latest", "weight": 1.0,
         "timeoutMs": 5000, "maxRetries": 3, "format": "meter"}
      ],
      "consensus": {"minSources": 3, "requiredConfidence": 0.8,
                    "outlierThreshold": 2.0, "consensusThreshold": 0.7,
                    "relativeTolerance": 0.01},
      "reputation": {"failurePenalty": 5, "successBonus": 1},
      "circuitBreaker": {"failureThreshold": 5, "recoveryTimeoutMs": 60000},
      "rateLimits": {"verify": {"windowMs": 3600000, "maxRequests": 20}},
      "fetch": {"baseDelayMs": 500, "maxDelayMs": 10000, "jitter": 0.2},
      "alerts": {"failureRate": 0.1, "responseTimeMs": 5000, "stalenessMs": 600000},
      "algorithm": {"version": "1.0.0", "parameters": {"algorithmType": "CONSENSUS_BASED"}}
    }

The file is validated by pydantic models; unknown keys and values of the
wrong type are rejected with the offending key path.

Environment variables, read through pydantic-settings, override the
consensus section (``MIN_SOURCES``, ``REQUIRED_CONFIDENCE``,
``OUTLIER_THRESHOLD``, ``CONSENSUS_THRESHOLD``) and the environment name
(``ORACLE_ENV``). Without a ``providers`` section the four default providers
are used, with endpoints taken from ``SWITCHBOARD_ENDPOINT``,
``SWITCHBOARD_BACKUP_ENDPOINT``, ``EXTERNAL_ORACLE_1_ENDPOINT`` and
``IOT_DIRECT_ENDPOINT``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

from .AlgorithmParameters import AlgorithmConfig, parse_algorithm_parameters
from .CircuitBreaker import CircuitBreakerBoard, CircuitBreakerConfig
from .ConsensusEngine import ConsensusConfig, ConsensusEngine
from .FeedFetcher import FeedFetcher, RetryPolicy, SignatureVerifierFn
from .FeedMonitor import AlertThresholds, FeedMonitor
from .OracleOrchestrator import OracleOrchestrator
from .ProviderRegistry import ConfigurationError, ProviderConfig, ProviderRegistry, format_validation_error
from .RateLimiter import DEFAULT_RATE_LIMITS, RateLimiter, RateLimitRule
from .ReputationTracker import ReputationConfig, ReputationTracker
from .SignatureVerifier import EthSignatureVerifier
from .Stores import VerificationStore

logger = logging.getLogger(__name__)

PRODUCTION = "production"
PRODUCTION_MIN_SOURCES = 3

CONSENSUS_OVERRIDES = ("min_sources", "required_confidence", "outlier_threshold", "consensus_threshold")


class OracleEnvironment(BaseSettings):
    """Process environment read by the oracle. Empty variables count as unset."""

    model_config = SettingsConfigDict(env_ignore_empty=True, extra="ignore")

    oracle_env: Optional[str] = None
    min_sources: Optional[int] = None
    required_confidence: Optional[float] = None
    outlier_threshold: Optional[float] = None
    consensus_threshold: Optional[float] = None
    switchboard_endpoint: Optional[str] = None
    switchboard_backup_endpoint: Optional[str] = None
    external_oracle_1_endpoint: Optional[str] = None
    iot_direct_endpoint: Optional[str] = None

    def consensus_overrides(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in CONSENSUS_OVERRIDES if getattr(self, name) is not None}


def read_environment() -> OracleEnvironment:
    """Read and validate the oracle's environment variables.

    :raises ConfigurationError: Naming each variable that failed to parse.
    """
    try:
        return OracleEnvironment()
    except ValidationError as e:
        problems = "; ".join(
            f"Invalid value for {str(error['loc'][0]).upper()}: {error['msg']}" for error in e.errors()
        )
        raise ConfigurationError(problems) from e


def default_providers(environment: OracleEnvironment | None = None) -> list[ProviderConfig]:
    """The four standard providers, endpoints overridable via environment.

    :param environment: Parsed environment (default: read from the process).
    """
    environment = read_environment() if environment is None else environment
    return [
        ProviderConfig(
            id="switchboard-primary",
            endpoint=environment.switchboard_endpoint or "http://localhost:3000/api/meter/latest",
            weight=1.0,
            timeout_ms=5000,
            max_retries=3,
            initial_reputation=95,
            format="meter",
        ),
        ProviderConfig(
            id="switchboard-secondary",
            endpoint=environment.switchboard_backup_endpoint or "http://localhost:3000/api/meter/mock-oracle",
            weight=0.9,
            timeout_ms=5000,
            max_retries=3,
            initial_reputation=90,
            format="meter",
        ),
        ProviderConfig(
            id="external-oracle-1",
            endpoint=environment.external_oracle_1_endpoint or "http://localhost:3000/api/meter/external-oracle",
            weight=0.8,
            timeout_ms=8000,
            max_retries=2,
            initial_reputation=85,
            format="meter",
        ),
        ProviderConfig(
            id="iot-direct",
            endpoint=environment.iot_direct_endpoint or "http://iot-gateway.local:8080/metrics",
            weight=0.7,
            timeout_ms=3000,
            max_retries=5,
            initial_reputation=80,
            format="generic",
        ),
    ]


@dataclass(frozen=True)
class FetchSettings:
    """Fetch-layer settings shared by all providers.

    :ivar base_delay_ms: Delay before the first retry.
    :ivar max_delay_ms: Cap on a single retry delay.
    :ivar jitter: Random fraction added to each delay.
    :ivar max_reading_age_ms: Freshness window, None disables it.
    :ivar cycle_margin_ms: Added to the slowest provider budget for the cycle deadline.
    """

    base_delay_ms: int = 500
    max_delay_ms: int = 10_000
    jitter: float = 0.2
    max_reading_age_ms: int | None = None
    cycle_margin_ms: int = OracleOrchestrator.DEFAULT_CYCLE_MARGIN_MS

    def __post_init__(self) -> None:
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ConfigurationError("Retry delays must not be negative")
        if not 0.0 <= self.jitter <= 1.0:
            raise ConfigurationError("jitter must be within [0, 1]")
        if self.max_reading_age_ms is not None and self.max_reading_age_ms <= 0:
            raise ConfigurationError("maxReadingAgeMs must be positive")
        if self.cycle_margin_ms < 0:
            raise ConfigurationError("cycleMarginMs must not be negative")

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            base_delay=self.base_delay_ms / 1000.0,
            max_delay=self.max_delay_ms / 1000.0,
            jitter=self.jitter,
        )


@dataclass
class OracleSettings:
    """Complete oracle configuration.

    :ivar providers: Provider configurations.
    :ivar consensus: Consensus parameters.
    :ivar reputation: Reputation parameters.
    :ivar circuit_breaker: Circuit breaker parameters.
    :ivar rate_limits: Operation -> rate-limit rule.
    :ivar fetch: Fetch-layer settings.
    :ivar alerts: Feed monitoring thresholds.
    :ivar environment: Deployment environment name.
    :ivar algorithm: Active verification algorithm, if configured.
    """

    providers: list[ProviderConfig] = field(default_factory=default_providers)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    reputation: ReputationConfig = field(default_factory=ReputationConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    rate_limits: dict[str, RateLimitRule] = field(default_factory=lambda: dict(DEFAULT_RATE_LIMITS))
    fetch: FetchSettings = field(default_factory=FetchSettings)
    alerts: AlertThresholds = field(default_factory=AlertThresholds)
    environment: str = "development"
    algorithm: AlgorithmConfig | None = None

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == PRODUCTION

    def effective_consensus(self) -> ConsensusConfig:
        if self.algorithm is None:
            return self.consensus
        return self.algorithm.consensus_config(self.consensus)

    def validate(self) -> None:
        """Cross-section checks.

        :raises ConfigurationError: If the settings are unusable.
        """
        if not self.providers:
            raise ConfigurationError("At least one oracle provider must be configured")
        min_sources = self.effective_consensus().min_sources
        if self.is_production and min_sources < PRODUCTION_MIN_SOURCES:
            raise ConfigurationError(
                f"min_sources must be at least {PRODUCTION_MIN_SOURCES} in production, got {min_sources}"
            )
        if min_sources > len(self.providers):
            logger.warning(
                f"min_sources={min_sources} exceeds the {len(self.providers)} configured providers; "
                "consensus can never be reached"
            )


class _FileSection(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    def given(self) -> dict[str, Any]:
        """Fields present in the file, by attribute name."""
        return self.model_dump(exclude_unset=True, exclude_none=True)


class ProviderSection(_FileSection):
    id: str
    endpoint: str
    weight: Optional[float] = None
    timeout_ms: Optional[int] = None
    max_retries: Optional[int] = None
    enabled: Optional[bool] = None
    initial_reputation: Optional[float] = None
    format: Optional[str] = None
    signer: Optional[str] = None
    headers: Optional[dict[str, str]] = None

    def to_config(self) -> ProviderConfig:
        return ProviderConfig(**self.given())


class ConsensusSection(_FileSection):
    min_sources: Optional[int] = None
    required_confidence: Optional[float] = None
    outlier_threshold: Optional[float] = None
    consensus_threshold: Optional[float] = None
    relative_tolerance: Optional[float] = None
    min_reading_confidence: Optional[float] = None
    weighted_voting: Optional[bool] = None


class ReputationSection(_FileSection):
    max_reputation: Optional[float] = None
    min_reputation: Optional[float] = None
    failure_penalty: Optional[float] = None
    success_bonus: Optional[float] = None
    recovery_rate: Optional[float] = None
    max_consecutive_failures: Optional[int] = None


class CircuitBreakerSection(_FileSection):
    failure_threshold: Optional[int] = None
    recovery_timeout_ms: Optional[float] = None
    monitoring_period_ms: Optional[float] = None

    def to_config(self) -> CircuitBreakerConfig:
        kwargs: dict[str, Any] = {}
        if self.failure_threshold is not None:
            kwargs["failure_threshold"] = self.failure_threshold
        if self.recovery_timeout_ms is not None:
            kwargs["recovery_timeout"] = self.recovery_timeout_ms / 1000.0
        if self.monitoring_period_ms is not None:
            kwargs["monitoring_period"] = self.monitoring_period_ms / 1000.0
        return CircuitBreakerConfig(**kwargs)


class RateLimitSection(_FileSection):
    window_ms: int
    max_requests: int
    message: str = "Rate limit exceeded"

    def to_rule(self) -> RateLimitRule:
        return RateLimitRule(self.window_ms, self.max_requests, self.message)


class FetchSection(_FileSection):
    base_delay_ms: Optional[int] = None
    max_delay_ms: Optional[int] = None
    jitter: Optional[float] = None
    max_reading_age_ms: Optional[int] = None
    cycle_margin_ms: Optional[int] = None


class AlertSection(_FileSection):
    failure_rate: Optional[float] = None
    response_time_ms: Optional[float] = None
    staleness_ms: Optional[int] = None
    anomalies_per_hour: Optional[int] = None
    window_size: Optional[int] = None
    history_limit: Optional[int] = None
    failure_cooldown_ms: Optional[float] = None
    performance_cooldown_ms: Optional[float] = None
    anomaly_cooldown_ms: Optional[float] = None

    def to_thresholds(self) -> AlertThresholds:
        kwargs = self.given()
        for name in ("failure_cooldown", "performance_cooldown", "anomaly_cooldown"):
            if f"{name}_ms" in kwargs:
                kwargs[name] = kwargs.pop(f"{name}_ms") / 1000.0
        return AlertThresholds(**kwargs)


class AlgorithmSection(_FileSection):
    algorithm_id: Optional[str] = None
    version: Optional[str] = None
    parameters: Optional[dict[str, Any]] = None

    def to_config(self) -> AlgorithmConfig:
        kwargs: dict[str, Any] = {
            name: value for name, value in self.given().items() if name in ("algorithm_id", "version")
        }
        if self.parameters:
            kwargs["parameters"] = parse_algorithm_parameters(self.parameters)
        return AlgorithmConfig(**kwargs)


class OracleFile(_FileSection):
    """Top-level shape of the JSON settings file."""

    environment: Optional[str] = None
    providers: Optional[list[ProviderSection]] = None
    consensus: ConsensusSection = ConsensusSection()
    reputation: ReputationSection = ReputationSection()
    circuit_breaker: CircuitBreakerSection = CircuitBreakerSection()
    rate_limits: dict[str, RateLimitSection] = {}
    fetch: FetchSection = FetchSection()
    alerts: AlertSection = AlertSection()
    algorithm: Optional[AlgorithmSection] = None

    def to_settings(self, environment: OracleEnvironment) -> OracleSettings:
        consensus = replace(ConsensusConfig(), **self.consensus.given())
        rate_limits = dict(DEFAULT_RATE_LIMITS)
        rate_limits.update({operation: rule.to_rule() for operation, rule in self.rate_limits.items()})
        return OracleSettings(
            providers=(
                [p.to_config() for p in self.providers] if self.providers else default_providers(environment)
            ),
            consensus=replace(consensus, **environment.consensus_overrides()),
            reputation=ReputationConfig(**self.reputation.given()),
            circuit_breaker=self.circuit_breaker.to_config(),
            rate_limits=rate_limits,
            fetch=FetchSettings(**self.fetch.given()),
            alerts=self.alerts.to_thresholds(),
            environment=environment.oracle_env or self.environment or "development",
            algorithm=self.algorithm.to_config() if self.algorithm else None,
        )


def _read_file(path: str | Path) -> Any:
    try:
        return json.loads(Path(path).read_text())
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Config file {path} is not valid JSON: {e}") from e


def load_settings(path: str | Path | None = None) -> OracleSettings:
    """Load settings from an optional JSON file plus environment overrides.

    :param path: JSON settings file (None for defaults only).
    :returns: Validated OracleSettings.
    :raises ConfigurationError: On unreadable or invalid configuration.
    """
    environment = read_environment()
    data = _read_file(path) if path else {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a JSON object")

    try:
        file_config = OracleFile.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {format_validation_error(e)}") from e

    settings = file_config.to_settings(environment)
    settings.validate()
    return settings


def build_orchestrator(
    settings: OracleSettings,
    *,
    client: httpx.AsyncClient | None = None,
    store: VerificationStore | None = None,
    verify_signature: SignatureVerifierFn | None = None,
    clock: Callable[[], float] | None = None,
) -> OracleOrchestrator:
    """Wire the verification components from settings.

    :param settings: Oracle settings.
    :param client: HTTP client for provider reads (default: shared client).
    :param store: Verification record store (default: in-memory).
    :param verify_signature: Signature check (default: EthSignatureVerifier).
    :param clock: Unix-seconds clock for reputation, circuit and alert state.
    :raises ConfigurationError: If provider configuration is invalid.
    """
    registry = ProviderRegistry(
        settings.providers,
        reputation_range=(settings.reputation.min_reputation, settings.reputation.max_reputation),
    )
    fetcher = FeedFetcher(
        settings.fetch.retry_policy(),
        verify_signature=verify_signature or EthSignatureVerifier(registry),
        client=client,
        max_reading_age_ms=settings.fetch.max_reading_age_ms,
        clock=clock,
    )
    return OracleOrchestrator(
        registry,
        ReputationTracker(registry, settings.reputation, clock=clock),
        CircuitBreakerBoard(settings.circuit_breaker, clock=clock),
        fetcher,
        ConsensusEngine(settings.consensus),
        store=store,
        algorithm=settings.algorithm,
        monitor=FeedMonitor(settings.alerts, clock=clock),
        cycle_margin_ms=settings.fetch.cycle_margin_ms,
    )


def build_rate_limiter(settings: OracleSettings, *, clock: Callable[[], float] | None = None) -> RateLimiter:
    return RateLimiter(settings.rate_limits, clock=clock)
