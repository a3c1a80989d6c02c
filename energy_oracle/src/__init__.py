"""
Energy Oracle - Multi-Oracle Consensus Module

This module verifies energy-production readings across independent providers:
- ProviderRegistry: Provider configuration and enable switch
- ReputationTracker: Bounded per-provider reliability score
- CircuitBreaker: Per-provider CLOSED/OPEN/HALF_OPEN protection
- FeedFetcher: Provider reads with timeout, retry and validation
- FeedMonitor: Rolling feed quality metrics and alerts
- ConsensusEngine: Outlier filtering and weighted consensus
- RateLimiter: Fixed-window request limiting
- OracleOrchestrator: One verification cycle end to end
- AlgorithmParameters: Tagged verification algorithm parameters
- SignatureVerifier: Signed provider readings
- Stores: Verification records and feed subscriptions
- OracleConfig / OracleApi: Settings loading and the HTTP surface
- fetchers: Provider payload formats
"""

from .AlgorithmParameters import AlgorithmConfig, AlgorithmType, parse_algorithm_parameters
from .CircuitBreaker import (
    CircuitBreaker,
    CircuitBreakerBoard,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
    CircuitStateName,
)
from .ConsensusEngine import ConsensusConfig, ConsensusEngine, ConsensusResult
from .FeedFetcher import FeedFetcher, FetchError, FetchErrorReason, Reading, RetryPolicy
from .FeedMonitor import Alert, AlertThresholds, AlertType, FeedMetrics, FeedMonitor, Severity
from .OracleConfig import OracleEnvironment, OracleSettings, build_orchestrator, load_settings
from .OracleOrchestrator import (
    FailureReason,
    OracleOrchestrator,
    VerificationRecord,
    VerificationStatus,
)
from .ProviderRegistry import (
    ConfigurationError,
    ProviderConfig,
    ProviderNotFoundError,
    ProviderRegistry,
)
from .RateLimiter import RateLimitDecision, RateLimiter, RateLimitExceeded, RateLimitRule
from .ReputationTracker import ReputationConfig, ReputationRecord, ReputationTracker

__all__ = [
    "Alert",
    "AlertThresholds",
    "AlertType",
    "AlgorithmConfig",
    "AlgorithmType",
    "CircuitBreaker",
    "CircuitBreakerBoard",
    "CircuitBreakerConfig",
    "CircuitOpenError",
    "CircuitState",
    "CircuitStateName",
    "ConfigurationError",
    "ConsensusConfig",
    "ConsensusEngine",
    "ConsensusResult",
    "FailureReason",
    "FeedFetcher",
    "FeedMetrics",
    "FeedMonitor",
    "FetchError",
    "FetchErrorReason",
    "OracleEnvironment",
    "OracleOrchestrator",
    "OracleSettings",
    "ProviderConfig",
    "ProviderNotFoundError",
    "ProviderRegistry",
    "RateLimitDecision",
    "RateLimitExceeded",
    "RateLimitRule",
    "RateLimiter",
    "Reading",
    "ReputationConfig",
    "ReputationRecord",
    "ReputationTracker",
    "RetryPolicy",
    "Severity",
    "VerificationRecord",
    "VerificationStatus",
    "build_orchestrator",
    "load_settings",
    "parse_algorithm_parameters",
]
