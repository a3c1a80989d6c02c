"""AlgorithmParameters: Verification algorithm configuration as a tagged variant.

Each verification algorithm has its own parameter shape. The variant is
selected by the explicit ``algorithmType`` discriminator, never guessed from
the keys a dict happens to contain. Unknown keys are rejected.

Every variant knows how to project itself onto the ConsensusEngine's
``ConsensusConfig`` via ``apply_to()``:

    - all variants: confidenceRequirement -> required_confidence,
      dataQualityMinimum -> min_reading_confidence
    - THRESHOLD_BASED: the consensus value must reach
      target * (1 - tolerance)
    - STATISTICAL_ANALYSIS: Z_SCORE outlier threshold and minimum sample
      size (other outlier methods are rejected)
    - CONSENSUS_BASED: minimum nodes, agreement threshold, weighted voting
    - HYBRID: the primary's projection, with the stricter of the two
      confidence requirements and data quality minimums
    - MACHINE_LEARNING: parsed, but activation raises ConfigurationError as
      no model runtime is available

The active ``AlgorithmConfig.version`` is stamped on each VerificationRecord.

.. code-block:: python

    >>> params = parse_algorithm_parameters({
    ...     "algorithmType": "CONSENSUS_BASED",
    ...     "confidenceRequirement": 0.9,
    ...     "minimumNodes": 4,
    ...     "consensusThreshold": 0.75,
    ... })
    >>> params.apply_to(ConsensusConfig()).min_sources
    4
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .ConsensusEngine import ConsensusConfig
from .ProviderRegistry import ConfigurationError, format_validation_error


class AlgorithmType(str, Enum):
    THRESHOLD_BASED = "THRESHOLD_BASED"
    STATISTICAL_ANALYSIS = "STATISTICAL_ANALYSIS"
    MACHINE_LEARNING = "MACHINE_LEARNING"
    CONSENSUS_BASED = "CONSENSUS_BASED"
    HYBRID = "HYBRID"


class _Section(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid", frozen=True)


class _Parameters(_Section):
    """Fields shared by every algorithm.

    :ivar confidence_requirement: Minimum average provider confidence.
    :ivar data_quality_minimum: Readings below this confidence are excluded.
    """

    confidence_requirement: float = Field(default=0.8, ge=0.0, le=1.0)
    data_quality_minimum: float = Field(default=0.0, ge=0.0, le=1.0)

    def apply_to(self, config: ConsensusConfig) -> ConsensusConfig:
        return replace(
            config,
            required_confidence=self.confidence_requirement,
            min_reading_confidence=self.data_quality_minimum,
        )


class ThresholdValues(_Section):
    target: float = Field(gt=0)
    tolerance: float = Field(default=0.05, ge=0.0, lt=1.0)


class ThresholdBased(_Parameters):
    """Verified only when the consensus value reaches the target, less tolerance."""

    algorithm_type: Literal["THRESHOLD_BASED"] = "THRESHOLD_BASED"
    threshold_values: ThresholdValues

    @property
    def minimum_value(self) -> float:
        return self.threshold_values.target * (1.0 - self.threshold_values.tolerance)

    def apply_to(self, config: ConsensusConfig) -> ConsensusConfig:
        return replace(super().apply_to(config), minimum_value=self.minimum_value)


class OutlierDetection(_Section):
    method: str = "Z_SCORE"
    threshold: float = Field(default=2.0, gt=0)

    @field_validator("method", mode="before")
    @classmethod
    def _supported_method(cls, value: Any) -> str:
        if not isinstance(value, str) or value.upper() != "Z_SCORE":
            raise ValueError(f"Outlier method {value!r} is not supported; only Z_SCORE is available")
        return "Z_SCORE"


class SampleSize(_Section):
    minimum: int = Field(default=3, ge=1)


class StatisticalAnalysis(_Parameters):
    algorithm_type: Literal["STATISTICAL_ANALYSIS"] = "STATISTICAL_ANALYSIS"
    outlier_detection: OutlierDetection = Field(default_factory=OutlierDetection)
    sample_size: SampleSize = Field(default_factory=SampleSize)

    def apply_to(self, config: ConsensusConfig) -> ConsensusConfig:
        return replace(
            super().apply_to(config),
            outlier_threshold=self.outlier_detection.threshold,
            min_sources=self.sample_size.minimum,
        )


class MachineLearning(_Parameters):
    model_config = ConfigDict(protected_namespaces=())

    algorithm_type: Literal["MACHINE_LEARNING"] = "MACHINE_LEARNING"
    model_type: Literal["REGRESSION", "CLASSIFICATION", "CLUSTERING", "NEURAL_NETWORK"] = "REGRESSION"

    def apply_to(self, config: ConsensusConfig) -> ConsensusConfig:
        raise ConfigurationError(
            f"MACHINE_LEARNING verification ({self.model_type}) needs a model runtime, "
            "which this oracle does not provide"
        )


class ConsensusBased(_Parameters):
    """Multi-source consensus (the engine's native algorithm).

    :ivar minimum_nodes: Maps to min_sources.
    :ivar consensus_threshold: Weighted agreement ratio required.
    :ivar weighted_voting: Weight readings by reputation (else equally).
    """

    algorithm_type: Literal["CONSENSUS_BASED"] = "CONSENSUS_BASED"
    minimum_nodes: int = Field(default=3, ge=1)
    consensus_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    weighted_voting: bool = True

    def apply_to(self, config: ConsensusConfig) -> ConsensusConfig:
        return replace(
            super().apply_to(config),
            min_sources=self.minimum_nodes,
            consensus_threshold=self.consensus_threshold,
            weighted_voting=self.weighted_voting,
        )


PrimaryParameters = Annotated[
    Union[ThresholdBased, StatisticalAnalysis, MachineLearning, ConsensusBased],
    Field(discriminator="algorithm_type"),
]


class Hybrid(_Parameters):
    """Primary algorithm under stricter shared requirements.

    :ivar primary: Parameters of the primary algorithm (not itself Hybrid).
    """

    algorithm_type: Literal["HYBRID"] = "HYBRID"
    primary: PrimaryParameters

    @field_validator("primary", mode="before")
    @classmethod
    def _not_nested(cls, value: Any) -> Any:
        tag = value.get("algorithmType", value.get("algorithm_type")) if isinstance(value, dict) else None
        if isinstance(value, Hybrid) or tag == AlgorithmType.HYBRID.value:
            raise ValueError("Hybrid primary algorithm must not itself be HYBRID")
        return value

    def apply_to(self, config: ConsensusConfig) -> ConsensusConfig:
        projected = self.primary.apply_to(config)
        return replace(
            projected,
            required_confidence=max(projected.required_confidence, self.confidence_requirement),
            min_reading_confidence=max(projected.min_reading_confidence, self.data_quality_minimum),
        )


AlgorithmParameters = Annotated[
    Union[ThresholdBased, StatisticalAnalysis, MachineLearning, ConsensusBased, Hybrid],
    Field(discriminator="algorithm_type"),
]

_PARAMETERS_ADAPTER: TypeAdapter = TypeAdapter(AlgorithmParameters)


@dataclass(frozen=True)
class AlgorithmConfig:
    """Active verification algorithm.

    :ivar algorithm_id: Identifier.
    :ivar version: Stamped on each VerificationRecord.
    :ivar parameters: Variant parameters.
    """

    algorithm_id: str = "multi-oracle-consensus"
    version: str = "1.0.0"
    parameters: AlgorithmParameters = field(default_factory=ConsensusBased)

    def consensus_config(self, base: ConsensusConfig) -> ConsensusConfig:
        return self.parameters.apply_to(base)


def parse_algorithm_parameters(data: dict[str, Any]) -> AlgorithmParameters:
    """Build the variant selected by ``data["algorithmType"]``.

    :param data: camelCase parameter mapping.
    :returns: The matching parameter variant.
    :raises ConfigurationError: On a missing or unknown discriminator, or bad values.
    """
    raw_type = data.get("algorithmType") if isinstance(data, dict) else None
    try:
        algorithm_type = AlgorithmType(raw_type)
    except ValueError:
        raise ConfigurationError(f"Unknown algorithmType {raw_type!r}") from None

    try:
        return _PARAMETERS_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid {algorithm_type.value} parameters: {format_validation_error(e)}"
        ) from e
