"""Unit tests for AlgorithmParameters."""

import pytest

from energy_oracle.src.AlgorithmParameters import (
    AlgorithmConfig,
    AlgorithmType,
    ConsensusBased,
    Hybrid,
    MachineLearning,
    OutlierDetection,
    SampleSize,
    StatisticalAnalysis,
    ThresholdBased,
    ThresholdValues,
    parse_algorithm_parameters,
)
from energy_oracle.src.ConsensusEngine import ConsensusConfig
from energy_oracle.src.ProviderRegistry import ConfigurationError


class TestParseAlgorithmParameters:
    """Test dispatch on the algorithmType discriminator."""

    def test_consensus_based(self) -> None:
        params = parse_algorithm_parameters({
            "algorithmType": "CONSENSUS_BASED",
            "confidenceRequirement": 0.9,
            "minimumNodes": 4,
            "consensusThreshold": 0.75,
            "weightedVoting": False,
        })
        assert isinstance(params, ConsensusBased)
        assert params.algorithm_type == AlgorithmType.CONSENSUS_BASED
        assert params.minimum_nodes == 4
        assert params.weighted_voting is False

    def test_statistical_analysis(self) -> None:
        params = parse_algorithm_parameters({
            "algorithmType": "STATISTICAL_ANALYSIS",
            "outlierDetection": {"method": "z_score", "threshold": 3.0},
            "sampleSize": {"minimum": 5},
        })
        assert isinstance(params, StatisticalAnalysis)
        assert params.outlier_detection.method == "Z_SCORE"
        assert params.outlier_detection.threshold == 3.0
        assert params.sample_size.minimum == 5

    @pytest.mark.parametrize("method", ["IQR", "ISOLATION_FOREST", 3])
    def test_unsupported_outlier_method_rejected(self, method) -> None:
        with pytest.raises(ConfigurationError, match="not supported"):
            parse_algorithm_parameters({
                "algorithmType": "STATISTICAL_ANALYSIS",
                "outlierDetection": {"method": method},
            })

    def test_threshold_based(self) -> None:
        params = parse_algorithm_parameters({
            "algorithmType": "THRESHOLD_BASED",
            "thresholdValues": {"target": 120.0, "tolerance": 0.1},
        })
        assert isinstance(params, ThresholdBased)
        assert params.threshold_values.target == 120.0
        assert params.minimum_value == pytest.approx(108.0)

    def test_threshold_based_requires_target(self) -> None:
        with pytest.raises(ConfigurationError, match="thresholdValues"):
            parse_algorithm_parameters({"algorithmType": "THRESHOLD_BASED"})

    def test_machine_learning(self) -> None:
        params = parse_algorithm_parameters({"algorithmType": "MACHINE_LEARNING", "modelType": "CLUSTERING"})
        assert isinstance(params, MachineLearning)
        assert params.model_type == "CLUSTERING"

    def test_hybrid(self) -> None:
        params = parse_algorithm_parameters({
            "algorithmType": "HYBRID",
            "primary": {"algorithmType": "CONSENSUS_BASED", "minimumNodes": 2},
            "confidenceRequirement": 0.95,
        })
        assert isinstance(params, Hybrid)
        assert isinstance(params.primary, ConsensusBased)
        assert params.primary.minimum_nodes == 2

    def test_keys_alone_do_not_select_variant(self) -> None:
        """Without the discriminator nothing is guessed."""
        with pytest.raises(ConfigurationError, match="Unknown algorithmType"):
            parse_algorithm_parameters({"minimumNodes": 3, "consensusThreshold": 0.7})

    def test_nested_hybrid_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="must not itself be HYBRID"):
            parse_algorithm_parameters({
                "algorithmType": "HYBRID",
                "primary": {"algorithmType": "HYBRID", "primary": {"algorithmType": "CONSENSUS_BASED"}},
            })

    def test_bad_values_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="Invalid CONSENSUS_BASED parameters"):
            parse_algorithm_parameters({"algorithmType": "CONSENSUS_BASED", "minimumNodes": "many"})
        with pytest.raises(ConfigurationError, match="Invalid CONSENSUS_BASED parameters"):
            parse_algorithm_parameters({"algorithmType": "CONSENSUS_BASED", "consensusThreshold": 1.5})
        with pytest.raises(ConfigurationError, match="Invalid MACHINE_LEARNING parameters"):
            parse_algorithm_parameters({"algorithmType": "MACHINE_LEARNING", "modelType": "ANOMALY"})

    @pytest.mark.parametrize(
        "data",
        [
            {"algorithmType": "MACHINE_LEARNING", "modelPath": "/models/m.onnx"},
            {"algorithmType": "CONSENSUS_BASED", "minimumNode": 4},
            {
                "algorithmType": "HYBRID",
                "primary": {"algorithmType": "CONSENSUS_BASED"},
                "fallbackAlgorithms": ["THRESHOLD_BASED"],
            },
        ],
    )
    def test_unknown_keys_rejected(self, data) -> None:
        with pytest.raises(ConfigurationError, match="Extra inputs are not permitted"):
            parse_algorithm_parameters(data)


class TestApplyToConsensusConfig:
    """Test projection onto the engine configuration."""

    def test_consensus_based_projection(self) -> None:
        config = ConsensusBased(
            confidence_requirement=0.9,
            minimum_nodes=4,
            consensus_threshold=0.75,
            weighted_voting=False,
        ).apply_to(ConsensusConfig())
        assert config == ConsensusConfig(
            min_sources=4,
            required_confidence=0.9,
            outlier_threshold=2.0,
            consensus_threshold=0.75,
            weighted_voting=False,
        )

    def test_data_quality_minimum_projection(self) -> None:
        config = ConsensusBased(data_quality_minimum=0.6).apply_to(ConsensusConfig())
        assert config.min_reading_confidence == 0.6

    def test_statistical_projection(self) -> None:
        params = StatisticalAnalysis(
            outlier_detection=OutlierDetection(threshold=3.0),
            sample_size=SampleSize(minimum=5),
        )
        config = params.apply_to(ConsensusConfig())
        assert config.outlier_threshold == 3.0
        assert config.min_sources == 5

    def test_threshold_projection(self) -> None:
        params = ThresholdBased(threshold_values=ThresholdValues(target=200.0, tolerance=0.05))
        config = params.apply_to(ConsensusConfig(min_sources=4))
        assert config.minimum_value == pytest.approx(190.0)
        assert config.min_sources == 4

    def test_machine_learning_cannot_be_activated(self) -> None:
        with pytest.raises(ConfigurationError, match="model runtime"):
            MachineLearning().apply_to(ConsensusConfig())

    def test_hybrid_keeps_stricter_requirements(self) -> None:
        hybrid = Hybrid(
            primary=ConsensusBased(confidence_requirement=0.7, data_quality_minimum=0.5),
            confidence_requirement=0.95,
            data_quality_minimum=0.2,
        )
        config = hybrid.apply_to(ConsensusConfig())
        assert config.required_confidence == 0.95
        assert config.min_reading_confidence == 0.5

    def test_hybrid_with_threshold_primary(self) -> None:
        hybrid = Hybrid(primary=ThresholdBased(threshold_values=ThresholdValues(target=100.0, tolerance=0.0)))
        assert hybrid.apply_to(ConsensusConfig()).minimum_value == 100.0

    def test_algorithm_config_defaults(self) -> None:
        algorithm = AlgorithmConfig()
        assert algorithm.algorithm_id == "multi-oracle-consensus"
        assert algorithm.version == "1.0.0"
        assert algorithm.consensus_config(ConsensusConfig(min_sources=7)).min_sources == 3
