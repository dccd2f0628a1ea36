"""Core utilities for SpecViz — probability, verification, config, telemetry."""

from specviz.core.config import (
    DraftBackendConfig,
    GenerationConfig,
    TargetBackendConfig,
    load_config_file,
)
from specviz.core.errors import (
    InferenceError,
    NumericError,
    ProtocolError,
    SpecVizError,
    StateInvariantError,
    TokenizerError,
)
from specviz.core.probability import argmax, sample_categorical, softmax
from specviz.core.telemetry import GenerationStats, TelemetryLogger
from specviz.core.verification import (
    PositionVerdict,
    residual_distribution,
    should_accept,
    verify_position,
)

__all__ = [
    "DraftBackendConfig",
    "GenerationConfig",
    "GenerationStats",
    "InferenceError",
    "NumericError",
    "PositionVerdict",
    "ProtocolError",
    "SpecVizError",
    "StateInvariantError",
    "TargetBackendConfig",
    "TelemetryLogger",
    "TokenizerError",
    "argmax",
    "load_config_file",
    "residual_distribution",
    "sample_categorical",
    "should_accept",
    "softmax",
    "verify_position",
]
