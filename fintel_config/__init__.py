"""
fintel_config -- typed, validated engine configuration.

Responsibility:
    Holds every tunable threshold of the intelligence engines in dataclasses
    (``schema``) and loads them from YAML (``loader``).  Engines and services
    receive a config object; they never read files or the environment.
"""

from fintel_config.loader import load_engine_config, load_yaml_file
from fintel_config.schema import (
    EngineConfig,
    ForecastConfig,
    MatcherConfig,
    PredictorConfig,
    ReconciliationConfig,
)

__all__ = [
    "EngineConfig",
    "PredictorConfig",
    "ForecastConfig",
    "MatcherConfig",
    "ReconciliationConfig",
    "load_engine_config",
    "load_yaml_file",
]
