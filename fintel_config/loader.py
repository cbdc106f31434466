"""
Configuration Loader (``fintel_config.loader``).

Responsibility
--------------
Loads YAML configuration files and parses them into the typed
``fintel_config.schema`` dataclasses.

Architecture position
---------------------
**Config layer**.  Depends only on ``fintel_config.schema`` and the kernel
logger; no dependency on engines or services.

Invariants enforced
-------------------
* Parse errors surface as ``ValueError`` (schema validation) or
  ``yaml.YAMLError`` (syntax); there are no silent defaults for unknown keys.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the loaded
  document, logged with every load so a prediction run can be tied to the
  exact configuration that produced it.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Top level not a mapping  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from fintel_config.schema import EngineConfig
from fintel_kernel.logging_config import get_logger

logger = get_logger("config.loader")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at top level, got {type(data).__name__}")
    return data


def compute_checksum(data: dict[str, Any]) -> str:
    """Deterministic SHA-256 of a configuration document."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def load_engine_config(path: Path | str | None = None) -> EngineConfig:
    """
    Load an ``EngineConfig`` from YAML.

    Without a path the packaged ``defaults.yaml`` is used.
    """
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    data = load_yaml_file(config_path)
    config = EngineConfig.from_dict(data)
    logger.info(
        "FINTEL_CONFIG_TRACE",
        extra={
            "trace_type": "FINTEL_CONFIG_TRACE",
            "config_path": str(config_path),
            "checksum": compute_checksum(data),
            "sections": sorted(data.keys()),
        },
    )
    return config
