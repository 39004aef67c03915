"""Load configuration from a JSON file."""

from __future__ import annotations

import json
from pathlib import Path

from loguru import logger

from orchestra.config.schema import OrchestraConfig


def load_config(path: Path | None = None) -> OrchestraConfig:
    """Read and validate config; a missing file yields the defaults.

    Malformed JSON or invalid values raise (json.JSONDecodeError or
    pydantic.ValidationError) rather than silently falling back.
    """
    if path is None or not path.exists():
        logger.debug("No config file at {}, using defaults", path)
        return OrchestraConfig()

    data = json.loads(path.read_text(encoding="utf-8"))
    config = OrchestraConfig.model_validate(data)
    logger.info("Loaded config from {}", path)
    return config
