"""Tests for configuration schema and loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from orchestra.config import EngineConfig, OrchestraConfig, load_config


def test_defaults():
    config = OrchestraConfig()
    assert config.engine.plugin_namespace == "orchestration"
    assert config.engine.node_timeout_seconds is None
    assert config.engine.max_concurrency is None
    assert config.engine.max_loop_iterations == 10
    assert config.engine.default_temp_agent_model == "sonnet"


def test_missing_file_yields_defaults(tmp_path: Path):
    assert load_config(tmp_path / "absent.json") == OrchestraConfig()


def test_no_path_yields_defaults():
    assert load_config() == OrchestraConfig()


def test_load_from_json(tmp_path: Path):
    path = tmp_path / "orchestra.json"
    path.write_text(
        json.dumps({"engine": {"plugin_namespace": "team", "node_timeout_seconds": 30}}),
        encoding="utf-8",
    )
    config = load_config(path)
    assert config.engine.plugin_namespace == "team"
    assert config.engine.node_timeout_seconds == 30
    assert config.engine.max_steering_attempts == 10


def test_invalid_values_rejected(tmp_path: Path):
    path = tmp_path / "orchestra.json"
    path.write_text(json.dumps({"engine": {"max_concurrency": 0}}), encoding="utf-8")
    with pytest.raises(ValidationError):
        load_config(path)


def test_malformed_json_raises(tmp_path: Path):
    path = tmp_path / "orchestra.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(json.JSONDecodeError):
        load_config(path)


def test_empty_namespace_rejected():
    with pytest.raises(ValidationError):
        EngineConfig(plugin_namespace="")
