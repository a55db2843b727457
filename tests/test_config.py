"""Tests for configuration discovery and loading."""

from unittest.mock import patch

import pytest

from core.config import Settings, find_project_root, load_settings, resolve_config_path
from core.errors import ConfigError


def test_defaults_without_config_file(tmp_path):
    settings = load_settings(start_dir=tmp_path)
    assert settings.gateway.provider == "claude"
    assert settings.calibration.min_photos == 5
    assert settings.calibration.reconciliation == "highest_confidence"
    assert settings.polling.max_iterations == 120


def test_config_file_discovered_from_subdirectory(tmp_path):
    (tmp_path / "meterlab.yaml").write_text(
        "gateway:\n  provider: ollama\ncalibration:\n  min_photos: 8\n  acceptance_rate: 0.9\n",
        encoding="utf-8",
    )
    nested = tmp_path / "photos" / "batch"
    nested.mkdir(parents=True)

    assert find_project_root(nested) == tmp_path
    settings = load_settings(start_dir=nested)
    assert settings.gateway.provider == "ollama"
    assert settings.calibration.min_photos == 8
    assert settings.calibration.acceptance_rate == 0.9
    assert settings.calibration.max_corrections == 5


def test_explicit_missing_config(tmp_path):
    with pytest.raises(ConfigError, match="Config file not found"):
        resolve_config_path("nope.yaml", start_dir=tmp_path)


def test_invalid_yaml(tmp_path):
    path = tmp_path / "meterlab.yaml"
    path.write_text("calibration: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Error parsing"):
        load_settings(str(path))


def test_invalid_values(tmp_path):
    path = tmp_path / "meterlab.yaml"
    path.write_text("calibration:\n  min_photos: many\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid configuration"):
        load_settings(str(path))


def test_non_mapping_config(tmp_path):
    path = tmp_path / "meterlab.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="must contain a mapping"):
        load_settings(str(path))


@patch.dict("os.environ", {"METERLAB_DB_PATH": "/tmp/override.duckdb"})
def test_db_path_env_override():
    assert Settings().db_path == "/tmp/override.duckdb"
