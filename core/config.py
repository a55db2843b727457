"""Project and configuration discovery helpers."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from core.errors import ConfigError

DEFAULT_CONFIG_NAME = "meterlab.yaml"
PROJECT_MARKERS = (DEFAULT_CONFIG_NAME, "pyproject.toml", ".git")


class DatabaseSettings(BaseModel):
    path: str = "meterlab.duckdb"


class StorageSettings(BaseModel):
    photos_dir: str = "photos"


class GatewaySettings(BaseModel):
    provider: str = "claude"
    max_tokens: int = 1024


class CalibrationSettings(BaseModel):
    min_photos: int = 5
    acceptance_rate: float = 0.7
    review_quorum: float = 1.0
    min_tests_for_suggestion: int = 3
    max_corrections: int = 5
    zone_min_extent: float = 0.02
    max_parallel_photos: int = 4
    reconciliation: str = "highest_confidence"
    classification_min_confidence: float = 0.6


class PollingSettings(BaseModel):
    max_iterations: int = 120
    interval_seconds: float = 2.0


class Settings(BaseModel):
    """Typed view over meterlab.yaml; every key has a default."""
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    providers: Dict[str, Dict[str, Any]] = Field(default_factory=lambda: {
        "claude": {
            "model": "claude-sonnet-4-20250514",
            "api_key_env": "ANTHROPIC_API_KEY",
            "timeout": 60,
            "input_cost_per_mtok": 3.0,
            "output_cost_per_mtok": 15.0,
        },
        "ollama": {
            "model": "llava",
            "base_url": "http://localhost:11434",
            "timeout": 120,
        },
    })
    calibration: CalibrationSettings = Field(default_factory=CalibrationSettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)

    @property
    def db_path(self) -> str:
        return os.getenv("METERLAB_DB_PATH", self.database.path)


def find_project_root(start_dir: Optional[Path] = None) -> Path:
    """Find project root by scanning upward for known project markers."""
    current = (start_dir or Path.cwd()).resolve()

    for candidate in (current, *current.parents):
        if any((candidate / marker).exists() for marker in PROJECT_MARKERS):
            return candidate

    return current


def resolve_config_path(config_path: Optional[str] = None, start_dir: Optional[Path] = None) -> Optional[Path]:
    """Resolve a config path from explicit input or project root discovery.

    Returns None when no explicit path is given and the project root has no
    meterlab.yaml; callers then run on defaults.
    """
    if config_path:
        provided = Path(config_path).expanduser()
        if not provided.is_absolute():
            provided = (start_dir or Path.cwd()) / provided
        provided = provided.resolve()
        if not provided.exists():
            raise ConfigError(f"Config file not found: {provided}")
        return provided

    config_file = find_project_root(start_dir) / DEFAULT_CONFIG_NAME
    if not config_file.exists():
        return None
    return config_file


def load_settings(config_path: Optional[str] = None, start_dir: Optional[Path] = None) -> Settings:
    """Load meterlab.yaml (and .env) into a Settings model."""
    load_dotenv()
    path = resolve_config_path(config_path, start_dir)
    if path is None:
        return Settings()

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing configuration file {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Configuration file {path} must contain a mapping")

    try:
        return Settings(**raw)
    except ValueError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e
