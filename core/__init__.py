"""Core shared utilities for MeterLab."""

from core.config import DEFAULT_CONFIG_NAME, Settings, find_project_root, load_settings, resolve_config_path
from core.errors import (
    ConfigError,
    ExtractionError,
    MeterLabError,
    NotFoundError,
    PreconditionError,
    RunFailedError,
    ValidationError,
)

__all__ = [
    "DEFAULT_CONFIG_NAME",
    "Settings",
    "find_project_root",
    "load_settings",
    "resolve_config_path",
    "MeterLabError",
    "ConfigError",
    "ValidationError",
    "PreconditionError",
    "NotFoundError",
    "ExtractionError",
    "RunFailedError",
]
