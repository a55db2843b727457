"""Storage layer for MeterLab calibration data."""

from .database import Database
from .models import (
    ExperimentFolder,
    MeterModel,
    ModelConfig,
    ModelVersion,
    PhotoRecord,
    TestResultRecord,
    TestRunRecord,
    TypeConfig,
)
from .photo_store import PhotoStore, hash_image
from .repository import CalibrationRepository

__all__ = [
    "Database",
    "ExperimentFolder",
    "PhotoRecord",
    "TypeConfig",
    "ModelConfig",
    "TestRunRecord",
    "TestResultRecord",
    "MeterModel",
    "ModelVersion",
    "PhotoStore",
    "hash_image",
    "CalibrationRepository",
]
