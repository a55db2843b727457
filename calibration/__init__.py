"""Meter-reader calibration: zones, instruction composition, test runs, lifecycle, scoring and promotion."""

from .zones import ROIZone, ZoneSet, ZoneType, normalize_rect
from .composer import compose, merge_preprocessing, strict_instruction
from .orchestrator import (
    TestOrchestrator,
    PassResult,
    RECONCILIATION_POLICIES,
    compute_run_stats,
    plan_passes,
    wait_for_run,
)
from .lifecycle import LifecyclePolicy, has_new_photos, next_status
from .scoring import VersionStats, Suggestion, suggest, build_version_stats
from .promotion import PromotionResult, promote_folder, promotion_eligibility
from .validation import validate_reading, detect_error_type
from .service import CalibrationService

__all__ = [
    "ROIZone",
    "ZoneSet",
    "ZoneType",
    "normalize_rect",
    "compose",
    "merge_preprocessing",
    "strict_instruction",
    "TestOrchestrator",
    "PassResult",
    "RECONCILIATION_POLICIES",
    "compute_run_stats",
    "plan_passes",
    "wait_for_run",
    "LifecyclePolicy",
    "has_new_photos",
    "next_status",
    "VersionStats",
    "Suggestion",
    "suggest",
    "build_version_stats",
    "PromotionResult",
    "promote_folder",
    "promotion_eligibility",
    "validate_reading",
    "detect_error_type",
    "CalibrationService",
]
