"""Experiment folder state machine.

draft -> ready -> testing -> validated -> promoted, with rejected as an exit
and "relaunch" back to testing when new photos arrive. Each transition has a
single trigger; threshold rules are checked before verdict rules.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.errors import PreconditionError

logger = logging.getLogger(__name__)

DRAFT = "draft"
READY = "ready"
TESTING = "testing"
VALIDATED = "validated"
PROMOTED = "promoted"
REJECTED = "rejected"

STATUSES = (DRAFT, READY, TESTING, VALIDATED, PROMOTED, REJECTED)
STALE_TEST_STATUSES = {VALIDATED, PROMOTED}
ACTIVE_RUN_STATUSES = {"queued", "running"}


@dataclass
class LifecyclePolicy:
    min_photos: int = 5
    acceptance_rate: float = 0.7
    review_quorum: float = 1.0


def min_photos_for(folder: Dict[str, Any], policy: LifecyclePolicy) -> int:
    return max(policy.min_photos, int(folder.get("min_photos_required") or 0))


def has_new_photos(folder: Dict[str, Any]) -> bool:
    """Photos were added after the last test of a validated or promoted folder."""
    return (folder.get("photos_since_last_test") or 0) > 0 and folder.get("status") in STALE_TEST_STATUSES


def threshold_status(folder: Dict[str, Any], photo_count: int, policy: LifecyclePolicy) -> Optional[str]:
    """draft <-> ready by photo count; only applies to draft and ready folders."""
    status = folder["status"]
    if status not in (DRAFT, READY):
        return None
    target = READY if photo_count >= min_photos_for(folder, policy) else DRAFT
    return target if target != status else None


def verdict_status(folder: Dict[str, Any], latest_run: Optional[Dict[str, Any]], policy: LifecyclePolicy) -> Optional[str]:
    """testing -> validated once the latest run is reviewed and accurate enough."""
    if folder["status"] != TESTING or not latest_run or latest_run.get("status") != "completed":
        return None

    total = latest_run.get("total_photos") or 0
    if total == 0:
        return None
    successes = (latest_run.get("validated_count") or 0) + (latest_run.get("corrected_count") or 0)
    reviewed = successes + (latest_run.get("rejected_count") or 0)
    if reviewed / total < policy.review_quorum:
        return None
    if successes / reviewed < policy.acceptance_rate:
        return None
    return VALIDATED


def next_status(
    folder: Dict[str, Any],
    photo_count: int,
    latest_run: Optional[Dict[str, Any]],
    policy: LifecyclePolicy,
) -> Optional[str]:
    """The one automatic transition due now, or None."""
    return threshold_status(folder, photo_count, policy) or verdict_status(folder, latest_run, policy)


def can_start_test(folder: Dict[str, Any], latest_run: Optional[Dict[str, Any]] = None) -> bool:
    """ready -> testing, or a relaunch after new photos, or a retry while testing."""
    if latest_run and latest_run.get("status") in ACTIVE_RUN_STATUSES:
        return False
    if folder["status"] == READY:
        return True
    if folder.get("last_test_at") and (folder.get("photos_since_last_test") or 0) > 0:
        return True
    return folder["status"] == TESTING


def ensure_can_start_test(folder: Dict[str, Any], latest_run: Optional[Dict[str, Any]] = None) -> None:
    if latest_run and latest_run.get("status") in ACTIVE_RUN_STATUSES:
        raise PreconditionError(f"A test run is already in progress for folder '{folder['name']}'")
    if not can_start_test(folder, latest_run):
        raise PreconditionError(
            f"Folder '{folder['name']}' is {folder['status']}; "
            "a test needs a ready folder or photos added since the last test"
        )


def ensure_can_promote(folder: Dict[str, Any]) -> None:
    if folder["status"] != VALIDATED:
        raise PreconditionError(
            f"Folder '{folder['name']}' must be validated before promotion (current status: {folder['status']})"
        )


def describe(folder: Dict[str, Any]) -> Dict[str, Any]:
    """Folder row enriched with derived lifecycle flags."""
    return {**folder, "has_new_photos": has_new_photos(folder)}
