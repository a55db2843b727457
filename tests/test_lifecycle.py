"""Tests for the experiment folder state machine."""

from datetime import datetime

import pytest

from calibration import lifecycle
from calibration.lifecycle import LifecyclePolicy
from core.errors import PreconditionError

POLICY = LifecyclePolicy(min_photos=5, acceptance_rate=0.7, review_quorum=1.0)


def _folder(status="draft", **fields):
    return {"name": "Itron G4", "status": status, "min_photos_required": 5, "photos_since_last_test": 0, **fields}


def _run(status="completed", total=5, validated=0, corrected=0, rejected=0):
    return {
        "status": status,
        "total_photos": total,
        "validated_count": validated,
        "corrected_count": corrected,
        "rejected_count": rejected,
    }


class TestThreshold:
    def test_draft_becomes_ready_at_min_photos(self):
        assert lifecycle.threshold_status(_folder(), 4, POLICY) is None
        assert lifecycle.threshold_status(_folder(), 5, POLICY) == "ready"

    def test_ready_falls_back_to_draft(self):
        assert lifecycle.threshold_status(_folder("ready"), 4, POLICY) == "draft"

    def test_folder_minimum_can_raise_the_bar(self):
        assert lifecycle.threshold_status(_folder(min_photos_required=8), 5, POLICY) is None

    def test_later_statuses_ignore_photo_count(self):
        for status in ("testing", "validated", "promoted", "rejected"):
            assert lifecycle.threshold_status(_folder(status), 0, POLICY) is None


class TestVerdictStatus:
    def test_reviewed_and_accurate_run_validates(self):
        run = _run(validated=3, corrected=1, rejected=1)
        assert lifecycle.verdict_status(_folder("testing"), run, POLICY) == "validated"

    def test_pending_results_block_validation(self):
        run = _run(validated=4)
        assert lifecycle.verdict_status(_folder("testing"), run, POLICY) is None

    def test_low_accuracy_blocks_validation(self):
        run = _run(validated=3, rejected=2)
        assert lifecycle.verdict_status(_folder("testing"), run, POLICY) is None

    def test_partial_quorum_policy(self):
        policy = LifecyclePolicy(review_quorum=0.6)
        assert lifecycle.verdict_status(_folder("testing"), _run(validated=3), policy) == "validated"

    def test_only_completed_runs_count(self):
        run = _run(status="running", validated=5)
        assert lifecycle.verdict_status(_folder("testing"), run, POLICY) is None

    def test_next_status_single_transition(self):
        assert lifecycle.next_status(_folder(), 5, _run(validated=5), POLICY) == "ready"
        assert lifecycle.next_status(_folder("testing"), 5, _run(validated=5), POLICY) == "validated"
        assert lifecycle.next_status(_folder("validated"), 5, _run(validated=5), POLICY) is None


class TestStartAndPromote:
    def test_ready_folder_can_start(self):
        assert lifecycle.can_start_test(_folder("ready"))
        assert not lifecycle.can_start_test(_folder("draft", photos_since_last_test=5))

    def test_active_run_blocks_new_run(self):
        with pytest.raises(PreconditionError, match="already in progress"):
            lifecycle.ensure_can_start_test(_folder("ready"), {"status": "running"})

    def test_relaunch_after_new_photos(self):
        tested = {"last_test_at": datetime(2026, 1, 1)}
        assert lifecycle.can_start_test(_folder("validated", photos_since_last_test=2, **tested))
        assert lifecycle.can_start_test(_folder("promoted", photos_since_last_test=1, **tested))
        assert not lifecycle.can_start_test(_folder("validated", **tested))

    def test_retry_while_testing(self):
        assert lifecycle.can_start_test(_folder("testing"), {"status": "failed"})

    def test_promotion_requires_validated(self):
        with pytest.raises(PreconditionError):
            lifecycle.ensure_can_promote(_folder("testing"))
        lifecycle.ensure_can_promote(_folder("validated"))

    def test_new_photo_flag(self):
        assert lifecycle.describe(_folder("promoted", photos_since_last_test=3))["has_new_photos"] is True
        assert lifecycle.describe(_folder("ready", photos_since_last_test=3))["has_new_photos"] is False
