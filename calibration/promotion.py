"""Publishing a validated folder as a production meter model with versioned configuration."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.errors import NotFoundError
from storage.models import MeterModel, ModelVersion
from storage.repository import CalibrationRepository
from .lifecycle import PROMOTED, ensure_can_promote, min_photos_for, LifecyclePolicy

logger = logging.getLogger(__name__)

KIND_PROMPT = "prompt"
KIND_PREPROCESSING = "preprocessing"
VERSION_KINDS = (KIND_PROMPT, KIND_PREPROCESSING)

PROMOTION_MIN_ACCURACY = 0.7


@dataclass
class PromotionResult:
    action: str
    meter_model: Dict[str, Any]
    activated_versions: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "meter_model": self.meter_model,
            "activated_versions": self.activated_versions,
        }


def _publish_version(
    repository: CalibrationRepository,
    model_id: str,
    kind: str,
    prompt_text: str = "",
    image_config: Optional[Dict[str, Any]] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Activate a version carrying this content, reusing the active one when unchanged."""
    active = repository.get_active_version(model_id, kind)
    if active and active["prompt_text"] == prompt_text and (active["image_config"] or {}) == (image_config or {}):
        return active

    version = ModelVersion(
        id=str(uuid.uuid4()),
        model_id=model_id,
        kind=kind,
        version_number=repository.next_version_number(model_id, kind),
        prompt_text=prompt_text,
        image_config=image_config or {},
        notes=notes,
    )
    repository.save_version(version)
    repository.activate_version(version.id)
    return repository.get_version(version.id)


def promote_folder(
    repository: CalibrationRepository,
    folder_id: str,
    instruction: str,
    image_config: Optional[Dict[str, Any]] = None,
) -> PromotionResult:
    """Create or refresh the meter model behind a validated folder.

    Runs in one transaction: either the model, its active versions and the
    folder status all change, or nothing does.
    """
    folder = repository.get_folder(folder_id)
    if folder is None:
        raise NotFoundError(f"Folder not found: {folder_id}")
    ensure_can_promote(folder)

    model_config = (
        repository.get_model_config(folder["config_model_id"]) if folder.get("config_model_id") else None
    )
    now = datetime.utcnow()

    with repository.db.transaction():
        existing = None
        if folder.get("linked_meter_model_id"):
            existing = repository.get_meter_model(folder["linked_meter_model_id"])
        if existing is None:
            existing = repository.get_meter_model_for_folder(folder_id)

        if existing is None:
            action = "created"
            model = MeterModel(
                id=str(uuid.uuid4()),
                name=folder["name"],
                meter_type=folder["detected_type"],
                source_folder_id=folder_id,
                manufacturer=(model_config or {}).get("manufacturer"),
                config_model_id=folder.get("config_model_id"),
            )
            model_id = repository.save_meter_model(model)
        else:
            action = "updated"
            model_id = existing["id"]
            repository.update_meter_model(model_id, {
                "config_model_id": folder.get("config_model_id"),
                "is_active": True,
            })

        notes = f"Promoted from folder '{folder['name']}'"
        prompt_version = _publish_version(repository, model_id, KIND_PROMPT, prompt_text=instruction, notes=notes)
        activated = [prompt_version]
        # the runs that validated this instruction become the version's history
        repository.tag_runs_with_version(folder_id, instruction, prompt_version["id"])
        if image_config:
            activated.append(
                _publish_version(repository, model_id, KIND_PREPROCESSING, image_config=image_config, notes=notes)
            )

        repository.update_folder(folder_id, {"status": PROMOTED, "linked_meter_model_id": model_id})
        if model_config:
            repository.update_model_config(model_config["id"], {
                "is_promoted": True,
                "promoted_at": now,
                "meter_model_id": model_id,
            })

    logger.info(f"Folder {folder['name']} promoted ({action}) as meter model {model_id}")
    return PromotionResult(
        action=action,
        meter_model=repository.get_meter_model(model_id),
        activated_versions=activated,
    )


def promotion_eligibility(
    folder: Dict[str, Any],
    photo_count: int,
    runs: List[Dict[str, Any]],
    policy: Optional[LifecyclePolicy] = None,
) -> Dict[str, Any]:
    """Whether a folder could be promoted, with the reason behind each check."""
    policy = policy or LifecyclePolicy()
    completed = [run for run in runs if run.get("status") == "completed"]
    best_accuracy = max([run.get("accuracy_rate") or 0.0 for run in completed], default=0.0)

    reasons = {
        "has_enough_photos": photo_count >= min_photos_for(folder, policy),
        "has_completed_tests": bool(completed),
        "has_good_accuracy": best_accuracy >= PROMOTION_MIN_ACCURACY,
        "is_validated": folder["status"] == "validated",
        "best_accuracy": best_accuracy,
    }
    return {
        "can_promote": all(
            reasons[key] for key in ("has_enough_photos", "has_completed_tests", "has_good_accuracy", "is_validated")
        ),
        "reasons": reasons,
        "is_linked_to_existing": bool(folder.get("linked_meter_model_id")),
    }
