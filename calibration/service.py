"""Application service facade used by the API and CLI."""

import base64
import binascii
import logging
import uuid
from collections import Counter
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from core.config import Settings
from core.errors import ConfigError, ExtractionError, NotFoundError, PreconditionError, ValidationError
from llm.factory import VisionFactory
from llm.gateway import ExtractionGateway, PREPROCESSING_DEFAULTS, strip_data_url
from storage.database import Database
from storage.models import ExperimentFolder, ModelConfig, ModelVersion, PhotoRecord, TestRunRecord, TypeConfig
from storage.photo_store import PhotoStore, hash_image
from storage.repository import CalibrationRepository
from . import lifecycle
from .composer import compose, merge_preprocessing
from .lifecycle import LifecyclePolicy
from .orchestrator import TestOrchestrator, compute_run_stats, is_stale_run, mark_run_failed
from .promotion import KIND_PROMPT, VERSION_KINDS, promote_folder, promotion_eligibility
from .scoring import build_version_stats, suggest
from .validation import detect_error_type
from .zones import ZoneSet

logger = logging.getLogger(__name__)

METER_TYPES = ("gas", "water", "electricity", "unknown")
CONFIG_LEVELS = ("universal", "type", "model")

FOLDER_UPDATE_FIELDS = {
    "name",
    "description",
    "detected_type",
    "config_model_id",
    "reference_photo_id",
    "min_photos_required",
}
PHOTO_UPDATE_FIELDS = {"folder_id", "status", "ground_truth"}
UNIVERSAL_UPDATE_FIELDS = {"base_prompt", "min_confidence", "default_preprocessing"}
TYPE_UPDATE_FIELDS = {"additional_prompt", "preprocessing_override", "is_active"}
MODEL_UPDATE_FIELDS = {
    "name",
    "manufacturer",
    "specific_prompt",
    "zones",
    "preprocessing_override",
    "format_spec",
}


def _pick(data: Dict[str, Any], allowed: set) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if key in allowed}


def _require(data: Dict[str, Any], *fields: str) -> None:
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")


def _check_meter_type(meter_type: str) -> str:
    if meter_type not in METER_TYPES:
        raise ValidationError(f"Unknown meter type '{meter_type}'. Expected one of: {', '.join(METER_TYPES)}")
    return meter_type


def decode_image(payload: str) -> bytes:
    try:
        data = base64.b64decode(strip_data_url(payload), validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Image is not valid base64")
    if not data:
        raise ValidationError("Image is empty")
    return data


class CalibrationService:
    """Experiment folders, configuration layers, test runs, promotion and versions."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        db: Optional[Database] = None,
        gateway: Optional[ExtractionGateway] = None,
        photo_store: Optional[PhotoStore] = None,
    ):
        self.settings = settings or Settings()
        self.db = db or Database(self.settings.db_path)
        self.repository = CalibrationRepository(self.db)
        self.photo_store = photo_store or PhotoStore(self.settings.storage.photos_dir)
        self._gateway = gateway
        calibration = self.settings.calibration
        self.policy = LifecyclePolicy(
            min_photos=calibration.min_photos,
            acceptance_rate=calibration.acceptance_rate,
            review_quorum=calibration.review_quorum,
        )

    @property
    def gateway(self) -> ExtractionGateway:
        if self._gateway is None:
            provider = VisionFactory.create_default_provider(self.settings)
            self._gateway = ExtractionGateway(provider, max_tokens=self.settings.gateway.max_tokens)
        return self._gateway

    def close(self) -> None:
        self.db.close()

    async def aclose(self) -> None:
        """Release the provider's HTTP client, then the database."""
        if self._gateway is not None:
            await self._gateway.provider.aclose()
        self.close()

    # ── Folders ───────────────────────────────────────────────────────

    def _folder_or_404(self, folder_id: str) -> Dict[str, Any]:
        folder = self.repository.get_folder(folder_id)
        if folder is None:
            raise NotFoundError(f"Folder not found: {folder_id}")
        return folder

    def _ensure_type_config(self, meter_type: str) -> Dict[str, Any]:
        existing = self.repository.get_type_config_for(meter_type)
        if existing:
            return existing
        config_id = self.repository.save_type_config(TypeConfig(id=str(uuid.uuid4()), meter_type=meter_type))
        return self.repository.get_type_config(config_id)

    def _ensure_model_config(self, folder: Dict[str, Any]) -> Dict[str, Any]:
        if folder.get("config_model_id"):
            config = self.repository.get_model_config(folder["config_model_id"])
            if config:
                return config
        type_config = self._ensure_type_config(folder["detected_type"])
        config_id = self.repository.save_model_config(
            ModelConfig(id=str(uuid.uuid4()), name=folder["name"], type_config_id=type_config["id"])
        )
        self.repository.update_folder(folder["id"], {"config_model_id": config_id})
        return self.repository.get_model_config(config_id)

    def sync_folder(self, folder_id: str) -> Dict[str, Any]:
        """Refresh the photo count and apply the automatic transition that is due, if any."""
        folder = self._folder_or_404(folder_id)
        photo_count = self.repository.count_folder_photos(folder_id)
        target = lifecycle.next_status(folder, photo_count, self.repository.latest_run(folder_id), self.policy)

        fields: Dict[str, Any] = {"photo_count": photo_count}
        if target:
            fields["status"] = target
            logger.info(f"Folder {folder['name']}: {folder['status']} -> {target}")
        return self.repository.update_folder(folder_id, fields)

    def list_folders(
        self, status: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> Dict[str, Any]:
        folders = self.repository.list_folders(status=status, limit=limit, offset=offset)
        return {
            "folders": [lifecycle.describe(f) for f in folders],
            "unclassified_count": len(self.repository.list_photos(unclassified=True)),
        }

    def get_folder(self, folder_id: str) -> Dict[str, Any]:
        folder = self._folder_or_404(folder_id)
        model_config = (
            self.repository.get_model_config(folder["config_model_id"]) if folder.get("config_model_id") else None
        )
        return {
            "folder": lifecycle.describe(folder),
            "photos": self.repository.list_photos(folder_id=folder_id),
            "latest_test": self.repository.latest_run(folder_id),
            "model_config": model_config,
        }

    def create_folder(self, data: Dict[str, Any]) -> Dict[str, Any]:
        _require(data, "name")
        meter_type = _check_meter_type(data.get("detected_type") or "unknown")
        folder = ExperimentFolder(
            id=str(uuid.uuid4()),
            name=data["name"].strip(),
            description=data.get("description"),
            detected_type=meter_type,
            min_photos_required=int(data.get("min_photos_required") or self.policy.min_photos),
        )
        self.repository.save_folder(folder)
        self._ensure_model_config(self.repository.get_folder(folder.id))
        logger.info(f"Created folder {folder.name} ({meter_type})")
        return lifecycle.describe(self.repository.get_folder(folder.id))

    def update_folder(self, folder_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        folder = self._folder_or_404(folder_id)
        fields = _pick(data, FOLDER_UPDATE_FIELDS)
        if not fields:
            raise ValidationError(f"Nothing to update. Allowed fields: {', '.join(sorted(FOLDER_UPDATE_FIELDS))}")
        if "name" in fields and not (fields["name"] or "").strip():
            raise ValidationError("Folder name cannot be empty")
        if "detected_type" in fields:
            _check_meter_type(fields["detected_type"])
        if fields.get("reference_photo_id"):
            photo = self.repository.get_photo(fields["reference_photo_id"])
            if photo is None or photo["folder_id"] != folder_id:
                raise ValidationError("Reference photo must belong to this folder")

        reference_changed = (
            "reference_photo_id" in fields and fields["reference_photo_id"] != folder.get("reference_photo_id")
        )
        with self.db.transaction():
            self.repository.update_folder(folder_id, fields)
            if reference_changed:
                self._mark_zones_stale(folder)
            if fields.get("detected_type", folder["detected_type"]) != folder["detected_type"]:
                config = self._ensure_model_config(self.repository.get_folder(folder_id))
                type_config = self._ensure_type_config(fields["detected_type"])
                self.repository.update_model_config(config["id"], {"type_config_id": type_config["id"]})
        return lifecycle.describe(self.sync_folder(folder_id))

    def _mark_zones_stale(self, folder: Dict[str, Any]) -> None:
        if not folder.get("config_model_id"):
            return
        config = self.repository.get_model_config(folder["config_model_id"])
        if not config:
            return
        zones = ZoneSet(config["zones"] or [])
        if zones.mark_stale():
            self.repository.update_model_config(config["id"], {"zones": zones.to_list()})
            logger.info(f"Reference photo changed for {folder['name']}: zones need re-positioning")

    def delete_folder(self, folder_id: str) -> Dict[str, Any]:
        folder = self._folder_or_404(folder_id)
        refs = [photo["image_ref"] for photo in self.repository.list_photos(folder_id=folder_id)]
        with self.db.transaction():
            deleted = self.repository.delete_folder(folder_id)
            config_id = folder.get("config_model_id")
            if config_id:
                config = self.repository.get_model_config(config_id)
                if config and not config["is_promoted"]:
                    self.repository.delete_model_config(config_id)
        for ref in refs:
            self.photo_store.delete(ref)
        logger.info(f"Deleted folder {folder['name']}: {deleted['photos']} photos, {deleted['runs']} runs")
        return {"deleted": folder_id, **deleted}

    def reject_folder(self, folder_id: str) -> Dict[str, Any]:
        folder = self._folder_or_404(folder_id)
        updated = self.repository.update_folder(folder_id, {"status": lifecycle.REJECTED})
        logger.info(f"Folder {folder['name']}: {folder['status']} -> {lifecycle.REJECTED}")
        return lifecycle.describe(updated)

    # ── Photos ────────────────────────────────────────────────────────

    def _folder_for_classification(self, meter_type: str, brand: Optional[str]) -> str:
        name = f"{brand} {meter_type}".strip() if brand else f"Unsorted {meter_type}"
        existing = self.repository.find_folder_by_name(name)
        if existing and existing["status"] in (lifecycle.DRAFT, lifecycle.READY):
            return existing["id"]
        return self.create_folder({"name": name, "detected_type": meter_type})["id"]

    async def upload_photos(self, items: List[Dict[str, Any]], folder_id: Optional[str] = None) -> Dict[str, Any]:
        """Store a batch of base64 images; each file succeeds or fails on its own."""
        if folder_id:
            self._folder_or_404(folder_id)

        uploaded: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        added = Counter()

        for item in items:
            filename = item.get("filename") or "photo.jpg"
            try:
                data = decode_image(item.get("image") or "")
            except ValidationError as e:
                errors.append({"filename": filename, "error": str(e)})
                continue

            image_hash = hash_image(data)
            if self.repository.get_photo_by_hash(image_hash):
                errors.append({"filename": filename, "error": "Duplicate image"})
                continue

            photo = PhotoRecord(
                id=str(uuid.uuid4()),
                image_ref=self.photo_store.put(data, filename),
                image_hash=image_hash,
                folder_id=folder_id,
                original_filename=filename,
                file_size_bytes=len(data),
            )
            if folder_id is None:
                await self._classify_into(photo, data)

            self.repository.save_photo(photo)
            if photo.folder_id:
                added[photo.folder_id] += 1
            uploaded.append(self.repository.get_photo(photo.id))

        for target_id, count in added.items():
            self._note_new_photos(target_id, count)

        logger.info(f"Uploaded {len(uploaded)}/{len(items)} photos ({len(errors)} errors)")
        return {
            "uploaded": uploaded,
            "errors": errors,
            "total": len(items),
            "success_count": len(uploaded),
            "error_count": len(errors),
        }

    async def _classify_into(self, photo: PhotoRecord, data: bytes) -> None:
        try:
            result = await self.gateway.classify(data)
        except ExtractionError as e:
            logger.warning(f"Classification failed for {photo.original_filename}: {e}")
            return
        photo.detected_type = result.meter_type
        photo.detected_brand = result.brand
        photo.ai_confidence = result.confidence
        threshold = self.settings.calibration.classification_min_confidence
        if result.confidence >= threshold and result.meter_type != "unknown":
            photo.folder_id = self._folder_for_classification(result.meter_type, result.brand)

    def _note_new_photos(self, folder_id: str, count: int) -> None:
        folder = self.repository.get_folder(folder_id)
        if folder is None:
            return
        self.repository.update_folder(
            folder_id, {"photos_since_last_test": (folder["photos_since_last_test"] or 0) + count}
        )
        self.sync_folder(folder_id)

    def list_photos(self, folder_id: Optional[str] = None, unclassified: bool = False) -> List[Dict[str, Any]]:
        return self.repository.list_photos(folder_id=folder_id, unclassified=unclassified)

    def _release_reference(self, photos: List[Dict[str, Any]]) -> None:
        for photo in photos:
            if not photo["folder_id"]:
                continue
            folder = self.repository.get_folder(photo["folder_id"])
            if folder and folder.get("reference_photo_id") == photo["id"]:
                self.repository.update_folder(folder["id"], {"reference_photo_id": None})
                self._mark_zones_stale(folder)

    def move_photos(self, photo_ids: List[str], target_folder_id: Optional[str]) -> Dict[str, Any]:
        """Reassign photos to another folder, or to the unclassified pool when target is None."""
        if not photo_ids:
            raise ValidationError("photo_ids is required")
        if target_folder_id:
            self._folder_or_404(target_folder_id)

        photos = self.repository.get_photos(photo_ids)
        sources = {p["folder_id"] for p in photos if p["folder_id"] and p["folder_id"] != target_folder_id}
        with self.db.transaction():
            self._release_reference([p for p in photos if p["folder_id"] != target_folder_id])
            moved = self.repository.move_photos(photo_ids, target_folder_id)

        for source_id in sources:
            self.sync_folder(source_id)
        incoming = sum(1 for p in photos if p["folder_id"] != target_folder_id)
        if target_folder_id and incoming:
            self._note_new_photos(target_folder_id, incoming)
        return {"moved": moved, "target_folder_id": target_folder_id}

    def update_photos(self, photo_ids: List[str], data: Dict[str, Any]) -> Dict[str, Any]:
        if not photo_ids:
            raise ValidationError("photo_ids is required")
        fields = _pick(data, PHOTO_UPDATE_FIELDS)
        if not fields:
            raise ValidationError(f"Nothing to update. Allowed fields: {', '.join(sorted(PHOTO_UPDATE_FIELDS))}")

        if "folder_id" in fields:
            moved = self.move_photos(photo_ids, fields.pop("folder_id"))["moved"]
        else:
            moved = 0
        updated = 0
        if fields:
            with self.db.transaction():
                for photo_id in photo_ids:
                    if self.repository.get_photo(photo_id):
                        self.repository.update_photo(photo_id, fields)
                        updated += 1
        return {"updated": max(updated, moved)}

    def delete_photos(self, photo_ids: List[str]) -> Dict[str, Any]:
        if not photo_ids:
            raise ValidationError("photo_ids is required")
        photos = self.repository.get_photos(photo_ids)
        with self.db.transaction():
            self._release_reference(photos)
            deleted = self.repository.delete_photos(photo_ids)
        for photo in photos:
            self.photo_store.delete(photo["image_ref"])
        for folder_id in {p["folder_id"] for p in photos if p["folder_id"]}:
            self.sync_folder(folder_id)
        return {"deleted": deleted}

    # ── Configuration layers ──────────────────────────────────────────

    def _check_level(self, level: str) -> None:
        if level not in CONFIG_LEVELS:
            raise ValidationError(f"Unknown config level '{level}'. Expected one of: {', '.join(CONFIG_LEVELS)}")

    def get_configs(self, level: str, config_id: Optional[str] = None) -> Any:
        self._check_level(level)
        if level == "universal":
            return self.repository.get_universal_config()
        if level == "type":
            if config_id:
                return self._type_config_or_404(config_id)
            return self.repository.list_type_configs()
        if config_id:
            return self._model_config_or_404(config_id)
        return self.repository.list_model_configs()

    def _type_config_or_404(self, config_id: str) -> Dict[str, Any]:
        config = self.repository.get_type_config(config_id)
        if config is None:
            raise NotFoundError(f"Type config not found: {config_id}")
        return config

    def _model_config_or_404(self, config_id: str) -> Dict[str, Any]:
        config = self.repository.get_model_config(config_id)
        if config is None:
            raise NotFoundError(f"Model config not found: {config_id}")
        return config

    def create_config(self, level: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self._check_level(level)
        if level == "universal":
            return self.repository.upsert_universal_config(_pick(data, UNIVERSAL_UPDATE_FIELDS))

        if level == "type":
            _require(data, "meter_type")
            meter_type = _check_meter_type(data["meter_type"])
            if self.repository.get_type_config_for(meter_type):
                raise ValidationError(f"A type config for '{meter_type}' already exists")
            config = TypeConfig(id=str(uuid.uuid4()), meter_type=meter_type, **_pick(data, TYPE_UPDATE_FIELDS))
            return self.repository.get_type_config(self.repository.save_type_config(config))

        _require(data, "name", "type_config_id")
        self._type_config_or_404(data["type_config_id"])
        fields = _pick(data, MODEL_UPDATE_FIELDS - {"name"})
        if "zones" in fields:
            fields["zones"] = ZoneSet(fields["zones"]).to_list()
        config = ModelConfig(
            id=str(uuid.uuid4()), name=data["name"], type_config_id=data["type_config_id"], **fields
        )
        return self.repository.get_model_config(self.repository.save_model_config(config))

    def update_config(self, level: str, data: Dict[str, Any], config_id: Optional[str] = None) -> Dict[str, Any]:
        self._check_level(level)
        if level == "universal":
            return self.repository.upsert_universal_config(_pick(data, UNIVERSAL_UPDATE_FIELDS))
        if not config_id:
            raise ValidationError("id is required")

        if level == "type":
            self._type_config_or_404(config_id)
            return self.repository.update_type_config(config_id, _pick(data, TYPE_UPDATE_FIELDS))

        self._model_config_or_404(config_id)
        fields = _pick(data, MODEL_UPDATE_FIELDS)
        if "name" in fields and not (fields["name"] or "").strip():
            raise ValidationError("Model config name cannot be empty")
        if "zones" in fields:
            fields["zones"] = ZoneSet(fields["zones"]).to_list()
        return self.repository.update_model_config(config_id, fields)

    # ── Zones ─────────────────────────────────────────────────────────

    def _zone_set(self, folder_id: str) -> Tuple[Dict[str, Any], ZoneSet]:
        folder = self._folder_or_404(folder_id)
        config = self._ensure_model_config(folder)
        zones = ZoneSet(
            config["zones"] or [],
            reference_photo_id=folder.get("reference_photo_id"),
            min_extent=self.settings.calibration.zone_min_extent,
        )
        return config, zones

    def add_zone(self, folder_id: str, zone_type: str, label: Optional[str] = None) -> Dict[str, Any]:
        config, zones = self._zone_set(folder_id)
        zone = zones.add_zone(zone_type, label)
        self.repository.update_model_config(config["id"], {"zones": zones.to_list()})
        return zone.to_dict()

    def position_zone(
        self, folder_id: str, zone_id: str, start: Tuple[float, float], end: Tuple[float, float]
    ) -> Optional[Dict[str, Any]]:
        """Returns the positioned zone, or None when the drag was too small to count."""
        config, zones = self._zone_set(folder_id)
        zone = zones.position_zone(zone_id, start, end)
        if zone is None:
            return None
        self.repository.update_model_config(config["id"], {"zones": zones.to_list()})
        return zone.to_dict()

    def remove_zone(self, folder_id: str, zone_id: str) -> None:
        config, zones = self._zone_set(folder_id)
        zones.remove_zone(zone_id)
        self.repository.update_model_config(config["id"], {"zones": zones.to_list()})

    async def suggest_zones(self, folder_id: str) -> Dict[str, Any]:
        """Let the vision model place zones on the folder's reference photo."""
        config, zones = self._zone_set(folder_id)
        if not zones.reference_photo_id:
            raise PreconditionError("Select a reference photo before suggesting zones")
        photo = self.repository.get_photo(zones.reference_photo_id)
        if photo is None:
            raise NotFoundError(f"Photo not found: {zones.reference_photo_id}")

        try:
            image = self.photo_store.read(photo["image_ref"])
        except FileNotFoundError:
            raise NotFoundError(f"Image file missing for photo {photo['id']}")

        suggestions = await self.gateway.suggest_zones(image)
        placed = zones.apply_suggestions([asdict(s) for s in suggestions])
        self.repository.update_model_config(config["id"], {"zones": zones.to_list()})
        logger.info(f"Folder {folder_id}: {len(placed)} of {len(suggestions)} suggested zones placed")
        return {"placed": [zone.to_dict() for zone in placed], "zones": zones.to_list()}

    # ── Instruction composition ──────────────────────────────────────

    def _layers(self, folder: Dict[str, Any]):
        model_config = self._ensure_model_config(folder)
        type_config = self.repository.get_type_config(model_config["type_config_id"])
        return self.repository.get_universal_config(), type_config, model_config

    def compose_for_folder(self, folder_id: str) -> Dict[str, Any]:
        folder = self._folder_or_404(folder_id)
        universal, type_config, model_config = self._layers(folder)
        corrections = self.repository.recent_corrections(
            model_config["id"], limit=self.settings.calibration.max_corrections
        )
        return {
            "instruction": compose(
                universal,
                type_config,
                model_config,
                corrections=corrections,
                max_corrections=self.settings.calibration.max_corrections,
            ),
            "preprocessing": merge_preprocessing(universal, type_config, model_config),
            "format_spec": model_config.get("format_spec") or {},
            "config_model_id": model_config["id"],
        }

    # ── Test runs ─────────────────────────────────────────────────────

    def start_test(
        self,
        folder_id: str,
        multi_pass: bool = False,
        pass_count: int = 2,
        version_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Queue a run for a folder and move the folder to testing."""
        folder = self._folder_or_404(folder_id)
        latest = self.repository.latest_run(folder_id)
        if latest and is_stale_run(latest, self.run_timeout_seconds):
            latest = self.expire_stale_run(latest)
            folder = self._folder_or_404(folder_id)
        lifecycle.ensure_can_start_test(folder, latest)
        if multi_pass and pass_count not in (2, 3):
            raise ValidationError("pass_count must be 2 or 3")

        composed = self.compose_for_folder(folder_id)
        instruction = composed["instruction"]
        preprocessing = composed["preprocessing"]
        if version_id:
            version = self.repository.get_version(version_id)
            if version is None or version["kind"] != KIND_PROMPT:
                raise NotFoundError(f"Prompt version not found: {version_id}")
            instruction = version["prompt_text"]
            active_image = self.repository.get_active_version(version["model_id"], "preprocessing")
            if active_image:
                preprocessing = {**preprocessing, **(active_image["image_config"] or {})}
        elif folder.get("linked_meter_model_id"):
            version_id = self._matching_version(folder["linked_meter_model_id"], instruction)

        run = TestRunRecord(
            id=str(uuid.uuid4()),
            folder_id=folder_id,
            config_model_id=composed["config_model_id"],
            version_id=version_id,
            multi_pass=multi_pass,
            pass_count=pass_count if multi_pass else 1,
            total_photos=self.repository.count_folder_photos(folder_id),
            previous_folder_status=folder["status"],
            instruction_text=instruction,
            preprocessing=preprocessing,
        )
        with self.db.transaction():
            self.repository.save_run(run)
            self.repository.update_folder(folder_id, {"status": lifecycle.TESTING})
        logger.info(f"Folder {folder['name']}: {folder['status']} -> {lifecycle.TESTING} (run {run.id})")
        return self.repository.get_run(run.id)

    @property
    def run_timeout_seconds(self) -> float:
        polling = self.settings.polling
        return polling.max_iterations * polling.interval_seconds

    def expire_stale_run(self, run: Dict[str, Any]) -> Dict[str, Any]:
        """Fail a queued or running run nobody finished within the polling budget."""
        if not is_stale_run(run, self.run_timeout_seconds):
            return run
        return mark_run_failed(
            self.repository, run, f"Run stalled: not finished after {self.run_timeout_seconds:.0f}s"
        )

    def _matching_version(self, model_id: str, instruction: str) -> Optional[str]:
        for version in self.repository.list_versions(model_id, KIND_PROMPT):
            if version["prompt_text"] == instruction:
                return version["id"]
        return None

    def queued_run(self, run_id: str) -> Dict[str, Any]:
        """The run, provided it is still waiting to be executed."""
        run = self.get_test(run_id)["test"]
        if run["status"] != "queued":
            raise PreconditionError(f"Test run {run_id} is {run['status']}, not queued")
        return run

    async def execute_test(self, run_id: str) -> Dict[str, Any]:
        """Run a queued test to completion; used as the background job body."""
        run = self.queued_run(run_id)
        format_spec = {}
        if run.get("config_model_id"):
            config = self.repository.get_model_config(run["config_model_id"])
            format_spec = (config or {}).get("format_spec") or {}

        try:
            gateway = self.gateway
        except ConfigError as e:
            return mark_run_failed(self.repository, run, str(e))

        orchestrator = TestOrchestrator(
            self.repository,
            self.photo_store,
            gateway,
            max_parallel=self.settings.calibration.max_parallel_photos,
            reconciliation=self.settings.calibration.reconciliation,
        )
        result = await orchestrator.execute_run(run_id, format_spec=format_spec)
        self.sync_folder(run["folder_id"])
        return result

    def get_test(self, run_id: str) -> Dict[str, Any]:
        run = self.repository.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Test run not found: {run_id}")
        run = self.expire_stale_run(run)
        return {"test": run, "results": self.repository.get_test_results(run_id)}

    def list_tests(self, folder_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        return self.repository.list_runs(folder_id=folder_id, limit=limit)

    def record_verdict(
        self,
        result_id: str,
        verdict: Optional[bool],
        corrected_reading: Optional[str] = None,
        corrected_serial: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Set the operator verdict on one result and refresh the run and folder."""
        result = self.repository.get_test_result(result_id)
        if result is None:
            raise NotFoundError(f"Test result not found: {result_id}")

        error_type = None
        if corrected_reading:
            error_type = detect_error_type(result["reading"] or "", corrected_reading)

        with self.db.transaction():
            updated = self.repository.update_test_result(result_id, {
                "verdict": verdict,
                "corrected_reading": corrected_reading,
                "corrected_serial": corrected_serial,
                "error_type": error_type,
                "verdict_at": datetime.utcnow() if verdict is not None else None,
            })
            stats = compute_run_stats(self.repository.get_test_results(result["run_id"]))
            run = self.repository.update_run(result["run_id"], stats)

        folder = self.sync_folder(run["folder_id"])
        return {"result": updated, "test": run, "folder_status": folder["status"]}

    def correction_stats(self, config_model_id: Optional[str] = None) -> Dict[str, Any]:
        history = self.repository.correction_history(config_model_id)
        by_type = Counter(row["error_type"] for row in history if row["error_type"])
        return {"corrections": history, "stats": {"total": len(history), "by_type": dict(by_type)}}

    # ── Promotion ─────────────────────────────────────────────────────

    def promote(self, folder_id: str) -> Dict[str, Any]:
        """Publish the configuration the folder was validated with."""
        folder = self._folder_or_404(folder_id)
        lifecycle.ensure_can_promote(folder)

        latest = self.repository.latest_run(folder_id)
        if latest and latest["status"] == "completed" and latest["instruction_text"]:
            instruction = latest["instruction_text"]
            preprocessing = latest["preprocessing"] or {}
        else:
            composed = self.compose_for_folder(folder_id)
            instruction, preprocessing = composed["instruction"], composed["preprocessing"]

        image_config = preprocessing if preprocessing and preprocessing != PREPROCESSING_DEFAULTS else None
        return promote_folder(self.repository, folder_id, instruction, image_config).to_dict()

    def promotion_eligibility(self, folder_id: str) -> Dict[str, Any]:
        folder = self._folder_or_404(folder_id)
        return promotion_eligibility(
            folder,
            self.repository.count_folder_photos(folder_id),
            self.repository.list_runs(folder_id=folder_id, limit=1000),
            self.policy,
        )

    # ── Meter models and versions ─────────────────────────────────────

    def list_meter_models(self) -> List[Dict[str, Any]]:
        return self.repository.list_meter_models()

    def _meter_model_or_404(self, model_id: str) -> Dict[str, Any]:
        model = self.repository.get_meter_model(model_id)
        if model is None:
            raise NotFoundError(f"Meter model not found: {model_id}")
        return model

    def _version_stats(self, model_id: str, kind: str = KIND_PROMPT):
        versions = self.repository.list_versions(model_id, kind)
        return versions, build_version_stats(versions, self.repository.version_result_rows(model_id))

    def list_versions(self, model_id: str, kind: Optional[str] = None) -> Dict[str, Any]:
        model = self._meter_model_or_404(model_id)
        stats = {}
        for version_kind in VERSION_KINDS:
            _, kind_stats = self._version_stats(model_id, version_kind)
            stats.update({s.version_id: s.to_dict() for s in kind_stats})
        versions = self.repository.list_versions(model_id, kind)
        return {
            "model": model,
            "versions": [{**v, "stats": stats.get(v["id"])} for v in versions],
        }

    def create_version(self, model_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self._meter_model_or_404(model_id)
        kind = data.get("kind") or KIND_PROMPT
        if kind not in VERSION_KINDS:
            raise ValidationError(f"Unknown version kind '{kind}'. Expected one of: {', '.join(VERSION_KINDS)}")
        if kind == KIND_PROMPT:
            _require(data, "prompt_text")
        elif not data.get("image_config"):
            raise ValidationError("Missing required field(s): image_config")

        version = ModelVersion(
            id=str(uuid.uuid4()),
            model_id=model_id,
            kind=kind,
            version_number=self.repository.next_version_number(model_id, kind),
            prompt_text=data.get("prompt_text") or "",
            image_config=data.get("image_config") or {},
            notes=data.get("notes"),
        )
        with self.db.transaction():
            self.repository.save_version(version)
            if data.get("activate") or self.repository.get_active_version(model_id, kind) is None:
                self.repository.activate_version(version.id)
        return self.repository.get_version(version.id)

    def activate_version(self, model_id: str, version_id: str) -> Dict[str, Any]:
        version = self.repository.get_version(version_id)
        if version is None or version["model_id"] != model_id:
            raise NotFoundError(f"Version not found: {version_id}")
        self.repository.activate_version(version_id)
        return self.repository.get_version(version_id)

    def delete_version(self, model_id: str, version_id: str) -> Dict[str, Any]:
        version = self.repository.get_version(version_id)
        if version is None or version["model_id"] != model_id:
            raise NotFoundError(f"Version not found: {version_id}")
        if version["is_active"]:
            raise PreconditionError("The active version cannot be deleted; activate another one first")
        self.repository.delete_version(version_id)
        return {"deleted": version_id}

    def suggest_version(self, model_id: str) -> Dict[str, Any]:
        self._meter_model_or_404(model_id)
        _, stats = self._version_stats(model_id, KIND_PROMPT)
        return suggest(stats, min_tests=self.settings.calibration.min_tests_for_suggestion).to_dict()
