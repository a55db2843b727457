"""Central API layer for the calibration workbench."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, Field

from calibration.service import CalibrationService
from core.config import load_settings
from llm.factory import VisionFactory

router = APIRouter(prefix="/api/v1", tags=["api-v1"])

_service: Optional[CalibrationService] = None


def get_service() -> CalibrationService:
    global _service
    if _service is None:
        _service = CalibrationService(load_settings())
    return _service


async def shutdown_service() -> None:
    global _service
    if _service is not None:
        await _service.aclose()
        _service = None


def ok(**payload: Any) -> Dict[str, Any]:
    return {"success": True, **payload}


# ── Request models ────────────────────────────────────────────────────


class FolderCreate(BaseModel):
    name: Optional[str] = None
    detected_type: str = "unknown"
    description: Optional[str] = None
    min_photos_required: Optional[int] = Field(default=None, ge=1)


class PhotoUpload(BaseModel):
    image: str
    filename: Optional[str] = None


class PhotoBatch(BaseModel):
    photos: List[PhotoUpload] = Field(default_factory=list)
    folder_id: Optional[str] = None


class PhotoMove(BaseModel):
    photo_ids: List[str] = Field(default_factory=list)
    target_folder_id: Optional[str] = None


class PhotoUpdate(BaseModel):
    photo_ids: List[str] = Field(default_factory=list)
    updates: Dict[str, Any] = Field(default_factory=dict)


class PhotoDelete(BaseModel):
    photo_ids: List[str] = Field(default_factory=list)


class ConfigPayload(BaseModel):
    level: str
    id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class ZoneCreate(BaseModel):
    type: str
    label: Optional[str] = None


class ZonePosition(BaseModel):
    start: Tuple[float, float]
    end: Tuple[float, float]


class RunStart(BaseModel):
    folder_id: str
    run_immediately: bool = True
    multi_pass: bool = False
    pass_count: int = 2
    version_id: Optional[str] = None


class VerdictUpdate(BaseModel):
    result_id: str
    verdict: Optional[bool] = None
    corrected_reading: Optional[str] = None
    corrected_serial: Optional[str] = None


class PromoteRequest(BaseModel):
    folder_id: str


class VersionCreate(BaseModel):
    kind: str = "prompt"
    prompt_text: Optional[str] = None
    image_config: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None
    activate: bool = False


# ── Folders ───────────────────────────────────────────────────────────


@router.get("/folders")
async def list_folders(
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: CalibrationService = Depends(get_service),
) -> Dict[str, Any]:
    return ok(**service.list_folders(status=status, limit=limit, offset=offset))


@router.get("/folders/{folder_id}")
async def get_folder(folder_id: str, service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    return ok(**service.get_folder(folder_id))


@router.post("/folders")
async def create_folder(payload: FolderCreate, service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    return ok(folder=service.create_folder(payload.model_dump(exclude_none=True)))


@router.put("/folders/{folder_id}")
async def update_folder(
    folder_id: str, payload: Dict[str, Any], service: CalibrationService = Depends(get_service)
) -> Dict[str, Any]:
    return ok(folder=service.update_folder(folder_id, payload))


@router.delete("/folders/{folder_id}")
async def delete_folder(folder_id: str, service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    return ok(**service.delete_folder(folder_id))


@router.post("/folders/{folder_id}/reject")
async def reject_folder(folder_id: str, service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    return ok(folder=service.reject_folder(folder_id))


@router.get("/folders/{folder_id}/instruction")
async def preview_instruction(folder_id: str, service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    return ok(**service.compose_for_folder(folder_id))


@router.post("/folders/{folder_id}/zones")
async def add_zone(
    folder_id: str, payload: ZoneCreate, service: CalibrationService = Depends(get_service)
) -> Dict[str, Any]:
    return ok(zone=service.add_zone(folder_id, payload.type, payload.label))


@router.post("/folders/{folder_id}/zones/suggest")
async def suggest_zones(folder_id: str, service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    return ok(**await service.suggest_zones(folder_id))


@router.put("/folders/{folder_id}/zones/{zone_id}")
async def position_zone(
    folder_id: str, zone_id: str, payload: ZonePosition, service: CalibrationService = Depends(get_service)
) -> Dict[str, Any]:
    zone = service.position_zone(folder_id, zone_id, payload.start, payload.end)
    return ok(zone=zone, cancelled=zone is None)


@router.delete("/folders/{folder_id}/zones/{zone_id}")
async def remove_zone(folder_id: str, zone_id: str, service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    service.remove_zone(folder_id, zone_id)
    return ok(deleted=zone_id)


# ── Photos ────────────────────────────────────────────────────────────


@router.get("/photos")
async def list_photos(
    folder_id: Optional[str] = None,
    unclassified: bool = False,
    service: CalibrationService = Depends(get_service),
) -> Dict[str, Any]:
    return ok(photos=service.list_photos(folder_id=folder_id, unclassified=unclassified))


@router.post("/photos")
async def upload_photos(payload: PhotoBatch, service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    items = [photo.model_dump() for photo in payload.photos]
    return ok(**await service.upload_photos(items, folder_id=payload.folder_id))


@router.patch("/photos")
async def move_photos(payload: PhotoMove, service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    return ok(**service.move_photos(payload.photo_ids, payload.target_folder_id))


@router.put("/photos")
async def update_photos(payload: PhotoUpdate, service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    return ok(**service.update_photos(payload.photo_ids, payload.updates))


@router.delete("/photos")
async def delete_photos(payload: PhotoDelete, service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    return ok(**service.delete_photos(payload.photo_ids))


# ── Configuration layers ──────────────────────────────────────────────


@router.get("/configs")
async def get_configs(
    level: str = Query(...),
    id: Optional[str] = None,
    service: CalibrationService = Depends(get_service),
) -> Dict[str, Any]:
    return ok(config=service.get_configs(level, id))


@router.post("/configs")
async def create_config(payload: ConfigPayload, service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    return ok(config=service.create_config(payload.level, payload.data))


@router.put("/configs")
async def update_config(payload: ConfigPayload, service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    return ok(config=service.update_config(payload.level, payload.data, payload.id))


# ── Test runs ─────────────────────────────────────────────────────────


@router.post("/tests")
async def start_test(
    payload: RunStart,
    background_tasks: BackgroundTasks,
    service: CalibrationService = Depends(get_service),
) -> Dict[str, Any]:
    run = service.start_test(
        payload.folder_id,
        multi_pass=payload.multi_pass,
        pass_count=payload.pass_count,
        version_id=payload.version_id,
    )
    if payload.run_immediately:
        background_tasks.add_task(service.execute_test, run["id"])
    return ok(test=run)


@router.post("/tests/{run_id}/execute")
async def execute_test(
    run_id: str, background_tasks: BackgroundTasks, service: CalibrationService = Depends(get_service)
) -> Dict[str, Any]:
    run = service.queued_run(run_id)
    background_tasks.add_task(service.execute_test, run_id)
    return ok(test=run)


@router.get("/tests")
async def list_tests(
    folder_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    service: CalibrationService = Depends(get_service),
) -> Dict[str, Any]:
    return ok(tests=service.list_tests(folder_id=folder_id, limit=limit))


@router.get("/tests/{run_id}")
async def get_test(run_id: str, service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    return ok(**service.get_test(run_id))


@router.put("/tests")
async def record_verdict(payload: VerdictUpdate, service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    return ok(**service.record_verdict(
        payload.result_id,
        payload.verdict,
        corrected_reading=payload.corrected_reading,
        corrected_serial=payload.corrected_serial,
    ))


@router.get("/corrections")
async def corrections(
    config_model_id: Optional[str] = None, service: CalibrationService = Depends(get_service)
) -> Dict[str, Any]:
    return ok(**service.correction_stats(config_model_id))


# ── Promotion and versions ────────────────────────────────────────────


@router.post("/promote")
async def promote(payload: PromoteRequest, service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    return ok(**service.promote(payload.folder_id))


@router.get("/promote")
async def promotion_eligibility(
    folder_id: str = Query(...), service: CalibrationService = Depends(get_service)
) -> Dict[str, Any]:
    return ok(**service.promotion_eligibility(folder_id))


@router.get("/models")
async def list_models(service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    return ok(models=service.list_meter_models())


@router.get("/models/{model_id}/versions")
async def list_versions(
    model_id: str, kind: Optional[str] = None, service: CalibrationService = Depends(get_service)
) -> Dict[str, Any]:
    return ok(**service.list_versions(model_id, kind))


@router.post("/models/{model_id}/versions")
async def create_version(
    model_id: str, payload: VersionCreate, service: CalibrationService = Depends(get_service)
) -> Dict[str, Any]:
    return ok(version=service.create_version(model_id, payload.model_dump()))


@router.post("/models/{model_id}/versions/{version_id}/activate")
async def activate_version(
    model_id: str, version_id: str, service: CalibrationService = Depends(get_service)
) -> Dict[str, Any]:
    return ok(version=service.activate_version(model_id, version_id))


@router.delete("/models/{model_id}/versions/{version_id}")
async def delete_version(
    model_id: str, version_id: str, service: CalibrationService = Depends(get_service)
) -> Dict[str, Any]:
    return ok(**service.delete_version(model_id, version_id))


@router.get("/models/{model_id}/suggest")
async def suggest_version(model_id: str, service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    return ok(**service.suggest_version(model_id))


@router.get("/providers")
async def list_providers(service: CalibrationService = Depends(get_service)) -> Dict[str, Any]:
    return ok(
        default=service.settings.gateway.provider,
        providers=VisionFactory.describe_providers(service.settings),
    )
