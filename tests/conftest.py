"""Shared fixtures: temporary storage and a scripted vision provider."""

import base64
import json

import pytest

from calibration.service import CalibrationService
from core.config import Settings
from llm.base import VisionProvider, VisionRequest, VisionResponse
from llm.gateway import ExtractionGateway
from storage.database import Database
from storage.repository import CalibrationRepository

DEFAULT_REPLY = json.dumps({"reading": "12345.678", "serial_number": "SN-001", "confidence": 0.9})


class FakeProvider(VisionProvider):
    """Vision provider answering from a script keyed by image bytes.

    A reply can be response text, a VisionResponse, or a callable taking
    the VisionRequest and returning either.
    """

    def __init__(self, default=DEFAULT_REPLY):
        super().__init__({"model": "fake-vision", "input_cost_per_mtok": 1.0, "output_cost_per_mtok": 2.0})
        self.default = default
        self.replies = {}
        self.calls = []

    def _get_api_key(self):
        return "fake"

    async def generate(self, request: VisionRequest) -> VisionResponse:
        self.calls.append(request)
        reply = self.replies.get(base64.b64decode(request.image_base64), self.default)
        if callable(reply):
            reply = reply(request)
        if isinstance(reply, VisionResponse):
            return reply
        return VisionResponse(
            content=reply,
            provider=self.provider_name,
            model=self.model,
            usage={"prompt_tokens": 100, "completion_tokens": 20, "total_tokens": 120},
        )

    def answer(self, image, reading, confidence=0.9, serial="SN-001"):
        self.replies[image] = json.dumps({"reading": reading, "serial_number": serial, "confidence": confidence})

    def fail(self, image, message="HTTP 503: overloaded"):
        self.replies[image] = VisionResponse(content="", provider=self.provider_name, model=self.model, error=message)


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "test.duckdb"))
    yield database
    database.close()


@pytest.fixture
def repo(db):
    return CalibrationRepository(db)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database={"path": str(tmp_path / "meterlab.duckdb")},
        storage={"photos_dir": str(tmp_path / "photos")},
    )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def service(settings, provider):
    svc = CalibrationService(settings, gateway=ExtractionGateway(provider))
    svc.update_config("universal", {"base_prompt": "Read the consumption index of this utility meter."})
    yield svc
    svc.close()


@pytest.fixture
def photo_bytes():
    """Distinct fake image payloads; the gateway never decodes them."""
    def _make(index):
        return b"\xff\xd8\xff\xe0meter-photo-%d" % index
    return _make


@pytest.fixture
def seed(service, photo_bytes):
    """Create a folder holding ``count`` photos; returns (folder, images)."""
    counter = {"next": 0}

    async def _seed(count=5, name="Itron G4", meter_type="gas"):
        folder = service.create_folder({"name": name, "detected_type": meter_type})
        images = []
        for _ in range(count):
            images.append(photo_bytes(counter["next"]))
            counter["next"] += 1
        await service.upload_photos(
            [{"image": base64.b64encode(img).decode("ascii"), "filename": "meter.jpg"} for img in images],
            folder_id=folder["id"],
        )
        return service.get_folder(folder["id"])["folder"], images

    return _seed


@pytest.fixture
def more_photos(service, photo_bytes):
    """Upload extra photos into an existing folder."""
    async def _add(folder_id, start, count=1):
        images = [photo_bytes(1000 + start + i) for i in range(count)]
        await service.upload_photos(
            [{"image": base64.b64encode(img).decode("ascii"), "filename": "extra.jpg"} for img in images],
            folder_id=folder_id,
        )
        return images

    return _add


@pytest.fixture
def review_all(service):
    """Record the same verdict on every result of a run."""
    def _review(run_id, verdict=True):
        outcome = None
        for result in service.get_test(run_id)["results"]:
            outcome = service.record_verdict(result["id"], verdict)
        return outcome

    return _review
