"""Tests for folders, photo intake, configuration layers, zones and verdicts."""

import base64
import json
import os

import pytest

from calibration.orchestrator import compute_run_stats
from core.errors import NotFoundError, PreconditionError, ValidationError


def _b64(data):
    return base64.b64encode(data).decode("ascii")


class TestFolders:
    def test_create_folder_sets_up_configuration(self, service):
        folder = service.create_folder({"name": "  Itron G4 ", "detected_type": "gas"})

        assert folder["name"] == "Itron G4"
        assert folder["status"] == "draft"
        assert folder["config_model_id"]
        type_configs = service.get_configs("type")
        assert [c["meter_type"] for c in type_configs] == ["gas"]
        model_config = service.get_configs("model", folder["config_model_id"])
        assert model_config["type_config_id"] == type_configs[0]["id"]

    def test_create_folder_validation(self, service):
        with pytest.raises(ValidationError, match="name"):
            service.create_folder({})
        with pytest.raises(ValidationError, match="meter type"):
            service.create_folder({"name": "X", "detected_type": "steam"})

    def test_update_folder_whitelist(self, service):
        folder = service.create_folder({"name": "Itron G4"})
        with pytest.raises(ValidationError, match="Nothing to update"):
            service.update_folder(folder["id"], {"status": "validated"})

        updated = service.update_folder(folder["id"], {"description": "Basement meters", "status": "validated"})
        assert updated["description"] == "Basement meters"
        assert updated["status"] == "draft"

    def test_missing_folder(self, service):
        with pytest.raises(NotFoundError):
            service.get_folder("missing")

    @pytest.mark.asyncio
    async def test_photo_threshold_moves_draft_and_ready(self, service, seed, more_photos):
        folder, _ = await seed(4)
        assert folder["status"] == "draft"
        assert folder["photo_count"] == 4

        await more_photos(folder["id"], 0)
        assert service.get_folder(folder["id"])["folder"]["status"] == "ready"

        photo_id = service.list_photos(folder_id=folder["id"])[0]["id"]
        service.delete_photos([photo_id])
        refreshed = service.get_folder(folder["id"])["folder"]
        assert refreshed["status"] == "draft"
        assert refreshed["photo_count"] == 4

    @pytest.mark.asyncio
    async def test_delete_folder_cascades(self, service, seed):
        folder, _ = await seed(5)
        run = service.start_test(folder["id"])
        await service.execute_test(run["id"])
        refs = [p["image_ref"] for p in service.list_photos(folder_id=folder["id"])]

        deleted = service.delete_folder(folder["id"])

        assert deleted == {"deleted": folder["id"], "photos": 5, "runs": 1}
        with pytest.raises(NotFoundError):
            service.get_folder(folder["id"])
        with pytest.raises(NotFoundError):
            service.get_test(run["id"])
        assert not any(os.path.exists(os.path.join(service.photo_store.root, ref)) for ref in refs)
        assert service.get_configs("model") == []

    @pytest.mark.asyncio
    async def test_rejected_folder_cannot_be_tested(self, service, seed):
        folder, _ = await seed(5)
        assert service.reject_folder(folder["id"])["status"] == "rejected"
        with pytest.raises(PreconditionError):
            service.start_test(folder["id"])


class TestPhotoIntake:
    @pytest.mark.asyncio
    async def test_duplicates_and_bad_payloads_fail_per_file(self, service, photo_bytes):
        folder = service.create_folder({"name": "Itron G4", "detected_type": "gas"})
        image = photo_bytes(1)

        result = await service.upload_photos(
            [
                {"image": _b64(image), "filename": "a.jpg"},
                {"image": _b64(image), "filename": "b.jpg"},
                {"image": "not base64!!", "filename": "c.jpg"},
                {"image": "data:image/jpeg;base64," + _b64(photo_bytes(2)), "filename": "d.jpg"},
            ],
            folder_id=folder["id"],
        )

        assert result["total"] == 4
        assert result["success_count"] == 2
        assert result["errors"] == [
            {"filename": "b.jpg", "error": "Duplicate image"},
            {"filename": "c.jpg", "error": "Image is not valid base64"},
        ]
        assert service.get_folder(folder["id"])["folder"]["photos_since_last_test"] == 2

    @pytest.mark.asyncio
    async def test_confident_classification_files_photo(self, service, provider, photo_bytes):
        image = photo_bytes(1)
        provider.replies[image] = json.dumps({"meter_type": "Gas", "brand": "Itron", "confidence": 0.9})

        result = await service.upload_photos([{"image": _b64(image), "filename": "a.jpg"}])

        photo = result["uploaded"][0]
        assert photo["detected_type"] == "gas"
        assert photo["detected_brand"] == "Itron"
        folder = service.get_folder(photo["folder_id"])["folder"]
        assert folder["name"] == "Itron gas"
        assert folder["detected_type"] == "gas"

    @pytest.mark.asyncio
    async def test_uncertain_classification_stays_unclassified(self, service, provider, photo_bytes):
        image = photo_bytes(1)
        provider.replies[image] = json.dumps({"meter_type": "water", "brand": None, "confidence": 0.3})

        result = await service.upload_photos([{"image": _b64(image), "filename": "a.jpg"}])

        assert result["uploaded"][0]["folder_id"] is None
        listing = service.list_folders()
        assert listing["folders"] == []
        assert listing["unclassified_count"] == 1

    @pytest.mark.asyncio
    async def test_move_photos_between_folders(self, service, provider, seed, photo_bytes):
        folder, _ = await seed(4)
        image = photo_bytes(99)
        provider.fail(image)
        loose = (await service.upload_photos([{"image": _b64(image), "filename": "x.jpg"}]))["uploaded"][0]
        assert loose["folder_id"] is None

        moved = service.move_photos([loose["id"]], folder["id"])

        assert moved["moved"] == 1
        refreshed = service.get_folder(folder["id"])["folder"]
        assert refreshed["photo_count"] == 5
        assert refreshed["status"] == "ready"
        assert service.list_folders()["unclassified_count"] == 0


class TestConfigLayers:
    def test_universal_update_is_whitelisted(self, service):
        config = service.update_config("universal", {"base_prompt": "Read it.", "id": "hijack"})
        assert config["base_prompt"] == "Read it."
        assert config["id"] == "universal"

    def test_level_and_required_fields(self, service):
        with pytest.raises(ValidationError):
            service.get_configs("global")
        with pytest.raises(ValidationError, match="type_config_id"):
            service.create_config("model", {"name": "G4"})
        service.create_config("type", {"meter_type": "water", "additional_prompt": "Black digits are m3."})
        with pytest.raises(ValidationError, match="already exists"):
            service.create_config("type", {"meter_type": "water"})

    def test_model_config_layer_reaches_instruction(self, service):
        folder = service.create_folder({"name": "Itron G4", "detected_type": "gas"})
        service.update_config(
            "model",
            {"specific_prompt": "Red drums are decimals.", "format_spec": {"integer_digits": 5}},
            folder["config_model_id"],
        )

        composed = service.compose_for_folder(folder["id"])
        assert composed["instruction"].startswith("Read the consumption index")
        assert "=== MODEL: Itron G4 ===\nRed drums are decimals." in composed["instruction"]
        assert composed["format_spec"] == {"integer_digits": 5}


class TestZones:
    @pytest.mark.asyncio
    async def test_zone_workflow_with_reference_photo(self, service, seed):
        folder, _ = await seed(5)
        photos = service.list_photos(folder_id=folder["id"])
        zone = service.add_zone(folder["id"], "index")

        with pytest.raises(PreconditionError):
            service.position_zone(folder["id"], zone["id"], (0.1, 0.1), (0.5, 0.3))

        service.update_folder(folder["id"], {"reference_photo_id": photos[0]["id"]})
        assert service.position_zone(folder["id"], zone["id"], (0.1, 0.1), (0.105, 0.3)) is None
        placed = service.position_zone(folder["id"], zone["id"], (0.5, 0.3), (0.1, 0.1))
        assert placed["x"] == pytest.approx(0.1)
        assert "=== ZONES ===" in service.compose_for_folder(folder["id"])["instruction"]

        service.update_folder(folder["id"], {"reference_photo_id": photos[1]["id"]})
        config = service.get_configs("model", folder["config_model_id"])
        assert config["zones"][0]["stale"] is True
        assert "ZONES" not in service.compose_for_folder(folder["id"])["instruction"]

        service.remove_zone(folder["id"], zone["id"])
        assert service.get_configs("model", folder["config_model_id"])["zones"] == []

    @pytest.mark.asyncio
    async def test_reference_photo_must_belong_to_folder(self, service, seed):
        first, _ = await seed(1, name="A")
        second, _ = await seed(1, name="B")
        other_photo = service.list_photos(folder_id=second["id"])[0]
        with pytest.raises(ValidationError):
            service.update_folder(first["id"], {"reference_photo_id": other_photo["id"]})

    @pytest.mark.asyncio
    async def test_suggested_zones_land_on_reference_photo(self, service, seed, provider):
        folder, _ = await seed(5)
        with pytest.raises(PreconditionError):
            await service.suggest_zones(folder["id"])

        reference = service.list_photos(folder_id=folder["id"])[0]
        service.update_folder(folder["id"], {"reference_photo_id": reference["id"]})
        provider.default = json.dumps({"zones": [
            {"type": "index", "label": "Drums", "x": 0.25, "y": 0.4, "width": 0.5, "height": 0.12},
        ]})

        result = await service.suggest_zones(folder["id"])

        assert [z["type"] for z in result["placed"]] == ["index"]
        assert base64.b64decode(provider.calls[-1].image_base64) == service.photo_store.read(reference["image_ref"])
        config = service.get_configs("model", folder["config_model_id"])
        assert config["zones"][0]["x"] == pytest.approx(0.25)
        assert config["zones"][0]["label"] == "Drums"
        assert "=== ZONES ===" in service.compose_for_folder(folder["id"])["instruction"]


class TestVerdicts:
    @pytest.mark.asyncio
    async def test_correction_feeds_next_instruction(self, service, seed):
        folder, _ = await seed(5)
        run = service.start_test(folder["id"])
        await service.execute_test(run["id"])
        results = service.get_test(run["id"])["results"]

        outcome = service.record_verdict(results[0]["id"], False, corrected_reading="12345.679")

        assert outcome["result"]["error_type"] == "wrong_digit"
        assert outcome["test"]["rejected_count"] == 1
        assert outcome["folder_status"] == "testing"
        instruction = service.compose_for_folder(folder["id"])["instruction"]
        assert "=== KNOWN CORRECTIONS ===" in instruction
        assert "- 12345.678 → 12345.679" in instruction
        stats = service.correction_stats(folder["config_model_id"])["stats"]
        assert stats == {"total": 1, "by_type": {"wrong_digit": 1}}

    @pytest.mark.asyncio
    async def test_run_aggregates_follow_results(self, service, seed):
        folder, _ = await seed(5)
        run = service.start_test(folder["id"])
        await service.execute_test(run["id"])
        results = service.get_test(run["id"])["results"]

        service.record_verdict(results[0]["id"], True, corrected_reading="12345.600")
        service.record_verdict(results[1]["id"], True)
        service.record_verdict(results[1]["id"], None)

        snapshot = service.get_test(run["id"])
        expected = compute_run_stats(snapshot["results"])
        for key in ("validated_count", "corrected_count", "rejected_count", "pending_count"):
            assert snapshot["test"][key] == expected[key]
        assert snapshot["test"]["corrected_count"] == 1
        assert snapshot["test"]["pending_count"] == 4

    def test_unknown_result(self, service):
        with pytest.raises(NotFoundError):
            service.record_verdict("missing", True)


class TestShutdown:
    @pytest.mark.asyncio
    async def test_aclose_releases_provider_client(self, service, provider):
        client = provider.client
        await service.aclose()
        assert client.is_closed
        assert provider._client is None
