"""Tests for the storage layer."""

import uuid
from datetime import datetime

import pytest

from storage.models import (
    ExperimentFolder,
    MeterModel,
    ModelConfig,
    ModelVersion,
    PhotoRecord,
    TestResultRecord,
    TestRunRecord,
    TypeConfig,
)
from storage.photo_store import PhotoStore, hash_image


def _folder(name="Itron G4"):
    return ExperimentFolder(id=str(uuid.uuid4()), name=name, detected_type="gas")


def _photo(folder_id, n=0):
    return PhotoRecord(
        id=str(uuid.uuid4()),
        image_ref=f"ref-{n}.jpg",
        image_hash=f"hash-{n}",
        folder_id=folder_id,
    )


class TestDatabase:
    def test_schema_creation(self, db):
        tables = db.fetchall("SHOW TABLES")
        table_names = {t["name"] for t in tables}
        for expected in (
            "experiment_folders",
            "experiment_photos",
            "config_universal",
            "config_type",
            "config_model",
            "test_runs",
            "test_results",
            "meter_models",
            "model_versions",
        ):
            assert expected in table_names

    def test_transaction_rolls_back_on_error(self, db, repo):
        folder = _folder()
        with pytest.raises(RuntimeError):
            with db.transaction():
                repo.save_folder(folder)
                raise RuntimeError("boom")
        assert repo.get_folder(folder.id) is None

    def test_nested_transaction_joins_outer(self, db, repo):
        first, second = _folder("A"), _folder("B")
        with pytest.raises(RuntimeError):
            with db.transaction():
                repo.save_folder(first)
                with db.transaction():
                    repo.save_folder(second)
                raise RuntimeError("boom")
        assert repo.get_folder(first.id) is None
        assert repo.get_folder(second.id) is None


class TestCalibrationRepository:
    def test_save_and_get_folder(self, repo):
        folder = _folder()
        repo.save_folder(folder)

        fetched = repo.get_folder(folder.id)
        assert fetched["name"] == "Itron G4"
        assert fetched["status"] == "draft"
        assert fetched["photos_since_last_test"] == 0

    def test_json_columns_round_trip(self, repo):
        type_id = repo.save_type_config(TypeConfig(id=str(uuid.uuid4()), meter_type="gas"))
        config = ModelConfig(
            id=str(uuid.uuid4()),
            name="G4",
            type_config_id=type_id,
            zones=[{"id": "z1", "type": "index", "label": "INDEX", "color": "#22c55e"}],
            format_spec={"integer_digits": 5, "decimal_digits": 3},
        )
        repo.save_model_config(config)

        fetched = repo.get_model_config(config.id)
        assert fetched["zones"][0]["type"] == "index"
        assert fetched["format_spec"] == {"integer_digits": 5, "decimal_digits": 3}
        assert repo.list_model_configs()[0]["zones"][0]["id"] == "z1"

    def test_universal_config_upsert(self, repo):
        assert repo.get_universal_config()["base_prompt"] == ""

        repo.upsert_universal_config({"base_prompt": "Read the meter."})
        repo.upsert_universal_config({"min_confidence": 0.8})

        config = repo.get_universal_config()
        assert config["base_prompt"] == "Read the meter."
        assert config["min_confidence"] == 0.8

    def test_photo_lookup_and_move(self, repo):
        folder = _folder()
        repo.save_folder(folder)
        photos = [_photo(None, n) for n in range(3)]
        for photo in photos:
            repo.save_photo(photo)

        assert len(repo.list_photos(unclassified=True)) == 3
        assert repo.get_photo_by_hash("hash-1")["id"] == photos[1].id

        moved = repo.move_photos([photos[0].id, photos[1].id], folder.id)
        assert moved == 2
        assert repo.count_folder_photos(folder.id) == 2
        assert len(repo.list_photos(unclassified=True)) == 1

    def test_delete_folder_cascades(self, repo):
        folder = _folder()
        repo.save_folder(folder)
        photo = _photo(folder.id)
        repo.save_photo(photo)
        run = TestRunRecord(id=str(uuid.uuid4()), folder_id=folder.id, preprocessing={"contrast": 50})
        repo.save_run(run)
        repo.save_test_results([TestResultRecord(id=str(uuid.uuid4()), run_id=run.id, photo_id=photo.id)])

        deleted = repo.delete_folder(folder.id)

        assert deleted == {"photos": 1, "runs": 1}
        assert repo.get_folder(folder.id) is None
        assert repo.get_run(run.id) is None
        assert repo.get_test_results(run.id) == []
        assert repo.get_photo(photo.id) is None

    def test_run_preprocessing_is_decoded(self, repo):
        folder = _folder()
        repo.save_folder(folder)
        run = TestRunRecord(id=str(uuid.uuid4()), folder_id=folder.id, preprocessing={"contrast": 50})
        repo.save_run(run)

        assert repo.get_run(run.id)["preprocessing"] == {"contrast": 50}
        assert repo.list_runs(folder_id=folder.id)[0]["preprocessing"] == {"contrast": 50}
        assert repo.latest_run(folder.id)["id"] == run.id

    def test_recent_corrections_only_rejected_with_correction(self, repo):
        folder = _folder()
        repo.save_folder(folder)
        run = TestRunRecord(id=str(uuid.uuid4()), folder_id=folder.id, config_model_id="cfg-1")
        repo.save_run(run)
        results = [
            TestResultRecord(id=str(uuid.uuid4()), run_id=run.id, photo_id=f"p{n}", reading=f"10{n}")
            for n in range(3)
        ]
        repo.save_test_results(results)

        now = datetime.utcnow()
        repo.update_test_result(results[0].id, {"verdict": False, "corrected_reading": "190", "verdict_at": now})
        repo.update_test_result(results[1].id, {"verdict": True, "corrected_reading": "191", "verdict_at": now})
        repo.update_test_result(results[2].id, {"verdict": False, "verdict_at": now})

        corrections = repo.recent_corrections("cfg-1")
        assert [(c["wrong"], c["right"]) for c in corrections] == [("100", "190")]
        assert repo.recent_corrections("other-config") == []

    def test_activate_version_keeps_single_active(self, repo):
        model = MeterModel(id=str(uuid.uuid4()), name="G4", meter_type="gas", source_folder_id="f1")
        repo.save_meter_model(model)
        versions = [
            ModelVersion(id=str(uuid.uuid4()), model_id=model.id, kind="prompt", version_number=n, prompt_text=f"v{n}")
            for n in (1, 2, 3)
        ]
        for version in versions:
            repo.save_version(version)

        repo.activate_version(versions[0].id)
        repo.activate_version(versions[2].id)

        active = [v for v in repo.list_versions(model.id, "prompt") if v["is_active"]]
        assert [v["id"] for v in active] == [versions[2].id]
        assert repo.get_active_version(model.id, "prompt")["version_number"] == 3
        assert repo.next_version_number(model.id, "prompt") == 4
        assert repo.next_version_number(model.id, "preprocessing") == 1


class TestPhotoStore:
    def test_put_read_delete(self, tmp_path):
        store = PhotoStore(str(tmp_path / "photos"))
        ref = store.put(b"image-bytes", "my meter (1).jpg")

        assert ref.startswith(hash_image(b"image-bytes"))
        assert " " not in ref
        assert store.read(ref) == b"image-bytes"

        store.delete(ref)
        with pytest.raises(FileNotFoundError):
            store.read(ref)
        store.delete(ref)
