"""Repository pattern for CRUD operations on calibration data."""

import json
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Dict, Any, Iterable, List, Optional

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

logger = logging.getLogger(__name__)

UNIVERSAL_CONFIG_ID = "universal"

JSON_COLUMNS = {
    "experiment_photos": {"ground_truth"},
    "config_universal": {"default_preprocessing"},
    "config_type": {"preprocessing_override"},
    "config_model": {"zones", "preprocessing_override", "format_spec"},
    "test_runs": {"preprocessing"},
    "test_results": {"passes", "validation"},
    "model_versions": {"image_config"},
}


def _decode(table: str, row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    for column in JSON_COLUMNS.get(table, ()):
        value = row.get(column)
        if isinstance(value, str):
            row[column] = json.loads(value)
    return row


def _encode(table: str, column: str, value: Any) -> Any:
    if column in JSON_COLUMNS.get(table, ()) and value is not None:
        return json.dumps(value)
    return value


class CalibrationRepository:
    """CRUD operations for folders, photos, configuration layers, test runs and versions."""

    def __init__(self, db: Database):
        self.db = db

    # ── Generic helpers ───────────────────────────────────────────────

    def _insert(self, table: str, record: Any) -> str:
        values = asdict(record)
        columns = list(values.keys())
        placeholders = ",".join("?" for _ in columns)
        self.db.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            [_encode(table, c, values[c]) for c in columns],
        )
        return values["id"]

    def _update(self, table: str, record_id: str, fields: Dict[str, Any]) -> None:
        if not fields:
            return
        assignments = ", ".join(f"{column} = ?" for column in fields)
        params = [_encode(table, c, v) for c, v in fields.items()]
        params.append(record_id)
        self.db.execute(f"UPDATE {table} SET {assignments} WHERE id = ?", params)

    def _get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return _decode(table, self.db.fetchone(f"SELECT * FROM {table} WHERE id = ?", [record_id]))

    def _all(self, table: str, query: str, params=None) -> List[Dict[str, Any]]:
        return [_decode(table, row) for row in self.db.fetchall(query, params)]

    # ── Folders ───────────────────────────────────────────────────────

    def save_folder(self, folder: ExperimentFolder) -> str:
        return self._insert("experiment_folders", folder)

    def get_folder(self, folder_id: str) -> Optional[Dict[str, Any]]:
        return self._get("experiment_folders", folder_id)

    def find_folder_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        return self.db.fetchone(
            "SELECT * FROM experiment_folders WHERE name = ? ORDER BY created_at LIMIT 1", [name]
        )

    def list_folders(
        self,
        status: Optional[str] = None,
        linked_model_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM experiment_folders WHERE 1=1"
        params: list = []
        if status:
            query += " AND status = ?"
            params.append(status)
        if linked_model_id:
            query += " AND linked_meter_model_id = ?"
            params.append(linked_model_id)
        query += " ORDER BY updated_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return self.db.fetchall(query, params)

    def update_folder(self, folder_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        fields = {**fields, "updated_at": datetime.utcnow()}
        self._update("experiment_folders", folder_id, fields)
        return self.get_folder(folder_id)

    def count_folder_photos(self, folder_id: str) -> int:
        return self.db.fetchvalue(
            "SELECT COUNT(*) FROM experiment_photos WHERE folder_id = ?", [folder_id]
        ) or 0

    def delete_folder(self, folder_id: str) -> Dict[str, int]:
        """Delete a folder with its photos, test runs and test results."""
        with self.db.transaction():
            photos = self.count_folder_photos(folder_id)
            run_ids = [
                row["id"] for row in self.db.fetchall(
                    "SELECT id FROM test_runs WHERE folder_id = ?", [folder_id]
                )
            ]
            self.db.execute(
                "DELETE FROM test_results WHERE run_id IN (SELECT id FROM test_runs WHERE folder_id = ?)",
                [folder_id],
            )
            self.db.execute("DELETE FROM test_runs WHERE folder_id = ?", [folder_id])
            self.db.execute("DELETE FROM experiment_photos WHERE folder_id = ?", [folder_id])
            self.db.execute("DELETE FROM experiment_folders WHERE id = ?", [folder_id])
        return {"photos": photos, "runs": len(run_ids)}

    # ── Photos ────────────────────────────────────────────────────────

    def save_photo(self, photo: PhotoRecord) -> str:
        return self._insert("experiment_photos", photo)

    def get_photo(self, photo_id: str) -> Optional[Dict[str, Any]]:
        return self._get("experiment_photos", photo_id)

    def get_photo_by_hash(self, image_hash: str) -> Optional[Dict[str, Any]]:
        return _decode(
            "experiment_photos",
            self.db.fetchone("SELECT * FROM experiment_photos WHERE image_hash = ?", [image_hash]),
        )

    def list_photos(
        self,
        folder_id: Optional[str] = None,
        unclassified: bool = False,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM experiment_photos WHERE 1=1"
        params: list = []
        if unclassified:
            query += " AND folder_id IS NULL"
        elif folder_id:
            query += " AND folder_id = ?"
            params.append(folder_id)
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY uploaded_at, id"
        return self._all("experiment_photos", query, params)

    def get_photos(self, photo_ids: Iterable[str]) -> List[Dict[str, Any]]:
        ids = list(photo_ids)
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        return self._all(
            "experiment_photos",
            f"SELECT * FROM experiment_photos WHERE id IN ({placeholders})",
            ids,
        )

    def move_photos(self, photo_ids: List[str], target_folder_id: Optional[str]) -> int:
        """Reassign ownership of photos; returns the number moved."""
        if not photo_ids:
            return 0
        placeholders = ",".join("?" for _ in photo_ids)
        with self.db.transaction():
            moved = self.db.fetchvalue(
                f"SELECT COUNT(*) FROM experiment_photos WHERE id IN ({placeholders})", photo_ids
            ) or 0
            self.db.execute(
                f"UPDATE experiment_photos SET folder_id = ? WHERE id IN ({placeholders})",
                [target_folder_id, *photo_ids],
            )
        return moved

    def update_photo(self, photo_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._update("experiment_photos", photo_id, fields)
        return self.get_photo(photo_id)

    def delete_photos(self, photo_ids: List[str]) -> int:
        if not photo_ids:
            return 0
        placeholders = ",".join("?" for _ in photo_ids)
        with self.db.transaction():
            deleted = self.db.fetchvalue(
                f"SELECT COUNT(*) FROM experiment_photos WHERE id IN ({placeholders})", photo_ids
            ) or 0
            self.db.execute(f"DELETE FROM experiment_photos WHERE id IN ({placeholders})", photo_ids)
        return deleted

    # ── Configuration layers ──────────────────────────────────────────

    def get_universal_config(self) -> Dict[str, Any]:
        row = self._get("config_universal", UNIVERSAL_CONFIG_ID)
        if row is None:
            return {
                "id": UNIVERSAL_CONFIG_ID,
                "base_prompt": "",
                "min_confidence": 0.7,
                "default_preprocessing": {},
                "updated_at": None,
            }
        return row

    def upsert_universal_config(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        existing = self._get("config_universal", UNIVERSAL_CONFIG_ID)
        if existing is None:
            merged = {**self.get_universal_config(), **fields}
            self.db.execute(
                """INSERT INTO config_universal (id, base_prompt, min_confidence, default_preprocessing, updated_at)
                   VALUES (?,?,?,?,?)""",
                [
                    UNIVERSAL_CONFIG_ID,
                    merged.get("base_prompt") or "",
                    merged.get("min_confidence"),
                    json.dumps(merged.get("default_preprocessing") or {}),
                    datetime.utcnow(),
                ],
            )
        else:
            self._update("config_universal", UNIVERSAL_CONFIG_ID, {**fields, "updated_at": datetime.utcnow()})
        return self.get_universal_config()

    def save_type_config(self, config: TypeConfig) -> str:
        return self._insert("config_type", config)

    def get_type_config(self, config_id: str) -> Optional[Dict[str, Any]]:
        return self._get("config_type", config_id)

    def get_type_config_for(self, meter_type: str) -> Optional[Dict[str, Any]]:
        return _decode(
            "config_type",
            self.db.fetchone(
                """SELECT * FROM config_type WHERE meter_type = ? AND is_active
                   ORDER BY updated_at DESC LIMIT 1""",
                [meter_type],
            ),
        )

    def list_type_configs(self) -> List[Dict[str, Any]]:
        return self._all("config_type", "SELECT * FROM config_type ORDER BY meter_type")

    def update_type_config(self, config_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._update("config_type", config_id, {**fields, "updated_at": datetime.utcnow()})
        return self.get_type_config(config_id)

    def save_model_config(self, config: ModelConfig) -> str:
        return self._insert("config_model", config)

    def get_model_config(self, config_id: str) -> Optional[Dict[str, Any]]:
        return self._get("config_model", config_id)

    def list_model_configs(self, type_config_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if type_config_id:
            return self._all(
                "config_model",
                "SELECT * FROM config_model WHERE type_config_id = ? ORDER BY name",
                [type_config_id],
            )
        return self._all("config_model", "SELECT * FROM config_model ORDER BY name")

    def update_model_config(self, config_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._update("config_model", config_id, {**fields, "updated_at": datetime.utcnow()})
        return self.get_model_config(config_id)

    def delete_model_config(self, config_id: str) -> None:
        self.db.execute("DELETE FROM config_model WHERE id = ?", [config_id])

    # ── Test runs ─────────────────────────────────────────────────────

    def save_run(self, run: TestRunRecord) -> str:
        return self._insert("test_runs", run)

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        return self._get("test_runs", run_id)

    def list_runs(self, folder_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        if folder_id:
            return self._all(
                "test_runs",
                "SELECT * FROM test_runs WHERE folder_id = ? ORDER BY created_at DESC LIMIT ?",
                [folder_id, limit],
            )
        return self._all("test_runs", "SELECT * FROM test_runs ORDER BY created_at DESC LIMIT ?", [limit])

    def latest_run(self, folder_id: str) -> Optional[Dict[str, Any]]:
        runs = self.list_runs(folder_id=folder_id, limit=1)
        return runs[0] if runs else None

    def update_run(self, run_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._update("test_runs", run_id, fields)
        return self.get_run(run_id)

    def tag_runs_with_version(self, folder_id: str, instruction: str, version_id: str) -> int:
        """Attach untagged completed runs that used this instruction to a prompt version."""
        rows = self.db.fetchall(
            """SELECT id FROM test_runs
               WHERE folder_id = ? AND status = 'completed' AND version_id IS NULL AND instruction_text = ?""",
            [folder_id, instruction],
        )
        for row in rows:
            self._update("test_runs", row["id"], {"version_id": version_id})
        return len(rows)

    # ── Test results ──────────────────────────────────────────────────

    def save_test_results(self, records: List[TestResultRecord]) -> int:
        """Bulk insert test results. Returns count inserted."""
        with self.db.transaction():
            for record in records:
                self._insert("test_results", record)
        return len(records)

    def get_test_results(self, run_id: str) -> List[Dict[str, Any]]:
        return self._all(
            "test_results",
            "SELECT * FROM test_results WHERE run_id = ? ORDER BY position, id",
            [run_id],
        )

    def get_test_result(self, result_id: str) -> Optional[Dict[str, Any]]:
        return self._get("test_results", result_id)

    def update_test_result(self, result_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._update("test_results", result_id, fields)
        return self.get_test_result(result_id)

    def recent_corrections(self, config_model_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        """Rejected results carrying an operator correction, newest first."""
        return self.db.fetchall(
            """SELECT r.reading AS wrong, r.corrected_reading AS "right", r.verdict_at
               FROM test_results r JOIN test_runs t ON r.run_id = t.id
               WHERE t.config_model_id = ?
                 AND r.verdict = FALSE
                 AND r.corrected_reading IS NOT NULL
                 AND r.reading IS NOT NULL
               ORDER BY r.verdict_at DESC, r.id
               LIMIT ?""",
            [config_model_id, limit],
        )

    def correction_history(self, config_model_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        query = """SELECT r.id, r.run_id, r.photo_id, r.reading, r.corrected_reading,
                          r.serial_number, r.corrected_serial, r.error_type, r.confidence, r.verdict_at
                   FROM test_results r JOIN test_runs t ON r.run_id = t.id
                   WHERE r.corrected_reading IS NOT NULL"""
        params: list = []
        if config_model_id:
            query += " AND t.config_model_id = ?"
            params.append(config_model_id)
        query += " ORDER BY r.verdict_at DESC LIMIT ?"
        params.append(limit)
        return self.db.fetchall(query, params)

    # ── Meter models and versions ─────────────────────────────────────

    def save_meter_model(self, model: MeterModel) -> str:
        return self._insert("meter_models", model)

    def get_meter_model(self, model_id: str) -> Optional[Dict[str, Any]]:
        return self._get("meter_models", model_id)

    def get_meter_model_for_folder(self, folder_id: str) -> Optional[Dict[str, Any]]:
        return self.db.fetchone("SELECT * FROM meter_models WHERE source_folder_id = ?", [folder_id])

    def list_meter_models(self) -> List[Dict[str, Any]]:
        return self.db.fetchall("SELECT * FROM meter_models ORDER BY name")

    def update_meter_model(self, model_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._update("meter_models", model_id, {**fields, "updated_at": datetime.utcnow()})
        return self.get_meter_model(model_id)

    def save_version(self, version: ModelVersion) -> str:
        return self._insert("model_versions", version)

    def get_version(self, version_id: str) -> Optional[Dict[str, Any]]:
        return self._get("model_versions", version_id)

    def list_versions(self, model_id: str, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        if kind:
            return self._all(
                "model_versions",
                """SELECT * FROM model_versions WHERE model_id = ? AND kind = ?
                   ORDER BY version_number DESC""",
                [model_id, kind],
            )
        return self._all(
            "model_versions",
            "SELECT * FROM model_versions WHERE model_id = ? ORDER BY kind, version_number DESC",
            [model_id],
        )

    def get_active_version(self, model_id: str, kind: str) -> Optional[Dict[str, Any]]:
        return _decode(
            "model_versions",
            self.db.fetchone(
                "SELECT * FROM model_versions WHERE model_id = ? AND kind = ? AND is_active",
                [model_id, kind],
            ),
        )

    def next_version_number(self, model_id: str, kind: str) -> int:
        current = self.db.fetchvalue(
            "SELECT MAX(version_number) FROM model_versions WHERE model_id = ? AND kind = ?",
            [model_id, kind],
        )
        return (current or 0) + 1

    def activate_version(self, version_id: str) -> None:
        """Make one version the only active one of its kind for its model.

        A single UPDATE flips every sibling at once, so readers never see two
        active versions or none.
        """
        with self.db.transaction():
            version = self.get_version(version_id)
            if version is None:
                return
            self.db.execute(
                "UPDATE model_versions SET is_active = (id = ?) WHERE model_id = ? AND kind = ?",
                [version_id, version["model_id"], version["kind"]],
            )
        logger.info(f"Activated {version['kind']} version v{version['version_number']} of model {version['model_id']}")

    def delete_version(self, version_id: str) -> None:
        with self.db.transaction():
            self.db.execute("UPDATE test_runs SET version_id = NULL WHERE version_id = ?", [version_id])
            self.db.execute("DELETE FROM model_versions WHERE id = ?", [version_id])

    def version_result_rows(self, model_id: str) -> List[Dict[str, Any]]:
        """Reviewed and pending results of completed runs tied to a model's versions."""
        return self.db.fetchall(
            """SELECT t.version_id, r.verdict, r.corrected_reading, r.confidence, r.error
               FROM test_results r
               JOIN test_runs t ON r.run_id = t.id
               JOIN model_versions v ON t.version_id = v.id
               WHERE v.model_id = ? AND t.status = 'completed'""",
            [model_id],
        )
