"""DuckDB database setup and connection management."""

import duckdb
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

# Cascades (folder -> photos, runs, results) are done by the repository inside
# a transaction; DuckDB foreign keys would block updates on referenced rows.
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS experiment_folders (
    id                      VARCHAR PRIMARY KEY,
    name                    VARCHAR NOT NULL,
    description             VARCHAR,
    detected_type           VARCHAR NOT NULL,
    status                  VARCHAR NOT NULL,
    photo_count             INTEGER DEFAULT 0,
    min_photos_required     INTEGER DEFAULT 5,
    reference_photo_id      VARCHAR,
    photos_since_last_test  INTEGER DEFAULT 0,
    last_test_at            TIMESTAMP,
    config_model_id         VARCHAR,
    linked_meter_model_id   VARCHAR,
    created_at              TIMESTAMP DEFAULT current_timestamp,
    updated_at              TIMESTAMP DEFAULT current_timestamp
);

CREATE TABLE IF NOT EXISTS experiment_photos (
    id                VARCHAR PRIMARY KEY,
    folder_id         VARCHAR,
    image_ref         VARCHAR NOT NULL,
    image_hash        VARCHAR NOT NULL,
    original_filename VARCHAR,
    file_size_bytes   BIGINT,
    detected_type     VARCHAR,
    detected_brand    VARCHAR,
    ai_confidence     DOUBLE,
    status            VARCHAR,
    ground_truth      JSON,
    uploaded_at       TIMESTAMP DEFAULT current_timestamp
);

CREATE TABLE IF NOT EXISTS config_universal (
    id                    VARCHAR PRIMARY KEY,
    base_prompt           VARCHAR,
    min_confidence        DOUBLE,
    default_preprocessing JSON,
    updated_at            TIMESTAMP DEFAULT current_timestamp
);

CREATE TABLE IF NOT EXISTS config_type (
    id                     VARCHAR PRIMARY KEY,
    meter_type             VARCHAR NOT NULL,
    additional_prompt      VARCHAR,
    preprocessing_override JSON,
    is_active              BOOLEAN DEFAULT TRUE,
    updated_at             TIMESTAMP DEFAULT current_timestamp
);

CREATE TABLE IF NOT EXISTS config_model (
    id                     VARCHAR PRIMARY KEY,
    name                   VARCHAR NOT NULL,
    manufacturer           VARCHAR,
    type_config_id         VARCHAR NOT NULL,
    specific_prompt        VARCHAR,
    zones                  JSON,
    preprocessing_override JSON,
    format_spec            JSON,
    is_promoted            BOOLEAN DEFAULT FALSE,
    promoted_at            TIMESTAMP,
    meter_model_id         VARCHAR,
    created_at             TIMESTAMP DEFAULT current_timestamp,
    updated_at             TIMESTAMP DEFAULT current_timestamp
);

CREATE TABLE IF NOT EXISTS test_runs (
    id                     VARCHAR PRIMARY KEY,
    folder_id              VARCHAR NOT NULL,
    config_model_id        VARCHAR,
    version_id             VARCHAR,
    status                 VARCHAR NOT NULL,
    multi_pass             BOOLEAN DEFAULT FALSE,
    pass_count             INTEGER DEFAULT 1,
    total_photos           INTEGER DEFAULT 0,
    processed_count        INTEGER DEFAULT 0,
    error_count            INTEGER DEFAULT 0,
    validated_count        INTEGER DEFAULT 0,
    corrected_count        INTEGER DEFAULT 0,
    rejected_count         INTEGER DEFAULT 0,
    pending_count          INTEGER DEFAULT 0,
    accuracy_rate          DOUBLE,
    avg_confidence         DOUBLE,
    avg_processing_time_ms DOUBLE,
    total_cost_usd         DOUBLE DEFAULT 0,
    previous_folder_status VARCHAR,
    instruction_text       VARCHAR,
    preprocessing          JSON,
    error                  VARCHAR,
    started_at             TIMESTAMP,
    completed_at           TIMESTAMP,
    created_at             TIMESTAMP DEFAULT current_timestamp
);

CREATE TABLE IF NOT EXISTS test_results (
    id                 VARCHAR PRIMARY KEY,
    run_id             VARCHAR NOT NULL,
    photo_id           VARCHAR NOT NULL,
    position           INTEGER,
    reading            VARCHAR,
    serial_number      VARCHAR,
    confidence         DOUBLE,
    processing_time_ms INTEGER,
    cost_usd           DOUBLE,
    tokens_used        INTEGER,
    error              VARCHAR,
    passes             JSON,
    validation         JSON,
    verdict            BOOLEAN,
    corrected_reading  VARCHAR,
    corrected_serial   VARCHAR,
    error_type         VARCHAR,
    verdict_at         TIMESTAMP,
    created_at         TIMESTAMP DEFAULT current_timestamp
);

CREATE TABLE IF NOT EXISTS meter_models (
    id               VARCHAR PRIMARY KEY,
    name             VARCHAR NOT NULL,
    manufacturer     VARCHAR,
    meter_type       VARCHAR NOT NULL,
    source_folder_id VARCHAR NOT NULL,
    config_model_id  VARCHAR,
    is_active        BOOLEAN DEFAULT TRUE,
    created_at       TIMESTAMP DEFAULT current_timestamp,
    updated_at       TIMESTAMP DEFAULT current_timestamp
);

CREATE TABLE IF NOT EXISTS model_versions (
    id             VARCHAR PRIMARY KEY,
    model_id       VARCHAR NOT NULL,
    kind           VARCHAR NOT NULL,
    version_number INTEGER NOT NULL,
    prompt_text    VARCHAR,
    image_config   JSON,
    is_active      BOOLEAN DEFAULT FALSE,
    notes          VARCHAR,
    created_at     TIMESTAMP DEFAULT current_timestamp
);
"""


class Database:
    """DuckDB database manager for MeterLab."""

    def __init__(self, db_path: str = "meterlab.duckdb"):
        self.db_path = db_path
        self._conn: Optional[duckdb.DuckDBPyConnection] = None
        self._in_transaction = False

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            self._conn = duckdb.connect(self.db_path)
            self._init_schema()
        return self._conn

    def _init_schema(self) -> None:
        self.conn.execute(SCHEMA_SQL)
        logger.info(f"Database schema initialized at {self.db_path}")

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        """Run the enclosed statements atomically. Nested use joins the outer transaction."""
        if self._in_transaction:
            yield self
            return

        self.conn.execute("BEGIN TRANSACTION")
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")
        finally:
            self._in_transaction = False

    def execute(self, query: str, params=None):
        if params:
            return self.conn.execute(query, params)
        return self.conn.execute(query)

    def fetchall(self, query: str, params=None):
        result = self.execute(query, params)
        columns = [desc[0] for desc in result.description]
        rows = result.fetchall()
        return [dict(zip(columns, row)) for row in rows]

    def fetchone(self, query: str, params=None):
        result = self.execute(query, params)
        columns = [desc[0] for desc in result.description]
        row = result.fetchone()
        if row:
            return dict(zip(columns, row))
        return None

    def fetchvalue(self, query: str, params=None):
        row = self.execute(query, params).fetchone()
        return row[0] if row else None
