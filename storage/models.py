"""Data models for the storage layer."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional


@dataclass
class ExperimentFolder:
    """A named collection of sample photos for one meter model under calibration."""
    id: str
    name: str
    description: Optional[str] = None
    detected_type: str = "unknown"
    status: str = "draft"
    photo_count: int = 0
    min_photos_required: int = 5
    reference_photo_id: Optional[str] = None
    photos_since_last_test: int = 0
    last_test_at: Optional[datetime] = None
    config_model_id: Optional[str] = None
    linked_meter_model_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class PhotoRecord:
    """One sample image; folder_id is None while it sits in the unclassified pool."""
    id: str
    image_ref: str
    image_hash: str
    folder_id: Optional[str] = None
    original_filename: str = ""
    file_size_bytes: int = 0
    detected_type: Optional[str] = None
    detected_brand: Optional[str] = None
    ai_confidence: float = 0.0
    status: str = "pending"
    ground_truth: Dict[str, Any] = field(default_factory=dict)
    uploaded_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class TypeConfig:
    id: str
    meter_type: str
    additional_prompt: str = ""
    preprocessing_override: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ModelConfig:
    """Model-level configuration layer: prompt fragment, zones, preprocessing and format spec."""
    id: str
    name: str
    type_config_id: str
    manufacturer: Optional[str] = None
    specific_prompt: str = ""
    zones: List[Dict[str, Any]] = field(default_factory=list)
    preprocessing_override: Dict[str, Any] = field(default_factory=dict)
    format_spec: Dict[str, Any] = field(default_factory=dict)
    is_promoted: bool = False
    promoted_at: Optional[datetime] = None
    meter_model_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class TestRunRecord:
    """One execution of the extraction gateway across a folder."""
    __test__ = False

    id: str
    folder_id: str
    status: str = "queued"
    config_model_id: Optional[str] = None
    version_id: Optional[str] = None
    multi_pass: bool = False
    pass_count: int = 1
    total_photos: int = 0
    previous_folder_status: Optional[str] = None
    instruction_text: str = ""
    preprocessing: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class TestResultRecord:
    """One photo's outcome within a test run."""
    __test__ = False

    id: str
    run_id: str
    photo_id: str
    position: int = 0
    reading: Optional[str] = None
    serial_number: Optional[str] = None
    confidence: float = 0.0
    processing_time_ms: int = 0
    cost_usd: float = 0.0
    tokens_used: int = 0
    error: Optional[str] = None
    passes: List[Dict[str, Any]] = field(default_factory=list)
    validation: Dict[str, Any] = field(default_factory=dict)
    verdict: Optional[bool] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class MeterModel:
    """Production meter model published from a validated folder."""
    id: str
    name: str
    meter_type: str
    source_folder_id: str
    manufacturer: Optional[str] = None
    config_model_id: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ModelVersion:
    """An activatable prompt or preprocessing version of a meter model."""
    id: str
    model_id: str
    kind: str
    version_number: int
    prompt_text: str = ""
    image_config: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = False
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
