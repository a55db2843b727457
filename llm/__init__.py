"""Vision provider adapters and the extraction gateway."""

from .base import VisionProvider, VisionRequest, VisionResponse, ProviderNotConfiguredError
from .factory import VisionFactory
from .claude import ClaudeProvider
from .ollama import OllamaProvider
from .gateway import (
    ExtractionGateway,
    ExtractionOutcome,
    Classification,
    PREPROCESSING_DEFAULTS,
    parse_json_object,
    strip_data_url,
)

__all__ = [
    "VisionProvider",
    "VisionRequest",
    "VisionResponse",
    "ProviderNotConfiguredError",
    "VisionFactory",
    "ClaudeProvider",
    "OllamaProvider",
    "ExtractionGateway",
    "ExtractionOutcome",
    "Classification",
    "PREPROCESSING_DEFAULTS",
    "parse_json_object",
    "strip_data_url",
]
