"""Extraction Gateway: turns an image plus an instruction into a structured reading.

The gateway is the only place that talks to a vision provider. It adds the
response contract, parses the first JSON object out of the model's answer and
prices the call. Callers receive either an ExtractionOutcome or an
ExtractionError; ``transient`` tells them whether a retry could help.
"""

import base64
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.errors import ExtractionError
from .base import VisionProvider, VisionRequest

logger = logging.getLogger(__name__)

PREPROCESSING_DEFAULTS: Dict[str, Any] = {
    "grayscale": False,
    "contrast": 30,
    "brightness": 0,
    "sharpness": 20,
    "saturation": 100,
}

EXTRACTION_CONTRACT = """You read utility meters from photos.
Answer with a single JSON object and nothing else:
{
  "reading": "the index exactly as displayed, digits only with an optional decimal point",
  "serial_number": "the serial number if visible, else null",
  "confidence": 0.0-1.0,
  "meter_type": "gas|water|electricity|unknown",
  "explanation": "one short sentence"
}"""

CLASSIFICATION_PROMPT = """Identify this utility meter.
Answer with a single JSON object and nothing else:
{
  "meter_type": "gas|water|electricity|unknown",
  "brand": "manufacturer printed on the meter, else null",
  "confidence": 0.0-1.0
}"""

ZONE_SUGGESTION_PROMPT = """Locate the reading areas on this utility meter photo.
Answer with a single JSON object and nothing else:
{
  "zones": [
    {"type": "index|serial|unit", "label": "short label", "x": 0.0, "y": 0.0, "width": 0.0, "height": 0.0}
  ]
}
Coordinates are fractions of the image width and height, measured from the top-left corner.
List only areas you can actually see."""

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")


@dataclass
class ExtractionOutcome:
    reading: str
    serial_number: Optional[str]
    confidence: float
    processing_time_ms: int
    cost_usd: float
    tokens_used: int
    meter_type: Optional[str] = None
    explanation: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Classification:
    meter_type: str
    brand: Optional[str]
    confidence: float


@dataclass
class ZoneSuggestion:
    """A region proposed by the model, in normalized image coordinates."""
    type: str
    x: float
    y: float
    width: float
    height: float
    label: Optional[str] = None


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the first {...} block of ``text`` as a dict, or None."""
    match = _JSON_OBJECT.search(text or "")
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, confidence))


def describe_preprocessing(preprocessing: Optional[Dict[str, Any]]) -> str:
    """Text note listing the preprocessing values that differ from defaults."""
    if not preprocessing:
        return ""
    lines = []
    if preprocessing.get("grayscale"):
        lines.append("- converted to grayscale")
    for key in ("contrast", "brightness", "sharpness", "saturation"):
        value = preprocessing.get(key)
        if value is not None and value != PREPROCESSING_DEFAULTS[key]:
            lines.append(f"- {key} adjusted to {value}")
    if not lines:
        return ""
    return "IMAGE PREPROCESSING:\n" + "\n".join(lines)


def encode_image(image: bytes) -> str:
    return base64.b64encode(image).decode("ascii")


def strip_data_url(image_base64: str) -> str:
    return _DATA_URL_PREFIX.sub("", image_base64)


def _sniff_media_type(image: bytes) -> str:
    if image.startswith(b"\x89PNG"):
        return "image/png"
    if image[:4] == b"RIFF" and image[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"


class ExtractionGateway:
    """Vision-model seam used by the run orchestrator and photo intake."""

    def __init__(self, provider: VisionProvider, max_tokens: int = 1024):
        self.provider = provider
        self.max_tokens = max_tokens

    async def _call(self, image: bytes, prompt: str, system_prompt: str):
        request = VisionRequest(
            prompt=prompt,
            image_base64=encode_image(image),
            media_type=_sniff_media_type(image),
            system_prompt=system_prompt,
            max_tokens=self.max_tokens,
        )
        started = time.monotonic()
        response = await self.provider.generate(request)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        if response.error:
            raise ExtractionError(f"Vision provider failed: {response.error}", transient=True)
        return response, elapsed_ms

    async def extract(
        self,
        image: bytes,
        instruction: str,
        preprocessing: Optional[Dict[str, Any]] = None,
    ) -> ExtractionOutcome:
        """Read one photo with the given instruction."""
        note = describe_preprocessing(preprocessing)
        prompt = f"{instruction}\n\n{note}" if note else instruction

        response, elapsed_ms = await self._call(image, prompt, EXTRACTION_CONTRACT)

        parsed = parse_json_object(response.content)
        if parsed is None:
            raise ExtractionError("Vision model returned no JSON object", transient=False)

        reading = parsed.get("reading")
        if reading is None or str(reading).strip() == "":
            raise ExtractionError("Vision model returned no reading", transient=False)

        serial = parsed.get("serial_number")
        outcome = ExtractionOutcome(
            reading=str(reading).strip(),
            serial_number=str(serial).strip() if serial else None,
            confidence=clamp_confidence(parsed.get("confidence")),
            processing_time_ms=elapsed_ms,
            cost_usd=self.provider.estimate_cost(response.usage),
            tokens_used=response.usage.get("total_tokens", 0),
            meter_type=parsed.get("meter_type"),
            explanation=parsed.get("explanation"),
            raw=parsed,
        )
        logger.debug(
            f"Extracted reading {outcome.reading} (confidence {outcome.confidence:.2f}) "
            f"in {elapsed_ms}ms via {self.provider.provider_name}"
        )
        return outcome

    async def classify(self, image: bytes) -> Classification:
        """Guess meter type and brand for an uploaded photo."""
        response, _ = await self._call(image, CLASSIFICATION_PROMPT, "")
        parsed = parse_json_object(response.content)
        if parsed is None:
            raise ExtractionError("Vision model returned no JSON object", transient=False)

        meter_type = str(parsed.get("meter_type") or "unknown").lower()
        if meter_type not in ("gas", "water", "electricity"):
            meter_type = "unknown"
        brand = parsed.get("brand")
        return Classification(
            meter_type=meter_type,
            brand=str(brand).strip() if brand else None,
            confidence=clamp_confidence(parsed.get("confidence")),
        )

    async def suggest_zones(self, image: bytes) -> List[ZoneSuggestion]:
        """Ask the model where the index, serial and unit areas are on a photo."""
        response, _ = await self._call(image, ZONE_SUGGESTION_PROMPT, "")
        parsed = parse_json_object(response.content)
        if parsed is None:
            raise ExtractionError("Vision model returned no JSON object", transient=False)

        suggestions = []
        for entry in parsed.get("zones") or []:
            if not isinstance(entry, dict):
                continue
            try:
                x, y, width, height = (float(entry[key]) for key in ("x", "y", "width", "height"))
            except (KeyError, TypeError, ValueError):
                logger.debug(f"Skipping zone suggestion without a usable rectangle: {entry}")
                continue
            label = entry.get("label")
            suggestions.append(ZoneSuggestion(
                type=str(entry.get("type") or "").strip().lower(),
                x=x,
                y=y,
                width=width,
                height=height,
                label=str(label).strip() if label else None,
            ))
        return suggestions
