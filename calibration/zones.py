"""Regions of interest drawn on a folder's reference photo.

Coordinates are normalized to the image size, so a zone reads the same on
any resolution of the photo. Each semantic role (index, serial, unit,
custom) exists at most once per model configuration.
"""

import logging
import uuid
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.errors import NotFoundError, PreconditionError, ValidationError

logger = logging.getLogger(__name__)

MIN_ZONE_EXTENT = 0.02

Point = Tuple[float, float]


class ZoneType(str, Enum):
    INDEX = "index"
    SERIAL = "serial"
    UNIT = "unit"
    CUSTOM = "custom"


ZONE_COLORS = {
    ZoneType.INDEX: "#22c55e",
    ZoneType.SERIAL: "#3b82f6",
    ZoneType.UNIT: "#f59e0b",
    ZoneType.CUSTOM: "#a855f7",
}


@dataclass
class ROIZone:
    id: str
    type: str
    label: str
    color: str
    x: Optional[float] = None
    y: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    stale: bool = False

    @property
    def positioned(self) -> bool:
        return self.x is not None and self.width is not None

    @property
    def usable(self) -> bool:
        """Positioned against the current reference photo."""
        return self.positioned and not self.stale

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ROIZone":
        zone_type = parse_zone_type(data.get("type"))
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            type=zone_type.value,
            label=data.get("label") or zone_type.value.upper(),
            color=data.get("color") or ZONE_COLORS[zone_type],
            x=data.get("x"),
            y=data.get("y"),
            width=data.get("width"),
            height=data.get("height"),
            stale=bool(data.get("stale", False)),
        )


def parse_zone_type(value: Any) -> ZoneType:
    try:
        return ZoneType(value)
    except ValueError:
        allowed = ", ".join(t.value for t in ZoneType)
        raise ValidationError(f"Unknown zone type '{value}'. Expected one of: {allowed}")


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def normalize_rect(
    start: Point, end: Point, min_extent: float = MIN_ZONE_EXTENT
) -> Optional[Tuple[float, float, float, float]]:
    """Turn two opposite drag corners into (x, y, width, height).

    The origin is always the top-left corner and extents are non-negative,
    whatever the drag direction. Returns None for a drag smaller than
    ``min_extent`` on either axis.
    """
    x1, y1 = _clamp(start[0]), _clamp(start[1])
    x2, y2 = _clamp(end[0]), _clamp(end[1])
    width = abs(x2 - x1)
    height = abs(y2 - y1)
    if width < min_extent or height < min_extent:
        return None
    return min(x1, x2), min(y1, y2), width, height


class ZoneSet:
    """The zones of one model configuration, bound to a reference photo."""

    def __init__(
        self,
        zones: Optional[Iterable[Any]] = None,
        reference_photo_id: Optional[str] = None,
        min_extent: float = MIN_ZONE_EXTENT,
    ):
        self.reference_photo_id = reference_photo_id
        self.min_extent = min_extent
        self.zones: List[ROIZone] = [
            zone if isinstance(zone, ROIZone) else ROIZone.from_dict(zone)
            for zone in (zones or [])
        ]

    def get(self, zone_id: str) -> ROIZone:
        for zone in self.zones:
            if zone.id == zone_id:
                return zone
        raise NotFoundError(f"Zone not found: {zone_id}")

    def add_zone(self, zone_type: Any, label: Optional[str] = None) -> ROIZone:
        zone_type = parse_zone_type(zone_type)
        if any(zone.type == zone_type.value for zone in self.zones):
            raise ValidationError(f"A {zone_type.value} zone already exists for this model")

        zone = ROIZone(
            id=str(uuid.uuid4()),
            type=zone_type.value,
            label=label or zone_type.value.upper(),
            color=ZONE_COLORS[zone_type],
        )
        self.zones.append(zone)
        return zone

    def position_zone(self, zone_id: str, start: Point, end: Point) -> Optional[ROIZone]:
        """Place a zone from a drag gesture; a too-small drag leaves it unchanged."""
        if not self.reference_photo_id:
            raise PreconditionError("Select a reference photo before positioning zones")

        zone = self.get(zone_id)
        rect = normalize_rect(start, end, self.min_extent)
        if rect is None:
            logger.debug(f"Ignoring cancelled drag for zone {zone_id}")
            return None

        zone.x, zone.y, zone.width, zone.height = rect
        zone.stale = False
        return zone

    def apply_suggestions(self, suggestions: Iterable[Dict[str, Any]]) -> List[ROIZone]:
        """Merge model-proposed rectangles into the set; returns the zones placed.

        A zone already positioned on the current reference photo keeps its
        rectangle. An unpositioned or stale zone of the same type takes the
        suggestion. Unknown types, repeated types and degenerate rectangles
        are skipped.
        """
        if not self.reference_photo_id:
            raise PreconditionError("Select a reference photo before suggesting zones")

        placed: List[ROIZone] = []
        seen = set()
        for suggestion in suggestions:
            try:
                zone_type = parse_zone_type(suggestion.get("type"))
            except ValidationError:
                logger.debug(f"Ignoring suggested zone of unknown type: {suggestion.get('type')}")
                continue
            if zone_type in seen:
                continue
            seen.add(zone_type)

            x, y = suggestion["x"], suggestion["y"]
            rect = normalize_rect((x, y), (x + suggestion["width"], y + suggestion["height"]), self.min_extent)
            if rect is None:
                continue

            zone = next((z for z in self.zones if z.type == zone_type.value), None)
            if zone is None:
                zone = self.add_zone(zone_type, suggestion.get("label"))
            elif zone.usable:
                continue
            zone.x, zone.y, zone.width, zone.height = rect
            zone.stale = False
            placed.append(zone)
        return placed

    def remove_zone(self, zone_id: str) -> None:
        zone = self.get(zone_id)
        self.zones.remove(zone)

    def mark_stale(self) -> int:
        """Flag every positioned zone for re-confirmation; returns how many."""
        count = 0
        for zone in self.zones:
            if zone.positioned and not zone.stale:
                zone.stale = True
                count += 1
        return count

    def usable(self) -> List[ROIZone]:
        return [zone for zone in self.zones if zone.usable]

    def to_list(self) -> List[Dict[str, Any]]:
        return [zone.to_dict() for zone in self.zones]
