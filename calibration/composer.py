"""Instruction composition: three configuration layers plus zones into one prompt.

``compose`` is pure. The same inputs always yield byte-identical text, which
lets versions be compared by their instruction text alone.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence

from llm.gateway import PREPROCESSING_DEFAULTS
from .zones import ROIZone

MAX_CORRECTIONS = 5
SECTION_SEPARATOR = "\n\n"

STRICT_PASS_SUFFIX = (
    "=== VERIFICATION PASS ===\n"
    "Re-read every digit individually. Only report digits you can actually see; "
    "if a drum is between two values, report the lower one. "
    "Lower your confidence if any digit is uncertain."
)


def _section(title: str, body: str) -> str:
    return f"=== {title} ===\n{body}"


def _pct(value: float) -> str:
    return f"{value * 100:.1f}%"


def _zone_line(zone: ROIZone) -> str:
    return (
        f"- {zone.label}: "
        f"x {_pct(zone.x)}-{_pct(zone.x + zone.width)}, "
        f"y {_pct(zone.y)}-{_pct(zone.y + zone.height)}"
    )


def _as_zones(zones: Iterable[Any]) -> List[ROIZone]:
    return [zone if isinstance(zone, ROIZone) else ROIZone.from_dict(zone) for zone in zones]


def _format_block(format_spec: Dict[str, Any]) -> Optional[str]:
    lines = []
    if format_spec.get("integer_digits") is not None:
        lines.append(f"- integer digits: {format_spec['integer_digits']}")
    if format_spec.get("decimal_digits") is not None:
        lines.append(f"- decimal digits: {format_spec['decimal_digits']}")
    if format_spec.get("decimal_indicator"):
        lines.append(f"- decimal indicator: {format_spec['decimal_indicator']}")
    if not lines:
        return None
    return _section("READING FORMAT", "\n".join(lines))


def _correction_pair(correction: Any):
    if isinstance(correction, dict):
        return correction.get("wrong"), correction.get("right")
    wrong, right = correction
    return wrong, right


def compose(
    universal: Optional[Dict[str, Any]],
    type_config: Optional[Dict[str, Any]],
    model_config: Optional[Dict[str, Any]],
    zones: Optional[Iterable[Any]] = None,
    corrections: Optional[Sequence[Any]] = None,
    max_corrections: int = MAX_CORRECTIONS,
) -> str:
    """Build the extraction instruction.

    Sections, in order: universal base text, type fragment, model fragment,
    zones, reading format, corrections. Blank sections are left out entirely.
    ``zones`` defaults to the model configuration's own zones; only zones
    positioned on the current reference photo are listed, in stored order.
    ``corrections`` are (wrong, right) pairs or dicts, newest first.
    """
    sections: List[str] = []

    base = ((universal or {}).get("base_prompt") or "").strip()
    if base:
        sections.append(base)

    if type_config:
        fragment = (type_config.get("additional_prompt") or "").strip()
        if fragment:
            sections.append(_section(f"METER TYPE: {type_config['meter_type'].upper()}", fragment))

    model_config = model_config or {}
    model_fragment = (model_config.get("specific_prompt") or "").strip()
    if model_fragment:
        sections.append(_section(f"MODEL: {model_config.get('name', '')}".rstrip(), model_fragment))

    if zones is None:
        zones = model_config.get("zones") or []
    usable = [zone for zone in _as_zones(zones) if zone.usable]
    if usable:
        sections.append(_section("ZONES", "\n".join(_zone_line(zone) for zone in usable)))

    format_block = _format_block(model_config.get("format_spec") or {})
    if format_block:
        sections.append(format_block)

    pairs = [_correction_pair(c) for c in (corrections or [])][:max_corrections]
    pairs = [(wrong, right) for wrong, right in pairs if wrong is not None and right is not None]
    if pairs:
        lines = "\n".join(f"- {wrong} → {right}" for wrong, right in pairs)
        sections.append(_section("KNOWN CORRECTIONS", "Past mistakes on this model:\n" + lines))

    return SECTION_SEPARATOR.join(sections)


def strict_instruction(instruction: str) -> str:
    """Instruction used for the verification pass of a multi-pass run."""
    return f"{instruction}{SECTION_SEPARATOR}{STRICT_PASS_SUFFIX}" if instruction else STRICT_PASS_SUFFIX


def merge_preprocessing(
    universal: Optional[Dict[str, Any]],
    type_config: Optional[Dict[str, Any]],
    model_config: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    """Effective preprocessing parameters; model overrides type overrides universal."""
    merged = dict(PREPROCESSING_DEFAULTS)
    layers = (
        (universal or {}).get("default_preprocessing"),
        (type_config or {}).get("preprocessing_override"),
        (model_config or {}).get("preprocessing_override"),
    )
    for layer in layers:
        for key, value in (layer or {}).items():
            if value is not None:
                merged[key] = value
    return merged
