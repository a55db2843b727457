"""Plausibility checks on extracted readings and classification of operator corrections."""

import re
from typing import Any, Dict, List, Optional

MAX_PLAUSIBLE_READING = 999_999_999
MIN_CONFIDENCE = 0.5
CONFIDENT = 0.7

ERROR_TYPES = (
    "decimal_position",
    "extra_digit",
    "missing_digit",
    "wrong_digit",
    "multiple_wrong_digits",
    "hallucination",
    "format_error",
)


def _to_number(reading: str) -> Optional[float]:
    try:
        return float(reading.replace(",", "."))
    except ValueError:
        return None


def _split_digits(reading: str):
    cleaned = re.sub(r"[^0-9,.]", "", reading)
    integer, _, decimals = cleaned.replace(",", ".").partition(".")
    return integer, decimals


def validate_reading(
    reading: Optional[str],
    confidence: float,
    format_spec: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Check a reading against the model format spec and basic plausibility.

    The outcome is informational: it is stored next to the result and never
    decides the operator verdict.
    """
    issues: List[str] = []
    format_ok = True
    plausible = True

    if reading is None:
        return {"valid": False, "issues": ["No result"], "checks": {
            "format": False, "plausibility": False, "confidence": False,
        }}

    number = _to_number(reading)
    if number is None or number < 0:
        issues.append("Invalid numeric value")
        plausible = False
    elif number > MAX_PLAUSIBLE_READING:
        issues.append("Reading seems too high")
        plausible = False

    spec = format_spec or {}
    integer, decimals = _split_digits(reading)
    expected_int = spec.get("integer_digits")
    expected_dec = spec.get("decimal_digits")
    if expected_int is not None and len(integer) != int(expected_int):
        issues.append(f"Expected {expected_int} integer digits, got {len(integer)}")
        format_ok = False
    if expected_dec is not None and len(decimals) != int(expected_dec):
        issues.append(f"Expected {expected_dec} decimal digits, got {len(decimals)}")
        format_ok = False

    if confidence < MIN_CONFIDENCE:
        issues.append("Low confidence")

    return {
        "valid": not issues,
        "issues": issues,
        "checks": {
            "format": format_ok,
            "plausibility": plausible,
            "confidence": confidence >= CONFIDENT,
        },
    }


def detect_error_type(wrong: str, right: str) -> str:
    """Classify how an extracted reading differs from the operator's correction."""
    ai = re.sub(r"[^0-9,.]", "", wrong or "")
    human = re.sub(r"[^0-9,.]", "", right or "")

    ai_sep = re.search(r"[,.]", ai)
    human_sep = re.search(r"[,.]", human)
    if ai_sep and human_sep and ai_sep.start() != human_sep.start():
        return "decimal_position"

    ai_digits = re.sub(r"\D", "", ai)
    human_digits = re.sub(r"\D", "", human)
    if len(ai_digits) != len(human_digits):
        return "extra_digit" if len(ai_digits) > len(human_digits) else "missing_digit"

    if ai_digits != human_digits:
        diffs = sum(1 for a, h in zip(ai_digits, human_digits) if a != h)
        if diffs == 1:
            return "wrong_digit"
        if diffs > 3:
            return "hallucination"
        return "multiple_wrong_digits"

    return "format_error"
