"""Version scoring and the active-version suggestion."""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .orchestrator import classify_verdict

MIN_TESTS_FOR_SUGGESTION = 3


@dataclass
class VersionStats:
    """Precomputed review counts for one version."""
    version_id: str
    version_number: int = 0
    validated: int = 0
    corrected: int = 0
    rejected: int = 0
    pending: int = 0
    avg_confidence: float = 0.0
    is_active: bool = False

    @property
    def completed_tests(self) -> int:
        return self.validated + self.corrected + self.rejected

    @property
    def success_rate(self) -> float:
        if self.completed_tests == 0:
            return 0.0
        return (self.validated + self.corrected) / self.completed_tests

    def to_dict(self) -> Dict[str, Any]:
        return {
            **asdict(self),
            "total_tests": self.completed_tests,
            "success_rate": self.success_rate,
        }


@dataclass
class Suggestion:
    best_version: Optional[VersionStats]
    rationale: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "best_version": self.best_version.to_dict() if self.best_version else None,
            "rationale": self.rationale,
        }


def _pct(rate: float) -> int:
    return int(round(rate * 100))


def suggest(versions: Sequence[VersionStats], min_tests: int = MIN_TESTS_FOR_SUGGESTION) -> Suggestion:
    """Recommend the version that should be active.

    Versions with fewer than ``min_tests`` reviewed results are ignored. The
    rest are ranked by success rate, then average confidence, then the
    newer version number, so the outcome depends only on the input.
    """
    eligible = [v for v in versions if v.completed_tests >= min_tests]
    if not eligible:
        return Suggestion(None, f"Not enough data: every version needs at least {min_tests} reviewed tests")

    ranked = sorted(
        eligible,
        key=lambda v: (v.success_rate, v.avg_confidence, v.version_number),
        reverse=True,
    )
    best = ranked[0]
    if best.is_active:
        return Suggestion(
            None,
            f"Active version v{best.version_number} is already the best "
            f"({_pct(best.success_rate)}% success rate)",
        )

    active = next((v for v in versions if v.is_active), None)
    improvement = _pct(best.success_rate) - _pct(active.success_rate) if active else 0
    return Suggestion(
        best,
        f"{_pct(best.success_rate)}% success rate ({improvement:+d}% vs active version)",
    )


def build_version_stats(versions: Iterable[Dict[str, Any]], result_rows: Iterable[Dict[str, Any]]) -> List[VersionStats]:
    """Aggregate result rows (version_id, verdict, corrected_reading, confidence) per version."""
    stats = {
        v["id"]: VersionStats(
            version_id=v["id"],
            version_number=v["version_number"],
            is_active=bool(v["is_active"]),
        )
        for v in versions
    }
    confidences: Dict[str, List[float]] = {key: [] for key in stats}

    for row in result_rows:
        entry = stats.get(row["version_id"])
        if entry is None:
            continue
        outcome = classify_verdict(row)
        setattr(entry, outcome, getattr(entry, outcome) + 1)
        if not row.get("error"):
            confidences[entry.version_id].append(float(row.get("confidence") or 0.0))

    for version_id, values in confidences.items():
        if values:
            stats[version_id].avg_confidence = sum(values) / len(values)
    return list(stats.values())
