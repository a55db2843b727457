"""Test run execution: every photo of a folder through the extraction gateway."""

import asyncio
import logging
import uuid
from collections import Counter
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from core.errors import ConfigError, ExtractionError, NotFoundError
from llm.gateway import ExtractionGateway
from storage.models import TestResultRecord
from storage.photo_store import PhotoStore
from storage.repository import CalibrationRepository
from .composer import strict_instruction
from .validation import validate_reading

logger = logging.getLogger(__name__)

RUN_QUEUED = "queued"
RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"
RUN_STALLED = "stalled"
TERMINAL_STATUSES = {RUN_COMPLETED, RUN_FAILED}
ACTIVE_STATUSES = {RUN_QUEUED, RUN_RUNNING}

PASS_ORIGINAL = "original"
PASS_STRICT = "strict"
PASS_ENHANCED = "enhanced"
ENHANCED_CONTRAST_BOOST = 30


@dataclass
class PassResult:
    """Outcome of one gateway call for one photo."""
    name: str
    reading: Optional[str] = None
    serial_number: Optional[str] = None
    confidence: float = 0.0
    processing_time_ms: int = 0
    cost_usd: float = 0.0
    tokens_used: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.reading is not None


@dataclass
class PassPlan:
    name: str
    instruction: str
    preprocessing: Dict[str, Any]


# ── Reconciliation policies ──────────────────────────────────────────


def highest_confidence(passes: Sequence[PassResult]) -> Optional[PassResult]:
    """Most confident successful pass; on a tie the earlier pass wins.

    A verification pass therefore never replaces an equally confident
    original pass.
    """
    best = None
    for result in passes:
        if result.ok and (best is None or result.confidence > best.confidence):
            best = result
    return best


def agreement(passes: Sequence[PassResult]) -> Optional[PassResult]:
    """Reading reported by most passes, then the best confidence among them."""
    successful = [p for p in passes if p.ok]
    if not successful:
        return None
    votes = Counter(p.reading for p in successful)
    top_reading = max(
        votes,
        key=lambda reading: (
            votes[reading],
            max(p.confidence for p in successful if p.reading == reading),
        ),
    )
    return highest_confidence([p for p in successful if p.reading == top_reading])


RECONCILIATION_POLICIES: Dict[str, Callable[[Sequence[PassResult]], Optional[PassResult]]] = {
    "highest_confidence": highest_confidence,
    "agreement": agreement,
}


def get_policy(name: str) -> Callable[[Sequence[PassResult]], Optional[PassResult]]:
    if name not in RECONCILIATION_POLICIES:
        available = ", ".join(RECONCILIATION_POLICIES)
        raise ConfigError(f"Unknown reconciliation policy: {name}. Available: {available}")
    return RECONCILIATION_POLICIES[name]


def plan_passes(
    instruction: str,
    preprocessing: Dict[str, Any],
    multi_pass: bool = False,
    pass_count: int = 2,
) -> List[PassPlan]:
    """Passes for one photo: original, then strict, then contrast-enhanced."""
    plans = [PassPlan(PASS_ORIGINAL, instruction, dict(preprocessing))]
    if not multi_pass:
        return plans

    plans.append(PassPlan(PASS_STRICT, strict_instruction(instruction), dict(preprocessing)))
    if pass_count >= 3:
        enhanced = dict(preprocessing)
        enhanced["contrast"] = min(100, int(enhanced.get("contrast", 0)) + ENHANCED_CONTRAST_BOOST)
        plans.append(PassPlan(PASS_ENHANCED, instruction, enhanced))
    return plans


# ── Aggregation ──────────────────────────────────────────────────────


def _field(result: Any, name: str) -> Any:
    if isinstance(result, dict):
        return result.get(name)
    return getattr(result, name, None)


def classify_verdict(result: Any) -> str:
    """'validated', 'corrected', 'rejected' or 'pending' for one result."""
    verdict = _field(result, "verdict")
    if verdict is None:
        return "pending"
    if verdict:
        return "corrected" if _field(result, "corrected_reading") else "validated"
    return "rejected"


def compute_run_stats(results: Sequence[Any]) -> Dict[str, Any]:
    """Run aggregates derived from its results alone.

    Cached on the run row for display; recomputing from the result rows must
    always give the same numbers.
    """
    total = len(results)
    processed = [r for r in results if not _field(r, "error")]
    verdicts = Counter(classify_verdict(r) for r in results)
    successes = verdicts["validated"] + verdicts["corrected"]
    reviewed = successes + verdicts["rejected"]

    def _mean(values: List[float]) -> Optional[float]:
        return sum(values) / len(values) if values else None

    return {
        "total_photos": total,
        "processed_count": len(processed),
        "error_count": total - len(processed),
        "validated_count": verdicts["validated"],
        "corrected_count": verdicts["corrected"],
        "rejected_count": verdicts["rejected"],
        "pending_count": verdicts["pending"],
        "accuracy_rate": successes / reviewed if reviewed else None,
        "avg_confidence": _mean([float(_field(r, "confidence") or 0.0) for r in processed]),
        "avg_processing_time_ms": _mean([float(_field(r, "processing_time_ms") or 0) for r in processed]),
        "total_cost_usd": sum(float(_field(r, "cost_usd") or 0.0) for r in results),
    }


# ── Client-side polling ──────────────────────────────────────────────


async def wait_for_run(
    fetch: Callable[[], Awaitable[Dict[str, Any]]],
    max_iterations: int = 120,
    interval_seconds: float = 2.0,
    on_poll: Optional[Callable[[Dict[str, Any]], None]] = None,
) -> Dict[str, Any]:
    """Poll a run until it is completed or failed, or report it stalled.

    Only reads: abandoning the loop (or cancelling the task) never touches
    the run, which carries on server-side.
    """
    run: Dict[str, Any] = {}
    for iteration in range(max_iterations):
        run = await fetch()
        if on_poll:
            on_poll(run)
        if run.get("status") in TERMINAL_STATUSES:
            return run
        if iteration < max_iterations - 1:
            await asyncio.sleep(interval_seconds)

    logger.warning(f"Run {run.get('id')} still {run.get('status')} after {max_iterations} polls")
    return {**run, "status": RUN_STALLED}


def is_stale_run(run: Dict[str, Any], max_age_seconds: float, now: Optional[datetime] = None) -> bool:
    """An active run whose last start is older than the polling budget."""
    if run.get("status") not in ACTIVE_STATUSES:
        return False
    since = run.get("started_at") or run.get("created_at")
    if since is None:
        return False
    return (now or datetime.utcnow()) - since > timedelta(seconds=max_age_seconds)


def mark_run_failed(
    repository: CalibrationRepository,
    run: Dict[str, Any],
    reason: str,
    stats: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Fail a run and put its folder back where it was before the run started."""
    fields = {**(stats or {}), "status": RUN_FAILED, "error": reason, "completed_at": datetime.utcnow()}
    updated = repository.update_run(run["id"], fields)
    previous = run.get("previous_folder_status")
    if previous:
        repository.update_folder(run["folder_id"], {"status": previous})
    logger.error(f"Run {run['id']} failed: {reason}")
    return updated


# ── Orchestrator ─────────────────────────────────────────────────────


class TestOrchestrator:
    """Drives one test run from queued to completed or failed."""

    __test__ = False

    def __init__(
        self,
        repository: CalibrationRepository,
        photo_store: PhotoStore,
        gateway: ExtractionGateway,
        max_parallel: int = 4,
        reconciliation: str = "highest_confidence",
    ):
        self.repository = repository
        self.photo_store = photo_store
        self.gateway = gateway
        self.max_parallel = max(1, max_parallel)
        self.reconcile = get_policy(reconciliation)

    async def _run_pass(self, image: bytes, plan: PassPlan) -> PassResult:
        try:
            outcome = await self.gateway.extract(image, plan.instruction, plan.preprocessing)
        except ExtractionError as e:
            kind = "transient" if e.transient else "content"
            return PassResult(name=plan.name, error=f"{kind}: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error during {plan.name} pass")
            return PassResult(name=plan.name, error=f"Unexpected error: {e}")
        return PassResult(
            name=plan.name,
            reading=outcome.reading,
            serial_number=outcome.serial_number,
            confidence=outcome.confidence,
            processing_time_ms=outcome.processing_time_ms,
            cost_usd=outcome.cost_usd,
            tokens_used=outcome.tokens_used,
        )

    async def process_photo(
        self,
        run_id: str,
        photo: Dict[str, Any],
        position: int,
        plans: List[PassPlan],
        format_spec: Dict[str, Any],
    ) -> TestResultRecord:
        """Run every pass for one photo and reconcile them into a result."""
        record = TestResultRecord(
            id=str(uuid.uuid4()), run_id=run_id, photo_id=photo["id"], position=position
        )
        try:
            image = self.photo_store.read(photo["image_ref"])
        except FileNotFoundError:
            record.error = f"Image file missing: {photo['image_ref']}"
            logger.warning(f"Run {run_id}: {record.error}")
            return record

        passes = []
        for plan in plans:
            passes.append(await self._run_pass(image, plan))

        record.passes = [asdict(p) for p in passes]
        record.processing_time_ms = sum(p.processing_time_ms for p in passes)
        record.cost_usd = sum(p.cost_usd for p in passes)
        record.tokens_used = sum(p.tokens_used for p in passes)

        chosen = self.reconcile(passes)
        if chosen is None:
            record.error = "; ".join(f"{p.name}: {p.error}" for p in passes if p.error) or "No reading"
            logger.warning(f"Run {run_id}: extraction failed for photo {photo['id']}: {record.error}")
            return record

        record.reading = chosen.reading
        record.serial_number = chosen.serial_number
        record.confidence = chosen.confidence
        record.validation = validate_reading(chosen.reading, chosen.confidence, format_spec)
        if len(passes) > 1:
            record.validation["chosen_pass"] = chosen.name
            record.validation["passes_agree"] = len({p.reading for p in passes if p.ok}) == 1
        return record

    async def execute_run(self, run_id: str, format_spec: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute a queued run and persist its results and aggregates."""
        run = self.repository.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Test run not found: {run_id}")

        try:
            return await self._execute(run, format_spec or {})
        except asyncio.CancelledError:
            self._fail(run, "Run interrupted before completion")
            raise
        except Exception as e:
            logger.exception(f"Run {run_id} failed unexpectedly")
            return self._fail(run, f"Unexpected error: {e}")

    async def _execute(self, run: Dict[str, Any], format_spec: Dict[str, Any]) -> Dict[str, Any]:
        run_id = run["id"]
        photos = self.repository.list_photos(folder_id=run["folder_id"])
        self.repository.update_run(run_id, {
            "status": RUN_RUNNING,
            "started_at": datetime.utcnow(),
            "total_photos": len(photos),
        })
        logger.info(f"Run {run_id} started: {len(photos)} photos, {run['pass_count']} pass(es)")

        plans = plan_passes(
            run["instruction_text"] or "", run["preprocessing"] or {}, run["multi_pass"], run["pass_count"]
        )
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def _bounded(position: int, photo: Dict[str, Any]) -> TestResultRecord:
            async with semaphore:
                return await self.process_photo(run_id, photo, position, plans, format_spec)

        records = await asyncio.gather(*(_bounded(i, photo) for i, photo in enumerate(photos)))
        current = self.repository.get_run(run_id)
        if current["status"] != RUN_RUNNING:
            logger.warning(f"Run {run_id} became {current['status']} while executing; results discarded")
            return current
        self.repository.save_test_results(list(records))

        stats = compute_run_stats(records)
        if stats["processed_count"] == 0:
            return self._fail(run, "No photo could be processed", stats)

        now = datetime.utcnow()
        updated = self.repository.update_run(run_id, {**stats, "status": RUN_COMPLETED, "completed_at": now})
        self.repository.update_folder(run["folder_id"], {"photos_since_last_test": 0, "last_test_at": now})
        logger.info(
            f"Run {run_id} completed: {stats['processed_count']}/{stats['total_photos']} processed, "
            f"{stats['error_count']} errors"
        )
        return updated

    def _fail(self, run: Dict[str, Any], reason: str, stats: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return mark_run_failed(self.repository, run, reason, stats)
