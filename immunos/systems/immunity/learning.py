"""
ImmunOS — Learning Feedback (Immune Memory)

Every processed step leaves a trace in the pattern store:
  - REPAIRED   a verified patch, reusable as a known fix
  - TOMBSTONE  known-bad, no fix yet
  - CLEAN      a passing shape, reinforced each time it recurs

Repeated identical mistakes do not grow the store. A near-duplicate
(similarity at or above the threshold, same resolution) has its occurrence
count bumped instead of a new record being inserted. Once a pattern
recurs often enough it is promoted and broadcast.

A tombstone counts how often a synthesised patch for its class was
rejected. Transient synthesis failures bump occurrences only, so they never
stop future repair attempts.

Learning runs detached from the caller's response. Store latency or
unavailability is logged and swallowed here; it can never change a verdict.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

import structlog

from immunos.primitives.common import normalise_message, short_hash, utc_now
from immunos.systems.immunity.errors import StoreFailure
from immunos.systems.immunity.types import (
    ImmunityEvent,
    ImmunityEventType,
    ImmunityReport,
    Pattern,
    PatternResolution,
    RepairOutcome,
    SimilarPattern,
    TrajectoryStep,
    ViolationFingerprint,
)

if TYPE_CHECKING:
    from immunos.config import ImmunityConfig
    from immunos.systems.immunity.events import ImmunityEventBus

logger = structlog.get_logger()

_T = TypeVar("_T")

_TOKEN_SPLIT_RE = re.compile(r"[^A-Za-z0-9_<>]+")


@runtime_checkable
class PatternStore(Protocol):
    """
    External pattern store capability. Assumed eventually consistent.

    Implementations may raise anything; the feedback loop treats every
    store error as a StoreFailure.
    """

    async def find_similar(self, fingerprint: ViolationFingerprint) -> list[SimilarPattern]:
        ...

    async def upsert(self, pattern: Pattern) -> str:
        ...


# ─── Fingerprinting ─────────────────────────────────────────────


def fingerprint_report(step: TrajectoryStep, report: ImmunityReport) -> ViolationFingerprint:
    """
    Stable signature of the violation class a report describes.

    Variable parts (line numbers, ids, hashes) are normalised away so the
    same mistake in a different place yields the same digest. A report with
    no violations fingerprints as the clean shape of its delta kind.
    """
    entries = sorted({
        (result.vector_id, violation.kind, normalise_message(violation.message))
        for result in report.results
        if not result.failed_open
        for violation in result.violations
    })

    tokens: set[str] = set()
    if entries:
        signatures = [f"{vector_id}:{kind}:{message}" for vector_id, kind, message in entries]
        for vector_id, kind, message in entries:
            tokens.add(f"{vector_id}:{kind}")
            tokens.update(t.lower() for t in _TOKEN_SPLIT_RE.split(message) if t)
    else:
        considered = sorted(r.vector_id for r in report.results if not r.failed_open)
        signatures = [f"clean:{step.delta_kind.value}:{','.join(considered)}"]
        tokens.update(["clean", step.delta_kind.value, *considered])

    return ViolationFingerprint(
        digest=short_hash("\n".join(signatures)),
        tokens=sorted(tokens),
    )


def jaccard(a: list[str], b: list[str]) -> float:
    set_a, set_b = set(a), set(b)
    if not set_a and not set_b:
        return 1.0
    return len(set_a & set_b) / len(set_a | set_b)


def resolution_for(report: ImmunityReport, outcome: RepairOutcome | None) -> PatternResolution:
    if outcome is not None and outcome.repaired:
        return PatternResolution.REPAIRED
    if report.passed:
        return PatternResolution.CLEAN
    return PatternResolution.TOMBSTONE


# ─── Reference Store ────────────────────────────────────────────


class InMemoryPatternStore:
    """
    Process-local PatternStore. Used standalone and in tests.

    Similarity is Jaccard over fingerprint tokens; an identical digest is
    always similarity 1.0.
    """

    def __init__(self, max_results: int = 10) -> None:
        self._patterns: dict[str, Pattern] = {}
        self._max_results = max_results

    async def find_similar(self, fingerprint: ViolationFingerprint) -> list[SimilarPattern]:
        matches: list[SimilarPattern] = []
        for pattern in self._patterns.values():
            if pattern.fingerprint.digest == fingerprint.digest:
                similarity = 1.0
            else:
                similarity = jaccard(pattern.fingerprint.tokens, fingerprint.tokens)
            if similarity > 0.0:
                matches.append(SimilarPattern(pattern=pattern, similarity=similarity))
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[: self._max_results]

    async def upsert(self, pattern: Pattern) -> str:
        self._patterns[pattern.pattern_id] = pattern
        return pattern.pattern_id

    def get(self, pattern_id: str) -> Pattern | None:
        return self._patterns.get(pattern_id)

    def all(self) -> list[Pattern]:
        return list(self._patterns.values())

    def __len__(self) -> int:
        return len(self._patterns)


# ─── Feedback Loop ──────────────────────────────────────────────


class LearningFeedback:
    """
    Records resolution outcomes and recalls prior ones.

    Without a store every call is a no-op that returns None.
    """

    def __init__(
        self,
        store: PatternStore | None,
        config: ImmunityConfig,
        event_bus: ImmunityEventBus | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._event_bus = event_bus
        self._logger = logger.bind(system="immunity", component="learning_feedback")

        self._total_recorded: int = 0
        self._total_deduplicated: int = 0
        self._total_promoted: int = 0
        self._total_recalled: int = 0
        self._total_store_failures: int = 0

    async def record(
        self,
        step: TrajectoryStep,
        report: ImmunityReport,
        outcome: RepairOutcome | None = None,
    ) -> str | None:
        """
        Submit the step's pattern. Returns the stored pattern id, or None if
        there is no store or the store failed.
        """
        if self._store is None:
            return None

        fingerprint = fingerprint_report(step, report)
        resolution = resolution_for(report, outcome)

        try:
            similar = await self._call_store(self._store.find_similar(fingerprint))
            existing = self._near_duplicate(similar, resolution)

            if existing is not None:
                pattern = self._reinforce(existing, outcome)
            else:
                pattern = Pattern(
                    fingerprint=fingerprint,
                    resolution=resolution,
                    patch=outcome.patched_content if outcome is not None else None,
                    vector_ids=sorted({r.vector_id for r in report.results if r.violations}),
                    violation_kinds=sorted({v.kind for v in report.violations}),
                    source_step_id=step.step_id,
                    rejected_repairs=1 if outcome is not None and outcome.patch_rejected else 0,
                )
                pattern = self._maybe_promote(pattern)

            pattern_id = await self._call_store(self._store.upsert(pattern))
        except StoreFailure as exc:
            self._total_store_failures += 1
            self._logger.warning(
                "pattern_store_failed",
                step_id=step.step_id,
                operation="record",
                error=str(exc),
            )
            return None

        self._total_recorded += 1
        if existing is not None:
            self._total_deduplicated += 1
        self._logger.debug(
            "pattern_recorded",
            step_id=step.step_id,
            pattern_id=pattern_id,
            resolution=resolution.value,
            occurrences=pattern.occurrence_count,
            deduplicated=existing is not None,
        )
        await self._emit(ImmunityEventType.PATTERN_RECORDED, step.step_id, {
            "pattern_id": pattern_id,
            "resolution": resolution.value,
            "occurrence_count": pattern.occurrence_count,
        })

        if pattern.promoted and (existing is None or not existing.promoted):
            self._total_promoted += 1
            self._logger.info(
                "pattern_promoted",
                pattern_id=pattern_id,
                resolution=resolution.value,
                occurrences=pattern.occurrence_count,
            )
            await self._emit(ImmunityEventType.PATTERN_PROMOTED, step.step_id, {
                "pattern_id": pattern_id,
                "resolution": resolution.value,
                "occurrence_count": pattern.occurrence_count,
                "violation_kinds": pattern.violation_kinds,
            })

        return pattern_id

    async def recall(self, step: TrajectoryStep, report: ImmunityReport) -> Pattern | None:
        """
        The closest prior pattern for this violation class, if any.

        Recall sits on the caller's response path, so it runs under
        recall_timeout_s; a slow store yields None.
        """
        if self._store is None:
            return None

        fingerprint = fingerprint_report(step, report)
        try:
            similar = await self._call_store(
                self._store.find_similar(fingerprint),
                self._config.recall_timeout_s,
            )
        except StoreFailure as exc:
            self._total_store_failures += 1
            self._logger.warning(
                "pattern_store_failed",
                step_id=step.step_id,
                operation="recall",
                error=str(exc),
            )
            return None

        best = max(similar, key=lambda m: m.similarity, default=None)
        if best is None or best.similarity < self._config.similarity_threshold:
            return None

        self._total_recalled += 1
        self._logger.debug(
            "pattern_recalled",
            step_id=step.step_id,
            pattern_id=best.pattern.pattern_id,
            resolution=best.pattern.resolution.value,
            similarity=round(best.similarity, 3),
        )
        return best.pattern

    # ─── Internals ───────────────────────────────────────────────────

    async def _call_store(self, call: Awaitable[_T], timeout_s: float | None = None) -> _T:
        try:
            async with asyncio.timeout(timeout_s or self._config.store_timeout_s):
                return await call
        except TimeoutError as exc:
            raise StoreFailure("pattern store timed out") from exc
        except StoreFailure:
            raise
        except Exception as exc:
            raise StoreFailure(str(exc)) from exc

    def _near_duplicate(
        self,
        similar: list[SimilarPattern],
        resolution: PatternResolution,
    ) -> Pattern | None:
        eligible = [
            m for m in similar
            if m.similarity >= self._config.similarity_threshold
            and m.pattern.resolution == resolution
        ]
        if not eligible:
            return None
        return max(eligible, key=lambda m: m.similarity).pattern

    def _reinforce(self, existing: Pattern, outcome: RepairOutcome | None) -> Pattern:
        update: dict[str, Any] = {
            "occurrence_count": existing.occurrence_count + 1,
            "last_seen": utc_now(),
        }
        if outcome is not None and outcome.patch_rejected:
            update["rejected_repairs"] = existing.rejected_repairs + 1
        # Keep the freshest verified patch
        if outcome is not None and outcome.repaired and outcome.patched_content:
            update["patch"] = outcome.patched_content
        return self._maybe_promote(existing.model_copy(update=update))

    def _maybe_promote(self, pattern: Pattern) -> Pattern:
        if not pattern.promoted and pattern.occurrence_count >= self._config.promotion_threshold:
            return pattern.model_copy(update={"promoted": True})
        return pattern

    async def _emit(
        self,
        event_type: ImmunityEventType,
        step_id: str,
        data: dict[str, Any],
    ) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.emit(ImmunityEvent(event_type=event_type, step_id=step_id, data=data))

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "recorded": self._total_recorded,
            "deduplicated": self._total_deduplicated,
            "promoted": self._total_promoted,
            "recalled": self._total_recalled,
            "store_failures": self._total_store_failures,
            "has_store": self._store is not None,
        }
