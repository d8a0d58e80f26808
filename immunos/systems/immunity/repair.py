"""
ImmunOS — Repair Dispatcher (Neutralization)

Turns a failing report into either a verified patch or an explicit
"no safe fix available".

Pipeline:
  1. pass verdict          → Skipped, no side effects
  2. pick candidates       → violations from confident vectors with a suggested fix
  3. tombstone check       → a shape whose patches were rejected often enough is not retried
  4. synthesize            → external capability, bounded by repair_timeout_s and
                              a concurrency cap
  5. verify                → re-scan the patched step on every enabled vector

A patch is never surfaced unless the re-scan passes and every vector that
originally failed now passes with an actual opinion (not fail-open). This
is what stops a fix for one vector from quietly breaking another.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import structlog

from immunos.systems.immunity.errors import SynthesisFailure
from immunos.systems.immunity.types import (
    ImmunityReport,
    PatchResult,
    PatternResolution,
    RepairCandidate,
    RepairOutcome,
    RepairStatus,
    TrajectoryStep,
    Violation,
)

if TYPE_CHECKING:
    from immunos.config import ImmunityConfig
    from immunos.systems.immunity.types import Pattern

logger = structlog.get_logger()

Rescan = Callable[[TrajectoryStep], Awaitable[ImmunityReport]]


@runtime_checkable
class PatchSynthesizer(Protocol):
    """
    External patch-synthesis capability.

    Assumed idempotent and side-effect free on the caller's working state:
    it returns a candidate, it never commits one.
    """

    async def synthesize(self, content: str, violations: list[Violation]) -> PatchResult:
        ...


class RepairDispatcher:
    """
    Drives one repair attempt per failing step.

    Concurrency across steps is capped by a semaphore so a burst of failing
    steps cannot monopolise the synthesis capability.
    """

    def __init__(
        self,
        synthesizer: PatchSynthesizer | None,
        config: ImmunityConfig,
    ) -> None:
        self._synthesizer = synthesizer
        self._config = config
        self._semaphore = asyncio.Semaphore(config.max_concurrent_repairs)
        self._logger = logger.bind(system="immunity", component="repair_dispatcher")

        self._total_attempted: int = 0
        self._total_repaired: int = 0
        self._total_unrepairable: int = 0
        self._total_skipped: int = 0
        self._total_known_unrepairable: int = 0

    async def dispatch(
        self,
        report: ImmunityReport,
        step: TrajectoryStep,
        rescan: Rescan,
        threshold: float,
        recalled: Pattern | None = None,
    ) -> RepairOutcome:
        """
        Attempt a verified repair of ``step``.

        ``rescan`` analyses a step on every enabled vector and aggregates it
        under the same doctrine as ``report``. Never raises for synthesis or
        verification problems: those come back as Unrepairable.
        """
        if report.passed:
            self._total_skipped += 1
            return RepairOutcome(status=RepairStatus.SKIPPED, report=report)

        self._total_attempted += 1
        candidates = self.select_candidates(report, threshold)
        if not candidates:
            return self._unrepairable(report, "no_repair_candidates")

        if self._is_known_unrepairable(recalled):
            self._total_known_unrepairable += 1
            return self._unrepairable(report, "known_unrepairable", candidates)

        try:
            patch = await self._synthesize(step, candidates)
        except SynthesisFailure as exc:
            self._logger.info(
                "synthesis_failed",
                step_id=step.step_id,
                reason=str(exc),
            )
            return self._unrepairable(report, str(exc), candidates)

        try:
            verification = await rescan(step.with_content(patch))
        except Exception as exc:
            self._logger.warning(
                "verification_error",
                step_id=step.step_id,
                error=str(exc),
            )
            return self._unrepairable(report, "verification_error", candidates)

        if not self.verifies(report, verification):
            self._logger.info(
                "verification_failed",
                step_id=step.step_id,
                still_failing=verification.failing_vectors,
                score=verification.score,
            )
            return self._unrepairable(
                report, "verification_failed", candidates, verification=verification,
            )

        self._total_repaired += 1
        self._logger.info(
            "step_repaired",
            step_id=step.step_id,
            vectors=sorted({c.vector_id for c in candidates}),
            score=verification.score,
        )
        return RepairOutcome(
            status=RepairStatus.REPAIRED,
            report=report,
            patched_content=patch,
            verification=verification,
            candidates=candidates,
        )

    @staticmethod
    def select_candidates(report: ImmunityReport, threshold: float) -> list[RepairCandidate]:
        """
        Violations eligible for automated repair.

        Only vectors that actually failed, answered with confidence at or
        above the threshold, and proposed a fix contribute candidates.
        """
        candidates: list[RepairCandidate] = []
        for result in report.results:
            if result.failed_open or result.passed:
                continue
            if result.confidence < threshold or not result.suggested_fix:
                continue
            for violation in result.violations:
                candidates.append(RepairCandidate(
                    vector_id=result.vector_id,
                    violation=violation,
                    suggested_fix=result.suggested_fix,
                ))
        return candidates

    @staticmethod
    def verifies(original: ImmunityReport, verification: ImmunityReport) -> bool:
        """Does the re-scan clear every vector that motivated the repair?"""
        if not verification.passed:
            return False
        for vector_id in original.failing_vectors:
            result = verification.result_for(vector_id)
            if result is None or result.failed_open or not result.passed:
                return False
        return True

    def _is_known_unrepairable(self, recalled: Pattern | None) -> bool:
        return (
            recalled is not None
            and recalled.resolution == PatternResolution.TOMBSTONE
            and recalled.rejected_repairs >= self._config.tombstone_skip_after
        )

    async def _synthesize(
        self,
        step: TrajectoryStep,
        candidates: list[RepairCandidate],
    ) -> str:
        """Run synthesis under the governor. Raises SynthesisFailure."""
        if self._synthesizer is None:
            raise SynthesisFailure("no_synthesizer")

        violations = [c.violation for c in candidates]
        async with self._semaphore:
            try:
                async with asyncio.timeout(self._config.repair_timeout_s):
                    result = await self._synthesizer.synthesize(step.content, violations)
            except TimeoutError as exc:
                raise SynthesisFailure("synthesis_timeout") from exc
            except Exception as exc:
                raise SynthesisFailure(f"synthesis_error: {exc}") from exc

        if not result.success:
            raise SynthesisFailure(f"synthesis_declined: {result.error or 'no reason given'}")
        if not result.patched_content.strip():
            raise SynthesisFailure("empty_patch")
        if result.patched_content == step.content:
            raise SynthesisFailure("unchanged_patch")
        return result.patched_content

    def _unrepairable(
        self,
        report: ImmunityReport,
        reason: str,
        candidates: list[RepairCandidate] | None = None,
        verification: ImmunityReport | None = None,
    ) -> RepairOutcome:
        self._total_unrepairable += 1
        return RepairOutcome(
            status=RepairStatus.UNREPAIRABLE,
            report=report,
            verification=verification,
            candidates=candidates or [],
            reason=reason,
        )

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "attempted": self._total_attempted,
            "repaired": self._total_repaired,
            "unrepairable": self._total_unrepairable,
            "skipped": self._total_skipped,
            "known_unrepairable": self._total_known_unrepairable,
            "has_synthesizer": self._synthesizer is not None,
        }
