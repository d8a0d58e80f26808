"""
ImmunOS — Scoring Engine

Pure aggregation of vector results into an ImmunityReport.

  score = Σ(wᵢ · cᵢ · passedᵢ) / Σ(wᵢ)

taken over results that did not fail open. A failed-open vector has no
opinion: it is excluded from both numerator and denominator, so it can
neither drag the score down nor prop it up.

The verdict fails on any critical violation, regardless of score, or when
the score falls below the doctrine's confidence threshold. A score exactly
at the threshold passes.

Degenerate inputs never masquerade as a clean pass:
  - no results at all         → pass, score 1.0, empty_registry flagged
  - every result failed open  → fail, score 0.0, every id listed as crashed
  - considered weights sum to 0 → unweighted mean, zero_weight flagged
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence

import structlog

from immunos.systems.immunity.errors import OrphanResultError
from immunos.systems.immunity.types import (
    ImmunityReport,
    ScanDiagnostics,
    VectorResult,
    VerdictKind,
)

logger = structlog.get_logger()


class ScoringEngine:
    """Stateless. Safe to share across concurrent invocations."""

    def __init__(self) -> None:
        self._logger = logger.bind(system="immunity", component="scoring")

    def aggregate(
        self,
        step_id: str,
        results: Sequence[VectorResult],
        weights: Mapping[str, float],
        threshold: float,
    ) -> ImmunityReport:
        """
        Build the report for one step.

        ``results`` must already be filtered to enabled vectors and
        ``weights`` must hold the effective weight of each of them. A result
        naming a vector absent from ``weights`` is an internal defect.
        """
        for result in results:
            if result.vector_id not in weights:
                raise OrphanResultError(
                    f"Result from unregistered vector {result.vector_id!r} "
                    f"for step {step_id}"
                )

        ordered = list(results)

        if not ordered:
            self._logger.warning("empty_registry", step_id=step_id)
            return ImmunityReport(
                step_id=step_id,
                results=[],
                score=1.0,
                verdict=VerdictKind.PASS,
                diagnostics=ScanDiagnostics(empty_registry=True),
            )

        crashed = [r.vector_id for r in ordered if r.failed_open]
        failures = {r.vector_id: r.failure_reason or "unknown" for r in ordered if r.failed_open}
        considered = [r for r in ordered if not r.failed_open]

        if not considered:
            self._logger.warning("all_vectors_failed_open", step_id=step_id, crashed=crashed)
            return ImmunityReport(
                step_id=step_id,
                results=ordered,
                score=0.0,
                verdict=VerdictKind.FAIL,
                diagnostics=ScanDiagnostics(crashed=crashed, failures=failures),
            )

        score, zero_weight = self._weighted_score(considered, weights)
        critical = any(r.has_critical for r in considered)
        verdict = VerdictKind.FAIL if critical or score < threshold else VerdictKind.PASS
        low_confidence = [r.vector_id for r in considered if r.confidence < threshold]

        if zero_weight:
            self._logger.warning("zero_total_weight", step_id=step_id)

        return ImmunityReport(
            step_id=step_id,
            results=ordered,
            score=score,
            verdict=verdict,
            low_confidence=low_confidence,
            diagnostics=ScanDiagnostics(
                crashed=crashed,
                failures=failures,
                zero_weight=zero_weight,
            ),
        )

    @staticmethod
    def _weighted_score(
        considered: Sequence[VectorResult],
        weights: Mapping[str, float],
    ) -> tuple[float, bool]:
        total = sum(weights[r.vector_id] for r in considered)
        if total <= 0.0:
            # All considered vectors carry zero weight: fall back to an unweighted mean
            mean = sum(r.confidence for r in considered if r.passed) / len(considered)
            return mean, True

        earned = sum(
            weights[r.vector_id] * r.confidence
            for r in considered
            if r.passed
        )
        return earned / total, False
