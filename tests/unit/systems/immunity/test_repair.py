"""
Tests for the repair dispatcher.

Covers:
  - Skipped on pass
  - Candidate selection (confidence threshold, suggested fix)
  - Verified repair and verification failure
  - Synthesis failure modes (decline, error, timeout, empty, unchanged)
  - Known-unrepairable tombstones (rejected patches only)
  - Concurrency cap
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from immunos.config import ImmunityConfig
from immunos.systems.immunity.repair import PatchSynthesizer, RepairDispatcher
from immunos.systems.immunity.scoring import ScoringEngine
from immunos.systems.immunity.types import (
    ImmunityReport,
    PatchResult,
    Pattern,
    PatternResolution,
    RepairOutcome,
    RepairStatus,
    Severity,
    TrajectoryStep,
    VectorResult,
    Violation,
    ViolationFingerprint,
)

THRESHOLD = 0.7


def _make_step(content: str = "+password = 'hunter2hunter2'") -> TrajectoryStep:
    return TrajectoryStep(step_id="step-1", session_id="session-1", content=content)


def _violation(kind: str = "hardcoded_secret") -> Violation:
    return Violation(kind=kind, message="credential in source", severity=Severity.WARNING)


def _failing(
    vector_id: str = "security",
    confidence: float = 0.95,
    fix: str | None = "load from env",
) -> VectorResult:
    return VectorResult(
        vector_id=vector_id,
        passed=False,
        confidence=confidence,
        violations=[_violation()],
        suggested_fix=fix,
    )


def _passing(vector_id: str, confidence: float = 1.0) -> VectorResult:
    return VectorResult(vector_id=vector_id, passed=True, confidence=confidence)


def _report(*results: VectorResult) -> ImmunityReport:
    weights = {r.vector_id: 1.0 for r in results}
    return ScoringEngine().aggregate("step-1", list(results), weights, THRESHOLD)


def _make_synthesizer(patched: str = "+password = os.environ['PW']", success: bool = True) -> AsyncMock:
    synthesizer = AsyncMock()
    synthesizer.synthesize = AsyncMock(
        return_value=PatchResult(success=success, patched_content=patched, error="" if success else "no idea")
    )
    return synthesizer


def _rescan_returning(report: ImmunityReport) -> AsyncMock:
    return AsyncMock(return_value=report)


def _make_dispatcher(synthesizer=None, **overrides) -> RepairDispatcher:
    return RepairDispatcher(synthesizer, ImmunityConfig(**overrides))


def _tombstone(rejections: int, occurrences: int | None = None) -> Pattern:
    return Pattern(
        fingerprint=ViolationFingerprint(digest="abc", tokens=["security"]),
        resolution=PatternResolution.TOMBSTONE,
        occurrence_count=occurrences if occurrences is not None else rejections,
        rejected_repairs=rejections,
    )


class TestSkipped:
    @pytest.mark.asyncio
    async def test_pass_is_skipped_without_side_effects(self):
        synthesizer = _make_synthesizer()
        rescan = AsyncMock()
        dispatcher = _make_dispatcher(synthesizer)
        report = _report(_passing("security"))

        outcome = await dispatcher.dispatch(report, _make_step(), rescan, THRESHOLD)

        assert outcome.status == RepairStatus.SKIPPED
        synthesizer.synthesize.assert_not_called()
        rescan.assert_not_called()
        assert dispatcher.stats["skipped"] == 1
        assert dispatcher.stats["attempted"] == 0


class TestCandidates:
    def test_confident_failing_vector_with_fix(self):
        report = _report(_failing(confidence=0.95), _passing("performance"))
        candidates = RepairDispatcher.select_candidates(report, THRESHOLD)
        assert [c.vector_id for c in candidates] == ["security"]
        assert candidates[0].suggested_fix == "load from env"

    def test_confidence_equal_to_threshold_qualifies(self):
        report = _report(_failing(confidence=THRESHOLD))
        assert len(RepairDispatcher.select_candidates(report, THRESHOLD)) == 1

    def test_low_confidence_excluded(self):
        report = _report(_failing(confidence=0.6))
        assert RepairDispatcher.select_candidates(report, THRESHOLD) == []

    def test_missing_fix_excluded(self):
        report = _report(_failing(fix=None))
        assert RepairDispatcher.select_candidates(report, THRESHOLD) == []

    @pytest.mark.asyncio
    async def test_no_candidates_is_unrepairable(self):
        synthesizer = _make_synthesizer()
        dispatcher = _make_dispatcher(synthesizer)
        report = _report(_failing(confidence=0.5))

        outcome = await dispatcher.dispatch(report, _make_step(), AsyncMock(), THRESHOLD)

        assert outcome.status == RepairStatus.UNREPAIRABLE
        assert outcome.reason == "no_repair_candidates"
        assert outcome.report == report
        synthesizer.synthesize.assert_not_called()


class TestVerifiedRepair:
    @pytest.mark.asyncio
    async def test_repaired_when_rescan_clears_violation(self):
        synthesizer = _make_synthesizer()
        dispatcher = _make_dispatcher(synthesizer)
        step = _make_step()
        report = _report(_failing(confidence=0.95), _passing("performance"))
        rescan = _rescan_returning(_report(_passing("security"), _passing("performance")))

        outcome = await dispatcher.dispatch(report, step, rescan, THRESHOLD)

        assert outcome.status == RepairStatus.REPAIRED
        assert outcome.repaired
        assert outcome.patched_content == "+password = os.environ['PW']"
        assert outcome.verification is not None and outcome.verification.passed
        assert outcome.report == report

        synthesizer.synthesize.assert_awaited_once()
        content, violations = synthesizer.synthesize.await_args.args
        assert content == step.content
        assert [v.kind for v in violations] == ["hardcoded_secret"]

        patched_step = rescan.await_args.args[0]
        assert patched_step.step_id == step.step_id
        assert patched_step.content == outcome.patched_content

    @pytest.mark.asyncio
    async def test_still_failing_after_rescan_is_unrepairable(self):
        dispatcher = _make_dispatcher(_make_synthesizer())
        report = _report(_failing())
        rescan = _rescan_returning(_report(_failing()))

        outcome = await dispatcher.dispatch(report, _make_step(), rescan, THRESHOLD)

        assert outcome.status == RepairStatus.UNREPAIRABLE
        assert outcome.reason == "verification_failed"
        assert outcome.patched_content is None
        assert outcome.verification is not None

    @pytest.mark.asyncio
    async def test_fix_that_breaks_another_vector_is_rejected(self):
        dispatcher = _make_dispatcher(_make_synthesizer())
        report = _report(_failing(), _passing("performance"))
        rescan = _rescan_returning(_report(_passing("security"), _failing("performance")))

        outcome = await dispatcher.dispatch(report, _make_step(), rescan, THRESHOLD)

        assert outcome.status == RepairStatus.UNREPAIRABLE
        assert outcome.reason == "verification_failed"

    @pytest.mark.asyncio
    async def test_originally_failing_vector_failing_open_is_not_verified(self):
        dispatcher = _make_dispatcher(_make_synthesizer())
        report = _report(_failing(), _passing("performance"))
        rescan = _rescan_returning(
            _report(VectorResult.fail_open("security", "timeout"), _passing("performance"))
        )

        outcome = await dispatcher.dispatch(report, _make_step(), rescan, THRESHOLD)

        assert outcome.status == RepairStatus.UNREPAIRABLE
        assert outcome.reason == "verification_failed"

    @pytest.mark.asyncio
    async def test_fixed_violation_vector_never_repaired(self):
        """A vector that always reports the same violation can never be satisfied."""

        class _StubbornVector:
            async def analyze(self, step: TrajectoryStep) -> VectorResult:
                return _failing()

        stubborn = _StubbornVector()

        async def rescan(candidate: TrajectoryStep) -> ImmunityReport:
            return _report(await stubborn.analyze(candidate))

        for attempt in range(20):
            dispatcher = _make_dispatcher(_make_synthesizer(patched=f"+patched attempt {attempt}"))
            step = _make_step(f"+original {attempt}")
            report = await rescan(step)
            outcome = await dispatcher.dispatch(report, step, rescan, THRESHOLD)
            assert outcome.status != RepairStatus.REPAIRED
            assert outcome.patched_content is None

    @pytest.mark.asyncio
    async def test_rescan_error_is_unrepairable(self):
        dispatcher = _make_dispatcher(_make_synthesizer())
        rescan = AsyncMock(side_effect=RuntimeError("scanner down"))

        outcome = await dispatcher.dispatch(_report(_failing()), _make_step(), rescan, THRESHOLD)

        assert outcome.status == RepairStatus.UNREPAIRABLE
        assert outcome.reason == "verification_error"


class TestSynthesisFailures:
    @pytest.mark.asyncio
    async def test_no_synthesizer(self):
        outcome = await _make_dispatcher(None).dispatch(
            _report(_failing()), _make_step(), AsyncMock(), THRESHOLD
        )
        assert outcome.status == RepairStatus.UNREPAIRABLE
        assert outcome.reason == "no_synthesizer"

    @pytest.mark.asyncio
    async def test_declined(self):
        dispatcher = _make_dispatcher(_make_synthesizer(success=False))
        rescan = AsyncMock()
        outcome = await dispatcher.dispatch(_report(_failing()), _make_step(), rescan, THRESHOLD)
        assert outcome.status == RepairStatus.UNREPAIRABLE
        assert outcome.reason.startswith("synthesis_declined")
        rescan.assert_not_called()

    @pytest.mark.asyncio
    async def test_exception(self):
        synthesizer = AsyncMock()
        synthesizer.synthesize = AsyncMock(side_effect=ConnectionError("llm unreachable"))
        outcome = await _make_dispatcher(synthesizer).dispatch(
            _report(_failing()), _make_step(), AsyncMock(), THRESHOLD
        )
        assert outcome.status == RepairStatus.UNREPAIRABLE
        assert outcome.reason.startswith("synthesis_error")
        assert "llm unreachable" in outcome.reason

    @pytest.mark.asyncio
    async def test_timeout(self):
        class _SlowSynthesizer:
            async def synthesize(self, content: str, violations: list[Violation]) -> PatchResult:
                await asyncio.sleep(5)
                return PatchResult(success=True, patched_content="late")

        dispatcher = _make_dispatcher(_SlowSynthesizer(), repair_timeout_s=0.01)
        outcome = await dispatcher.dispatch(_report(_failing()), _make_step(), AsyncMock(), THRESHOLD)
        assert outcome.status == RepairStatus.UNREPAIRABLE
        assert outcome.reason == "synthesis_timeout"

    @pytest.mark.asyncio
    async def test_empty_patch(self):
        dispatcher = _make_dispatcher(_make_synthesizer(patched="   "))
        outcome = await dispatcher.dispatch(_report(_failing()), _make_step(), AsyncMock(), THRESHOLD)
        assert outcome.reason == "empty_patch"

    @pytest.mark.asyncio
    async def test_unchanged_patch(self):
        step = _make_step()
        dispatcher = _make_dispatcher(_make_synthesizer(patched=step.content))
        outcome = await dispatcher.dispatch(_report(_failing()), step, AsyncMock(), THRESHOLD)
        assert outcome.reason == "unchanged_patch"

    def test_plain_class_satisfies_capability(self):
        class _Synth:
            async def synthesize(self, content: str, violations: list[Violation]) -> PatchResult:
                return PatchResult(success=False)

        assert isinstance(_Synth(), PatchSynthesizer)


class TestTombstones:
    @pytest.mark.asyncio
    async def test_frequent_tombstone_skips_synthesis(self):
        synthesizer = _make_synthesizer()
        dispatcher = _make_dispatcher(synthesizer, tombstone_skip_after=3)

        outcome = await dispatcher.dispatch(
            _report(_failing()), _make_step(), AsyncMock(), THRESHOLD, recalled=_tombstone(3)
        )

        assert outcome.status == RepairStatus.UNREPAIRABLE
        assert outcome.reason == "known_unrepairable"
        synthesizer.synthesize.assert_not_called()
        assert dispatcher.stats["known_unrepairable"] == 1

    @pytest.mark.asyncio
    async def test_rare_tombstone_still_attempts(self):
        synthesizer = _make_synthesizer()
        dispatcher = _make_dispatcher(synthesizer, tombstone_skip_after=3)
        rescan = _rescan_returning(_report(_passing("security")))

        outcome = await dispatcher.dispatch(
            _report(_failing()), _make_step(), rescan, THRESHOLD, recalled=_tombstone(2)
        )

        assert outcome.status == RepairStatus.REPAIRED
        synthesizer.synthesize.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_frequent_tombstone_without_rejections_still_attempts(self):
        synthesizer = _make_synthesizer()
        dispatcher = _make_dispatcher(synthesizer, tombstone_skip_after=3)
        rescan = _rescan_returning(_report(_passing("security")))

        outcome = await dispatcher.dispatch(
            _report(_failing()), _make_step(), rescan, THRESHOLD,
            recalled=_tombstone(0, occurrences=50),
        )

        assert outcome.status == RepairStatus.REPAIRED
        assert dispatcher.stats["known_unrepairable"] == 0


class TestRejections:
    @pytest.mark.parametrize(("reason", "rejected"), [
        ("verification_failed", True),
        ("synthesis_declined: no idea", True),
        ("empty_patch", True),
        ("unchanged_patch", True),
        ("synthesis_timeout", False),
        ("synthesis_error: connection reset", False),
        ("no_synthesizer", False),
        ("known_unrepairable", False),
        ("no_repair_candidates", False),
        ("verification_error", False),
    ])
    def test_only_real_negatives_count(self, reason: str, rejected: bool):
        outcome = RepairOutcome(
            status=RepairStatus.UNREPAIRABLE, report=_report(_failing()), reason=reason,
        )
        assert outcome.patch_rejected is rejected

    def test_repaired_is_not_rejected(self):
        outcome = RepairOutcome(status=RepairStatus.REPAIRED, report=_report(_failing()))
        assert outcome.patch_rejected is False


class TestGovernor:
    @pytest.mark.asyncio
    async def test_concurrent_repairs_are_capped(self):
        active = 0
        peak = 0

        class _CountingSynthesizer:
            async def synthesize(self, content: str, violations: list[Violation]) -> PatchResult:
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1
                return PatchResult(success=True, patched_content=content + "\n+fixed")

        dispatcher = _make_dispatcher(_CountingSynthesizer(), max_concurrent_repairs=1)
        rescan = _rescan_returning(_report(_passing("security")))

        outcomes = await asyncio.gather(*(
            dispatcher.dispatch(_report(_failing()), _make_step(), rescan, THRESHOLD)
            for _ in range(4)
        ))

        assert all(o.repaired for o in outcomes)
        assert peak == 1
        assert dispatcher.stats["repaired"] == 4
        assert dispatcher.stats["attempted"] == 4
