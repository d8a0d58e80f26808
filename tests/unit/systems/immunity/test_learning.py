"""
Tests for the learning feedback loop.

Covers:
  - Violation fingerprinting (normalisation, clean shapes)
  - InMemoryPatternStore similarity
  - record(): resolutions, near-duplicate deduplication, promotion
  - recall()
  - Store failure and timeout containment
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from immunos.config import ImmunityConfig
from immunos.systems.immunity.events import ImmunityEventBus
from immunos.systems.immunity.learning import (
    InMemoryPatternStore,
    LearningFeedback,
    PatternStore,
    fingerprint_report,
    jaccard,
)
from immunos.systems.immunity.scoring import ScoringEngine
from immunos.systems.immunity.types import (
    DeltaKind,
    ImmunityEventType,
    ImmunityReport,
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


def _make_step(step_id: str = "step-1") -> TrajectoryStep:
    return TrajectoryStep(step_id=step_id, session_id="session-1", content="+x = 1")


def _failing_report(message: str = "credential on line 12", kind: str = "hardcoded_secret") -> ImmunityReport:
    result = VectorResult(
        vector_id="security",
        passed=False,
        confidence=0.95,
        violations=[Violation(kind=kind, message=message, severity=Severity.WARNING)],
        suggested_fix="load from env",
    )
    return ScoringEngine().aggregate("step-1", [result], {"security": 1.0}, 0.7)


def _passing_report() -> ImmunityReport:
    results = [
        VectorResult(vector_id="security", passed=True, confidence=1.0),
        VectorResult(vector_id="performance", passed=True, confidence=1.0),
    ]
    return ScoringEngine().aggregate("step-1", results, {"security": 1.0, "performance": 1.0}, 0.7)


def _repaired(report: ImmunityReport, patch: str = "+x = os.environ['X']") -> RepairOutcome:
    return RepairOutcome(status=RepairStatus.REPAIRED, report=report, patched_content=patch)


def _unrepairable(report: ImmunityReport, reason: str = "verification_failed") -> RepairOutcome:
    return RepairOutcome(status=RepairStatus.UNREPAIRABLE, report=report, reason=reason)


def _make_feedback(store=None, bus=None, **overrides) -> LearningFeedback:
    return LearningFeedback(store, ImmunityConfig(**overrides), bus)


class TestFingerprint:
    def test_variable_parts_normalised(self):
        step = _make_step()
        a = fingerprint_report(step, _failing_report("credential on line 12 in 0123abcd9f"))
        b = fingerprint_report(step, _failing_report("credential on line 480 in ffee0011aa"))
        assert a.digest == b.digest
        assert a.tokens == b.tokens

    def test_different_kinds_differ(self):
        step = _make_step()
        a = fingerprint_report(step, _failing_report(kind="hardcoded_secret"))
        b = fingerprint_report(step, _failing_report(kind="shell_injection"))
        assert a.digest != b.digest

    def test_clean_fingerprint_depends_on_delta_kind_and_vectors(self):
        report = _passing_report()
        diff_step = _make_step()
        write_step = TrajectoryStep(
            step_id="s2", session_id="session-1", content="x = 1", delta_kind=DeltaKind.FILE_WRITE,
        )
        assert fingerprint_report(diff_step, report).digest == fingerprint_report(_make_step("other"), report).digest
        assert fingerprint_report(diff_step, report).digest != fingerprint_report(write_step, report).digest

    def test_tokens_sorted_and_lowercase(self):
        fp = fingerprint_report(_make_step(), _failing_report())
        assert fp.tokens == sorted(fp.tokens)
        assert all(t == t.lower() for t in fp.tokens)


class TestInMemoryPatternStore:
    def test_satisfies_capability(self):
        assert isinstance(InMemoryPatternStore(), PatternStore)

    def test_jaccard(self):
        assert jaccard(["a", "b"], ["a", "b"]) == 1.0
        assert jaccard(["a", "b"], ["b", "c"]) == pytest.approx(1 / 3)
        assert jaccard([], []) == 1.0

    @pytest.mark.asyncio
    async def test_similar_ordered_by_similarity(self):
        store = InMemoryPatternStore()
        close = Pattern(
            fingerprint=ViolationFingerprint(digest="d1", tokens=["a", "b", "c"]),
            resolution=PatternResolution.TOMBSTONE,
        )
        far = Pattern(
            fingerprint=ViolationFingerprint(digest="d2", tokens=["a", "x", "y"]),
            resolution=PatternResolution.TOMBSTONE,
        )
        unrelated = Pattern(
            fingerprint=ViolationFingerprint(digest="d3", tokens=["z"]),
            resolution=PatternResolution.TOMBSTONE,
        )
        for pattern in (far, unrelated, close):
            await store.upsert(pattern)

        matches = await store.find_similar(ViolationFingerprint(digest="q", tokens=["a", "b", "c"]))
        assert [m.pattern.pattern_id for m in matches] == [close.pattern_id, far.pattern_id]
        assert matches[0].similarity == 1.0

    @pytest.mark.asyncio
    async def test_identical_digest_is_exact_match(self):
        store = InMemoryPatternStore()
        pattern = Pattern(
            fingerprint=ViolationFingerprint(digest="same", tokens=["a"]),
            resolution=PatternResolution.CLEAN,
        )
        await store.upsert(pattern)
        matches = await store.find_similar(ViolationFingerprint(digest="same", tokens=["b"]))
        assert matches[0].similarity == 1.0


class TestRecord:
    @pytest.mark.asyncio
    async def test_no_store_is_noop(self):
        feedback = _make_feedback(None)
        assert await feedback.record(_make_step(), _failing_report()) is None

    @pytest.mark.asyncio
    async def test_unrepairable_becomes_tombstone(self):
        store = InMemoryPatternStore()
        feedback = _make_feedback(store)
        report = _failing_report()

        pattern_id = await feedback.record(_make_step(), report, _unrepairable(report))

        pattern = store.get(pattern_id)
        assert pattern is not None
        assert pattern.resolution == PatternResolution.TOMBSTONE
        assert pattern.patch is None
        assert pattern.vector_ids == ["security"]
        assert pattern.violation_kinds == ["hardcoded_secret"]
        assert pattern.source_step_id == "step-1"

    @pytest.mark.asyncio
    async def test_repaired_keeps_patch(self):
        store = InMemoryPatternStore()
        report = _failing_report()
        pattern_id = await _make_feedback(store).record(_make_step(), report, _repaired(report))
        pattern = store.get(pattern_id)
        assert pattern.resolution == PatternResolution.REPAIRED
        assert pattern.patch == "+x = os.environ['X']"

    @pytest.mark.asyncio
    async def test_passing_step_is_clean(self):
        store = InMemoryPatternStore()
        pattern_id = await _make_feedback(store).record(_make_step(), _passing_report())
        assert store.get(pattern_id).resolution == PatternResolution.CLEAN

    @pytest.mark.asyncio
    async def test_near_duplicate_increments_instead_of_inserting(self):
        store = InMemoryPatternStore()
        feedback = _make_feedback(store)

        first = await feedback.record(_make_step("s1"), _failing_report("secret on line 3"))
        second = await feedback.record(_make_step("s2"), _failing_report("secret on line 99"))

        assert first == second
        assert len(store) == 1
        assert store.get(first).occurrence_count == 2
        assert feedback.stats["deduplicated"] == 1

    @pytest.mark.asyncio
    async def test_different_resolution_is_not_merged(self):
        store = InMemoryPatternStore()
        feedback = _make_feedback(store)
        report = _failing_report()

        tombstone = await feedback.record(_make_step(), report, _unrepairable(report))
        repaired = await feedback.record(_make_step(), report, _repaired(report))

        assert tombstone != repaired
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_repeated_mistake_bounds_store_growth(self):
        store = InMemoryPatternStore()
        feedback = _make_feedback(store)
        for n in range(25):
            await feedback.record(_make_step(f"s{n}"), _failing_report(f"secret on line {n}"))
        assert len(store) == 1
        assert store.all()[0].occurrence_count == 25

    @pytest.mark.asyncio
    async def test_promotion_emits_event_once(self):
        store = InMemoryPatternStore()
        bus = ImmunityEventBus()
        feedback = _make_feedback(store, bus, promotion_threshold=3)

        for n in range(5):
            await feedback.record(_make_step(f"s{n}"), _failing_report())

        pattern = store.all()[0]
        assert pattern.promoted is True
        promoted = bus.recent(ImmunityEventType.PATTERN_PROMOTED)
        assert len(promoted) == 1
        assert promoted[0].data["occurrence_count"] == 3
        assert len(bus.recent(ImmunityEventType.PATTERN_RECORDED, limit=100)) == 5
        assert feedback.stats["promoted"] == 1


class TestRejectedRepairs:
    @pytest.mark.asyncio
    async def test_rejections_accumulate_on_tombstone(self):
        store = InMemoryPatternStore()
        feedback = _make_feedback(store)
        report = _failing_report()

        for n in range(3):
            await feedback.record(_make_step(f"s{n}"), report, _unrepairable(report))

        pattern = store.all()[0]
        assert pattern.occurrence_count == 3
        assert pattern.rejected_repairs == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reason", [
        "synthesis_timeout",
        "synthesis_error: connection reset",
        "no_synthesizer",
        "known_unrepairable",
    ])
    async def test_transient_failures_do_not_count(self, reason: str):
        store = InMemoryPatternStore()
        feedback = _make_feedback(store)
        report = _failing_report()

        for n in range(4):
            await feedback.record(_make_step(f"s{n}"), report, _unrepairable(report, reason))

        pattern = store.all()[0]
        assert pattern.resolution == PatternResolution.TOMBSTONE
        assert pattern.occurrence_count == 4
        assert pattern.rejected_repairs == 0


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_lookup_failure_is_swallowed(self):
        store = AsyncMock()
        store.find_similar = AsyncMock(side_effect=ConnectionError("store offline"))
        feedback = _make_feedback(store)

        assert await feedback.record(_make_step(), _failing_report()) is None
        store.upsert.assert_not_called()
        assert feedback.stats["store_failures"] == 1

    @pytest.mark.asyncio
    async def test_upsert_failure_is_swallowed(self):
        store = AsyncMock()
        store.find_similar = AsyncMock(return_value=[])
        store.upsert = AsyncMock(side_effect=RuntimeError("disk full"))
        feedback = _make_feedback(store)

        assert await feedback.record(_make_step(), _failing_report()) is None
        assert feedback.stats["store_failures"] == 1
        assert feedback.stats["recorded"] == 0

    @pytest.mark.asyncio
    async def test_slow_store_times_out(self):
        class _SlowStore(InMemoryPatternStore):
            async def find_similar(self, fingerprint):
                await asyncio.sleep(5)
                return []

        feedback = _make_feedback(_SlowStore(), store_timeout_s=0.01)
        assert await feedback.record(_make_step(), _failing_report()) is None
        assert await feedback.recall(_make_step(), _failing_report()) is None
        assert feedback.stats["store_failures"] == 2


class TestRecall:
    @pytest.mark.asyncio
    async def test_recall_after_record(self):
        store = InMemoryPatternStore()
        feedback = _make_feedback(store)
        report = _failing_report()
        pattern_id = await feedback.record(_make_step(), report, _unrepairable(report))

        recalled = await feedback.recall(_make_step("s2"), _failing_report("credential on line 77"))

        assert recalled is not None
        assert recalled.pattern_id == pattern_id
        assert recalled.resolution == PatternResolution.TOMBSTONE

    @pytest.mark.asyncio
    async def test_recall_below_threshold_is_none(self):
        store = InMemoryPatternStore()
        feedback = _make_feedback(store)
        await feedback.record(_make_step(), _failing_report(kind="hardcoded_secret"))

        recalled = await feedback.recall(_make_step(), _failing_report(kind="shell_injection", message="shell"))
        assert recalled is None

    @pytest.mark.asyncio
    async def test_recall_without_store(self):
        assert await _make_feedback(None).recall(_make_step(), _failing_report()) is None

    @pytest.mark.asyncio
    async def test_recall_has_its_own_short_budget(self):
        class _SlowStore(InMemoryPatternStore):
            async def find_similar(self, fingerprint):
                await asyncio.sleep(0.5)
                return []

        feedback = _make_feedback(_SlowStore(), store_timeout_s=5.0, recall_timeout_s=0.01)

        loop = asyncio.get_running_loop()
        started = loop.time()
        assert await feedback.recall(_make_step(), _failing_report()) is None
        assert loop.time() - started < 0.25
        assert feedback.stats["store_failures"] == 1
