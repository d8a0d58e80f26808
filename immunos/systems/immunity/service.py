"""
ImmunOS — Immunity Coordinator (The Immune Core)

Every agent-proposed step passes through here before it may land. The
coordinator scans it on every enabled health vector at once, folds the
results into a single verdict and, when the verdict fails, attempts a
verified micro-repair.

Pipeline:
  Sensing → Analyzing → (Neutralizing)? → Learning → Done
  Failed is terminal, reachable from any stage on an internal defect.

Rules:
  - A validated step always gets a verdict. Only malformed input
    (ValidationError) and registry defects (RegistryError) abort.
  - A crashed or slow vector fails open and stays inside Analyzing.
  - A patch is surfaced only after a re-scan proves it clears the
    violations that motivated it.
  - Learning, events and metrics are detached from the caller's response.
  - The registry and the doctrine are snapshotted per invocation;
    reconfiguration swaps them, it never mutates them in place.

Interface:
  process()          — scan, judge, repair
  pre_commit()       — same, for a blocking commit gate
  register_vector()  — add or hot-reload a health vector
  reload_doctrine()  — explicit doctrine swap
  drain()            — await outstanding learning
  shutdown()         — drain and stop accepting learning
  health()           — observability snapshot
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import structlog

from immunos.config import DoctrineConfig, ImmunityConfig
from immunos.systems.immunity.errors import (
    OrphanResultError,
    StepValidationError,
    VectorFailure,
)
from immunos.systems.immunity.learning import LearningFeedback
from immunos.systems.immunity.registry import VectorDescriptor, VectorRegistry
from immunos.systems.immunity.repair import RepairDispatcher
from immunos.systems.immunity.scoring import ScoringEngine
from immunos.systems.immunity.types import (
    CoordinatorStage,
    DeltaKind,
    ImmunityEvent,
    ImmunityEventType,
    ImmunityHealthSnapshot,
    ImmunityReport,
    ImmunityVerdict,
    RepairOutcome,
    TrajectoryStep,
    VectorResult,
)
from immunos.systems.immunity.vectors import register_default_vectors

if TYPE_CHECKING:
    from immunos.config import ImmunOSConfig
    from immunos.systems.immunity.events import ImmunityEventBus
    from immunos.systems.immunity.learning import PatternStore
    from immunos.systems.immunity.repair import PatchSynthesizer
    from immunos.telemetry.metrics import MetricCollector

logger = structlog.get_logger()

_LATENCY_WINDOW = 500


class ImmunityCoordinator:
    """
    The trajectory immune core.

    Sub-systems:
      VectorRegistry    — which vectors exist, resolved per doctrine
      ScoringEngine     — pure aggregation into an ImmunityReport
      RepairDispatcher  — synthesis plus verify-before-surface
      LearningFeedback  — pattern recording and recall
    """

    system_id: str = "immunity"

    def __init__(
        self,
        config: ImmunityConfig | None = None,
        doctrine: DoctrineConfig | None = None,
        registry: VectorRegistry | None = None,
        synthesizer: PatchSynthesizer | None = None,
        store: PatternStore | None = None,
        event_bus: ImmunityEventBus | None = None,
        metrics: MetricCollector | None = None,
    ) -> None:
        self._config = config or ImmunityConfig()
        self._doctrine = doctrine or DoctrineConfig()
        if registry is None:
            registry = register_default_vectors(VectorRegistry())
        self._registry = registry
        self._event_bus = event_bus
        self._metrics = metrics
        self._logger = logger.bind(system="immunity", component="coordinator")

        self._scoring = ScoringEngine()
        self._dispatcher = RepairDispatcher(synthesizer, self._config)
        self._learning = LearningFeedback(store, self._config, event_bus)

        # Detached work: learning submissions, event and metric emission
        self._pending_learning: set[asyncio.Task[None]] = set()
        self._background: set[asyncio.Task[Any]] = set()
        self._accepting_learning: bool = True

        # Counters
        self._steps_processed: int = 0
        self._steps_rejected: int = 0
        self._steps_failed: int = 0
        self._verdicts_pass: int = 0
        self._verdicts_fail: int = 0
        self._vectors_failed_open: int = 0
        self._learning_dropped: int = 0
        self._latencies: deque[float] = deque(maxlen=_LATENCY_WINDOW)

    @classmethod
    def from_config(
        cls,
        config: ImmunOSConfig,
        project: str | None = None,
        **collaborators: Any,
    ) -> ImmunityCoordinator:
        """Build a coordinator from the root config, scoped to a project doctrine."""
        return cls(
            config=config.immunity,
            doctrine=config.doctrine_for(project),
            **collaborators,
        )

    # ─── Configuration ───────────────────────────────────────────────

    @property
    def registry(self) -> VectorRegistry:
        return self._registry

    @property
    def doctrine(self) -> DoctrineConfig:
        return self._doctrine

    def register_vector(self, descriptor: VectorDescriptor) -> None:
        """Add a vector, or hot-reload one registered under the same id."""
        self._registry.register(descriptor)

    def reload_doctrine(self, doctrine: DoctrineConfig | Mapping[str, Any]) -> DoctrineConfig:
        """
        Swap in a new default doctrine. In-flight invocations keep the
        doctrine they started with.
        """
        if not isinstance(doctrine, DoctrineConfig):
            doctrine = DoctrineConfig.from_mapping(doctrine)
        previous = self._doctrine
        self._doctrine = doctrine
        self._logger.info(
            "doctrine_reloaded",
            confidence_threshold=doctrine.confidence_threshold,
            weight_overrides=len(doctrine.weights),
            enabled_overrides=len(doctrine.enabled),
            previous_threshold=previous.confidence_threshold,
        )
        return doctrine

    # ─── Entry Points ────────────────────────────────────────────────

    async def process(
        self,
        step: TrajectoryStep,
        config: DoctrineConfig | None = None,
    ) -> ImmunityVerdict:
        """
        Run one step through the immune pipeline.

        Raises StepValidationError for malformed steps and RegistryError for
        internal registry defects. Everything else yields a verdict.
        """
        started = time.perf_counter()
        doctrine = config or self._doctrine
        vectors = self._registry.snapshot()
        stages = [CoordinatorStage.SENSING]

        try:
            self._validate(step)
        except StepValidationError as exc:
            self._steps_rejected += 1
            self._logger.info("step_rejected", step_id=step.step_id, reason=str(exc))
            self._emit_event(ImmunityEventType.STEP_REJECTED, step.step_id, {"reason": str(exc)})
            self._emit_metric("immunity.steps.rejected", 1)
            raise

        async def rescan(candidate: TrajectoryStep) -> ImmunityReport:
            return await self._scan(candidate, doctrine, vectors)

        repair: RepairOutcome | None = None
        recalled_id: str | None = None
        try:
            stages.append(CoordinatorStage.ANALYZING)
            report = await self._scan(step, doctrine, vectors)

            if not report.passed:
                stages.append(CoordinatorStage.NEUTRALIZING)
                recalled = await self._learning.recall(step, report)
                recalled_id = recalled.pattern_id if recalled is not None else None
                repair = await self._dispatcher.dispatch(
                    report,
                    step,
                    rescan,
                    threshold=doctrine.confidence_threshold,
                    recalled=recalled,
                )

            stages.append(CoordinatorStage.LEARNING)
            self._schedule_learning(step, report, repair)
            stages.append(CoordinatorStage.DONE)
        except Exception as exc:
            stages.append(CoordinatorStage.FAILED)
            self._steps_failed += 1
            self._logger.error(
                "step_processing_failed",
                step_id=step.step_id,
                stages=[s.value for s in stages],
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self._emit_metric("immunity.steps.failed", 1)
            raise

        latency_ms = (time.perf_counter() - started) * 1000
        verdict = ImmunityVerdict(
            step_id=step.step_id,
            verdict=report.verdict,
            report=report,
            repair=repair,
            patched_content=repair.patched_content if repair is not None and repair.repaired else None,
            stages=stages,
            recalled_pattern_id=recalled_id,
            latency_ms=latency_ms,
        )
        self._record_outcome(step, verdict)
        return verdict

    async def pre_commit(
        self,
        step: TrajectoryStep,
        config: DoctrineConfig | None = None,
    ) -> ImmunityVerdict:
        """
        Commit-gate variant of process(). Blocks until a verdict exists.

        The caller should commit only if ``verdict.admissible``, and then
        the patched content when one is present.
        """
        verdict = await self.process(step, config)
        self._logger.info(
            "pre_commit_gate",
            step_id=step.step_id,
            admissible=verdict.admissible,
            verdict=verdict.verdict.value,
            repaired=verdict.patched_content is not None,
        )
        return verdict

    # ─── Sensing ─────────────────────────────────────────────────────

    @staticmethod
    def _validate(step: TrajectoryStep) -> None:
        if not step.step_id.strip():
            raise StepValidationError("Step has a blank step_id")
        if not step.session_id.strip():
            raise StepValidationError(f"Step {step.step_id} has a blank session_id")
        if step.sequence < 0:
            raise StepValidationError(
                f"Step {step.step_id} has a negative sequence ({step.sequence})"
            )
        if not step.content.strip():
            raise StepValidationError(f"Step {step.step_id} carries an empty delta")
        if step.delta_kind == DeltaKind.DIFF and not _looks_like_diff(step.content):
            raise StepValidationError(
                f"Step {step.step_id} is declared a diff but has no hunk or +/- lines"
            )

    # ─── Analyzing ───────────────────────────────────────────────────

    async def _scan(
        self,
        step: TrajectoryStep,
        doctrine: DoctrineConfig,
        vectors: Mapping[str, VectorDescriptor],
    ) -> ImmunityReport:
        enabled = self._registry.resolve_enabled(doctrine, vectors)
        weights = {
            d.vector_id: self._registry.effective_weight(d.vector_id, doctrine, vectors)
            for d in enabled
        }
        results = await self._fan_out(step, enabled)
        return self._scoring.aggregate(
            step.step_id,
            results,
            weights,
            doctrine.confidence_threshold,
        )

    async def _fan_out(
        self,
        step: TrajectoryStep,
        enabled: tuple[VectorDescriptor, ...],
    ) -> list[VectorResult]:
        """
        Run every enabled vector concurrently under the step deadline.

        Vectors still running at the deadline are cancelled and reported
        as fail-open. Results come back in registration order.
        """
        if not enabled:
            return []

        tasks = [
            (descriptor, asyncio.create_task(self._run_vector(descriptor, step)))
            for descriptor in enabled
        ]
        _, pending = await asyncio.wait(
            [task for _, task in tasks],
            timeout=self._config.step_deadline_s,
        )

        if pending:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self._logger.warning(
                "step_deadline_exceeded",
                step_id=step.step_id,
                cancelled=[d.vector_id for d, t in tasks if t in pending],
                deadline_s=self._config.step_deadline_s,
            )

        results: list[VectorResult] = []
        for descriptor, task in tasks:
            if task in pending:
                results.append(VectorResult.fail_open(descriptor.vector_id, "step_deadline_exceeded"))
            else:
                results.append(task.result())
        return results

    async def _run_vector(self, descriptor: VectorDescriptor, step: TrajectoryStep) -> VectorResult:
        """One analyzer call. Anything but a registry defect becomes fail-open."""
        try:
            async with asyncio.timeout(self._config.vector_timeout_s):
                result = await descriptor.analyzer.analyze(step)
            if not isinstance(result, VectorResult):
                raise VectorFailure(f"analyzer returned {type(result).__name__}")
        except TimeoutError:
            self._logger.warning(
                "vector_timeout",
                vector_id=descriptor.vector_id,
                step_id=step.step_id,
                timeout_s=self._config.vector_timeout_s,
            )
            return VectorResult.fail_open(descriptor.vector_id, "timeout")
        except VectorFailure as exc:
            self._logger.warning(
                "vector_failed", vector_id=descriptor.vector_id, step_id=step.step_id, error=str(exc),
            )
            return VectorResult.fail_open(descriptor.vector_id, str(exc))
        except Exception as exc:
            self._logger.warning(
                "vector_failed", vector_id=descriptor.vector_id, step_id=step.step_id, error=str(exc),
            )
            return VectorResult.fail_open(descriptor.vector_id, f"error: {exc}")

        if result.vector_id != descriptor.vector_id:
            raise OrphanResultError(
                f"Vector {descriptor.vector_id!r} returned a result for {result.vector_id!r}"
            )
        return result

    # ─── Learning ────────────────────────────────────────────────────

    def _schedule_learning(
        self,
        step: TrajectoryStep,
        report: ImmunityReport,
        repair: RepairOutcome | None,
    ) -> None:
        if not self._accepting_learning:
            return
        if len(self._pending_learning) >= self._config.max_pending_learning:
            self._learning_dropped += 1
            self._logger.warning(
                "learning_dropped",
                step_id=step.step_id,
                pending=len(self._pending_learning),
            )
            return

        task = asyncio.create_task(self._learn(step, report, repair))
        self._pending_learning.add(task)
        task.add_done_callback(self._pending_learning.discard)

    async def _learn(
        self,
        step: TrajectoryStep,
        report: ImmunityReport,
        repair: RepairOutcome | None,
    ) -> None:
        try:
            await self._learning.record(step, report, repair)
        except Exception as exc:
            self._logger.error("learning_failed", step_id=step.step_id, error=str(exc))

    async def drain(self) -> None:
        """Wait for all detached learning and event delivery to finish."""
        while self._pending_learning or self._background:
            await asyncio.gather(
                *self._pending_learning,
                *self._background,
                return_exceptions=True,
            )

    async def shutdown(self) -> None:
        self._accepting_learning = False
        await self.drain()
        self._logger.info("immunity_coordinator_shutdown", **self.stats)

    # ─── Outcome Reporting ───────────────────────────────────────────

    def _record_outcome(self, step: TrajectoryStep, verdict: ImmunityVerdict) -> None:
        report = verdict.report
        self._steps_processed += 1
        self._latencies.append(verdict.latency_ms)
        if report.passed:
            self._verdicts_pass += 1
        else:
            self._verdicts_fail += 1

        crashed = report.diagnostics.crashed
        self._vectors_failed_open += len(crashed)
        for vector_id in crashed:
            self._emit_event(ImmunityEventType.VECTOR_FAILED_OPEN, step.step_id, {
                "vector_id": vector_id,
                "reason": report.diagnostics.failures.get(vector_id, ""),
            })
            self._emit_metric("immunity.vectors.failed_open", 1, tags={"vector": vector_id})

        self._emit_event(ImmunityEventType.STEP_SCANNED, step.step_id, {
            "session_id": step.session_id,
            "verdict": report.verdict.value,
            "score": report.score,
            "admissible": verdict.admissible,
            "latency_ms": verdict.latency_ms,
        })
        self._emit_metric("immunity.scan.latency_ms", verdict.latency_ms)
        self._emit_metric("immunity.verdicts", 1, tags={"verdict": report.verdict.value})

        repair = verdict.repair
        if repair is not None:
            if repair.repaired:
                self._emit_event(ImmunityEventType.REPAIR_SUCCEEDED, step.step_id, {
                    "vectors": sorted({c.vector_id for c in repair.candidates}),
                })
                self._emit_metric("immunity.repairs.succeeded", 1)
            else:
                self._emit_event(ImmunityEventType.REPAIR_FAILED, step.step_id, {
                    "reason": repair.reason,
                })
                self._emit_metric("immunity.repairs.unrepairable", 1, tags={"reason": repair.reason})

        self._logger.info(
            "step_processed",
            step_id=step.step_id,
            session_id=step.session_id,
            verdict=report.verdict.value,
            score=round(report.score, 4),
            admissible=verdict.admissible,
            repair=repair.status.value if repair is not None else None,
            crashed=crashed,
            latency_ms=round(verdict.latency_ms, 2),
        )

    def _emit_event(self, event_type: ImmunityEventType, step_id: str, data: dict[str, Any]) -> None:
        """Fire-and-forget event emission."""
        if self._event_bus is None:
            return
        event = ImmunityEvent(event_type=event_type, step_id=step_id, data=data)
        self._track(asyncio.create_task(self._event_bus.emit(event)))

    def _emit_metric(
        self,
        name: str,
        value: float,
        tags: dict[str, str] | None = None,
    ) -> None:
        """Emit a metric if the collector is available."""
        if self._metrics is None:
            return
        self._track(asyncio.create_task(
            self._safe_metric(name, value, tags)
        ))

    async def _safe_metric(self, name: str, value: float, tags: dict[str, str] | None) -> None:
        assert self._metrics is not None
        try:
            await self._metrics.record(system="immunity", metric=name, value=value, labels=tags)
        except Exception as exc:
            self._logger.debug("metric_emit_failed", metric=name, error=str(exc))

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ─── Health ──────────────────────────────────────────────────────

    def health(self) -> ImmunityHealthSnapshot:
        repair_stats = self._dispatcher.stats
        learning_stats = self._learning.stats
        enabled = len(self._registry.resolve_enabled(self._doctrine))

        mean_latency = 0.0
        if self._latencies:
            mean_latency = sum(self._latencies) / len(self._latencies)

        status = "healthy"
        if enabled == 0 or not self._accepting_learning:
            status = "degraded"

        return ImmunityHealthSnapshot(
            status=status,
            registered_vectors=len(self._registry),
            enabled_vectors=enabled,
            steps_processed=self._steps_processed,
            steps_rejected=self._steps_rejected,
            steps_failed=self._steps_failed,
            verdicts_pass=self._verdicts_pass,
            verdicts_fail=self._verdicts_fail,
            vectors_failed_open=self._vectors_failed_open,
            mean_latency_ms=round(mean_latency, 3),
            repairs_attempted=repair_stats["attempted"],
            repairs_succeeded=repair_stats["repaired"],
            repairs_unrepairable=repair_stats["unrepairable"],
            patterns_recorded=learning_stats["recorded"],
            patterns_deduplicated=learning_stats["deduplicated"],
            patterns_promoted=learning_stats["promoted"],
            store_failures=learning_stats["store_failures"],
            pending_learning=len(self._pending_learning),
        )

    @property
    def stats(self) -> dict[str, Any]:
        """Synchronous stats for logging."""
        return {
            "steps_processed": self._steps_processed,
            "steps_rejected": self._steps_rejected,
            "steps_failed": self._steps_failed,
            "verdicts_pass": self._verdicts_pass,
            "verdicts_fail": self._verdicts_fail,
            "vectors_failed_open": self._vectors_failed_open,
            "learning_dropped": self._learning_dropped,
            "pending_learning": len(self._pending_learning),
            "repair": self._dispatcher.stats,
            "learning": self._learning.stats,
        }


def _looks_like_diff(content: str) -> bool:
    for line in content.splitlines():
        if line.startswith("@@"):
            return True
        if line.startswith(("+", "-")) and not line.startswith(("+++", "---")):
            return True
    return False
