"""
ImmunOS — Immunity Type Definitions

All data types for the scan-and-verdict pipeline: trajectory steps,
vector results, violations, immunity reports, repair outcomes, patterns,
outcome events and the coordinator's verdict payload.

Reports are derived deterministically from their inputs: they carry no
timestamps and no generated identifiers, so two reports built from the
same results and weights compare equal.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import Field, model_validator

from immunos.primitives.common import ImmunOSBaseModel, new_id, utc_now


# ─── Enums ────────────────────────────────────────────────────────


class Severity(int, enum.Enum):
    """Ordered: INFO < WARNING < CRITICAL."""

    INFO = 0
    WARNING = 1
    CRITICAL = 2  # Forces the vector and the aggregate verdict to fail


class DeltaKind(enum.StrEnum):
    """What shape of work a step proposes."""

    DIFF = "diff"
    FILE_WRITE = "file_write"
    COMMAND = "command"


class VerdictKind(enum.StrEnum):
    PASS = "pass"
    FAIL = "fail"


class RepairStatus(enum.StrEnum):
    """Outcome of a repair dispatch."""

    SKIPPED = "skipped"  # Verdict was pass, nothing to do
    REPAIRED = "repaired"  # Patch synthesised AND verified by re-scan
    UNREPAIRABLE = "unrepairable"  # No safe fix available


class CoordinatorStage(enum.StrEnum):
    """Sensing → Analyzing → (Neutralizing)? → Learning → Done."""

    SENSING = "sensing"
    ANALYZING = "analyzing"
    NEUTRALIZING = "neutralizing"
    LEARNING = "learning"
    DONE = "done"
    FAILED = "failed"


class PatternResolution(enum.StrEnum):
    REPAIRED = "repaired"  # A verified patch cleared the violations
    TOMBSTONE = "tombstone"  # Known-bad, no fix yet
    CLEAN = "clean"  # Passed; reinforces a known-clean shape


class ImmunityEventType(enum.StrEnum):
    STEP_SCANNED = "step_scanned"
    STEP_REJECTED = "step_rejected"
    VECTOR_FAILED_OPEN = "vector_failed_open"
    REPAIR_SUCCEEDED = "repair_succeeded"
    REPAIR_FAILED = "repair_failed"
    PATTERN_RECORDED = "pattern_recorded"
    PATTERN_PROMOTED = "pattern_promoted"


# ─── Trajectory Step ─────────────────────────────────────────────


class TrajectoryStep(ImmunOSBaseModel):
    """
    One discrete unit of agent-proposed work.

    Immutable once created. The coordinator only reads it; structural
    checks (blank ids, malformed diffs) happen in the Sensing stage so the
    caller gets a StepValidationError rather than a construction error.
    """

    model_config = {"frozen": True}

    step_id: str
    session_id: str
    content: str  # The proposed delta: diff text, file body, or command line
    delta_kind: DeltaKind = DeltaKind.DIFF
    file_path: str | None = None
    intent: str = ""  # Declared task intent, free text
    sequence: int = 0
    created_at: datetime = Field(default_factory=utc_now)

    def with_content(self, content: str) -> TrajectoryStep:
        """Same step identity carrying a candidate patch, for verification."""
        return self.model_copy(update={"content": content})


# ─── Vector Results ──────────────────────────────────────────────


class ViolationLocation(ImmunOSBaseModel):
    line: int
    column: int | None = None
    end_line: int | None = None


class Violation(ImmunOSBaseModel):
    kind: str  # Free-form classification, e.g. "hardcoded_secret"
    message: str
    location: ViolationLocation | None = None
    severity: Severity = Severity.WARNING


class VectorResult(ImmunOSBaseModel):
    """
    Output of one analyzer for one step. Produced fresh per analysis call.

    ``failed_open`` distinguishes "crashed, no opinion" from "confidently
    found nothing wrong": a failed-open result is excluded from scoring.
    """

    vector_id: str
    passed: bool
    confidence: float = Field(ge=0.0, le=1.0)
    violations: list[Violation] = Field(default_factory=list)
    suggested_fix: str | None = None
    failed_open: bool = False
    failure_reason: str | None = None

    @model_validator(mode="after")
    def _critical_forces_failure(self) -> VectorResult:
        if self.passed and self.has_critical:
            self.passed = False
        return self

    @property
    def has_critical(self) -> bool:
        return any(v.severity == Severity.CRITICAL for v in self.violations)

    @classmethod
    def fail_open(cls, vector_id: str, reason: str) -> VectorResult:
        """Degraded "no opinion" result for a crashed or timed-out vector."""
        return cls(
            vector_id=vector_id,
            passed=True,
            confidence=0.0,
            failed_open=True,
            failure_reason=reason,
        )


# ─── Report ──────────────────────────────────────────────────────


class ScanDiagnostics(ImmunOSBaseModel):
    empty_registry: bool = False  # No vectors enabled: configuration anomaly
    crashed: list[str] = Field(default_factory=list)  # Fail-open vector ids
    failures: dict[str, str] = Field(default_factory=dict)  # id → reason
    zero_weight: bool = False  # Considered vectors carried no weight


class ImmunityReport(ImmunOSBaseModel):
    step_id: str
    results: list[VectorResult] = Field(default_factory=list)
    score: float
    verdict: VerdictKind
    low_confidence: list[str] = Field(default_factory=list)
    diagnostics: ScanDiagnostics = Field(default_factory=ScanDiagnostics)

    @property
    def passed(self) -> bool:
        return self.verdict == VerdictKind.PASS

    @property
    def failing_vectors(self) -> list[str]:
        """Vectors that produced a real (non fail-open) failing result."""
        return [r.vector_id for r in self.results if not r.failed_open and not r.passed]

    @property
    def violations(self) -> list[Violation]:
        return [v for r in self.results for v in r.violations]

    def result_for(self, vector_id: str) -> VectorResult | None:
        for result in self.results:
            if result.vector_id == vector_id:
                return result
        return None


# ─── Repair ──────────────────────────────────────────────────────

# Unrepairable reasons that are a real negative on a synthesised patch
_REJECTION_REASONS = ("verification_failed", "synthesis_declined", "empty_patch", "unchanged_patch")


class PatchResult(ImmunOSBaseModel):
    """What the external patch-synthesis capability hands back."""

    success: bool
    patched_content: str = ""
    summary: str = ""
    error: str = ""


class RepairCandidate(ImmunOSBaseModel):
    vector_id: str
    violation: Violation
    suggested_fix: str


class RepairOutcome(ImmunOSBaseModel):
    status: RepairStatus
    report: ImmunityReport  # The original diagnostic report
    patched_content: str | None = None
    verification: ImmunityReport | None = None  # Re-scan of the patch
    candidates: list[RepairCandidate] = Field(default_factory=list)
    reason: str = ""

    @property
    def repaired(self) -> bool:
        return self.status == RepairStatus.REPAIRED

    @property
    def patch_rejected(self) -> bool:
        """
        A synthesised patch was declined or failed verification. Timeouts,
        synthesizer errors and skipped attempts are not rejections.
        """
        return self.status == RepairStatus.UNREPAIRABLE and self.reason.startswith(_REJECTION_REASONS)


# ─── Patterns ────────────────────────────────────────────────────


class ViolationFingerprint(ImmunOSBaseModel):
    """Stable digest plus normalised tokens for similarity lookups."""

    digest: str
    tokens: list[str] = Field(default_factory=list)


class Pattern(ImmunOSBaseModel):
    """
    A violation-and-resolution pair. Owned by the external pattern store;
    the core only builds well-formed candidates and bumps occurrences.
    """

    pattern_id: str = Field(default_factory=new_id)
    fingerprint: ViolationFingerprint
    resolution: PatternResolution
    patch: str | None = None
    vector_ids: list[str] = Field(default_factory=list)
    violation_kinds: list[str] = Field(default_factory=list)
    occurrence_count: int = 1
    rejected_repairs: int = 0  # Occurrences whose synthesised patch was rejected
    source_step_id: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    last_seen: datetime = Field(default_factory=utc_now)
    promoted: bool = False


class SimilarPattern(ImmunOSBaseModel):
    pattern: Pattern
    similarity: float = Field(ge=0.0, le=1.0)


# ─── Events ──────────────────────────────────────────────────────


class ImmunityEvent(ImmunOSBaseModel):
    """An outcome notification emitted by the coordinator."""

    id: str = Field(default_factory=new_id)
    event_type: ImmunityEventType
    timestamp: datetime = Field(default_factory=utc_now)
    step_id: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


# ─── Verdict ─────────────────────────────────────────────────────


class ImmunityVerdict(ImmunOSBaseModel):
    """The payload a caller receives from the coordinator."""

    step_id: str
    verdict: VerdictKind
    report: ImmunityReport
    repair: RepairOutcome | None = None
    patched_content: str | None = None  # Only set when repaired
    stages: list[CoordinatorStage] = Field(default_factory=list)
    recalled_pattern_id: str | None = None
    latency_ms: float = 0.0

    @property
    def admissible(self) -> bool:
        """May the step (or its verified patch) land?"""
        return self.verdict == VerdictKind.PASS or (
            self.repair is not None and self.repair.repaired
        )


# ─── Health Snapshot ─────────────────────────────────────────────


class ImmunityHealthSnapshot(ImmunOSBaseModel):
    status: str = "healthy"

    registered_vectors: int = 0
    enabled_vectors: int = 0

    steps_processed: int = 0
    steps_rejected: int = 0
    steps_failed: int = 0  # Internal defects
    verdicts_pass: int = 0
    verdicts_fail: int = 0
    vectors_failed_open: int = 0
    mean_latency_ms: float = 0.0

    repairs_attempted: int = 0
    repairs_succeeded: int = 0
    repairs_unrepairable: int = 0

    patterns_recorded: int = 0
    patterns_deduplicated: int = 0
    patterns_promoted: int = 0
    store_failures: int = 0
    pending_learning: int = 0

    timestamp: datetime = Field(default_factory=utc_now)
