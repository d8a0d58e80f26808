"""
ImmunOS — Immunity (the trajectory immune core)

Scans every agent-proposed step on independent, weighted health vectors,
folds the results into one verdict, repairs failing steps only when a
re-scan proves the patch clean, and remembers what it learned.
"""

from immunos.systems.immunity.errors import (
    DoctrineValidationError,
    ImmunityError,
    OrphanResultError,
    RegistryError,
    StepValidationError,
    StoreFailure,
    SynthesisFailure,
    ValidationError,
    VectorFailure,
    VectorNotFoundError,
)
from immunos.systems.immunity.events import ImmunityEventBus
from immunos.systems.immunity.learning import (
    InMemoryPatternStore,
    LearningFeedback,
    PatternStore,
    fingerprint_report,
)
from immunos.systems.immunity.registry import (
    HealthVector,
    VectorDescriptor,
    VectorRegistry,
)
from immunos.systems.immunity.repair import PatchSynthesizer, RepairDispatcher
from immunos.systems.immunity.scoring import ScoringEngine
from immunos.systems.immunity.service import ImmunityCoordinator
from immunos.systems.immunity.types import (
    CoordinatorStage,
    DeltaKind,
    ImmunityEvent,
    ImmunityEventType,
    ImmunityHealthSnapshot,
    ImmunityReport,
    ImmunityVerdict,
    PatchResult,
    Pattern,
    PatternResolution,
    RepairCandidate,
    RepairOutcome,
    RepairStatus,
    ScanDiagnostics,
    Severity,
    SimilarPattern,
    TrajectoryStep,
    VectorResult,
    VerdictKind,
    Violation,
    ViolationFingerprint,
    ViolationLocation,
)
from immunos.systems.immunity.vectors import (
    CoherenceVector,
    DependencyVector,
    PerformanceVector,
    RuleVector,
    SecurityVector,
    TruthfulnessVector,
    default_descriptors,
    register_default_vectors,
)

__all__ = [
    # Service
    "ImmunityCoordinator",
    # Sub-systems
    "ImmunityEventBus",
    "InMemoryPatternStore",
    "LearningFeedback",
    "RepairDispatcher",
    "ScoringEngine",
    "VectorRegistry",
    # Capabilities
    "HealthVector",
    "PatchSynthesizer",
    "PatternStore",
    "VectorDescriptor",
    # Vectors
    "CoherenceVector",
    "DependencyVector",
    "PerformanceVector",
    "RuleVector",
    "SecurityVector",
    "TruthfulnessVector",
    "default_descriptors",
    "register_default_vectors",
    "fingerprint_report",
    # Types
    "CoordinatorStage",
    "DeltaKind",
    "ImmunityEvent",
    "ImmunityEventType",
    "ImmunityHealthSnapshot",
    "ImmunityReport",
    "ImmunityVerdict",
    "PatchResult",
    "Pattern",
    "PatternResolution",
    "RepairCandidate",
    "RepairOutcome",
    "RepairStatus",
    "ScanDiagnostics",
    "Severity",
    "SimilarPattern",
    "TrajectoryStep",
    "VectorResult",
    "VerdictKind",
    "Violation",
    "ViolationFingerprint",
    "ViolationLocation",
    # Errors
    "DoctrineValidationError",
    "ImmunityError",
    "OrphanResultError",
    "RegistryError",
    "StepValidationError",
    "StoreFailure",
    "SynthesisFailure",
    "ValidationError",
    "VectorFailure",
    "VectorNotFoundError",
]
