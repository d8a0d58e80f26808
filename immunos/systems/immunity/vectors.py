"""
ImmunOS — Health Vector Analyzers (Detection)

Vectors are the sensory organs of the immune core. Each one looks at a
trajectory step along a single dimension and produces a VectorResult.

Core vectors (enabled by default):
  1. PerformanceVector   — blocking sleeps, quadratic loops, queries in loops
  2. SecurityVector      — hard-coded secrets, eval, shell injection, rm -rf /
  3. DependencyVector    — unpinned or unverifiable dependencies
  4. CoherenceVector     — conflict markers, empty changes, intent drift
  5. TruthfulnessVector  — claims the delta does not back up, suppressed tests

Extended vectors (opt-in): cost, privacy, accessibility, reproducibility,
documentation. They are structurally identical to the core vectors and
differ only in their registered defaults.

These are lightweight line-level heuristics, not SAST engines. A host can
register a tool-backed analyzer under the same identifier to replace one.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

import structlog

from immunos.systems.immunity.registry import VectorDescriptor, VectorRegistry
from immunos.systems.immunity.types import (
    DeltaKind,
    Severity,
    TrajectoryStep,
    VectorResult,
    Violation,
    ViolationLocation,
)

logger = structlog.get_logger()

_ALL_KINDS = frozenset(DeltaKind)
_CODE_KINDS = frozenset({DeltaKind.DIFF, DeltaKind.FILE_WRITE})
_COMMAND_KINDS = frozenset({DeltaKind.COMMAND})

_STOPWORDS = frozenset({
    "the", "and", "for", "with", "that", "this", "from", "into", "when",
    "make", "sure", "should", "will", "also", "them", "then", "some",
    "code", "file", "files", "change", "changes", "update", "updates",
})


# ─── Rule Machinery ─────────────────────────────────────────────


@dataclass(frozen=True)
class _Rule:
    """One line-level check: a regex plus what to report when it matches."""

    kind: str
    pattern: re.Pattern[str]
    message: str
    severity: Severity = Severity.WARNING
    fix: str | None = None
    confidence: float = 0.9
    kinds: frozenset[DeltaKind] = _ALL_KINDS


def _rule(
    kind: str,
    pattern: str,
    message: str,
    severity: Severity = Severity.WARNING,
    fix: str | None = None,
    confidence: float = 0.9,
    kinds: frozenset[DeltaKind] = _ALL_KINDS,
    flags: int = 0,
) -> _Rule:
    return _Rule(kind, re.compile(pattern, flags), message, severity, fix, confidence, kinds)


def added_lines(step: TrajectoryStep) -> list[tuple[int, str]]:
    """
    The lines a step introduces, with 1-based positions in its content.

    For diffs only the ``+`` lines count (file headers excluded). File writes
    and commands introduce every line.
    """
    lines = step.content.splitlines()
    if step.delta_kind != DeltaKind.DIFF:
        return [(i, line) for i, line in enumerate(lines, start=1)]
    return [
        (i, line[1:])
        for i, line in enumerate(lines, start=1)
        if line.startswith("+") and not line.startswith("+++")
    ]


def removed_lines(step: TrajectoryStep) -> list[tuple[int, str]]:
    if step.delta_kind != DeltaKind.DIFF:
        return []
    return [
        (i, line[1:])
        for i, line in enumerate(step.content.splitlines(), start=1)
        if line.startswith("-") and not line.startswith("---")
    ]


def _apply_rules(
    step: TrajectoryStep,
    rules: Iterable[_Rule],
    lines: list[tuple[int, str]],
) -> list[tuple[_Rule, Violation]]:
    hits: list[tuple[_Rule, Violation]] = []
    for rule in rules:
        if step.delta_kind not in rule.kinds:
            continue
        for lineno, text in lines:
            if rule.pattern.search(text):
                hits.append((
                    rule,
                    Violation(
                        kind=rule.kind,
                        message=rule.message,
                        location=ViolationLocation(line=lineno),
                        severity=rule.severity,
                    ),
                ))
    return hits


def _build_result(
    vector_id: str,
    hits: list[tuple[_Rule, Violation]],
    clean_confidence: float,
) -> VectorResult:
    """Fold rule hits into a VectorResult. INFO-only hits still pass."""
    if not hits:
        return VectorResult(vector_id=vector_id, passed=True, confidence=clean_confidence)

    violations = [v for _, v in hits]
    fixes: list[str] = []
    for rule, _ in hits:
        if rule.fix and rule.fix not in fixes:
            fixes.append(rule.fix)

    return VectorResult(
        vector_id=vector_id,
        passed=all(v.severity == Severity.INFO for v in violations),
        confidence=min(rule.confidence for rule, _ in hits),
        violations=violations,
        suggested_fix="; ".join(fixes) or None,
    )


def _keywords(text: str) -> set[str]:
    return {
        w for w in re.split(r"[^a-z0-9_]+", text.lower())
        if len(w) > 3 and w not in _STOPWORDS
    }


# ─── Performance ────────────────────────────────────────────────


_FOR_RE = re.compile(r"^(\s*)for\s+.+?\s+in\s+(.+?):\s*$")
_QUERY_RE = re.compile(r"\.(execute|query|fetch|fetchall)\(|\brequests\.\w+\(|\bsession\.\w+\(")

_PERFORMANCE_RULES: tuple[_Rule, ...] = (
    _rule(
        "blocking_sleep", r"\btime\.sleep\(",
        "Blocking sleep on the execution path",
        fix="Replace time.sleep with asyncio.sleep or remove the wait",
        kinds=_CODE_KINDS,
    ),
    _rule(
        "unbounded_read", r"\.readlines\(\)|\.read\(\)\s*$",
        "Whole-file read with no size bound",
        severity=Severity.INFO,
        kinds=_CODE_KINDS,
    ),
    _rule(
        "unbounded_filesystem_scan", r"\bfind\s+/(\s|$)",
        "Filesystem scan from the root directory",
        fix="Scope the search to the project directory",
        kinds=_COMMAND_KINDS,
    ),
)


class PerformanceVector:
    vector_id = "performance"

    async def analyze(self, step: TrajectoryStep) -> VectorResult:
        try:
            lines = added_lines(step)
            hits = _apply_rules(step, _PERFORMANCE_RULES, lines)
            if step.delta_kind in _CODE_KINDS:
                hits.extend(self._loop_hits(lines))
            return _build_result(self.vector_id, hits, clean_confidence=0.9)
        except Exception as exc:
            logger.warning("performance_vector_error", error=str(exc))
            return VectorResult.fail_open(self.vector_id, f"error: {exc}")

    def _loop_hits(self, lines: list[tuple[int, str]]) -> list[tuple[_Rule, Violation]]:
        """Nested iteration over the same collection, and I/O inside loops."""
        hits: list[tuple[_Rule, Violation]] = []
        # Open loops as (indent, iterable)
        stack: list[tuple[int, str]] = []
        for lineno, text in lines:
            if not text.strip():
                continue
            indent = len(text) - len(text.lstrip())
            while stack and indent <= stack[-1][0]:
                stack.pop()

            match = _FOR_RE.match(text)
            if match:
                iterable = match.group(2).strip()
                if any(iterable == outer for _, outer in stack):
                    hits.append(self._hit(
                        "quadratic_loop", lineno,
                        f"Nested loop over the same collection {iterable!r}",
                        "Index the collection once (dict/set) instead of rescanning it",
                    ))
                stack.append((len(match.group(1)), iterable))
                continue

            if stack and _QUERY_RE.search(text):
                hits.append(self._hit(
                    "query_in_loop", lineno,
                    "Remote call or query issued once per loop iteration",
                    "Batch the calls outside the loop",
                ))
        return hits

    @staticmethod
    def _hit(kind: str, lineno: int, message: str, fix: str) -> tuple[_Rule, Violation]:
        rule = _rule(kind, r"$^", message, fix=fix, confidence=0.8)
        return rule, Violation(
            kind=kind,
            message=message,
            location=ViolationLocation(line=lineno),
            severity=Severity.WARNING,
        )


# ─── Security ───────────────────────────────────────────────────


_SECURITY_RULES: tuple[_Rule, ...] = (
    _rule(
        "hardcoded_secret",
        r"""(api[_-]?key|secret|password|passwd|token)\s*[:=]\s*["'][^"'\s]{8,}["']""",
        "Hard-coded credential in source",
        severity=Severity.CRITICAL,
        fix="Load the credential from the environment or a secret manager",
        confidence=0.95,
        flags=re.IGNORECASE,
    ),
    _rule(
        "hardcoded_secret", r"\bAKIA[0-9A-Z]{16}\b",
        "AWS access key id in source",
        severity=Severity.CRITICAL,
        fix="Load the credential from the environment or a secret manager",
        confidence=0.98,
    ),
    _rule(
        "private_key", r"-----BEGIN (RSA |EC |OPENSSH )?PRIVATE KEY-----",
        "Private key material in the change",
        severity=Severity.CRITICAL,
        confidence=0.99,
    ),
    _rule(
        "dynamic_eval", r"(?<![\w.])(eval|exec)\(",
        "Dynamic code evaluation",
        fix="Use ast.literal_eval or an explicit dispatch table",
        kinds=_CODE_KINDS,
    ),
    _rule(
        "shell_injection", r"shell\s*=\s*True|\bos\.system\(",
        "Command executed through a shell",
        fix="Pass an argument list to subprocess without shell=True",
        kinds=_CODE_KINDS,
    ),
    _rule(
        "tls_verification_disabled", r"verify\s*=\s*False",
        "TLS certificate verification disabled",
        fix="Remove verify=False",
        confidence=0.95,
        kinds=_CODE_KINDS,
    ),
    _rule(
        "unsafe_deserialization", r"\bpickle\.loads?\(|\byaml\.load\((?![^)]*SafeLoader)",
        "Deserialization of untrusted data",
        fix="Use yaml.safe_load or a schema-validated format",
        kinds=_CODE_KINDS,
    ),
    _rule(
        "destructive_command", r"\brm\s+-[a-z]*r[a-z]*f?[a-z]*\s+(/|~|\$HOME)(\s|$)",
        "Recursive delete of the root or home directory",
        severity=Severity.CRITICAL,
        confidence=0.99,
        kinds=_COMMAND_KINDS,
    ),
    _rule(
        "pipe_to_shell", r"\b(curl|wget)\b[^|]*\|\s*(sudo\s+)?(ba|z)?sh\b",
        "Remote script piped straight into a shell",
        severity=Severity.CRITICAL,
        fix="Download, verify the checksum, then execute",
        confidence=0.95,
        kinds=_COMMAND_KINDS,
    ),
    _rule(
        "world_writable", r"\bchmod\s+(-R\s+)?777\b",
        "World-writable permissions",
        fix="Grant the narrowest permission that works (e.g. 750)",
        kinds=_COMMAND_KINDS,
    ),
)


class SecurityVector:
    vector_id = "security"

    async def analyze(self, step: TrajectoryStep) -> VectorResult:
        try:
            hits = _apply_rules(step, _SECURITY_RULES, added_lines(step))
            return _build_result(self.vector_id, hits, clean_confidence=0.9)
        except Exception as exc:
            logger.warning("security_vector_error", error=str(exc))
            return VectorResult.fail_open(self.vector_id, f"error: {exc}")


# ─── Dependency Hygiene ─────────────────────────────────────────


_REQUIREMENT_RE = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)(\[[^\]]*\])?\s*(.*)$")

_DEPENDENCY_RULES: tuple[_Rule, ...] = (
    _rule(
        "unverifiable_source", r"git\+|https?://\S+\.(tar\.gz|zip|whl)\b",
        "Dependency installed from an unpinned VCS or URL source",
        fix="Depend on a released version from the package index",
    ),
    _rule(
        "wildcard_version", r"==\s*\*|[\"']\*[\"']|@latest\b",
        "Wildcard or floating dependency version",
        fix="Pin an exact version",
    ),
    _rule(
        "unpinned_install", r"\bpip3?\s+install\s+(?!-r\b)(?![^\n]*==)(?![^\n]*-e\b)\S+",
        "Package installed without a pinned version",
        fix="Pin the installed version with ==",
        confidence=0.85,
        kinds=_COMMAND_KINDS,
    ),
)


class DependencyVector:
    vector_id = "dependencies"

    async def analyze(self, step: TrajectoryStep) -> VectorResult:
        try:
            lines = added_lines(step)
            hits = _apply_rules(step, _DEPENDENCY_RULES, lines)
            if self._is_requirements_file(step.file_path):
                hits.extend(self._unpinned_requirements(lines))
            return _build_result(self.vector_id, hits, clean_confidence=0.9)
        except Exception as exc:
            logger.warning("dependency_vector_error", error=str(exc))
            return VectorResult.fail_open(self.vector_id, f"error: {exc}")

    @staticmethod
    def _is_requirements_file(path: str | None) -> bool:
        if not path:
            return False
        name = path.rsplit("/", 1)[-1]
        return name.startswith("requirements") and name.endswith((".txt", ".in"))

    @staticmethod
    def _unpinned_requirements(lines: list[tuple[int, str]]) -> list[tuple[_Rule, Violation]]:
        rule = _rule(
            "unpinned_dependency", r"$^",
            "Requirement without an exact version pin",
            fix="Pin the requirement with ==",
            confidence=0.85,
        )
        hits: list[tuple[_Rule, Violation]] = []
        for lineno, text in lines:
            stripped = text.split("#", 1)[0].strip()
            if not stripped or stripped.startswith(("-", "git+", "http")):
                continue
            match = _REQUIREMENT_RE.match(stripped)
            if match and "==" not in match.group(3):
                hits.append((
                    rule,
                    Violation(
                        kind=rule.kind,
                        message=f"{rule.message}: {match.group(1)}",
                        location=ViolationLocation(line=lineno),
                        severity=Severity.WARNING,
                    ),
                ))
        return hits


# ─── Semantic Coherence ─────────────────────────────────────────


_COHERENCE_RULES: tuple[_Rule, ...] = (
    _rule(
        "merge_conflict_marker", r"^(<{7}|>{7})( |$)|^={7}$",
        "Unresolved merge conflict marker",
        severity=Severity.CRITICAL,
        fix="Resolve the conflict and remove the markers",
        confidence=0.99,
        kinds=_CODE_KINDS,
    ),
)


class CoherenceVector:
    """
    Does the delta hang together, and does it relate to the declared intent?

    Intent drift is reported at low confidence: keyword overlap is a weak
    signal and should not, on its own, trigger an automated repair.
    """

    vector_id = "coherence"
    MIN_INTENT_KEYWORDS = 3

    async def analyze(self, step: TrajectoryStep) -> VectorResult:
        try:
            lines = added_lines(step)
            hits = _apply_rules(step, _COHERENCE_RULES, lines)

            if step.delta_kind == DeltaKind.DIFF and not lines and not removed_lines(step):
                hits.append(self._hit("empty_change", "Diff adds and removes nothing", 0.9))

            intent_words = _keywords(step.intent)
            if len(intent_words) >= self.MIN_INTENT_KEYWORDS:
                content_words = _keywords(step.content) | _keywords(step.file_path or "")
                if not intent_words & content_words:
                    hits.append(self._hit(
                        "intent_drift",
                        "Change shares no vocabulary with the declared intent",
                        0.6,
                    ))

            return _build_result(self.vector_id, hits, clean_confidence=0.85)
        except Exception as exc:
            logger.warning("coherence_vector_error", error=str(exc))
            return VectorResult.fail_open(self.vector_id, f"error: {exc}")

    @staticmethod
    def _hit(kind: str, message: str, confidence: float) -> tuple[_Rule, Violation]:
        rule = _rule(kind, r"$^", message, confidence=confidence)
        return rule, Violation(kind=kind, message=message, severity=Severity.WARNING)


# ─── Truthfulness ───────────────────────────────────────────────


_CLAIMS_TESTS_RE = re.compile(r"\b(add(ed|s)?|writ(e|es|ten)|cover(ed|s)?)\b.*\btests?\b", re.IGNORECASE)
_CLAIMS_DONE_RE = re.compile(r"\b(fix(es|ed)?|implement(s|ed)?|complete[sd]?|resolve[sd]?)\b", re.IGNORECASE)
_TEST_EVIDENCE_RE = re.compile(r"\bdef test_|\bassert\b|\bit\(|\bdescribe\(|\bexpect\(")
_PLACEHOLDER_RE = re.compile(r"raise NotImplementedError|^\s*pass\s*#\s*TODO|^\s*(#|//)\s*TODO\b|^\s*\.\.\.\s*$")

_TRUTHFULNESS_RULES: tuple[_Rule, ...] = (
    _rule(
        "test_suppressed", r"@pytest\.mark\.skip\b|\b(it|describe|test)\.skip\(|@unittest\.skip\b",
        "Test disabled instead of fixed",
        fix="Re-enable the test and fix the underlying failure",
        kinds=_CODE_KINDS,
    ),
    _rule(
        "vacuous_assertion", r"\bassert\s+True\b|\bexpect\(true\)\.toBe\(true\)",
        "Assertion that cannot fail",
        fix="Assert on the behaviour under test",
        kinds=_CODE_KINDS,
    ),
)


class TruthfulnessVector:
    """Does the delta actually do what the intent claims it does?"""

    vector_id = "truthfulness"

    async def analyze(self, step: TrajectoryStep) -> VectorResult:
        try:
            lines = added_lines(step)
            hits = _apply_rules(step, _TRUTHFULNESS_RULES, lines)
            added_text = "\n".join(text for _, text in lines)

            if step.delta_kind in _CODE_KINDS:
                path = step.file_path or ""
                if _CLAIMS_TESTS_RE.search(step.intent) and not (
                    _TEST_EVIDENCE_RE.search(added_text) or "test" in path.lower()
                ):
                    hits.append(self._hit(
                        "unsupported_claim",
                        "Intent claims tests but the change contains none",
                        None,
                    ))
                if _CLAIMS_DONE_RE.search(step.intent):
                    for lineno, text in lines:
                        if _PLACEHOLDER_RE.search(text):
                            hits.append(self._hit(
                                "placeholder_presented_as_done",
                                "Placeholder left in a change declared complete",
                                lineno,
                                fix="Implement the placeholder or narrow the declared intent",
                            ))

            return _build_result(self.vector_id, hits, clean_confidence=0.85)
        except Exception as exc:
            logger.warning("truthfulness_vector_error", error=str(exc))
            return VectorResult.fail_open(self.vector_id, f"error: {exc}")

    @staticmethod
    def _hit(
        kind: str,
        message: str,
        lineno: int | None,
        fix: str | None = None,
    ) -> tuple[_Rule, Violation]:
        rule = _rule(kind, r"$^", message, fix=fix, confidence=0.8)
        return rule, Violation(
            kind=kind,
            message=message,
            location=ViolationLocation(line=lineno) if lineno is not None else None,
            severity=Severity.WARNING,
        )


# ─── Extended Vectors ───────────────────────────────────────────


class RuleVector:
    """A vector that is nothing but a rule table. Used by the opt-in set."""

    def __init__(
        self,
        vector_id: str,
        rules: tuple[_Rule, ...],
        clean_confidence: float = 0.85,
    ) -> None:
        self.vector_id = vector_id
        self._rules = rules
        self._clean_confidence = clean_confidence

    async def analyze(self, step: TrajectoryStep) -> VectorResult:
        try:
            hits = _apply_rules(step, self._rules, added_lines(step))
            return _build_result(self.vector_id, hits, self._clean_confidence)
        except Exception as exc:
            logger.warning("rule_vector_error", vector_id=self.vector_id, error=str(exc))
            return VectorResult.fail_open(self.vector_id, f"error: {exc}")


COST_RULES: tuple[_Rule, ...] = (
    _rule(
        "oversized_generation", r"max_tokens\s*=\s*\d{5,}",
        "Very large generation budget per call",
        fix="Cap max_tokens to what the task needs",
        kinds=_CODE_KINDS,
    ),
    _rule(
        "unbounded_retry", r"while\s+True\s*:.*(retry|complete|generate)|retries\s*=\s*-1",
        "Retry loop with no bound",
        fix="Bound the retries and back off",
        kinds=_CODE_KINDS,
        flags=re.IGNORECASE,
    ),
)

PRIVACY_RULES: tuple[_Rule, ...] = (
    _rule(
        "personal_data_literal", r"\b\d{3}-\d{2}-\d{4}\b|[\w.+-]+@(?!example\.)[\w-]+\.[\w.]+",
        "Personal data literal in source",
        fix="Replace with synthetic data from a fixture",
    ),
    _rule(
        "sensitive_logging", r"\b(log|logger|logging|print)[\w.]*\(.*\b(password|ssn|token|secret)\b",
        "Sensitive value written to logs",
        fix="Redact the value before logging",
        flags=re.IGNORECASE,
        kinds=_CODE_KINDS,
    ),
)

ACCESSIBILITY_RULES: tuple[_Rule, ...] = (
    _rule(
        "image_without_alt", r"<img\b(?![^>]*\balt=)[^>]*>",
        "Image without alternative text",
        fix="Add a descriptive alt attribute",
        kinds=_CODE_KINDS,
    ),
    _rule(
        "clickable_non_control", r"<div\b(?![^>]*\brole=)[^>]*\bon[Cc]lick=",
        "Click handler on an element with no interactive role",
        severity=Severity.INFO,
        kinds=_CODE_KINDS,
    ),
)

REPRODUCIBILITY_RULES: tuple[_Rule, ...] = (
    _rule(
        "floating_image_tag", r"^\s*FROM\s+\S+:latest\b|^\s*FROM\s+[^:@\s]+\s*$",
        "Container base image not pinned",
        fix="Pin the base image by tag or digest",
        kinds=_CODE_KINDS,
        flags=re.IGNORECASE,
    ),
    _rule(
        "unseeded_randomness", r"\bnp\.random\.\w+\(|\brandom\.(random|randint|choice|shuffle)\(",
        "Randomness without an explicit seed",
        severity=Severity.INFO,
        kinds=_CODE_KINDS,
    ),
)

DOCUMENTATION_RULES: tuple[_Rule, ...] = (
    _rule(
        "broken_doc_link", r"\]\(\s*\)|TODO:\s*document",
        "Empty link or undocumented placeholder",
        severity=Severity.INFO,
        kinds=_CODE_KINDS,
    ),
)


# ─── Default Set ────────────────────────────────────────────────


def default_descriptors() -> list[VectorDescriptor]:
    """The shipped vector set: five core vectors, five opt-in."""
    return [
        VectorDescriptor("performance", "Performance", PerformanceVector(), 0.8),
        VectorDescriptor("security", "Security", SecurityVector(), 1.0),
        VectorDescriptor("dependencies", "Dependency Hygiene", DependencyVector(), 0.6),
        VectorDescriptor("coherence", "Semantic Coherence", CoherenceVector(), 0.7),
        VectorDescriptor("truthfulness", "Truthfulness", TruthfulnessVector(), 0.9),
        VectorDescriptor(
            "cost", "Cost / Tokens", RuleVector("cost", COST_RULES),
            0.4, default_enabled=False, extended=True,
        ),
        VectorDescriptor(
            "privacy", "Privacy", RuleVector("privacy", PRIVACY_RULES),
            0.8, default_enabled=False, extended=True,
        ),
        VectorDescriptor(
            "accessibility", "Accessibility", RuleVector("accessibility", ACCESSIBILITY_RULES),
            0.4, default_enabled=False, extended=True,
        ),
        VectorDescriptor(
            "reproducibility", "Reproducibility",
            RuleVector("reproducibility", REPRODUCIBILITY_RULES),
            0.5, default_enabled=False, extended=True,
        ),
        VectorDescriptor(
            "documentation", "Documentation",
            RuleVector("documentation", DOCUMENTATION_RULES),
            0.3, default_enabled=False, extended=True,
        ),
    ]


def register_default_vectors(registry: VectorRegistry) -> VectorRegistry:
    for descriptor in default_descriptors():
        registry.register(descriptor)
    return registry
