"""
ImmunOS — Immunity Error Hierarchy

All exceptions raised within the scan-and-verdict pipeline.

Propagation guide:
  ValidationError   ABORTS    -- malformed step or doctrine, rejected before analysis
  RegistryError     ABORTS    -- unknown or orphaned vector id; internal defect
  VectorFailure     CONTAINED -- one analyzer crashed or timed out; becomes fail-open
  SynthesisFailure  CONTAINED -- patch generation or verification failed; Unrepairable
  StoreFailure      CONTAINED -- pattern store lookup/submit failed; logged only
"""

from __future__ import annotations


class ImmunityError(RuntimeError):
    """Base for all immune pipeline errors."""


class ValidationError(ImmunityError):
    """Input rejected before analysis begins. Surfaced to the caller."""


class StepValidationError(ValidationError):
    """A TrajectoryStep is malformed (blank identifier, malformed delta, ...)."""


class DoctrineValidationError(ValidationError):
    """A DoctrineConfig or configuration file is malformed."""


class RegistryError(ImmunityError):
    """
    A vector identifier does not resolve against the registry.

    Treated as an internal defect: fatal to the current invocation only.
    """


class VectorNotFoundError(RegistryError, KeyError):
    """Queried for an identifier that was never registered."""

    def __str__(self) -> str:
        return RuntimeError.__str__(self)


class OrphanResultError(RegistryError):
    """A VectorResult names a vector the registry does not know, or the wrong one."""


class VectorFailure(ImmunityError):
    """
    A single analyzer crashed or timed out.

    Never escapes the coordinator: recorded in the report diagnostics as a
    fail-open result.
    """


class SynthesisFailure(ImmunityError):
    """
    Patch synthesis or its verification failed.

    Never escapes the dispatcher: the step is reported as Unrepairable.
    """


class StoreFailure(ImmunityError):
    """A pattern store call failed. Logged and swallowed."""
