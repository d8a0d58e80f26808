"""
ImmunOS — Health Vector Registry

The registry maps vector identifiers to their descriptors.

A health vector is a capability, not a base class: anything with an
``async analyze(step) -> VectorResult`` method can be registered. No vector
may depend on another vector's internals.

Registration is a single-writer setup operation. Every write swaps in a
fresh mapping (copy-on-write), so an invocation that took a snapshot keeps
a consistent view while a vector is hot-reloaded underneath it. Reads on
the hot path take no lock.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import structlog

from immunos.systems.immunity.errors import VectorNotFoundError

if TYPE_CHECKING:
    from immunos.config import DoctrineConfig
    from immunos.systems.immunity.types import TrajectoryStep, VectorResult

logger = structlog.get_logger()


@runtime_checkable
class HealthVector(Protocol):
    """The single capability every vector analyzer implements."""

    async def analyze(self, step: TrajectoryStep) -> VectorResult:
        """
        Evaluate one step.

        May perform I/O. Must honour the coordinator's timeout and should
        return ``VectorResult.fail_open(...)`` on internal tool failure
        rather than raise.
        """
        ...


@dataclass(frozen=True)
class VectorDescriptor:
    """Registration record for one health vector."""

    vector_id: str
    display_name: str
    analyzer: HealthVector
    default_weight: float = 1.0
    default_enabled: bool = True
    # Opt-in vectors (cost, privacy, ...) are structurally identical to core ones
    extended: bool = False
    description: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        if not self.vector_id:
            raise ValueError("VectorDescriptor needs a non-empty vector_id")
        if not 0.0 <= self.default_weight <= 1.0:
            raise ValueError(
                f"default_weight for {self.vector_id!r} must be in [0, 1], "
                f"got {self.default_weight}"
            )
        if not isinstance(self.analyzer, HealthVector):
            raise TypeError(
                f"Analyzer for {self.vector_id!r} does not implement analyze(step)"
            )


class VectorRegistry:
    """
    Registry of health vectors, resolved per doctrine.

    Insertion order is the canonical vector order: reports list results in
    that order, which keeps aggregation deterministic.
    """

    def __init__(self) -> None:
        self._vectors: Mapping[str, VectorDescriptor] = MappingProxyType({})
        self._write_lock = threading.Lock()
        self._logger = logger.bind(system="immunity", component="vector_registry")

    def register(self, descriptor: VectorDescriptor) -> None:
        """
        Add or replace a vector by identifier.

        Re-registering a known identifier overwrites its descriptor in
        place (same position), which hot-reloads a single vector.
        """
        with self._write_lock:
            updated = dict(self._vectors)
            replaced = descriptor.vector_id in updated
            updated[descriptor.vector_id] = descriptor
            self._vectors = MappingProxyType(updated)

        self._logger.debug(
            "vector_replaced" if replaced else "vector_registered",
            vector_id=descriptor.vector_id,
            default_weight=descriptor.default_weight,
            default_enabled=descriptor.default_enabled,
        )

    def unregister(self, vector_id: str) -> VectorDescriptor:
        """Remove a vector. Raises VectorNotFoundError if unknown."""
        with self._write_lock:
            updated = dict(self._vectors)
            if vector_id not in updated:
                raise VectorNotFoundError(f"No vector registered as {vector_id!r}")
            removed = updated.pop(vector_id)
            self._vectors = MappingProxyType(updated)

        self._logger.info("vector_unregistered", vector_id=vector_id)
        return removed

    def snapshot(self) -> Mapping[str, VectorDescriptor]:
        """Current read-only mapping. Later registrations do not affect it."""
        return self._vectors

    def get(self, vector_id: str) -> VectorDescriptor:
        descriptor = self._vectors.get(vector_id)
        if descriptor is None:
            raise VectorNotFoundError(
                f"No vector registered as {vector_id!r}. "
                f"Available: {list(self._vectors)}"
            )
        return descriptor

    def resolve_enabled(
        self,
        config: DoctrineConfig,
        vectors: Mapping[str, VectorDescriptor] | None = None,
    ) -> tuple[VectorDescriptor, ...]:
        """
        Vectors effectively enabled under a doctrine, in registration order.

        An explicit ``enabled`` override wins; otherwise the descriptor's
        own default applies. Overrides naming unknown vectors are ignored.
        """
        source = self._vectors if vectors is None else vectors
        return tuple(
            d for d in source.values()
            if config.is_enabled(d.vector_id, d.default_enabled)
        )

    def effective_weight(
        self,
        vector_id: str,
        config: DoctrineConfig,
        vectors: Mapping[str, VectorDescriptor] | None = None,
    ) -> float:
        """Override weight if the doctrine names one, else the default."""
        source = self._vectors if vectors is None else vectors
        descriptor = source.get(vector_id)
        if descriptor is None:
            raise VectorNotFoundError(f"No vector registered as {vector_id!r}")
        return config.weight_for(vector_id, descriptor.default_weight)

    def ids(self) -> list[str]:
        return list(self._vectors)

    def __contains__(self, vector_id: object) -> bool:
        return vector_id in self._vectors

    def __len__(self) -> int:
        return len(self._vectors)

    def __repr__(self) -> str:
        return f"<VectorRegistry vectors={self.ids()}>"
