"""
ImmunOS — Configuration System

All configuration is Pydantic-validated and loaded from:
1. a YAML file (defaults)
2. Environment variables (overrides)

Project doctrines (per-project vector weights, enablement and the
confidence threshold) are loaded once per project scope and are read-only
while a step is being processed. Reloading is always an explicit call.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, Field, field_serializer, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ─── Sub-configs ──────────────────────────────────────────────────


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


class ImmunityConfig(BaseModel):
    # Per-vector analysis budget (seconds)
    vector_timeout_s: float = Field(0.04, gt=0.0)
    # Whole fan-out deadline; stragglers are cancelled and fail open
    step_deadline_s: float = Field(0.05, gt=0.0)
    # Patch synthesis budget, distinct from the analysis budget
    repair_timeout_s: float = Field(5.0, gt=0.0)
    # Per pattern-store call
    store_timeout_s: float = Field(1.0, gt=0.0)
    # Recall runs on the response path; a slower store is treated as a miss
    recall_timeout_s: float = Field(0.01, gt=0.0)
    # Learning
    similarity_threshold: float = Field(0.9, ge=0.0, le=1.0)
    promotion_threshold: int = Field(3, ge=1)
    tombstone_skip_after: int = Field(3, ge=1)
    max_pending_learning: int = Field(256, ge=1)
    # Repair governor
    max_concurrent_repairs: int = Field(2, ge=1)


class DoctrineConfig(BaseModel):
    """
    Per-project override set.

    Weights of enabled vectors need not sum to 1; the aggregate score is
    normalised by the sum of the enabled weights.
    """

    model_config = {"frozen": True}

    weights: Mapping[str, float] = Field(default_factory=dict, validate_default=True)
    enabled: Mapping[str, bool] = Field(default_factory=dict, validate_default=True)
    confidence_threshold: float = Field(0.7, ge=0.0, le=1.0)

    @field_validator("weights")
    @classmethod
    def _weights_in_range(cls, value: Mapping[str, float]) -> Mapping[str, float]:
        for vector_id, weight in value.items():
            if not 0.0 <= weight <= 1.0:
                raise ValueError(f"weight for {vector_id!r} must be in [0, 1], got {weight}")
        return value

    @field_validator("weights", "enabled", mode="after")
    @classmethod
    def _read_only(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        # Overrides are swapped, never edited in place
        return MappingProxyType(dict(value))

    @field_serializer("weights", "enabled")
    def _dump_overrides(self, value: Mapping[str, Any]) -> dict[str, Any]:
        return dict(value)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> DoctrineConfig:
        """Build a doctrine from untrusted data, raising DoctrineValidationError."""
        from immunos.systems.immunity.errors import DoctrineValidationError

        try:
            return cls.model_validate(dict(raw or {}))
        except pydantic.ValidationError as exc:
            raise DoctrineValidationError(f"Malformed doctrine: {exc}") from exc

    def weight_for(self, vector_id: str, default: float) -> float:
        return self.weights.get(vector_id, default)

    def is_enabled(self, vector_id: str, default: bool) -> bool:
        return self.enabled.get(vector_id, default)


# ─── Root Config ──────────────────────────────────────────────────


class ImmunOSConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="IMMUNOS_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    instance_id: str = "immunos-default"

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    immunity: ImmunityConfig = Field(default_factory=ImmunityConfig)
    doctrine: DoctrineConfig = Field(default_factory=DoctrineConfig)
    # Project scope → doctrine
    doctrines: dict[str, DoctrineConfig] = Field(default_factory=dict)

    def doctrine_for(self, project: str | None) -> DoctrineConfig:
        """Return the doctrine for a project scope, or the default doctrine."""
        if project is None:
            return self.doctrine
        return self.doctrines.get(project, self.doctrine)


def _read_yaml(path: Path) -> dict[str, Any]:
    from immunos.systems.immunity.errors import DoctrineValidationError

    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise DoctrineValidationError(f"Expected a mapping at the top of {path}")
    return raw


def load_config(config_path: str | Path | None = None) -> ImmunOSConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            raw = _read_yaml(path)

    if log_level := os.environ.get("IMMUNOS_LOG_LEVEL"):
        raw.setdefault("logging", {})["level"] = log_level
    if log_format := os.environ.get("IMMUNOS_LOG_FORMAT"):
        raw.setdefault("logging", {})["format"] = log_format
    if threshold := os.environ.get("IMMUNOS_CONFIDENCE_THRESHOLD"):
        raw.setdefault("doctrine", {})["confidence_threshold"] = threshold
    if vector_timeout := os.environ.get("IMMUNOS_VECTOR_TIMEOUT_S"):
        raw.setdefault("immunity", {})["vector_timeout_s"] = vector_timeout
    if step_deadline := os.environ.get("IMMUNOS_STEP_DEADLINE_S"):
        raw.setdefault("immunity", {})["step_deadline_s"] = step_deadline
    if repair_timeout := os.environ.get("IMMUNOS_REPAIR_TIMEOUT_S"):
        raw.setdefault("immunity", {})["repair_timeout_s"] = repair_timeout

    from immunos.systems.immunity.errors import DoctrineValidationError

    try:
        return ImmunOSConfig(**raw)
    except pydantic.ValidationError as exc:
        raise DoctrineValidationError(f"Malformed configuration: {exc}") from exc


def load_doctrine(doctrine_path: str | Path) -> DoctrineConfig:
    """Load a single project doctrine from YAML."""
    path = Path(doctrine_path)
    if not path.exists():
        raise FileNotFoundError(f"Doctrine not found: {path}")

    return DoctrineConfig.from_mapping(_read_yaml(path))
