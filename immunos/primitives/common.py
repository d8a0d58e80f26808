"""
ImmunOS — Common Primitives

Shared base classes and utilities used across the immune core.
"""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone

from pydantic import BaseModel
from ulid import ULID


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def short_hash(raw: str, length: int = 16) -> str:
    """Stable truncated SHA-256 digest, used for fingerprints."""
    return hashlib.sha256(raw.encode()).hexdigest()[:length]


def normalise_message(message: str, limit: int = 200) -> str:
    """
    Strip the variable parts of a message (ids, hashes, numbers) so that
    the same class of problem normalises to the same text.
    """
    msg = message[:limit]
    msg = re.sub(r"\b[0-9a-f]{8,}\b", "<ID>", msg)
    msg = re.sub(r"\b\d+\.\d+\b", "<NUM>", msg)
    msg = re.sub(r"\b\d+\b", "<N>", msg)
    return msg


# ─── Base Models ──────────────────────────────────────────────────


class ImmunOSBaseModel(BaseModel):
    """Base model for all ImmunOS primitives."""

    model_config = {"populate_by_name": True, "from_attributes": True}
