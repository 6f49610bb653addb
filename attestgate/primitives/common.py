"""
AttestGate — Common Primitives

Shared enums, base classes, and utilities used across the pipeline.
"""

from __future__ import annotations

import enum
import re
from datetime import datetime, timezone

from pydantic import BaseModel
from ulid import ULID

from attestgate.errors import ConfigurationError, ModeViolation


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


# ─── Hex helpers ──────────────────────────────────────────────────

_HEX_RE = re.compile(r"^0x[0-9a-fA-F]*$")
_BYTES32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def is_hex(value: str) -> bool:
    return bool(_HEX_RE.match(value))


def normalize_bytes32(value: str, field: str = "value") -> str:
    """Return a lowercase 0x-prefixed 32-byte hex string or raise ConfigurationError."""
    text = str(value).strip()
    if not text.startswith("0x"):
        text = "0x" + text
    if not _BYTES32_RE.match(text):
        raise ConfigurationError(f"{field} must be a 0x-prefixed 32-byte hex string, got {value!r}")
    return text.lower()


def same_hex(a: str | None, b: str | None) -> bool:
    """Case-insensitive comparison of two hex strings. None never matches."""
    if a is None or b is None:
        return False
    return a.strip().lower() == b.strip().lower()


# ─── Mode ─────────────────────────────────────────────────────────


class Mode(enum.StrEnum):
    SIMULATION = "simulation"   # Demo flow, no policy enforcement
    REAL = "real"               # Production, every policy enforced


_SIMULATION_VALUES = frozenset({"1", "true", "yes", "on", "simulation"})
_REAL_VALUES = frozenset({"0", "false", "no", "off", "real"})


def _parse_boolean_like(value: str | None) -> bool | None:
    if value is None:
        return None
    normalized = str(value).strip().lower()
    if normalized in _SIMULATION_VALUES:
        return True
    if normalized in _REAL_VALUES:
        return False
    return None


def resolve_mode(attestation_mode: str | None = None, use_simulation: str | None = None) -> Mode:
    """
    Resolve the execution mode from its two textual sources.

    A boolean-like ``use_simulation`` wins; otherwise ``attestation_mode``
    decides, and anything other than "simulation" means real.
    """
    simulation_flag = _parse_boolean_like(use_simulation)
    if simulation_flag is True:
        return Mode.SIMULATION
    if simulation_flag is False:
        return Mode.REAL
    mode = (attestation_mode or "real").strip().lower()
    return Mode.SIMULATION if mode == "simulation" else Mode.REAL


def require_real_mode(mode: Mode, context: str) -> None:
    if mode is not Mode.REAL:
        raise ModeViolation(f"{context} requires real attestation mode, got {mode.value!r}.")


# ─── Base Models ──────────────────────────────────────────────────


class AttestBaseModel(BaseModel):
    """Base model for all AttestGate primitives."""

    model_config = {"populate_by_name": True, "from_attributes": True}


class FrozenModel(AttestBaseModel):
    """Immutable primitive. Constructed once, never mutated."""

    model_config = {"populate_by_name": True, "from_attributes": True, "frozen": True}
