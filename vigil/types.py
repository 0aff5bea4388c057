"""Core types shared across all vigil subsystems."""

from __future__ import annotations

import uuid
from enum import Enum


def new_id() -> str:
    return uuid.uuid4().hex[:12]


# ── Severity ──────────────────────────────────────────────────────────────────


class Severity(str, Enum):
    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"
