"""Reasoning-client interface and normalized request/response contracts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class AnalysisRequest:
    """One diagnosis attempt for a captured execution failure."""

    failure_id: str
    payload: dict[str, Any]
    attempt: int = 1


@dataclass(frozen=True)
class Diagnosis:
    diagnosis: str
    suggested_fix: str
    model: str
    raw_text: str = ""


class AnalysisClient(Protocol):
    """Adapter protocol for the task API and local rule-based implementations."""

    name: str

    def analyze(self, request: AnalysisRequest, *, timeout_s: float) -> Diagnosis:
        """Return a diagnosis or raise Transient/PermanentAnalysisError."""
