"""Persisted entities owned by the registry, sync engine, and analysis queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from flowwatch.shared.timeutil import to_iso


class InstanceStatus(str, Enum):
    PENDING = "PENDING"
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    ERROR = "ERROR"


class AnalysisStatus(str, Enum):
    UNANALYZED = "UNANALYZED"
    QUEUED = "QUEUED"
    ANALYZING = "ANALYZING"
    ANALYZED = "ANALYZED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Instance:
    id: str
    owner_id: str
    name: str
    endpoint: str
    credential_ciphertext: str = field(repr=False)
    status: InstanceStatus
    version: str | None
    consecutive_failures: int
    last_probed_at: datetime | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime

    def public_dict(self) -> dict[str, Any]:
        """Serializable view without the credential."""

        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "endpoint": self.endpoint,
            "status": self.status.value,
            "version": self.version,
            "consecutive_failures": self.consecutive_failures,
            "last_probed_at": to_iso(self.last_probed_at),
            "last_error": self.last_error,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }


@dataclass(frozen=True)
class WorkflowRecord:
    instance_id: str
    remote_id: str
    name: str
    active: bool
    remote_updated_at: datetime | None
    removed: bool = False
    removed_at: datetime | None = None
    synced_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "remote_id": self.remote_id,
            "name": self.name,
            "active": self.active,
            "remote_updated_at": to_iso(self.remote_updated_at),
            "removed": self.removed,
            "removed_at": to_iso(self.removed_at),
            "synced_at": to_iso(self.synced_at),
        }


@dataclass(frozen=True)
class ExecutionFailureRecord:
    id: str
    instance_id: str
    execution_id: str
    workflow_id: str
    error_payload: dict[str, Any]
    started_at: datetime | None
    detected_at: datetime
    analysis_status: AnalysisStatus = AnalysisStatus.UNANALYZED
    last_error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "error_payload": self.error_payload,
            "started_at": to_iso(self.started_at),
            "detected_at": to_iso(self.detected_at),
            "analysis_status": self.analysis_status.value,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class AnalysisResult:
    id: str
    failure_id: str
    diagnosis: str
    suggested_fix: str
    model: str
    generated_at: datetime

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "failure_id": self.failure_id,
            "diagnosis": self.diagnosis,
            "suggested_fix": self.suggested_fix,
            "model": self.model,
            "generated_at": to_iso(self.generated_at),
        }


@dataclass(frozen=True)
class SyncState:
    instance_id: str
    watermark: datetime | None
    last_synced_at: datetime | None
    last_error: str | None
