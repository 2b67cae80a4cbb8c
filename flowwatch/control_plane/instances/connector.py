"""Instance connector contracts, probe outcomes, and factory helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Protocol

from flowwatch.control_plane.models.snapshots import ExecutionSnapshot, WorkflowSnapshot
from flowwatch.shared.timeutil import utc_now


class ProbeStatus(str, Enum):
    HEALTHY = "HEALTHY"
    UNREACHABLE = "UNREACHABLE"
    AUTH_REJECTED = "AUTH_REJECTED"


@dataclass(frozen=True)
class ConnectionTarget:
    """Decrypted connection details for one instance; never persisted."""

    instance_id: str
    endpoint: str
    api_key: str = field(repr=False)


@dataclass(frozen=True)
class ProbeOutcome:
    status: ProbeStatus
    detail: str = ""
    version: str | None = None
    checked_at: datetime = field(default_factory=utc_now)

    @property
    def healthy(self) -> bool:
        return self.status is ProbeStatus.HEALTHY


class InstanceConnector(Protocol):
    """Capability contract implemented once per remote engine protocol."""

    protocol: str

    def probe(self, target: ConnectionTarget, *, timeout_s: float) -> ProbeOutcome: ...

    def list_workflows(
        self, target: ConnectionTarget, *, timeout_s: float
    ) -> list[WorkflowSnapshot]: ...

    def list_recent_executions(
        self,
        target: ConnectionTarget,
        since: datetime | None,
        *,
        timeout_s: float,
    ) -> list[ExecutionSnapshot]: ...

    def get_workflow(
        self, target: ConnectionTarget, remote_id: str, *, timeout_s: float
    ) -> dict[str, Any]: ...

    def update_workflow(
        self,
        target: ConnectionTarget,
        remote_id: str,
        workflow: dict[str, Any],
        *,
        timeout_s: float,
    ) -> dict[str, Any]: ...


def build_connector_from_env(
    env: Mapping[str, str] | None = None,
    *,
    page_limit: int = 100,
) -> InstanceConnector:
    env_map = os.environ if env is None else env
    connector_type = (env_map.get("FLOWWATCH_CONNECTOR") or "api").strip().lower()

    if connector_type == "in_memory":
        from flowwatch.control_plane.instances.connector_inmemory import InMemoryConnector

        return InMemoryConnector()

    from flowwatch.control_plane.instances.connector_api import N8nApiConnector

    return N8nApiConnector(page_limit=page_limit)


__all__ = [
    "ConnectionTarget",
    "InstanceConnector",
    "ProbeOutcome",
    "ProbeStatus",
    "build_connector_from_env",
]
