"""In-memory instance connector for deterministic tests and dry runs."""

from __future__ import annotations

import copy
import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

from flowwatch.control_plane.errors import ConnectorError, Malformed
from flowwatch.control_plane.instances.connector import (
    ConnectionTarget,
    ProbeOutcome,
    ProbeStatus,
)
from flowwatch.control_plane.models.snapshots import ExecutionSnapshot, WorkflowSnapshot


class InMemoryConnector:
    """Serves workflows and executions keyed by endpoint, with scripted failures."""

    protocol = "in_memory"

    def __init__(self, latency_s: float = 0.0, version: str = "1.0.0-memory") -> None:
        self.latency_s = max(0.0, float(latency_s))
        self.version = version
        self.workflows: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self.executions: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self.probe_status: dict[str, ProbeStatus] = {}
        self._scripted_probes: dict[str, deque[ProbeStatus]] = defaultdict(deque)
        self._scripted_errors: dict[tuple[str, str], deque[ConnectorError]] = defaultdict(deque)
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()
        self._in_flight = 0
        self.max_in_flight = 0

    def put_workflow(self, endpoint: str, workflow: dict[str, Any]) -> None:
        self.workflows[endpoint][str(workflow["id"])] = dict(workflow)

    def remove_workflow(self, endpoint: str, remote_id: str) -> None:
        self.workflows[endpoint].pop(str(remote_id), None)

    def put_execution(self, endpoint: str, execution: dict[str, Any]) -> None:
        self.executions[endpoint][str(execution["id"])] = dict(execution)

    def script_probes(self, endpoint: str, *statuses: ProbeStatus) -> None:
        self._scripted_probes[endpoint].extend(statuses)

    def fail_next(self, endpoint: str, operation: str, error: ConnectorError) -> None:
        """Queue an error for the next call of ``operation`` against ``endpoint``."""

        self._scripted_errors[(endpoint, operation)].append(error)

    def probe(self, target: ConnectionTarget, *, timeout_s: float) -> ProbeOutcome:
        with self._tracked(target, "probe"):
            scripted = self._scripted_probes.get(target.endpoint)
            if scripted:
                status = scripted.popleft()
            else:
                status = self.probe_status.get(target.endpoint, ProbeStatus.HEALTHY)
            if status is ProbeStatus.HEALTHY:
                return ProbeOutcome(status=status, version=self.version)
            detail = "Invalid API key" if status is ProbeStatus.AUTH_REJECTED else "Connection refused"
            return ProbeOutcome(status=status, detail=detail)

    def list_workflows(
        self, target: ConnectionTarget, *, timeout_s: float
    ) -> list[WorkflowSnapshot]:
        with self._tracked(target, "list_workflows"):
            self._raise_scripted(target, "list_workflows")
            rows = self.workflows.get(target.endpoint, {})
            return [WorkflowSnapshot.model_validate(row) for row in rows.values()]

    def list_recent_executions(
        self,
        target: ConnectionTarget,
        since: datetime | None,
        *,
        timeout_s: float,
    ) -> list[ExecutionSnapshot]:
        with self._tracked(target, "list_recent_executions"):
            self._raise_scripted(target, "list_recent_executions")
            rows = [
                ExecutionSnapshot.model_validate(row)
                for row in self.executions.get(target.endpoint, {}).values()
            ]
            if since is not None:
                rows = [row for row in rows if row.started_at >= since]
            rows.sort(key=lambda row: row.started_at, reverse=True)
            return rows

    def get_workflow(
        self, target: ConnectionTarget, remote_id: str, *, timeout_s: float
    ) -> dict[str, Any]:
        with self._tracked(target, "get_workflow"):
            self._raise_scripted(target, "get_workflow")
            document = self.workflows.get(target.endpoint, {}).get(str(remote_id))
            if document is None:
                raise Malformed(f"Workflow {remote_id} not found", reason_code="http_404")
            return copy.deepcopy(document)

    def update_workflow(
        self,
        target: ConnectionTarget,
        remote_id: str,
        workflow: dict[str, Any],
        *,
        timeout_s: float,
    ) -> dict[str, Any]:
        with self._tracked(target, "update_workflow"):
            self._raise_scripted(target, "update_workflow")
            current = self.workflows.get(target.endpoint, {}).get(str(remote_id))
            if current is None:
                raise Malformed(f"Workflow {remote_id} not found", reason_code="http_404")
            current.update(copy.deepcopy(workflow))
            current["id"] = str(remote_id)
            return copy.deepcopy(current)

    def _raise_scripted(self, target: ConnectionTarget, operation: str) -> None:
        queued = self._scripted_errors.get((target.endpoint, operation))
        if queued:
            raise queued.popleft()

    @contextmanager
    def _tracked(self, target: ConnectionTarget, operation: str) -> Iterator[None]:
        with self._lock:
            self.calls.append((target.endpoint, operation))
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self.latency_s:
                time.sleep(self.latency_s)
            yield
        finally:
            with self._lock:
                self._in_flight -= 1
