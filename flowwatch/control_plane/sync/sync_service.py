"""Workflow cache reconciliation and failed-execution capture per instance."""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Protocol

from loguru import logger

from flowwatch.control_plane.db.db import FlowwatchDB
from flowwatch.control_plane.errors import ConnectorError, CredentialError, FlowwatchError, SyncError
from flowwatch.control_plane.events.broadcaster import EventBroadcaster, EventKind
from flowwatch.control_plane.instances.connector import ConnectionTarget, InstanceConnector
from flowwatch.control_plane.models.records import (
    AnalysisStatus,
    ExecutionFailureRecord,
    Instance,
    InstanceStatus,
    WorkflowRecord,
)
from flowwatch.control_plane.models.snapshots import ExecutionSnapshot, WorkflowSnapshot
from flowwatch.shared.timeutil import to_iso, utc_now


class FailureSink(Protocol):
    def enqueue(self, failure_id: str) -> Any: ...


@dataclass
class SyncDelta:
    instance_id: str
    added: list[WorkflowRecord] = field(default_factory=list)
    updated: list[WorkflowRecord] = field(default_factory=list)
    removed: list[WorkflowRecord] = field(default_factory=list)
    new_failures: list[ExecutionFailureRecord] = field(default_factory=list)
    enqueued: dict[str, str] = field(default_factory=dict)
    watermark: datetime | None = None
    error: SyncError | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.updated or self.removed or self.new_failures)

    def as_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "added": [record.remote_id for record in self.added],
            "updated": [record.remote_id for record in self.updated],
            "removed": [record.remote_id for record in self.removed],
            "new_failures": [failure.id for failure in self.new_failures],
            "enqueued": dict(self.enqueued),
            "watermark": to_iso(self.watermark),
            "error": self.error.as_dict() if self.error is not None else None,
        }


class WorkflowSyncEngine:
    def __init__(
        self,
        *,
        db: FlowwatchDB,
        connector: InstanceConnector,
        resolve_target: Callable[[Instance], ConnectionTarget],
        queue: FailureSink | None = None,
        broadcaster: EventBroadcaster | None = None,
        sync_timeout_s: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.connector = connector
        self.resolve_target = resolve_target
        self.queue = queue
        self.broadcaster = broadcaster
        self.sync_timeout_s = float(sync_timeout_s)
        self.clock = clock
        self._locks_guard = threading.Lock()
        self._instance_locks: dict[str, threading.Lock] = {}

    def sync(self, instance: Instance) -> SyncDelta:
        if instance.status is not InstanceStatus.CONNECTED:
            raise SyncError(
                f"Instance is {instance.status.value}, not CONNECTED",
                stage="precondition",
                reason_code="instance_not_connected",
            )
        lock = self._lock_for(instance.id)
        if not lock.acquire(blocking=False):
            raise SyncError("Sync already running for instance", stage="busy", reason_code="sync_in_progress")
        try:
            return self._sync_locked(instance)
        finally:
            lock.release()

    def list_workflows(self, instance_id: str, include_removed: bool = False) -> list[WorkflowRecord]:
        return self.db.list_workflow_records(instance_id, include_removed=include_removed)

    def list_failures(
        self,
        *,
        instance_id: str | None = None,
        owner_id: str | None = None,
        status: AnalysisStatus | None = None,
        limit: int = 100,
    ) -> list[ExecutionFailureRecord]:
        return self.db.list_failures(
            instance_id=instance_id,
            owner_id=owner_id,
            statuses=[status] if status is not None else None,
            limit=limit,
        )

    def forget_instance(self, instance_id: str) -> None:
        """Drop per-instance state once the instance is removed."""

        with self._locks_guard:
            self._instance_locks.pop(instance_id, None)

    def _lock_for(self, instance_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._instance_locks.setdefault(instance_id, threading.Lock())

    def _sync_locked(self, instance: Instance) -> SyncDelta:
        log = logger.bind(instance_id=instance.id)
        try:
            target = self.resolve_target(instance)
        except CredentialError as exc:
            raise self._fail(instance, SyncError(str(exc), stage="credentials", cause=exc)) from exc

        try:
            workflows = self.connector.list_workflows(target, timeout_s=self.sync_timeout_s)
        except ConnectorError as exc:
            raise self._fail(
                instance, SyncError(f"Workflow fetch failed: {exc}", stage="workflows", cause=exc)
            ) from exc

        now = self.clock()
        delta = SyncDelta(instance_id=instance.id)
        snapshots = {snapshot.remote_id: snapshot for snapshot in workflows}
        self._reconcile_workflows(instance, snapshots, delta, now)

        state = self.db.get_sync_state(instance.id)
        since = state.watermark if state is not None else None
        delta.watermark = since
        try:
            executions = self.connector.list_recent_executions(
                target, since, timeout_s=self.sync_timeout_s
            )
        except ConnectorError as exc:
            delta.error = SyncError(f"Execution fetch failed: {exc}", stage="executions", cause=exc)
            self.db.record_sync_error(instance.id, str(delta.error))
            log.warning("Execution fetch failed; workflow delta kept", reason=exc.reason_code)
        else:
            self._capture_failures(instance, snapshots, executions, since, delta, now)
            self._enqueue_new_failures(delta)

        self.db.append_audit_event(
            "sync_completed",
            {
                "instance_id": instance.id,
                "added": len(delta.added),
                "updated": len(delta.updated),
                "removed": len(delta.removed),
                "new_failures": len(delta.new_failures),
                "error": delta.error.reason_code if delta.error is not None else None,
            },
        )
        if not delta.is_empty or delta.error is not None:
            log.info(
                "Sync delta",
                added=len(delta.added),
                updated=len(delta.updated),
                removed=len(delta.removed),
                new_failures=len(delta.new_failures),
            )
            if self.broadcaster is not None:
                self.broadcaster.publish(instance.owner_id, EventKind.WORKFLOW_DELTA, delta.as_dict())
        return delta

    def _reconcile_workflows(
        self,
        instance: Instance,
        snapshots: dict[str, WorkflowSnapshot],
        delta: SyncDelta,
        now: datetime,
    ) -> None:
        cached = {record.remote_id: record for record in self.db.list_workflow_records(instance.id)}
        upserts: list[WorkflowRecord] = []
        for remote_id, snapshot in snapshots.items():
            record = WorkflowRecord(
                instance_id=instance.id,
                remote_id=remote_id,
                name=snapshot.name,
                active=snapshot.active,
                remote_updated_at=snapshot.updated_at,
                synced_at=now,
            )
            existing = cached.get(remote_id)
            if existing is None:
                delta.added.append(record)
                upserts.append(record)
            elif (
                existing.removed
                or existing.name != record.name
                or existing.active != record.active
                or existing.remote_updated_at != record.remote_updated_at
            ):
                delta.updated.append(record)
                upserts.append(record)
        removed_ids = [
            remote_id
            for remote_id, record in cached.items()
            if not record.removed and remote_id not in snapshots
        ]
        for remote_id in removed_ids:
            previous = cached[remote_id]
            delta.removed.append(
                WorkflowRecord(
                    instance_id=instance.id,
                    remote_id=remote_id,
                    name=previous.name,
                    active=previous.active,
                    remote_updated_at=previous.remote_updated_at,
                    removed=True,
                    removed_at=now,
                    synced_at=previous.synced_at,
                )
            )
        if upserts or removed_ids:
            self.db.apply_workflow_delta(
                instance.id, upserts=upserts, removed_ids=removed_ids, removed_at=now
            )

    def _capture_failures(
        self,
        instance: Instance,
        workflows: dict[str, WorkflowSnapshot],
        executions: list[ExecutionSnapshot],
        since: datetime | None,
        delta: SyncDelta,
        now: datetime,
    ) -> None:
        considered = {
            execution.execution_id: execution
            for execution in executions
            if since is None or execution.started_at >= since
        }
        failed = [execution for execution in considered.values() if execution.is_failure]
        known = self.db.existing_execution_ids(instance.id, [execution.execution_id for execution in failed])
        records = [
            ExecutionFailureRecord(
                id=uuid.uuid4().hex,
                instance_id=instance.id,
                execution_id=execution.execution_id,
                workflow_id=execution.workflow_id,
                error_payload=_failure_payload(instance, execution, workflows.get(execution.workflow_id)),
                started_at=execution.started_at,
                detected_at=now,
            )
            for execution in sorted(failed, key=lambda row: (row.started_at, row.execution_id))
            if execution.execution_id not in known
        ]
        watermark = _next_watermark(list(considered.values()), since)
        delta.new_failures = self.db.record_execution_pass(
            instance.id, failures=records, watermark=watermark, synced_at=now
        )
        delta.watermark = watermark

    def _enqueue_new_failures(self, delta: SyncDelta) -> None:
        if self.queue is None:
            return
        for failure in delta.new_failures:
            try:
                decision = self.queue.enqueue(failure.id)
            except FlowwatchError as exc:
                logger.warning("Enqueue failed", failure_id=failure.id, reason=exc.reason_code)
                delta.enqueued[failure.id] = exc.reason_code
                continue
            delta.enqueued[failure.id] = str(getattr(decision, "reason_code", decision))

    def _fail(self, instance: Instance, error: SyncError) -> SyncError:
        self.db.record_sync_error(instance.id, str(error))
        logger.warning("Sync failed", instance_id=instance.id, stage=error.stage, reason=error.reason_code)
        if self.broadcaster is not None:
            self.broadcaster.publish(
                instance.owner_id,
                EventKind.WORKFLOW_DELTA,
                SyncDelta(instance_id=instance.id, error=error).as_dict(),
            )
        return error


def _next_watermark(executions: list[ExecutionSnapshot], since: datetime | None) -> datetime | None:
    """Latest settled start time, held back behind any still-running execution."""

    settled = [
        execution.started_at
        for execution in executions
        if execution.finished or execution.stopped_at is not None or execution.is_failure
    ]
    running = [
        execution.started_at
        for execution in executions
        if not (execution.finished or execution.stopped_at is not None or execution.is_failure)
    ]
    candidate = max(settled) if settled else since
    if running and candidate is not None:
        candidate = min(candidate, min(running))
    if since is not None and (candidate is None or candidate < since):
        return since
    return candidate


def _failure_payload(
    instance: Instance,
    execution: ExecutionSnapshot,
    workflow: WorkflowSnapshot | None,
) -> dict[str, Any]:
    node_name = execution.error_node
    node = (workflow.find_node(node_name) if workflow is not None and node_name else None) or {}
    parameters = node.get("parameters")
    return {
        "instance_name": instance.name,
        "endpoint": instance.endpoint,
        "workflow_id": execution.workflow_id,
        "workflow_name": workflow.name if workflow is not None else "",
        "execution_id": execution.execution_id,
        "status": execution.status or "error",
        "mode": execution.mode,
        "error_message": execution.error_message,
        "error_stack": execution.error_stack,
        "node_name": node_name,
        "node_type": str(node.get("type", "")),
        "node_parameters": dict(parameters) if isinstance(parameters, dict) else {},
        "started_at": to_iso(execution.started_at),
        "stopped_at": to_iso(execution.stopped_at),
    }
