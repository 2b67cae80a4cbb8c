"""Periodic probe-then-sync driver with skip-on-overlap ticks."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger

from flowwatch.control_plane.analysis.queue import AnalysisQueue
from flowwatch.control_plane.errors import ConnectorError, FlowwatchError, SyncError
from flowwatch.control_plane.instances.registry import InstanceRegistry
from flowwatch.control_plane.models.records import Instance, InstanceStatus
from flowwatch.control_plane.sync.sync_service import SyncDelta, WorkflowSyncEngine
from flowwatch.shared.timeutil import to_iso, utc_now


@dataclass
class TickReport:
    started_at: datetime
    finished_at: datetime | None = None
    probed: dict[str, str] = field(default_factory=dict)
    synced: dict[str, SyncDelta] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "probed": dict(self.probed),
            "synced": {instance_id: delta.as_dict() for instance_id, delta in self.synced.items()},
            "errors": dict(self.errors),
        }


class Scheduler:
    def __init__(
        self,
        *,
        registry: InstanceRegistry,
        sync_engine: WorkflowSyncEngine,
        queue: AnalysisQueue | None = None,
        interval_s: float = 60.0,
        probe_concurrency: int = 4,
    ) -> None:
        self.registry = registry
        self.sync_engine = sync_engine
        self.queue = queue
        self.interval_s = max(0.01, float(interval_s))
        self.probe_concurrency = max(1, int(probe_concurrency))
        self.skipped_ticks = 0
        self.completed_ticks = 0
        self._tick_lock = threading.Lock()
        self._counter_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._driver: threading.Thread | None = None
        self._tick_threads: list[threading.Thread] = []

    def tick(self) -> TickReport | None:
        if not self._tick_lock.acquire(blocking=False):
            with self._counter_lock:
                self.skipped_ticks += 1
                skipped = self.skipped_ticks
            logger.warning("Previous tick still running; skipping", skipped_ticks=skipped)
            return None
        try:
            return self._run_tick()
        finally:
            self._tick_lock.release()

    def start(self) -> None:
        if self._driver is not None and self._driver.is_alive():
            return
        if self.queue is not None:
            self.queue.start()
        self._stop_event.clear()
        self._driver = threading.Thread(target=self._drive, name="flowwatch-scheduler", daemon=True)
        self._driver.start()
        logger.info("Scheduler started", interval_s=self.interval_s)

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._driver is not None:
            self._driver.join(timeout)
            self._driver = None
        for thread in self._tick_threads:
            thread.join(timeout)
        self._tick_threads = []
        if self.queue is not None:
            self.queue.stop(timeout)
        logger.info(
            "Scheduler stopped",
            completed_ticks=self.completed_ticks,
            skipped_ticks=self.skipped_ticks,
        )

    @property
    def running(self) -> bool:
        return self._driver is not None and self._driver.is_alive()

    def _drive(self) -> None:
        while not self._stop_event.is_set():
            # Each tick runs on its own thread so a slow tick makes the next one skip.
            thread = threading.Thread(target=self.tick, name="flowwatch-tick", daemon=True)
            thread.start()
            self._tick_threads = [t for t in self._tick_threads if t.is_alive()] + [thread]
            self._stop_event.wait(self.interval_s)

    def _run_tick(self) -> TickReport:
        report = TickReport(started_at=utc_now())
        try:
            probed = list(self.registry.probe_all(self.probe_concurrency))
        except FlowwatchError as exc:
            logger.exception("Probe pass failed")
            report.errors["*"] = f"probe: {exc}"
            probed = []
        for instance, outcome in probed:
            report.probed[instance.id] = outcome.status.value
            if instance.status is not InstanceStatus.CONNECTED:
                continue
            self._sync_one(instance, report)
        report.finished_at = utc_now()
        with self._counter_lock:
            self.completed_ticks += 1
        logger.info(
            "Tick finished",
            probed=len(report.probed),
            synced=len(report.synced),
            errors=len(report.errors),
        )
        return report

    def _sync_one(self, instance: Instance, report: TickReport) -> None:
        try:
            delta = self.sync_engine.sync(instance)
        except SyncError as exc:
            report.errors[instance.id] = f"{exc.stage}: {exc}"
            if isinstance(exc.cause, ConnectorError):
                self.registry.report_connector_error(instance.id, exc.cause)
            return
        except Exception as exc:
            logger.exception("Sync raised unexpectedly", instance_id=instance.id)
            report.errors[instance.id] = f"unexpected: {exc}"
            return
        report.synced[instance.id] = delta
        if delta.error is not None:
            report.errors[instance.id] = f"{delta.error.stage}: {delta.error}"
            if isinstance(delta.error.cause, ConnectorError):
                self.registry.report_connector_error(instance.id, delta.error.cause)
