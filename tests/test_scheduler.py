from __future__ import annotations

import threading
import time

import pytest

from flowwatch.control_plane.analysis.providers.local import LocalAnalysisClient
from flowwatch.control_plane.analysis.queue import AnalysisQueue
from flowwatch.control_plane.errors import AuthRejected
from flowwatch.control_plane.instances.connector import ProbeStatus
from flowwatch.control_plane.instances.connector_inmemory import InMemoryConnector
from flowwatch.control_plane.instances.registry import InstanceRegistry
from flowwatch.control_plane.models.records import AnalysisStatus, InstanceStatus
from flowwatch.control_plane.orchestration.scheduler import Scheduler
from flowwatch.control_plane.sync.sync_service import WorkflowSyncEngine


def _failed_execution(execution_id: str) -> dict:
    return {
        "id": execution_id,
        "workflowId": "1",
        "status": "error",
        "startedAt": "2026-03-01T11:00:00Z",
        "stoppedAt": "2026-03-01T11:00:01Z",
        "data": {"resultData": {"error": {"message": "getaddrinfo ENOTFOUND api.example.com"}}},
    }


@pytest.fixture
def queue(db) -> AnalysisQueue:
    return AnalysisQueue(db=db, client=LocalAnalysisClient(), workers=1, base_delay_s=0.01)


@pytest.fixture
def scheduler(db, connector, registry: InstanceRegistry, queue: AnalysisQueue, broadcaster) -> Scheduler:
    engine = WorkflowSyncEngine(
        db=db,
        connector=connector,
        resolve_target=registry.target_for,
        queue=queue,
        broadcaster=broadcaster,
    )
    return Scheduler(registry=registry, sync_engine=engine, queue=queue, interval_s=0.05, probe_concurrency=2)


def test_tick_probes_then_syncs_connected_instances(
    scheduler: Scheduler, registry: InstanceRegistry, connector: InMemoryConnector, queue: AnalysisQueue
) -> None:
    healthy = registry.register("owner-1", "https://a.example.com", "k")
    down = registry.register("owner-1", "https://b.example.com", "k")
    connector.put_workflow(healthy.endpoint, {"id": "1", "name": "Orders"})
    connector.put_execution(healthy.endpoint, _failed_execution("100"))
    connector.probe_status[down.endpoint] = ProbeStatus.UNREACHABLE

    report = scheduler.tick()

    assert report is not None
    assert report.probed == {healthy.id: "HEALTHY", down.id: "UNREACHABLE"}
    assert list(report.synced) == [healthy.id]
    assert len(report.synced[healthy.id].new_failures) == 1
    assert report.errors == {}
    assert queue.pending_count() == 1
    assert scheduler.completed_ticks == 1


def test_one_instance_failing_sync_does_not_abort_the_tick(
    scheduler: Scheduler, registry: InstanceRegistry, connector: InMemoryConnector
) -> None:
    first = registry.register("owner-1", "https://a.example.com", "k")
    second = registry.register("owner-1", "https://b.example.com", "k")
    connector.put_workflow(second.endpoint, {"id": "9", "name": "Leads"})
    connector.fail_next(first.endpoint, "list_workflows", AuthRejected("Invalid API key"))

    report = scheduler.tick()

    assert report.errors[first.id].startswith("workflows")
    assert [record.remote_id for record in report.synced[second.id].added] == ["9"]
    assert registry.get("owner-1", first.id).status is InstanceStatus.ERROR
    assert registry.get("owner-1", second.id).status is InstanceStatus.CONNECTED


def test_overlapping_tick_is_skipped(scheduler: Scheduler) -> None:
    scheduler._tick_lock.acquire()
    try:
        assert scheduler.tick() is None
    finally:
        scheduler._tick_lock.release()
    assert scheduler.skipped_ticks == 1
    assert scheduler.tick() is not None


def test_slow_tick_causes_driver_to_skip(db, cipher) -> None:
    slow = InMemoryConnector(latency_s=0.3)
    slow_registry = InstanceRegistry(db=db, connector=slow, cipher=cipher)
    slow_registry.register("owner-1", "https://slow.example.com", "k")
    engine = WorkflowSyncEngine(db=db, connector=slow, resolve_target=slow_registry.target_for)
    scheduler = Scheduler(registry=slow_registry, sync_engine=engine, interval_s=0.05)

    scheduler.start()
    time.sleep(0.35)
    scheduler.stop(timeout=5.0)

    assert scheduler.skipped_ticks >= 1
    assert scheduler.completed_ticks >= 1
    assert not scheduler.running


def test_start_runs_ticks_and_analysis_until_stopped(
    scheduler: Scheduler, registry: InstanceRegistry, connector: InMemoryConnector, db
) -> None:
    instance = registry.register("owner-1", "https://a.example.com", "k")
    connector.put_workflow(instance.endpoint, {"id": "1", "name": "Orders"})
    connector.put_execution(instance.endpoint, _failed_execution("100"))
    finished = threading.Event()

    scheduler.start()
    try:
        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline:
            rows = db.list_failures(instance_id=instance.id, statuses=[AnalysisStatus.ANALYZED])
            if rows:
                finished.set()
                break
            time.sleep(0.02)
    finally:
        scheduler.stop(timeout=5.0)

    assert finished.is_set()
    [failure] = db.list_failures(instance_id=instance.id)
    assert "could not be reached" in db.latest_result(failure.id).diagnosis
    assert not scheduler.running


def test_tick_counters_add_up_under_concurrent_ticks(scheduler: Scheduler) -> None:
    start = threading.Barrier(8)

    def hammer() -> None:
        start.wait()
        for _ in range(25):
            scheduler.tick()

    threads = [threading.Thread(target=hammer) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert scheduler.completed_ticks + scheduler.skipped_ticks == 200
    assert scheduler.completed_ticks >= 1
