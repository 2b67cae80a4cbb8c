"""Control-plane composition root shared by the CLI and embedding services."""

from __future__ import annotations

from pathlib import Path

from flowwatch.control_plane.analysis.fixer import FixApplier
from flowwatch.control_plane.analysis.providers import AnalysisClient, build_analysis_client_from_env
from flowwatch.control_plane.analysis.queue import AnalysisQueue
from flowwatch.control_plane.db.db import FlowwatchDB
from flowwatch.control_plane.events.broadcaster import EventBroadcaster
from flowwatch.control_plane.instances.connector import InstanceConnector, build_connector_from_env
from flowwatch.control_plane.instances.registry import InstanceRegistry
from flowwatch.control_plane.orchestration.scheduler import Scheduler
from flowwatch.control_plane.sync.sync_service import WorkflowSyncEngine
from flowwatch.shared.secrets import CredentialCipher
from flowwatch.shared.settings import FlowwatchSettings


class ControlPlane:
    """Wires the registry, sync engine, analysis queue, fixer, broadcaster and scheduler."""

    def __init__(
        self,
        settings: FlowwatchSettings,
        *,
        db_path: str | Path | None = None,
        connector: InstanceConnector | None = None,
        analysis_client: AnalysisClient | None = None,
    ) -> None:
        self.settings = settings
        self.db = FlowwatchDB(db_path if db_path is not None else settings.sqlite_path)
        self.broadcaster = EventBroadcaster()
        self.connector = connector or build_connector_from_env(
            settings.as_env(), page_limit=settings.execution_page_limit
        )
        self.analysis_client = analysis_client or build_analysis_client_from_env(settings.as_env())
        self.registry = InstanceRegistry(
            db=self.db,
            connector=self.connector,
            cipher=CredentialCipher(settings.credentials_key),
            broadcaster=self.broadcaster,
            unreachable_threshold=settings.unreachable_threshold,
            probe_concurrency=settings.probe_concurrency,
            probe_timeout_s=settings.probe_timeout_s,
        )
        self.queue = AnalysisQueue(
            db=self.db,
            client=self.analysis_client,
            broadcaster=self.broadcaster,
            workers=settings.analysis_workers,
            max_attempts=settings.analysis_max_attempts,
            base_delay_s=settings.analysis_base_delay_s,
            max_delay_s=settings.analysis_max_delay_s,
            attempt_timeout_s=settings.analysis_timeout_s,
        )
        self.sync_engine = WorkflowSyncEngine(
            db=self.db,
            connector=self.connector,
            resolve_target=self.registry.target_for,
            queue=self.queue,
            broadcaster=self.broadcaster,
            sync_timeout_s=settings.sync_timeout_s,
        )
        self.registry.add_removal_listener(self.sync_engine.forget_instance)
        self.fixer = FixApplier(
            db=self.db,
            connector=self.connector,
            resolve_target=self.registry.target_for,
            timeout_s=settings.sync_timeout_s,
        )
        self.scheduler = Scheduler(
            registry=self.registry,
            sync_engine=self.sync_engine,
            queue=self.queue,
            interval_s=settings.tick_interval_s,
            probe_concurrency=settings.probe_concurrency,
        )

    def close(self) -> None:
        if self.scheduler.running:
            self.scheduler.stop()
        self.db.close()
