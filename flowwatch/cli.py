"""flowwatch CLI: operate the instance monitoring and diagnosis pipeline."""

from __future__ import annotations

import json
import time
from contextlib import contextmanager
from typing import Any, Iterator

import typer

from flowwatch.control_plane.app import ControlPlane
from flowwatch.control_plane.errors import FlowwatchError
from flowwatch.control_plane.models.records import AnalysisStatus
from flowwatch.shared.logging import configure_logging
from flowwatch.shared.secrets import redact
from flowwatch.shared.settings import get_settings

app = typer.Typer(add_completion=False, help="flowwatch: workflow instance monitor and failure analyst")

OWNER_OPTION = typer.Option("local", "--owner", help="Owning user id.")


def _emit(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


@contextmanager
def _control_plane() -> Iterator[ControlPlane]:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    try:
        plane = ControlPlane(settings)
    except FlowwatchError as exc:
        _emit({"error": str(exc), "reason_code": exc.reason_code})
        raise typer.Exit(code=1) from exc
    try:
        yield plane
    except FlowwatchError as exc:
        _emit({"error": str(exc), "reason_code": exc.reason_code})
        raise typer.Exit(code=1) from exc
    finally:
        plane.close()


def _drain_ready_jobs(plane: ControlPlane) -> int:
    processed = 0
    while plane.queue.process_next() is not None:
        processed += 1
    return processed


@app.command()
def status() -> None:
    """Print configuration and instance counts."""
    with _control_plane() as plane:
        instances = plane.registry.list_instances()
        counts: dict[str, int] = {}
        for instance in instances:
            counts[instance.status.value] = counts.get(instance.status.value, 0) + 1
        settings = plane.settings
        _emit(
            {
                "data_dir": str(settings.data_dir),
                "sqlite_path": str(settings.sqlite_path),
                "connector": plane.connector.protocol,
                "ai_provider": plane.analysis_client.name,
                "ai_api_key": redact(settings.ai_api_key),
                "tick_interval_s": settings.tick_interval_s,
                "instances": counts,
            }
        )


@app.command()
def register(
    endpoint: str,
    api_key: str = typer.Option(..., "--api-key", help="Instance API key."),
    name: str = typer.Option("", "--name"),
    owner: str = OWNER_OPTION,
    probe: bool = typer.Option(True, "--probe/--no-probe", help="Probe right after registering."),
) -> None:
    """Register a remote instance and optionally probe it."""
    with _control_plane() as plane:
        instance = plane.registry.register(owner, endpoint, api_key, name=name)
        if probe:
            instance, _ = plane.registry.reconnect(owner, instance.id)
        _emit(instance.public_dict())


@app.command()
def instances(owner: str = OWNER_OPTION) -> None:
    """List registered instances."""
    with _control_plane() as plane:
        _emit([instance.public_dict() for instance in plane.registry.list_instances(owner)])


@app.command()
def reconnect(instance_id: str, owner: str = OWNER_OPTION) -> None:
    """Reset an instance to PENDING and probe it immediately."""
    with _control_plane() as plane:
        instance, outcome = plane.registry.reconnect(owner, instance_id)
        _emit({"instance": instance.public_dict(), "probe": outcome.status.value, "detail": outcome.detail})


@app.command()
def remove(instance_id: str, owner: str = OWNER_OPTION) -> None:
    """Delete an instance with its cached workflows, failures and analyses."""
    with _control_plane() as plane:
        plane.registry.delete(owner, instance_id)
        _emit({"removed": instance_id})


@app.command()
def probe(concurrency: int = typer.Option(0, "--concurrency", help="0 uses the configured limit.")) -> None:
    """Probe every non-ERROR instance once."""
    with _control_plane() as plane:
        rows = [
            {
                "instance_id": instance.id,
                "outcome": outcome.status.value,
                "status": instance.status.value,
                "detail": outcome.detail,
            }
            for instance, outcome in plane.registry.probe_all(concurrency or None)
        ]
        _emit(rows)


@app.command()
def sync(
    analyze: bool = typer.Option(True, "--analyze/--no-analyze", help="Run ready analysis jobs inline."),
) -> None:
    """Run one probe-and-sync tick."""
    with _control_plane() as plane:
        report = plane.scheduler.tick()
        payload: dict[str, Any] = report.as_dict() if report is not None else {"skipped": True}
        if analyze:
            payload["analyzed"] = _drain_ready_jobs(plane)
        _emit(payload)


@app.command()
def failures(
    owner: str = OWNER_OPTION,
    instance_id: str = typer.Option("", "--instance"),
    status: str = typer.Option("", "--status", help="UNANALYZED, QUEUED, ANALYZING, ANALYZED or FAILED."),
    limit: int = typer.Option(50, "--limit"),
) -> None:
    """List captured execution failures."""
    try:
        wanted = AnalysisStatus(status.strip().upper()) if status.strip() else None
    except ValueError as exc:
        raise typer.BadParameter(f"Unknown status: {status}") from exc
    with _control_plane() as plane:
        rows = plane.sync_engine.list_failures(
            instance_id=instance_id or None, owner_id=owner, status=wanted, limit=limit
        )
        _emit([row.as_dict() for row in rows])


@app.command()
def analyses(owner: str = OWNER_OPTION, limit: int = typer.Option(20, "--limit")) -> None:
    """Show the most recent analysis results."""
    with _control_plane() as plane:
        _emit(plane.db.list_analysis_history(owner, limit=limit))


@app.command()
def reanalyze(failure_id: str, owner: str = OWNER_OPTION) -> None:
    """Queue a fresh analysis for a failure and run it inline."""
    with _control_plane() as plane:
        decision = plane.queue.reanalyze(owner, failure_id)
        processed = _drain_ready_jobs(plane)
        latest = plane.db.latest_result(failure_id)
        _emit(
            {
                "accepted": decision.accepted,
                "reason_code": decision.reason_code,
                "processed": processed,
                "result": latest.as_dict() if latest is not None else None,
            }
        )


@app.command("apply-fix")
def apply_fix(
    failure_id: str,
    fix_type: str = typer.Option(..., "--type", help="parameter_change, header_add, auth_update, url_fix or body_fix."),
    value: str = typer.Option(..., "--value", help="JSON value to write."),
    path: str = typer.Option("", "--path", help="Dotted parameter path; empty replaces all parameters."),
    node_id: str = typer.Option("", "--node", help="Node id; defaults to the node that failed."),
    owner: str = OWNER_OPTION,
) -> None:
    """Write a suggested fix into the failed node of the remote workflow."""
    try:
        parsed = json.loads(value)
    except ValueError as exc:
        raise typer.BadParameter(f"--value is not valid JSON: {exc}") from exc
    with _control_plane() as plane:
        outcome = plane.fixer.apply_fix(owner, failure_id, node_id, {"type": fix_type, "path": path, "value": parsed})
        _emit(outcome.as_dict())


@app.command()
def run(
    duration_s: float = typer.Option(0.0, "--duration", help="Stop after N seconds; 0 runs until interrupted."),
) -> None:
    """Run the scheduler and analysis workers in the foreground."""
    with _control_plane() as plane:
        plane.scheduler.start()
        deadline = time.monotonic() + duration_s if duration_s > 0 else None
        try:
            while deadline is None or time.monotonic() < deadline:
                time.sleep(0.2)
        except KeyboardInterrupt:
            typer.echo("Stopping...")
        finally:
            plane.scheduler.stop(timeout=plane.settings.analysis_timeout_s)
        _emit(
            {
                "completed_ticks": plane.scheduler.completed_ticks,
                "skipped_ticks": plane.scheduler.skipped_ticks,
            }
        )


if __name__ == "__main__":
    app()
