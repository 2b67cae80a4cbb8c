"""SQLite persistence for instances, workflow caches, failures, and analyses."""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator

from flowwatch.control_plane.errors import ConflictError
from flowwatch.control_plane.models.records import (
    AnalysisResult,
    AnalysisStatus,
    ExecutionFailureRecord,
    Instance,
    InstanceStatus,
    SyncState,
    WorkflowRecord,
)
from flowwatch.shared.timeutil import parse_iso, to_iso, utc_now

_INSTANCE_COLUMNS = {
    "name",
    "endpoint",
    "credential_ciphertext",
    "status",
    "version",
    "consecutive_failures",
    "last_probed_at",
    "last_error",
}


class FlowwatchDB:
    """Small SQLite wrapper shared by the control-plane components.

    One connection is shared across threads behind a re-entrant lock;
    ``transaction()`` groups multi-row writes so readers never observe a
    half-applied delta.
    """

    def __init__(self, db_path: Path | str = ":memory:") -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._configure_connection()
        self._init_schema()

    def _configure_connection(self) -> None:
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.execute("PRAGMA temp_store=MEMORY")

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS instances (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                credential_ciphertext TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'PENDING',
                version TEXT,
                consecutive_failures INTEGER NOT NULL DEFAULT 0,
                last_probed_at TEXT,
                last_error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(owner_id, endpoint)
            );

            CREATE TABLE IF NOT EXISTS workflow_records (
                instance_id TEXT NOT NULL,
                remote_id TEXT NOT NULL,
                name TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 0,
                remote_updated_at TEXT,
                removed INTEGER NOT NULL DEFAULT 0,
                removed_at TEXT,
                synced_at TEXT,
                PRIMARY KEY(instance_id, remote_id),
                FOREIGN KEY(instance_id) REFERENCES instances(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS execution_failures (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                execution_id TEXT NOT NULL,
                workflow_id TEXT NOT NULL DEFAULT '',
                error_json TEXT NOT NULL DEFAULT '{}',
                started_at TEXT,
                detected_at TEXT NOT NULL,
                analysis_status TEXT NOT NULL DEFAULT 'UNANALYZED',
                last_error TEXT,
                UNIQUE(instance_id, execution_id),
                FOREIGN KEY(instance_id) REFERENCES instances(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS analysis_results (
                id TEXT PRIMARY KEY,
                failure_id TEXT NOT NULL,
                diagnosis TEXT NOT NULL,
                suggested_fix TEXT NOT NULL DEFAULT '',
                model TEXT NOT NULL DEFAULT '',
                generated_at TEXT NOT NULL,
                FOREIGN KEY(failure_id) REFERENCES execution_failures(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS sync_state (
                instance_id TEXT PRIMARY KEY,
                watermark TEXT,
                last_synced_at TEXT,
                last_error TEXT,
                FOREIGN KEY(instance_id) REFERENCES instances(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS audit_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                event_json TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_failures_status
                ON execution_failures(analysis_status);
            CREATE INDEX IF NOT EXISTS idx_results_failure
                ON analysis_results(failure_id, generated_at);
            """
        )
        self.conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize access and commit once at the outermost level."""

        with self._lock:
            self._depth += 1
            try:
                yield self.conn
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self.conn.rollback()
                raise
            self._depth -= 1
            if self._depth == 0:
                self.conn.commit()

    # Instances

    def insert_instance(self, instance: Instance) -> Instance:
        try:
            with self.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO instances (
                        id, owner_id, name, endpoint, credential_ciphertext, status, version,
                        consecutive_failures, last_probed_at, last_error, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        instance.id,
                        instance.owner_id,
                        instance.name,
                        instance.endpoint,
                        instance.credential_ciphertext,
                        instance.status.value,
                        instance.version,
                        instance.consecutive_failures,
                        to_iso(instance.last_probed_at),
                        instance.last_error,
                        to_iso(instance.created_at),
                        to_iso(instance.updated_at),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(
                "Instance with this URL already exists", reason_code="duplicate_endpoint"
            ) from exc
        return instance

    def get_instance(self, instance_id: str) -> Instance | None:
        with self._lock:
            row = self.conn.execute("SELECT * FROM instances WHERE id = ?", (instance_id,)).fetchone()
        return _instance_from_row(row) if row is not None else None

    def list_instances(
        self,
        owner_id: str | None = None,
        statuses: Iterable[InstanceStatus] | None = None,
    ) -> list[Instance]:
        clauses: list[str] = []
        args: list[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            args.append(owner_id)
        status_values = [status.value for status in statuses or []]
        if status_values:
            clauses.append(f"status IN ({', '.join('?' for _ in status_values)})")
            args.extend(status_values)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM instances {where} ORDER BY created_at ASC, id ASC", args
            ).fetchall()
        return [_instance_from_row(row) for row in rows]

    def update_instance(self, instance_id: str, **fields: Any) -> Instance | None:
        unknown = set(fields) - _INSTANCE_COLUMNS
        if unknown:
            raise ValueError(f"unknown_instance_columns:{','.join(sorted(unknown))}")
        updates = ["updated_at = ?"]
        args: list[Any] = [to_iso(utc_now())]
        for column, value in sorted(fields.items()):
            if isinstance(value, InstanceStatus):
                value = value.value
            elif isinstance(value, datetime):
                value = to_iso(value)
            updates.append(f"{column} = ?")
            args.append(value)
        args.append(instance_id)
        try:
            with self.transaction() as conn:
                conn.execute(f"UPDATE instances SET {', '.join(updates)} WHERE id = ?", args)
        except sqlite3.IntegrityError as exc:
            raise ConflictError(
                "Instance with this URL already exists", reason_code="duplicate_endpoint"
            ) from exc
        return self.get_instance(instance_id)

    def delete_instance(self, instance_id: str) -> bool:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM instances WHERE id = ?", (instance_id,))
        return int(cur.rowcount or 0) > 0

    # Workflow cache

    def list_workflow_records(
        self, instance_id: str, *, include_removed: bool = True
    ) -> list[WorkflowRecord]:
        query = "SELECT * FROM workflow_records WHERE instance_id = ?"
        if not include_removed:
            query += " AND removed = 0"
        with self._lock:
            rows = self.conn.execute(f"{query} ORDER BY name ASC, remote_id ASC", (instance_id,)).fetchall()
        return [_workflow_from_row(row) for row in rows]

    def apply_workflow_delta(
        self,
        instance_id: str,
        *,
        upserts: Iterable[WorkflowRecord],
        removed_ids: Iterable[str],
        removed_at: datetime,
    ) -> None:
        with self.transaction() as conn:
            for record in upserts:
                conn.execute(
                    """
                    INSERT INTO workflow_records (
                        instance_id, remote_id, name, active, remote_updated_at,
                        removed, removed_at, synced_at
                    )
                    VALUES (?, ?, ?, ?, ?, 0, NULL, ?)
                    ON CONFLICT(instance_id, remote_id) DO UPDATE SET
                      name=excluded.name,
                      active=excluded.active,
                      remote_updated_at=excluded.remote_updated_at,
                      removed=0,
                      removed_at=NULL,
                      synced_at=excluded.synced_at
                    """,
                    (
                        instance_id,
                        record.remote_id,
                        record.name,
                        int(record.active),
                        to_iso(record.remote_updated_at),
                        to_iso(record.synced_at),
                    ),
                )
            for remote_id in removed_ids:
                conn.execute(
                    """
                    UPDATE workflow_records SET removed = 1, removed_at = ?
                    WHERE instance_id = ? AND remote_id = ? AND removed = 0
                    """,
                    (to_iso(removed_at), instance_id, remote_id),
                )

    # Execution failures

    def existing_execution_ids(self, instance_id: str, execution_ids: Iterable[str]) -> set[str]:
        ids = list(execution_ids)
        if not ids:
            return set()
        placeholders = ", ".join("?" for _ in ids)
        with self._lock:
            rows = self.conn.execute(
                f"""
                SELECT execution_id FROM execution_failures
                WHERE instance_id = ? AND execution_id IN ({placeholders})
                """,
                [instance_id, *ids],
            ).fetchall()
        return {str(row["execution_id"]) for row in rows}

    def record_execution_pass(
        self,
        instance_id: str,
        *,
        failures: Iterable[ExecutionFailureRecord],
        watermark: datetime | None,
        synced_at: datetime,
    ) -> list[ExecutionFailureRecord]:
        """Insert new failures and advance the watermark in one transaction."""

        inserted: list[ExecutionFailureRecord] = []
        with self.transaction() as conn:
            for failure in failures:
                cur = conn.execute(
                    """
                    INSERT OR IGNORE INTO execution_failures (
                        id, instance_id, execution_id, workflow_id, error_json,
                        started_at, detected_at, analysis_status, last_error
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        failure.id,
                        instance_id,
                        failure.execution_id,
                        failure.workflow_id,
                        json.dumps(failure.error_payload, sort_keys=True),
                        to_iso(failure.started_at),
                        to_iso(failure.detected_at),
                        failure.analysis_status.value,
                        failure.last_error,
                    ),
                )
                if int(cur.rowcount or 0) > 0:
                    inserted.append(failure)
            current = self.get_sync_state(instance_id)
            next_watermark = watermark
            if current is not None and current.watermark is not None:
                if next_watermark is None or next_watermark < current.watermark:
                    next_watermark = current.watermark
            conn.execute(
                """
                INSERT INTO sync_state (instance_id, watermark, last_synced_at, last_error)
                VALUES (?, ?, ?, NULL)
                ON CONFLICT(instance_id) DO UPDATE SET
                  watermark=excluded.watermark,
                  last_synced_at=excluded.last_synced_at,
                  last_error=NULL
                """,
                (instance_id, to_iso(next_watermark), to_iso(synced_at)),
            )
        return inserted

    def get_failure(self, failure_id: str) -> ExecutionFailureRecord | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM execution_failures WHERE id = ?", (failure_id,)
            ).fetchone()
        return _failure_from_row(row) if row is not None else None

    def get_failure_owner(self, failure_id: str) -> str | None:
        with self._lock:
            row = self.conn.execute(
                """
                SELECT i.owner_id FROM execution_failures f
                JOIN instances i ON i.id = f.instance_id
                WHERE f.id = ?
                """,
                (failure_id,),
            ).fetchone()
        return str(row["owner_id"]) if row is not None else None

    def list_failures(
        self,
        *,
        instance_id: str | None = None,
        owner_id: str | None = None,
        statuses: Iterable[AnalysisStatus] | None = None,
        limit: int = 100,
    ) -> list[ExecutionFailureRecord]:
        clauses: list[str] = []
        args: list[Any] = []
        if instance_id is not None:
            clauses.append("f.instance_id = ?")
            args.append(instance_id)
        if owner_id is not None:
            clauses.append("i.owner_id = ?")
            args.append(owner_id)
        status_values = [status.value for status in statuses or []]
        if status_values:
            clauses.append(f"f.analysis_status IN ({', '.join('?' for _ in status_values)})")
            args.extend(status_values)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        args.append(max(1, int(limit)))
        with self._lock:
            rows = self.conn.execute(
                f"""
                SELECT f.* FROM execution_failures f
                JOIN instances i ON i.id = f.instance_id
                {where}
                ORDER BY f.detected_at ASC, f.id ASC
                LIMIT ?
                """,
                args,
            ).fetchall()
        return [_failure_from_row(row) for row in rows]

    def set_failure_status(
        self, failure_id: str, status: AnalysisStatus, last_error: str | None = None
    ) -> bool:
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE execution_failures SET analysis_status = ?, last_error = ? WHERE id = ?",
                (status.value, last_error, failure_id),
            )
        return int(cur.rowcount or 0) > 0

    # Analysis results

    def complete_analysis(self, result: AnalysisResult) -> bool:
        """Write the result and mark the failure ANALYZED atomically."""

        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE execution_failures SET analysis_status = ?, last_error = NULL WHERE id = ?",
                (AnalysisStatus.ANALYZED.value, result.failure_id),
            )
            if int(cur.rowcount or 0) == 0:
                return False
            conn.execute(
                """
                INSERT INTO analysis_results (id, failure_id, diagnosis, suggested_fix, model, generated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    result.id,
                    result.failure_id,
                    result.diagnosis,
                    result.suggested_fix,
                    result.model,
                    to_iso(result.generated_at),
                ),
            )
        return True

    def list_results(self, failure_id: str) -> list[AnalysisResult]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT * FROM analysis_results WHERE failure_id = ?
                ORDER BY generated_at ASC, rowid ASC
                """,
                (failure_id,),
            ).fetchall()
        return [_result_from_row(row) for row in rows]

    def latest_result(self, failure_id: str) -> AnalysisResult | None:
        results = self.list_results(failure_id)
        return results[-1] if results else None

    def list_analysis_history(self, owner_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT r.*, f.instance_id, f.execution_id, f.workflow_id, f.error_json
                FROM analysis_results r
                JOIN execution_failures f ON f.id = r.failure_id
                JOIN instances i ON i.id = f.instance_id
                WHERE i.owner_id = ?
                ORDER BY r.generated_at DESC, r.rowid DESC
                LIMIT ?
                """,
                (owner_id, max(1, int(limit))),
            ).fetchall()
        history: list[dict[str, Any]] = []
        for row in rows:
            entry = _result_from_row(row).as_dict()
            error_payload = json.loads(row["error_json"] or "{}")
            entry.update(
                {
                    "instance_id": str(row["instance_id"]),
                    "execution_id": str(row["execution_id"]),
                    "workflow_id": str(row["workflow_id"]),
                    "error_message": str(error_payload.get("error_message", "")),
                }
            )
            history.append(entry)
        return history

    # Sync state

    def get_sync_state(self, instance_id: str) -> SyncState | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM sync_state WHERE instance_id = ?", (instance_id,)
            ).fetchone()
        if row is None:
            return None
        return SyncState(
            instance_id=str(row["instance_id"]),
            watermark=parse_iso(row["watermark"]),
            last_synced_at=parse_iso(row["last_synced_at"]),
            last_error=row["last_error"],
        )

    def record_sync_error(self, instance_id: str, message: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO sync_state (instance_id, watermark, last_synced_at, last_error)
                VALUES (?, NULL, NULL, ?)
                ON CONFLICT(instance_id) DO UPDATE SET last_error=excluded.last_error
                """,
                (instance_id, message),
            )

    # Audit

    def append_audit_event(self, event_type: str, payload: dict[str, Any]) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO audit_events (event_type, event_json, created_at) VALUES (?, ?, ?)",
                (event_type, json.dumps(payload, sort_keys=True), to_iso(utc_now())),
            )

    def list_audit_events(self, event_type: str = "") -> list[dict[str, Any]]:
        query = "SELECT * FROM audit_events"
        args: tuple[Any, ...] = ()
        if event_type:
            query += " WHERE event_type = ?"
            args = (event_type,)
        with self._lock:
            rows = self.conn.execute(f"{query} ORDER BY id ASC", args).fetchall()
        return [
            {
                "id": int(row["id"]),
                "event_type": str(row["event_type"]),
                "payload": json.loads(row["event_json"]),
                "created_at": str(row["created_at"]),
            }
            for row in rows
        ]

    def close(self) -> None:
        with self._lock:
            self.conn.close()


def _instance_from_row(row: sqlite3.Row) -> Instance:
    return Instance(
        id=str(row["id"]),
        owner_id=str(row["owner_id"]),
        name=str(row["name"]),
        endpoint=str(row["endpoint"]),
        credential_ciphertext=str(row["credential_ciphertext"]),
        status=InstanceStatus(str(row["status"])),
        version=row["version"],
        consecutive_failures=int(row["consecutive_failures"] or 0),
        last_probed_at=parse_iso(row["last_probed_at"]),
        last_error=row["last_error"],
        created_at=parse_iso(row["created_at"]) or utc_now(),
        updated_at=parse_iso(row["updated_at"]) or utc_now(),
    )


def _workflow_from_row(row: sqlite3.Row) -> WorkflowRecord:
    return WorkflowRecord(
        instance_id=str(row["instance_id"]),
        remote_id=str(row["remote_id"]),
        name=str(row["name"]),
        active=bool(row["active"]),
        remote_updated_at=parse_iso(row["remote_updated_at"]),
        removed=bool(row["removed"]),
        removed_at=parse_iso(row["removed_at"]),
        synced_at=parse_iso(row["synced_at"]),
    )


def _failure_from_row(row: sqlite3.Row) -> ExecutionFailureRecord:
    return ExecutionFailureRecord(
        id=str(row["id"]),
        instance_id=str(row["instance_id"]),
        execution_id=str(row["execution_id"]),
        workflow_id=str(row["workflow_id"]),
        error_payload=json.loads(row["error_json"] or "{}"),
        started_at=parse_iso(row["started_at"]),
        detected_at=parse_iso(row["detected_at"]) or utc_now(),
        analysis_status=AnalysisStatus(str(row["analysis_status"])),
        last_error=row["last_error"],
    )


def _result_from_row(row: sqlite3.Row) -> AnalysisResult:
    return AnalysisResult(
        id=str(row["id"]),
        failure_id=str(row["failure_id"]),
        diagnosis=str(row["diagnosis"]),
        suggested_fix=str(row["suggested_fix"]),
        model=str(row["model"]),
        generated_at=parse_iso(row["generated_at"]) or utc_now(),
    )
