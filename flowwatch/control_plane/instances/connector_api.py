"""n8n public REST API (v1) connector implementation."""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Callable, Iterator

import requests
from loguru import logger
from pydantic import ValidationError as PayloadValidationError

from flowwatch.control_plane.errors import AuthRejected, ConnectorError, Malformed, Unreachable
from flowwatch.control_plane.instances.connector import (
    ConnectionTarget,
    ProbeOutcome,
    ProbeStatus,
)
from flowwatch.control_plane.models.snapshots import ExecutionSnapshot, WorkflowSnapshot

# Fields the v1 API accepts on PUT /workflows/{id}; anything else is rejected as read-only.
_WRITABLE_WORKFLOW_FIELDS = ("name", "nodes", "connections", "settings", "staticData")


class N8nApiConnector:
    protocol = "n8n/v1"

    def __init__(
        self,
        session: requests.Session | None = None,
        page_limit: int = 100,
        max_pages: int = 20,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session or requests.Session()
        self.page_limit = max(1, int(page_limit))
        self.max_pages = max(1, int(max_pages))
        self.monotonic = monotonic

    def probe(self, target: ConnectionTarget, *, timeout_s: float) -> ProbeOutcome:
        deadline = self._deadline(timeout_s)
        try:
            self._request(target, "GET", "/workflows", params={"limit": "1"}, deadline=deadline)
        except AuthRejected as exc:
            return ProbeOutcome(status=ProbeStatus.AUTH_REJECTED, detail=str(exc))
        except ConnectorError as exc:
            return ProbeOutcome(status=ProbeStatus.UNREACHABLE, detail=str(exc))
        return ProbeOutcome(status=ProbeStatus.HEALTHY, version=self._fetch_version(target, deadline))

    def list_workflows(
        self, target: ConnectionTarget, *, timeout_s: float
    ) -> list[WorkflowSnapshot]:
        snapshots: list[WorkflowSnapshot] = []
        for page in self._iter_pages(target, "/workflows", {}, deadline=self._deadline(timeout_s)):
            snapshots.extend(_parse_rows(page, WorkflowSnapshot))
        return snapshots

    def list_recent_executions(
        self,
        target: ConnectionTarget,
        since: datetime | None,
        *,
        timeout_s: float,
    ) -> list[ExecutionSnapshot]:
        params = {"includeData": "true", "limit": str(self.page_limit)}
        executions: list[ExecutionSnapshot] = []
        pages = self._iter_pages(target, "/executions", params, deadline=self._deadline(timeout_s))
        for page in pages:
            parsed = _parse_rows(page, ExecutionSnapshot)
            executions.extend(parsed)
            # Executions come back newest first; stop paging once past the watermark.
            if since is not None and parsed and min(row.started_at for row in parsed) < since:
                break
        if since is None:
            return executions
        return [row for row in executions if row.started_at >= since]

    def get_workflow(
        self, target: ConnectionTarget, remote_id: str, *, timeout_s: float
    ) -> dict[str, Any]:
        payload = self._request(target, "GET", f"/workflows/{remote_id}", deadline=self._deadline(timeout_s))
        return _workflow_document(payload)

    def update_workflow(
        self,
        target: ConnectionTarget,
        remote_id: str,
        workflow: dict[str, Any],
        *,
        timeout_s: float,
    ) -> dict[str, Any]:
        body = {key: workflow[key] for key in _WRITABLE_WORKFLOW_FIELDS if key in workflow}
        payload = self._request(
            target,
            "PUT",
            f"/workflows/{remote_id}",
            deadline=self._deadline(timeout_s),
            json_body=body,
        )
        return _workflow_document(payload)

    def _deadline(self, timeout_s: float) -> float:
        return self.monotonic() + max(0.0, float(timeout_s))

    def _fetch_version(self, target: ConnectionTarget, deadline: float) -> str | None:
        try:
            payload = self._request(target, "GET", "/", deadline=deadline)
        except ConnectorError as exc:
            logger.debug("Version lookup unavailable", instance_id=target.instance_id, reason=exc.reason_code)
            return None
        if isinstance(payload, dict) and payload.get("version"):
            return str(payload["version"])
        return None

    def _iter_pages(
        self,
        target: ConnectionTarget,
        path: str,
        params: dict[str, str],
        *,
        deadline: float,
    ) -> Iterator[list[Any]]:
        cursor = ""
        for _ in range(self.max_pages):
            page_params = dict(params)
            if cursor:
                page_params["cursor"] = cursor
            payload = self._request(target, "GET", path, params=page_params, deadline=deadline)
            if isinstance(payload, list):
                yield payload
                return
            if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
                raise Malformed(f"Unexpected payload shape for {path}", reason_code="unexpected_shape")
            yield payload["data"]
            cursor = str(payload.get("nextCursor") or "")
            if not cursor:
                return
        logger.warning("Page cap reached", instance_id=target.instance_id, path=path, max_pages=self.max_pages)

    def _request(
        self,
        target: ConnectionTarget,
        method: str,
        path: str,
        *,
        deadline: float,
        params: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        remaining = deadline - self.monotonic()
        if remaining <= 0:
            raise Unreachable("Connection timed out", reason_code="timeout")
        headers = {"X-N8N-API-KEY": target.api_key, "Accept": "application/json"}
        try:
            response = self.session.request(
                method=method,
                url=f"{target.endpoint}/api/v1{path}",
                headers=headers,
                params=params,
                json=json_body,
                timeout=remaining,
            )
        except requests.Timeout as exc:
            raise Unreachable("Connection timed out", reason_code="timeout") from exc
        except requests.ConnectionError as exc:
            raise Unreachable("Connection refused - check URL", reason_code="connection_failed") from exc
        except requests.RequestException as exc:
            raise Unreachable(f"Request failed: {exc}", reason_code="request_failed") from exc

        status = int(response.status_code)
        if status == 401:
            raise AuthRejected("Invalid API key", reason_code="http_401")
        if status == 403:
            raise AuthRejected("API access forbidden", reason_code="http_403")
        if status == 429 or status >= 500:
            raise Unreachable(f"Remote returned HTTP {status}", reason_code=f"http_{status}")
        if status >= 400:
            raise Malformed(f"Remote returned HTTP {status}", reason_code=f"http_{status}")
        try:
            return response.json()
        except ValueError as exc:
            raise Malformed("Remote returned a non-JSON body", reason_code="invalid_json") from exc


def _workflow_document(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict) or not isinstance(payload.get("nodes"), list):
        raise Malformed("Workflow body has no node list", reason_code="unexpected_shape")
    return payload


def _parse_rows(rows: list[Any], model: type[Any]) -> list[Any]:
    parsed = []
    for row in rows:
        if not isinstance(row, dict):
            raise Malformed("List entry is not an object", reason_code="unexpected_shape")
        try:
            parsed.append(model.model_validate(row))
        except PayloadValidationError as exc:
            raise Malformed(
                f"Invalid {model.__name__}: {exc.error_count()} validation error(s)",
                reason_code="invalid_payload",
            ) from exc
    return parsed
