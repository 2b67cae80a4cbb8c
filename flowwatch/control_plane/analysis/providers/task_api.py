"""Task-based HTTP reasoning service client (create a task, poll until done)."""

from __future__ import annotations

import json
import time
from typing import Any, Callable

import requests
from loguru import logger

from flowwatch.control_plane.analysis.prompts import build_diagnosis_prompt, extract_json_block
from flowwatch.control_plane.analysis.providers.base import AnalysisRequest, Diagnosis
from flowwatch.control_plane.errors import PermanentAnalysisError, TransientAnalysisError


class TaskApiAnalysisClient:
    name = "task_api"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        profile: str = "manus-1.6",
        session: requests.Session | None = None,
        poll_interval_s: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.profile = profile
        self.session = session or requests.Session()
        self.poll_interval_s = max(0.0, float(poll_interval_s))
        self.sleep = sleep
        self.monotonic = monotonic

    def analyze(self, request: AnalysisRequest, *, timeout_s: float) -> Diagnosis:
        if not self.api_key:
            raise PermanentAnalysisError("AI service not configured", reason_code="not_configured")
        if not isinstance(request.payload, dict) or not request.payload.get("error_message"):
            raise PermanentAnalysisError("Failure payload has no error message", reason_code="malformed_payload")
        deadline = self.monotonic() + float(timeout_s)
        task = self._request(
            "POST",
            "/tasks",
            deadline=deadline,
            body={"prompt": build_diagnosis_prompt(request.payload), "agentProfile": self.profile},
        )
        task_id = str(task.get("id") or "").strip()
        if not task_id:
            raise TransientAnalysisError("Task creation returned no id", reason_code="invalid_response")
        logger.debug("Reasoning task created", failure_id=request.failure_id, task_id=task_id)

        while True:
            status = str(task.get("status", "")).lower()
            if status == "completed":
                return self._parse_result(task)
            if status == "failed":
                raise TransientAnalysisError(
                    str(task.get("error") or "Reasoning task failed"), reason_code="task_failed"
                )
            if self.monotonic() + self.poll_interval_s >= deadline:
                raise TransientAnalysisError("Reasoning task timed out", reason_code="deadline_exceeded")
            self.sleep(self.poll_interval_s)
            task = self._request("GET", f"/tasks/{task_id}", deadline=deadline)

    def _parse_result(self, task: dict[str, Any]) -> Diagnosis:
        text = str(task.get("result") or "").strip()
        if not text:
            raise TransientAnalysisError("Task completed without result", reason_code="empty_result")
        parsed = extract_json_block(text) or {}
        diagnosis = str(parsed.get("analysis") or "").strip() or text
        suggested_fix = str(parsed.get("explanation") or "").strip()
        fix = parsed.get("fix")
        if isinstance(fix, dict) and fix:
            changes = json.dumps(fix, indent=2, sort_keys=True)
            suggested_fix = f"{suggested_fix}\n\nProposed changes:\n{changes}".strip()
        return Diagnosis(
            diagnosis=diagnosis,
            suggested_fix=suggested_fix,
            model=f"{self.name}:{self.profile}",
            raw_text=text,
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        deadline: float,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        remaining = deadline - self.monotonic()
        if remaining <= 0:
            raise TransientAnalysisError("Reasoning task timed out", reason_code="deadline_exceeded")
        try:
            response = self.session.request(
                method=method,
                url=f"{self.base_url}{path}",
                headers={"API_KEY": self.api_key, "Content-Type": "application/json"},
                json=body,
                timeout=remaining,
            )
        except requests.Timeout as exc:
            raise TransientAnalysisError("Reasoning service timed out", reason_code="timeout") from exc
        except requests.RequestException as exc:
            raise TransientAnalysisError(
                f"Reasoning service unreachable: {exc}", reason_code="connection_failed"
            ) from exc

        status = int(response.status_code)
        if status in {401, 403}:
            raise PermanentAnalysisError("Reasoning service rejected the API key", reason_code=f"http_{status}")
        if status == 402:
            raise PermanentAnalysisError("Reasoning service quota exhausted", reason_code="quota_exhausted")
        if status == 429:
            raise TransientAnalysisError(
                "Reasoning service rate limited",
                reason_code="http_429",
                retry_after_s=_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 500:
            raise TransientAnalysisError(f"Reasoning service returned HTTP {status}", reason_code=f"http_{status}")
        if status >= 400:
            raise PermanentAnalysisError(
                f"Reasoning service refused the request (HTTP {status})", reason_code=f"http_{status}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientAnalysisError("Reasoning service returned non-JSON", reason_code="invalid_json") from exc
        if not isinstance(payload, dict):
            raise TransientAnalysisError("Reasoning service returned an unexpected shape", reason_code="invalid_response")
        return payload


def _retry_after(value: str | None) -> float | None:
    try:
        seconds = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None
