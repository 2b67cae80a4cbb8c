from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pytest
import requests

from flowwatch.control_plane.analysis.prompts import (
    build_diagnosis_prompt,
    detect_service_from_url,
    extract_json_block,
)
from flowwatch.control_plane.analysis.providers import (
    LocalAnalysisClient,
    TaskApiAnalysisClient,
    build_analysis_client_from_env,
)
from flowwatch.control_plane.analysis.providers.base import AnalysisRequest
from flowwatch.control_plane.errors import PermanentAnalysisError, TransientAnalysisError

PAYLOAD = {
    "workflow_name": "Orders",
    "execution_id": "100",
    "mode": "trigger",
    "error_message": "Request failed with status code 401",
    "node_name": "Charge card",
    "node_type": "n8n-nodes-base.httpRequest",
    "node_parameters": {"url": "https://api.stripe.com/v1/charges", "method": "POST"},
}


@dataclass
class FakeResponse:
    status_code: int
    payload: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    def json(self) -> Any:
        if self.payload is None:
            raise ValueError("no body")
        return self.payload


class FakeSession:
    def __init__(self, responses: list[FakeResponse | Exception]) -> None:
        self.responses = responses
        self.calls: list[dict[str, Any]] = []

    def request(self, **kwargs: Any) -> FakeResponse:
        self.calls.append(kwargs)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeTimer:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _client(responses: list[FakeResponse | Exception], timer: FakeTimer | None = None) -> TaskApiAnalysisClient:
    timer = timer or FakeTimer()
    return TaskApiAnalysisClient(
        base_url="https://ai.example.com/v1/",
        api_key="ai-key",
        profile="manus-1.6",
        session=FakeSession(responses),
        poll_interval_s=5.0,
        sleep=timer.sleep,
        monotonic=timer.monotonic,
    )


def test_detect_service_from_url_prefers_known_services() -> None:
    assert detect_service_from_url("https://api.stripe.com/v1/charges") == "Stripe API"
    assert detect_service_from_url("https://sheets.googleapis.com/v4") == "Google API"
    assert detect_service_from_url("https://internal.corp.local/hook") == "internal.corp.local"
    assert detect_service_from_url("") == "Unknown Service"


def test_extract_json_block_prefers_fenced_json() -> None:
    text = 'Here you go:\n```json\n{"analysis": "expired token"}\n```\ntrailing {"x": 1}'
    assert extract_json_block(text) == {"analysis": "expired token"}
    assert extract_json_block('prefix {"analysis": "bare"} suffix') == {"analysis": "bare"}
    assert extract_json_block("no json here") is None


def test_prompt_mentions_node_error_and_service() -> None:
    prompt = build_diagnosis_prompt(PAYLOAD)
    assert "Request failed with status code 401" in prompt
    assert "Charge card" in prompt
    assert "Stripe API" in prompt
    assert "```json" in prompt


def test_local_client_matches_rules() -> None:
    diagnosis = LocalAnalysisClient().analyze(AnalysisRequest("f-1", PAYLOAD), timeout_s=1.0)
    assert "Stripe API rejected the request credentials" in diagnosis.diagnosis
    assert "Charge card" in diagnosis.suggested_fix
    assert diagnosis.model == "flowwatch-rules/v1"

    timeout_payload = {**PAYLOAD, "error_message": "ETIMEDOUT while connecting", "node_parameters": {}}
    diagnosis = LocalAnalysisClient().analyze(AnalysisRequest("f-2", timeout_payload), timeout_s=1.0)
    assert "timeout" in diagnosis.diagnosis


def test_local_client_rejects_empty_payload() -> None:
    with pytest.raises(PermanentAnalysisError):
        LocalAnalysisClient().analyze(AnalysisRequest("f-1", {}), timeout_s=1.0)


def test_task_client_creates_task_and_polls_until_completed() -> None:
    timer = FakeTimer()
    result_text = '```json\n{"analysis": "API key expired", "fix": {"headers": {"Authorization": "Bearer <new>"}}, "explanation": "Rotate the key"}\n```'
    client = _client(
        [
            FakeResponse(200, {"id": "task-1", "status": "pending"}),
            FakeResponse(200, {"id": "task-1", "status": "running"}),
            FakeResponse(200, {"id": "task-1", "status": "completed", "result": result_text}),
        ],
        timer,
    )

    diagnosis = client.analyze(AnalysisRequest("f-1", PAYLOAD), timeout_s=60.0)

    assert diagnosis.diagnosis == "API key expired"
    assert diagnosis.suggested_fix.startswith("Rotate the key")
    assert "Authorization" in diagnosis.suggested_fix
    assert diagnosis.model == "task_api:manus-1.6"
    create = client.session.calls[0]
    assert create["method"] == "POST"
    assert create["url"] == "https://ai.example.com/v1/tasks"
    assert create["headers"]["API_KEY"] == "ai-key"
    assert create["json"]["agentProfile"] == "manus-1.6"
    assert client.session.calls[2]["url"] == "https://ai.example.com/v1/tasks/task-1"
    assert timer.sleeps == [5.0, 5.0]


def test_task_client_falls_back_to_raw_text() -> None:
    client = _client([FakeResponse(200, {"id": "t", "status": "completed", "result": "Plain explanation"})])
    diagnosis = client.analyze(AnalysisRequest("f-1", PAYLOAD), timeout_s=60.0)
    assert diagnosis.diagnosis == "Plain explanation"
    assert diagnosis.suggested_fix == ""


@pytest.mark.parametrize(
    ("status_code", "reason_code"),
    [(401, "http_401"), (403, "http_403"), (402, "quota_exhausted"), (422, "http_422")],
)
def test_task_client_permanent_errors(status_code: int, reason_code: str) -> None:
    client = _client([FakeResponse(status_code, {"error": "nope"})])
    with pytest.raises(PermanentAnalysisError) as exc_info:
        client.analyze(AnalysisRequest("f-1", PAYLOAD), timeout_s=60.0)
    assert exc_info.value.reason_code == reason_code


def test_task_client_rate_limit_is_transient_with_retry_after() -> None:
    client = _client([FakeResponse(429, {"error": "slow"}, headers={"Retry-After": "12"})])
    with pytest.raises(TransientAnalysisError) as exc_info:
        client.analyze(AnalysisRequest("f-1", PAYLOAD), timeout_s=60.0)
    assert exc_info.value.retry_after_s == 12.0


@pytest.mark.parametrize(
    "failure",
    [FakeResponse(502, {"error": "bad gateway"}), requests.ReadTimeout("slow"), requests.ConnectionError("down")],
)
def test_task_client_transport_errors_are_transient(failure: Any) -> None:
    with pytest.raises(TransientAnalysisError):
        _client([failure]).analyze(AnalysisRequest("f-1", PAYLOAD), timeout_s=60.0)


def test_task_client_failed_task_and_deadline_are_transient() -> None:
    client = _client(
        [
            FakeResponse(200, {"id": "t", "status": "pending"}),
            FakeResponse(200, {"id": "t", "status": "failed", "error": "agent crashed"}),
        ]
    )
    with pytest.raises(TransientAnalysisError) as exc_info:
        client.analyze(AnalysisRequest("f-1", PAYLOAD), timeout_s=60.0)
    assert exc_info.value.reason_code == "task_failed"

    client = _client([FakeResponse(200, {"id": "t", "status": "running"})] * 3)
    with pytest.raises(TransientAnalysisError) as exc_info:
        client.analyze(AnalysisRequest("f-1", PAYLOAD), timeout_s=12.0)
    assert exc_info.value.reason_code == "deadline_exceeded"


def test_task_client_without_key_is_permanent() -> None:
    client = TaskApiAnalysisClient(base_url="https://ai.example.com", api_key="", session=FakeSession([]))
    with pytest.raises(PermanentAnalysisError) as exc_info:
        client.analyze(AnalysisRequest("f-1", PAYLOAD), timeout_s=5.0)
    assert exc_info.value.reason_code == "not_configured"


def test_build_analysis_client_from_env() -> None:
    assert isinstance(build_analysis_client_from_env(env={}), LocalAnalysisClient)
    client = build_analysis_client_from_env(
        env={"FLOWWATCH_AI_PROVIDER": "task_api", "FLOWWATCH_AI_API_KEY": "k", "FLOWWATCH_AI_PROFILE": "manus-1.6-lite"}
    )
    assert isinstance(client, TaskApiAnalysisClient)
    assert client.profile == "manus-1.6-lite"
    assert client.base_url == "https://api.manus.ai/v1"
