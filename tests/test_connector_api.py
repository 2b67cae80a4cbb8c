from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import pytest
import requests

from flowwatch.control_plane.errors import Malformed, Unreachable
from flowwatch.control_plane.instances.connector import (
    ConnectionTarget,
    ProbeStatus,
    build_connector_from_env,
)
from flowwatch.control_plane.instances.connector_api import N8nApiConnector
from flowwatch.control_plane.instances.connector_inmemory import InMemoryConnector

TARGET = ConnectionTarget(instance_id="inst-1", endpoint="https://n8n.example.com", api_key="secret")


@dataclass
class FakeResponse:
    status_code: int
    payload: Any = None
    invalid_json: bool = False

    def json(self) -> Any:
        if self.invalid_json:
            raise ValueError("not json")
        return self.payload


class FakeSession:
    def __init__(self, responses: list[FakeResponse | Exception]) -> None:
        self.responses = responses
        self.calls: list[dict[str, Any]] = []

    def request(self, **kwargs: Any) -> FakeResponse:
        self.calls.append(kwargs)
        if not self.responses:
            raise RuntimeError("No fake response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class SlowSession(FakeSession):
    """Each request consumes `per_call_s` of a fake monotonic clock."""

    def __init__(self, responses: list[FakeResponse | Exception], per_call_s: float) -> None:
        super().__init__(responses)
        self.now = 0.0
        self.per_call_s = per_call_s

    def monotonic(self) -> float:
        return self.now

    def request(self, **kwargs: Any) -> FakeResponse:
        self.now += self.per_call_s
        return super().request(**kwargs)


def _execution(execution_id: str, started_at: str, status: str = "success") -> dict[str, Any]:
    return {
        "id": execution_id,
        "workflowId": "wf-1",
        "status": status,
        "finished": status == "success",
        "startedAt": started_at,
        "stoppedAt": started_at,
    }


def test_build_connector_from_env_defaults_to_api() -> None:
    assert isinstance(build_connector_from_env(env={}), N8nApiConnector)


def test_build_connector_from_env_explicit_empty_env_ignores_process(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("FLOWWATCH_CONNECTOR", "in_memory")
    assert isinstance(build_connector_from_env(env={}), N8nApiConnector)
    assert isinstance(build_connector_from_env(env={"FLOWWATCH_CONNECTOR": "in_memory"}), InMemoryConnector)


def test_probe_healthy_reports_version_and_sends_api_key_header() -> None:
    session = FakeSession(
        [
            FakeResponse(200, {"data": [], "nextCursor": None}),
            FakeResponse(200, {"version": "1.42.0"}),
        ]
    )
    outcome = N8nApiConnector(session=session).probe(TARGET, timeout_s=3.0)

    assert outcome.status is ProbeStatus.HEALTHY
    assert outcome.version == "1.42.0"
    first = session.calls[0]
    assert first["url"] == "https://n8n.example.com/api/v1/workflows"
    assert first["headers"]["X-N8N-API-KEY"] == "secret"
    assert first["params"] == {"limit": "1"}
    assert 0 < first["timeout"] <= 3.0
    assert first["json"] is None


def test_probe_stays_healthy_when_version_lookup_fails() -> None:
    session = FakeSession([FakeResponse(200, {"data": []}), FakeResponse(404, {"message": "nope"})])
    outcome = N8nApiConnector(session=session).probe(TARGET, timeout_s=3.0)
    assert outcome.healthy
    assert outcome.version is None


@pytest.mark.parametrize("status_code", [401, 403])
def test_probe_maps_auth_failures(status_code: int) -> None:
    session = FakeSession([FakeResponse(status_code, {"message": "unauthorized"})])
    outcome = N8nApiConnector(session=session).probe(TARGET, timeout_s=3.0)
    assert outcome.status is ProbeStatus.AUTH_REJECTED


@pytest.mark.parametrize(
    "failure",
    [
        requests.ConnectTimeout("slow"),
        requests.ConnectionError("refused"),
        FakeResponse(503, {"message": "down"}),
        FakeResponse(429, {"message": "slow down"}),
    ],
)
def test_probe_maps_transport_failures_to_unreachable(failure: Any) -> None:
    outcome = N8nApiConnector(session=FakeSession([failure])).probe(TARGET, timeout_s=3.0)
    assert outcome.status is ProbeStatus.UNREACHABLE
    assert outcome.detail


def test_list_workflows_follows_cursor_pagination() -> None:
    session = FakeSession(
        [
            FakeResponse(200, {"data": [{"id": 1, "name": "Orders", "active": True}], "nextCursor": "abc"}),
            FakeResponse(
                200,
                {
                    "data": [{"id": "2", "name": "Leads", "updatedAt": "2026-03-01T10:00:00.000Z"}],
                    "nextCursor": None,
                },
            ),
        ]
    )
    workflows = N8nApiConnector(session=session).list_workflows(TARGET, timeout_s=5.0)

    assert [workflow.remote_id for workflow in workflows] == ["1", "2"]
    assert workflows[0].active is True
    assert workflows[1].updated_at == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
    assert session.calls[1]["params"] == {"cursor": "abc"}


def test_list_recent_executions_stops_at_watermark() -> None:
    session = FakeSession(
        [
            FakeResponse(
                200,
                {
                    "data": [
                        _execution("12", "2026-03-01T10:05:00Z", status="error"),
                        _execution("11", "2026-03-01T09:00:00Z"),
                    ],
                    "nextCursor": "more",
                },
            ),
        ]
    )
    since = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
    executions = N8nApiConnector(session=session).list_recent_executions(TARGET, since, timeout_s=5.0)

    assert [execution.execution_id for execution in executions] == ["12"]
    assert executions[0].is_failure
    assert len(session.calls) == 1
    assert session.calls[0]["params"]["includeData"] == "true"


def test_list_workflows_rejects_unexpected_shapes() -> None:
    with pytest.raises(Malformed) as exc_info:
        N8nApiConnector(session=FakeSession([FakeResponse(200, {"items": []})])).list_workflows(
            TARGET, timeout_s=5.0
        )
    assert exc_info.value.reason_code == "unexpected_shape"

    with pytest.raises(Malformed) as exc_info:
        N8nApiConnector(session=FakeSession([FakeResponse(200, invalid_json=True)])).list_workflows(
            TARGET, timeout_s=5.0
        )
    assert exc_info.value.reason_code == "invalid_json"

    with pytest.raises(Malformed) as exc_info:
        N8nApiConnector(session=FakeSession([FakeResponse(200, {"data": [{"name": "no id"}]})])).list_workflows(
            TARGET, timeout_s=5.0
        )
    assert exc_info.value.reason_code == "invalid_payload"


def test_list_recent_executions_raises_unreachable_on_timeout() -> None:
    connector = N8nApiConnector(session=FakeSession([requests.ReadTimeout("slow")]))
    with pytest.raises(Unreachable) as exc_info:
        connector.list_recent_executions(TARGET, None, timeout_s=0.5)
    assert exc_info.value.reason_code == "timeout"
    assert exc_info.value.retryable is True


def test_execution_snapshot_extracts_error_details() -> None:
    session = FakeSession(
        [
            FakeResponse(
                200,
                {
                    "data": [
                        {
                            "id": 7,
                            "workflowId": 3,
                            "finished": False,
                            "startedAt": "2026-03-01T10:00:00Z",
                            "stoppedAt": "2026-03-01T10:00:02Z",
                            "data": {
                                "resultData": {
                                    "error": {"message": "Request failed with status code 401", "node": {"name": "HTTP"}},
                                    "lastNodeExecuted": "HTTP",
                                }
                            },
                        }
                    ]
                },
            )
        ]
    )
    [execution] = N8nApiConnector(session=session).list_recent_executions(TARGET, None, timeout_s=5.0)

    assert execution.execution_id == "7"
    assert execution.workflow_id == "3"
    assert execution.is_failure
    assert execution.error_message == "Request failed with status code 401"
    assert execution.error_node == "HTTP"


def test_paged_listing_shares_one_deadline_across_pages() -> None:
    pages = [
        FakeResponse(200, {"data": [{"id": str(index), "name": f"wf-{index}"}], "nextCursor": f"c{index}"})
        for index in range(5)
    ]
    session = SlowSession(pages, per_call_s=0.3)
    connector = N8nApiConnector(session=session, monotonic=session.monotonic)

    with pytest.raises(Unreachable) as exc_info:
        connector.list_workflows(TARGET, timeout_s=0.5)

    assert exc_info.value.reason_code == "timeout"
    assert len(session.calls) == 2
    assert session.calls[0]["timeout"] == pytest.approx(0.5)
    assert session.calls[1]["timeout"] == pytest.approx(0.2)


def test_probe_skips_version_lookup_once_the_deadline_is_spent() -> None:
    session = SlowSession([FakeResponse(200, {"data": []})], per_call_s=3.0)
    outcome = N8nApiConnector(session=session, monotonic=session.monotonic).probe(TARGET, timeout_s=3.0)

    assert outcome.healthy
    assert outcome.version is None
    assert len(session.calls) == 1


def test_get_and_update_workflow_send_only_writable_fields() -> None:
    document = {
        "id": "wf-1",
        "name": "Orders",
        "active": True,
        "nodes": [{"id": "n1", "name": "HTTP", "parameters": {"url": "https://api.example.com"}}],
        "connections": {},
        "settings": {"executionOrder": "v1"},
        "updatedAt": "2026-03-01T10:00:00Z",
    }
    session = FakeSession([FakeResponse(200, document), FakeResponse(200, document)])
    connector = N8nApiConnector(session=session)

    fetched = connector.get_workflow(TARGET, "wf-1", timeout_s=5.0)
    connector.update_workflow(TARGET, "wf-1", fetched, timeout_s=5.0)

    assert session.calls[0]["url"] == "https://n8n.example.com/api/v1/workflows/wf-1"
    put = session.calls[1]
    assert put["method"] == "PUT"
    assert put["json"] == {
        "name": "Orders",
        "nodes": document["nodes"],
        "connections": {},
        "settings": {"executionOrder": "v1"},
    }


def test_get_workflow_requires_a_node_list() -> None:
    connector = N8nApiConnector(session=FakeSession([FakeResponse(200, {"id": "wf-1"})]))
    with pytest.raises(Malformed):
        connector.get_workflow(TARGET, "wf-1", timeout_s=5.0)
