"""Validated views of remote workflow and execution payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from flowwatch.shared.timeutil import ensure_utc

FAILURE_STATUSES = {"error", "crashed", "failed"}


def _coerce_id(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value))
    return value


class WorkflowSnapshot(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    remote_id: str = Field(alias="id", min_length=1)
    name: str = ""
    active: bool = False
    updated_at: datetime | None = Field(default=None, alias="updatedAt")
    nodes: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("remote_id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> Any:
        return _coerce_id(value)

    @field_validator("updated_at")
    @classmethod
    def _normalize_updated_at(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @field_validator("nodes", mode="before")
    @classmethod
    def _normalize_nodes(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [node for node in value if isinstance(node, dict)]
        return value

    def find_node(self, node_name: str) -> dict[str, Any] | None:
        for node in self.nodes:
            if str(node.get("name", "")) == node_name or str(node.get("id", "")) == node_name:
                return node
        return None


class ExecutionSnapshot(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    execution_id: str = Field(alias="id", min_length=1)
    workflow_id: str = Field(default="", alias="workflowId")
    status: str = ""
    finished: bool = False
    mode: str = ""
    started_at: datetime = Field(alias="startedAt")
    stopped_at: datetime | None = Field(default=None, alias="stoppedAt")
    data: dict[str, Any] | None = None

    @field_validator("execution_id", "workflow_id", mode="before")
    @classmethod
    def _normalize_ids(cls, value: Any) -> Any:
        if value is None:
            return ""
        return _coerce_id(value)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> str:
        return str(value or "").strip().lower()

    @field_validator("started_at", "stopped_at")
    @classmethod
    def _normalize_times(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    def _result_error(self) -> dict[str, Any]:
        result_data = (self.data or {}).get("resultData")
        if not isinstance(result_data, dict):
            return {}
        error = result_data.get("error")
        return error if isinstance(error, dict) else {}

    @property
    def is_failure(self) -> bool:
        if self.status in FAILURE_STATUSES:
            return True
        if self.status:
            return False
        # Older engines omit status; an unfinished stopped run with an error payload failed.
        return not self.finished and self.stopped_at is not None and bool(self._result_error())

    @property
    def error_message(self) -> str:
        error = self._result_error()
        message = str(error.get("message", "")).strip()
        return message or f"Execution ended with status '{self.status or 'unknown'}'"

    @property
    def error_node(self) -> str:
        error = self._result_error()
        node = error.get("node")
        if isinstance(node, dict):
            return str(node.get("name", ""))
        if node:
            return str(node)
        result_data = (self.data or {}).get("resultData") or {}
        return str(result_data.get("lastNodeExecuted", "")) if isinstance(result_data, dict) else ""

    @property
    def error_stack(self) -> str:
        return str(self._result_error().get("stack", ""))
