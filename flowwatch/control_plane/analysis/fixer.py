"""Push a suggested node fix back to the remote workflow."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping

from loguru import logger

from flowwatch.control_plane.db.db import FlowwatchDB
from flowwatch.control_plane.errors import NotFoundError, ValidationError
from flowwatch.control_plane.instances.connector import ConnectionTarget, InstanceConnector
from flowwatch.control_plane.models.records import Instance


class FixType(str, Enum):
    PARAMETER_CHANGE = "parameter_change"
    HEADER_ADD = "header_add"
    AUTH_UPDATE = "auth_update"
    URL_FIX = "url_fix"
    BODY_FIX = "body_fix"


@dataclass(frozen=True)
class SuggestedFix:
    type: FixType
    value: Any
    path: str = ""

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "SuggestedFix":
        if not isinstance(raw, Mapping):
            raise ValidationError("Fix must be an object", reason_code="invalid_fix")
        try:
            fix_type = FixType(str(raw.get("type", "")).strip().lower())
        except ValueError as exc:
            raise ValidationError(f"Unknown fix type: {raw.get('type')!r}", reason_code="invalid_fix") from exc
        if "value" not in raw:
            raise ValidationError("Fix has no value", reason_code="invalid_fix")
        path = str(raw.get("path") or "").strip()
        if not path and not isinstance(raw["value"], dict):
            raise ValidationError("A fix without a path must replace the parameters object", reason_code="invalid_fix")
        return cls(type=fix_type, value=raw["value"], path=path)

    def as_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "value": self.value, "path": self.path}


@dataclass(frozen=True)
class FixOutcome:
    failure_id: str
    instance_id: str
    workflow_id: str
    node_id: str
    node: dict[str, Any]

    def as_dict(self) -> dict[str, Any]:
        return {
            "failure_id": self.failure_id,
            "instance_id": self.instance_id,
            "workflow_id": self.workflow_id,
            "node_id": self.node_id,
            "node": self.node,
        }


def apply_fix_to_parameters(parameters: Mapping[str, Any], fix: SuggestedFix) -> dict[str, Any]:
    """Return a new parameters mapping with ``fix`` applied at its dotted path.

    Without a path the value replaces the parameters wholesale. ``header_add``
    on a ``headers`` leaf appends to the list; every other type assigns.
    """

    if not fix.path:
        return copy.deepcopy(dict(fix.value))
    updated = copy.deepcopy(dict(parameters))
    *parents, leaf = fix.path.split(".")
    current = updated
    for part in parents:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child

    value = copy.deepcopy(fix.value)
    if fix.type is FixType.HEADER_ADD and leaf == "headers":
        existing = current.get(leaf)
        headers = list(existing) if isinstance(existing, list) else []
        headers.append(value)
        current[leaf] = headers
    else:
        current[leaf] = value
    return updated


class FixApplier:
    def __init__(
        self,
        *,
        db: FlowwatchDB,
        connector: InstanceConnector,
        resolve_target: Callable[[Instance], ConnectionTarget],
        timeout_s: float = 30.0,
    ) -> None:
        self.db = db
        self.connector = connector
        self.resolve_target = resolve_target
        self.timeout_s = float(timeout_s)

    def apply_fix(
        self,
        owner_id: str,
        failure_id: str,
        node_id: str,
        fix: SuggestedFix | Mapping[str, Any],
    ) -> FixOutcome:
        """Rewrite one node of the failed execution's workflow on the remote instance.

        An empty ``node_id`` targets the node recorded as failing. Connector
        errors propagate unchanged; nothing is written locally.
        """

        if not isinstance(fix, SuggestedFix):
            fix = SuggestedFix.from_dict(fix)
        failure = self.db.get_failure(failure_id)
        if failure is None or self.db.get_failure_owner(failure_id) != owner_id:
            raise NotFoundError("Failure not found", reason_code="failure_not_found")
        instance = self.db.get_instance(failure.instance_id)
        if instance is None:
            raise NotFoundError("Instance not found", reason_code="instance_not_found")
        if not failure.workflow_id:
            raise ValidationError("Failure has no workflow id", reason_code="workflow_unknown")

        target = self.resolve_target(instance)
        workflow = self.connector.get_workflow(target, failure.workflow_id, timeout_s=self.timeout_s)
        nodes = workflow["nodes"]
        index = _find_node(nodes, node_id, str(failure.error_payload.get("node_name") or ""))
        if index is None:
            raise NotFoundError("Node not found in remote workflow", reason_code="node_not_found")

        current = nodes[index]
        parameters = current.get("parameters") if isinstance(current.get("parameters"), dict) else {}
        nodes[index] = {**current, "parameters": apply_fix_to_parameters(parameters, fix)}
        updated = self.connector.update_workflow(
            target, failure.workflow_id, workflow, timeout_s=self.timeout_s
        )

        updated_nodes = updated.get("nodes") or []
        node = updated_nodes[index] if index < len(updated_nodes) else nodes[index]
        resolved_id = str(node.get("id") or node_id)
        self.db.append_audit_event(
            "fix_applied",
            {
                "failure_id": failure.id,
                "instance_id": instance.id,
                "workflow_id": failure.workflow_id,
                "node_id": resolved_id,
                "fix": fix.as_dict(),
            },
        )
        logger.info(
            "Fix applied",
            failure_id=failure.id,
            workflow_id=failure.workflow_id,
            node_id=resolved_id,
            fix_type=fix.type.value,
        )
        return FixOutcome(
            failure_id=failure.id,
            instance_id=instance.id,
            workflow_id=failure.workflow_id,
            node_id=resolved_id,
            node=node,
        )


def _find_node(nodes: list[Any], node_id: str, fallback_name: str) -> int | None:
    for index, node in enumerate(nodes):
        if not isinstance(node, dict):
            continue
        if node_id and str(node.get("id", "")) == node_id:
            return index
        if not node_id and fallback_name and str(node.get("name", "")) == fallback_name:
            return index
    return None
