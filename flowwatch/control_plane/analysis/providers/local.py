"""Deterministic rule-based diagnosis used as the safe default client."""

from __future__ import annotations

import json
import re

from flowwatch.control_plane.analysis.prompts import detect_service_from_url
from flowwatch.control_plane.analysis.providers.base import AnalysisRequest, Diagnosis
from flowwatch.control_plane.errors import PermanentAnalysisError

_RULES: list[tuple[re.Pattern[str], str, str]] = [
    (
        re.compile(r"\b401\b|unauthori[sz]ed|invalid (api )?key|invalid token", re.I),
        "The {service} rejected the request credentials.",
        "Re-create the credential used by node '{node}' and confirm the API key or token is still valid.",
    ),
    (
        re.compile(r"\b403\b|forbidden|permission", re.I),
        "The {service} accepted the credentials but denied access to this resource.",
        "Grant the missing scope or permission to the account used by node '{node}'.",
    ),
    (
        re.compile(r"\b404\b|not found", re.I),
        "The {service} could not find the requested resource.",
        "Check the URL path and any resource ids in node '{node}'.",
    ),
    (
        re.compile(r"\b429\b|rate limit|too many requests", re.I),
        "The {service} is throttling requests from this workflow.",
        "Add a Wait node or enable batching with a delay before node '{node}'.",
    ),
    (
        re.compile(r"\b5\d\d\b|internal server error|bad gateway|service unavailable", re.I),
        "The {service} failed while handling the request.",
        "Enable 'Retry On Fail' on node '{node}' and check the provider status page.",
    ),
    (
        re.compile(r"timed? ?out|etimedout|timeout", re.I),
        "The call from node '{node}' did not complete within its timeout.",
        "Raise the node timeout or reduce the payload size sent by node '{node}'.",
    ),
    (
        re.compile(r"econnrefused|enotfound|connection refused|getaddrinfo", re.I),
        "The host targeted by node '{node}' could not be reached.",
        "Verify the hostname and port in node '{node}' and that the service is running.",
    ),
    (
        re.compile(r"json|unexpected token|parse", re.I),
        "Node '{node}' received or produced data that is not valid JSON.",
        "Set the response format explicitly and validate the body expression in node '{node}'.",
    ),
    (
        re.compile(r"credential|api key|no auth", re.I),
        "Node '{node}' has no usable credentials configured.",
        "Select or create credentials for node '{node}'.",
    ),
]


class LocalAnalysisClient:
    name = "local"
    model = "flowwatch-rules/v1"

    def analyze(self, request: AnalysisRequest, *, timeout_s: float) -> Diagnosis:
        payload = request.payload
        message = str(payload.get("error_message", "")).strip() if isinstance(payload, dict) else ""
        if not message:
            raise PermanentAnalysisError("Failure payload has no error message", reason_code="malformed_payload")
        parameters = payload.get("node_parameters") or {}
        url = str(parameters.get("url", "")) if isinstance(parameters, dict) else ""
        context = {
            "node": str(payload.get("node_name") or "unknown"),
            "service": detect_service_from_url(url) if url else "remote service",
        }
        for pattern, diagnosis, fix in _RULES:
            if pattern.search(message):
                return self._diagnosis(diagnosis.format(**context), fix.format(**context), message)
        return self._diagnosis(
            f"Node '{context['node']}' failed: {message}",
            "Inspect the node input in the failed execution and re-run the node on its own.",
            message,
        )

    def _diagnosis(self, diagnosis: str, suggested_fix: str, message: str) -> Diagnosis:
        return Diagnosis(
            diagnosis=diagnosis,
            suggested_fix=suggested_fix,
            model=self.model,
            raw_text=json.dumps({"error_message": message, "analysis": diagnosis}, sort_keys=True),
        )
