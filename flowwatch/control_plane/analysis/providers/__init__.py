"""Reasoning-service clients for failure diagnosis."""

from __future__ import annotations

import os
from typing import Mapping

from flowwatch.control_plane.analysis.providers.base import AnalysisClient, AnalysisRequest, Diagnosis
from flowwatch.control_plane.analysis.providers.local import LocalAnalysisClient
from flowwatch.control_plane.analysis.providers.task_api import TaskApiAnalysisClient


def build_analysis_client_from_env(env: Mapping[str, str] | None = None) -> AnalysisClient:
    env_map = os.environ if env is None else env
    provider = (env_map.get("FLOWWATCH_AI_PROVIDER") or "local").strip().lower()
    if provider == "task_api":
        return TaskApiAnalysisClient(
            base_url=(env_map.get("FLOWWATCH_AI_BASE_URL") or "https://api.manus.ai/v1").strip(),
            api_key=(env_map.get("FLOWWATCH_AI_API_KEY") or "").strip(),
            profile=(env_map.get("FLOWWATCH_AI_PROFILE") or "manus-1.6").strip(),
        )
    return LocalAnalysisClient()


__all__ = [
    "AnalysisClient",
    "AnalysisRequest",
    "Diagnosis",
    "LocalAnalysisClient",
    "TaskApiAnalysisClient",
    "build_analysis_client_from_env",
]
