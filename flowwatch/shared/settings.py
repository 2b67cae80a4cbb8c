"""Shared runtime settings for the flowwatch control plane."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from flowwatch.control_plane.errors import ValidationError


_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class FlowwatchSettings:
    """Storage locations, scheduling intervals, and pipeline limits."""

    data_dir: Path
    sqlite_path: Path
    tick_interval_s: float = 60.0
    probe_concurrency: int = 4
    probe_timeout_s: float = 10.0
    sync_timeout_s: float = 30.0
    unreachable_threshold: int = 3
    execution_page_limit: int = 100
    analysis_workers: int = 2
    analysis_max_attempts: int = 5
    analysis_base_delay_s: float = 1.0
    analysis_max_delay_s: float = 60.0
    analysis_timeout_s: float = 120.0
    log_level: str = "INFO"
    log_json: bool = False
    credentials_key: str = ""
    connector: str = "api"
    ai_provider: str = "local"
    ai_base_url: str = "https://api.manus.ai/v1"
    ai_api_key: str = ""
    ai_profile: str = "manus-1.6"

    @classmethod
    def from_env(
        cls,
        env: Mapping[str, str] | None = None,
        config_path: Path | str | None = None,
    ) -> "FlowwatchSettings":
        source: dict[str, Any] = {}
        env_map = os.environ if env is None else env
        path = config_path or env_map.get("FLOWWATCH_CONFIG")
        if path:
            source.update(load_config_file(path))
        source.update({key: value for key, value in env_map.items() if key.startswith("FLOWWATCH_")})

        data_dir = Path(str(source.get("FLOWWATCH_DATA_DIR", "./data")))
        sqlite_path = Path(
            str(source.get("FLOWWATCH_SQLITE_PATH", data_dir / "control_plane" / "flowwatch.sqlite"))
        )
        return cls(
            data_dir=data_dir,
            sqlite_path=sqlite_path,
            tick_interval_s=_positive_float(source, "FLOWWATCH_TICK_INTERVAL_S", 60.0),
            probe_concurrency=_positive_int(source, "FLOWWATCH_PROBE_CONCURRENCY", 4),
            probe_timeout_s=_positive_float(source, "FLOWWATCH_PROBE_TIMEOUT_S", 10.0),
            sync_timeout_s=_positive_float(source, "FLOWWATCH_SYNC_TIMEOUT_S", 30.0),
            unreachable_threshold=_positive_int(source, "FLOWWATCH_UNREACHABLE_THRESHOLD", 3),
            execution_page_limit=_positive_int(source, "FLOWWATCH_EXECUTION_PAGE_LIMIT", 100),
            analysis_workers=_positive_int(source, "FLOWWATCH_ANALYSIS_WORKERS", 2),
            analysis_max_attempts=_positive_int(source, "FLOWWATCH_ANALYSIS_MAX_ATTEMPTS", 5),
            analysis_base_delay_s=_positive_float(source, "FLOWWATCH_ANALYSIS_BASE_DELAY_S", 1.0),
            analysis_max_delay_s=_positive_float(source, "FLOWWATCH_ANALYSIS_MAX_DELAY_S", 60.0),
            analysis_timeout_s=_positive_float(source, "FLOWWATCH_ANALYSIS_TIMEOUT_S", 120.0),
            log_level=str(source.get("FLOWWATCH_LOG_LEVEL", "INFO")).strip().upper() or "INFO",
            log_json=str(source.get("FLOWWATCH_LOG_JSON", "")).strip().lower() in _TRUE_VALUES,
            credentials_key=str(source.get("FLOWWATCH_CREDENTIALS_KEY", "")).strip(),
            connector=str(source.get("FLOWWATCH_CONNECTOR", "api")).strip().lower() or "api",
            ai_provider=str(source.get("FLOWWATCH_AI_PROVIDER", "local")).strip().lower()
            or "local",
            ai_base_url=str(source.get("FLOWWATCH_AI_BASE_URL", "https://api.manus.ai/v1")).strip(),
            ai_api_key=str(source.get("FLOWWATCH_AI_API_KEY", "")).strip(),
            ai_profile=str(source.get("FLOWWATCH_AI_PROFILE", "manus-1.6")).strip() or "manus-1.6",
        )

    def as_env(self) -> dict[str, str]:
        """Factory-facing view, so YAML-sourced values reach the env-driven builders."""

        return {
            "FLOWWATCH_CONNECTOR": self.connector,
            "FLOWWATCH_AI_PROVIDER": self.ai_provider,
            "FLOWWATCH_AI_BASE_URL": self.ai_base_url,
            "FLOWWATCH_AI_API_KEY": self.ai_api_key,
            "FLOWWATCH_AI_PROFILE": self.ai_profile,
        }

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)


def load_config_file(path: Path | str) -> dict[str, Any]:
    """Read a YAML mapping of FLOWWATCH_* keys (lowercase short names accepted)."""

    config_path = Path(path)
    if not config_path.exists():
        raise ValidationError(f"config file not found: {config_path}", reason_code="config_missing")
    loaded = yaml.safe_load(config_path.read_text()) or {}
    if not isinstance(loaded, dict):
        raise ValidationError("config file must contain a mapping", reason_code="config_invalid")
    normalized: dict[str, Any] = {}
    for key, value in loaded.items():
        name = str(key).strip().upper()
        if not name.startswith("FLOWWATCH_"):
            name = f"FLOWWATCH_{name}"
        normalized[name] = value
    return normalized


def get_settings(env: Mapping[str, str] | None = None) -> FlowwatchSettings:
    """Build settings from the environment and create the data directories."""

    settings = FlowwatchSettings.from_env(env)
    settings.ensure_directories()
    return settings


def _positive_int(source: Mapping[str, Any], key: str, default: int) -> int:
    raw = source.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        value = int(str(raw).strip())
    except ValueError as exc:
        raise ValidationError(f"{key} must be an integer", reason_code="config_invalid") from exc
    if value <= 0:
        raise ValidationError(f"{key} must be positive", reason_code="config_invalid")
    return value


def _positive_float(source: Mapping[str, Any], key: str, default: float) -> float:
    raw = source.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        value = float(str(raw).strip())
    except ValueError as exc:
        raise ValidationError(f"{key} must be a number", reason_code="config_invalid") from exc
    if value <= 0:
        raise ValidationError(f"{key} must be positive", reason_code="config_invalid")
    return value
