"""Error taxonomy shared by the connector, registry, sync, and analysis layers."""

from __future__ import annotations


class FlowwatchError(Exception):
    """Base error carrying a stable machine-readable reason code."""

    default_reason_code = "flowwatch_error"

    def __init__(self, message: str, reason_code: str | None = None) -> None:
        super().__init__(message)
        self.reason_code = reason_code or self.default_reason_code


class ValidationError(FlowwatchError, ValueError):
    default_reason_code = "invalid_input"


class NotFoundError(FlowwatchError, LookupError):
    default_reason_code = "not_found"


class ConflictError(FlowwatchError):
    default_reason_code = "conflict"


class CredentialError(FlowwatchError):
    default_reason_code = "credential_unavailable"


class ConnectorError(FlowwatchError):
    """Failure talking to a remote automation instance."""

    default_reason_code = "connector_error"
    retryable = True


class Unreachable(ConnectorError):
    default_reason_code = "unreachable"


class AuthRejected(ConnectorError):
    default_reason_code = "auth_rejected"
    retryable = False


class Malformed(ConnectorError):
    default_reason_code = "malformed_response"


class SyncError(FlowwatchError):
    """Sync failure for one stage; attached to a partial delta or raised."""

    default_reason_code = "sync_failed"

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        cause: BaseException | None = None,
        reason_code: str | None = None,
    ) -> None:
        if reason_code is None and isinstance(cause, FlowwatchError):
            reason_code = cause.reason_code
        super().__init__(message, reason_code=reason_code)
        self.stage = stage
        self.cause = cause

    def as_dict(self) -> dict[str, str]:
        return {"stage": self.stage, "reason_code": self.reason_code, "message": str(self)}


class AnalysisError(FlowwatchError):
    default_reason_code = "analysis_failed"
    permanent = False


class TransientAnalysisError(AnalysisError):
    default_reason_code = "analysis_transient"

    def __init__(
        self,
        message: str,
        reason_code: str | None = None,
        retry_after_s: float | None = None,
    ) -> None:
        super().__init__(message, reason_code=reason_code)
        self.retry_after_s = retry_after_s


class PermanentAnalysisError(AnalysisError):
    default_reason_code = "analysis_permanent"
    permanent = True


__all__ = [
    "AnalysisError",
    "AuthRejected",
    "ConflictError",
    "ConnectorError",
    "CredentialError",
    "FlowwatchError",
    "Malformed",
    "NotFoundError",
    "PermanentAnalysisError",
    "SyncError",
    "TransientAnalysisError",
    "Unreachable",
    "ValidationError",
]
