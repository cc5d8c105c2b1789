"""Error taxonomy for analysis orchestration."""

from __future__ import annotations


class AnalysisError(RuntimeError):
    """Base class for orchestration errors."""


class NoBackendAvailable(AnalysisError):
    """Consent is missing or no backend is configured; the cycle aborts untouched."""


class ToolNotFound(AnalysisError):
    """Local CLI tool executable could not be located or started."""


class AnalysisTimeout(AnalysisError):
    """Backend call exceeded its wall-clock budget."""

    def __init__(self, message: str, *, timeout_seconds: float) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class PayloadTooLarge(AnalysisError):
    """Serialized input exceeds what the backend accepts."""

    def __init__(self, *, size_bytes: int, max_bytes: int | None) -> None:
        limit = f"{max_bytes} bytes" if max_bytes is not None else "backend limit"
        super().__init__(f"Payload too large: {size_bytes} bytes exceeds {limit}.")
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes


class InvalidResponse(AnalysisError):
    """Backend output could not be parsed or validated."""


class QueueError(AnalysisError):
    """Queue contract violation, such as a dedupe item in the conversation queue."""


class AuthenticationRequired(AnalysisError):
    """Backend rejected the call because the user is not signed in or the key is invalid."""


class BackendRunError(AnalysisError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient
