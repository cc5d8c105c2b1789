"""Execution backends for analysis requests."""

from convo_insights.orchestrator.backend.base import AnalysisBackend, AnalysisRequest, BatchEntry
from convo_insights.orchestrator.backend.cli_backend import CliToolBackend, detect_cli_tool
from convo_insights.orchestrator.backend.http_backend import GeminiBackend

__all__ = [
    "AnalysisBackend",
    "AnalysisRequest",
    "BatchEntry",
    "CliToolBackend",
    "GeminiBackend",
    "detect_cli_tool",
]
