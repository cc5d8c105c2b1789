"""Backend selection: consent gate, local CLI tool first, remote API second."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from convo_insights.config import Settings
from convo_insights.orchestrator.backend.base import AnalysisBackend
from convo_insights.orchestrator.backend.cli_backend import (
    CLI_TOOL_NAME,
    CliToolBackend,
    DetectedCliTool,
    detect_cli_tool,
)
from convo_insights.orchestrator.backend.http_backend import GeminiBackend

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BackendStatus:
    """What the selector would use right now, for operator output."""

    consent: bool
    cli_tool: DetectedCliTool | None
    http_configured: bool

    @property
    def selected(self) -> str | None:
        if not self.consent:
            return None
        if self.cli_tool is not None:
            return self.cli_tool.kind.value
        if self.http_configured:
            return "gemini"
        return None


class BackendSelector:
    """Pick the backend for the next cycle.

    Nothing is probed while external analysis is disallowed. Tool
    detection runs at most once per selector until ``refresh()``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        tool_name: str = CLI_TOOL_NAME,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.tool_name = tool_name
        self.http_transport = http_transport
        self._detected: DetectedCliTool | None = None
        self._probed = False

    @property
    def consent_given(self) -> bool:
        return self.settings.analysis.allow_external_analysis

    def refresh(self) -> None:
        """Forget the cached tool so the next selection probes again."""

        self._detected = None
        self._probed = False

    async def detect_tool(self) -> DetectedCliTool | None:
        if not self._probed:
            self._detected = await detect_cli_tool(
                custom_path=self.settings.cli_tool.custom_path,
                tool_name=self.tool_name,
            )
            self._probed = True
            if self._detected is not None:
                logger.info("Using CLI tool at %s", self._detected.path)
        return self._detected

    async def select_backend(self) -> AnalysisBackend | None:
        if not self.consent_given:
            logger.info("External analysis is disabled; no backend selected")
            return None

        tool = await self.detect_tool()
        if tool is not None:
            cli_settings = self.settings.cli_tool
            return CliToolBackend(
                tool,
                timeout_seconds=cli_settings.timeout_seconds,
                grace_seconds=cli_settings.grace_seconds,
                max_input_bytes=cli_settings.max_input_bytes,
            )

        if self.settings.http.configured:
            return GeminiBackend.from_settings(self.settings.http, transport=self.http_transport)

        logger.warning("No capable CLI tool found and no Gemini API key configured")
        return None

    async def status(self) -> BackendStatus:
        tool = await self.detect_tool() if self.consent_given else None
        return BackendStatus(
            consent=self.consent_given,
            cli_tool=tool,
            http_configured=self.settings.http.configured,
        )
