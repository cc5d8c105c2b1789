"""Local CLI tool backend: discovery, capability probing and invocation."""

from __future__ import annotations

import json
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from convo_insights.orchestrator.backend.base import AnalysisRequest
from convo_insights.orchestrator.backend.subprocess_runner import (
    DEFAULT_MAX_INPUT_BYTES,
    run_subprocess,
)
from convo_insights.orchestrator.errors import (
    AnalysisError,
    AuthenticationRequired,
    InvalidResponse,
)
from convo_insights.orchestrator.models import BackendKind
from convo_insights.orchestrator.output_fallback import normalize_json_text
from convo_insights.orchestrator.redaction import sanitize_preview

logger = logging.getLogger(__name__)

CLI_TOOL_NAME = "claude"
CLI_TOOL_MODEL_LABEL = "claude-sonnet-4-5-20250929"
SEARCH_DIRECTORIES: tuple[str, ...] = (
    "/usr/local/bin",
    "/opt/homebrew/bin",
    "/usr/bin",
    "~/.npm-global/bin",
    "~/.local/bin",
    "/run/current-system/sw/bin",
)
NON_INTERACTIVE_ENV = {"CLAUDE_NO_INTERACTIVE": "1", "CI": "true", "TERM": "dumb"}
PROBE_TIMEOUT_SECONDS = 10.0

_AUTH_MARKERS = ("not logged in", "authentication")


@dataclass(slots=True)
class CliToolCapabilities:
    """Flags advertised by the tool's ``--help`` output."""

    tools_flag: bool = False
    input_format: bool = False
    output_format: bool = False
    print_mode: bool = False
    no_session_persistence: bool = False

    @property
    def fully_supported(self) -> bool:
        """All four flags needed for a sandboxed one-shot JSON call."""

        return self.tools_flag and self.input_format and self.output_format and self.print_mode

    def missing(self) -> list[str]:
        names = {
            "--tools": self.tools_flag,
            "--input-format": self.input_format,
            "--output-format": self.output_format,
            "--print": self.print_mode,
        }
        return [name for name, present in names.items() if not present]


@dataclass(slots=True)
class DetectedCliTool:
    """A located CLI tool with its probed capabilities."""

    kind: BackendKind
    path: Path
    capabilities: CliToolCapabilities


def parse_help_capabilities(help_text: str) -> CliToolCapabilities:
    """Read supported flags from ``--help`` text."""

    return CliToolCapabilities(
        tools_flag="--tools" in help_text,
        input_format="--input-format" in help_text,
        output_format="--output-format" in help_text,
        print_mode="--print" in help_text or "-p," in help_text,
        no_session_persistence="--no-session-persistence" in help_text,
    )


def candidate_paths(
    *,
    tool_name: str = CLI_TOOL_NAME,
    custom_path: Path | None = None,
) -> list[Path]:
    """Executable locations to try, in priority order, without duplicates."""

    candidates: list[Path] = []
    if custom_path is not None:
        candidates.append(custom_path.expanduser())
    candidates.extend(Path(directory).expanduser() / tool_name for directory in SEARCH_DIRECTORIES)
    on_path = shutil.which(tool_name)
    if on_path:
        candidates.append(Path(on_path))

    unique: list[Path] = []
    seen: set[str] = set()
    for candidate in candidates:
        key = str(candidate)
        if key in seen:
            continue
        seen.add(key)
        unique.append(candidate)
    return unique


async def probe_capabilities(
    path: Path,
    *,
    timeout_seconds: float = PROBE_TIMEOUT_SECONDS,
) -> CliToolCapabilities:
    """Run ``<tool> --help`` and parse the advertised flags."""

    result = await run_subprocess(
        path,
        ["--help"],
        stdin=b"",
        timeout_seconds=timeout_seconds,
        env={**os.environ, **NON_INTERACTIVE_ENV},
        grace_seconds=1.0,
        check=False,
    )
    return parse_help_capabilities(result.stdout_text + "\n" + result.stderr_text)


async def detect_cli_tool(
    *,
    custom_path: Path | None = None,
    tool_name: str = CLI_TOOL_NAME,
    probe_timeout_seconds: float = PROBE_TIMEOUT_SECONDS,
) -> DetectedCliTool | None:
    """First installed tool whose help output advertises every required flag.

    A tool lacking any required flag is never used, not even partially.
    """

    for path in candidate_paths(tool_name=tool_name, custom_path=custom_path):
        if not (path.is_file() and os.access(path, os.X_OK)):
            continue
        try:
            capabilities = await probe_capabilities(path, timeout_seconds=probe_timeout_seconds)
        except AnalysisError as error:
            logger.warning("Probing CLI tool %s failed: %s", path, error)
            continue
        if not capabilities.fully_supported:
            logger.info(
                "CLI tool %s lacks required flags: %s",
                path,
                ", ".join(capabilities.missing()),
            )
            continue
        return DetectedCliTool(
            kind=BackendKind.CLAUDE_CODE,
            path=path,
            capabilities=capabilities,
        )
    return None


class CliToolBackend:
    """Run one analysis request through the local CLI tool."""

    token_budget: int | None = None

    def __init__(
        self,
        tool: DetectedCliTool,
        *,
        timeout_seconds: float = 300.0,
        grace_seconds: float = 5.0,
        max_input_bytes: int = DEFAULT_MAX_INPUT_BYTES,
        model: str = CLI_TOOL_MODEL_LABEL,
    ) -> None:
        self.tool = tool
        self.kind = tool.kind
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.grace_seconds = grace_seconds
        self.max_input_bytes = max_input_bytes

    def build_args(self) -> list[str]:
        """Flags forcing a single non-interactive call with no tool access."""

        args = ["-p", "--tools", "", "--output-format", "json", "--input-format", "text"]
        if self.tool.capabilities.no_session_persistence:
            args.append("--no-session-persistence")
        return args

    def build_env(self) -> dict[str, str]:
        return {**os.environ, **NON_INTERACTIVE_ENV}

    async def analyze(self, request: AnalysisRequest) -> str:
        result = await run_subprocess(
            self.tool.path,
            self.build_args(),
            stdin=request.render_input().encode("utf-8"),
            timeout_seconds=self.timeout_seconds,
            env=self.build_env(),
            grace_seconds=self.grace_seconds,
            max_input_bytes=self.max_input_bytes,
        )
        return parse_tool_output(result.stdout_text)


def parse_tool_output(stdout_text: str) -> str:
    """Unwrap the tool's ``{"type": "result", ...}`` envelope into JSON text."""

    wrapper = _load_wrapper(stdout_text)
    if wrapper.get("type") != "result":
        raise InvalidResponse(f"Unexpected CLI output type: {wrapper.get('type')!r}")
    if wrapper.get("is_error"):
        detail = str(wrapper.get("error") or wrapper.get("result") or "unknown error")
        if any(marker in detail.lower() for marker in _AUTH_MARKERS):
            raise AuthenticationRequired(f"CLI tool requires authentication: {detail}")
        raise InvalidResponse(
            f"CLI tool reported an error: {sanitize_preview(detail, max_chars=500)}",
        )

    result = wrapper.get("result")
    if result is None:
        raise InvalidResponse("CLI output has no 'result' field.")
    if not isinstance(result, str):
        return json.dumps(result, ensure_ascii=False)
    return normalize_json_text(result)


def _load_wrapper(stdout_text: str) -> dict[str, object]:
    text = stdout_text.strip()
    if not text:
        raise InvalidResponse("CLI tool produced no output.")
    candidates = [text, *reversed([line for line in text.splitlines() if line.strip()])]
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
        if isinstance(parsed, list):
            for entry in reversed(parsed):
                if isinstance(entry, dict) and entry.get("type") == "result":
                    return entry
    raise InvalidResponse(
        f"CLI output is not a JSON envelope: {sanitize_preview(text, max_chars=200)!r}",
    )

