"""Runtime configuration for the analysis queue and its backends."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

GEMINI_DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
GEMINI_DEFAULT_MODEL = "gemini-2.0-flash"
PAYLOAD_MODES = ("minimized", "expanded", "metadata")


@dataclass(slots=True)
class AnalysisSettings:
    """User-level analysis preferences."""

    allow_external_analysis: bool = False
    payload_mode: str = "minimized"


@dataclass(slots=True)
class CliToolSettings:
    """Local CLI tool backend settings."""

    custom_path: Path | None = None
    timeout_seconds: float = 300.0
    grace_seconds: float = 5.0
    max_input_bytes: int = 500_000


@dataclass(slots=True)
class HttpBackendSettings:
    """Remote structured-generation API settings."""

    api_key: str | None = None
    model: str = GEMINI_DEFAULT_MODEL
    base_url: str = GEMINI_DEFAULT_BASE_URL
    timeout_seconds: float = 30.0
    token_budget: int = 100_000

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.api_key.strip())


@dataclass(slots=True)
class QueueSettings:
    """Queue processing and maintenance settings."""

    batch_size: int = 10
    max_attempts: int = 3
    stale_claim_seconds: int = 600
    reaper_interval_seconds: int = 300
    retention_days: int = 30
    owner_id: str = field(default_factory=lambda: f"{socket.gethostname()}-{os.getpid()}")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".convo_insights.db")
    sqlite_busy_timeout_ms: int = 5_000
    analysis: AnalysisSettings = field(default_factory=AnalysisSettings)
    cli_tool: CliToolSettings = field(default_factory=CliToolSettings)
    http: HttpBackendSettings = field(default_factory=HttpBackendSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        custom_tool_path = os.getenv("CONVO_INSIGHTS_CLI_TOOL_PATH", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("CONVO_INSIGHTS_DB_PATH", ".convo_insights.db")),
            sqlite_busy_timeout_ms=int(os.getenv("CONVO_INSIGHTS_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            analysis=AnalysisSettings(
                allow_external_analysis=_env_bool(
                    "CONVO_INSIGHTS_ALLOW_EXTERNAL_ANALYSIS",
                    default=False,
                ),
                payload_mode=os.getenv("CONVO_INSIGHTS_PAYLOAD_MODE", "minimized").strip().lower(),
            ),
            cli_tool=CliToolSettings(
                custom_path=Path(custom_tool_path).expanduser() if custom_tool_path else None,
                timeout_seconds=float(os.getenv("CONVO_INSIGHTS_CLI_TIMEOUT_SECONDS", "300")),
                grace_seconds=float(os.getenv("CONVO_INSIGHTS_CLI_GRACE_SECONDS", "5")),
                max_input_bytes=int(os.getenv("CONVO_INSIGHTS_CLI_MAX_INPUT_BYTES", "500000")),
            ),
            http=HttpBackendSettings(
                api_key=os.getenv("CONVO_INSIGHTS_GEMINI_API_KEY") or None,
                model=os.getenv("CONVO_INSIGHTS_GEMINI_MODEL", GEMINI_DEFAULT_MODEL),
                base_url=os.getenv("CONVO_INSIGHTS_GEMINI_BASE_URL", GEMINI_DEFAULT_BASE_URL),
                timeout_seconds=float(os.getenv("CONVO_INSIGHTS_GEMINI_TIMEOUT_SECONDS", "30")),
                token_budget=int(os.getenv("CONVO_INSIGHTS_GEMINI_TOKEN_BUDGET", "100000")),
            ),
            queue=QueueSettings(
                batch_size=int(os.getenv("CONVO_INSIGHTS_BATCH_SIZE", "10")),
                max_attempts=int(os.getenv("CONVO_INSIGHTS_MAX_ATTEMPTS", "3")),
                stale_claim_seconds=int(os.getenv("CONVO_INSIGHTS_STALE_CLAIM_SECONDS", "600")),
                reaper_interval_seconds=int(
                    os.getenv("CONVO_INSIGHTS_REAPER_INTERVAL_SECONDS", "300"),
                ),
                retention_days=int(os.getenv("CONVO_INSIGHTS_RETENTION_DAYS", "30")),
                owner_id=os.getenv("CONVO_INSIGHTS_OWNER_ID")
                or f"{socket.gethostname()}-{os.getpid()}",
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.analysis.payload_mode not in PAYLOAD_MODES:
            raise ValueError(
                "CONVO_INSIGHTS_PAYLOAD_MODE must be one of "
                f"{', '.join(PAYLOAD_MODES)}, got {self.analysis.payload_mode!r}.",
            )
        if self.cli_tool.timeout_seconds <= 0:
            raise ValueError("CONVO_INSIGHTS_CLI_TIMEOUT_SECONDS must be > 0.")
        if self.cli_tool.grace_seconds < 0:
            raise ValueError("CONVO_INSIGHTS_CLI_GRACE_SECONDS must be >= 0.")
        if self.cli_tool.max_input_bytes <= 0:
            raise ValueError("CONVO_INSIGHTS_CLI_MAX_INPUT_BYTES must be > 0.")
        if self.http.timeout_seconds <= 0:
            raise ValueError("CONVO_INSIGHTS_GEMINI_TIMEOUT_SECONDS must be > 0.")
        if self.http.token_budget <= 0:
            raise ValueError("CONVO_INSIGHTS_GEMINI_TOKEN_BUDGET must be > 0.")
        _validate_base_url(self.http.base_url)
        if self.queue.batch_size <= 0:
            raise ValueError("CONVO_INSIGHTS_BATCH_SIZE must be a positive integer.")
        if self.queue.max_attempts <= 0:
            raise ValueError("CONVO_INSIGHTS_MAX_ATTEMPTS must be a positive integer.")
        if self.queue.stale_claim_seconds <= 0:
            raise ValueError("CONVO_INSIGHTS_STALE_CLAIM_SECONDS must be > 0.")
        if self.queue.retention_days < 0:
            raise ValueError("CONVO_INSIGHTS_RETENTION_DAYS must be >= 0.")


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid CONVO_INSIGHTS_GEMINI_BASE_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
