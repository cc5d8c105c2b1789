"""Domain models for the analysis queue and orchestration cycle."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from convo_insights.orchestrator.errors import InvalidResponse

RESULT_SCHEMA_VERSION = 1


class AnalysisType(str, Enum):
    """Kinds of analysis that can be requested."""

    WORKFLOW = "workflow"
    LEARNING = "learning"
    SUMMARY = "summary"
    DEDUPE = "dedupe"

    @property
    def is_conversation_keyed(self) -> bool:
        return self is not AnalysisType.DEDUPE


class QueueItemStatus(str, Enum):
    """Durable queue item lifecycle states."""

    PENDING = "pending"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"


class BackendKind(str, Enum):
    """Execution backend families."""

    CLAUDE_CODE = "claude_code"
    GEMINI = "gemini"

    @property
    def is_http(self) -> bool:
        return self is BackendKind.GEMINI


@dataclass(slots=True)
class QueueItemCreate:
    """Input payload for enqueueing one analysis request."""

    conversation_id: str
    analysis_type: AnalysisType
    priority: int = 0
    max_attempts: int = 3
    queue_id: str | None = None


@dataclass(slots=True)
class QueueItemView:
    """Queue item projection used by orchestrator and CLI."""

    queue_id: str
    conversation_id: str
    analysis_type: AnalysisType
    status: QueueItemStatus
    priority: int
    attempt_count: int
    max_attempts: int
    schema_version: int
    claimed_by: str | None
    claimed_at: datetime | None
    backend: str | None
    model: str | None
    result_json: str | None
    error_message: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    results_applied_at: datetime | None


@dataclass(slots=True)
class QueueEventView:
    """Audit event row for one queue item."""

    event_id: int
    queue_id: str
    event_type: str
    status_from: str | None
    status_to: str | None
    details_json: str | None
    created_at: datetime


@dataclass(slots=True)
class Conversation:
    """Conversation metadata as stored locally."""

    conversation_id: str
    provider: str
    title: str | None
    project_path: str | None
    created_at: datetime
    updated_at: datetime
    summary: str | None = None


@dataclass(slots=True)
class Message:
    """One conversation message."""

    message_id: str
    conversation_id: str
    role: str
    content: str
    created_at: datetime


@dataclass(slots=True)
class LearningRecord:
    """Compact learning view used for dedupe analysis."""

    learning_id: str
    rule: str
    learning_type: str
    confidence: float


@dataclass(slots=True)
class MessagePayload:
    """Message as sent to a backend."""

    id: str
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "role": self.role, "content": self.content}


@dataclass(slots=True)
class ConversationPayload:
    """Compact, size-bounded conversation representation for one backend call."""

    id: str
    title: str
    messages: list[MessagePayload]
    message_count: int
    estimated_character_count: int
    was_truncated: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [message.to_dict() for message in self.messages],
            "messageCount": self.message_count,
            "wasTruncated": self.was_truncated,
        }


@dataclass(slots=True)
class BackendResult:
    """One parsed backend result object matched to its queue item."""

    correlation_id: str
    structured_output: dict[str, Any]


@dataclass(slots=True)
class ScanScope:
    """Filter applied to the conversation universe before a full scan."""

    time_window_days: int | None = None
    project_path: str | None = None
    providers: tuple[str, ...] = ()

    def updated_since(self, now: datetime) -> datetime | None:
        if self.time_window_days is None:
            return None
        return now - timedelta(days=self.time_window_days)


@dataclass(slots=True)
class ProgressEvent:
    """Progress notification emitted during queue processing."""

    stage: str
    analysis_type: AnalysisType | None = None
    processed: int = 0
    total: int = 0
    message: str = ""


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass(slots=True)
class CycleSummary:
    """Aggregate counters for one claim-prepare-execute-map cycle."""

    claimed: int = 0
    completed: int = 0
    failed: int = 0
    backend: str | None = None
    model: str | None = None

    @property
    def terminal(self) -> int:
        return self.completed + self.failed


@dataclass(slots=True)
class FullScanProgress:
    """Gauge state for a running full scan."""

    total_queued: int = 0
    processed: int = 0
    completed: int = 0
    failed: int = 0
    cycles: int = 0
    elapsed_seconds: float = 0.0
    eta_seconds: float | None = None
    cancelled: bool = False
    stalled: bool = False

    def update_eta(self, *, elapsed_seconds: float) -> None:
        self.elapsed_seconds = elapsed_seconds
        if self.processed <= 0 or elapsed_seconds <= 0:
            self.eta_seconds = None
            return
        rate = self.processed / elapsed_seconds
        remaining = max(self.total_queued - self.processed, 0)
        self.eta_seconds = remaining / rate


@dataclass(slots=True)
class WorkflowResult:
    action: str
    artifact: str
    domains: list[str]
    confidence: float
    reasoning: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> WorkflowResult:
        return cls(
            action=_require_str(payload, "action"),
            artifact=_require_str(payload, "artifact"),
            domains=_str_list(payload.get("domains")),
            confidence=_confidence(payload),
            reasoning=_optional_str(payload.get("reasoning")),
        )


@dataclass(slots=True)
class ExtractedLearning:
    type: str
    rule: str
    confidence: float
    pattern: str | None = None
    message_id: str | None = None
    context: str | None = None
    evidence: str | None = None


@dataclass(slots=True)
class LearningResult:
    learnings: list[ExtractedLearning] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> LearningResult:
        raw = payload.get("learnings")
        if not isinstance(raw, list):
            raise InvalidResponse("Learning result must contain a 'learnings' array.")
        learnings: list[ExtractedLearning] = []
        for entry in raw:
            if not isinstance(entry, dict):
                raise InvalidResponse("Learning entries must be JSON objects.")
            learnings.append(
                ExtractedLearning(
                    type=_require_str(entry, "type"),
                    rule=_require_str(entry, "rule"),
                    confidence=_confidence(entry),
                    pattern=_optional_str(entry.get("pattern")),
                    message_id=_optional_str(entry.get("message_id")),
                    context=_optional_str(entry.get("context")),
                    evidence=_optional_str(entry.get("evidence")),
                ),
            )
        return cls(learnings=learnings)


@dataclass(slots=True)
class SummaryResult:
    suggested_title: str
    suggested_summary: str
    confidence: float

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> SummaryResult:
        return cls(
            suggested_title=_require_str(payload, "suggested_title"),
            suggested_summary=_require_str(payload, "suggested_summary"),
            confidence=_confidence(payload),
        )


@dataclass(slots=True)
class MergeSuggestion:
    source_ids: list[str]
    merged_rule: str
    confidence: float
    reasoning: str | None = None


@dataclass(slots=True)
class DedupeResult:
    merge_suggestions: list[MergeSuggestion] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> DedupeResult:
        raw = payload.get("merge_suggestions")
        if not isinstance(raw, list):
            raise InvalidResponse("Dedupe result must contain a 'merge_suggestions' array.")
        suggestions: list[MergeSuggestion] = []
        for entry in raw:
            if not isinstance(entry, dict):
                raise InvalidResponse("Merge suggestions must be JSON objects.")
            source_ids = _str_list(entry.get("source_ids"))
            if len(source_ids) < 2:  # noqa: PLR2004
                raise InvalidResponse("Merge suggestion needs at least two source_ids.")
            suggestions.append(
                MergeSuggestion(
                    source_ids=source_ids,
                    merged_rule=_require_str(entry, "merged_rule"),
                    confidence=_confidence(entry),
                    reasoning=_optional_str(entry.get("reasoning")),
                ),
            )
        return cls(merge_suggestions=suggestions)


AnalysisResult = WorkflowResult | LearningResult | SummaryResult | DedupeResult

_RESULT_TYPES: dict[AnalysisType, type[AnalysisResult]] = {
    AnalysisType.WORKFLOW: WorkflowResult,
    AnalysisType.LEARNING: LearningResult,
    AnalysisType.SUMMARY: SummaryResult,
    AnalysisType.DEDUPE: DedupeResult,
}


def decode_result(analysis_type: AnalysisType, payload: dict[str, Any]) -> AnalysisResult:
    """Decode a raw result object into the variant tagged by ``analysis_type``."""

    return _RESULT_TYPES[analysis_type].from_payload(payload)


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidResponse(f"Missing or empty string field {key!r}.")
    return value.strip()


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _str_list(value: object) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise InvalidResponse("Expected a JSON array of strings.")
    return [str(item).strip() for item in value if str(item).strip()]


def _confidence(payload: dict[str, Any]) -> float:
    value = payload.get("confidence", 0.0)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise InvalidResponse("Field 'confidence' must be a number.")
    return min(max(float(value), 0.0), 1.0)
