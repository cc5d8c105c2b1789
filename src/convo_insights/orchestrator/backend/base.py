"""Backend interface for analysis execution."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Protocol

from convo_insights.orchestrator.models import (
    RESULT_SCHEMA_VERSION,
    AnalysisType,
    BackendKind,
    ConversationPayload,
    QueueItemView,
)

INPUT_DATA_SEPARATOR = "\n\n---INPUT DATA---\n"


@dataclass(slots=True)
class BatchEntry:
    """One claimed queue item paired with its prepared conversation."""

    item: QueueItemView
    conversation: ConversationPayload


@dataclass(slots=True)
class AnalysisRequest:
    """Inputs required to execute one backend call."""

    analysis_type: AnalysisType
    prompt: str
    data: dict[str, Any]
    response_schema: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_batch(
        cls,
        *,
        analysis_type: AnalysisType,
        prompt: str,
        entries: list[BatchEntry],
        response_schema: dict[str, Any],
    ) -> AnalysisRequest:
        """Build the per-batch payload with correlation ids for every item."""

        return cls(
            analysis_type=analysis_type,
            prompt=prompt,
            data={
                "queueItems": [
                    {"queueId": entry.item.queue_id, "conversationId": entry.item.conversation_id}
                    for entry in entries
                ],
                "conversations": [entry.conversation.to_dict() for entry in entries],
                "analysisType": analysis_type.value,
                "schemaVersion": RESULT_SCHEMA_VERSION,
            },
            response_schema=response_schema,
        )

    def render_input(self) -> str:
        """Prompt followed by the serialized input data."""

        return self.prompt + INPUT_DATA_SEPARATOR + json.dumps(self.data, ensure_ascii=False)


class AnalysisBackend(Protocol):
    """Protocol implemented by execution backends."""

    kind: BackendKind
    model: str
    token_budget: int | None

    async def analyze(self, request: AnalysisRequest) -> str:
        """Run one call and return the backend's JSON text."""
