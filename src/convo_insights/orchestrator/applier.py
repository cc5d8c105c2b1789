"""Turn completed queue results into conversation, learning and signature rows."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from convo_insights.orchestrator.errors import InvalidResponse
from convo_insights.orchestrator.models import (
    AnalysisType,
    LearningResult,
    QueueItemView,
    SummaryResult,
    WorkflowResult,
    decode_result,
)
from convo_insights.orchestrator.repository import QueueRepository
from convo_insights.orchestrator.stores import (
    SqlConversationStore,
    SqlLearningStore,
    SqlWorkflowSignatureStore,
)

logger = logging.getLogger(__name__)

SUMMARY_MIN_CONFIDENCE = 0.5


@dataclass(slots=True)
class ApplySummary:
    applied: int = 0
    skipped: int = 0
    learnings_added: int = 0
    signatures_added: int = 0
    titles_updated: int = 0


class ResultApplier:
    """Consumes completed items exactly once, keyed by ``source_queue_id``."""

    def __init__(
        self,
        *,
        repository: QueueRepository,
        conversations: SqlConversationStore,
        learnings: SqlLearningStore,
        signatures: SqlWorkflowSignatureStore,
    ) -> None:
        self.repository = repository
        self.conversations = conversations
        self.learnings = learnings
        self.signatures = signatures

    def apply_pending(self, *, limit: int = 100) -> ApplySummary:
        summary = ApplySummary()
        for item in self.repository.list_unapplied_completed(limit=limit):
            try:
                self._apply(item, summary)
            except (InvalidResponse, json.JSONDecodeError) as error:
                # Malformed rows are stamped applied too.
                logger.warning("Skipping malformed result for %s: %s", item.queue_id, error)
                summary.skipped += 1
            else:
                summary.applied += 1
            self.repository.mark_results_applied(queue_id=item.queue_id)
        return summary

    def _apply(self, item: QueueItemView, summary: ApplySummary) -> None:
        payload = json.loads(item.result_json or "")
        if not isinstance(payload, dict):
            raise InvalidResponse("Stored result is not a JSON object.")
        result = decode_result(item.analysis_type, payload)

        if isinstance(result, SummaryResult):
            if result.confidence < SUMMARY_MIN_CONFIDENCE:
                logger.info(
                    "Summary for %s below confidence threshold (%.2f)",
                    item.conversation_id,
                    result.confidence,
                )
                return
            if self.conversations.update_title_and_summary(
                item.conversation_id,
                title=result.suggested_title,
                summary=result.suggested_summary,
            ):
                summary.titles_updated += 1
        elif isinstance(result, LearningResult):
            summary.learnings_added += self.learnings.record_learnings(
                conversation_id=item.conversation_id,
                source_queue_id=item.queue_id,
                learnings=result.learnings,
            )
        elif isinstance(result, WorkflowResult):
            if self.signatures.record(
                conversation_id=item.conversation_id,
                source_queue_id=item.queue_id,
                result=result,
            ):
                summary.signatures_added += 1
        elif item.analysis_type is AnalysisType.DEDUPE:
            logger.warning("Dedupe result %s found in queue; nothing to apply", item.queue_id)
