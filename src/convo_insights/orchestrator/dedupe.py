"""Learning deduplication, run outside the conversation queue."""

from __future__ import annotations

import json
import logging

from convo_insights.orchestrator.backend.base import AnalysisRequest
from convo_insights.orchestrator.errors import InvalidResponse, NoBackendAvailable
from convo_insights.orchestrator.models import AnalysisType, DedupeResult, LearningRecord
from convo_insights.orchestrator.payload import ELLIPSIS, METADATA_MODE, message_limits
from convo_insights.orchestrator.prompts import prompt_for, response_schema_for
from convo_insights.orchestrator.redaction import redact_text
from convo_insights.orchestrator.routing import BackendSelector
from convo_insights.orchestrator.stores import LearningStore

logger = logging.getLogger(__name__)

MIN_LEARNINGS_FOR_DEDUPE = 2


def build_dedupe_request(
    learnings: list[LearningRecord],
    *,
    payload_mode: str = "minimized",
) -> AnalysisRequest:
    """One request carrying every learning with its rule redacted and capped."""

    # Learning rules are always sent; metadata mode caps them like minimized.
    limits_mode = "minimized" if payload_mode == METADATA_MODE else payload_mode
    max_chars, _ = message_limits(AnalysisType.DEDUPE, mode=limits_mode)
    entries = []
    for learning in learnings:
        rule = redact_text(learning.rule)
        if len(rule) > max_chars:
            rule = rule[:max_chars] + ELLIPSIS
        entries.append(
            {
                "id": learning.learning_id,
                "rule": rule,
                "type": learning.learning_type,
                "confidence": learning.confidence,
            },
        )
    return AnalysisRequest(
        analysis_type=AnalysisType.DEDUPE,
        prompt=prompt_for(AnalysisType.DEDUPE),
        data={"analysisType": AnalysisType.DEDUPE.value, "learnings": entries},
        response_schema=response_schema_for(AnalysisType.DEDUPE),
    )


async def run_dedupe_analysis(
    *,
    learning_store: LearningStore,
    selector: BackendSelector,
    payload_mode: str = "minimized",
) -> DedupeResult:
    """Ask the selected backend which learnings say the same thing.

    Fewer than two learnings short-circuits to an empty result without
    selecting a backend.
    """

    learnings = learning_store.list_for_dedupe()
    if len(learnings) < MIN_LEARNINGS_FOR_DEDUPE:
        logger.info("Dedupe skipped: %d learnings available", len(learnings))
        return DedupeResult()

    backend = await selector.select_backend()
    if backend is None:
        raise NoBackendAvailable("No analysis backend available for dedupe.")

    request = build_dedupe_request(learnings, payload_mode=payload_mode)
    raw_output = await backend.analyze(request)
    try:
        payload = json.loads(raw_output)
    except json.JSONDecodeError as error:
        raise InvalidResponse(f"Dedupe output is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise InvalidResponse("Dedupe output must be a JSON object.")

    result = DedupeResult.from_payload(payload)
    known_ids = {learning.learning_id for learning in learnings}
    result.merge_suggestions = [
        suggestion
        for suggestion in result.merge_suggestions
        if set(suggestion.source_ids) <= known_ids
    ]
    logger.info(
        "Dedupe over %d learnings produced %d merge suggestions",
        len(learnings),
        len(result.merge_suggestions),
    )
    return result
