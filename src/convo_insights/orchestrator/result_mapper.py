"""Reconcile backend output with claimed queue items."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from convo_insights.orchestrator.backend.base import BatchEntry
from convo_insights.orchestrator.errors import InvalidResponse
from convo_insights.orchestrator.models import AnalysisType, BackendResult, decode_result
from convo_insights.orchestrator.repository import QueueRepository

logger = logging.getLogger(__name__)

NO_RESULT_REASON = "No result returned for this queue item"
_LIST_KEYS = ("results", "items", "learnings", "workflows", "summaries")


@dataclass(slots=True)
class MappingSummary:
    """Terminal transitions written for one mapped batch."""

    completed: int = 0
    failed: int = 0


def parse_result_objects(raw_output: str) -> list[dict[str, Any]]:
    """Result objects from a JSON array, a wrapping object, or NDJSON lines.

    Non-object entries are skipped. Raises ``InvalidResponse`` only when
    nothing at all can be read.
    """

    text = raw_output.strip()
    if not text:
        raise InvalidResponse("Backend returned empty output.")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return _parse_ndjson(text)

    if isinstance(parsed, list):
        return [entry for entry in parsed if isinstance(entry, dict)]
    if isinstance(parsed, dict):
        if "queue_id" in parsed:
            return [parsed]
        for key in _LIST_KEYS:
            value = parsed.get(key)
            if isinstance(value, list):
                return [entry for entry in value if isinstance(entry, dict)]
        return [parsed]
    raise InvalidResponse("Backend output must be a JSON array or object.")


def _parse_ndjson(text: str) -> list[dict[str, Any]]:
    objects: list[dict[str, Any]] = []
    skipped = 0
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        try:
            value = json.loads(stripped)
        except json.JSONDecodeError:
            skipped += 1
            continue
        if isinstance(value, dict):
            objects.append(value)
        else:
            skipped += 1
    if skipped:
        logger.warning("Skipped %d non-object lines in backend output", skipped)
    if not objects:
        raise InvalidResponse("Backend output contains no JSON result objects.")
    return objects


def index_by_queue_id(objects: list[dict[str, Any]]) -> dict[str, BackendResult]:
    """First result object per ``queue_id``; objects without one are ignored."""

    indexed: dict[str, BackendResult] = {}
    for entry in objects:
        queue_id = entry.get("queue_id")
        if not isinstance(queue_id, str) or not queue_id:
            continue
        if queue_id in indexed:
            logger.warning("Duplicate result for queue item %s ignored", queue_id)
            continue
        indexed[queue_id] = BackendResult(correlation_id=queue_id, structured_output=entry)
    return indexed


class ResultMapper:
    """Writes exactly one terminal transition per mapped queue item."""

    def __init__(self, repository: QueueRepository) -> None:
        self.repository = repository

    def map_results(  # noqa: PLR0913
        self,
        raw_output: str,
        entries: list[BatchEntry],
        *,
        analysis_type: AnalysisType,
        backend: str,
        model: str | None,
    ) -> MappingSummary:
        summary = MappingSummary()
        results = index_by_queue_id(parse_result_objects(raw_output))

        for entry in entries:
            queue_id = entry.item.queue_id
            matched = results.get(queue_id)
            if matched is None:
                self._fail(summary, queue_id, NO_RESULT_REASON, backend=backend, model=model)
                continue
            try:
                decode_result(analysis_type, matched.structured_output)
            except InvalidResponse as error:
                self._fail(summary, queue_id, str(error), backend=backend, model=model)
                continue
            if self.repository.mark_completed(
                queue_id=queue_id,
                result_json=json.dumps(matched.structured_output, ensure_ascii=False),
                backend=backend,
                model=model,
            ):
                summary.completed += 1
            else:
                logger.warning("Queue item %s was no longer claimed; result dropped", queue_id)
        return summary

    def _fail(
        self,
        summary: MappingSummary,
        queue_id: str,
        reason: str,
        *,
        backend: str,
        model: str | None,
    ) -> None:
        logger.warning("Queue item %s failed: %s", queue_id, reason)
        if self.repository.mark_failed(
            queue_id=queue_id,
            reason=reason,
            backend=backend,
            model=model,
        ):
            summary.failed += 1
