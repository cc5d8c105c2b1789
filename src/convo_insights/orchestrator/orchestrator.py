"""Queue processing cycle and full-scan driver."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field

from convo_insights.config import AnalysisSettings
from convo_insights.orchestrator.backend.base import AnalysisBackend, AnalysisRequest, BatchEntry
from convo_insights.orchestrator.errors import NoBackendAvailable, QueueError
from convo_insights.orchestrator.models import (
    AnalysisType,
    CycleSummary,
    FullScanProgress,
    ProgressCallback,
    ProgressEvent,
    QueueItemCreate,
    QueueItemView,
    ScanScope,
)
from convo_insights.orchestrator.payload import PayloadPreparer, fit_to_token_budget
from convo_insights.orchestrator.prompts import prompt_for, response_schema_for
from convo_insights.orchestrator.redaction import redact_payload
from convo_insights.orchestrator.repository import QueueRepository
from convo_insights.orchestrator.result_mapper import ResultMapper
from convo_insights.orchestrator.routing import BackendSelector
from convo_insights.orchestrator.splitter import run_with_adaptive_split
from convo_insights.orchestrator.stores import ConversationStore, LearningStore

logger = logging.getLogger(__name__)

DEDUPE_IN_QUEUE_REASON = (
    "Dedupe cannot be processed via queue; it operates on learnings, not conversations. "
    "Use run_dedupe_analysis instead."
)
TOKEN_BUDGET_DROP_REASON = "Conversation dropped due to context window truncation"
MISSING_CONVERSATION_REASON = "Conversation not found in local store"


@dataclass(slots=True)
class _GroupOutcome:
    completed: int = 0
    failed: int = 0
    resolved: set[str] = field(default_factory=set)


class AnalysisOrchestrator:
    """Claims queued items, runs them through a backend and records outcomes.

    Every claimed item ends the cycle completed or failed: errors local to
    an item fail that item, errors escaping a type group fail the group's
    unresolved items, and nothing is left ``claimed``. Store calls run in
    worker threads so the event loop never waits on SQLite.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: QueueRepository,
        conversation_store: ConversationStore,
        learning_store: LearningStore,
        selector: BackendSelector,
        settings: AnalysisSettings,
        owner_id: str,
        preparer: PayloadPreparer | None = None,
        max_attempts: int = 3,
    ) -> None:
        self.repository = repository
        self.conversation_store = conversation_store
        self.learning_store = learning_store
        self.selector = selector
        self.settings = settings
        self.owner_id = owner_id
        self.preparer = preparer or PayloadPreparer(
            conversation_store,
            payload_mode=settings.payload_mode,
        )
        self.max_attempts = max_attempts
        self.mapper = ResultMapper(repository)
        self.last_error: str | None = None
        self.progress: FullScanProgress | None = None

    async def enqueue(
        self,
        conversation_ids: list[str],
        analysis_type: AnalysisType,
        *,
        priority: int = 0,
    ) -> list[QueueItemView]:
        """Create one pending item per conversation id; duplicates are allowed."""

        if not analysis_type.is_conversation_keyed:
            raise QueueError(
                "Dedupe operates on learnings, not conversations; "
                "it cannot be enqueued. Use run_dedupe_analysis instead.",
            )
        items = await asyncio.to_thread(
            self.repository.insert_many,
            [
                QueueItemCreate(
                    conversation_id=conversation_id,
                    analysis_type=analysis_type,
                    priority=priority,
                    max_attempts=self.max_attempts,
                )
                for conversation_id in conversation_ids
            ],
        )
        logger.info("Enqueued %d %s items", len(items), analysis_type.value)
        return items

    async def pending_count(self) -> int:
        return await asyncio.to_thread(self.repository.pending_count)

    async def process_queue(
        self,
        *,
        batch_size: int,
        on_progress: ProgressCallback | None = None,
    ) -> CycleSummary:
        """Run one claim-prepare-execute-map cycle."""

        backend = await self.selector.select_backend()
        if backend is None:
            self.last_error = "No analysis backend available"
            raise NoBackendAvailable(
                "No analysis backend available: enable external analysis and install "
                "a capable CLI tool or configure a Gemini API key.",
            )

        claimed = await asyncio.to_thread(
            self.repository.claim_pending,
            count=batch_size,
            owner_id=self.owner_id,
        )
        summary = CycleSummary(
            claimed=len(claimed),
            backend=backend.kind.value,
            model=backend.model,
        )
        if not claimed:
            return summary
        _notify(
            on_progress,
            ProgressEvent(stage="claimed", total=len(claimed), message=f"{len(claimed)} claimed"),
        )

        groups: dict[AnalysisType, list[QueueItemView]] = defaultdict(list)
        for item in claimed:
            if not item.analysis_type.is_conversation_keyed:
                if await asyncio.to_thread(
                    self.repository.mark_failed,
                    queue_id=item.queue_id,
                    reason=DEDUPE_IN_QUEUE_REASON,
                ):
                    summary.failed += 1
                continue
            groups[item.analysis_type].append(item)

        for analysis_type, items in groups.items():
            outcome = await self._process_group(backend, analysis_type, items)
            summary.completed += outcome.completed
            summary.failed += outcome.failed
            _notify(
                on_progress,
                ProgressEvent(
                    stage="group_done",
                    analysis_type=analysis_type,
                    processed=summary.terminal,
                    total=summary.claimed,
                ),
            )

        logger.info(
            "Cycle finished: claimed=%d completed=%d failed=%d backend=%s",
            summary.claimed,
            summary.completed,
            summary.failed,
            summary.backend,
        )
        return summary

    async def _process_group(
        self,
        backend: AnalysisBackend,
        analysis_type: AnalysisType,
        items: list[QueueItemView],
    ) -> _GroupOutcome:
        outcome = _GroupOutcome()
        try:
            await self._run_group(backend, analysis_type, items, outcome)
        except Exception as error:  # noqa: BLE001
            self.last_error = str(error)
            logger.exception("%s group of %d items failed", analysis_type.value, len(items))
            for item in items:
                if item.queue_id in outcome.resolved:
                    continue
                await self._fail(
                    outcome,
                    item.queue_id,
                    str(error) or type(error).__name__,
                    backend,
                )
        return outcome

    async def _run_group(
        self,
        backend: AnalysisBackend,
        analysis_type: AnalysisType,
        items: list[QueueItemView],
        outcome: _GroupOutcome,
    ) -> None:
        prepared = await asyncio.to_thread(
            self.preparer.prepare,
            [item.conversation_id for item in items],
            analysis_type,
        )
        payloads = {payload.id: redact_payload(payload) for payload in prepared}

        if backend.kind.is_http and backend.token_budget is not None:
            fit = fit_to_token_budget(list(payloads.values()), budget_tokens=backend.token_budget)
            payloads = {payload.id: payload for payload in fit.kept}
            dropped = set(fit.dropped_ids)
        else:
            dropped = set()

        entries: list[BatchEntry] = []
        for item in items:
            if item.conversation_id in dropped:
                await self._fail(outcome, item.queue_id, TOKEN_BUDGET_DROP_REASON, backend)
            elif item.conversation_id not in payloads:
                await self._fail(outcome, item.queue_id, MISSING_CONVERSATION_REASON, backend)
            else:
                entries.append(BatchEntry(item=item, conversation=payloads[item.conversation_id]))
        if not entries:
            return

        async def execute(batch: list[BatchEntry]) -> str:
            request = AnalysisRequest.for_batch(
                analysis_type=analysis_type,
                prompt=prompt_for(analysis_type),
                entries=batch,
                response_schema=response_schema_for(analysis_type),
            )
            await asyncio.to_thread(
                self.repository.touch_claims,
                [entry.item.queue_id for entry in batch],
            )
            return await backend.analyze(request)

        split = await run_with_adaptive_split(entries, execute)
        for queue_id, reason in split.rejected.items():
            await self._fail(outcome, queue_id, reason, backend)
        for queue_id, reason in split.failed.items():
            self.last_error = reason
            await self._fail(outcome, queue_id, reason, backend)

        unresolved = split.rejected.keys() | split.failed.keys()
        mappable = [entry for entry in entries if entry.item.queue_id not in unresolved]
        if not mappable:
            return
        mapped = await asyncio.to_thread(
            self.mapper.map_results,
            split.output,
            mappable,
            analysis_type=analysis_type,
            backend=backend.kind.value,
            model=backend.model,
        )
        outcome.completed += mapped.completed
        outcome.failed += mapped.failed
        outcome.resolved.update(entry.item.queue_id for entry in mappable)

    async def _fail(
        self,
        outcome: _GroupOutcome,
        queue_id: str,
        reason: str,
        backend: AnalysisBackend,
    ) -> None:
        outcome.resolved.add(queue_id)
        if await asyncio.to_thread(
            self.repository.mark_failed,
            queue_id=queue_id,
            reason=reason,
            backend=backend.kind.value,
            model=backend.model,
        ):
            outcome.failed += 1

    async def run_full_scan(  # noqa: PLR0913
        self,
        types: list[AnalysisType],
        scope: ScanScope,
        *,
        batch_size: int = 10,
        cancel_event: asyncio.Event | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> FullScanProgress:
        """Enqueue every in-scope conversation for each type and drain the queue."""

        scan_types = [kind for kind in types if kind.is_conversation_keyed]
        conversation_ids = await asyncio.to_thread(self.conversation_store.list_ids, scope)
        progress = FullScanProgress(total_queued=len(conversation_ids) * len(scan_types))
        self.progress = progress
        for analysis_type in scan_types:
            await self.enqueue(conversation_ids, analysis_type)
        _notify(
            on_progress,
            ProgressEvent(stage="queued", total=progress.total_queued),
        )

        started = time.monotonic()
        while await self.pending_count() > 0:
            if cancel_event is not None and cancel_event.is_set():
                progress.cancelled = True
                logger.info("Full scan cancelled after %d cycles", progress.cycles)
                break
            summary = await self.process_queue(batch_size=batch_size, on_progress=on_progress)
            if summary.claimed == 0:
                progress.stalled = True
                logger.warning(
                    "Full scan stalled: %d items pending but none claimable",
                    await self.pending_count(),
                )
                break
            progress.cycles += 1
            progress.completed += summary.completed
            progress.failed += summary.failed
            progress.processed += summary.terminal
            progress.update_eta(elapsed_seconds=time.monotonic() - started)
            _notify(
                on_progress,
                ProgressEvent(
                    stage="scan",
                    processed=progress.processed,
                    total=progress.total_queued,
                ),
            )

        progress.elapsed_seconds = time.monotonic() - started
        return progress


def _notify(callback: ProgressCallback | None, event: ProgressEvent) -> None:
    if callback is not None:
        callback(event)
