"""Controllers for queue, dedupe, backend and import CLI commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import rich_click as click

from convo_insights.config import Settings
from convo_insights.orchestrator.applier import ResultApplier
from convo_insights.orchestrator.backend.http_backend import GeminiBackend
from convo_insights.orchestrator.dedupe import run_dedupe_analysis
from convo_insights.orchestrator.errors import AnalysisError
from convo_insights.orchestrator.models import (
    AnalysisType,
    Conversation,
    Message,
    QueueItemStatus,
    ScanScope,
)
from convo_insights.orchestrator.orchestrator import AnalysisOrchestrator
from convo_insights.orchestrator.reaper import StaleClaimsReaper
from convo_insights.orchestrator.repository import QueueRepository
from convo_insights.orchestrator.routing import BackendSelector
from convo_insights.orchestrator.stores import (
    SqlConversationStore,
    SqlLearningStore,
    SqlWorkflowSignatureStore,
)
from convo_insights.storage.common import utc_now


@dataclass(slots=True)
class QueueEnqueueCommand:
    """CLI input for enqueueing conversations."""

    db_path: Path | None
    analysis_type: str
    conversation_ids: tuple[str, ...]
    priority: int


@dataclass(slots=True)
class QueueProcessCommand:
    """CLI input for processing cycles."""

    db_path: Path | None
    batch_size: int | None
    cycles: int


@dataclass(slots=True)
class QueueScanCommand:
    """CLI input for a full scan."""

    db_path: Path | None
    analysis_types: tuple[str, ...]
    days: int | None
    project_path: str | None
    providers: tuple[str, ...]
    batch_size: int | None


@dataclass(slots=True)
class QueueListCommand:
    db_path: Path | None
    status: str | None
    analysis_type: str | None
    limit: int


@dataclass(slots=True)
class QueueInspectCommand:
    db_path: Path | None
    queue_id: str


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database location."""

    db_path: Path | None


@dataclass(slots=True)
class QueueReapCommand:
    """CLI input for queue maintenance."""

    db_path: Path | None
    watch: bool = False
    interval_seconds: float | None = None
    max_passes: int | None = None


@dataclass(slots=True)
class QueueApplyCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class BackendStatusCommand:
    db_path: Path | None
    validate_key: bool


@dataclass(slots=True)
class ImportConversationsCommand:
    """CLI input for loading conversations from JSON files."""

    db_path: Path | None
    paths: tuple[Path, ...]


class AnalysisCliController:
    """Coordinates queue, dedupe, backend and import CLI operations."""

    def enqueue(self, command: QueueEnqueueCommand) -> list[str]:
        settings = _settings(command.db_path)
        analysis_type = _parse_type(command.analysis_type)
        with _repository(settings) as repository, _domain_errors():
            orchestrator = _orchestrator(settings, repository)
            items = asyncio.run(
                orchestrator.enqueue(
                    list(command.conversation_ids),
                    analysis_type,
                    priority=command.priority,
                ),
            )

        lines = [f"Enqueued {len(items)} {analysis_type.value} items"]
        for item in items:
            lines.append(
                f"  {item.queue_id} conversation={item.conversation_id} priority={item.priority}",
            )
        return lines

    def process(self, command: QueueProcessCommand) -> list[str]:
        settings = _settings(command.db_path)
        batch_size = command.batch_size or settings.queue.batch_size
        lines: list[str] = []
        with _repository(settings) as repository, _domain_errors():
            orchestrator = _orchestrator(settings, repository)
            for _ in range(command.cycles):
                summary = asyncio.run(orchestrator.process_queue(batch_size=batch_size))
                lines.append(
                    "Cycle summary: "
                    f"backend={summary.backend} model={summary.model} "
                    f"claimed={summary.claimed} completed={summary.completed} "
                    f"failed={summary.failed}",
                )
                if summary.claimed == 0:
                    break
            pending = asyncio.run(orchestrator.pending_count())

        lines.append(f"Pending: {pending}")
        if orchestrator.last_error:
            lines.append(f"Last error: {orchestrator.last_error}")
        return lines

    def scan(self, command: QueueScanCommand) -> list[str]:
        settings = _settings(command.db_path)
        types = [_parse_type(value) for value in command.analysis_types] or [
            AnalysisType.WORKFLOW,
            AnalysisType.LEARNING,
            AnalysisType.SUMMARY,
        ]
        scope = ScanScope(
            time_window_days=command.days,
            project_path=command.project_path,
            providers=command.providers,
        )
        with _repository(settings) as repository, _domain_errors():
            orchestrator = _orchestrator(settings, repository)
            progress = asyncio.run(
                orchestrator.run_full_scan(
                    types,
                    scope,
                    batch_size=command.batch_size or settings.queue.batch_size,
                ),
            )

        lines = [
            "Full scan: "
            f"queued={progress.total_queued} processed={progress.processed} "
            f"completed={progress.completed} failed={progress.failed} "
            f"cycles={progress.cycles} elapsed={progress.elapsed_seconds:.1f}s",
        ]
        if progress.stalled:
            lines.append("Scan stopped early: pending items could not be claimed.")
        if orchestrator.last_error:
            lines.append(f"Last error: {orchestrator.last_error}")
        return lines

    def pending(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            counts = repository.count_by_status()
        return [
            f"Pending: {counts[QueueItemStatus.PENDING.value]}",
            "By status: " + " ".join(f"{status}={total}" for status, total in counts.items()),
        ]

    def list_items(self, command: QueueListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = _parse_status(command.status)
        analysis_type = _parse_type(command.analysis_type) if command.analysis_type else None
        with _repository(settings) as repository:
            items = repository.list_items(
                status=status,
                analysis_type=analysis_type,
                limit=command.limit,
            )

        lines = [f"Queue items: {len(items)}"]
        for item in items:
            lines.append(
                f"  {item.queue_id} type={item.analysis_type.value} status={item.status.value} "
                f"conversation={item.conversation_id} priority={item.priority} "
                f"attempt={item.attempt_count}/{item.max_attempts}",
            )
        return lines

    def inspect(self, command: QueueInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            item = repository.get(command.queue_id)
            events = repository.list_events(command.queue_id)
        if item is None:
            return [f"Queue item not found: {command.queue_id}"]

        lines = [
            f"Queue item: {item.queue_id}",
            f"Conversation: {item.conversation_id}",
            f"Type: {item.analysis_type.value}",
            f"Status: {item.status.value}",
            f"Attempt: {item.attempt_count}/{item.max_attempts}",
            f"Backend: {item.backend or '-'} model={item.model or '-'}",
            f"Error: {item.error_message or '-'}",
            f"Result: {item.result_json or '-'}",
            f"Applied: {item.results_applied_at.isoformat() if item.results_applied_at else '-'}",
            f"Events: {len(events)}",
        ]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from or '-'} -> {event.status_to or '-'}",
            )
        return lines

    def reap(self, command: QueueReapCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            reaper = StaleClaimsReaper(
                repository,
                stale_claim_seconds=settings.queue.stale_claim_seconds,
                retention_days=settings.queue.retention_days,
                interval_seconds=command.interval_seconds or settings.queue.reaper_interval_seconds,
            )
            if not command.watch:
                summary = reaper.reap()
                return [
                    f"Reaped: stale_failed={len(summary.failed_stale)} deleted={summary.deleted}",
                ]
            # Ctrl-C ends watch mode; totals cover the passes that finished.
            with suppress(KeyboardInterrupt):
                asyncio.run(reaper.run(asyncio.Event(), max_passes=command.max_passes))
        return [
            f"Reaper passes={reaper.totals.passes} "
            f"stale_failed={len(reaper.totals.failed_stale)} deleted={reaper.totals.deleted}",
        ]

    def apply(self, command: QueueApplyCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            applier = ResultApplier(
                repository=repository,
                conversations=SqlConversationStore(repository.engine),
                learnings=SqlLearningStore(repository.engine),
                signatures=SqlWorkflowSignatureStore(repository.engine),
            )
            summary = applier.apply_pending(limit=command.limit)
        return [
            "Applied: "
            f"items={summary.applied} skipped={summary.skipped} "
            f"learnings={summary.learnings_added} signatures={summary.signatures_added} "
            f"titles={summary.titles_updated}",
        ]

    def dedupe(self, command: DbCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository, _domain_errors():
            result = asyncio.run(
                run_dedupe_analysis(
                    learning_store=SqlLearningStore(repository.engine),
                    selector=BackendSelector(settings),
                    payload_mode=settings.analysis.payload_mode,
                ),
            )

        lines = [f"Merge suggestions: {len(result.merge_suggestions)}"]
        for suggestion in result.merge_suggestions:
            lines.append(
                f"  {', '.join(suggestion.source_ids)} -> {suggestion.merged_rule} "
                f"(confidence={suggestion.confidence:.2f})",
            )
        return lines

    def backend_status(self, command: BackendStatusCommand) -> list[str]:
        settings = _settings(command.db_path)
        selector = BackendSelector(settings)
        status = asyncio.run(selector.status())

        consent = (
            "allowed"
            if status.consent
            else "disabled (set CONVO_INSIGHTS_ALLOW_EXTERNAL_ANALYSIS)"
        )
        lines = [f"External analysis: {consent}"]
        if not status.consent:
            lines.append("CLI tool: not probed")
        elif status.cli_tool is None:
            lines.append("CLI tool: not found or missing required flags")
        else:
            optional = (
                " +no-session-persistence"
                if status.cli_tool.capabilities.no_session_persistence
                else ""
            )
            lines.append(f"CLI tool: {status.cli_tool.path}{optional}")
        lines.append(
            f"Gemini: {'configured' if status.http_configured else 'not configured'} "
            f"model={settings.http.model}",
        )
        if command.validate_key and status.http_configured:
            with _domain_errors():
                backend = GeminiBackend.from_settings(settings.http)
                valid = asyncio.run(backend.validate_api_key())
            lines.append(f"Gemini key: {'valid' if valid else 'rejected'}")
        lines.append(f"Selected: {status.selected or '-'}")
        return lines

    def import_conversations(self, command: ImportConversationsCommand) -> list[str]:
        settings = _settings(command.db_path)
        imported = 0
        messages = 0
        with _repository(settings) as repository:
            store = SqlConversationStore(repository.engine)
            for path in command.paths:
                for raw in _load_conversation_documents(path):
                    conversation, conversation_messages = _parse_conversation(raw, source=path)
                    store.upsert(conversation, conversation_messages)
                    imported += 1
                    messages += len(conversation_messages)
        return [f"Imported {imported} conversations ({messages} messages)"]


def _settings(db_path: Path | None) -> Settings:
    try:
        settings = Settings.from_env(db_path=db_path)
        settings.validate()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    return settings


@contextmanager
def _repository(settings: Settings) -> Iterator[QueueRepository]:
    repository = QueueRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except AnalysisError as error:
        raise click.ClickException(str(error)) from error


def _orchestrator(settings: Settings, repository: QueueRepository) -> AnalysisOrchestrator:
    return AnalysisOrchestrator(
        repository=repository,
        conversation_store=SqlConversationStore(repository.engine),
        learning_store=SqlLearningStore(repository.engine),
        selector=BackendSelector(settings),
        settings=settings.analysis,
        owner_id=settings.queue.owner_id,
        max_attempts=settings.queue.max_attempts,
    )


def _parse_type(value: str) -> AnalysisType:
    try:
        return AnalysisType(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(kind.value for kind in AnalysisType)
        raise click.ClickException(
            f"Unsupported analysis type: {value!r}. Use one of: {allowed}.",
        ) from error


def _parse_status(value: str | None) -> QueueItemStatus | None:
    if value is None:
        return None
    try:
        return QueueItemStatus(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(status.value for status in QueueItemStatus)
        raise click.ClickException(
            f"Unsupported status: {value!r}. Use one of: {allowed}.",
        ) from error


def _load_conversation_documents(path: Path) -> list[dict[str, Any]]:
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise click.ClickException(f"Cannot read {path}: {error}") from error
    documents = payload if isinstance(payload, list) else [payload]
    if not all(isinstance(document, dict) for document in documents):
        raise click.ClickException(f"{path}: expected a JSON object or an array of objects.")
    return documents


def _parse_conversation(
    raw: dict[str, Any],
    *,
    source: Path,
) -> tuple[Conversation, list[Message]]:
    conversation_id = raw.get("id")
    if not isinstance(conversation_id, str) or not conversation_id.strip():
        raise click.ClickException(f"{source}: every conversation needs a string 'id'.")
    now = utc_now()
    created_at = _parse_datetime(raw.get("created_at"), default=now)
    conversation = Conversation(
        conversation_id=conversation_id,
        provider=str(raw.get("provider") or "unknown"),
        title=raw.get("title"),
        project_path=raw.get("project_path"),
        summary=raw.get("summary"),
        created_at=created_at,
        updated_at=_parse_datetime(raw.get("updated_at"), default=created_at),
    )
    messages = [
        Message(
            message_id=str(message.get("id") or f"{conversation_id}-{index}"),
            conversation_id=conversation_id,
            role=str(message.get("role") or "user"),
            content=str(message.get("content") or ""),
            created_at=_parse_datetime(message.get("created_at"), default=created_at),
        )
        for index, message in enumerate(raw.get("messages") or [])
        if isinstance(message, dict)
    ]
    return conversation, messages


def _parse_datetime(value: object, *, default: datetime) -> datetime:
    if not isinstance(value, str) or not value.strip():
        return default
    try:
        return datetime.fromisoformat(value.strip())
    except ValueError as error:
        raise click.ClickException(f"Invalid ISO timestamp: {value!r}") from error
