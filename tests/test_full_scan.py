import asyncio
import json
from datetime import timedelta

import allure

from convo_insights.config import AnalysisSettings
from convo_insights.orchestrator.backend.echo_tool import build_answer
from convo_insights.orchestrator.models import (
    AnalysisType,
    BackendKind,
    FullScanProgress,
    ScanScope,
)
from convo_insights.orchestrator.orchestrator import AnalysisOrchestrator
from convo_insights.orchestrator.stores import SqlLearningStore
from convo_insights.storage.common import utc_now

pytestmark = [
    allure.epic("Analysis Queue"),
    allure.feature("Full Scan"),
]


class _EchoBackend:
    kind = BackendKind.CLAUDE_CODE
    model = "echo"
    token_budget = None

    def __init__(self) -> None:
        self.calls = 0

    async def analyze(self, request) -> str:
        self.calls += 1
        return json.dumps(build_answer(request.data))


class _StaticSelector:
    def __init__(self, backend) -> None:
        self.backend = backend

    async def select_backend(self):
        return self.backend


def _orchestrator(repository, conversation_store, *, max_attempts: int = 3):
    return AnalysisOrchestrator(
        repository=repository,
        conversation_store=conversation_store,
        learning_store=SqlLearningStore(repository.engine),
        selector=_StaticSelector(_EchoBackend()),
        settings=AnalysisSettings(allow_external_analysis=True),
        owner_id="pytest",
        max_attempts=max_attempts,
    )


def test_full_scan_drains_queue_for_every_type(
    repository,
    conversation_store,
    seed_conversation,
) -> None:
    seed_conversation("c1")
    seed_conversation("c2")
    orchestrator = _orchestrator(repository, conversation_store)
    events = []

    progress = asyncio.run(
        orchestrator.run_full_scan(
            [AnalysisType.WORKFLOW, AnalysisType.SUMMARY, AnalysisType.DEDUPE],
            ScanScope(),
            batch_size=3,
            on_progress=events.append,
        ),
    )

    assert progress.total_queued == 4
    assert (progress.processed, progress.completed, progress.failed) == (4, 4, 0)
    assert progress.cycles == 2
    assert progress.cancelled is False
    assert progress.stalled is False
    assert progress.eta_seconds == 0
    assert asyncio.run(orchestrator.pending_count()) == 0
    assert events[0].stage == "queued"
    assert events[0].total == 4
    assert [event.processed for event in events if event.stage == "scan"] == [3, 4]
    assert orchestrator.progress is progress


def test_full_scan_respects_scope(repository, conversation_store, seed_conversation) -> None:
    now = utc_now()
    seed_conversation("recent", updated_at=now - timedelta(days=1))
    seed_conversation("old", updated_at=now - timedelta(days=60))
    seed_conversation("other-provider", provider="codex", updated_at=now - timedelta(days=1))
    seed_conversation("other-project", project_path="/elsewhere", updated_at=now)
    orchestrator = _orchestrator(repository, conversation_store)

    progress = asyncio.run(
        orchestrator.run_full_scan(
            [AnalysisType.WORKFLOW],
            ScanScope(time_window_days=7, project_path="/work/app", providers=("claude",)),
        ),
    )

    assert progress.total_queued == 1
    assert [item.conversation_id for item in repository.list_items()] == ["recent"]


def test_cancelled_scan_stops_before_processing(
    repository,
    conversation_store,
    seed_conversation,
) -> None:
    seed_conversation("c1")
    orchestrator = _orchestrator(repository, conversation_store)
    cancel = asyncio.Event()
    cancel.set()

    progress = asyncio.run(
        orchestrator.run_full_scan([AnalysisType.LEARNING], ScanScope(), cancel_event=cancel),
    )

    assert progress.cancelled is True
    assert progress.cycles == 0
    assert asyncio.run(orchestrator.pending_count()) == 1


def test_scan_reports_stall_when_nothing_is_claimable(
    repository,
    conversation_store,
    seed_conversation,
) -> None:
    seed_conversation("c1")
    orchestrator = _orchestrator(repository, conversation_store, max_attempts=0)

    progress = asyncio.run(orchestrator.run_full_scan([AnalysisType.WORKFLOW], ScanScope()))

    assert progress.stalled is True
    assert progress.processed == 0
    assert asyncio.run(orchestrator.pending_count()) == 1


def test_eta_uses_linear_rate_even_for_sub_second_cycles() -> None:
    progress = FullScanProgress(total_queued=10, processed=4)

    progress.update_eta(elapsed_seconds=0.5)

    assert progress.eta_seconds == 0.75


def test_eta_is_unknown_before_any_progress() -> None:
    progress = FullScanProgress(total_queued=10)

    progress.update_eta(elapsed_seconds=2.0)
    assert progress.eta_seconds is None

    progress.processed = 2
    progress.update_eta(elapsed_seconds=0.0)
    assert progress.eta_seconds is None
