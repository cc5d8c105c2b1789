"""Shared test fixtures."""

from __future__ import annotations

import os
import stat
import sys
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from convo_insights.orchestrator.backend.base import BatchEntry
from convo_insights.orchestrator.models import (
    AnalysisType,
    Conversation,
    ConversationPayload,
    Message,
    QueueItemCreate,
)
from convo_insights.orchestrator.repository import QueueRepository
from convo_insights.orchestrator.stores import SqlConversationStore

_SRC_DIR = Path(__file__).resolve().parents[1] / "src"
_ECHO_TOOL_SCRIPT = (
    "#!/bin/sh\n"
    f'PYTHONPATH="{_SRC_DIR}${{PYTHONPATH:+:$PYTHONPATH}}"\n'
    "export PYTHONPATH\n"
    f'exec "{sys.executable}" -m convo_insights.orchestrator.backend.echo_tool "$@"\n'
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Drop any CONVO_INSIGHTS_* variables leaking in from the developer shell."""

    for name in list(os.environ):
        if name.startswith("CONVO_INSIGHTS_"):
            monkeypatch.delenv(name)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[QueueRepository]:
    repo = QueueRepository(tmp_path / "queue.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def conversation_store(repository: QueueRepository) -> SqlConversationStore:
    return SqlConversationStore(repository.engine)


@pytest.fixture()
def seed_conversation(conversation_store: SqlConversationStore) -> Callable[..., str]:
    """Factory inserting one conversation with ``messages`` alternating user/assistant turns."""

    def _seed(  # noqa: PLR0913
        conversation_id: str,
        *,
        messages: int = 3,
        content: str = "How do I write a fixture?",
        title: str | None = "Pytest fixtures",
        provider: str = "claude",
        project_path: str | None = "/work/app",
        updated_at: datetime | None = None,
    ) -> str:
        updated = updated_at or datetime(2026, 10, 1, 12, 0, tzinfo=UTC)
        conversation_store.upsert(
            Conversation(
                conversation_id=conversation_id,
                provider=provider,
                title=title,
                project_path=project_path,
                created_at=updated - timedelta(hours=1),
                updated_at=updated,
            ),
            [
                Message(
                    message_id=f"{conversation_id}-m{index}",
                    conversation_id=conversation_id,
                    role="user" if index % 2 == 0 else "assistant",
                    content=f"{content} #{index}",
                    created_at=updated - timedelta(minutes=60 - index),
                )
                for index in range(messages)
            ],
        )
        return conversation_id

    return _seed


@pytest.fixture()
def echo_tool(tmp_path: Path) -> Path:
    """Executable wrapper running the deterministic echo tool module."""

    script = tmp_path / "bin" / "echo-tool"
    script.parent.mkdir(parents=True, exist_ok=True)
    script.write_text(_ECHO_TOOL_SCRIPT, "utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture()
def claim_entries(repository: QueueRepository) -> Callable[..., list[BatchEntry]]:
    """Factory enqueueing and claiming one item per conversation, in input order."""

    def _claim(
        conversation_ids: list[str],
        analysis_type: AnalysisType = AnalysisType.WORKFLOW,
    ) -> list[BatchEntry]:
        repository.insert_many(
            [
                QueueItemCreate(conversation_id=conversation_id, analysis_type=analysis_type)
                for conversation_id in conversation_ids
            ],
        )
        items = repository.claim_pending(count=len(conversation_ids), owner_id="pytest")
        return [
            BatchEntry(
                item=item,
                conversation=ConversationPayload(
                    id=item.conversation_id,
                    title="",
                    messages=[],
                    message_count=0,
                    estimated_character_count=0,
                ),
            )
            for item in items
        ]

    return _claim
