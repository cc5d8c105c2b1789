"""Store contracts for conversations and learnings, plus their SQLite implementations."""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Protocol
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import literal_column
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from convo_insights.orchestrator.models import (
    Conversation,
    ExtractedLearning,
    LearningRecord,
    Message,
    ScanScope,
    WorkflowResult,
)
from convo_insights.storage.common import to_db_datetime, to_utc_aware, utc_now
from convo_insights.storage.sqlmodel_models import (
    ConversationRow,
    LearningRow,
    MessageRow,
    WorkflowSignatureRow,
)


class ConversationStore(Protocol):
    """Read access to locally stored conversations."""

    def fetch(self, conversation_id: str) -> Conversation | None: ...

    def fetch_messages(self, conversation_id: str) -> list[Message]: ...

    def list_ids(self, scope: ScanScope, *, now: datetime | None = None) -> list[str]: ...


class LearningStore(Protocol):
    """Read access to extracted learnings."""

    def list_for_dedupe(self) -> list[LearningRecord]: ...


class SqlConversationStore:
    """Conversation store over the shared SQLite engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def fetch(self, conversation_id: str) -> Conversation | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ConversationRow).where(ConversationRow.conversation_id == conversation_id),
            ).one_or_none()
            return _to_conversation(row) if row is not None else None

    def fetch_messages(self, conversation_id: str) -> list[Message]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(MessageRow)
                .where(MessageRow.conversation_id == conversation_id)
                .order_by(
                    col(MessageRow.created_at).asc(),
                    literal_column("messages.rowid").asc(),
                ),
            ).all()
            return [
                Message(
                    message_id=row.message_id,
                    conversation_id=row.conversation_id,
                    role=row.role,
                    content=row.content,
                    created_at=to_utc_aware(row.created_at),
                )
                for row in rows
            ]

    def list_ids(self, scope: ScanScope, *, now: datetime | None = None) -> list[str]:
        """Conversation ids matching the scan scope, most recently updated first."""

        statement = select(ConversationRow.conversation_id)
        updated_since = scope.updated_since(now or utc_now())
        if updated_since is not None:
            statement = statement.where(
                col(ConversationRow.updated_at) >= to_db_datetime(updated_since),
            )
        if scope.project_path:
            statement = statement.where(ConversationRow.project_path == scope.project_path)
        if scope.providers:
            statement = statement.where(col(ConversationRow.provider).in_(scope.providers))
        statement = statement.order_by(col(ConversationRow.updated_at).desc())
        with Session(self.engine) as session:
            return list(session.exec(statement).all())

    def upsert(self, conversation: Conversation, messages: list[Message]) -> None:
        """Replace a conversation and its messages."""

        with Session(self.engine) as session:
            row = session.get(ConversationRow, conversation.conversation_id)
            if row is None:
                row = ConversationRow(
                    conversation_id=conversation.conversation_id,
                    provider=conversation.provider,
                    created_at=to_db_datetime(conversation.created_at),
                    updated_at=to_db_datetime(conversation.updated_at),
                )
            row.provider = conversation.provider
            row.title = conversation.title
            row.project_path = conversation.project_path
            row.summary = conversation.summary
            row.updated_at = to_db_datetime(conversation.updated_at)
            session.add(row)
            session.flush()
            session.exec(
                sa_delete(MessageRow).where(
                    col(MessageRow.conversation_id) == conversation.conversation_id,
                ),
            )
            for message in messages:
                session.add(
                    MessageRow(
                        message_id=message.message_id,
                        conversation_id=conversation.conversation_id,
                        role=message.role,
                        content=message.content,
                        created_at=to_db_datetime(message.created_at),
                    ),
                )
            session.commit()

    def update_title_and_summary(
        self,
        conversation_id: str,
        *,
        title: str | None,
        summary: str | None,
    ) -> bool:
        """Overwrite title and summary when given; False if the conversation is gone."""

        with Session(self.engine) as session:
            row = session.get(ConversationRow, conversation_id)
            if row is None:
                return False
            if title:
                row.title = title
            if summary:
                row.summary = summary
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            return True


class SqlLearningStore:
    """Learning store over the shared SQLite engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def list_for_dedupe(self) -> list[LearningRecord]:
        """Non-rejected learnings, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(LearningRow)
                .where(LearningRow.status != "rejected")
                .order_by(col(LearningRow.created_at).asc()),
            ).all()
            return [
                LearningRecord(
                    learning_id=row.learning_id,
                    rule=row.rule,
                    learning_type=row.learning_type,
                    confidence=row.confidence,
                )
                for row in rows
            ]

    def record_learnings(
        self,
        *,
        conversation_id: str,
        source_queue_id: str,
        learnings: list[ExtractedLearning],
    ) -> int:
        """Insert learnings not yet recorded for this queue item; returns rows added."""

        now = to_db_datetime(utc_now())
        added = 0
        with Session(self.engine) as session:
            existing = set(
                session.exec(
                    select(LearningRow.rule_hash).where(
                        LearningRow.source_queue_id == source_queue_id,
                    ),
                ).all(),
            )
            for learning in learnings:
                digest = rule_hash(learning.rule)
                if digest in existing:
                    continue
                existing.add(digest)
                session.add(
                    LearningRow(
                        learning_id=str(uuid4()),
                        conversation_id=conversation_id,
                        source_queue_id=source_queue_id,
                        rule_hash=digest,
                        learning_type=learning.type,
                        rule=learning.rule,
                        confidence=learning.confidence,
                        status="pending",
                        created_at=now,
                    ),
                )
                added += 1
            session.commit()
        return added


class SqlWorkflowSignatureStore:
    """Workflow signatures derived from completed workflow analyses."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def record(
        self,
        *,
        conversation_id: str,
        source_queue_id: str,
        result: WorkflowResult,
    ) -> bool:
        """Insert the signature once per queue item; False if already present."""

        with Session(self.engine) as session:
            existing = session.exec(
                select(WorkflowSignatureRow).where(
                    WorkflowSignatureRow.source_queue_id == source_queue_id,
                ),
            ).one_or_none()
            if existing is not None:
                return False
            session.add(
                WorkflowSignatureRow(
                    signature_id=str(uuid4()),
                    conversation_id=conversation_id,
                    source_queue_id=source_queue_id,
                    signature=workflow_signature(result),
                    action=result.action,
                    artifact=result.artifact,
                    domains=",".join(result.domains),
                    confidence=result.confidence,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return True

    def list_for_conversation(self, conversation_id: str) -> list[str]:
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(WorkflowSignatureRow.signature)
                    .where(WorkflowSignatureRow.conversation_id == conversation_id)
                    .order_by(col(WorkflowSignatureRow.created_at).asc()),
                ).all(),
            )


def rule_hash(rule: str) -> str:
    """Stable hash of a rule, insensitive to case and whitespace runs."""

    normalized = " ".join(rule.lower().split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def workflow_signature(result: WorkflowResult) -> str:
    domains = ",".join(sorted(domain.lower() for domain in result.domains))
    return f"{result.action}|{result.artifact}|{domains}".lower()


def _to_conversation(row: ConversationRow) -> Conversation:
    return Conversation(
        conversation_id=row.conversation_id,
        provider=row.provider,
        title=row.title,
        project_path=row.project_path,
        summary=row.summary,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )
