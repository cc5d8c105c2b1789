"""SQLModel ORM tables for conversations and the analysis queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class ConversationRow(SQLModel, table=True):
    __tablename__ = "conversations"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_conversations_updated", "updated_at"),)

    conversation_id: str = Field(primary_key=True)
    provider: str = Field(index=True)
    title: str | None = None
    project_path: str | None = Field(default=None, index=True)
    summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MessageRow(SQLModel, table=True):
    __tablename__ = "messages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_messages_conversation_time", "conversation_id", "created_at"),)

    message_id: str = Field(primary_key=True)
    conversation_id: str = Field(
        sa_column=Column(
            ForeignKey("conversations.conversation_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    role: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AnalysisQueueRow(SQLModel, table=True):
    __tablename__ = "analysis_queue"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_analysis_queue_claim", "status", "priority", "created_at"),
        Index("idx_analysis_queue_conversation", "conversation_id", "analysis_type"),
    )

    queue_id: str = Field(primary_key=True)
    conversation_id: str = Field(index=True)
    analysis_type: str = Field(index=True)
    status: str = Field(index=True)
    priority: int = Field(default=0)
    claimed_by: str | None = Field(default=None, index=True)
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    attempt_count: int = Field(default=0)
    max_attempts: int = Field(default=3)
    schema_version: int = Field(default=1)
    backend: str | None = None
    model: str | None = None
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    results_applied_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )


class AnalysisQueueEventRow(SQLModel, table=True):
    __tablename__ = "analysis_queue_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_analysis_queue_events_item_time", "queue_id", "created_at"),)

    event_id: int | None = Field(default=None, primary_key=True)
    queue_id: str = Field(
        sa_column=Column(
            ForeignKey("analysis_queue.queue_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LearningRow(SQLModel, table=True):
    __tablename__ = "learnings"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("source_queue_id", "rule_hash", name="uq_learnings_queue_rule"),
    )

    learning_id: str = Field(primary_key=True)
    conversation_id: str = Field(index=True)
    source_queue_id: str | None = Field(default=None, index=True)
    rule_hash: str = Field(index=True)
    learning_type: str
    rule: str = Field(sa_column=Column(Text, nullable=False))
    confidence: float = Field(default=0.0)
    status: str = Field(default="pending", index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkflowSignatureRow(SQLModel, table=True):
    __tablename__ = "workflow_signatures"  # type: ignore[bad-override]

    signature_id: str = Field(primary_key=True)
    conversation_id: str = Field(index=True)
    source_queue_id: str = Field(unique=True)
    signature: str = Field(index=True)
    action: str
    artifact: str
    domains: str
    confidence: float = Field(default=0.0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
