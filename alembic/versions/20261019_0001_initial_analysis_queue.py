"""Initial schema: conversations, analysis queue, and derived insights."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "conversations",
        sa.Column("conversation_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("project_path", sa.String(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("conversation_id"),
    )
    op.create_index("idx_conversations_updated", "conversations", ["updated_at"])
    op.create_index("ix_conversations_provider", "conversations", ["provider"])
    op.create_index("ix_conversations_project_path", "conversations", ["project_path"])

    op.create_table(
        "messages",
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("conversation_id", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["conversation_id"],
            ["conversations.conversation_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("message_id"),
    )
    op.create_index(
        "idx_messages_conversation_time",
        "messages",
        ["conversation_id", "created_at"],
    )

    op.create_table(
        "analysis_queue",
        sa.Column("queue_id", sa.String(), nullable=False),
        sa.Column("conversation_id", sa.String(), nullable=False),
        sa.Column("analysis_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("claimed_by", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("schema_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("backend", sa.String(), nullable=True),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("results_applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("queue_id"),
    )
    op.create_index(
        "idx_analysis_queue_claim",
        "analysis_queue",
        ["status", "priority", "created_at"],
    )
    op.create_index(
        "idx_analysis_queue_conversation",
        "analysis_queue",
        ["conversation_id", "analysis_type"],
    )
    op.create_index("ix_analysis_queue_claimed_by", "analysis_queue", ["claimed_by"])

    op.create_table(
        "analysis_queue_events",
        sa.Column("event_id", sa.Integer(), nullable=False),
        sa.Column("queue_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["queue_id"],
            ["analysis_queue.queue_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index(
        "idx_analysis_queue_events_item_time",
        "analysis_queue_events",
        ["queue_id", "created_at"],
    )

    op.create_table(
        "learnings",
        sa.Column("learning_id", sa.String(), nullable=False),
        sa.Column("conversation_id", sa.String(), nullable=False),
        sa.Column("source_queue_id", sa.String(), nullable=True),
        sa.Column("rule_hash", sa.String(), nullable=False),
        sa.Column("learning_type", sa.String(), nullable=False),
        sa.Column("rule", sa.Text(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("learning_id"),
        sa.UniqueConstraint("source_queue_id", "rule_hash", name="uq_learnings_queue_rule"),
    )
    op.create_index("ix_learnings_conversation_id", "learnings", ["conversation_id"])
    op.create_index("ix_learnings_rule_hash", "learnings", ["rule_hash"])
    op.create_index("ix_learnings_status", "learnings", ["status"])

    op.create_table(
        "workflow_signatures",
        sa.Column("signature_id", sa.String(), nullable=False),
        sa.Column("conversation_id", sa.String(), nullable=False),
        sa.Column("source_queue_id", sa.String(), nullable=False),
        sa.Column("signature", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("artifact", sa.String(), nullable=False),
        sa.Column("domains", sa.String(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("signature_id"),
        sa.UniqueConstraint("source_queue_id", name="uq_workflow_signatures_queue"),
    )
    op.create_index(
        "ix_workflow_signatures_conversation_id",
        "workflow_signatures",
        ["conversation_id"],
    )
    op.create_index("ix_workflow_signatures_signature", "workflow_signatures", ["signature"])


def downgrade() -> None:
    op.drop_index("ix_workflow_signatures_signature", table_name="workflow_signatures")
    op.drop_index("ix_workflow_signatures_conversation_id", table_name="workflow_signatures")
    op.drop_table("workflow_signatures")
    op.drop_index("ix_learnings_status", table_name="learnings")
    op.drop_index("ix_learnings_rule_hash", table_name="learnings")
    op.drop_index("ix_learnings_conversation_id", table_name="learnings")
    op.drop_table("learnings")
    op.drop_index("idx_analysis_queue_events_item_time", table_name="analysis_queue_events")
    op.drop_table("analysis_queue_events")
    op.drop_index("ix_analysis_queue_claimed_by", table_name="analysis_queue")
    op.drop_index("idx_analysis_queue_conversation", table_name="analysis_queue")
    op.drop_index("idx_analysis_queue_claim", table_name="analysis_queue")
    op.drop_table("analysis_queue")
    op.drop_index("idx_messages_conversation_time", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_conversations_project_path", table_name="conversations")
    op.drop_index("ix_conversations_provider", table_name="conversations")
    op.drop_index("idx_conversations_updated", table_name="conversations")
    op.drop_table("conversations")
