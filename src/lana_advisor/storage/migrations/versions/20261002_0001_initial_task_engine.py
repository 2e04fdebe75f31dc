"""Initial task engine schema: pending tasks, events, usage, knowledge."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261002_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "ai_pending_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("requester_id", sa.String(), nullable=False),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("language", sa.String(), nullable=False, server_default="sl"),
        sa.Column("missing_fields_json", sa.Text(), nullable=False),
        sa.Column("partial_context_json", sa.Text(), nullable=False),
        sa.Column("partial_answer", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("exchange_rate", sa.Float(), nullable=False, server_default=sa.text("270")),
        sa.Column("claim_token", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("full_answer_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("task_id"),
        sa.CheckConstraint(
            "status IN ('pending','processing','completed','expired','cancelled')",
            name="ck_ai_pending_tasks_status",
        ),
    )
    op.create_index(
        "ix_ai_pending_tasks_requester_id",
        "ai_pending_tasks",
        ["requester_id"],
        unique=False,
    )
    op.create_index("ix_ai_pending_tasks_status", "ai_pending_tasks", ["status"], unique=False)
    op.create_index(
        "ix_ai_pending_tasks_claim_token",
        "ai_pending_tasks",
        ["claim_token"],
        unique=False,
    )
    op.create_index(
        "idx_ai_pending_tasks_status_created",
        "ai_pending_tasks",
        ["status", "created_at"],
        unique=False,
    )
    op.create_index(
        "uq_ai_pending_tasks_one_pending_per_requester",
        "ai_pending_tasks",
        ["requester_id"],
        unique=True,
        sqlite_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "ai_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["ai_pending_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ai_task_events_task_id", "ai_task_events", ["task_id"], unique=False)
    op.create_index(
        "ix_ai_task_events_event_type",
        "ai_task_events",
        ["event_type"],
        unique=False,
    )

    op.create_table(
        "ai_usage_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("requester_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("prompt_tokens", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("completion_tokens", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_tokens", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cost_usd", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("cost_lana", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("succeeded", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_ai_usage_logs_requester_id",
        "ai_usage_logs",
        ["requester_id"],
        unique=False,
    )
    op.create_index("ix_ai_usage_logs_task_id", "ai_usage_logs", ["task_id"], unique=False)
    op.create_index("ix_ai_usage_logs_created_at", "ai_usage_logs", ["created_at"], unique=False)

    op.create_table(
        "ai_knowledge",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("lang", sa.String(), nullable=False, server_default="en"),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("topic", sa.String(), nullable=True),
        sa.Column("keywords_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ai_knowledge_slug", "ai_knowledge", ["slug"], unique=False)
    op.create_index("ix_ai_knowledge_status", "ai_knowledge", ["status"], unique=False)

    op.create_table(
        "ai_unsupported_prompts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("requester_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("ai_response", sa.Text(), nullable=True),
        sa.Column("context_summary", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_ai_unsupported_prompts_requester_id",
        "ai_unsupported_prompts",
        ["requester_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_ai_unsupported_prompts_requester_id", table_name="ai_unsupported_prompts")
    op.drop_table("ai_unsupported_prompts")
    op.drop_index("ix_ai_knowledge_status", table_name="ai_knowledge")
    op.drop_index("ix_ai_knowledge_slug", table_name="ai_knowledge")
    op.drop_table("ai_knowledge")
    op.drop_index("ix_ai_usage_logs_created_at", table_name="ai_usage_logs")
    op.drop_index("ix_ai_usage_logs_task_id", table_name="ai_usage_logs")
    op.drop_index("ix_ai_usage_logs_requester_id", table_name="ai_usage_logs")
    op.drop_table("ai_usage_logs")
    op.drop_index("ix_ai_task_events_event_type", table_name="ai_task_events")
    op.drop_index("ix_ai_task_events_task_id", table_name="ai_task_events")
    op.drop_table("ai_task_events")
    op.drop_index("uq_ai_pending_tasks_one_pending_per_requester", table_name="ai_pending_tasks")
    op.drop_index("idx_ai_pending_tasks_status_created", table_name="ai_pending_tasks")
    op.drop_index("ix_ai_pending_tasks_claim_token", table_name="ai_pending_tasks")
    op.drop_index("ix_ai_pending_tasks_status", table_name="ai_pending_tasks")
    op.drop_index("ix_ai_pending_tasks_requester_id", table_name="ai_pending_tasks")
    op.drop_table("ai_pending_tasks")
