"""SQLModel ORM tables for the task engine storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class AiPendingTask(SQLModel, table=True):
    __tablename__ = "ai_pending_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_ai_pending_tasks_one_pending_per_requester",
            "requester_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
        ),
        Index("idx_ai_pending_tasks_status_created", "status", "created_at"),
    )

    task_id: str = Field(primary_key=True)
    requester_id: str = Field(index=True)
    question: str = Field(sa_column=Column(Text, nullable=False))
    language: str = "sl"
    missing_fields_json: str = Field(sa_column=Column(Text, nullable=False))
    partial_context_json: str = Field(sa_column=Column(Text, nullable=False))
    partial_answer: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    status: str = Field(index=True)
    retry_count: int = 0
    max_retries: int = 5
    exchange_rate: float = 270.0
    claim_token: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    full_answer_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class AiTaskEvent(SQLModel, table=True):
    __tablename__ = "ai_task_events"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("ai_pending_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AiUsageLog(SQLModel, table=True):
    __tablename__ = "ai_usage_logs"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    requester_id: str = Field(index=True)
    task_id: str | None = Field(default=None, index=True)
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    cost_lana: float = 0.0
    succeeded: bool = True
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class AiKnowledgeEntry(SQLModel, table=True):
    __tablename__ = "ai_knowledge"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    slug: str = Field(index=True)
    revision: int = 1
    status: str = Field(default="active", index=True)
    lang: str = "en"
    title: str
    summary: str = Field(sa_column=Column(Text, nullable=False))
    body: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    topic: str | None = None
    keywords_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AiUnsupportedPrompt(SQLModel, table=True):
    __tablename__ = "ai_unsupported_prompts"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    requester_id: str = Field(index=True)
    task_id: str | None = None
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    ai_response: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    context_summary: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PushSubscription(SQLModel, table=True):
    __tablename__ = "push_subscriptions"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "requester_id",
            "endpoint",
            name="uq_push_subscriptions_requester_endpoint",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    requester_id: str = Field(index=True)
    endpoint: str
    p256dh: str
    auth: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SystemParametersSnapshot(SQLModel, table=True):
    __tablename__ = "system_parameters"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    event_id: str | None = None
    version: str = "1"
    relays_json: str = Field(sa_column=Column(Text, nullable=False))
    balance_servers_json: str = Field(sa_column=Column(Text, nullable=False))
    trusted_signers_json: str = Field(sa_column=Column(Text, nullable=False))
    exchange_rates_json: str = Field(sa_column=Column(Text, nullable=False))
    fetched_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
