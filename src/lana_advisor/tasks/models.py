"""Domain models for the deferred question task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.EXPIRED, TaskStatus.CANCELLED})


@dataclass(slots=True)
class PendingTaskCreate:
    """Input payload for creating a deferred question task."""

    requester_id: str
    question: str
    missing_fields: tuple[str, ...]
    language: str = "sl"
    partial_context: dict[str, Any] = field(default_factory=dict)
    partial_answer: str | None = None
    exchange_rate: float = 270.0
    max_retries: int = 5
    task_id: str | None = None


@dataclass(slots=True)
class PendingTaskView:
    """Readable task view for the scheduler, processor and CLI."""

    task_id: str
    requester_id: str
    question: str
    language: str
    missing_fields: tuple[str, ...]
    partial_context: dict[str, Any]
    partial_answer: str | None
    status: TaskStatus
    retry_count: int
    max_retries: int
    exchange_rate: float
    claim_token: str | None
    error_summary: str | None
    full_answer: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: PendingTaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class UsageLogWrite:
    """One reasoning pipeline run worth of token usage and cost."""

    requester_id: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost_usd: float
    cost_lana: float
    succeeded: bool = True
    task_id: str | None = None


@dataclass(slots=True)
class UsageLogView:
    """Stored usage log row."""

    log_id: str
    requester_id: str
    task_id: str | None
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost_usd: float
    cost_lana: float
    succeeded: bool
    created_at: datetime
