"""Controllers for the operator CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from lana_advisor.config import Settings
from lana_advisor.engine.runtime import EngineRuntime
from lana_advisor.tasks.models import PendingTaskCreate, TaskStatus
from lana_advisor.tasks.repository import TaskRepository


@dataclass(slots=True)
class EngineRunCommand:
    """CLI input for running the heartbeat engine."""

    db_path: Path | None
    once: bool


@dataclass(slots=True)
class CreateTaskCommand:
    """CLI input for creating a deferred task by hand."""

    db_path: Path | None
    requester_id: str
    question: str
    missing_fields: tuple[str, ...]
    language: str
    partial_answer: str | None


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    status: str | None
    requester_id: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class UsageCommand:
    db_path: Path | None
    requester_id: str | None
    limit: int


class EngineCliController:
    """Coordinates engine, task and usage CLI operations."""

    def run_engine(self, command: EngineRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        runtime = EngineRuntime.from_settings(settings)
        try:
            if not command.once:
                runtime.scheduler.run_forever()
                return ["Engine stopped."]
            runtime.scheduler.refresh_once()
            summary = runtime.scheduler.run_tick()
        finally:
            runtime.close()

        lines = [
            "Tick summary: "
            f"expired={summary.expired_stale} reclaimed={summary.reclaimed} "
            f"claimed={summary.claimed} completed={summary.completed} "
            f"no_progress={summary.no_progress} failed={summary.failed} "
            f"conflicts={summary.conflicts}",
        ]
        for outcome in summary.outcomes:
            status = outcome.status.value if outcome.status is not None else "-"
            lines.append(f"  {outcome.task_id} {outcome.result.value} -> {status}")
        return lines

    def create_task(self, command: CreateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.create(
                PendingTaskCreate(
                    requester_id=command.requester_id,
                    question=command.question,
                    missing_fields=command.missing_fields,
                    language=command.language,
                    partial_answer=command.partial_answer,
                    exchange_rate=settings.engine.default_exchange_rate,
                    max_retries=settings.engine.max_retries,
                ),
            )
        return [
            f"Task created: task_id={task.task_id} status={task.status.value} "
            f"missing={','.join(task.missing_fields)}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                status=status_filter,
                requester_id=command.requester_id,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} requester={task.requester_id[:16]} "
                f"status={task.status.value} retries={task.retry_count}/{task.max_retries} "
                f"missing={','.join(task.missing_fields)} "
                f"created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        confidence = task.full_answer.get("confidence") if task.full_answer else None
        lines = [
            f"Task: {task.task_id}",
            f"Requester: {task.requester_id}",
            f"Question: {task.question}",
            f"Language: {task.language}",
            f"Status: {task.status.value}{' (final)' if task.status.is_terminal else ''}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Missing fields: {', '.join(task.missing_fields)}",
            f"Exchange rate: {task.exchange_rate}",
            f"Error: {task.error_summary or '-'}",
            f"Confidence: {confidence if confidence is not None else '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def usage(self, command: UsageCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            rows = repository.list_usage(requester_id=command.requester_id, limit=command.limit)

        total_tokens = sum(row.total_tokens for row in rows)
        total_usd = sum(row.cost_usd for row in rows)
        total_lana = sum(row.cost_lana for row in rows)
        lines = [
            f"Usage rows: {len(rows)} tokens={total_tokens} "
            f"cost_usd={total_usd:.6f} cost_lana={total_lana:.4f}",
        ]
        for row in rows:
            lines.append(
                f"  {row.created_at.isoformat()} requester={row.requester_id[:16]} "
                f"task={row.task_id or '-'} model={row.model} tokens={row.total_tokens} "
                f"cost_usd={row.cost_usd:.6f} ok={'yes' if row.succeeded else 'no'}",
            )
        return lines


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(status.value for status in TaskStatus)
        raise ValueError(f"Unknown task status {value!r}. Expected one of: {allowed}.") from error


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
