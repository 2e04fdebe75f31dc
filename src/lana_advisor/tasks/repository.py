"""Persistent store for deferred question tasks."""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from lana_advisor.storage.alembic_runner import upgrade_head
from lana_advisor.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from lana_advisor.storage.sqlmodel_models import (
    AiPendingTask,
    AiTaskEvent,
    AiUnsupportedPrompt,
    AiUsageLog,
)
from lana_advisor.tasks.fields import normalize_missing_fields
from lana_advisor.tasks.models import (
    PendingTaskCreate,
    PendingTaskView,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    UsageLogView,
    UsageLogWrite,
)

logger = logging.getLogger(__name__)

CREATE_ATTEMPTS = 3


class TaskRepository:
    """Task persistence facade backed by SQLModel + SQLite.

    Every state transition out of ``processing`` is a compare-and-swap on the
    current status, so a row changed by a concurrent maintenance pass or
    claimer is never overwritten. Such calls return a falsy value.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create(self, payload: PendingTaskCreate) -> PendingTaskView:
        """Create a pending task, cancelling any earlier pending task of the requester."""

        missing_fields = normalize_missing_fields(payload.missing_fields)
        if not missing_fields:
            raise ValueError("A deferred task needs at least one missing data category.")
        if payload.max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {payload.max_retries}.")

        task_id = payload.task_id or uuid4().hex
        attempt = 0
        while True:
            attempt += 1
            with Session(self.engine) as session:
                try:
                    superseded_ids, view = self._insert_pending(
                        session=session,
                        payload=payload,
                        task_id=task_id,
                        missing_fields=missing_fields,
                    )
                    break
                except IntegrityError:
                    # A concurrent create for the same requester won the pending slot.
                    session.rollback()
                    if attempt >= CREATE_ATTEMPTS:
                        raise
                    logger.info(
                        "Pending slot for %s taken concurrently, retrying create (attempt %d)",
                        _short(payload.requester_id),
                        attempt,
                    )

        logger.info(
            "Created pending task %s for %s (missing: %s, superseded: %d)",
            task_id,
            _short(payload.requester_id),
            ", ".join(missing_fields),
            len(superseded_ids),
        )
        return view

    def _insert_pending(
        self,
        *,
        session: Session,
        payload: PendingTaskCreate,
        task_id: str,
        missing_fields: tuple[str, ...],
    ) -> tuple[list[str], PendingTaskView]:
        now = to_db_datetime(utc_now())
        superseded_ids = list(
            session.exec(
                select(AiPendingTask.task_id).where(
                    AiPendingTask.requester_id == payload.requester_id,
                    AiPendingTask.status == TaskStatus.PENDING.value,
                ),
            ).all(),
        )
        if superseded_ids:
            session.exec(
                sa_update(AiPendingTask)
                .where(
                    col(AiPendingTask.task_id).in_(superseded_ids),
                    col(AiPendingTask.status) == TaskStatus.PENDING.value,
                )
                .values(status=TaskStatus.CANCELLED.value, updated_at=now),
            )

        row = AiPendingTask(
            task_id=task_id,
            requester_id=payload.requester_id,
            question=payload.question,
            language=payload.language,
            missing_fields_json=dump_json(list(missing_fields)),
            partial_context_json=dump_json(payload.partial_context),
            partial_answer=payload.partial_answer,
            status=TaskStatus.PENDING.value,
            retry_count=0,
            max_retries=payload.max_retries,
            exchange_rate=payload.exchange_rate,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        session.flush()

        for superseded_id in superseded_ids:
            self._add_event(
                session=session,
                task_id=superseded_id,
                event_type="cancelled",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.CANCELLED,
                details={"superseded_by": task_id},
            )
        self._add_event(
            session=session,
            task_id=task_id,
            event_type="created",
            status_from=None,
            status_to=TaskStatus.PENDING,
            details={
                "missing_fields": list(missing_fields),
                "max_retries": payload.max_retries,
                "exchange_rate": payload.exchange_rate,
            },
        )
        session.commit()
        session.refresh(row)
        return superseded_ids, _to_task_view(row)

    def claim_due_batch(self, limit: int, *, claimer_id: str = "heartbeat") -> list[PendingTaskView]:
        """Atomically move up to `limit` oldest pending tasks to processing.

        The claim is a single conditional UPDATE stamping a unique token,
        followed by a read of the rows carrying that token. A task can
        therefore be claimed by at most one caller.
        """

        if limit <= 0:
            return []
        now = to_db_datetime(utc_now())
        token = f"{claimer_id}:{uuid4().hex}"
        due_ids = (
            sa_select(AiPendingTask.task_id)
            .where(col(AiPendingTask.status) == TaskStatus.PENDING.value)
            .order_by(col(AiPendingTask.created_at).asc(), col(AiPendingTask.task_id).asc())
            .limit(limit)
        )
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AiPendingTask)
                .where(
                    col(AiPendingTask.task_id).in_(due_ids),
                    col(AiPendingTask.status) == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.PROCESSING.value,
                    claim_token=token,
                    updated_at=now,
                ),
            )
            if result.rowcount == 0:
                session.rollback()
                return []

            rows = session.exec(
                select(AiPendingTask)
                .where(
                    AiPendingTask.claim_token == token,
                    AiPendingTask.status == TaskStatus.PROCESSING.value,
                )
                .order_by(col(AiPendingTask.created_at).asc(), col(AiPendingTask.task_id).asc()),
            ).all()
            views = [_to_task_view(row) for row in rows]
            for view in views:
                self._add_event(
                    session=session,
                    task_id=view.task_id,
                    event_type="claimed",
                    status_from=TaskStatus.PENDING,
                    status_to=TaskStatus.PROCESSING,
                    details={"claimer_id": claimer_id, "retry_count": view.retry_count},
                )
            session.commit()
        return views

    def expire_stale(self, pending_age_limit: timedelta) -> int:
        """Expire pending tasks created longer than `pending_age_limit` ago."""

        now = utc_now()
        cutoff = to_db_datetime(now - pending_age_limit)
        with Session(self.engine) as session:
            stale_ids = session.exec(
                select(AiPendingTask.task_id).where(
                    AiPendingTask.status == TaskStatus.PENDING.value,
                    AiPendingTask.created_at < cutoff,
                ),
            ).all()
            if not stale_ids:
                return 0
            result = session.exec(
                sa_update(AiPendingTask)
                .where(
                    col(AiPendingTask.task_id).in_(stale_ids),
                    col(AiPendingTask.status) == TaskStatus.PENDING.value,
                )
                .values(status=TaskStatus.EXPIRED.value, updated_at=to_db_datetime(now)),
            )
            for task_id in stale_ids:
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="expired_stale",
                    status_from=TaskStatus.PENDING,
                    status_to=TaskStatus.EXPIRED,
                    details={"pending_age_limit_seconds": int(pending_age_limit.total_seconds())},
                )
            session.commit()
            expired = result.rowcount
        if expired:
            logger.info("Expired %d stale pending task(s)", expired)
        return expired

    def reclaim_stuck(self, processing_age_limit: timedelta) -> int:
        """Return processing tasks untouched past the limit to pending.

        The retry counter is left unchanged. A stuck task whose requester
        already has a newer pending task is cancelled instead, so the
        one-pending-task-per-requester rule keeps holding.
        """

        now = utc_now()
        cutoff = to_db_datetime(now - processing_age_limit)
        reclaimed = 0
        with Session(self.engine) as session:
            stuck_rows = session.exec(
                select(AiPendingTask)
                .where(
                    AiPendingTask.status == TaskStatus.PROCESSING.value,
                    AiPendingTask.updated_at < cutoff,
                )
                .order_by(col(AiPendingTask.created_at).desc()),
            ).all()
            stuck = [(row.task_id, row.requester_id) for row in stuck_rows]
            for task_id, requester_id in stuck:
                superseded = self._has_other_pending(
                    session=session,
                    requester_id=requester_id,
                    task_id=task_id,
                )
                target = TaskStatus.CANCELLED if superseded else TaskStatus.PENDING
                result = session.exec(
                    sa_update(AiPendingTask)
                    .where(
                        col(AiPendingTask.task_id) == task_id,
                        col(AiPendingTask.status) == TaskStatus.PROCESSING.value,
                        col(AiPendingTask.updated_at) < cutoff,
                    )
                    .values(status=target.value, claim_token=None, updated_at=to_db_datetime(now)),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="reclaimed" if not superseded else "cancelled",
                    status_from=TaskStatus.PROCESSING,
                    status_to=target,
                    details={
                        "processing_age_limit_seconds": int(processing_age_limit.total_seconds()),
                        "superseded": superseded,
                    },
                )
                session.flush()
                if not superseded:
                    reclaimed += 1
            session.commit()
        if stuck:
            logger.warning(
                "Reclaimed %d stuck processing task(s) (%d inspected)",
                reclaimed,
                len(stuck),
            )
        return reclaimed

    def complete(self, task_id: str, full_answer: dict[str, Any]) -> bool:
        """Mark a processing task as completed with its final answer."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AiPendingTask)
                .where(
                    col(AiPendingTask.task_id) == task_id,
                    col(AiPendingTask.status) == TaskStatus.PROCESSING.value,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    full_answer_json=dump_json(full_answer),
                    error_summary=None,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.COMPLETED,
                details={"confidence": full_answer.get("confidence")},
            )
            session.commit()
            return True

    def retry_or_expire(self, task_id: str) -> TaskStatus | None:
        """Consume one retry after an attempt that produced no new data."""

        return self._consume_retry(task_id=task_id, event_type="no_progress", error_summary=None)

    def fail(self, task_id: str, error_summary: str) -> TaskStatus | None:
        """Consume one retry after an unexpected processing error."""

        return self._consume_retry(
            task_id=task_id,
            event_type="failed_attempt",
            error_summary=error_summary,
        )

    def get_task(self, task_id: str) -> PendingTaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(AiPendingTask).where(AiPendingTask.task_id == task_id),
            ).one_or_none()
            if row is None:
                return None
            return _to_task_view(row)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        requester_id: str | None = None,
        limit: int = 50,
    ) -> list[PendingTaskView]:
        """List recent tasks, optionally filtered by status and requester."""

        with Session(self.engine) as session:
            statement = (
                select(AiPendingTask)
                .order_by(col(AiPendingTask.created_at).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(AiPendingTask.status == status.value)
            if requester_id is not None:
                statement = statement.where(AiPendingTask.requester_id == requester_id)
            rows = session.exec(statement).all()
            return [_to_task_view(row) for row in rows]

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.exec(
                select(AiPendingTask).where(AiPendingTask.task_id == task_id),
            ).one_or_none()
            if task is None:
                return None
            task_view = _to_task_view(task)
            event_rows = session.exec(
                select(AiTaskEvent)
                .where(AiTaskEvent.task_id == task_id)
                .order_by(col(AiTaskEvent.created_at).asc(), col(AiTaskEvent.id).asc()),
            ).all()
            events = [
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=_as_dict(load_json(row.details_json, {})),
                )
                for row in event_rows
            ]
        return TaskDetails(task=task_view, events=events)

    def add_usage_log(self, usage: UsageLogWrite) -> str:
        """Append one usage row for a reasoning pipeline run."""

        log_id = uuid4().hex
        with Session(self.engine) as session:
            session.add(
                AiUsageLog(
                    id=log_id,
                    requester_id=usage.requester_id,
                    task_id=usage.task_id,
                    model=usage.model,
                    prompt_tokens=usage.prompt_tokens,
                    completion_tokens=usage.completion_tokens,
                    total_tokens=usage.total_tokens,
                    cost_usd=usage.cost_usd,
                    cost_lana=usage.cost_lana,
                    succeeded=usage.succeeded,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
        return log_id

    def list_usage(self, *, requester_id: str | None = None, limit: int = 50) -> list[UsageLogView]:
        with Session(self.engine) as session:
            statement = select(AiUsageLog).order_by(col(AiUsageLog.created_at).desc()).limit(limit)
            if requester_id is not None:
                statement = statement.where(AiUsageLog.requester_id == requester_id)
            rows = session.exec(statement).all()
            return [
                UsageLogView(
                    log_id=row.id,
                    requester_id=row.requester_id,
                    task_id=row.task_id,
                    model=row.model,
                    prompt_tokens=row.prompt_tokens,
                    completion_tokens=row.completion_tokens,
                    total_tokens=row.total_tokens,
                    cost_usd=row.cost_usd,
                    cost_lana=row.cost_lana,
                    succeeded=row.succeeded,
                    created_at=to_utc_aware_datetime(row.created_at),
                )
                for row in rows
            ]

    def add_unsupported_prompt(  # noqa: PLR0913
        self,
        *,
        requester_id: str,
        prompt: str,
        ai_response: str | None,
        context_summary: str | None,
        task_id: str | None = None,
    ) -> None:
        """Record a question the advisor answered with low confidence."""

        with Session(self.engine) as session:
            session.add(
                AiUnsupportedPrompt(
                    id=uuid4().hex,
                    requester_id=requester_id,
                    task_id=task_id,
                    prompt=prompt,
                    ai_response=ai_response,
                    context_summary=context_summary,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def _consume_retry(
        self,
        *,
        task_id: str,
        event_type: str,
        error_summary: str | None,
    ) -> TaskStatus | None:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(
                select(AiPendingTask).where(
                    AiPendingTask.task_id == task_id,
                    AiPendingTask.status == TaskStatus.PROCESSING.value,
                ),
            ).one_or_none()
            if row is None:
                return None

            previous_count = row.retry_count
            attempted = previous_count + 1
            if attempted >= row.max_retries:
                target = TaskStatus.EXPIRED
            elif self._has_other_pending(
                session=session,
                requester_id=row.requester_id,
                task_id=task_id,
            ):
                target = TaskStatus.CANCELLED
            else:
                target = TaskStatus.PENDING
            retry_count = min(attempted, row.max_retries)

            result = session.exec(
                sa_update(AiPendingTask)
                .where(
                    col(AiPendingTask.task_id) == task_id,
                    col(AiPendingTask.status) == TaskStatus.PROCESSING.value,
                    col(AiPendingTask.retry_count) == previous_count,
                )
                .values(
                    status=target.value,
                    retry_count=retry_count,
                    claim_token=None,
                    error_summary=error_summary,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=TaskStatus.PROCESSING,
                status_to=target,
                details={
                    "retry_count": retry_count,
                    "max_retries": row.max_retries,
                    "error_summary": error_summary,
                },
            )
            session.commit()
            return target

    def _has_other_pending(self, *, session: Session, requester_id: str, task_id: str) -> bool:
        other = session.exec(
            select(AiPendingTask.task_id).where(
                AiPendingTask.requester_id == requester_id,
                AiPendingTask.status == TaskStatus.PENDING.value,
                AiPendingTask.task_id != task_id,
            ),
        ).first()
        return other is not None

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            AiTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _as_dict(value: object) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _short(requester_id: str) -> str:
    return f"{requester_id[:16]}..." if len(requester_id) > 16 else requester_id


def _to_task_view(row: AiPendingTask) -> PendingTaskView:
    full_answer = load_json(row.full_answer_json, None)
    return PendingTaskView(
        task_id=row.task_id,
        requester_id=row.requester_id,
        question=row.question,
        language=row.language,
        missing_fields=tuple(load_json(row.missing_fields_json, [])),
        partial_context=_as_dict(load_json(row.partial_context_json, {})),
        partial_answer=row.partial_answer,
        status=TaskStatus(row.status),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        exchange_rate=row.exchange_rate,
        claim_token=row.claim_token,
        error_summary=row.error_summary,
        full_answer=full_answer if isinstance(full_answer, dict) else None,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
    )
