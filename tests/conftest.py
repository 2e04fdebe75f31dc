"""Shared test fixtures."""

from __future__ import annotations

import time
from collections.abc import Iterator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from lana_advisor.delivery.notifier import Notification, NotifyResult
from lana_advisor.enrichment.collaborators import BalanceEntry, PublishResult, RelayRecord
from lana_advisor.errors import CompletionError
from lana_advisor.parameters import SystemParameters
from lana_advisor.reasoning.completion import CompletionResult, TokenUsage
from lana_advisor.storage.common import to_db_datetime, utc_now
from lana_advisor.storage.sqlmodel_models import AiPendingTask
from lana_advisor.tasks.repository import TaskRepository

REQUESTER = "a" * 64
TEST_RELAYS = ("wss://relay.test",)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "lana_advisor.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[TaskRepository]:
    repo = TaskRepository(db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


def backdate(
    repository: TaskRepository,
    task_id: str,
    *,
    created: timedelta | None = None,
    updated: timedelta | None = None,
) -> None:
    """Move task timestamps into the past."""

    now = utc_now()
    values: dict[str, datetime] = {}
    if created is not None:
        values["created_at"] = to_db_datetime(now - created)
    if updated is not None:
        values["updated_at"] = to_db_datetime(now - updated)
    with Session(repository.engine) as session:
        session.exec(
            sa_update(AiPendingTask)
            .where(col(AiPendingTask.task_id) == task_id)
            .values(**values),
        )
        session.commit()


def make_record(  # noqa: PLR0913
    record_id: str,
    *,
    author: str = "registrar",
    kind: int = 30889,
    created_at: int = 1_700_000_000,
    tags: list[list[str]] | None = None,
    content: str = "",
) -> RelayRecord:
    return RelayRecord(
        record_id=record_id,
        author=author,
        kind=kind,
        created_at=created_at,
        tags=tags or [],
        content=content,
    )


def wallet_record(
    record_id: str,
    wallet_ids: list[str],
    *,
    author: str = "registrar",
    created_at: int = 1_700_000_000,
) -> RelayRecord:
    tags = [["d", REQUESTER], ["status", "active"]]
    tags.extend(["w", wallet_id, "Main", "LANA", f"note {wallet_id}", "0"] for wallet_id in wallet_ids)
    return make_record(record_id, author=author, created_at=created_at, tags=tags)


class FakeRelayQuery:
    """Scripted relay access keyed by record category."""

    def __init__(
        self,
        records: dict[str, list[RelayRecord] | Exception] | None = None,
        *,
        delays: dict[str, float] | None = None,
    ) -> None:
        self.records = records or {}
        self.delays = delays or {}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.published: list[RelayRecord] = []

    def query_by_category(
        self,
        category: str,
        requester_id: str,
        filters: dict[str, Any],
        timeout: float,
    ) -> list[RelayRecord]:
        self.calls.append((category, requester_id, filters))
        delay = self.delays.get(category)
        if delay:
            time.sleep(delay)
        result = self.records.get(category, [])
        if isinstance(result, Exception):
            raise result
        return list(result)

    def publish(self, record: RelayRecord, timeout: float) -> list[PublishResult]:
        self.published.append(record)
        return [PublishResult(relay=TEST_RELAYS[0], success=True)]


class FakeBalanceQuery:
    def __init__(self, amounts: dict[str, float] | None = None, *, error: Exception | None = None):
        self.amounts = amounts or {}
        self.error = error
        self.calls: list[list[str]] = []

    def batch_balances(self, addresses: list[str], timeout: float) -> list[BalanceEntry]:
        self.calls.append(list(addresses))
        if self.error is not None:
            raise self.error
        return [
            BalanceEntry(
                address=address,
                amount=self.amounts[address],
                status="active" if self.amounts[address] > 0 else "inactive",
            )
            for address in addresses
            if address in self.amounts
        ]


class ScriptedCompletionClient:
    """Returns scripted stage outputs in call order."""

    def __init__(self, outputs: list[str | Exception], *, tokens: int = 100) -> None:
        self.outputs = list(outputs)
        self.tokens = tokens
        self.calls: list[dict[str, str]] = []

    def complete(self, system_prompt: str, user_message: str, *, model: str) -> CompletionResult:
        self.calls.append(
            {"system_prompt": system_prompt, "user_message": user_message, "model": model},
        )
        if not self.outputs:
            raise CompletionError("No scripted output left.")
        output = self.outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        return CompletionResult(
            text=output,
            usage=TokenUsage(
                prompt_tokens=self.tokens,
                completion_tokens=self.tokens // 2,
                total_tokens=self.tokens + self.tokens // 2,
            ),
        )


class RecordingRegistry:
    def __init__(self, live: set[str] | None = None, *, fail: bool = False) -> None:
        self.live = live or set()
        self.fail = fail
        self.pushed: list[tuple[str, dict[str, Any]]] = []

    def is_live(self, requester_id: str) -> bool:
        return requester_id in self.live

    def push_to(self, requester_id: str, payload: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.pushed.append((requester_id, payload))


class RecordingNotifier:
    def __init__(self, *, delivered: bool = True) -> None:
        self.delivered = delivered
        self.sent: list[tuple[str, Notification]] = []

    def notify(self, requester_id: str, notification: Notification) -> NotifyResult:
        self.sent.append((requester_id, notification))
        return NotifyResult(delivered=self.delivered, count=1 if self.delivered else 0)


@pytest.fixture()
def parameters() -> SystemParameters:
    return SystemParameters(relays=TEST_RELAYS)
