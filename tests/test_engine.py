from __future__ import annotations

import json
import threading
import time
from datetime import timedelta

import allure
from sqlmodel import Session, select
from conftest import (
    REQUESTER,
    TEST_RELAYS,
    FakeBalanceQuery,
    FakeRelayQuery,
    RecordingNotifier,
    RecordingRegistry,
    ScriptedCompletionClient,
    backdate,
    wallet_record,
)

from lana_advisor.delivery.router import DeliveryChannel, DeliveryRouter
from lana_advisor.engine.processor import ProcessResult, TaskProcessor
from lana_advisor.engine.scheduler import HeartbeatScheduler
from lana_advisor.enrichment.collaborators import WALLET_REGISTRATIONS
from lana_advisor.enrichment.orchestrator import EnrichmentOrchestrator
from lana_advisor.errors import CompletionError
from lana_advisor.parameters import SystemParameters
from lana_advisor.reasoning.pipeline import TriadPipeline
from lana_advisor.storage.sqlmodel_models import AiUnsupportedPrompt
from lana_advisor.tasks.models import PendingTaskCreate, TaskStatus
from lana_advisor.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Heartbeat Scheduler"),
]

PROPOSAL = json.dumps({"answer": "You hold 12.5 LANA.", "steps_taken": ["Read wallets"]})
CRITIQUE = json.dumps({"claims_to_verify": [], "failure_modes": []})


def _verdict(confidence: int) -> str:
    return json.dumps(
        {
            "final_answer": "You hold 12.5 LANA in your main wallet.",
            "confidence": confidence,
            "what_i_did": ["Read wallets"],
            "what_i_did_not_do": [],
            "next_step": "Nothing else needed.",
        },
    )


class Harness:
    def __init__(
        self,
        repository: TaskRepository,
        *,
        relay: FakeRelayQuery,
        completion: ScriptedCompletionClient,
        live: bool = False,
    ) -> None:
        self.repository = repository
        self.relay = relay
        self.completion = completion
        self.registry = RecordingRegistry(live={REQUESTER} if live else set())
        self.notifier = RecordingNotifier()
        orchestrator = EnrichmentOrchestrator(
            relay_query=relay,
            balance_query=FakeBalanceQuery({"L1": 12.5}),
            parameters_provider=lambda: SystemParameters(relays=TEST_RELAYS),
            field_timeout_seconds=2.0,
            balance_timeout_seconds=1.0,
        )
        self.processor = TaskProcessor(
            repository=repository,
            orchestrator=orchestrator,
            pipeline=TriadPipeline(client=completion, usage_sink=repository.add_usage_log),
            router=DeliveryRouter(registry=self.registry, notifier=self.notifier),
        )
        self.scheduler = HeartbeatScheduler(
            repository=repository,
            processor=self.processor,
            heartbeat_seconds=0.05,
        )

    @property
    def deliveries(self) -> int:
        return len(self.registry.pushed) + len(self.notifier.sent)


def _create(
    repository: TaskRepository,
    *,
    max_retries: int = 5,
    requester_id: str = REQUESTER,
) -> str:
    return repository.create(
        PendingTaskCreate(
            requester_id=requester_id,
            question="How much LANA do I hold?",
            missing_fields=("wallet-holdings",),
            partial_context={"profile": {"name": "Ana"}},
            max_retries=max_retries,
        ),
    ).task_id


def test_task_with_new_wallet_data_completes_and_is_delivered_once(
    repository: TaskRepository,
) -> None:
    harness = Harness(
        repository,
        relay=FakeRelayQuery({WALLET_REGISTRATIONS: [wallet_record("r1", ["L1"])]}),
        completion=ScriptedCompletionClient([PROPOSAL, CRITIQUE, _verdict(85)]),
        live=True,
    )
    task_id = _create(repository)

    summary = harness.scheduler.run_tick()

    assert summary.claimed == 1
    assert summary.completed == 1
    task = repository.get_task(task_id)
    assert task.status is TaskStatus.COMPLETED
    assert task.full_answer["confidence"] == 85
    assert harness.deliveries == 1
    assert summary.outcomes[0].delivery.channel is DeliveryChannel.LIVE
    proposer_prompt = harness.completion.calls[0]["system_prompt"]
    assert '"profile"' in proposer_prompt
    assert '"wallet-holdings"' in proposer_prompt
    assert len(repository.list_usage(requester_id=REQUESTER)) == 1


def test_offline_requester_gets_a_notification(repository: TaskRepository) -> None:
    harness = Harness(
        repository,
        relay=FakeRelayQuery({WALLET_REGISTRATIONS: [wallet_record("r1", ["L1"])]}),
        completion=ScriptedCompletionClient([PROPOSAL, CRITIQUE, _verdict(85)]),
    )
    _create(repository)

    summary = harness.scheduler.run_tick()

    assert summary.outcomes[0].delivery.channel is DeliveryChannel.PUSH
    assert harness.registry.pushed == []
    assert len(harness.notifier.sent) == 1


def test_task_without_new_data_expires_after_retry_budget(repository: TaskRepository) -> None:
    harness = Harness(
        repository,
        relay=FakeRelayQuery(),
        completion=ScriptedCompletionClient([]),
    )
    task_id = _create(repository, max_retries=5)

    results = []
    for _ in range(6):
        summary = harness.scheduler.run_tick()
        results.extend(outcome.result for outcome in summary.outcomes)

    assert results == [ProcessResult.NO_PROGRESS] * 5
    task = repository.get_task(task_id)
    assert task.status is TaskStatus.EXPIRED
    assert task.retry_count == 5
    assert harness.completion.calls == []
    assert harness.deliveries == 0


def test_pipeline_failure_consumes_a_retry(repository: TaskRepository) -> None:
    harness = Harness(
        repository,
        relay=FakeRelayQuery({WALLET_REGISTRATIONS: [wallet_record("r1", ["L1"])]}),
        completion=ScriptedCompletionClient([CompletionError("Gemini API error 503")]),
    )
    task_id = _create(repository)

    summary = harness.scheduler.run_tick()

    assert summary.failed == 1
    task = repository.get_task(task_id)
    assert task.status is TaskStatus.PENDING
    assert task.retry_count == 1
    assert task.error_summary.startswith("PipelineError: ")
    assert harness.deliveries == 0
    usage = repository.list_usage(requester_id=REQUESTER)
    assert [row.succeeded for row in usage] == [False]


def test_unexpected_error_in_one_task_does_not_block_the_batch(
    repository: TaskRepository,
) -> None:
    harness = Harness(
        repository,
        relay=FakeRelayQuery({WALLET_REGISTRATIONS: [wallet_record("r1", ["L1"])]}),
        completion=ScriptedCompletionClient([PROPOSAL, CRITIQUE, _verdict(85)]),
    )
    broken = _create(repository, requester_id="b" * 64)
    healthy = _create(repository)
    backdate(repository, broken, created=timedelta(minutes=2))
    backdate(repository, healthy, created=timedelta(minutes=1))
    orchestrator = harness.processor.orchestrator

    class FlakyOrchestrator:
        def __init__(self) -> None:
            self.calls = 0

        def enrich(self, missing_fields, requester_id):
            self.calls += 1
            if self.calls == 1:
                raise RuntimeError("relay gateway crashed")
            return orchestrator.enrich(missing_fields, requester_id)

    harness.processor.orchestrator = FlakyOrchestrator()

    summary = harness.scheduler.run_tick()

    assert summary.claimed == 2
    assert summary.failed == 1
    assert summary.completed == 1
    failed = repository.get_task(broken)
    assert failed.status is TaskStatus.PENDING
    assert failed.retry_count == 1
    assert failed.error_summary == "RuntimeError: relay gateway crashed"
    assert repository.get_task(healthy).status is TaskStatus.COMPLETED
    assert harness.deliveries == 1


def test_low_confidence_answer_is_recorded(repository: TaskRepository) -> None:
    harness = Harness(
        repository,
        relay=FakeRelayQuery({WALLET_REGISTRATIONS: [wallet_record("r1", ["L1"])]}),
        completion=ScriptedCompletionClient([PROPOSAL, CRITIQUE, _verdict(40)]),
    )
    task_id = _create(repository)

    harness.scheduler.run_tick()

    with Session(repository.engine) as session:
        rows = [
            (row.task_id, row.context_summary)
            for row in session.exec(select(AiUnsupportedPrompt)).all()
        ]
    assert rows == [(task_id, "profile, wallet-holdings")]


def test_reclaimed_task_completed_late_is_not_delivered(repository: TaskRepository) -> None:
    harness = Harness(
        repository,
        relay=FakeRelayQuery({WALLET_REGISTRATIONS: [wallet_record("r1", ["L1"])]}),
        completion=ScriptedCompletionClient([PROPOSAL, CRITIQUE, _verdict(85)]),
    )
    task_id = _create(repository)
    task = repository.claim_due_batch(1)[0]
    backdate(repository, task_id, updated=timedelta(minutes=10))
    repository.reclaim_stuck(timedelta(minutes=5))

    outcome = harness.processor.process(task)

    assert outcome.result is ProcessResult.CONFLICT
    assert harness.deliveries == 0
    assert repository.get_task(task_id).status is TaskStatus.PENDING


def test_tick_expires_and_reclaims_before_claiming(repository: TaskRepository) -> None:
    harness = Harness(
        repository,
        relay=FakeRelayQuery(),
        completion=ScriptedCompletionClient([]),
    )
    stale = _create(repository)
    backdate(repository, stale, created=timedelta(hours=1))

    summary = harness.scheduler.run_tick()

    assert summary.expired_stale == 1
    assert summary.claimed == 0
    assert repository.get_task(stale).status is TaskStatus.EXPIRED


def test_background_heartbeat_processes_and_stops(repository: TaskRepository) -> None:
    harness = Harness(
        repository,
        relay=FakeRelayQuery({WALLET_REGISTRATIONS: [wallet_record("r1", ["L1"])]}),
        completion=ScriptedCompletionClient([PROPOSAL, CRITIQUE, _verdict(90)]),
    )
    refreshed = threading.Event()
    harness.scheduler.refresh_parameters = refreshed.set
    task_id = _create(repository)

    harness.scheduler.start()
    try:
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            if repository.get_task(task_id).status is TaskStatus.COMPLETED:
                break
            time.sleep(0.05)
    finally:
        harness.scheduler.stop(timeout=5)

    assert refreshed.is_set()
    assert repository.get_task(task_id).status is TaskStatus.COMPLETED
    assert harness.scheduler.running is False
