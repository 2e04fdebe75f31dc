"""Per-task flow: enrichment, reasoning, completion and delivery."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from lana_advisor.delivery.router import DeliveryOutcome, DeliveryRouter
from lana_advisor.enrichment.orchestrator import EnrichmentOrchestrator
from lana_advisor.errors import PipelineError
from lana_advisor.reasoning.pipeline import TriadPipeline
from lana_advisor.tasks.models import PendingTaskView, TaskStatus
from lana_advisor.tasks.repository import TaskRepository

logger = logging.getLogger(__name__)

DEFAULT_LOW_CONFIDENCE_THRESHOLD = 70
ERROR_SUMMARY_LIMIT = 500


class ProcessResult(str, Enum):
    COMPLETED = "completed"
    NO_PROGRESS = "no_progress"
    FAILED = "failed"
    CONFLICT = "conflict"


@dataclass(slots=True)
class ProcessOutcome:
    task_id: str
    result: ProcessResult
    status: TaskStatus | None
    enrichment: dict[str, str] = field(default_factory=dict)
    delivery: DeliveryOutcome | None = None
    confidence: int | None = None
    error: str | None = None


class TaskProcessor:
    """Runs one claimed task to its next state.

    Any exception is logged and turned into a retry of the task, so one
    broken task never stops the batch.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        orchestrator: EnrichmentOrchestrator,
        pipeline: TriadPipeline,
        router: DeliveryRouter,
        low_confidence_threshold: int = DEFAULT_LOW_CONFIDENCE_THRESHOLD,
    ) -> None:
        self.repository = repository
        self.orchestrator = orchestrator
        self.pipeline = pipeline
        self.router = router
        self.low_confidence_threshold = low_confidence_threshold

    def process(self, task: PendingTaskView) -> ProcessOutcome:
        try:
            return self._process(task)
        except PipelineError as exc:
            logger.error("Task %s: %s", task.task_id, exc)  # noqa: TRY400
            return self._fail(task, exc)
        except Exception as exc:
            logger.exception("Task %s: unexpected processing error", task.task_id)
            return self._fail(task, exc)

    def _process(self, task: PendingTaskView) -> ProcessOutcome:
        logger.info(
            "Task %s: fetching %s for %s",
            task.task_id,
            ", ".join(task.missing_fields),
            task.requester_id[:16],
        )
        report = self.orchestrator.enrich(task.missing_fields, task.requester_id)
        enrichment = {name: item.outcome.value for name, item in report.results.items()}

        if not report.has_progress:
            status = self.repository.retry_or_expire(task.task_id)
            logger.info(
                "Task %s: no new data (attempt %d/%d), now %s",
                task.task_id,
                task.retry_count + 1,
                task.max_retries,
                status.value if status is not None else "unchanged",
            )
            return ProcessOutcome(
                task_id=task.task_id,
                result=ProcessResult.NO_PROGRESS,
                status=status,
                enrichment=enrichment,
            )

        new_data = report.new_data
        context = {**task.partial_context, **new_data}
        logger.info("Task %s: new data for %s, reasoning", task.task_id, ", ".join(new_data))
        result = self.pipeline.run(
            question=task.question,
            context=context,
            language=task.language,
            requester_id=task.requester_id,
            exchange_rate=task.exchange_rate,
            task_id=task.task_id,
        )
        answer = result.to_payload()

        if not self.repository.complete(task.task_id, answer):
            logger.warning("Task %s left processing before it completed, not delivering", task.task_id)
            return ProcessOutcome(
                task_id=task.task_id,
                result=ProcessResult.CONFLICT,
                status=None,
                enrichment=enrichment,
                confidence=result.confidence,
            )

        delivery = self.router.deliver(
            task_id=task.task_id,
            requester_id=task.requester_id,
            question=task.question,
            language=task.language,
            answer=answer,
        )
        if result.confidence < self.low_confidence_threshold:
            self._record_low_confidence(task, answer=result.final_answer, context_keys=context)
        return ProcessOutcome(
            task_id=task.task_id,
            result=ProcessResult.COMPLETED,
            status=TaskStatus.COMPLETED,
            enrichment=enrichment,
            delivery=delivery,
            confidence=result.confidence,
        )

    def _record_low_confidence(
        self,
        task: PendingTaskView,
        *,
        answer: str,
        context_keys: dict[str, object],
    ) -> None:
        try:
            self.repository.add_unsupported_prompt(
                requester_id=task.requester_id,
                prompt=task.question,
                ai_response=answer,
                context_summary=", ".join(sorted(context_keys)),
                task_id=task.task_id,
            )
        except Exception:
            logger.exception("Task %s: failed to record low-confidence answer", task.task_id)

    def _fail(self, task: PendingTaskView, exc: Exception) -> ProcessOutcome:
        summary = f"{type(exc).__name__}: {exc}"[:ERROR_SUMMARY_LIMIT]
        status = self.repository.fail(task.task_id, summary)
        return ProcessOutcome(
            task_id=task.task_id,
            result=ProcessResult.FAILED,
            status=status,
            error=summary,
        )
