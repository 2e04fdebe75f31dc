"""Process-wide heartbeat: queue maintenance plus a bounded batch of due tasks."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta

from lana_advisor.engine.processor import ProcessOutcome, ProcessResult, TaskProcessor
from lana_advisor.tasks.repository import TaskRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TickSummary:
    """Counters of one heartbeat tick."""

    expired_stale: int = 0
    reclaimed: int = 0
    claimed: int = 0
    completed: int = 0
    no_progress: int = 0
    failed: int = 0
    conflicts: int = 0
    outcomes: list[ProcessOutcome] = field(default_factory=list)

    def record(self, outcome: ProcessOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.result is ProcessResult.COMPLETED:
            self.completed += 1
        elif outcome.result is ProcessResult.NO_PROGRESS:
            self.no_progress += 1
        elif outcome.result is ProcessResult.CONFLICT:
            self.conflicts += 1
        else:
            self.failed += 1


class HeartbeatScheduler:
    """Two decoupled timers on daemon threads.

    The heartbeat timer runs `run_tick` every `heartbeat_seconds`. The
    parameters timer refreshes system parameters once at start and then
    every `parameters_refresh_seconds`.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        processor: TaskProcessor,
        refresh_parameters: Callable[[], object] | None = None,
        heartbeat_seconds: float = 60.0,
        parameters_refresh_seconds: float = 3600.0,
        pending_max_age: timedelta = timedelta(minutes=30),
        processing_stuck_age: timedelta = timedelta(minutes=5),
        batch_size: int = 5,
        claimer_id: str = "heartbeat",
    ) -> None:
        self.repository = repository
        self.processor = processor
        self.refresh_parameters = refresh_parameters
        self.heartbeat_seconds = heartbeat_seconds
        self.parameters_refresh_seconds = parameters_refresh_seconds
        self.pending_max_age = pending_max_age
        self.processing_stuck_age = processing_stuck_age
        self.batch_size = batch_size
        self.claimer_id = claimer_id
        self._stop = threading.Event()
        self._tick_lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._stop_signal_name: str | None = None

    def run_tick(self) -> TickSummary:
        """Expire, reclaim, then claim and process one batch, strictly in that order."""

        with self._tick_lock:
            summary = TickSummary()
            summary.expired_stale = self.repository.expire_stale(self.pending_max_age)
            summary.reclaimed = self.repository.reclaim_stuck(self.processing_stuck_age)
            tasks = self.repository.claim_due_batch(self.batch_size, claimer_id=self.claimer_id)
            summary.claimed = len(tasks)
            if tasks:
                logger.info("Processing %d pending task(s)", len(tasks))
            for task in tasks:
                try:
                    outcome = self.processor.process(task)
                except Exception:
                    logger.exception("Task %s could not be settled", task.task_id)
                    continue
                summary.record(outcome)
            return summary

    def refresh_once(self) -> None:
        if self.refresh_parameters is None:
            return
        try:
            self.refresh_parameters()
        except Exception:
            logger.exception("System parameters refresh failed")

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("Heartbeat scheduler is already running.")
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._heartbeat_loop, name="heartbeat", daemon=True),
        ]
        if self.refresh_parameters is not None:
            self._threads.append(
                threading.Thread(target=self._parameters_loop, name="parameters", daemon=True),
            )
        for thread in self._threads:
            thread.start()
        logger.info(
            "Heartbeat started: every %ss, batch %d",
            self.heartbeat_seconds,
            self.batch_size,
        )

    def stop(self, timeout: float | None = None) -> None:
        """Let the current tick finish, then halt both timers."""

        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Heartbeat stopped")

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def run_forever(self) -> None:
        """Run in the foreground until SIGINT/SIGTERM."""

        with self._signal_handlers():
            self.start()
            try:
                while not self._stop.wait(0.5):
                    pass
            finally:
                self.stop()
        if self._stop_signal_name:
            logger.info("Stopped on %s", self._stop_signal_name)

    def _heartbeat_loop(self) -> None:
        while not self._stop.wait(self.heartbeat_seconds):
            try:
                summary = self.run_tick()
            except Exception:
                logger.exception("Heartbeat tick failed")
                continue
            if summary.claimed or summary.expired_stale or summary.reclaimed:
                logger.info(
                    "Tick: expired=%d reclaimed=%d claimed=%d completed=%d "
                    "no_progress=%d failed=%d",
                    summary.expired_stale,
                    summary.reclaimed,
                    summary.claimed,
                    summary.completed,
                    summary.no_progress,
                    summary.failed,
                )

    def _parameters_loop(self) -> None:
        self.refresh_once()
        while not self._stop.wait(self.parameters_refresh_seconds):
            self.refresh_once()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                self._stop_signal_name = signal.Signals(signum).name
            except ValueError:
                self._stop_signal_name = str(signum)
            self._stop.set()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
