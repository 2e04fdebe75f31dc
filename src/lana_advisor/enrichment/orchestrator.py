"""Fetches missing data categories for a task from the external sources."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any

from lana_advisor.enrichment.collaborators import (
    COMMUNITY_EVENTS,
    TRANSFER_ACCEPTANCES,
    TRANSFER_PROPOSALS,
    WALLET_REGISTRATIONS,
    BalanceQuery,
    RelayQuery,
)
from lana_advisor.enrichment.normalize import (
    active_events,
    mark_balances_unavailable,
    merge_balances,
    parse_wallets,
    pending_transfers,
)
from lana_advisor.enrichment.results import EnrichmentReport, FieldOutcome, FieldResult
from lana_advisor.parameters import SystemParameters
from lana_advisor.tasks.fields import MissingField

logger = logging.getLogger(__name__)

FieldHandler = Callable[[str, SystemParameters], Any]


class EnrichmentOrchestrator:
    """Runs one handler per missing field concurrently, each with its own deadline.

    A handler that raises is reported as FAILED and one that misses its
    deadline as TIMED_OUT. Neither affects the other fields.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        relay_query: RelayQuery,
        balance_query: BalanceQuery | None,
        parameters_provider: Callable[[], SystemParameters],
        field_timeout_seconds: float = 15.0,
        balance_timeout_seconds: float = 15.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._relay_query = relay_query
        self._balance_query = balance_query
        self._parameters_provider = parameters_provider
        self._field_timeout_seconds = field_timeout_seconds
        self._balance_timeout_seconds = balance_timeout_seconds
        self._clock = clock
        self._handlers: dict[str, FieldHandler] = {
            MissingField.WALLET_HOLDINGS.value: self._fetch_wallet_holdings,
            MissingField.PENDING_TRANSFERS.value: self._fetch_pending_transfers,
            MissingField.EVENTS.value: self._fetch_events,
        }

    def enrich(self, missing_fields: Sequence[str], requester_id: str) -> EnrichmentReport:
        report = EnrichmentReport()
        parameters = self._parameters_provider()
        if not parameters.relays:
            logger.warning("No relays configured, skipping enrichment of %s", list(missing_fields))
            for name in missing_fields:
                report.results[name] = FieldResult(
                    field_name=name,
                    outcome=FieldOutcome.SKIPPED,
                    error="no relays configured",
                )
            return report

        runnable = [name for name in missing_fields if name in self._handlers]
        for name in missing_fields:
            if name not in self._handlers:
                logger.warning("No enrichment handler for data category %r", name)
                report.results[name] = FieldResult(
                    field_name=name,
                    outcome=FieldOutcome.SKIPPED,
                    error="unknown data category",
                )
        if not runnable:
            return report

        executor = ThreadPoolExecutor(max_workers=len(runnable), thread_name_prefix="enrich")
        started = time.monotonic()
        futures: dict[str, Future[Any]] = {
            name: executor.submit(self._handlers[name], requester_id, parameters)
            for name in runnable
        }
        try:
            for name, future in futures.items():
                deadline = started + self._field_deadline(name)
                report.results[name] = self._collect(name, future, deadline=deadline)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info(
            "Enrichment for %s finished: %s",
            requester_id[:16],
            report.outcome_counts(),
        )
        return report

    def _collect(self, name: str, future: Future[Any], *, deadline: float) -> FieldResult:
        remaining = max(0.0, deadline - time.monotonic())
        try:
            data = future.result(timeout=remaining)
        except FutureTimeoutError:
            logger.warning("Enrichment of %s timed out", name)
            return FieldResult(field_name=name, outcome=FieldOutcome.TIMED_OUT, error="timeout")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Enrichment of %s failed: %s", name, exc)
            return FieldResult(field_name=name, outcome=FieldOutcome.FAILED, error=str(exc))
        return FieldResult.from_data(name, data)

    def _field_deadline(self, name: str) -> float:
        if name == MissingField.WALLET_HOLDINGS.value and self._balance_query is not None:
            return self._field_timeout_seconds + self._balance_timeout_seconds
        return self._field_timeout_seconds

    def _fetch_wallet_holdings(
        self,
        requester_id: str,
        parameters: SystemParameters,
    ) -> list[dict[str, Any]]:
        records = self._relay_query.query_by_category(
            WALLET_REGISTRATIONS,
            requester_id,
            {"relays": list(parameters.relays), "#d": [requester_id]},
            self._field_timeout_seconds,
        )
        wallets = parse_wallets(records, trusted_signers=parameters.trusted_signers)
        if not wallets or self._balance_query is None:
            return wallets

        addresses = [wallet["wallet_id"] for wallet in wallets]
        try:
            entries = self._balance_query.batch_balances(addresses, self._balance_timeout_seconds)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Balance lookup for %d wallet(s) failed: %s", len(addresses), exc)
            return mark_balances_unavailable(wallets, str(exc))
        return merge_balances(wallets, entries)

    def _fetch_pending_transfers(
        self,
        requester_id: str,
        parameters: SystemParameters,
    ) -> dict[str, Any]:
        relays = list(parameters.relays)
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="enrich-transfers") as pool:
            proposals = pool.submit(
                self._relay_query.query_by_category,
                TRANSFER_PROPOSALS,
                requester_id,
                {"relays": relays, "#p": [requester_id], "limit": 100},
                self._field_timeout_seconds,
            )
            acceptances = pool.submit(
                self._relay_query.query_by_category,
                TRANSFER_ACCEPTANCES,
                requester_id,
                {"relays": relays, "limit": 200},
                self._field_timeout_seconds,
            )
            return pending_transfers(proposals.result(), acceptances.result())

    def _fetch_events(self, requester_id: str, parameters: SystemParameters) -> list[dict[str, Any]]:
        records = self._relay_query.query_by_category(
            COMMUNITY_EVENTS,
            requester_id,
            {"relays": list(parameters.relays), "limit": 100},
            self._field_timeout_seconds,
        )
        return active_events(records, now=int(self._clock()))
