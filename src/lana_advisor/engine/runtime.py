"""Wiring of the engine components for in-process hosting."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta

from lana_advisor.config import Settings
from lana_advisor.delivery.notifier import HttpPushSender, PushSubscriptionNotifier
from lana_advisor.delivery.registry import ConnectionRegistry, InMemoryConnectionRegistry
from lana_advisor.delivery.router import DeliveryRouter
from lana_advisor.engine.processor import TaskProcessor
from lana_advisor.engine.scheduler import HeartbeatScheduler
from lana_advisor.enrichment.gateway import HttpBalanceGateway, HttpRelayGateway
from lana_advisor.enrichment.orchestrator import EnrichmentOrchestrator
from lana_advisor.parameters import (
    RelaySystemParametersSource,
    SystemParametersRepository,
    SystemParametersService,
)
from lana_advisor.reasoning.completion import GeminiCompletionClient
from lana_advisor.reasoning.knowledge import KnowledgeBase
from lana_advisor.reasoning.pipeline import TriadPipeline
from lana_advisor.tasks.repository import TaskRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EngineRuntime:
    """All engine components built from settings; `close()` releases them."""

    settings: Settings
    repository: TaskRepository
    parameters: SystemParametersService
    scheduler: HeartbeatScheduler
    registry: ConnectionRegistry
    _closers: list[Callable[[], None]] = field(default_factory=list)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        registry: ConnectionRegistry | None = None,
    ) -> EngineRuntime:
        settings.validate()
        repository = TaskRepository(settings.db_path)
        repository.init_schema()

        relay_gateway = HttpRelayGateway(base_url=settings.enrichment.gateway_url)
        parameters_repository = SystemParametersRepository(settings.db_path)
        parameters = SystemParametersService(
            repository=parameters_repository,
            source=RelaySystemParametersSource(
                relay_query=relay_gateway,
                authority=settings.enrichment.authority_pubkey,
                fallback_relays=settings.enrichment.fallback_relays,
                timeout_seconds=settings.enrichment.field_timeout_seconds,
            ),
        )
        balance_gateway = HttpBalanceGateway(
            base_url=settings.enrichment.gateway_url,
            servers_provider=lambda: parameters.current().balance_servers,
        )
        orchestrator = EnrichmentOrchestrator(
            relay_query=relay_gateway,
            balance_query=balance_gateway,
            parameters_provider=parameters.current,
            field_timeout_seconds=settings.enrichment.field_timeout_seconds,
            balance_timeout_seconds=settings.enrichment.balance_timeout_seconds,
        )

        knowledge = KnowledgeBase(settings.db_path) if settings.reasoning.knowledge_enabled else None
        completion = GeminiCompletionClient(
            api_key=settings.reasoning.api_key,
            timeout_seconds=settings.reasoning.completion_timeout_seconds,
        )
        if not settings.reasoning.api_key:
            logger.warning("GEMINI_API_KEY is not set; reasoning runs will fail and be retried")
        pipeline = TriadPipeline(
            client=completion,
            usage_sink=repository.add_usage_log,
            knowledge=knowledge,
            fast_model=settings.reasoning.fast_model,
            smart_model=settings.reasoning.smart_model,
            pricing=settings.reasoning.pricing,
        )

        push_sender = (
            HttpPushSender(gateway_url=settings.delivery.push_gateway_url)
            if settings.delivery.push_gateway_url
            else None
        )
        notifier = PushSubscriptionNotifier(settings.db_path, sender=push_sender)
        live_registry = registry if registry is not None else InMemoryConnectionRegistry()
        processor = TaskProcessor(
            repository=repository,
            orchestrator=orchestrator,
            pipeline=pipeline,
            router=DeliveryRouter(registry=live_registry, notifier=notifier),
            low_confidence_threshold=settings.engine.low_confidence_threshold,
        )
        scheduler = HeartbeatScheduler(
            repository=repository,
            processor=processor,
            refresh_parameters=parameters.refresh,
            heartbeat_seconds=settings.engine.heartbeat_seconds,
            parameters_refresh_seconds=settings.engine.parameters_refresh_seconds,
            pending_max_age=timedelta(seconds=settings.engine.pending_max_age_seconds),
            processing_stuck_age=timedelta(seconds=settings.engine.processing_stuck_seconds),
            batch_size=settings.engine.batch_size,
        )

        closers = [
            relay_gateway.close,
            balance_gateway.close,
            completion.close,
            notifier.close,
            parameters_repository.close,
            repository.close,
        ]
        if knowledge is not None:
            closers.append(knowledge.close)
        if push_sender is not None:
            closers.append(push_sender.close)
        return cls(
            settings=settings,
            repository=repository,
            parameters=parameters,
            scheduler=scheduler,
            registry=live_registry,
            _closers=closers,
        )

    def close(self) -> None:
        if self.scheduler.running:
            self.scheduler.stop()
        for closer in self._closers:
            closer()
        self._closers = []
