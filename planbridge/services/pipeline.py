from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

import httpx

from planbridge.core.config import Settings, get_settings
from planbridge.services.dispatcher import DispatchReceipt, Dispatcher, ExecutionContext
from planbridge.services.events import EventBus, EventNotifier
from planbridge.services.intake import IntakeGuard
from planbridge.services.metrics import MetricsAggregator
from planbridge.services.notifications import EscalationNotifier
from planbridge.services.production import ProductionClient
from planbridge.services.repository import PostgresRepository, StagingRepository
from planbridge.services.retry import RetryScheduler
from planbridge.services.store import InMemoryRepository
from planbridge.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Pipeline:
    settings: Settings
    repository: StagingRepository
    bus: EventBus
    intake: IntakeGuard
    sync_engine: SyncEngine
    dispatcher: Dispatcher
    retry: RetryScheduler
    metrics: MetricsAggregator

    async def start(self) -> None:
        await self.bus.start()

    async def process_pending(self, *, context: ExecutionContext | None = None) -> DispatchReceipt:
        return await self.dispatcher.process_pending(context=context)

    async def drain(self) -> None:
        """Deliver queued events and wait for every hand-off they started."""
        await self.bus.drain()
        await self.dispatcher.wait_idle()

    async def aclose(self) -> None:
        await self.bus.stop()
        await self.dispatcher.aclose()
        await self.repository.close()


def build_repository(settings: Settings) -> StagingRepository:
    if settings.storage_backend == "memory":
        return InMemoryRepository()
    return PostgresRepository(
        settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )


def build_pipeline(
    settings: Settings,
    *,
    repository: StagingRepository | None = None,
    production_transport: httpx.AsyncBaseTransport | None = None,
    notification_transport: httpx.AsyncBaseTransport | None = None,
) -> Pipeline:
    repository = repository or build_repository(settings)
    bus = EventBus(max_delivery_attempts=settings.event_max_delivery_attempts)
    production = ProductionClient(
        settings.production_api_base_url,
        settings.production_api_key,
        timeout_seconds=settings.production_timeout_seconds,
        transport=production_transport,
    )
    sync_engine = SyncEngine(repository=repository, production=production, settings=settings)
    dispatcher = Dispatcher(repository=repository, sync_engine=sync_engine, settings=settings)
    bus.subscribe(dispatcher.handle_event)
    escalation = EscalationNotifier(
        recipient=settings.notification_recipient,
        webhook_url=settings.notification_webhook_url,
        timeout_seconds=settings.production_timeout_seconds,
        transport=notification_transport,
    )
    logger.info("built pipeline storage_backend=%s", settings.storage_backend)
    return Pipeline(
        settings=settings,
        repository=repository,
        bus=bus,
        intake=IntakeGuard(repository=repository, notifier=EventNotifier(bus), settings=settings),
        sync_engine=sync_engine,
        dispatcher=dispatcher,
        retry=RetryScheduler(repository=repository, dispatcher=dispatcher, notifier=escalation, settings=settings),
        metrics=MetricsAggregator(repository=repository, settings=settings),
    )


@lru_cache
def get_pipeline() -> Pipeline:
    return build_pipeline(get_settings())
