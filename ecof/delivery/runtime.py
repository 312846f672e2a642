"""
ECOF Delivery - Runtime Wiring
==============================
Builds stores, transports, pipelines and schedulers from Settings.

One scheduler per webhook category, one for the ERP queue ("erp") and one
for resync jobs ("resync"). The API and the worker process share this.
"""

import logging
from typing import Any, Awaitable, Callable

import httpx

from core.config import Settings, get_settings
from core.errors import NotFoundError

from .erp_queue import ERP_PIPELINE, DocumentStore, ErpQueueService, ErpQueueSource, ErpQueueStore
from .events import EventLog
from .models import TickReport
from .registry import BackoffPolicy, DestinationRegistry, utcnow
from .resync import ResyncJobStore, ResyncWorker, SnapshotSource
from .transport import ErpTransport, Transport, WebhookTransport
from .worker import DeliveryPipeline, DeliveryScheduler, EventStreamSource

logger = logging.getLogger("ecof.delivery.runtime")


class DeliveryRuntime:
    def __init__(
        self,
        settings: Settings,
        event_log: EventLog,
        registry: DestinationRegistry,
        queue_store: ErpQueueStore,
        document_store: DocumentStore,
        job_store: ResyncJobStore,
        snapshots: SnapshotSource,
        webhook_transport: Transport,
        erp_transport: Transport,
        on_close: Callable[[], Awaitable[Any]] | None = None,
    ):
        self.settings = settings
        self.event_log = event_log
        self.registry = registry
        self.queue_store = queue_store
        self.document_store = document_store
        self.job_store = job_store
        self.webhook_transport = webhook_transport
        self.erp_transport = erp_transport
        self._on_close = on_close

        lease = settings.DELIVERY_CLAIM_LEASE_SECONDS
        interval = settings.DELIVERY_TICK_SECONDS

        self.categories = list(settings.WEBHOOK_CATEGORIES)
        self.pipelines: dict[str, Any] = {}
        for category in self.categories:
            source = EventStreamSource(category, event_log, registry, settings.DELIVERY_BATCH_SIZE, lease)
            self.pipelines[category] = DeliveryPipeline(source, webhook_transport, settings.DELIVERY_CLAIM_LIMIT)

        self.erp_queue = ErpQueueService(queue_store, document_store)
        self.pipelines[ERP_PIPELINE] = DeliveryPipeline(
            ErpQueueSource(queue_store, document_store, lease),
            erp_transport,
            settings.ERP_QUEUE_CLAIM_LIMIT,
        )

        self.resync = ResyncWorker(job_store, snapshots, event_log, registry, settings.RESYNC_CLAIM_LIMIT, lease)
        self.pipelines[self.resync.name] = self.resync

        self.schedulers = {name: DeliveryScheduler(runner, interval) for name, runner in self.pipelines.items()}

    def scheduler(self, name: str) -> DeliveryScheduler:
        scheduler = self.schedulers.get(name)
        if scheduler is None:
            raise NotFoundError("Pipeline", name)
        return scheduler

    def start(self) -> None:
        for scheduler in self.schedulers.values():
            scheduler.start()
        logger.info(f"Delivery runtime started: {', '.join(self.schedulers)}")

    async def stop(self) -> None:
        for scheduler in self.schedulers.values():
            await scheduler.stop()
        await self.webhook_transport.aclose()
        await self.erp_transport.aclose()
        if self._on_close is not None:
            await self._on_close()
        logger.info("Delivery runtime stopped")

    async def run_once(self, name: str) -> TickReport:
        """Run one tick of a pipeline right now."""
        return await self.scheduler(name).run_once()

    async def destination_report(self, category: str | None = None) -> list[dict[str, Any]]:
        if category is not None and category not in self.categories:
            raise NotFoundError("Category", category)

        last_sequences = {c: await self.event_log.last_sequence(c) for c in self.categories}
        rows = []
        for destination in await self.registry.list_destinations(category):
            row = destination.to_dict()
            row["lag"] = max(last_sequences.get(destination.category, 0) - destination.cursor, 0)
            rows.append(row)
        return rows

    async def delivery_stats(self) -> dict[str, Any]:
        now = utcnow()
        categories = {}
        for category in self.categories:
            destinations = await self.registry.list_destinations(category)
            last_seq = await self.event_log.last_sequence(category)
            active = [d for d in destinations if d.is_active]
            categories[category] = {
                "last_sequence": last_seq,
                "destinations": len(destinations),
                "active": len(active),
                "failing": sum(1 for d in active if d.failure_count > 0),
                "due": sum(1 for d in active if d.next_retry_at is None or d.next_retry_at <= now),
                "max_lag": max((max(last_seq - d.cursor, 0) for d in active), default=0),
            }

        schedulers = {}
        for name, scheduler in self.schedulers.items():
            schedulers[name] = {
                "running": scheduler.is_running,
                "last_tick_at": scheduler.last_tick_at,
                "last_report": scheduler.last_report.to_dict() if scheduler.last_report else None,
            }
        return {"categories": categories, "schedulers": schedulers}


def _transports(settings: Settings, http_client: httpx.AsyncClient | None) -> tuple[WebhookTransport, ErpTransport]:
    timeout = settings.DELIVERY_HTTP_TIMEOUT
    webhook = WebhookTransport(timeout=timeout, client=http_client)
    erp = ErpTransport(settings.ERP_API_URL, settings.ERP_API_TOKEN, timeout=timeout, client=http_client)
    return webhook, erp


def create_memory_runtime(
    settings: Settings | None = None,
    db=None,
    http_client: httpx.AsyncClient | None = None,
) -> DeliveryRuntime:
    """Runtime on the in-memory store (tests, local runs)."""
    from .memory_store import (
        MemoryDatabase,
        MemoryDestinationRegistry,
        MemoryDocumentStore,
        MemoryErpQueueStore,
        MemoryEventLog,
        MemoryResyncJobStore,
        MemorySnapshotSource,
    )

    settings = settings or get_settings()
    db = db or MemoryDatabase()
    backoff = BackoffPolicy.from_settings(settings)
    webhook, erp = _transports(settings, http_client)
    return DeliveryRuntime(
        settings,
        event_log=MemoryEventLog(db),
        registry=MemoryDestinationRegistry(db, backoff),
        queue_store=MemoryErpQueueStore(db, backoff, settings.ERP_QUEUE_MAX_ATTEMPTS),
        document_store=MemoryDocumentStore(db),
        job_store=MemoryResyncJobStore(db, BackoffPolicy.from_settings(settings, settings.RESYNC_BACKOFF_BASE_SECONDS)),
        snapshots=MemorySnapshotSource(db),
        webhook_transport=webhook,
        erp_transport=erp,
    )


async def create_postgres_runtime(settings: Settings | None = None) -> DeliveryRuntime:
    """Runtime on the shared asyncpg pool; stop() closes the pool."""
    from ecof.db import close_pool, get_pool, init_schema

    from .pg_store import (
        PgDestinationRegistry,
        PgDocumentStore,
        PgErpQueueStore,
        PgEventLog,
        PgResyncJobStore,
        PgSnapshotSource,
    )

    settings = settings or get_settings()
    pool = await get_pool()
    await init_schema()
    backoff = BackoffPolicy.from_settings(settings)
    webhook, erp = _transports(settings, None)
    return DeliveryRuntime(
        settings,
        event_log=PgEventLog(pool),
        registry=PgDestinationRegistry(pool, backoff),
        queue_store=PgErpQueueStore(pool, backoff, settings.ERP_QUEUE_MAX_ATTEMPTS),
        document_store=PgDocumentStore(pool),
        job_store=PgResyncJobStore(pool, BackoffPolicy.from_settings(settings, settings.RESYNC_BACKOFF_BASE_SECONDS)),
        snapshots=PgSnapshotSource(pool),
        webhook_transport=webhook,
        erp_transport=erp,
        on_close=close_pool,
    )
