"""
ECOF Delivery - In-Memory Store
===============================
Single-process implementation of every storage contract:
- Event log (gapless per-category sequences)
- Destination registry and subscriptions
- ERP queue and document ERP state
- Resync jobs and snapshot values

Each operation runs as one critical section with no await inside, so it
is atomic with respect to other coroutines; the lock covers threads.
`MemoryEventLog.transaction()` holds the (reentrant) lock for its whole
body and restores the event log and resync jobs if the body raises; the
body must not suspend on real I/O.
Callers always get copies, never the stored records.
"""

import copy
import threading
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable

from core.errors import NotFoundError

from .models import (
    Destination,
    ErpDocument,
    ErpResult,
    ErpStatus,
    Event,
    EventType,
    PortalStatus,
    QueueItem,
    QueueStatus,
    ResyncJob,
    ResyncStatus,
    SnapshotValue,
)
from .registry import BackoffPolicy, utcnow

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class MemoryDatabase:
    """Shared state behind the in-memory stores."""

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self.clock = clock or utcnow
        self.lock = threading.RLock()

        self.events: dict[str, list[Event]] = {}
        self.sequences: dict[str, int] = {}
        self.destinations: dict[str, Destination] = {}
        self.subscriptions: set[tuple[str, str, str]] = set()
        self.queue: dict[str, QueueItem] = {}
        self.documents: dict[str, ErpDocument] = {}
        self.references: dict[tuple[str, str], dict[str, Any]] = {}
        self.resync_jobs: dict[str, ResyncJob] = {}
        self.snapshots: dict[tuple[str, str], dict[str, dict[str, Any]]] = {}

    def now(self) -> datetime:
        return self.clock()

    def checkpoint(self) -> tuple:
        return (
            {category: list(events) for category, events in self.events.items()},
            dict(self.sequences),
            copy.deepcopy(self.resync_jobs),
        )

    def restore(self, saved: tuple) -> None:
        self.events, self.sequences, self.resync_jobs = saved


def _due(next_retry_at: datetime | None, now: datetime) -> bool:
    return next_retry_at is None or next_retry_at <= now


# =============================================================================
# Event log
# =============================================================================


class MemoryEventLog:
    def __init__(self, db: MemoryDatabase):
        self.db = db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        with self.db.lock:
            saved = self.db.checkpoint()
            try:
                yield None
            except BaseException:
                self.db.restore(saved)
                raise

    async def append(
        self,
        category: str,
        type_code: str,
        subject_id: str,
        payload: dict[str, Any],
        event_type: str = EventType.UPSERT.value,
        conn=None,
    ) -> int:
        with self.db.lock:
            sequence = self.db.sequences.get(category, 0) + 1
            self.db.sequences[category] = sequence
            self.db.events.setdefault(category, []).append(
                Event(
                    sequence=sequence,
                    category=category,
                    event_type=event_type,
                    type_code=type_code,
                    subject_id=str(subject_id),
                    payload=copy.deepcopy(payload),
                    created_at=self.db.now(),
                )
            )
            return sequence

    async def read_after(self, category: str, selector: str, cursor: int, limit: int) -> list[Event]:
        with self.db.lock:
            result = []
            for event in self.db.events.get(category, []):
                if event.sequence <= cursor:
                    continue
                if (selector, category, event.type_code) not in self.db.subscriptions:
                    continue
                result.append(event)
                if len(result) >= limit:
                    break
            return result

    async def last_sequence(self, category: str) -> int:
        with self.db.lock:
            return self.db.sequences.get(category, 0)


# =============================================================================
# Destination registry
# =============================================================================


class MemoryDestinationRegistry:
    def __init__(self, db: MemoryDatabase, backoff: BackoffPolicy | None = None):
        self.db = db
        self.backoff = backoff or BackoffPolicy()

    def _get(self, destination_id: str) -> Destination:
        destination = self.db.destinations.get(destination_id)
        if destination is None:
            raise NotFoundError("Destination", destination_id)
        return destination

    async def claim_due(self, category: str, limit: int, lease_seconds: float) -> list[Destination]:
        with self.db.lock:
            now = self.db.now()
            due = [
                d
                for d in self.db.destinations.values()
                if d.category == category and d.is_active and _due(d.next_retry_at, now)
            ]
            due.sort(key=lambda d: d.updated_at or _EPOCH)
            claimed = due[:limit]
            for destination in claimed:
                destination.next_retry_at = now + timedelta(seconds=lease_seconds)
            return [copy.deepcopy(d) for d in claimed]

    async def record_success(self, destination_id: str, new_cursor: int) -> None:
        with self.db.lock:
            destination = self._get(destination_id)
            now = self.db.now()
            destination.cursor = max(destination.cursor, new_cursor)
            destination.failure_count = 0
            destination.last_error = None
            destination.next_retry_at = now
            destination.updated_at = now
            destination.last_delivered_at = now

    async def record_failure(self, destination_id: str, error: str) -> Destination | None:
        with self.db.lock:
            destination = self.db.destinations.get(destination_id)
            if destination is None:
                return None
            now = self.db.now()
            destination.failure_count += 1
            destination.last_error = (error or "")[:1000]
            destination.next_retry_at = self.backoff.next_retry_at(now, destination.failure_count)
            destination.updated_at = now
            return copy.deepcopy(destination)

    async def release(self, destination_id: str) -> None:
        with self.db.lock:
            destination = self.db.destinations.get(destination_id)
            if destination is not None:
                now = self.db.now()
                destination.next_retry_at = now
                destination.updated_at = now

    async def get_destination(self, destination_id: str) -> Destination | None:
        with self.db.lock:
            destination = self.db.destinations.get(destination_id)
            return copy.deepcopy(destination) if destination else None

    async def list_destinations(self, category: str | None = None) -> list[Destination]:
        with self.db.lock:
            rows = [d for d in self.db.destinations.values() if category is None or d.category == category]
            rows.sort(key=lambda d: (d.category, d.org_id))
            return [copy.deepcopy(d) for d in rows]

    async def upsert_destination(
        self,
        org_id: str,
        category: str,
        endpoint: str,
        secret: str,
        is_active: bool = True,
    ) -> Destination:
        with self.db.lock:
            now = self.db.now()
            for destination in self.db.destinations.values():
                if destination.org_id == org_id and destination.category == category:
                    destination.endpoint = endpoint
                    destination.secret = secret
                    destination.is_active = is_active
                    destination.updated_at = now
                    return copy.deepcopy(destination)

            destination = Destination(
                id=str(uuid.uuid4()),
                org_id=org_id,
                category=category,
                endpoint=endpoint,
                secret=secret,
                is_active=is_active,
                next_retry_at=now,
                updated_at=now,
            )
            self.db.destinations[destination.id] = destination
            return copy.deepcopy(destination)

    async def set_active(self, destination_id: str, is_active: bool) -> None:
        with self.db.lock:
            destination = self._get(destination_id)
            destination.is_active = is_active
            destination.updated_at = self.db.now()

    async def set_subscription(self, org_id: str, category: str, type_code: str, enabled: bool) -> None:
        with self.db.lock:
            key = (org_id, category, type_code)
            if enabled:
                self.db.subscriptions.add(key)
            else:
                self.db.subscriptions.discard(key)

    async def is_subscribed(self, org_id: str, category: str, type_code: str) -> bool:
        with self.db.lock:
            return (org_id, category, type_code) in self.db.subscriptions


# =============================================================================
# ERP queue
# =============================================================================


class MemoryErpQueueStore:
    def __init__(self, db: MemoryDatabase, backoff: BackoffPolicy | None = None, max_attempts: int = 5):
        self.db = db
        self.backoff = backoff or BackoffPolicy()
        self.max_attempts = max_attempts

    async def insert_item(
        self,
        document_id: str,
        operation_type: str,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> QueueItem:
        with self.db.lock:
            now = self.db.now()
            item = QueueItem(
                id=str(uuid.uuid4()),
                document_id=document_id,
                operation_type=operation_type,
                payload=copy.deepcopy(payload),
                idempotency_key=idempotency_key,
                next_retry_at=now,
                created_at=now,
            )
            self.db.queue[item.id] = item
            return copy.deepcopy(item)

    async def claim_due(self, limit: int, lease_seconds: float) -> list[QueueItem]:
        with self.db.lock:
            now = self.db.now()
            claimable = (QueueStatus.PENDING.value, QueueStatus.PROCESSING.value)
            due = [i for i in self.db.queue.values() if i.status in claimable and _due(i.next_retry_at, now)]
            due.sort(key=lambda i: i.created_at or _EPOCH)
            claimed = due[:limit]
            for item in claimed:
                item.status = QueueStatus.PROCESSING.value
                item.processed_at = now
                item.next_retry_at = now + timedelta(seconds=lease_seconds)
            return [copy.deepcopy(i) for i in claimed]

    async def complete_item(self, item_id: str, external_ref: str | None, document_id: str, result: ErpResult) -> bool:
        with self.db.lock:
            item = self.db.queue.get(item_id)
            if item is None:
                raise NotFoundError("Queue item", item_id)
            now = self.db.now()
            item.status = QueueStatus.COMPLETED.value
            item.external_ref = external_ref
            item.error_message = None
            item.next_retry_at = None
            item.completed_at = now

            document = self.db.documents.get(document_id)
            if document is None:
                return False
            if result.erp_ref:
                document.erp_ref = result.erp_ref
            if result.erp_status:
                document.erp_status = result.erp_status
            if result.sent:
                document.portal_status = PortalStatus.SENT_TO_ERP.value
                document.sent_to_erp_at = now
                document.erp_error_message = None
            return True

    async def record_item_failure(self, item_id: str, error: str, permanent: bool = False) -> QueueItem | None:
        with self.db.lock:
            item = self.db.queue.get(item_id)
            if item is None or item.status != QueueStatus.PROCESSING.value:
                return None
            now = self.db.now()
            item.retry_count += 1
            item.error_message = (error or "")[:1000]
            if permanent or item.retry_count >= self.max_attempts:
                item.status = QueueStatus.FAILED.value
                item.next_retry_at = None
            else:
                item.status = QueueStatus.PENDING.value
                item.next_retry_at = self.backoff.next_retry_at(now, item.retry_count)
            return copy.deepcopy(item)

    async def release(self, item_id: str) -> None:
        with self.db.lock:
            item = self.db.queue.get(item_id)
            if item is not None and item.status == QueueStatus.PROCESSING.value:
                item.status = QueueStatus.PENDING.value
                item.next_retry_at = self.db.now()

    async def reset_item(self, item_id: str) -> QueueItem | None:
        with self.db.lock:
            item = self.db.queue.get(item_id)
            if item is None:
                return None
            item.status = QueueStatus.PENDING.value
            item.retry_count = 0
            item.error_message = None
            item.next_retry_at = self.db.now()
            return copy.deepcopy(item)

    async def get_item(self, item_id: str) -> QueueItem | None:
        with self.db.lock:
            item = self.db.queue.get(item_id)
            return copy.deepcopy(item) if item else None

    async def list_items(self, status: str | None = None, limit: int = 50) -> list[QueueItem]:
        with self.db.lock:
            rows = [i for i in self.db.queue.values() if status is None or i.status == status]
            rows.sort(key=lambda i: i.created_at or _EPOCH, reverse=True)
            return [copy.deepcopy(i) for i in rows[:limit]]

    async def stats(self) -> dict[str, int]:
        with self.db.lock:
            counts: dict[str, int] = {}
            for item in self.db.queue.values():
                counts[item.status] = counts.get(item.status, 0) + 1
            return counts


class MemoryDocumentStore:
    def __init__(self, db: MemoryDatabase):
        self.db = db

    def add_document(self, document: ErpDocument) -> ErpDocument:
        with self.db.lock:
            self.db.documents[document.id] = copy.deepcopy(document)
        return document

    def add_reference(self, kind: str, ref_id: str, name: str | None = None, code: str | None = None) -> None:
        with self.db.lock:
            self.db.references[(kind, ref_id)] = {"name": name, "code": code}

    async def get_document(self, document_id: str) -> ErpDocument | None:
        with self.db.lock:
            document = self.db.documents.get(document_id)
            return copy.deepcopy(document) if document else None

    async def lookup_reference(self, kind: str, ref_id: str) -> dict[str, Any] | None:
        with self.db.lock:
            ref = self.db.references.get((kind, ref_id))
            return dict(ref) if ref else None

    async def mark_queued(self, document_id: str) -> None:
        with self.db.lock:
            document = self.db.documents.get(document_id)
            if document is not None:
                document.portal_status = PortalStatus.QUEUED_TO_ERP.value

    async def record_erp_error(self, document_id: str, message: str) -> None:
        with self.db.lock:
            document = self.db.documents.get(document_id)
            if document is not None:
                document.erp_status = ErpStatus.ERROR.value
                document.erp_error_message = (message or "")[:1000]


# =============================================================================
# Resync jobs
# =============================================================================


class MemoryResyncJobStore:
    def __init__(self, db: MemoryDatabase, backoff: BackoffPolicy | None = None):
        self.db = db
        self.backoff = backoff or BackoffPolicy(base_seconds=60.0)

    async def create_job(self, org_id: str, category: str, type_code: str, batch_size: int = 1000) -> ResyncJob:
        with self.db.lock:
            now = self.db.now()
            job = ResyncJob(
                id=str(uuid.uuid4()),
                org_id=org_id,
                category=category,
                type_code=type_code,
                batch_size=batch_size,
                next_retry_at=now,
                created_at=now,
            )
            self.db.resync_jobs[job.id] = job
            return copy.deepcopy(job)

    async def claim_due(self, limit: int, lease_seconds: float) -> list[ResyncJob]:
        with self.db.lock:
            now = self.db.now()
            claimable = (ResyncStatus.PENDING.value, ResyncStatus.PROCESSING.value)
            due = [j for j in self.db.resync_jobs.values() if j.status in claimable and _due(j.next_retry_at, now)]
            due.sort(key=lambda j: j.created_at or _EPOCH)
            claimed = due[:limit]
            for job in claimed:
                job.status = ResyncStatus.PROCESSING.value
                job.next_retry_at = now + timedelta(seconds=lease_seconds)
            return [copy.deepcopy(j) for j in claimed]

    async def advance(self, job_id: str, cursor: str, conn=None) -> None:
        with self.db.lock:
            job = self.db.resync_jobs[job_id]
            job.cursor = cursor
            job.failure_count = 0
            job.last_error = None
            job.status = ResyncStatus.PENDING.value
            job.next_retry_at = self.db.now()

    async def complete(self, job_id: str, conn=None) -> None:
        with self.db.lock:
            job = self.db.resync_jobs[job_id]
            job.status = ResyncStatus.COMPLETED.value
            job.next_retry_at = None

    async def record_failure(self, job_id: str, error: str) -> ResyncJob | None:
        with self.db.lock:
            job = self.db.resync_jobs.get(job_id)
            if job is None:
                return None
            job.failure_count += 1
            job.last_error = (error or "")[:1000]
            job.status = ResyncStatus.PENDING.value
            job.next_retry_at = self.backoff.next_retry_at(self.db.now(), job.failure_count)
            return copy.deepcopy(job)

    async def list_jobs(self, status: str | None = None, limit: int = 50) -> list[ResyncJob]:
        with self.db.lock:
            rows = [j for j in self.db.resync_jobs.values() if status is None or j.status == status]
            rows.sort(key=lambda j: j.created_at or _EPOCH, reverse=True)
            return [copy.deepcopy(j) for j in rows[:limit]]


class MemorySnapshotSource:
    def __init__(self, db: MemoryDatabase):
        self.db = db

    def put(self, category: str, type_code: str, subject_id: str, payload: dict[str, Any]) -> None:
        with self.db.lock:
            self.db.snapshots.setdefault((category, type_code), {})[subject_id] = copy.deepcopy(payload)

    async def read_batch(self, category: str, type_code: str, after: str | None, limit: int) -> list[SnapshotValue]:
        with self.db.lock:
            values = self.db.snapshots.get((category, type_code), {})
            keys = sorted(k for k in values if after is None or k > after)
            return [SnapshotValue(subject_id=k, payload=copy.deepcopy(values[k])) for k in keys[:limit]]
