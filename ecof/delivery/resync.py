"""
ECOF Delivery - Snapshot Resync
===============================
Replays the current values of one type into the event log as `Snapshot`
events, a small batch per tick, so a newly subscribed organization (or one
that asked for a resync) receives the full state through the normal
webhook pipeline.
"""

import asyncio
import logging
from typing import Protocol

from core.errors import ValidationError
from core.logging import correlation

from .events import EventLog
from .models import EventType, ResyncJob, SnapshotValue, TickReport
from .registry import DestinationRegistry

logger = logging.getLogger("ecof.delivery.resync")

RESYNC_PIPELINE = "resync"
MIN_BATCH_SIZE = 10
MAX_BATCH_SIZE = 5000


def clamp_batch_size(value: int | None) -> int:
    return min(max(value or 1000, MIN_BATCH_SIZE), MAX_BATCH_SIZE)


class ResyncJobStore(Protocol):
    """Storage contract for resync jobs."""

    async def create_job(self, org_id: str, category: str, type_code: str, batch_size: int = 1000) -> ResyncJob: ...

    async def claim_due(self, limit: int, lease_seconds: float) -> list[ResyncJob]:
        """Pending jobs that are due (or processing jobs whose lease expired), marked processing."""
        ...

    async def advance(self, job_id: str, cursor: str, conn=None) -> None:
        """Store the cursor, clear failures, make the job due again."""
        ...

    async def complete(self, job_id: str, conn=None) -> None: ...

    async def record_failure(self, job_id: str, error: str) -> ResyncJob | None: ...

    async def list_jobs(self, status: str | None = None, limit: int = 50) -> list[ResyncJob]: ...


class SnapshotSource(Protocol):
    """Current values of a type, paged by subject id."""

    async def read_batch(self, category: str, type_code: str, after: str | None, limit: int) -> list[SnapshotValue]: ...


class ResyncWorker:
    """Tickable runner that turns due resync jobs into snapshot events."""

    def __init__(
        self,
        job_store: ResyncJobStore,
        snapshots: SnapshotSource,
        event_log: EventLog,
        registry: DestinationRegistry,
        claim_limit: int = 5,
        lease_seconds: float = 60.0,
    ):
        self.name = RESYNC_PIPELINE
        self.job_store = job_store
        self.snapshots = snapshots
        self.event_log = event_log
        self.registry = registry
        self.claim_limit = claim_limit
        self.lease_seconds = lease_seconds
        self._ticks = 0

    async def request_resync(self, org_id: str, category: str, type_code: str, batch_size: int = 1000) -> ResyncJob:
        """Create a job; it runs on the next tick."""
        if not await self.registry.is_subscribed(org_id, category, type_code):
            raise ValidationError(f"Organization {org_id} is not subscribed to {category}:{type_code}", field="type_code")
        job = await self.job_store.create_job(org_id, category, type_code, clamp_batch_size(batch_size))
        logger.info(f"Resync requested for {category}:{type_code} by org {org_id}", extra={"job_id": job.id, "org_id": org_id})
        return job

    async def tick(self) -> TickReport:
        self._ticks += 1
        report = TickReport(pipeline=self.name)
        with correlation(f"tick-{self.name}-{self._ticks}"):
            try:
                jobs = await self.job_store.claim_due(self.claim_limit, self.lease_seconds)
            except Exception as e:
                report.errors += 1
                logger.error(f"Resync claim failed: {e}", exc_info=True)
                return report

            report.claimed = len(jobs)
            results = await asyncio.gather(*(self._process(job) for job in jobs))
            for result in results:
                if result == "delivered":
                    report.delivered += 1
                elif result == "skipped":
                    report.skipped += 1
                else:
                    report.failed += 1
            return report

    async def _process(self, job: ResyncJob) -> str:
        extra = {"job_id": job.id, "org_id": job.org_id, "category": job.category}
        try:
            if not await self.registry.is_subscribed(job.org_id, job.category, job.type_code):
                await self.job_store.complete(job.id)
                logger.info(f"Resync job {job.id} completed: subscription disabled", extra=extra)
                return "skipped"

            batch_size = clamp_batch_size(job.batch_size)
            values = await self.snapshots.read_batch(job.category, job.type_code, job.cursor, batch_size)
            if not values:
                await self.job_store.complete(job.id)
                logger.info(f"Resync job {job.id} completed", extra=extra)
                return "skipped"

            async with self.event_log.transaction() as conn:
                for value in values:
                    await self.event_log.append(
                        job.category,
                        job.type_code,
                        value.subject_id,
                        {"eventType": EventType.SNAPSHOT.value, "typeCode": job.type_code, "value": value.payload},
                        event_type=EventType.SNAPSHOT.value,
                        conn=conn,
                    )
                finished = len(values) < batch_size
                if finished:
                    await self.job_store.complete(job.id, conn=conn)
                else:
                    await self.job_store.advance(job.id, values[-1].subject_id, conn=conn)

            if finished:
                logger.info(f"Resync job {job.id} completed after {len(values)} more values", extra=extra)
            else:
                logger.debug(f"Resync job {job.id} emitted {len(values)} snapshot events")
            return "delivered"

        except Exception as e:
            logger.error(f"Resync job {job.id} failed: {e}", exc_info=True, extra=extra)
            try:
                await self.job_store.record_failure(job.id, str(e))
            except Exception as bookkeeping_error:
                logger.error(f"Could not record resync failure for {job.id}: {bookkeeping_error}", extra=extra)
            return "failed"
