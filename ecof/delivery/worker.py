"""
ECOF Delivery - Delivery Worker
===============================
One generic "claim + send + cursor/backoff" pipeline, parameterized by a
unit-of-work source and a transport, plus the scheduler that drives it.

Every tick:
1. claim up to K due units (destinations or queue items);
2. for each unit, concurrently: build the envelope, send it, then record
   success or failure through the source;
3. a failure of one unit is logged and never stops the others.

Runs as background task or separate process; several processes may run the
same pipeline, the claim keeps them off each other's units.
"""

import asyncio
import logging
import time
from typing import Any, Generic, Protocol, TypeVar

from core.errors import DeliveryError
from core.logging import correlation

from .events import EventLog
from .models import DeliveryOutcome, Destination, Envelope, TickReport
from .registry import DestinationRegistry
from .signing import EVENT_TYPE_HEADER, canonical_json, sign_body, webhook_idempotency_key
from .transport import Transport

logger = logging.getLogger("ecof.delivery.worker")

U = TypeVar("U")


class DeliverySource(Protocol[U]):
    """Unit-of-work shape: stream of events per destination, or discrete items."""

    name: str

    async def claim(self, limit: int) -> list[U]: ...

    async def build(self, unit: U) -> Envelope | None:
        """Envelope to send, or None when the unit has nothing pending."""
        ...

    async def release(self, unit: U) -> None: ...

    async def on_success(self, unit: U, envelope: Envelope, outcome: DeliveryOutcome) -> None: ...

    async def on_failure(self, unit: U, envelope: Envelope | None, outcome: DeliveryOutcome) -> None: ...

    def describe(self, unit: U) -> dict[str, Any]: ...


class Tickable(Protocol):
    name: str

    async def tick(self) -> TickReport: ...


# ===========================================================================
# Event stream source (webhooks)
# ===========================================================================


class EventStreamSource:
    """
    Webhook unit of work: one destination, the next batch after its cursor.

    The cursor only moves on confirmed delivery, so a failed or abandoned
    attempt re-reads and re-sends the same events next time.
    """

    def __init__(
        self,
        category: str,
        event_log: EventLog,
        registry: DestinationRegistry,
        batch_size: int = 200,
        lease_seconds: float = 60.0,
    ):
        self.category = category
        self.name = category
        self.event_log = event_log
        self.registry = registry
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds

    async def claim(self, limit: int) -> list[Destination]:
        return await self.registry.claim_due(self.category, limit, self.lease_seconds)

    async def build(self, destination: Destination) -> Envelope | None:
        events = await self.event_log.read_after(self.category, destination.org_id, destination.cursor, self.batch_size)
        if not events:
            return None

        from_seq = events[0].sequence
        to_seq = events[-1].sequence
        body = canonical_json(
            {
                "destinationId": destination.id,
                "fromSeq": from_seq,
                "toSeq": to_seq,
                "events": [event.to_wire() for event in events],
            }
        )
        return Envelope(
            unit_id=destination.id,
            endpoint=destination.endpoint,
            body=body,
            idempotency_key=webhook_idempotency_key(destination.id, self.category, from_seq, to_seq),
            signature=sign_body(body, destination.secret),
            headers={EVENT_TYPE_HEADER: self.category},
            from_seq=from_seq,
            to_seq=to_seq,
            event_count=len(events),
        )

    async def release(self, destination: Destination) -> None:
        await self.registry.release(destination.id)

    async def on_success(self, destination: Destination, envelope: Envelope, outcome: DeliveryOutcome) -> None:
        await self.registry.record_success(destination.id, envelope.to_seq)
        logger.info(
            f"Delivered {self.category} seq {envelope.from_seq}-{envelope.to_seq} to org {destination.org_id}",
            extra={"category": self.category, "destination_id": destination.id, "org_id": destination.org_id},
        )

    async def on_failure(self, destination: Destination, envelope: Envelope | None, outcome: DeliveryOutcome) -> None:
        # 4xx is retried like a timeout: the subscriber may fix its endpoint
        updated = await self.registry.record_failure(destination.id, outcome.error or "delivery failed")
        retry_at = updated.next_retry_at.isoformat() if updated and updated.next_retry_at else "?"
        logger.warning(
            f"Webhook delivery failed for org {destination.org_id}: {outcome.error} (next retry {retry_at})",
            extra={"category": self.category, "destination_id": destination.id, "org_id": destination.org_id},
        )

    def describe(self, destination: Destination) -> dict[str, Any]:
        return {"category": self.category, "destination_id": destination.id, "org_id": destination.org_id}


# ===========================================================================
# Generic pipeline
# ===========================================================================


class DeliveryPipeline(Generic[U]):
    """Claim due units from a source and push them through a transport."""

    def __init__(self, source: DeliverySource[U], transport: Transport, claim_limit: int = 10):
        self.source = source
        self.transport = transport
        self.claim_limit = claim_limit
        self.name = source.name
        self._ticks = 0

    async def tick(self) -> TickReport:
        """Run one polling round. Never raises."""
        self._ticks += 1
        report = TickReport(pipeline=self.name)
        with correlation(f"tick-{self.name}-{self._ticks}"):
            try:
                units = await self.source.claim(self.claim_limit)
            except Exception as e:
                report.errors += 1
                logger.error(f"Claim failed for {self.name}: {e}", exc_info=True)
                return report

            report.claimed = len(units)
            if not units:
                return report

            logger.debug(f"Processing {len(units)} units")
            results = await asyncio.gather(*(self._process(unit) for unit in units))
            for result in results:
                if result == "delivered":
                    report.delivered += 1
                elif result == "failed":
                    report.failed += 1
                elif result == "skipped":
                    report.skipped += 1
                else:
                    report.errors += 1
            return report

    async def _process(self, unit: U) -> str:
        envelope = None
        failure_reported = False
        try:
            try:
                envelope = await self.source.build(unit)
            except DeliveryError as e:
                failure_reported = True
                await self.source.on_failure(unit, None, DeliveryOutcome.failure(e.message))
                return "failed"

            if envelope is None:
                await self.source.release(unit)
                return "skipped"

            try:
                outcome = await self.transport.send(envelope)
            except Exception as e:
                outcome = DeliveryOutcome.failure(f"Transport crashed: {e.__class__.__name__}: {e}")

            if outcome.ok:
                await self.source.on_success(unit, envelope, outcome)
                return "delivered"

            failure_reported = True
            await self.source.on_failure(unit, envelope, outcome)
            return "failed"

        except Exception as e:
            # Local fault: the cursor was not advanced, so nothing is lost
            logger.exception(f"Local fault in {self.name}: {e}", extra=self.source.describe(unit))
            if failure_reported:
                return "error"
            try:
                await self.source.on_failure(unit, envelope, DeliveryOutcome.failure(f"Local fault: {e}"))
            except Exception as bookkeeping_error:
                logger.error(f"Could not record failure in {self.name}: {bookkeeping_error}", extra=self.source.describe(unit))
            return "error"


# ===========================================================================
# Scheduler
# ===========================================================================


class DeliveryScheduler:
    """
    Owns the periodic loop for one pipeline.

    `start()` spawns the loop task, `stop()` ends it, `kick()` wakes it up
    before the interval elapses. Tests call `run_once()` instead.
    """

    def __init__(self, runner: Tickable, interval: float = 5.0):
        self.runner = runner
        self.interval = interval
        self.name = runner.name
        self._running = False
        self._task: asyncio.Task | None = None
        self._wake = asyncio.Event()
        self.last_report: TickReport | None = None
        self.last_tick_at: float | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_once(self) -> TickReport:
        self.last_report = await self.runner.tick()
        self.last_tick_at = time.time()
        return self.last_report

    async def _loop(self):
        logger.info(f"Scheduler {self.name} started (interval {self.interval}s)")
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Scheduler {self.name} tick error: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
        logger.info(f"Scheduler {self.name} stopped")

    def start(self) -> asyncio.Task:
        """Start the loop on the running event loop."""
        if self._task is None or self._task.done():
            self._running = True
            self._wake = asyncio.Event()
            self._task = asyncio.create_task(self._loop(), name=f"scheduler:{self.name}")
        return self._task

    def kick(self) -> None:
        """Run the next tick now instead of waiting for the interval."""
        self._wake.set()

    async def stop(self) -> None:
        self._running = False
        self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None
