"""
ECOF Delivery - Webhook Pipeline Tests
======================================
Cursor streams over the in-memory event log and registry.
"""

import asyncio
import json
from datetime import timedelta

import pytest

from core.errors import LocalStoreError
from ecof.delivery.events import ANALYTICS, OBJECTS, emit_analytics_value_changed, emit_object_card_changed
from ecof.delivery.memory_store import MemoryEventLog
from ecof.delivery.models import DeliveryOutcome, EventType
from ecof.delivery.signing import verify_signature, webhook_idempotency_key
from ecof.delivery.worker import DeliveryPipeline, EventStreamSource

TYPE_CODE = "cost-centers"
SECRET = "s3cret"


async def _destination(registry, org_id="org-1", category=ANALYTICS, type_codes=(TYPE_CODE,)):
    destination = await registry.upsert_destination(org_id, category, f"https://{org_id}.example/hooks", SECRET)
    for type_code in type_codes:
        await registry.set_subscription(org_id, category, type_code, True)
    return destination


def _pipeline(event_log, registry, transport, batch_size=200, claim_limit=10, category=ANALYTICS):
    source = EventStreamSource(category, event_log, registry, batch_size=batch_size, lease_seconds=60)
    return DeliveryPipeline(source, transport, claim_limit=claim_limit)


async def _append(event_log, count, category=ANALYTICS, type_code=TYPE_CODE):
    for i in range(count):
        await event_log.append(category, type_code, f"value-{i}", {"value": i})


class TestEndToEnd:
    """Batches, cursor movement and the wire format."""

    @pytest.mark.asyncio
    async def test_three_events_batch_of_two(self, event_log, registry, transport):
        destination = await _destination(registry)
        await _append(event_log, 3)
        pipeline = _pipeline(event_log, registry, transport, batch_size=2)

        report = await pipeline.tick()
        assert report.delivered == 1
        assert (transport.sent[0].from_seq, transport.sent[0].to_seq) == (1, 2)
        assert (await registry.get_destination(destination.id)).cursor == 2

        report = await pipeline.tick()
        assert report.delivered == 1
        assert (transport.sent[1].from_seq, transport.sent[1].to_seq) == (3, 3)
        assert (await registry.get_destination(destination.id)).cursor == 3

        report = await pipeline.tick()
        assert report.claimed == 1
        assert report.skipped == 1
        assert len(transport.sent) == 2

    @pytest.mark.asyncio
    async def test_envelope_shape_and_signature(self, event_log, registry, transport):
        destination = await _destination(registry)
        await _append(event_log, 2)

        await _pipeline(event_log, registry, transport).tick()

        envelope = transport.sent[0]
        body = json.loads(envelope.body)
        assert body["destinationId"] == destination.id
        assert body["fromSeq"] == 1
        assert body["toSeq"] == 2
        assert [e["seq"] for e in body["events"]] == [1, 2]
        assert set(body["events"][0]) == {"seq", "type", "eventType", "subjectId", "payload", "createdAt"}
        assert body["events"][0]["type"] == TYPE_CODE
        assert envelope.endpoint == destination.endpoint
        assert envelope.headers["x-event-type"] == ANALYTICS
        assert verify_signature(envelope.body, SECRET, envelope.signature)
        assert envelope.idempotency_key == webhook_idempotency_key(destination.id, ANALYTICS, 1, 2)

    @pytest.mark.asyncio
    async def test_unsubscribed_types_are_not_sent(self, event_log, registry, transport):
        destination = await _destination(registry)
        await _append(event_log, 2, type_code="projects")

        report = await _pipeline(event_log, registry, transport).tick()

        assert report.skipped == 1
        assert transport.sent == []
        assert (await registry.get_destination(destination.id)).cursor == 0

    @pytest.mark.asyncio
    async def test_categories_are_independent(self, event_log, registry, transport):
        analytics = await _destination(registry, category=ANALYTICS)
        objects = await _destination(registry, category=OBJECTS)
        await _append(event_log, 2, category=ANALYTICS)
        await _append(event_log, 1, category=OBJECTS)

        await _pipeline(event_log, registry, transport, category=OBJECTS).tick()

        assert (await registry.get_destination(objects.id)).cursor == 1
        assert (await registry.get_destination(analytics.id)).cursor == 0
        assert transport.sent[0].headers["x-event-type"] == OBJECTS


class TestFailuresAndBackoff:
    """A failed transmission never moves the cursor."""

    @pytest.mark.asyncio
    async def test_failure_keeps_cursor_and_reoffers_same_batch(self, clock, event_log, registry, transport):
        destination = await _destination(registry)
        await _append(event_log, 3)
        transport.fail_next(1)
        pipeline = _pipeline(event_log, registry, transport)

        report = await pipeline.tick()
        assert report.failed == 1
        state = await registry.get_destination(destination.id)
        assert state.cursor == 0
        assert state.failure_count == 1
        assert state.last_error.startswith("Webhook HTTP 503")
        assert state.next_retry_at == clock.now + timedelta(seconds=30)

        # Not due yet
        report = await pipeline.tick()
        assert report.claimed == 0

        clock.advance(30)
        report = await pipeline.tick()
        assert report.delivered == 1
        first, second = transport.sent
        assert second.body == first.body
        assert second.idempotency_key == first.idempotency_key
        assert second.signature == first.signature
        assert (await registry.get_destination(destination.id)).cursor == 3

    @pytest.mark.asyncio
    async def test_backoff_schedule_and_reset(self, clock, event_log, registry, transport):
        destination = await _destination(registry)
        await _append(event_log, 1)
        transport.fail_next(3)
        pipeline = _pipeline(event_log, registry, transport)

        delays = []
        for _ in range(3):
            await pipeline.tick()
            state = await registry.get_destination(destination.id)
            delays.append((state.next_retry_at - clock.now).total_seconds())
            clock.advance(delays[-1])
        assert delays == [30, 60, 120]

        report = await pipeline.tick()
        assert report.delivered == 1
        state = await registry.get_destination(destination.id)
        assert state.failure_count == 0
        assert state.last_error is None
        assert state.cursor == 1

        await _append(event_log, 1)
        transport.fail_next(1)
        await pipeline.tick()
        state = await registry.get_destination(destination.id)
        assert (state.next_retry_at - clock.now).total_seconds() == 30

    @pytest.mark.asyncio
    async def test_client_errors_are_retried(self, clock, event_log, registry, transport):
        destination = await _destination(registry)
        await _append(event_log, 1)
        transport.outcomes.append(DeliveryOutcome.failure("Webhook HTTP 410: gone", status_code=410, permanent=True))
        pipeline = _pipeline(event_log, registry, transport)

        await pipeline.tick()
        state = await registry.get_destination(destination.id)
        assert state.is_active
        assert state.failure_count == 1

        clock.advance(30)
        report = await pipeline.tick()
        assert report.delivered == 1

    @pytest.mark.asyncio
    async def test_local_fault_is_isolated(self, db, registry, transport):
        class FlakyEventLog(MemoryEventLog):
            async def read_after(self, category, selector, cursor, limit):
                if selector == "org-bad":
                    raise RuntimeError("disk on fire")
                return await super().read_after(category, selector, cursor, limit)

        event_log = FlakyEventLog(db)
        good = await _destination(registry, org_id="org-good")
        bad = await _destination(registry, org_id="org-bad")
        await _append(event_log, 1)

        report = await _pipeline(event_log, registry, transport).tick()

        assert report.delivered == 1
        assert report.errors == 1
        assert (await registry.get_destination(good.id)).cursor == 1
        bad_state = await registry.get_destination(bad.id)
        assert bad_state.cursor == 0
        assert bad_state.failure_count == 1
        assert bad_state.last_error == "Local fault: disk on fire"

    @pytest.mark.asyncio
    async def test_store_error_counts_as_failed_attempt(self, db, registry, transport):
        class BrokenEventLog(MemoryEventLog):
            async def read_after(self, category, selector, cursor, limit):
                raise LocalStoreError("connection reset", operation="read_after")

        destination = await _destination(registry)
        report = await _pipeline(BrokenEventLog(db), registry, transport).tick()

        assert report.failed == 1
        assert transport.sent == []
        state = await registry.get_destination(destination.id)
        assert state.last_error == "connection reset"


class TestClaims:
    """The claim is the only synchronization point between workers."""

    @pytest.mark.asyncio
    async def test_racing_workers_claim_disjoint_sets(self, event_log, registry, transport):
        for i in range(10):
            await _destination(registry, org_id=f"org-{i}")
        await _append(event_log, 1)
        pipelines = [_pipeline(event_log, registry, transport, claim_limit=3) for _ in range(4)]

        reports = await asyncio.gather(*(p.tick() for p in pipelines))

        unit_ids = [envelope.unit_id for envelope in transport.sent]
        assert len(unit_ids) == 10
        assert len(set(unit_ids)) == 10
        assert sum(r.claimed for r in reports) == 10
        assert sum(r.delivered for r in reports) == 10

    @pytest.mark.asyncio
    async def test_claim_is_a_lease(self, clock, registry):
        await _destination(registry, org_id="org-1")
        await _destination(registry, org_id="org-2")

        first = await registry.claim_due(ANALYTICS, 10, 60)
        assert len(first) == 2
        assert await registry.claim_due(ANALYTICS, 10, 60) == []

        # A crashed worker's destinations come back after the lease
        clock.advance(61)
        again = await registry.claim_due(ANALYTICS, 10, 60)
        assert {d.id for d in again} == {d.id for d in first}

    @pytest.mark.asyncio
    async def test_oldest_updated_first(self, clock, registry):
        older = await _destination(registry, org_id="org-old")
        clock.advance(5)
        await _destination(registry, org_id="org-new")

        claimed = await registry.claim_due(ANALYTICS, 1, 60)
        assert [d.id for d in claimed] == [older.id]

    @pytest.mark.asyncio
    async def test_inactive_destinations_are_not_claimed(self, registry):
        destination = await _destination(registry)
        await registry.set_active(destination.id, False)

        assert await registry.claim_due(ANALYTICS, 10, 60) == []

    @pytest.mark.asyncio
    async def test_cursor_never_moves_backwards(self, registry):
        destination = await _destination(registry)
        await registry.record_success(destination.id, 5)
        await registry.record_success(destination.id, 3)

        assert (await registry.get_destination(destination.id)).cursor == 5


class TestEventLog:
    """Gapless sequences and repeatable reads."""

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_gapless(self, event_log):
        sequences = await asyncio.gather(
            *(event_log.append(ANALYTICS, TYPE_CODE, str(i), {"i": i}) for i in range(50))
        )

        assert sorted(sequences) == list(range(1, 51))
        assert await event_log.last_sequence(ANALYTICS) == 50
        assert await event_log.append(OBJECTS, TYPE_CODE, "x", {}) == 1

    @pytest.mark.asyncio
    async def test_read_after_is_repeatable(self, event_log, registry):
        await _destination(registry)
        await _append(event_log, 5)

        first = await event_log.read_after(ANALYTICS, "org-1", 1, 3)
        second = await event_log.read_after(ANALYTICS, "org-1", 1, 3)

        assert first == second
        assert [e.sequence for e in first] == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_emitters(self, event_log):
        seq = await emit_analytics_value_changed(event_log, TYPE_CODE, {"id": "v1", "code": "C1"})
        deleted = await emit_analytics_value_changed(event_log, TYPE_CODE, {"id": "v1"}, deleted=True)
        card = await emit_object_card_changed(event_log, "fixed-assets", {"id": 7, "name": "Lathe"})

        assert (seq, deleted, card) == (1, 2, 1)
        events = event_log.db.events[ANALYTICS]
        assert events[0].event_type == EventType.UPSERT.value
        assert events[0].payload["value"]["code"] == "C1"
        assert events[1].event_type == EventType.DELETE.value
        assert event_log.db.events[OBJECTS][0].subject_id == "7"
