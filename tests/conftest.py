"""
Shared fixtures: in-memory stores on a manual clock and a scripted transport.
"""

import asyncio

import pytest

from ecof.delivery.memory_store import (
    ManualClock,
    MemoryDatabase,
    MemoryDestinationRegistry,
    MemoryDocumentStore,
    MemoryErpQueueStore,
    MemoryEventLog,
    MemoryResyncJobStore,
    MemorySnapshotSource,
)
from ecof.delivery.models import DeliveryOutcome, Envelope
from ecof.delivery.registry import BackoffPolicy


class ScriptedTransport:
    """
    Records every envelope and answers from a script.

    `outcomes` is consumed front to back; once empty every send succeeds.
    """

    def __init__(self, outcomes=None, delay: float = 0.0):
        self.outcomes = list(outcomes or [])
        self.sent: list[Envelope] = []
        self.delay = delay
        self.closed = False

    def fail_next(self, count: int, error: str = "Webhook HTTP 503: unavailable", permanent: bool = False):
        for _ in range(count):
            self.outcomes.append(DeliveryOutcome.failure(error, status_code=503, permanent=permanent))

    async def send(self, envelope: Envelope) -> DeliveryOutcome:
        self.sent.append(envelope)
        if self.delay:
            await asyncio.sleep(self.delay)
        else:
            await asyncio.sleep(0)
        if self.outcomes:
            return self.outcomes.pop(0)
        return DeliveryOutcome.success(200)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def db(clock):
    return MemoryDatabase(clock)


@pytest.fixture
def event_log(db):
    return MemoryEventLog(db)


@pytest.fixture
def registry(db):
    return MemoryDestinationRegistry(db, BackoffPolicy())


@pytest.fixture
def queue_store(db):
    return MemoryErpQueueStore(db, BackoffPolicy(), max_attempts=5)


@pytest.fixture
def document_store(db):
    return MemoryDocumentStore(db)


@pytest.fixture
def job_store(db):
    return MemoryResyncJobStore(db, BackoffPolicy(base_seconds=60.0))


@pytest.fixture
def snapshots(db):
    return MemorySnapshotSource(db)


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def make_transport():
    return ScriptedTransport
