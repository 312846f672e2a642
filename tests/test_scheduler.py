"""
ECOF Delivery - Scheduler Tests
"""

import asyncio
import unittest
from unittest.mock import AsyncMock

from core.errors import TransientDeliveryError
from core.logging import current_correlation_id
from ecof.delivery.models import DeliveryOutcome, TickReport
from ecof.delivery.worker import DeliveryPipeline, DeliveryScheduler


class CountingRunner:
    def __init__(self, name="analytics", fail_first=False):
        self.name = name
        self.calls = 0
        self.fail_first = fail_first

    async def tick(self) -> TickReport:
        self.calls += 1
        if self.fail_first and self.calls == 1:
            raise RuntimeError("boom")
        return TickReport(pipeline=self.name, claimed=self.calls)


class RecordingSource:
    """Source with no work that remembers the correlation id of each claim."""

    name = "objects"

    def __init__(self):
        self.correlation_ids = []

    async def claim(self, limit):
        self.correlation_ids.append(current_correlation_id())
        return []


class UnbuildableSource:
    """One unit that cannot be built, with bookkeeping that may itself fail."""

    name = "erp"

    def __init__(self, bookkeeping_error=None):
        self.on_failure = AsyncMock(side_effect=bookkeeping_error)
        self.on_success = AsyncMock()

    async def claim(self, limit):
        return ["item-1"]

    async def build(self, unit):
        raise TransientDeliveryError("Document doc-1 not sent to ERP yet")

    def describe(self, unit):
        return {"item_id": unit}


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class TestDeliveryScheduler(unittest.IsolatedAsyncioTestCase):
    async def test_run_once_records_report(self):
        scheduler = DeliveryScheduler(CountingRunner(), interval=60)

        report = await scheduler.run_once()

        self.assertEqual(report.claimed, 1)
        self.assertIs(scheduler.last_report, report)
        self.assertIsNotNone(scheduler.last_tick_at)
        self.assertFalse(scheduler.is_running)

    async def test_start_kick_stop(self):
        runner = CountingRunner()
        scheduler = DeliveryScheduler(runner, interval=60)

        scheduler.start()
        self.assertTrue(scheduler.is_running)
        await _wait_for(lambda: runner.calls == 1)

        scheduler.kick()
        await _wait_for(lambda: runner.calls == 2)

        await scheduler.stop()
        self.assertFalse(scheduler.is_running)
        self.assertEqual(runner.calls, 2)

    async def test_tick_errors_do_not_stop_the_loop(self):
        runner = CountingRunner(fail_first=True)
        scheduler = DeliveryScheduler(runner, interval=60)

        scheduler.start()
        await _wait_for(lambda: runner.calls == 1)
        scheduler.kick()
        await _wait_for(lambda: runner.calls == 2)
        await scheduler.stop()

        self.assertEqual(scheduler.last_report.claimed, 2)

    async def test_start_twice_keeps_one_loop(self):
        scheduler = DeliveryScheduler(CountingRunner(), interval=60)

        first = scheduler.start()
        second = scheduler.start()
        await scheduler.stop()

        self.assertIs(first, second)

    async def test_tick_sets_correlation_id(self):
        source = RecordingSource()
        pipeline = DeliveryPipeline(source, transport=None)

        await pipeline.tick()
        await pipeline.tick()

        self.assertEqual(source.correlation_ids, ["tick-objects-1", "tick-objects-2"])
        self.assertEqual(current_correlation_id(), "-")


class TestPipelineFailurePaths(unittest.IsolatedAsyncioTestCase):
    async def test_build_error_is_reported_once(self):
        source = UnbuildableSource()
        transport = AsyncMock()

        report = await DeliveryPipeline(source, transport).tick()

        self.assertEqual(report.failed, 1)
        self.assertEqual(report.errors, 0)
        source.on_failure.assert_awaited_once()
        unit, envelope, outcome = source.on_failure.await_args.args
        self.assertEqual(unit, "item-1")
        self.assertIsNone(envelope)
        self.assertEqual(outcome.error, "Document doc-1 not sent to ERP yet")
        self.assertFalse(outcome.permanent)
        transport.send.assert_not_awaited()

    async def test_failing_bookkeeping_is_not_retried(self):
        source = UnbuildableSource(bookkeeping_error=RuntimeError("queue store down"))

        report = await DeliveryPipeline(source, AsyncMock()).tick()

        self.assertEqual(report.errors, 1)
        self.assertEqual(report.failed, 0)
        source.on_failure.assert_awaited_once()

    async def test_failing_failure_bookkeeping_after_send_is_not_retried(self):
        source = UnbuildableSource(bookkeeping_error=RuntimeError("queue store down"))
        source.build = AsyncMock(return_value=object())
        transport = AsyncMock()
        transport.send.return_value = DeliveryOutcome.failure("ERP HTTP 503: down")

        report = await DeliveryPipeline(source, transport).tick()

        self.assertEqual(report.errors, 1)
        source.on_failure.assert_awaited_once()


if __name__ == "__main__":
    unittest.main()
