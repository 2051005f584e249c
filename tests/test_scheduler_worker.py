import os
import sys
import threading
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.engine import AutomationEngine
from app.gateways import OutboxMailGateway, WebhookDispatcher
from app.models import Subscriber
from app.scheduler import Scheduler
from app.stores import (
    MemoryAutomationStore,
    MemoryFlowStore,
    MemoryQueueStore,
    MemorySubscriberDirectory,
    MemoryTagSegmentService,
    MemoryTemplateStore,
)
from app.worker import Worker
from outbox import Outbox

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class NullWebhooks(WebhookDispatcher):
    def post(self, url: str, payload: dict) -> bool:
        return True


class TestScheduler(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock(T0)
        self.flows = MemoryFlowStore()
        self.queue = MemoryQueueStore()
        self.scheduler = Scheduler(self.queue, self.flows, self.clock, max_attempts=4, retry_base_seconds=60, retry_max_seconds=200)
        self.flow = self.flows.create_active("a1", "s1", {}, T0)

    def test_backoff_doubles_and_caps(self) -> None:
        self.assertEqual([self.scheduler.backoff_seconds(n) for n in (1, 2, 3, 4)], [60, 120, 200, 200])

    def test_enqueue_records_next_action(self) -> None:
        at = T0 + timedelta(minutes=5)
        item = self.scheduler.enqueue(self.flow, 1, at)
        self.assertEqual(item.not_before, at)
        self.assertEqual(self.flows.get(self.flow.id).next_action_at, at)

    def test_retry_budget(self) -> None:
        item = self.scheduler.enqueue(self.flow, 1, T0)
        for expected_attempt in (1, 2, 3):
            item = self.scheduler.retry(item, "boom")
            self.assertEqual(item.attempt, expected_attempt)
        self.assertIsNone(self.scheduler.retry(item, "boom"))


class TestWorker(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock(T0)
        self.engine = AutomationEngine(
            MemoryAutomationStore(),
            MemoryFlowStore(),
            MemoryQueueStore(),
            MemorySubscriberDirectory(),
            MemoryTemplateStore(),
            OutboxMailGateway(Outbox()),
            NullWebhooks(),
            MemoryTagSegmentService(),
            clock=self.clock,
        )
        self.engine.create_automation(
            {
                "id": "a1",
                "status": "active",
                "trigger_type": "evt",
                "steps": [{"action_type": "tag", "payload": {"tag": "a"}}],
            }
        )
        self.subscriber = self.engine.subscribers.upsert(Subscriber(id="s1", email="ada@example.com"))

    def test_crash_inside_processing_does_not_escape(self) -> None:
        flow = self.engine.on_event("evt", self.subscriber, {})[0]
        worker = Worker(self.engine, "w1", stale_claim_seconds=900)
        with mock.patch.object(self.engine.executor, "process", side_effect=RuntimeError("boom")):
            with self.assertLogs("mailflow.worker", level="ERROR"):
                self.assertEqual(worker.run_once(), 1)
        item = self.engine.queue.list_for_flow(flow.id)[0]
        self.assertEqual(item.claimed_by, "w1")

        # the abandoned claim is picked up again after the stale timeout
        self.clock.advance(seconds=901)
        self.assertEqual(worker.run_once(), 1)
        self.assertEqual(self.engine.flows.get(flow.id).status, "completed")

    def test_claim_failure_does_not_escape(self) -> None:
        worker = Worker(self.engine, "w1")
        with mock.patch.object(self.engine.scheduler, "claim_due", side_effect=RuntimeError("db down")):
            with self.assertLogs("mailflow.worker", level="ERROR"):
                self.assertEqual(worker.run_once(), 0)

    def test_two_workers_never_share_an_item(self) -> None:
        for idx in range(5):
            subscriber = self.engine.subscribers.upsert(Subscriber(id=f"s{idx}", email=f"s{idx}@example.com"))
            self.engine.on_event("evt", subscriber, {})
        first = self.engine.scheduler.claim_due(3, "w1")
        second = self.engine.scheduler.claim_due(10, "w2")
        self.assertEqual(len(first), 3)
        self.assertEqual(len(second), 2)
        self.assertFalse({i.id for i in first} & {i.id for i in second})

    def test_run_forever_honours_stop_event(self) -> None:
        worker = Worker(self.engine, "w1", poll_ms=10)
        stop_event = threading.Event()
        thread = threading.Thread(target=worker.run_forever, args=(stop_event,))
        thread.start()
        stop_event.set()
        thread.join(timeout=2)
        self.assertFalse(thread.is_alive())

    def test_retention_purge_runs_from_loop(self) -> None:
        worker = Worker(self.engine, "w1", retention_days=30)
        with mock.patch.object(self.engine, "purge_flows", return_value=0) as purge:
            worker._maybe_purge()
            worker._maybe_purge()
        purge.assert_called_once_with(30)


if __name__ == "__main__":
    unittest.main()
