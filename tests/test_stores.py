import os
import sys
import threading
import unittest
from datetime import datetime, timedelta, timezone


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.models import AutomationDefinitionError, Subscriber
from app.stores import (
    MemoryAutomationStore,
    MemoryFlowStore,
    MemoryQueueStore,
    MemorySubscriberDirectory,
    MemoryTagSegmentService,
)

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestMemoryAutomationStore(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryAutomationStore()

    def test_create_assigns_id_and_draft_status(self) -> None:
        automation = self.store.create({"trigger_type": "cart_abandoned"})
        self.assertTrue(automation.id)
        self.assertEqual(automation.status, "draft")
        self.assertEqual(self.store.get(automation.id), automation)

    def test_duplicate_id_rejected(self) -> None:
        self.store.create({"id": "a1", "trigger_type": "x"})
        with self.assertRaises(AutomationDefinitionError) as ctx:
            self.store.create({"id": "a1", "trigger_type": "x"})
        self.assertEqual(ctx.exception.code, "AUTOMATION_EXISTS")

    def test_create_rejects_unknown_operator(self) -> None:
        with self.assertRaises(AutomationDefinitionError):
            self.store.create(
                {"trigger_type": "x", "trigger_conditions": [{"field": "a", "operator": "regex", "value": "."}]}
            )

    def test_list_active_filters_status_trigger_and_window(self) -> None:
        self.store.create({"id": "a1", "trigger_type": "x", "status": "active"})
        self.store.create({"id": "a2", "trigger_type": "x", "status": "inactive"})
        self.store.create({"id": "a3", "trigger_type": "y", "status": "active"})
        self.store.create(
            {"id": "a4", "trigger_type": "x", "status": "active", "start_at": (T0 + timedelta(days=1)).isoformat()}
        )
        self.assertEqual([a.id for a in self.store.list_active("x", T0)], ["a1"])

    def test_set_status(self) -> None:
        self.store.create({"id": "a1", "trigger_type": "x"})
        self.assertEqual(self.store.set_status("a1", "active").status, "active")
        self.assertIsNone(self.store.set_status("missing", "active"))

    def test_step_stats(self) -> None:
        self.store.record_step_result("a1", 1, "executed")
        self.store.record_step_result("a1", 1, "executed")
        self.store.record_step_result("a1", 2, "skipped")
        self.store.record_step_result("a2", 1, "failed")
        self.assertEqual(
            self.store.step_stats("a1"),
            [
                {"step_order": 1, "result": "executed", "count": 2},
                {"step_order": 2, "result": "skipped", "count": 1},
            ],
        )


class TestMemoryFlowStore(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryFlowStore()

    def test_single_active_flow_per_pair(self) -> None:
        first = self.store.create_active("a1", "s1", {"k": 1}, T0)
        self.assertIsNotNone(first)
        self.assertIsNone(self.store.create_active("a1", "s1", {}, T0))
        self.assertIsNotNone(self.store.create_active("a1", "s2", {}, T0))
        self.assertTrue(self.store.complete(first.id, T0))
        self.assertIsNotNone(self.store.create_active("a1", "s1", {}, T0))

    def test_concurrent_create_yields_one_flow(self) -> None:
        results = []
        barrier = threading.Barrier(8)

        def attempt() -> None:
            barrier.wait()
            results.append(self.store.create_active("a1", "s1", {}, T0))

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len([r for r in results if r is not None]), 1)

    def test_advance_is_compare_and_set(self) -> None:
        flow = self.store.create_active("a1", "s1", {}, T0)
        self.assertTrue(self.store.advance(flow.id, 0, 1, T0))
        self.assertFalse(self.store.advance(flow.id, 0, 1, T0))
        self.assertEqual(self.store.get(flow.id).current_step, 1)
        self.store.stop(flow.id, "manual", T0)
        self.assertFalse(self.store.advance(flow.id, 1, 2, T0))

    def test_terminal_flows_never_transition(self) -> None:
        flow = self.store.create_active("a1", "s1", {}, T0)
        self.assertTrue(self.store.stop(flow.id, "manual", T0))
        self.assertFalse(self.store.stop(flow.id, "again", T0))
        self.assertFalse(self.store.complete(flow.id, T0))
        stored = self.store.get(flow.id)
        self.assertEqual(stored.status, "stopped")
        self.assertEqual(stored.stop_reason, "manual")

    def test_stop_can_pin_the_step_index(self) -> None:
        flow = self.store.create_active("a1", "s1", {}, T0)
        self.store.advance(flow.id, 0, 1, T0)
        self.assertTrue(self.store.stop(flow.id, "condition_not_met", T0, at_step=2))
        stored = self.store.get(flow.id)
        self.assertEqual(stored.status, "stopped")
        self.assertEqual(stored.current_step, 2)

    def test_returned_flow_is_a_copy(self) -> None:
        flow = self.store.create_active("a1", "s1", {"k": 1}, T0)
        flow.context["k"] = 2
        self.assertEqual(self.store.get(flow.id).context, {"k": 1})

    def test_purge_terminal(self) -> None:
        old = self.store.create_active("a1", "s1", {}, T0)
        self.store.complete(old.id, T0)
        active = self.store.create_active("a1", "s2", {}, T0)
        self.assertEqual(self.store.purge_terminal(T0 + timedelta(days=1)), 1)
        self.assertIsNone(self.store.get(old.id))
        self.assertIsNotNone(self.store.get(active.id))

    def test_count_by_status(self) -> None:
        flow = self.store.create_active("a1", "s1", {}, T0)
        self.store.complete(flow.id, T0)
        self.store.create_active("a1", "s2", {}, T0)
        self.assertEqual(self.store.count_by_status("a1"), {"active": 1, "completed": 1, "stopped": 0})


class TestMemoryQueueStore(unittest.TestCase):
    def setUp(self) -> None:
        self.flows = MemoryFlowStore()
        self.queue = MemoryQueueStore()
        self.flow = self.flows.create_active("a1", "s1", {}, T0)

    def test_claim_due_orders_by_not_before(self) -> None:
        late = self.queue.push(self.flow, 2, T0 + timedelta(minutes=5), now=T0)
        early = self.queue.push(self.flow, 1, T0 + timedelta(minutes=1), now=T0)
        self.queue.push(self.flow, 3, T0 + timedelta(hours=1), now=T0)
        claimed = self.queue.claim_due(10, "w1", T0 + timedelta(minutes=10))
        self.assertEqual([i.id for i in claimed], [early.id, late.id])
        self.assertEqual(claimed[0].claimed_by, "w1")
        self.assertEqual(self.queue.claim_due(10, "w2", T0 + timedelta(minutes=10)), [])

    def test_release_stale(self) -> None:
        item = self.queue.push(self.flow, 1, T0, now=T0)
        self.queue.claim_due(1, "w1", T0)
        self.assertEqual(self.queue.release_stale(900, T0 + timedelta(seconds=60)), 0)
        self.assertEqual(self.queue.release_stale(900, T0 + timedelta(seconds=901)), 1)
        self.assertEqual(self.queue.claim_due(1, "w2", T0 + timedelta(seconds=901))[0].id, item.id)

    def test_requeue_releases_claim(self) -> None:
        item = self.queue.push(self.flow, 1, T0, now=T0)
        self.queue.claim_due(1, "w1", T0)
        updated = self.queue.requeue(item.id, T0 + timedelta(minutes=1), 1, "boom")
        self.assertIsNone(updated.claimed_at)
        self.assertEqual(updated.attempt, 1)
        self.assertEqual(updated.last_error, "boom")

    def test_discard_for_flow_keeps_claimed_items(self) -> None:
        claimed = self.queue.push(self.flow, 1, T0, now=T0)
        self.queue.claim_due(1, "w1", T0)
        self.queue.push(self.flow, 2, T0 + timedelta(minutes=1), now=T0)
        self.assertEqual(self.queue.discard_for_flow(self.flow.id), 1)
        self.assertEqual([i.id for i in self.queue.pending()], [claimed.id])

    def test_ack(self) -> None:
        item = self.queue.push(self.flow, 1, T0, now=T0)
        self.assertTrue(self.queue.ack(item.id))
        self.assertFalse(self.queue.ack(item.id))


class TestMemoryDirectories(unittest.TestCase):
    def test_find_by_email_is_case_insensitive(self) -> None:
        directory = MemorySubscriberDirectory()
        directory.upsert(Subscriber(id="s1", email="Ada@Example.com"))
        self.assertEqual(directory.find_by_email("ada@example.com").id, "s1")
        self.assertIsNone(directory.find_by_email("bob@example.com"))

    def test_update_attributes(self) -> None:
        directory = MemorySubscriberDirectory()
        directory.upsert(Subscriber(id="s1", attributes={"vip": False}))
        directory.update_attributes("s1", {"vip": True})
        self.assertTrue(directory.find_by_id("s1").attributes["vip"])
        self.assertIsNone(directory.update_attributes("missing", {}))

    def test_tags_and_segments(self) -> None:
        service = MemoryTagSegmentService()
        subscriber = Subscriber(id="s1")
        service.add_tag(subscriber, "vip")
        service.add_to_segment(subscriber, "seg")
        self.assertEqual(service.tags_for("s1"), ["vip"])
        self.assertEqual(service.segment_members("seg"), ["s1"])
        service.remove_from_segment(subscriber, "seg")
        self.assertEqual(service.segment_members("seg"), [])


if __name__ == "__main__":
    unittest.main()
