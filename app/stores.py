"""In-memory stores and collaborators.

Every store guards its state with a lock so that the check-then-write
operations the engine relies on (create-if-no-active-flow, step
compare-and-set, queue claim) are atomic across worker threads.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Tuple

from app.gateways import SubscriberDirectory, TagSegmentService, TemplateDirectory
from app.models import (
    AUTOMATION_ACTIVE,
    FLOW_ACTIVE,
    FLOW_COMPLETED,
    FLOW_STOPPED,
    FLOW_TERMINAL,
    AutomationDefinition,
    AutomationDefinitionError,
    Flow,
    QueueItem,
    Subscriber,
    parse_automation,
    utcnow,
    validate_automation,
)

logger = logging.getLogger("mailflow.stores")


class MemoryAutomationStore:
    def __init__(self) -> None:
        self._automations: Dict[str, dict] = {}
        self._step_stats: Dict[Tuple[str, int, str], int] = {}
        self._lock = threading.Lock()

    def create(self, record: dict) -> AutomationDefinition:
        item = copy.deepcopy(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("status", "draft")
        automation = validate_automation(item)
        stored = automation.to_dict()
        stored["created_at"] = utcnow()
        stored["updated_at"] = stored["created_at"]
        with self._lock:
            if automation.id in self._automations:
                raise AutomationDefinitionError("AUTOMATION_EXISTS", "Automation id already exists", "id")
            self._automations[automation.id] = stored
        return automation

    def update(self, automation_id: str, updates: dict) -> AutomationDefinition | None:
        with self._lock:
            item = self._automations.get(automation_id)
            if not item:
                return None
            merged = copy.deepcopy(item)
            merged.update(copy.deepcopy(updates))
            merged["id"] = automation_id
            automation = validate_automation(merged)
            stored = automation.to_dict()
            stored["created_at"] = item.get("created_at")
            stored["updated_at"] = utcnow()
            self._automations[automation_id] = stored
            return automation

    def set_status(self, automation_id: str, status: str) -> AutomationDefinition | None:
        return self.update(automation_id, {"status": status})

    def get(self, automation_id: str) -> AutomationDefinition | None:
        with self._lock:
            item = copy.deepcopy(self._automations.get(automation_id))
        return parse_automation(item) if item else None

    def list(self, status: str | None = None) -> list[AutomationDefinition]:
        with self._lock:
            items = [copy.deepcopy(i) for i in self._automations.values()]
        items.sort(key=lambda i: i["updated_at"], reverse=True)
        out = []
        for item in items:
            if status and item.get("status") != status:
                continue
            try:
                out.append(parse_automation(item))
            except AutomationDefinitionError as exc:
                logger.warning("automation_unparseable automation_id=%s error=%s", item.get("id"), exc)
        return out

    def list_active(self, trigger_type: str, now: datetime) -> list[AutomationDefinition]:
        return [
            a for a in self.list(status=AUTOMATION_ACTIVE)
            if a.trigger_type == trigger_type and a.is_live(now)
        ]

    def delete(self, automation_id: str) -> bool:
        with self._lock:
            return self._automations.pop(automation_id, None) is not None

    def record_step_result(self, automation_id: str, step_order: int, result: str) -> None:
        key = (automation_id, step_order, result)
        with self._lock:
            self._step_stats[key] = self._step_stats.get(key, 0) + 1

    def step_stats(self, automation_id: str) -> list[dict]:
        with self._lock:
            rows = [
                {"step_order": order, "result": result, "count": count}
                for (aid, order, result), count in self._step_stats.items()
                if aid == automation_id
            ]
        rows.sort(key=lambda r: (r["step_order"], r["result"]))
        return rows


class MemoryFlowStore:
    def __init__(self) -> None:
        self._flows: Dict[str, Flow] = {}
        self._lock = threading.Lock()

    def _find_active(self, automation_id: str, subscriber_id: str) -> Flow | None:
        for flow in self._flows.values():
            if (
                flow.status == FLOW_ACTIVE
                and flow.automation_id == automation_id
                and flow.subscriber_id == subscriber_id
            ):
                return flow
        return None

    def create_active(self, automation_id: str, subscriber_id: str, context: dict, now: datetime) -> Flow | None:
        with self._lock:
            if self._find_active(automation_id, subscriber_id) is not None:
                return None
            flow = Flow(
                id=str(uuid.uuid4()),
                automation_id=automation_id,
                subscriber_id=subscriber_id,
                started_at=now,
                context=copy.deepcopy(context),
                updated_at=now,
            )
            self._flows[flow.id] = flow
            return copy.deepcopy(flow)

    def get(self, flow_id: str) -> Flow | None:
        with self._lock:
            flow = self._flows.get(flow_id)
            return copy.deepcopy(flow) if flow else None

    def get_active(self, automation_id: str, subscriber_id: str) -> Flow | None:
        with self._lock:
            flow = self._find_active(automation_id, subscriber_id)
            return copy.deepcopy(flow) if flow else None

    def advance(self, flow_id: str, from_step: int, to_step: int, now: datetime) -> bool:
        with self._lock:
            flow = self._flows.get(flow_id)
            if flow is None or flow.status != FLOW_ACTIVE or flow.current_step != from_step:
                return False
            flow.current_step = to_step
            flow.next_action_at = None
            flow.updated_at = now
            return True

    def set_next_action(self, flow_id: str, at: datetime | None, now: datetime) -> bool:
        with self._lock:
            flow = self._flows.get(flow_id)
            if flow is None or flow.status != FLOW_ACTIVE:
                return False
            flow.next_action_at = at
            flow.updated_at = now
            return True

    def complete(self, flow_id: str, now: datetime) -> bool:
        with self._lock:
            flow = self._flows.get(flow_id)
            if flow is None or flow.status != FLOW_ACTIVE:
                return False
            flow.status = FLOW_COMPLETED
            flow.completed_at = now
            flow.next_action_at = None
            flow.updated_at = now
            return True

    def stop(self, flow_id: str, reason: str | None, now: datetime, at_step: int | None = None) -> bool:
        with self._lock:
            flow = self._flows.get(flow_id)
            if flow is None or flow.status != FLOW_ACTIVE:
                return False
            if at_step is not None:
                flow.current_step = at_step
            flow.status = FLOW_STOPPED
            flow.stopped_at = now
            flow.stop_reason = reason
            flow.next_action_at = None
            flow.updated_at = now
            return True

    def list(self, automation_id: str | None = None, status: str | None = None) -> list[Flow]:
        with self._lock:
            items = [
                copy.deepcopy(f) for f in self._flows.values()
                if (automation_id is None or f.automation_id == automation_id)
                and (status is None or f.status == status)
            ]
        items.sort(key=lambda f: f.started_at, reverse=True)
        return items

    def count_by_status(self, automation_id: str) -> dict:
        counts = {FLOW_ACTIVE: 0, FLOW_COMPLETED: 0, FLOW_STOPPED: 0}
        with self._lock:
            for flow in self._flows.values():
                if flow.automation_id == automation_id:
                    counts[flow.status] = counts.get(flow.status, 0) + 1
        return counts

    def purge_terminal(self, before: datetime) -> int:
        with self._lock:
            doomed = [
                flow_id for flow_id, flow in self._flows.items()
                if flow.status in FLOW_TERMINAL
                and (flow.completed_at or flow.stopped_at or flow.started_at) < before
            ]
            for flow_id in doomed:
                del self._flows[flow_id]
        return len(doomed)


class MemoryQueueStore:
    def __init__(self) -> None:
        self._items: Dict[str, QueueItem] = {}
        self._lock = threading.Lock()

    def push(
        self,
        flow: Flow,
        step_number: int,
        not_before: datetime,
        attempt: int = 0,
        now: datetime | None = None,
    ) -> QueueItem:
        item = QueueItem(
            id=str(uuid.uuid4()),
            flow_id=flow.id,
            automation_id=flow.automation_id,
            subscriber_id=flow.subscriber_id,
            step_number=step_number,
            not_before=not_before,
            attempt=attempt,
            created_at=now or utcnow(),
        )
        with self._lock:
            self._items[item.id] = item
        return copy.deepcopy(item)

    def claim_due(self, limit: int, worker_id: str, now: datetime) -> list[QueueItem]:
        with self._lock:
            ready = [
                item for item in self._items.values()
                if item.claimed_at is None and item.not_before <= now
            ]
            ready.sort(key=lambda i: (i.not_before, i.created_at or i.not_before))
            claimed = []
            for item in ready[:limit]:
                item.claimed_at = now
                item.claimed_by = worker_id
                claimed.append(copy.deepcopy(item))
            return claimed

    def ack(self, item_id: str) -> bool:
        with self._lock:
            return self._items.pop(item_id, None) is not None

    def requeue(self, item_id: str, not_before: datetime, attempt: int, last_error: str | None) -> QueueItem | None:
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                return None
            updated = replace(item.released(), not_before=not_before, attempt=attempt, last_error=last_error)
            self._items[item_id] = updated
            return copy.deepcopy(updated)

    def release_stale(self, timeout_seconds: float, now: datetime) -> int:
        cutoff = now - timedelta(seconds=timeout_seconds)
        released = 0
        with self._lock:
            for item_id, item in list(self._items.items()):
                if item.claimed_at is not None and item.claimed_at <= cutoff:
                    self._items[item_id] = item.released()
                    released += 1
        return released

    def discard_for_flow(self, flow_id: str) -> int:
        with self._lock:
            doomed = [
                item_id for item_id, item in self._items.items()
                if item.flow_id == flow_id and item.claimed_at is None
            ]
            for item_id in doomed:
                del self._items[item_id]
        return len(doomed)

    def get(self, item_id: str) -> QueueItem | None:
        with self._lock:
            item = self._items.get(item_id)
            return copy.deepcopy(item) if item else None

    def list_for_flow(self, flow_id: str) -> list[QueueItem]:
        with self._lock:
            items = [copy.deepcopy(i) for i in self._items.values() if i.flow_id == flow_id]
        items.sort(key=lambda i: i.not_before)
        return items

    def pending(self) -> list[QueueItem]:
        with self._lock:
            items = [copy.deepcopy(i) for i in self._items.values()]
        items.sort(key=lambda i: i.not_before)
        return items


class MemorySubscriberDirectory(SubscriberDirectory):
    def __init__(self) -> None:
        self._subscribers: Dict[str, Subscriber] = {}
        self._lock = threading.Lock()

    def upsert(self, subscriber: Subscriber) -> Subscriber:
        with self._lock:
            self._subscribers[subscriber.id] = copy.deepcopy(subscriber)
        return copy.deepcopy(subscriber)

    def update_attributes(self, subscriber_id: str, changes: dict) -> Subscriber | None:
        with self._lock:
            subscriber = self._subscribers.get(subscriber_id)
            if subscriber is None:
                return None
            subscriber.attributes.update(copy.deepcopy(changes))
            return copy.deepcopy(subscriber)

    def find_by_id(self, subscriber_id: str) -> Subscriber | None:
        with self._lock:
            subscriber = self._subscribers.get(subscriber_id)
            return copy.deepcopy(subscriber) if subscriber else None

    def find_by_email(self, email: str) -> Subscriber | None:
        if not isinstance(email, str):
            return None
        needle = email.strip().lower()
        with self._lock:
            for subscriber in self._subscribers.values():
                if (subscriber.email or "").lower() == needle:
                    return copy.deepcopy(subscriber)
        return None


class MemoryTemplateStore(TemplateDirectory):
    def __init__(self) -> None:
        self._templates: Dict[str, dict] = {}

    def create_template(self, record: dict) -> dict:
        item = copy.deepcopy(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("created_at", utcnow())
        self._templates[item["id"]] = item
        return copy.deepcopy(item)

    def get_template(self, template_id: str) -> dict | None:
        item = self._templates.get(template_id)
        return copy.deepcopy(item) if item else None


class MemoryTagSegmentService(TagSegmentService):
    def __init__(self) -> None:
        self._tags: Dict[str, set] = {}
        self._segments: Dict[str, set] = {}
        self._lock = threading.Lock()

    def add_tag(self, subscriber: Subscriber, tag: str) -> None:
        with self._lock:
            self._tags.setdefault(subscriber.id, set()).add(tag)

    def add_to_segment(self, subscriber: Subscriber, segment_id: str) -> None:
        with self._lock:
            self._segments.setdefault(segment_id, set()).add(subscriber.id)

    def remove_from_segment(self, subscriber: Subscriber, segment_id: str) -> None:
        with self._lock:
            self._segments.get(segment_id, set()).discard(subscriber.id)

    def tags_for(self, subscriber_id: str) -> List[str]:
        with self._lock:
            return sorted(self._tags.get(subscriber_id, set()))

    def segment_members(self, segment_id: str) -> List[str]:
        with self._lock:
            return sorted(self._segments.get(segment_id, set()))
