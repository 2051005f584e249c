"""Flow creation, stop and completion."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from app.models import AutomationDefinition, Flow, Subscriber, utcnow
from mailflow.canonical_json import freeze_json

logger = logging.getLogger("mailflow.flows")


def merge_context(*layers: Mapping[str, Any] | None) -> dict:
    merged: dict = {}
    for layer in layers:
        if layer:
            merged.update(layer)
    return merged


class FlowLifecycle:
    def __init__(self, flow_store: Any, queue_store: Any, clock: Callable[[], datetime] = utcnow) -> None:
        self._flows = flow_store
        self._queue = queue_store
        self._clock = clock

    def stop(self, automation_id: str, subscriber_id: str, reason: str | None = None) -> Flow | None:
        flow = self._flows.get_active(automation_id, subscriber_id)
        if flow is None:
            return None
        self.stop_flow(flow.id, reason)
        return self._flows.get(flow.id)

    def stop_flow(self, flow_id: str, reason: str | None = None, at_step: int | None = None) -> bool:
        """Stop an active flow; ``at_step`` pins ``current_step`` in the same write."""
        if not self._flows.stop(flow_id, reason, self._clock(), at_step=at_step):
            return False
        discarded = self._queue.discard_for_flow(flow_id)
        logger.info("flow_stopped flow_id=%s reason=%s discarded_items=%s", flow_id, reason, discarded)
        return True

    def complete(self, flow: Flow) -> bool:
        if not self._flows.complete(flow.id, self._clock()):
            return False
        logger.info(
            "flow_completed flow_id=%s automation_id=%s subscriber_id=%s",
            flow.id,
            flow.automation_id,
            flow.subscriber_id,
        )
        return True


class FlowInitiator:
    def __init__(
        self,
        flow_store: Any,
        scheduler: Any,
        lifecycle: FlowLifecycle,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._flows = flow_store
        self._scheduler = scheduler
        self._lifecycle = lifecycle
        self._clock = clock

    def start(self, automation: AutomationDefinition, subscriber: Subscriber, context: Mapping[str, Any] | None) -> Flow | None:
        now = self._clock()
        snapshot = freeze_json(merge_context(subscriber.context(), context))
        flow = self._flows.create_active(automation.id, subscriber.id, snapshot, now)
        if flow is None:
            logger.info(
                "flow_start_skipped automation_id=%s subscriber_id=%s reason=already_active",
                automation.id,
                subscriber.id,
            )
            return None
        logger.info(
            "flow_started flow_id=%s automation_id=%s subscriber_id=%s",
            flow.id,
            automation.id,
            subscriber.id,
        )
        first = automation.step(1)
        if first is None:
            self._lifecycle.complete(flow)
        else:
            self._scheduler.enqueue(flow, 1, now + timedelta(minutes=first.delay_minutes))
        return self._flows.get(flow.id)
