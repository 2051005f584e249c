"""Matches incoming events against active automations and starts flows."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from app.flows import FlowInitiator, merge_context
from app.models import BEHAVIORAL_PREFIX, Flow, Subscriber, utcnow
from condition_eval import evaluate_all

logger = logging.getLogger("mailflow.automations_runtime")


class TriggerMatcher:
    def __init__(
        self,
        automation_store: Any,
        flow_store: Any,
        initiator: FlowInitiator,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._automations = automation_store
        self._flows = flow_store
        self._initiator = initiator
        self._clock = clock

    def on_event(self, event_name: str, subscriber: Subscriber, payload: dict | None = None) -> list[Flow]:
        if not isinstance(event_name, str) or not event_name:
            return []
        logger.info("automation_event_received event=%s subscriber_id=%s", event_name, subscriber.id)
        automations = self._automations.list_active(event_name, self._clock())
        if not automations:
            logger.info("automation_no_active event=%s", event_name)
            return []
        context = merge_context(subscriber.context(), payload)
        flows = []
        for automation in automations:
            try:
                if self._flows.get_active(automation.id, subscriber.id) is not None:
                    continue
                if not evaluate_all(automation.trigger_conditions, context):
                    logger.info(
                        "automation_conditions_not_met automation_id=%s subscriber_id=%s",
                        automation.id,
                        subscriber.id,
                    )
                    continue
                flow = self._initiator.start(automation, subscriber, payload)
            except Exception:
                logger.exception(
                    "automation_trigger_failed automation_id=%s event=%s subscriber_id=%s",
                    automation.id,
                    event_name,
                    subscriber.id,
                )
                continue
            if flow is not None:
                flows.append(flow)
        return flows

    def on_behavior(self, subscriber: Subscriber, event: str, data: dict | None = None) -> list[Flow]:
        return self.on_event(f"{BEHAVIORAL_PREFIX}{event}", subscriber, data)
