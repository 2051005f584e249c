"""Wires the automation components together and exposes the admin surface.

Every collaborator is passed in explicitly; ``build_engine`` picks the
in-memory or Postgres stores from ``EngineSettings``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from app.automations_runtime import TriggerMatcher
from app.config import EngineSettings
from app.executor import ActionExecutor
from app.flows import FlowInitiator, FlowLifecycle
from app.gateways import HttpWebhookDispatcher, OutboxMailGateway
from app.models import (
    ACTION_SEND_EMAIL,
    AUTOMATION_ACTIVE,
    AUTOMATION_INACTIVE,
    FLOW_ACTIVE,
    FLOW_COMPLETED,
    FLOW_STOPPED,
    STEP_EXECUTED,
    STEP_FAILED,
    STEP_SKIPPED,
    AutomationDefinition,
    Flow,
    Subscriber,
    utcnow,
)
from app.scheduler import Scheduler
from outbox import Outbox

logger = logging.getLogger("mailflow.engine")


class AutomationEngine:
    def __init__(
        self,
        automations: Any,
        flows: Any,
        queue: Any,
        subscribers: Any,
        templates: Any,
        mail: Any,
        webhooks: Any,
        tags: Any,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 5,
        retry_base_seconds: int = 60,
        retry_max_seconds: int = 3600,
    ) -> None:
        self.automations = automations
        self.flows = flows
        self.queue = queue
        self.subscribers = subscribers
        self.templates = templates
        self.mail = mail
        self.webhooks = webhooks
        self.tags = tags
        self.clock = clock
        self.scheduler = Scheduler(
            queue,
            flows,
            clock,
            max_attempts=max_attempts,
            retry_base_seconds=retry_base_seconds,
            retry_max_seconds=retry_max_seconds,
        )
        self.lifecycle = FlowLifecycle(flows, queue, clock)
        self.initiator = FlowInitiator(flows, self.scheduler, self.lifecycle, clock)
        self.matcher = TriggerMatcher(automations, flows, self.initiator, clock)
        self.executor = ActionExecutor(
            automations,
            flows,
            self.scheduler,
            self.lifecycle,
            subscribers,
            templates,
            mail,
            webhooks,
            tags,
            clock,
        )

    # Events

    def on_event(self, event_name: str, subscriber: Subscriber, payload: dict | None = None) -> list[Flow]:
        return self.matcher.on_event(event_name, subscriber, payload)

    def on_behavior(self, subscriber: Subscriber, event: str, data: dict | None = None) -> list[Flow]:
        return self.matcher.on_behavior(subscriber, event, data)

    def stop(self, automation_id: str, subscriber_id: str, reason: str | None = None) -> Flow | None:
        return self.lifecycle.stop(automation_id, subscriber_id, reason)

    # Automation admin

    def create_automation(self, record: dict) -> AutomationDefinition:
        automation = self.automations.create(record)
        logger.info("automation_created automation_id=%s trigger=%s", automation.id, automation.trigger_type)
        return automation

    def update_automation(self, automation_id: str, updates: dict) -> AutomationDefinition | None:
        return self.automations.update(automation_id, updates)

    def get_automation(self, automation_id: str) -> AutomationDefinition | None:
        return self.automations.get(automation_id)

    def list_automations(self, status: str | None = None) -> list[AutomationDefinition]:
        return self.automations.list(status=status)

    def activate_automation(self, automation_id: str) -> AutomationDefinition | None:
        automation = self.automations.set_status(automation_id, AUTOMATION_ACTIVE)
        if automation is not None:
            logger.info("automation_activated automation_id=%s", automation_id)
        return automation

    def deactivate_automation(self, automation_id: str) -> AutomationDefinition | None:
        # flows already running keep going; only new triggers are blocked
        automation = self.automations.set_status(automation_id, AUTOMATION_INACTIVE)
        if automation is not None:
            logger.info("automation_deactivated automation_id=%s", automation_id)
        return automation

    # Reporting

    def running_flows(self, automation_id: str | None = None) -> list[Flow]:
        return self.flows.list(automation_id=automation_id, status=FLOW_ACTIVE)

    def flows_for(self, automation_id: str, status: str | None = None) -> list[Flow]:
        return self.flows.list(automation_id=automation_id, status=status)

    def analytics(self, automation_id: str) -> dict | None:
        automation = self.automations.get(automation_id)
        if automation is None:
            return None
        counts = self.flows.count_by_status(automation_id)
        total = sum(counts.values())
        completed = counts.get(FLOW_COMPLETED, 0)

        performance = {
            step.order: {
                "step_order": step.order,
                "action_type": step.action_type,
                STEP_EXECUTED: 0,
                STEP_SKIPPED: 0,
                STEP_FAILED: 0,
            }
            for step in automation.steps
        }
        for row in self.automations.step_stats(automation_id):
            entry = performance.get(row["step_order"])
            if entry is not None and row["result"] in entry:
                entry[row["result"]] += row["count"]
        emails_sent = sum(
            entry[STEP_EXECUTED] for entry in performance.values() if entry["action_type"] == ACTION_SEND_EMAIL
        )

        durations = [
            (flow.completed_at - flow.started_at).total_seconds() / 60
            for flow in self.flows.list(automation_id=automation_id, status=FLOW_COMPLETED)
            if flow.completed_at is not None
        ]
        return {
            "automation_id": automation_id,
            "total_flows": total,
            "active_flows": counts.get(FLOW_ACTIVE, 0),
            "completed_flows": completed,
            "stopped_flows": counts.get(FLOW_STOPPED, 0),
            "emails_sent": emails_sent,
            "completion_rate": round(completed / total * 100, 2) if total else 0.0,
            "avg_completion_minutes": round(sum(durations) / len(durations), 2) if durations else None,
            "step_performance": [performance[order] for order in sorted(performance)],
        }

    def purge_flows(self, older_than_days: int) -> int:
        cutoff = self.clock() - timedelta(days=older_than_days)
        removed = self.flows.purge_terminal(cutoff)
        logger.info("flows_purged count=%s older_than_days=%s", removed, older_than_days)
        return removed


def build_engine(settings: EngineSettings, outbox: Outbox | None = None) -> AutomationEngine:
    outbox = outbox or Outbox()
    if settings.use_db:
        from app.db import init_pool
        from app.stores_db import (
            DbAutomationStore,
            DbFlowStore,
            DbQueueStore,
            DbSubscriberDirectory,
            DbTagSegmentService,
            DbTemplateStore,
            ensure_schema,
        )

        init_pool(settings.database_url, settings.db_pool_min, settings.db_pool_max, settings.query_slow_ms)
        ensure_schema()
        stores = (
            DbAutomationStore(),
            DbFlowStore(),
            DbQueueStore(),
            DbSubscriberDirectory(),
            DbTemplateStore(),
            DbTagSegmentService(),
        )
    else:
        from app.stores import (
            MemoryAutomationStore,
            MemoryFlowStore,
            MemoryQueueStore,
            MemorySubscriberDirectory,
            MemoryTagSegmentService,
            MemoryTemplateStore,
        )

        stores = (
            MemoryAutomationStore(),
            MemoryFlowStore(),
            MemoryQueueStore(),
            MemorySubscriberDirectory(),
            MemoryTemplateStore(),
            MemoryTagSegmentService(),
        )
    automations, flows, queue, subscribers, templates, tags = stores
    return AutomationEngine(
        automations,
        flows,
        queue,
        subscribers,
        templates,
        OutboxMailGateway(outbox),
        HttpWebhookDispatcher(timeout=settings.webhook_timeout_seconds),
        tags,
        max_attempts=settings.max_attempts,
        retry_base_seconds=settings.retry_base_seconds,
        retry_max_seconds=settings.retry_max_seconds,
    )
