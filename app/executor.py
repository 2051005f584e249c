"""Executes one queued step of a flow and moves the flow forward."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict

from jinja2 import TemplateError

from app.flows import FlowLifecycle, merge_context
from app.models import (
    ACTION_CONDITION,
    ACTION_SEGMENT,
    ACTION_SEND_EMAIL,
    ACTION_TAG,
    ACTION_TYPES,
    ACTION_WAIT,
    ACTION_WEBHOOK,
    DEFAULT_WAIT_MINUTES,
    STEP_EXECUTED,
    STEP_FAILED,
    STEP_SKIPPED,
    ActionStep,
    AutomationDefinition,
    AutomationDefinitionError,
    Flow,
    QueueItem,
    Subscriber,
    utcnow,
)
from app.template_render import render_value
from condition_eval import evaluate_all

logger = logging.getLogger("mailflow.executor")

OUTCOME_ADVANCED = "advanced"
OUTCOME_COMPLETED = "completed"
OUTCOME_STOPPED = "stopped"
OUTCOME_RETRY = "retry"
OUTCOME_DISCARDED = "discarded"


@dataclass
class TransientActionError(Exception):
    code: str
    message: str

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass(frozen=True)
class StepResult:
    extra_delay_minutes: int = 0
    stop_reason: str | None = None
    stop_at_step: int | None = None


Handler = Callable[[ActionStep, Flow, Subscriber, dict], StepResult]


class ActionExecutor:
    def __init__(
        self,
        automation_store: Any,
        flow_store: Any,
        scheduler: Any,
        lifecycle: FlowLifecycle,
        subscribers: Any,
        templates: Any,
        mail: Any,
        webhooks: Any,
        tags: Any,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._automations = automation_store
        self._flows = flow_store
        self._scheduler = scheduler
        self._lifecycle = lifecycle
        self._subscribers = subscribers
        self._templates = templates
        self._mail = mail
        self._webhooks = webhooks
        self._tags = tags
        self._clock = clock
        self._handlers: Dict[str, Handler] = {
            ACTION_SEND_EMAIL: self._send_email,
            ACTION_WAIT: self._wait,
            ACTION_CONDITION: self._condition,
            ACTION_TAG: self._tag,
            ACTION_SEGMENT: self._segment,
            ACTION_WEBHOOK: self._webhook,
        }
        missing = ACTION_TYPES - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for action types: {sorted(missing)}")

    def process(self, item: QueueItem) -> str:
        """Run ``item`` and resolve any failure to requeue or stop."""
        try:
            return self.execute(item)
        except AutomationDefinitionError as exc:
            logger.error(
                "step_definition_error flow_id=%s step=%s error=%s",
                item.flow_id,
                item.step_number,
                exc,
            )
            self._record(item.automation_id, item.step_number, STEP_FAILED)
            self._lifecycle.stop_flow(item.flow_id, f"definition_error:{exc.code}")
            self._scheduler.ack(item)
            return OUTCOME_STOPPED
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.warning(
                "step_failed flow_id=%s step=%s attempt=%s error=%s",
                item.flow_id,
                item.step_number,
                item.attempt + 1,
                error,
            )
            if self._scheduler.retry(item, error) is not None:
                return OUTCOME_RETRY
            self._record(item.automation_id, item.step_number, STEP_FAILED)
            self._lifecycle.stop_flow(item.flow_id, "retries_exhausted")
            self._scheduler.ack(item)
            return OUTCOME_STOPPED

    def execute(self, item: QueueItem) -> str:
        flow = self._flows.get(item.flow_id)
        if flow is None or not flow.is_active:
            logger.info("step_discarded flow_id=%s step=%s reason=flow_not_active", item.flow_id, item.step_number)
            self._scheduler.ack(item)
            return OUTCOME_DISCARDED
        if flow.current_step not in (item.step_number - 1, item.step_number):
            logger.info(
                "step_discarded flow_id=%s step=%s current_step=%s reason=out_of_order",
                flow.id,
                item.step_number,
                flow.current_step,
            )
            self._scheduler.ack(item)
            return OUTCOME_DISCARDED

        automation = self._automations.get(flow.automation_id)
        if automation is None:
            raise AutomationDefinitionError("AUTOMATION_NOT_FOUND", "Automation not found", "automation_id")
        if flow.current_step == item.step_number:
            return self._resume(automation, flow, item)
        step = automation.step(item.step_number)
        if step is None:
            # steps were removed after the flow started
            self._lifecycle.complete(flow)
            self._scheduler.ack(item)
            return OUTCOME_COMPLETED

        subscriber = self._subscribers.find_by_id(flow.subscriber_id)
        if subscriber is None:
            self._lifecycle.stop_flow(flow.id, "subscriber_not_found")
            self._scheduler.ack(item)
            return OUTCOME_STOPPED

        context = merge_context(flow.context, subscriber.context())
        if step.action_type != ACTION_CONDITION and not evaluate_all(step.conditions, context):
            logger.info("step_skipped flow_id=%s step=%s reason=gate_false", flow.id, step.order)
            self._record(automation.id, step.order, STEP_SKIPPED)
            result = StepResult()
        else:
            result = self._handlers[step.action_type](step, flow, subscriber, context)
            self._record(automation.id, step.order, STEP_EXECUTED)
        return self._finish(automation, flow, item, result)

    def _finish(self, automation: AutomationDefinition, flow: Flow, item: QueueItem, result: StepResult) -> str:
        if result.stop_reason:
            self._lifecycle.stop_flow(flow.id, result.stop_reason, at_step=result.stop_at_step)
            self._scheduler.ack(item)
            return OUTCOME_STOPPED

        now = self._clock()
        if not self._flows.advance(flow.id, item.step_number - 1, item.step_number, now):
            logger.info("step_advance_rejected flow_id=%s step=%s", flow.id, item.step_number)
            self._scheduler.ack(item)
            return OUTCOME_DISCARDED
        flow.current_step = item.step_number

        next_step = automation.step(item.step_number + 1)
        if next_step is None:
            self._lifecycle.complete(flow)
            self._scheduler.ack(item)
            return OUTCOME_COMPLETED

        delay = next_step.delay_minutes + result.extra_delay_minutes
        self._scheduler.enqueue(flow, next_step.order, now + timedelta(minutes=delay))
        self._scheduler.ack(item)
        return OUTCOME_ADVANCED

    def _resume(self, automation: AutomationDefinition, flow: Flow, item: QueueItem) -> str:
        """Pick up a flow whose step ran and advanced but whose follow-up was never queued."""
        if any(other.id != item.id for other in self._scheduler.items_for_flow(flow.id)):
            logger.info("step_discarded flow_id=%s step=%s reason=already_advanced", flow.id, item.step_number)
            self._scheduler.ack(item)
            return OUTCOME_DISCARDED

        logger.warning("flow_resumed flow_id=%s step=%s", flow.id, item.step_number)
        next_step = automation.step(item.step_number + 1)
        if next_step is None:
            self._lifecycle.complete(flow)
            self._scheduler.ack(item)
            return OUTCOME_COMPLETED

        # wait-step padding is not persisted, so only the next step's own delay applies
        advanced_at = flow.updated_at or self._clock()
        self._scheduler.enqueue(flow, next_step.order, advanced_at + timedelta(minutes=next_step.delay_minutes))
        self._scheduler.ack(item)
        return OUTCOME_ADVANCED

    def _record(self, automation_id: str, step_order: int, result: str) -> None:
        try:
            self._automations.record_step_result(automation_id, step_order, result)
        except Exception:
            logger.exception("step_stats_failed automation_id=%s step=%s", automation_id, step_order)

    def _render(self, value: Any, context: dict) -> Any:
        try:
            return render_value(value, context)
        except TemplateError as exc:
            raise AutomationDefinitionError("TEMPLATE_RENDER_FAILED", str(exc), "payload") from exc

    def _send_email(self, step: ActionStep, flow: Flow, subscriber: Subscriber, context: dict) -> StepResult:
        template_id = step.payload.get("template_id")
        if not isinstance(template_id, str) or self._templates.get_template(template_id) is None:
            raise AutomationDefinitionError("TEMPLATE_NOT_FOUND", f"Template not found: {template_id}", "payload.template_id")
        personalization = merge_context(context, self._render(step.payload.get("context") or {}, context))
        if not self._mail.send(subscriber, template_id, personalization):
            raise TransientActionError("MAIL_SEND_FAILED", f"Mail gateway rejected template {template_id}")
        return StepResult()

    def _wait(self, step: ActionStep, flow: Flow, subscriber: Subscriber, context: dict) -> StepResult:
        minutes = step.payload.get("wait_minutes")
        if minutes is None:
            minutes = DEFAULT_WAIT_MINUTES
        return StepResult(extra_delay_minutes=int(minutes))

    def _condition(self, step: ActionStep, flow: Flow, subscriber: Subscriber, context: dict) -> StepResult:
        if evaluate_all(step.conditions, context):
            return StepResult()
        logger.info("condition_not_met flow_id=%s step=%s", flow.id, step.order)
        return StepResult(stop_reason="condition_not_met", stop_at_step=step.order)

    def _tag(self, step: ActionStep, flow: Flow, subscriber: Subscriber, context: dict) -> StepResult:
        tag = self._render(step.payload.get("tag"), context)
        if not isinstance(tag, str) or not tag.strip():
            raise AutomationDefinitionError("STEP_PAYLOAD_INVALID", "tag rendered empty", "payload.tag")
        self._tags.add_tag(subscriber, tag.strip())
        return StepResult()

    def _segment(self, step: ActionStep, flow: Flow, subscriber: Subscriber, context: dict) -> StepResult:
        segment_id = step.payload.get("segment_id")
        if step.payload.get("operation", "add") == "remove":
            self._tags.remove_from_segment(subscriber, segment_id)
        else:
            self._tags.add_to_segment(subscriber, segment_id)
        return StepResult()

    def _webhook(self, step: ActionStep, flow: Flow, subscriber: Subscriber, context: dict) -> StepResult:
        url = self._render(step.payload.get("url"), context)
        body = {
            "automation_id": flow.automation_id,
            "flow_id": flow.id,
            "subscriber_id": subscriber.id,
            "step": step.order,
            "data": self._render(step.payload.get("payload") or {}, context),
        }
        if not self._webhooks.post(url, body):
            raise TransientActionError("WEBHOOK_FAILED", f"Webhook post failed: {url}")
        return StepResult()
