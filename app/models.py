"""Typed automation, flow and queue records.

Automation definitions are stored as loosely-typed maps (they are authored by
users). ``parse_automation`` turns such a map into frozen dataclasses and
raises ``AutomationDefinitionError`` on the first structural problem, so a bad
definition is rejected on load instead of half-executing.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Tuple

from condition_eval import OPERATORS


AUTOMATION_DRAFT = "draft"
AUTOMATION_ACTIVE = "active"
AUTOMATION_INACTIVE = "inactive"
AUTOMATION_STATUSES = frozenset({AUTOMATION_DRAFT, AUTOMATION_ACTIVE, AUTOMATION_INACTIVE})

FLOW_ACTIVE = "active"
FLOW_COMPLETED = "completed"
FLOW_STOPPED = "stopped"
FLOW_STATUSES = frozenset({FLOW_ACTIVE, FLOW_COMPLETED, FLOW_STOPPED})
FLOW_TERMINAL = frozenset({FLOW_COMPLETED, FLOW_STOPPED})

ACTION_SEND_EMAIL = "send_email"
ACTION_WAIT = "wait"
ACTION_CONDITION = "condition"
ACTION_TAG = "tag"
ACTION_SEGMENT = "segment"
ACTION_WEBHOOK = "webhook"
ACTION_TYPES = frozenset(
    {ACTION_SEND_EMAIL, ACTION_WAIT, ACTION_CONDITION, ACTION_TAG, ACTION_SEGMENT, ACTION_WEBHOOK}
)

BEHAVIORAL_PREFIX = "behavioral:"

STEP_EXECUTED = "executed"
STEP_SKIPPED = "skipped"
STEP_FAILED = "failed"

DEFAULT_WAIT_MINUTES = 60


@dataclass
class AutomationDefinitionError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: Any = None

    def to_dict(self) -> dict:
        return {"field": self.field, "operator": self.operator, "value": self.value}


TriggerCondition = Condition
StepCondition = Condition


@dataclass(frozen=True)
class ActionStep:
    order: int
    action_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    delay_minutes: int = 0
    conditions: Tuple[Condition, ...] = ()

    def to_dict(self) -> dict:
        return {
            "order": self.order,
            "action_type": self.action_type,
            "payload": dict(self.payload),
            "delay_minutes": self.delay_minutes,
            "conditions": [c.to_dict() for c in self.conditions],
        }


@dataclass(frozen=True)
class AutomationDefinition:
    id: str
    trigger_type: str
    status: str = AUTOMATION_DRAFT
    name: str | None = None
    description: str | None = None
    trigger_conditions: Tuple[Condition, ...] = ()
    steps: Tuple[ActionStep, ...] = ()
    start_at: datetime | None = None
    end_at: datetime | None = None

    @property
    def step_count(self) -> int:
        return len(self.steps)

    def step(self, order: int) -> ActionStep | None:
        if 1 <= order <= len(self.steps):
            return self.steps[order - 1]
        return None

    def is_live(self, now: datetime) -> bool:
        if self.status != AUTOMATION_ACTIVE:
            return False
        if self.start_at is not None and self.start_at > now:
            return False
        if self.end_at is not None and self.end_at <= now:
            return False
        return True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "trigger_type": self.trigger_type,
            "trigger_conditions": [c.to_dict() for c in self.trigger_conditions],
            "steps": [s.to_dict() for s in self.steps],
            "start_at": self.start_at,
            "end_at": self.end_at,
        }


@dataclass
class Subscriber:
    id: str
    email: str | None = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def context(self) -> dict:
        ctx = dict(self.attributes or {})
        ctx["id"] = self.id
        if self.email is not None:
            ctx["email"] = self.email
        return ctx


@dataclass
class Flow:
    id: str
    automation_id: str
    subscriber_id: str
    started_at: datetime
    current_step: int = 0
    status: str = FLOW_ACTIVE
    next_action_at: datetime | None = None
    context: Dict[str, Any] = field(default_factory=dict)
    completed_at: datetime | None = None
    stopped_at: datetime | None = None
    stop_reason: str | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == FLOW_ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in FLOW_TERMINAL


@dataclass
class QueueItem:
    id: str
    flow_id: str
    automation_id: str
    subscriber_id: str
    step_number: int
    not_before: datetime
    attempt: int = 0
    claimed_at: datetime | None = None
    claimed_by: str | None = None
    last_error: str | None = None
    created_at: datetime | None = None

    def released(self) -> "QueueItem":
        return replace(self, claimed_at=None, claimed_by=None)


def _parse_datetime(value: Any, path: str) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise AutomationDefinitionError("DATETIME_INVALID", "Expected ISO 8601 datetime", path) from exc
    else:
        raise AutomationDefinitionError("DATETIME_INVALID", "Expected ISO 8601 datetime", path)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_minutes(value: Any, path: str, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise AutomationDefinitionError("DELAY_INVALID", "Minutes must be a number", path)
    if value < 0:
        raise AutomationDefinitionError("DELAY_INVALID", "Minutes must not be negative", path)
    return int(value)


def parse_condition(raw: Any, path: str) -> Condition:
    if isinstance(raw, Condition):
        return raw
    if not isinstance(raw, Mapping):
        raise AutomationDefinitionError("CONDITION_INVALID", "Condition must be an object", path)
    field_name = raw.get("field")
    operator = raw.get("operator")
    if not isinstance(field_name, str) or not field_name:
        raise AutomationDefinitionError("CONDITION_INVALID", "field must be a non-empty string", f"{path}.field")
    if not isinstance(operator, str) or not operator:
        raise AutomationDefinitionError("CONDITION_INVALID", "operator must be a non-empty string", f"{path}.operator")
    return Condition(field=field_name, operator=operator, value=raw.get("value"))


def parse_conditions(raw: Any, path: str) -> Tuple[Condition, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, (list, tuple)):
        raise AutomationDefinitionError("CONDITIONS_INVALID", "conditions must be a list", path)
    return tuple(parse_condition(item, f"{path}[{idx}]") for idx, item in enumerate(raw))


def _require_payload_str(payload: dict, key: str, path: str) -> None:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise AutomationDefinitionError("STEP_PAYLOAD_INVALID", f"{key} is required", f"{path}.{key}")


def _validate_payload(action_type: str, payload: dict, conditions: Tuple[Condition, ...], path: str) -> None:
    if action_type == ACTION_SEND_EMAIL:
        _require_payload_str(payload, "template_id", path)
        if payload.get("context") is not None and not isinstance(payload.get("context"), Mapping):
            raise AutomationDefinitionError("STEP_PAYLOAD_INVALID", "context must be an object", f"{path}.context")
    elif action_type == ACTION_WAIT:
        _parse_minutes(payload.get("wait_minutes"), f"{path}.wait_minutes")
    elif action_type == ACTION_CONDITION:
        if not conditions:
            raise AutomationDefinitionError("STEP_PAYLOAD_INVALID", "condition step requires conditions", path)
    elif action_type == ACTION_TAG:
        _require_payload_str(payload, "tag", path)
    elif action_type == ACTION_SEGMENT:
        _require_payload_str(payload, "segment_id", path)
        operation = payload.get("operation", "add")
        if operation not in {"add", "remove"}:
            raise AutomationDefinitionError("STEP_PAYLOAD_INVALID", "operation must be add or remove", f"{path}.operation")
    elif action_type == ACTION_WEBHOOK:
        _require_payload_str(payload, "url", path)
        if payload.get("payload") is not None and not isinstance(payload.get("payload"), Mapping):
            raise AutomationDefinitionError("STEP_PAYLOAD_INVALID", "payload must be an object", f"{path}.payload")


def parse_step(raw: Any, position: int, path: str) -> ActionStep:
    if isinstance(raw, ActionStep):
        return raw
    if not isinstance(raw, Mapping):
        raise AutomationDefinitionError("STEP_INVALID", "Step must be an object", path)
    order = raw.get("order", raw.get("step_order", position))
    if isinstance(order, bool) or not isinstance(order, int):
        raise AutomationDefinitionError("STEP_ORDER_INVALID", "order must be an integer", f"{path}.order")
    action_type = raw.get("action_type")
    if action_type not in ACTION_TYPES:
        raise AutomationDefinitionError("STEP_TYPE_UNKNOWN", f"Unknown action_type: {action_type}", f"{path}.action_type")
    payload = raw.get("payload", raw.get("action_data"))
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise AutomationDefinitionError("STEP_PAYLOAD_INVALID", "payload must be an object", f"{path}.payload")
    payload = dict(payload)
    conditions = parse_conditions(raw.get("conditions"), f"{path}.conditions")
    if action_type == ACTION_CONDITION and not conditions:
        conditions = parse_conditions(payload.get("conditions"), f"{path}.payload.conditions")
    _validate_payload(action_type, payload, conditions, f"{path}.payload")
    return ActionStep(
        order=order,
        action_type=action_type,
        payload=payload,
        delay_minutes=_parse_minutes(raw.get("delay_minutes"), f"{path}.delay_minutes"),
        conditions=conditions,
    )


def parse_steps(raw: Any, path: str = "steps") -> Tuple[ActionStep, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, (list, tuple)):
        raise AutomationDefinitionError("STEPS_INVALID", "steps must be a list", path)
    steps = [parse_step(item, idx + 1, f"{path}[{idx}]") for idx, item in enumerate(raw)]
    steps.sort(key=lambda s: s.order)
    for idx, step in enumerate(steps):
        if step.order != idx + 1:
            raise AutomationDefinitionError(
                "STEP_ORDER_INVALID",
                "Step orders must be unique and contiguous starting at 1",
                path,
            )
    return tuple(steps)


def parse_automation(record: Any) -> AutomationDefinition:
    if isinstance(record, AutomationDefinition):
        return record
    if not isinstance(record, Mapping):
        raise AutomationDefinitionError("AUTOMATION_INVALID", "Automation must be an object", "$")
    automation_id = record.get("id")
    if automation_id is None or str(automation_id) == "":
        raise AutomationDefinitionError("AUTOMATION_INVALID", "id is required", "id")
    status = record.get("status") or AUTOMATION_DRAFT
    if status not in AUTOMATION_STATUSES:
        raise AutomationDefinitionError("STATUS_INVALID", f"Unknown status: {status}", "status")
    trigger_type = record.get("trigger_type")
    if not isinstance(trigger_type, str) or not trigger_type.strip():
        raise AutomationDefinitionError("TRIGGER_INVALID", "trigger_type is required", "trigger_type")
    return AutomationDefinition(
        id=str(automation_id),
        name=record.get("name"),
        description=record.get("description"),
        status=status,
        trigger_type=trigger_type.strip(),
        trigger_conditions=parse_conditions(record.get("trigger_conditions"), "trigger_conditions"),
        steps=parse_steps(record.get("steps")),
        start_at=_parse_datetime(record.get("start_at"), "start_at"),
        end_at=_parse_datetime(record.get("end_at"), "end_at"),
    )


def unknown_operators(automation: AutomationDefinition) -> List[dict]:
    """List conditions whose operator the evaluator does not know.

    Stored definitions with such operators still load (evaluation fails
    closed); the write path rejects them.
    """
    issues: List[dict] = []
    for idx, cond in enumerate(automation.trigger_conditions):
        if cond.operator not in OPERATORS:
            issues.append({"path": f"trigger_conditions[{idx}].operator", "operator": cond.operator})
    for step in automation.steps:
        for idx, cond in enumerate(step.conditions):
            if cond.operator not in OPERATORS:
                issues.append({"path": f"steps[{step.order - 1}].conditions[{idx}].operator", "operator": cond.operator})
    return issues


def validate_automation(record: Any) -> AutomationDefinition:
    automation = parse_automation(record)
    issues = unknown_operators(automation)
    if issues:
        first = issues[0]
        raise AutomationDefinitionError("OPERATOR_UNKNOWN", f"Unknown operator: {first['operator']}", first["path"])
    return automation
