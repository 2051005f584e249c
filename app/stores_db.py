"""DB-backed stores for automations, flows and the step queue."""

from __future__ import annotations

import json
import uuid
import logging
from datetime import datetime, timedelta
from typing import Any, List

from app.db import execute, fetch_all, fetch_one, get_conn
from app.gateways import SubscriberDirectory, TagSegmentService, TemplateDirectory
from app.models import (
    AUTOMATION_ACTIVE,
    FLOW_ACTIVE,
    FLOW_COMPLETED,
    FLOW_STOPPED,
    AutomationDefinition,
    AutomationDefinitionError,
    Flow,
    QueueItem,
    Subscriber,
    parse_automation,
    utcnow,
    validate_automation,
)

logger = logging.getLogger("mailflow.stores_db")


SCHEMA_SQL = """
create table if not exists automations (
  id text primary key,
  name text,
  description text,
  status text not null default 'draft',
  trigger_type text not null,
  trigger_conditions jsonb not null default '[]',
  steps jsonb not null default '[]',
  start_at timestamptz,
  end_at timestamptz,
  created_at timestamptz not null,
  updated_at timestamptz not null
);
create index if not exists automations_trigger_idx on automations (trigger_type, status);

create table if not exists automation_step_stats (
  automation_id text not null,
  step_order integer not null,
  result text not null,
  count integer not null default 0,
  primary key (automation_id, step_order, result)
);

create table if not exists automation_flows (
  id text primary key,
  automation_id text not null,
  subscriber_id text not null,
  status text not null,
  current_step integer not null default 0,
  started_at timestamptz not null,
  next_action_at timestamptz,
  context jsonb not null default '{}',
  completed_at timestamptz,
  stopped_at timestamptz,
  stop_reason text,
  updated_at timestamptz not null
);
create unique index if not exists automation_flows_one_active
  on automation_flows (automation_id, subscriber_id) where status = 'active';
create index if not exists automation_flows_automation_idx on automation_flows (automation_id, status);

create table if not exists automation_queue (
  id text primary key,
  flow_id text not null,
  automation_id text not null,
  subscriber_id text not null,
  step_number integer not null,
  not_before timestamptz not null,
  attempt integer not null default 0,
  claimed_at timestamptz,
  claimed_by text,
  last_error text,
  created_at timestamptz not null
);
create index if not exists automation_queue_due_idx on automation_queue (not_before) where claimed_at is null;
create index if not exists automation_queue_flow_idx on automation_queue (flow_id);

create table if not exists subscribers (
  id text primary key,
  email text,
  attributes jsonb not null default '{}',
  updated_at timestamptz not null
);
create index if not exists subscribers_email_idx on subscribers (lower(email));

create table if not exists email_templates (
  id text primary key,
  name text,
  subject text,
  body text,
  created_at timestamptz not null
);

create table if not exists subscriber_tags (
  subscriber_id text not null,
  tag text not null,
  primary key (subscriber_id, tag)
);

create table if not exists segment_members (
  segment_id text not null,
  subscriber_id text not null,
  primary key (segment_id, subscriber_id)
);
"""


def ensure_schema() -> None:
    with get_conn() as conn:
        execute(conn, SCHEMA_SQL, query_name="schema.ensure")
    logger.info("db_schema_ready")


def _json_dumps(value: object) -> str:
    return json.dumps(value, default=str)


def _ensure_json(value):
    if isinstance(value, str):
        return json.loads(value)
    return value


def _flow_from_row(row: dict | None) -> Flow | None:
    if not row:
        return None
    return Flow(
        id=row["id"],
        automation_id=row["automation_id"],
        subscriber_id=row["subscriber_id"],
        started_at=row["started_at"],
        current_step=row.get("current_step") or 0,
        status=row["status"],
        next_action_at=row.get("next_action_at"),
        context=_ensure_json(row.get("context")) or {},
        completed_at=row.get("completed_at"),
        stopped_at=row.get("stopped_at"),
        stop_reason=row.get("stop_reason"),
        updated_at=row.get("updated_at"),
    )


def _item_from_row(row: dict | None) -> QueueItem | None:
    if not row:
        return None
    return QueueItem(
        id=row["id"],
        flow_id=row["flow_id"],
        automation_id=row["automation_id"],
        subscriber_id=row["subscriber_id"],
        step_number=row["step_number"],
        not_before=row["not_before"],
        attempt=row.get("attempt") or 0,
        claimed_at=row.get("claimed_at"),
        claimed_by=row.get("claimed_by"),
        last_error=row.get("last_error"),
        created_at=row.get("created_at"),
    )


def _automation_from_row(row: dict) -> AutomationDefinition:
    record = dict(row)
    record["trigger_conditions"] = _ensure_json(record.get("trigger_conditions")) or []
    record["steps"] = _ensure_json(record.get("steps")) or []
    return parse_automation(record)


def _subscriber_from_row(row: dict | None) -> Subscriber | None:
    if not row:
        return None
    return Subscriber(id=row["id"], email=row.get("email"), attributes=_ensure_json(row.get("attributes")) or {})


class DbAutomationStore:
    def create(self, record: dict) -> AutomationDefinition:
        item = dict(record)
        item.setdefault("id", str(uuid.uuid4()))
        item.setdefault("status", "draft")
        automation = validate_automation(item)
        now = utcnow()
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into automations (id, name, description, status, trigger_type, trigger_conditions, steps,
                                         start_at, end_at, created_at, updated_at)
                values (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                on conflict (id) do nothing
                returning id
                """,
                [
                    automation.id,
                    automation.name,
                    automation.description,
                    automation.status,
                    automation.trigger_type,
                    _json_dumps([c.to_dict() for c in automation.trigger_conditions]),
                    _json_dumps([s.to_dict() for s in automation.steps]),
                    automation.start_at,
                    automation.end_at,
                    now,
                    now,
                ],
                query_name="automations.create",
            )
        if row is None:
            raise AutomationDefinitionError("AUTOMATION_EXISTS", "Automation id already exists", "id")
        return automation

    def update(self, automation_id: str, updates: dict) -> AutomationDefinition | None:
        current = self.get(automation_id)
        if current is None:
            return None
        merged = current.to_dict()
        merged.update(updates)
        merged["id"] = automation_id
        automation = validate_automation(merged)
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                update automations
                set name=%s, description=%s, status=%s, trigger_type=%s, trigger_conditions=%s, steps=%s,
                    start_at=%s, end_at=%s, updated_at=%s
                where id=%s
                returning id
                """,
                [
                    automation.name,
                    automation.description,
                    automation.status,
                    automation.trigger_type,
                    _json_dumps([c.to_dict() for c in automation.trigger_conditions]),
                    _json_dumps([s.to_dict() for s in automation.steps]),
                    automation.start_at,
                    automation.end_at,
                    utcnow(),
                    automation_id,
                ],
                query_name="automations.update",
            )
        return automation if row else None

    def set_status(self, automation_id: str, status: str) -> AutomationDefinition | None:
        return self.update(automation_id, {"status": status})

    def get(self, automation_id: str) -> AutomationDefinition | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select * from automations where id=%s",
                [automation_id],
                query_name="automations.get",
            )
        return _automation_from_row(row) if row else None

    def _parse_rows(self, rows: List[dict]) -> list[AutomationDefinition]:
        out = []
        for row in rows:
            try:
                out.append(_automation_from_row(row))
            except AutomationDefinitionError as exc:
                logger.warning("automation_unparseable automation_id=%s error=%s", row.get("id"), exc)
        return out

    def list(self, status: str | None = None) -> list[AutomationDefinition]:
        clauses = ["true"]
        params: list[Any] = []
        if status:
            clauses.append("status=%s")
            params.append(status)
        where = " and ".join(clauses)
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select * from automations where {where} order by updated_at desc",
                params,
                query_name="automations.list",
            )
        return self._parse_rows(rows)

    def list_active(self, trigger_type: str, now: datetime) -> list[AutomationDefinition]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select * from automations
                where status=%s and trigger_type=%s
                  and (start_at is null or start_at <= %s)
                  and (end_at is null or end_at > %s)
                order by created_at asc
                """,
                [AUTOMATION_ACTIVE, trigger_type, now, now],
                query_name="automations.list_active",
            )
        return self._parse_rows(rows)

    def delete(self, automation_id: str) -> bool:
        with get_conn() as conn:
            return execute(conn, "delete from automations where id=%s", [automation_id], query_name="automations.delete") > 0

    def record_step_result(self, automation_id: str, step_order: int, result: str) -> None:
        with get_conn() as conn:
            execute(
                conn,
                """
                insert into automation_step_stats (automation_id, step_order, result, count)
                values (%s, %s, %s, 1)
                on conflict (automation_id, step_order, result) do update set count = automation_step_stats.count + 1
                """,
                [automation_id, step_order, result],
                query_name="automation_step_stats.increment",
            )

    def step_stats(self, automation_id: str) -> list[dict]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select step_order, result, count from automation_step_stats
                where automation_id=%s order by step_order, result
                """,
                [automation_id],
                query_name="automation_step_stats.list",
            )
        return [dict(r) for r in rows]


class DbFlowStore:
    def create_active(self, automation_id: str, subscriber_id: str, context: dict, now: datetime) -> Flow | None:
        # the partial unique index turns a concurrent duplicate into a no-op
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into automation_flows (id, automation_id, subscriber_id, status, current_step, started_at,
                                              context, updated_at)
                values (%s, %s, %s, %s, 0, %s, %s, %s)
                on conflict (automation_id, subscriber_id) where status = 'active' do nothing
                returning *
                """,
                [str(uuid.uuid4()), automation_id, subscriber_id, FLOW_ACTIVE, now, _json_dumps(context), now],
                query_name="automation_flows.create_active",
            )
        return _flow_from_row(row)

    def get(self, flow_id: str) -> Flow | None:
        with get_conn() as conn:
            row = fetch_one(conn, "select * from automation_flows where id=%s", [flow_id], query_name="automation_flows.get")
        return _flow_from_row(row)

    def get_active(self, automation_id: str, subscriber_id: str) -> Flow | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                select * from automation_flows
                where automation_id=%s and subscriber_id=%s and status=%s
                """,
                [automation_id, subscriber_id, FLOW_ACTIVE],
                query_name="automation_flows.get_active",
            )
        return _flow_from_row(row)

    def advance(self, flow_id: str, from_step: int, to_step: int, now: datetime) -> bool:
        with get_conn() as conn:
            count = execute(
                conn,
                """
                update automation_flows
                set current_step=%s, next_action_at=null, updated_at=%s
                where id=%s and status=%s and current_step=%s
                """,
                [to_step, now, flow_id, FLOW_ACTIVE, from_step],
                query_name="automation_flows.advance",
            )
        return count == 1

    def set_next_action(self, flow_id: str, at: datetime | None, now: datetime) -> bool:
        with get_conn() as conn:
            count = execute(
                conn,
                "update automation_flows set next_action_at=%s, updated_at=%s where id=%s and status=%s",
                [at, now, flow_id, FLOW_ACTIVE],
                query_name="automation_flows.set_next_action",
            )
        return count == 1

    def complete(self, flow_id: str, now: datetime) -> bool:
        with get_conn() as conn:
            count = execute(
                conn,
                """
                update automation_flows
                set status=%s, completed_at=%s, next_action_at=null, updated_at=%s
                where id=%s and status=%s
                """,
                [FLOW_COMPLETED, now, now, flow_id, FLOW_ACTIVE],
                query_name="automation_flows.complete",
            )
        return count == 1

    def stop(self, flow_id: str, reason: str | None, now: datetime, at_step: int | None = None) -> bool:
        with get_conn() as conn:
            count = execute(
                conn,
                """
                update automation_flows
                set status=%s, stopped_at=%s, stop_reason=%s, current_step=coalesce(%s, current_step),
                    next_action_at=null, updated_at=%s
                where id=%s and status=%s
                """,
                [FLOW_STOPPED, now, reason, at_step, now, flow_id, FLOW_ACTIVE],
                query_name="automation_flows.stop",
            )
        return count == 1

    def list(self, automation_id: str | None = None, status: str | None = None) -> list[Flow]:
        clauses = ["true"]
        params: list[Any] = []
        if automation_id:
            clauses.append("automation_id=%s")
            params.append(automation_id)
        if status:
            clauses.append("status=%s")
            params.append(status)
        where = " and ".join(clauses)
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select * from automation_flows where {where} order by started_at desc",
                params,
                query_name="automation_flows.list",
            )
        return [_flow_from_row(r) for r in rows]

    def count_by_status(self, automation_id: str) -> dict:
        counts = {FLOW_ACTIVE: 0, FLOW_COMPLETED: 0, FLOW_STOPPED: 0}
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                "select status, count(*) as total from automation_flows where automation_id=%s group by status",
                [automation_id],
                query_name="automation_flows.count_by_status",
            )
        for row in rows:
            counts[row["status"]] = int(row["total"])
        return counts

    def purge_terminal(self, before: datetime) -> int:
        with get_conn() as conn:
            return execute(
                conn,
                """
                delete from automation_flows
                where status in (%s, %s) and coalesce(completed_at, stopped_at, started_at) < %s
                """,
                [FLOW_COMPLETED, FLOW_STOPPED, before],
                query_name="automation_flows.purge_terminal",
            )


class DbQueueStore:
    def push(
        self,
        flow: Flow,
        step_number: int,
        not_before: datetime,
        attempt: int = 0,
        now: datetime | None = None,
    ) -> QueueItem:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into automation_queue (id, flow_id, automation_id, subscriber_id, step_number, not_before,
                                              attempt, created_at)
                values (%s, %s, %s, %s, %s, %s, %s, %s)
                returning *
                """,
                [
                    str(uuid.uuid4()),
                    flow.id,
                    flow.automation_id,
                    flow.subscriber_id,
                    step_number,
                    not_before,
                    attempt,
                    now or utcnow(),
                ],
                query_name="automation_queue.push",
            )
        return _item_from_row(row)

    def claim_due(self, limit: int, worker_id: str, now: datetime) -> list[QueueItem]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                with candidates as (
                  select id from automation_queue
                  where claimed_at is null
                    and not_before <= %s
                  order by not_before asc, created_at asc
                  for update skip locked
                  limit %s
                )
                update automation_queue q
                set claimed_at=%s,
                    claimed_by=%s
                from candidates c
                where q.id = c.id
                returning q.*
                """,
                [now, limit, now, worker_id],
                query_name="automation_queue.claim_due",
            )
        items = [_item_from_row(r) for r in rows]
        items.sort(key=lambda i: i.not_before)
        return items

    def ack(self, item_id: str) -> bool:
        with get_conn() as conn:
            return execute(conn, "delete from automation_queue where id=%s", [item_id], query_name="automation_queue.ack") == 1

    def requeue(self, item_id: str, not_before: datetime, attempt: int, last_error: str | None) -> QueueItem | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                update automation_queue
                set not_before=%s, attempt=%s, last_error=%s, claimed_at=null, claimed_by=null
                where id=%s
                returning *
                """,
                [not_before, attempt, last_error, item_id],
                query_name="automation_queue.requeue",
            )
        return _item_from_row(row)

    def release_stale(self, timeout_seconds: float, now: datetime) -> int:
        cutoff = now - timedelta(seconds=timeout_seconds)
        with get_conn() as conn:
            return execute(
                conn,
                """
                update automation_queue set claimed_at=null, claimed_by=null
                where claimed_at is not null and claimed_at <= %s
                """,
                [cutoff],
                query_name="automation_queue.release_stale",
            )

    def discard_for_flow(self, flow_id: str) -> int:
        with get_conn() as conn:
            return execute(
                conn,
                "delete from automation_queue where flow_id=%s and claimed_at is null",
                [flow_id],
                query_name="automation_queue.discard_for_flow",
            )

    def get(self, item_id: str) -> QueueItem | None:
        with get_conn() as conn:
            row = fetch_one(conn, "select * from automation_queue where id=%s", [item_id], query_name="automation_queue.get")
        return _item_from_row(row)

    def list_for_flow(self, flow_id: str) -> list[QueueItem]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                "select * from automation_queue where flow_id=%s order by not_before asc",
                [flow_id],
                query_name="automation_queue.list_for_flow",
            )
        return [_item_from_row(r) for r in rows]

    def pending(self) -> list[QueueItem]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                "select * from automation_queue order by not_before asc",
                [],
                query_name="automation_queue.pending",
            )
        return [_item_from_row(r) for r in rows]


class DbSubscriberDirectory(SubscriberDirectory):
    def upsert(self, subscriber: Subscriber) -> Subscriber:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into subscribers (id, email, attributes, updated_at)
                values (%s, %s, %s, %s)
                on conflict (id) do update
                  set email=excluded.email, attributes=excluded.attributes, updated_at=excluded.updated_at
                returning *
                """,
                [subscriber.id, subscriber.email, _json_dumps(subscriber.attributes or {}), utcnow()],
                query_name="subscribers.upsert",
            )
        return _subscriber_from_row(row)

    def update_attributes(self, subscriber_id: str, changes: dict) -> Subscriber | None:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                update subscribers set attributes = attributes || %s::jsonb, updated_at=%s
                where id=%s
                returning *
                """,
                [_json_dumps(changes), utcnow(), subscriber_id],
                query_name="subscribers.update_attributes",
            )
        return _subscriber_from_row(row)

    def find_by_id(self, subscriber_id: str) -> Subscriber | None:
        with get_conn() as conn:
            row = fetch_one(conn, "select * from subscribers where id=%s", [subscriber_id], query_name="subscribers.get")
        return _subscriber_from_row(row)

    def find_by_email(self, email: str) -> Subscriber | None:
        if not isinstance(email, str):
            return None
        with get_conn() as conn:
            row = fetch_one(
                conn,
                "select * from subscribers where lower(email)=%s limit 1",
                [email.strip().lower()],
                query_name="subscribers.find_by_email",
            )
        return _subscriber_from_row(row)


class DbTemplateStore(TemplateDirectory):
    def create_template(self, record: dict) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into email_templates (id, name, subject, body, created_at)
                values (%s, %s, %s, %s, %s)
                returning *
                """,
                [
                    record.get("id") or str(uuid.uuid4()),
                    record.get("name"),
                    record.get("subject"),
                    record.get("body"),
                    utcnow(),
                ],
                query_name="email_templates.create",
            )
        return dict(row)

    def get_template(self, template_id: str) -> dict | None:
        with get_conn() as conn:
            row = fetch_one(conn, "select * from email_templates where id=%s", [template_id], query_name="email_templates.get")
        return dict(row) if row else None


class DbTagSegmentService(TagSegmentService):
    def add_tag(self, subscriber: Subscriber, tag: str) -> None:
        with get_conn() as conn:
            execute(
                conn,
                "insert into subscriber_tags (subscriber_id, tag) values (%s, %s) on conflict do nothing",
                [subscriber.id, tag],
                query_name="subscriber_tags.add",
            )

    def add_to_segment(self, subscriber: Subscriber, segment_id: str) -> None:
        with get_conn() as conn:
            execute(
                conn,
                "insert into segment_members (segment_id, subscriber_id) values (%s, %s) on conflict do nothing",
                [segment_id, subscriber.id],
                query_name="segment_members.add",
            )

    def remove_from_segment(self, subscriber: Subscriber, segment_id: str) -> None:
        with get_conn() as conn:
            execute(
                conn,
                "delete from segment_members where segment_id=%s and subscriber_id=%s",
                [segment_id, subscriber.id],
                query_name="segment_members.remove",
            )
