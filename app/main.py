"""FastAPI app: event receiver and automation admin endpoints."""

from __future__ import annotations

import sys
import logging
from dataclasses import asdict
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.config import EngineSettings
from app.engine import build_engine
from app.models import FLOW_STATUSES, AutomationDefinitionError, Subscriber
from outbox import Outbox


app = FastAPI(title="Mailflow")
logger = logging.getLogger("mailflow.api")
logging.basicConfig(level=logging.INFO)

settings = EngineSettings.from_env()
outbox = Outbox()
engine = build_engine(settings, outbox)


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _definition_error(exc: AutomationDefinitionError) -> JSONResponse:
    return _error_response(exc.code, exc.message, exc.path, status=400)


async def _safe_json(request: Request) -> dict:
    try:
        return await request.json()
    except ValueError:
        return {}


def _resolve_subscriber(body: dict) -> Subscriber | JSONResponse:
    subscriber = None
    if isinstance(body.get("subscriber_id"), str):
        subscriber = engine.subscribers.find_by_id(body["subscriber_id"])
    elif isinstance(body.get("email"), str):
        subscriber = engine.subscribers.find_by_email(body["email"])
    else:
        return _error_response("SUBSCRIBER_REQUIRED", "subscriber_id or email is required", "subscriber_id")
    if subscriber is None:
        return _error_response("SUBSCRIBER_NOT_FOUND", "Subscriber not found", "subscriber_id", status=404)
    return subscriber


@app.get("/health")
async def health() -> dict:
    return _ok_response({"status": "ok"})


@app.post("/subscribers")
async def upsert_subscriber(request: Request) -> dict:
    body = await _safe_json(request)
    if not isinstance(body, dict) or not isinstance(body.get("id"), str) or not body["id"]:
        return _error_response("INVALID_BODY", "Expected JSON object with id", "id")
    attributes = body.get("attributes") or {}
    if not isinstance(attributes, dict):
        return _error_response("INVALID_BODY", "attributes must be an object", "attributes")
    subscriber = engine.subscribers.upsert(Subscriber(id=body["id"], email=body.get("email"), attributes=attributes))
    return _ok_response({"subscriber": asdict(subscriber)})


@app.post("/templates")
async def create_template(request: Request) -> dict:
    body = await _safe_json(request)
    if not isinstance(body, dict):
        return _error_response("INVALID_BODY", "Expected JSON object", None)
    template = engine.templates.create_template(body)
    return _ok_response({"template": template})


@app.post("/events")
async def receive_event(request: Request) -> dict:
    body = await _safe_json(request)
    if not isinstance(body, dict):
        return _error_response("INVALID_BODY", "Expected JSON object", None)
    event_name = body.get("event")
    if not isinstance(event_name, str) or not event_name:
        return _error_response("EVENT_REQUIRED", "event is required", "event")
    payload = body.get("payload") or {}
    if not isinstance(payload, dict):
        return _error_response("INVALID_BODY", "payload must be an object", "payload")
    subscriber = _resolve_subscriber(body)
    if isinstance(subscriber, JSONResponse):
        return subscriber
    flows = engine.on_event(event_name, subscriber, payload)
    return _ok_response({"flows": [asdict(f) for f in flows]})


@app.post("/behavior")
async def receive_behavior(request: Request) -> dict:
    body = await _safe_json(request)
    if not isinstance(body, dict):
        return _error_response("INVALID_BODY", "Expected JSON object", None)
    event = body.get("event")
    if not isinstance(event, str) or not event:
        return _error_response("EVENT_REQUIRED", "event is required", "event")
    data = body.get("data") or {}
    if not isinstance(data, dict):
        return _error_response("INVALID_BODY", "data must be an object", "data")
    subscriber = _resolve_subscriber(body)
    if isinstance(subscriber, JSONResponse):
        return subscriber
    flows = engine.on_behavior(subscriber, event, data)
    return _ok_response({"flows": [asdict(f) for f in flows]})


@app.get("/automations")
async def list_automations(status: str | None = None) -> dict:
    items = engine.list_automations(status=status)
    return _ok_response({"automations": [a.to_dict() for a in items]})


@app.post("/automations")
async def create_automation(request: Request) -> dict:
    body = await _safe_json(request)
    if not isinstance(body, dict):
        return _error_response("INVALID_BODY", "Expected JSON object", None)
    try:
        automation = engine.create_automation(body)
    except AutomationDefinitionError as exc:
        return _definition_error(exc)
    return _ok_response({"automation": automation.to_dict()}, status=201)


@app.get("/automations/{automation_id}")
async def get_automation(automation_id: str) -> dict:
    try:
        automation = engine.get_automation(automation_id)
    except AutomationDefinitionError as exc:
        return _definition_error(exc)
    if automation is None:
        return _error_response("AUTOMATION_NOT_FOUND", "Automation not found", "automation_id", status=404)
    return _ok_response({"automation": automation.to_dict()})


@app.post("/automations/{automation_id}/activate")
async def activate_automation(automation_id: str) -> dict:
    try:
        automation = engine.activate_automation(automation_id)
    except AutomationDefinitionError as exc:
        return _definition_error(exc)
    if automation is None:
        return _error_response("AUTOMATION_NOT_FOUND", "Automation not found", "automation_id", status=404)
    return _ok_response({"automation": automation.to_dict()})


@app.post("/automations/{automation_id}/deactivate")
async def deactivate_automation(automation_id: str) -> dict:
    try:
        automation = engine.deactivate_automation(automation_id)
    except AutomationDefinitionError as exc:
        return _definition_error(exc)
    if automation is None:
        return _error_response("AUTOMATION_NOT_FOUND", "Automation not found", "automation_id", status=404)
    return _ok_response({"automation": automation.to_dict()})


@app.get("/automations/{automation_id}/flows")
async def list_flows(automation_id: str, status: str | None = None) -> dict:
    if status is not None and status not in FLOW_STATUSES:
        return _error_response("STATUS_INVALID", f"Unknown flow status: {status}", "status")
    flows = engine.flows_for(automation_id, status=status)
    return _ok_response({"flows": [asdict(f) for f in flows]})


@app.get("/automations/{automation_id}/analytics")
async def automation_analytics(automation_id: str) -> dict:
    try:
        stats = engine.analytics(automation_id)
    except AutomationDefinitionError as exc:
        return _definition_error(exc)
    if stats is None:
        return _error_response("AUTOMATION_NOT_FOUND", "Automation not found", "automation_id", status=404)
    return _ok_response({"analytics": stats})


@app.post("/automations/{automation_id}/subscribers/{subscriber_id}/stop")
async def stop_flow(request: Request, automation_id: str, subscriber_id: str) -> dict:
    body = await _safe_json(request)
    reason = body.get("reason") if isinstance(body, dict) else None
    flow = engine.stop(automation_id, subscriber_id, reason or "manual")
    return _ok_response({"stopped": flow is not None, "flow": asdict(flow) if flow else None})
