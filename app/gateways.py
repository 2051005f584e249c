"""Collaborator interfaces the engine calls out to, plus the concrete gateways."""

from __future__ import annotations

import logging
import uuid

import httpx

from app.models import Subscriber, utcnow
from outbox import Outbox

logger = logging.getLogger("mailflow.gateways")


class SubscriberDirectory:
    def find_by_id(self, subscriber_id: str) -> Subscriber | None:
        raise NotImplementedError

    def find_by_email(self, email: str) -> Subscriber | None:
        raise NotImplementedError


class TemplateDirectory:
    def get_template(self, template_id: str) -> dict | None:
        raise NotImplementedError


class MailGateway:
    def send(self, subscriber: Subscriber, template_id: str, context: dict) -> bool:
        raise NotImplementedError


class WebhookDispatcher:
    def post(self, url: str, payload: dict) -> bool:
        raise NotImplementedError


class TagSegmentService:
    def add_tag(self, subscriber: Subscriber, tag: str) -> None:
        raise NotImplementedError

    def add_to_segment(self, subscriber: Subscriber, segment_id: str) -> None:
        raise NotImplementedError

    def remove_from_segment(self, subscriber: Subscriber, segment_id: str) -> None:
        raise NotImplementedError


class OutboxMailGateway(MailGateway):
    """Records a send intent; rendering and transport drain the outbox later."""

    def __init__(self, outbox: Outbox) -> None:
        self._outbox = outbox

    def send(self, subscriber: Subscriber, template_id: str, context: dict) -> bool:
        if not subscriber.email:
            logger.warning("mail_intent_skipped subscriber_id=%s reason=no_email", subscriber.id)
            return False
        intent = {
            "intent_id": str(uuid.uuid4()),
            "subscriber_id": subscriber.id,
            "to": subscriber.email,
            "template_id": template_id,
            "context": context or {},
            "created_at": utcnow().strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        self._outbox.enqueue(intent)
        logger.info(
            "mail_intent_recorded intent_id=%s subscriber_id=%s template_id=%s",
            intent["intent_id"],
            subscriber.id,
            template_id,
        )
        return True


class HttpWebhookDispatcher(WebhookDispatcher):
    def __init__(self, timeout: float = 10.0, client: httpx.Client | None = None) -> None:
        self._timeout = timeout
        self._client = client

    def post(self, url: str, payload: dict) -> bool:
        try:
            if self._client is not None:
                resp = self._client.post(url, json=payload, timeout=self._timeout)
            else:
                resp = httpx.post(url, json=payload, timeout=self._timeout)
        except httpx.HTTPError as exc:
            logger.warning("webhook_transport_error url=%s error=%s", url, exc)
            return False
        if resp.status_code >= 400:
            logger.warning("webhook_rejected url=%s status=%s", url, resp.status_code)
            return False
        return True
