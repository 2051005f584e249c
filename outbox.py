"""In-memory outbox of email send intents awaiting a transport."""

from __future__ import annotations

import threading
from typing import Any, Dict, List

from mailflow.canonical_json import freeze_json


Intent = Dict[str, Any]


class OutboxError(ValueError):
    pass


def validate_intent(intent: Any) -> None:
    if not isinstance(intent, dict):
        raise OutboxError("intent must be an object")
    for key in ("intent_id", "subscriber_id", "template_id"):
        if not isinstance(intent.get(key), str) or not intent.get(key):
            raise OutboxError(f"{key} must be a non-empty string")
    if not isinstance(intent.get("context"), dict):
        raise OutboxError("context must be an object")


class Outbox:
    def __init__(self) -> None:
        self._intents: List[Intent] = []
        self._lock = threading.Lock()

    def enqueue(self, intent: dict) -> None:
        validate_intent(intent)
        # canonical JSON rejects NaN/Inf and anything a transport cannot ship
        try:
            frozen = freeze_json(intent)
        except (TypeError, ValueError) as exc:
            raise OutboxError(str(exc)) from exc
        with self._lock:
            self._intents.append(frozen)

    def pending(self) -> list[dict]:
        with self._lock:
            return list(self._intents)

    def ack(self, intent_id: str) -> bool:
        with self._lock:
            for idx, intent in enumerate(self._intents):
                if intent.get("intent_id") == intent_id:
                    del self._intents[idx]
                    return True
        return False

    def clear(self) -> None:
        with self._lock:
            self._intents.clear()
