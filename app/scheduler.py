"""Delay-capable scheduling on top of the queue store."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from app.models import Flow, QueueItem, utcnow

logger = logging.getLogger("mailflow.scheduler")


class Scheduler:
    def __init__(
        self,
        queue_store: Any,
        flow_store: Any,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 5,
        retry_base_seconds: int = 60,
        retry_max_seconds: int = 3600,
    ) -> None:
        self._queue = queue_store
        self._flows = flow_store
        self._clock = clock
        self.max_attempts = max(1, int(max_attempts))
        self._retry_base = retry_base_seconds
        self._retry_max = retry_max_seconds

    def enqueue(self, flow: Flow, step_number: int, not_before: datetime) -> QueueItem:
        now = self._clock()
        item = self._queue.push(flow, step_number, not_before, now=now)
        self._flows.set_next_action(flow.id, not_before, now)
        logger.info(
            "step_enqueued flow_id=%s step=%s not_before=%s item_id=%s",
            flow.id,
            step_number,
            not_before.isoformat(),
            item.id,
        )
        return item

    def items_for_flow(self, flow_id: str) -> list[QueueItem]:
        return self._queue.list_for_flow(flow_id)

    def backoff_seconds(self, attempt: int) -> int:
        return min(self._retry_base * (2 ** max(0, attempt - 1)), self._retry_max)

    def retry(self, item: QueueItem, error: str) -> QueueItem | None:
        """Requeue a failed item, or return None once the attempt budget is spent."""
        attempt = item.attempt + 1
        if attempt >= self.max_attempts:
            return None
        not_before = self._clock() + timedelta(seconds=self.backoff_seconds(attempt))
        requeued = self._queue.requeue(item.id, not_before, attempt, error)
        if requeued is not None:
            self._flows.set_next_action(item.flow_id, not_before, self._clock())
            logger.info(
                "step_requeued flow_id=%s step=%s attempt=%s not_before=%s",
                item.flow_id,
                item.step_number,
                attempt,
                not_before.isoformat(),
            )
        return requeued

    def claim_due(self, limit: int, worker_id: str) -> list[QueueItem]:
        return self._queue.claim_due(limit, worker_id, self._clock())

    def ack(self, item: QueueItem) -> bool:
        return self._queue.ack(item.id)

    def release_stale(self, timeout_seconds: float) -> int:
        released = self._queue.release_stale(timeout_seconds, self._clock())
        if released:
            logger.warning("stale_claims_released count=%s timeout_seconds=%s", released, timeout_seconds)
        return released
