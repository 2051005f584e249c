from __future__ import annotations

import logging
import sys
import threading
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.config import EngineSettings
from app.engine import AutomationEngine, build_engine

logger = logging.getLogger("mailflow.worker")

PURGE_INTERVAL_SECONDS = 3600


class Worker:
    def __init__(
        self,
        engine: AutomationEngine,
        worker_id: str,
        batch_size: int = 10,
        poll_ms: int = 1000,
        stale_claim_seconds: int = 900,
        retention_days: int | None = None,
    ) -> None:
        self.engine = engine
        self.worker_id = worker_id
        self.batch_size = max(1, batch_size)
        self.poll_ms = poll_ms
        self.stale_claim_seconds = stale_claim_seconds
        self.retention_days = retention_days
        self._last_purge: float | None = None

    def run_once(self) -> int:
        """Process one batch of due items; returns how many were claimed."""
        scheduler = self.engine.scheduler
        try:
            scheduler.release_stale(self.stale_claim_seconds)
            items = scheduler.claim_due(self.batch_size, self.worker_id)
        except Exception:
            logger.exception("queue_claim_failed worker_id=%s", self.worker_id)
            return 0

        for item in items:
            try:
                outcome = self.engine.executor.process(item)
                logger.info(
                    "queue_item_processed item_id=%s flow_id=%s step=%s outcome=%s",
                    item.id,
                    item.flow_id,
                    item.step_number,
                    outcome,
                )
            except Exception:
                # the claim stays in place and stale-claim release retries it later
                logger.exception("queue_item_crashed item_id=%s flow_id=%s", item.id, item.flow_id)
        return len(items)

    def _maybe_purge(self) -> None:
        if not self.retention_days:
            return
        now = time.monotonic()
        if self._last_purge is not None and now - self._last_purge < PURGE_INTERVAL_SECONDS:
            return
        self._last_purge = now
        try:
            self.engine.purge_flows(self.retention_days)
        except Exception:
            logger.exception("flow_purge_failed worker_id=%s", self.worker_id)

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        stop_event = stop_event or threading.Event()
        logger.info("worker_started worker_id=%s batch=%s poll_ms=%s", self.worker_id, self.batch_size, self.poll_ms)
        while not stop_event.is_set():
            self._maybe_purge()
            if self.run_once() == 0:
                stop_event.wait(self.poll_ms / 1000)
        logger.info("worker_stopped worker_id=%s", self.worker_id)


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    settings = EngineSettings.from_env()
    engine = build_engine(settings)
    worker = Worker(
        engine,
        settings.worker_id,
        batch_size=settings.worker_batch,
        poll_ms=settings.worker_poll_ms,
        stale_claim_seconds=settings.stale_claim_seconds,
        retention_days=settings.flow_retention_days,
    )
    try:
        worker.run_forever()
    except KeyboardInterrupt:
        logger.info("worker_interrupted worker_id=%s", settings.worker_id)


if __name__ == "__main__":
    main()
