"""Background runtime: delivery worker threads plus the escalation sweep loop.

All threads share one stop event and only check it between batches, so a
provider call in progress is never interrupted.
"""
from __future__ import annotations

import logging
import threading

from sqlalchemy.exc import SQLAlchemyError

from app.notification.worker import DeliveryWorker
from app.services import Engine

logger = logging.getLogger(__name__)


class WorkerPool:
    """Run ``worker_count`` delivery workers and one sweep thread for an ``Engine``."""

    def __init__(self, engine: Engine, worker_count: int | None = None) -> None:
        self.engine = engine
        self.worker_count = worker_count or engine.settings.worker_count
        self.stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._workers: list[DeliveryWorker] = []

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("WorkerPool already started")
        self.engine.startup()
        self.stop_event.clear()

        for index in range(1, self.worker_count + 1):
            worker = self.engine.worker(name=f"{self.engine.name}-worker-{index}")
            self._workers.append(worker)
            self._threads.append(
                threading.Thread(
                    target=worker.run_until_stopped,
                    args=(self.stop_event,),
                    name=worker.name,
                    daemon=True,
                )
            )
        self._threads.append(
            threading.Thread(target=self._sweep_loop, name=f"{self.engine.name}-sweep", daemon=True)
        )
        for thread in self._threads:
            thread.start()
        logger.info("Worker pool started: %d delivery worker(s) + sweep", self.worker_count)

    def _sweep_loop(self) -> None:
        interval = self.engine.settings.escalation_sweep_interval_seconds
        while not self.stop_event.is_set():
            try:
                self.engine.run_escalation_sweep()
            except SQLAlchemyError:
                logger.exception("Escalation sweep aborted by a storage error")
            self.stop_event.wait(interval)

    def stop(self, timeout: float | None = None) -> None:
        """Signal every thread and wait for the current batches to finish."""
        self.stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        for worker in self._workers:
            worker.close()
        self._threads.clear()
        self._workers.clear()
        logger.info("Worker pool stopped")

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)
