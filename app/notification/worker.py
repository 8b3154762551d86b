"""Delivery worker — pulls due notifications and hands them to providers.

One batch is:

1. claim up to ``batch_size`` due items and commit (items are now ``sending``),
2. render and send each item outside any transaction,
3. record each outcome in its own short transaction.

Provider calls run on a thread pool so every call gets a hard timeout; a
timeout counts as a transient failure.  Stopping is cooperative and only
happens between batches.

Safety: recipient addresses are never logged — only notification ids.
"""
from __future__ import annotations

import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.audit.audit_log import ChangeRecorder
from app.core.clock import utcnow
from app.core.constants import REASON_PROVIDER_TIMEOUT, NotificationStatus
from app.core.errors import (
    ConfigurationError,
    EngineError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from app.core.policies import AuditPolicy, RetryPolicy
from app.core.settings import Settings, get_settings
from app.db.session import session_scope
from app.notification.providers import DeliveryResult, ProviderRegistry, TemplateRenderer
from app.notification.queue import NotificationQueue

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# BatchReport
# ---------------------------------------------------------------------------

@dataclass
class BatchReport:
    """Counts for one ``run_once()`` pass."""

    claimed: int = 0
    delivered: int = 0
    retried: int = 0
    failed: int = 0
    notification_ids: list[int] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class _Job:
    notification_id: int
    channel: str
    address: str
    template_id: str
    variables: dict[str, Any]


# ---------------------------------------------------------------------------
# DeliveryWorker
# ---------------------------------------------------------------------------

class DeliveryWorker:
    """Consume due notifications from the queue and settle their outcomes."""

    def __init__(
        self,
        session_factory: sessionmaker,
        providers: ProviderRegistry,
        renderer: TemplateRenderer,
        settings: Settings | None = None,
        name: str = "worker-1",
        executor: ThreadPoolExecutor | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.providers = providers
        self.renderer = renderer
        self.name = name
        self.batch_size = self.settings.worker_batch_size
        self.provider_timeout = self.settings.provider_timeout_seconds
        self.retry_policy = RetryPolicy.from_settings(self.settings)
        self.audit_policy = AuditPolicy.from_settings(self.settings)
        self.rng = rng
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix=f"{name}-send"
        )

    def _queue(self, db: Session) -> NotificationQueue:
        return NotificationQueue(
            db,
            recorder=ChangeRecorder(db, policy=self.audit_policy),
            retry_policy=self.retry_policy,
            dedup_window=timedelta(seconds=self.settings.dedup_window_seconds),
            default_max_attempts=self.settings.default_max_attempts,
            rng=self.rng,
        )

    # -- batch --------------------------------------------------------------

    def run_once(self, now: datetime | None = None) -> BatchReport:
        """Claim, deliver and settle one batch.

        *now* pins the clock for claim and settlement; tests use it to step
        through backoff windows without sleeping.
        """
        report = BatchReport()
        with session_scope(self.session_factory) as db:
            claimed = self._queue(db).dequeue_due(self.batch_size, now or utcnow())
            jobs = [
                _Job(
                    notification_id=n.id,
                    channel=n.channel,
                    address=n.recipient_address,
                    template_id=n.template_id,
                    variables=dict(n.variables or {}),
                )
                for n in claimed
            ]

        report.claimed = len(jobs)
        for job in jobs:
            result = self._deliver(job)
            try:
                with session_scope(self.session_factory) as db:
                    settled = self._queue(db).mark_attempt(
                        job.notification_id, result, now or utcnow()
                    )
                    status = settled.status
            except EngineError as exc:
                # Recovered or settled elsewhere while the provider call was out.
                logger.warning(
                    "[%s] Could not settle notification %s: %s",
                    self.name, job.notification_id, exc,
                )
                continue
            except SQLAlchemyError:
                # Left in sending; the rest of the batch is still settled.
                logger.exception(
                    "[%s] Storage error while settling notification %s",
                    self.name, job.notification_id,
                )
                continue

            report.notification_ids.append(job.notification_id)
            if status == NotificationStatus.DELIVERED:
                report.delivered += 1
            elif status == NotificationStatus.RETRY_PENDING:
                report.retried += 1
            else:
                report.failed += 1

        if report.claimed:
            logger.info(
                "[%s] Batch complete: claimed=%d delivered=%d retried=%d failed=%d",
                self.name, report.claimed, report.delivered, report.retried, report.failed,
            )
        return report

    # -- single delivery ----------------------------------------------------

    def _deliver(self, job: _Job) -> DeliveryResult:
        try:
            message = self.renderer.render(job.template_id, job.variables)
        except PermanentDeliveryError as exc:
            return DeliveryResult.permanent(exc.reason, exc.code)
        except (KeyError, ValueError, TypeError) as exc:
            return DeliveryResult.permanent(
                f"template {job.template_id!r} failed to render: {type(exc).__name__}",
                "template_error",
            )

        try:
            provider = self.providers.get(job.channel)
        except ConfigurationError as exc:
            return DeliveryResult.permanent(str(exc), "no_provider")

        future = self._executor.submit(provider.send, job.address, message)
        try:
            result = future.result(timeout=self.provider_timeout)
        except FutureTimeout:
            future.cancel()
            logger.warning(
                "[%s] Provider timeout for notification %s after %.1fs",
                self.name, job.notification_id, self.provider_timeout,
            )
            return DeliveryResult.transient(REASON_PROVIDER_TIMEOUT, "timeout")
        except TransientDeliveryError as exc:
            return DeliveryResult.transient(exc.reason, exc.code)
        except PermanentDeliveryError as exc:
            return DeliveryResult.permanent(exc.reason, exc.code)
        except Exception as exc:
            logger.warning(
                "[%s] Provider raised %s for notification %s",
                self.name, type(exc).__name__, job.notification_id,
            )
            return DeliveryResult.transient(f"provider error: {type(exc).__name__}", "provider_exception")

        if not isinstance(result, DeliveryResult):
            return DeliveryResult.transient("provider returned no outcome", "invalid_response")
        return result

    # -- loop ---------------------------------------------------------------

    def run_until_stopped(self, stop_event: threading.Event) -> None:
        """Poll until *stop_event* is set, checking it only between batches."""
        poll_interval = self.settings.worker_poll_interval_seconds
        logger.info("[%s] Delivery worker started", self.name)
        while not stop_event.is_set():
            try:
                report = self.run_once()
            except SQLAlchemyError:
                logger.exception("[%s] Batch aborted by a storage error", self.name)
                report = BatchReport()
            if report.claimed < self.batch_size:
                stop_event.wait(poll_interval)
        logger.info("[%s] Delivery worker stopped", self.name)

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
