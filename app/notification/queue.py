"""Notification queue — the single authoritative store of delivery state.

Work items move through::

    pending → sending → delivered → read
                      ↘ retry_pending → pending
                      ↘ failed

``dequeue_due()`` first fails expired items, then releases retries whose
backoff has elapsed, then claims due items.  Every status change is a
conditional ``UPDATE ... WHERE status = <status read>`` so two workers can
never hold the same item; a lost race is a ``ConcurrencyConflict`` and the
item is left for whoever won.

Safety: recipient addresses are never logged — only notification ids.
"""
from __future__ import annotations

import hashlib
import logging
import random
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.orm import Session

from app.audit.audit_log import ChangeRecorder, snapshot
from app.core.clock import ensure_utc, utcnow
from app.core.constants import (
    NOTIFICATION_TRANSITIONS,
    PRIORITY_RANK,
    REASON_EXPIRED,
    REASON_MAX_ATTEMPTS,
    AuditAction,
    Channel,
    EntityKind,
    NotificationStatus,
    Priority,
)
from app.core.errors import ConcurrencyConflict, InvalidTransition, NotFound
from app.core.policies import RetryPolicy
from app.db.models import Notification
from app.db.repositories import NotificationRepository
from app.notification.providers import DeliveryResult, Outcome

logger = logging.getLogger(__name__)

_VALID_CHANNELS = frozenset(c.value for c in Channel)
_VALID_PRIORITIES = frozenset(p.value for p in Priority)

_PRIORITY_ORDER = case(PRIORITY_RANK, value=Notification.priority, else_=0)


def derive_idempotency_key(
    template_id: str,
    channel: str,
    recipient_address: str,
    batch_id: str | None = None,
) -> str:
    """Stable dedup key for (template, recipient, batch)."""
    raw = "|".join([template_id, channel, recipient_address.strip().lower(), batch_id or ""])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class NotificationQueue:
    """Enqueue, claim and settle notifications inside one database session."""

    def __init__(
        self,
        db_session: Session,
        recorder: ChangeRecorder | None = None,
        retry_policy: RetryPolicy | None = None,
        dedup_window: timedelta = timedelta(minutes=5),
        default_max_attempts: int = 3,
        rng: random.Random | None = None,
    ) -> None:
        self.db = db_session
        self.repo = NotificationRepository(db_session)
        self.recorder = recorder or ChangeRecorder(db_session)
        self.retry_policy = retry_policy or RetryPolicy()
        self.dedup_window = dedup_window
        self.default_max_attempts = default_max_attempts
        self.rng = rng

    # -- enqueue ------------------------------------------------------------

    def enqueue(
        self,
        notification: Notification,
        actor_id: str | None = None,
        parent_audit_id: int | None = None,
        now: datetime | None = None,
    ) -> int:
        """Store *notification* as ``pending`` and return its id.

        A notification whose idempotency key matches one created inside
        the dedup window is not stored again; the existing id is returned.
        """
        now = ensure_utc(now) or utcnow()
        if notification.channel not in _VALID_CHANNELS:
            raise ValueError(
                f"Unknown channel {notification.channel!r}; must be one of {sorted(_VALID_CHANNELS)}"
            )
        if not notification.recipient_address or not notification.recipient_address.strip():
            raise ValueError("recipient_address must be a non-empty string")
        if not notification.template_id:
            raise ValueError("template_id must be a non-empty string")

        priority = notification.priority or Priority.MEDIUM
        if priority not in _VALID_PRIORITIES:
            raise ValueError(
                f"Unknown priority {priority!r}; must be one of {sorted(_VALID_PRIORITIES)}"
            )
        max_attempts = notification.max_attempts or self.default_max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        key = notification.idempotency_key or derive_idempotency_key(
            notification.template_id,
            notification.channel,
            notification.recipient_address,
            notification.batch_id,
        )
        if self.dedup_window > timedelta(0):
            existing = self.repo.find_recent_by_idempotency_key(key, now - self.dedup_window)
            if existing is not None:
                logger.info(
                    "Duplicate enqueue suppressed: existing notification %s", existing.id
                )
                return existing.id

        notification.priority = str(priority)
        notification.channel = str(notification.channel)
        notification.status = NotificationStatus.PENDING.value
        notification.attempt_count = 0
        notification.max_attempts = max_attempts
        notification.idempotency_key = key
        notification.scheduled_for = ensure_utc(notification.scheduled_for)
        notification.expires_at = ensure_utc(notification.expires_at)
        notification.created_at = now
        self.db.add(notification)
        self.db.flush()

        self.recorder.record(
            EntityKind.NOTIFICATION,
            notification.id,
            AuditAction.CREATE,
            prior_state=None,
            new_state=snapshot(notification, EntityKind.NOTIFICATION),
            actor_id=actor_id,
            correlation_id=notification.correlation_id,
            parent_id=parent_audit_id,
            now=now,
        )
        logger.info(
            "Notification %s enqueued: channel=%s priority=%s",
            notification.id, notification.channel, notification.priority,
        )
        return notification.id

    # -- dequeue ------------------------------------------------------------

    def dequeue_due(self, limit: int, now: datetime | None = None) -> list[Notification]:
        """Claim up to *limit* due notifications, moving each to ``sending``.

        Order: priority descending, then scheduled time ascending (unscheduled
        items count from their creation time), then insertion order.
        """
        now = now or utcnow()
        self.expire_overdue(now)
        self.release_retries(now)

        stmt = (
            select(Notification)
            .where(
                Notification.status == NotificationStatus.PENDING,
                or_(Notification.scheduled_for.is_(None), Notification.scheduled_for <= now),
                or_(Notification.expires_at.is_(None), Notification.expires_at > now),
            )
            .order_by(
                _PRIORITY_ORDER.desc(),
                func.coalesce(Notification.scheduled_for, Notification.created_at).asc(),
                Notification.id.asc(),
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        candidates = list(self.db.execute(stmt).scalars().all())

        claimed: list[Notification] = []
        for notification in candidates:
            try:
                if notification.attempt_count >= notification.max_attempts:
                    self._transition(
                        notification,
                        NotificationStatus.FAILED,
                        now,
                        reason=REASON_MAX_ATTEMPTS,
                        last_failure_reason=REASON_MAX_ATTEMPTS,
                        failed_at=now,
                    )
                    continue
                claimed.append(self.claim(notification, now))
            except ConcurrencyConflict:
                logger.debug("Notification %s claimed by another worker", notification.id)
        return claimed

    def claim(self, notification: Notification, now: datetime | None = None) -> Notification:
        """Atomically move one ``pending`` item to ``sending`` and count the attempt."""
        now = now or utcnow()
        prior = snapshot(notification, EntityKind.NOTIFICATION)
        result = self.db.execute(
            update(Notification)
            .where(
                Notification.id == notification.id,
                Notification.status == NotificationStatus.PENDING,
                Notification.attempt_count < Notification.max_attempts,
            )
            .values(
                status=NotificationStatus.SENDING.value,
                attempt_count=Notification.attempt_count + 1,
                sent_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(f"Notification {notification.id} is no longer pending")

        self.db.refresh(notification)
        self.recorder.record(
            EntityKind.NOTIFICATION,
            notification.id,
            AuditAction.UPDATE,
            prior_state=prior,
            new_state=snapshot(notification, EntityKind.NOTIFICATION),
            correlation_id=notification.correlation_id,
            now=now,
        )
        return notification

    # -- settle -------------------------------------------------------------

    def mark_attempt(
        self,
        notification_id: int,
        result: DeliveryResult,
        now: datetime | None = None,
    ) -> Notification:
        """Apply a provider outcome to a ``sending`` notification."""
        now = now or utcnow()
        notification = self.get(notification_id)
        if notification.status != NotificationStatus.SENDING:
            raise InvalidTransition("notification", notification.status, f"outcome:{result.outcome}")

        if result.outcome == Outcome.SUCCESS:
            return self._transition(
                notification,
                NotificationStatus.DELIVERED,
                now,
                provider_tracking_id=result.provider_tracking_id,
                delivered_at=now,
            )

        if result.outcome == Outcome.TRANSIENT_ERROR and notification.attempt_count < notification.max_attempts:
            retry_at = self.retry_policy.next_attempt_at(now, notification.attempt_count, self.rng)
            logger.info(
                "Notification %s attempt %d/%d failed transiently; retry scheduled",
                notification.id, notification.attempt_count, notification.max_attempts,
            )
            return self._transition(
                notification,
                NotificationStatus.RETRY_PENDING,
                now,
                reason=result.reason,
                scheduled_for=retry_at,
                last_failure_reason=result.reason,
                last_error_code=result.error_code,
            )

        if result.outcome == Outcome.TRANSIENT_ERROR:
            reason = REASON_MAX_ATTEMPTS
        else:
            reason = result.reason or "permanent provider error"
        logger.warning(
            "Notification %s failed after %d attempt(s): %s",
            notification.id, notification.attempt_count, reason,
        )
        return self._transition(
            notification,
            NotificationStatus.FAILED,
            now,
            reason=reason,
            last_failure_reason=reason,
            last_error_code=result.error_code,
            failed_at=now,
        )

    def mark_read(self, notification_id: int, now: datetime | None = None) -> Notification:
        """Record an external read receipt (``delivered → read``)."""
        now = now or utcnow()
        notification = self.get(notification_id)
        return self._transition(notification, NotificationStatus.READ, now, read_at=now)

    def mark_read_by_tracking_id(self, provider_tracking_id: str, now: datetime | None = None) -> Notification:
        notification = self.repo.find_by_tracking_id(provider_tracking_id)
        if notification is None:
            raise NotFound("Notification with tracking id", provider_tracking_id)
        return self.mark_read(notification.id, now)

    # -- housekeeping -------------------------------------------------------

    def expire_overdue(self, now: datetime | None = None) -> int:
        """Fail waiting items past their expiry.  No attempt is consumed."""
        now = now or utcnow()
        stmt = (
            select(Notification)
            .where(
                Notification.status.in_([NotificationStatus.PENDING, NotificationStatus.RETRY_PENDING]),
                Notification.expires_at.is_not(None),
                Notification.expires_at <= now,
            )
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        expired = 0
        for notification in self.db.execute(stmt).scalars().all():
            try:
                self.expire(notification, now)
            except ConcurrencyConflict:
                logger.debug("Notification %s moved on before it could expire", notification.id)
                continue
            expired += 1
        if expired:
            logger.info("Expired %d notification(s)", expired)
        return expired

    def expire(self, notification: Notification, now: datetime | None = None) -> Notification:
        """Fail one waiting item as ``expired``, unless it has left the waiting state."""
        now = now or utcnow()
        return self._transition(
            notification,
            NotificationStatus.FAILED,
            now,
            reason=REASON_EXPIRED,
            last_failure_reason=REASON_EXPIRED,
            failed_at=now,
        )

    def release_retries(self, now: datetime | None = None) -> int:
        """Return ``retry_pending`` items whose backoff has elapsed to ``pending``."""
        now = now or utcnow()
        stmt = (
            select(Notification)
            .where(
                Notification.status == NotificationStatus.RETRY_PENDING,
                or_(Notification.scheduled_for.is_(None), Notification.scheduled_for <= now),
            )
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        released = 0
        for notification in self.db.execute(stmt).scalars().all():
            try:
                self.release(notification, now)
            except ConcurrencyConflict:
                logger.debug("Notification %s already released elsewhere", notification.id)
                continue
            released += 1
        return released

    def release(self, notification: Notification, now: datetime | None = None) -> Notification:
        """Move one ``retry_pending`` item back to ``pending``."""
        return self._transition(notification, NotificationStatus.PENDING, now or utcnow())

    def recover_in_flight(self, now: datetime | None = None) -> int:
        """Sweep items stranded in ``sending`` by a crash back to ``retry_pending``.

        Items that already used every attempt are failed instead.
        """
        now = now or utcnow()
        stmt = (
            select(Notification)
            .where(Notification.status == NotificationStatus.SENDING)
            .execution_options(populate_existing=True)
        )
        recovered = 0
        for notification in self.db.execute(stmt).scalars().all():
            try:
                if notification.attempt_count >= notification.max_attempts:
                    self._transition(
                        notification,
                        NotificationStatus.FAILED,
                        now,
                        reason=REASON_MAX_ATTEMPTS,
                        last_failure_reason=REASON_MAX_ATTEMPTS,
                        failed_at=now,
                    )
                else:
                    self._transition(
                        notification,
                        NotificationStatus.RETRY_PENDING,
                        now,
                        reason="recovered after interrupted delivery",
                        scheduled_for=now,
                    )
            except ConcurrencyConflict:
                continue
            recovered += 1
        if recovered:
            logger.warning("Recovered %d notification(s) stuck in sending", recovered)
        return recovered

    # -- query --------------------------------------------------------------

    def get(self, notification_id: int) -> Notification:
        notification = self.repo.get(notification_id)
        if notification is None:
            raise NotFound("Notification", notification_id)
        return notification

    def find(
        self,
        *,
        status: str | None = None,
        channel: str | None = None,
        batch_id: str | None = None,
        correlation_id: str | None = None,
        recipient_address: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Notification]:
        return self.repo.filter_by(
            limit=limit,
            offset=offset,
            status=status,
            channel=channel,
            batch_id=batch_id,
            correlation_id=correlation_id,
            recipient_address=recipient_address,
        )

    def is_expired(self, notification: Notification, now: datetime | None = None) -> bool:
        expires_at = ensure_utc(notification.expires_at)
        return expires_at is not None and expires_at <= (now or utcnow())

    # -- internals ----------------------------------------------------------

    def _transition(
        self,
        notification: Notification,
        to_status: NotificationStatus,
        now: datetime,
        reason: str | None = None,
        **changes: Any,
    ) -> Notification:
        current = notification.status
        if to_status not in NOTIFICATION_TRANSITIONS.get(current, frozenset()):
            raise InvalidTransition("notification", current, to_status)

        prior = snapshot(notification, EntityKind.NOTIFICATION)
        result = self.db.execute(
            update(Notification)
            .where(Notification.id == notification.id, Notification.status == current)
            .values(status=to_status.value, **changes)
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(notification)
        if result.rowcount != 1:
            raise ConcurrencyConflict(
                f"Notification {notification.id} is no longer {current}; now {notification.status}"
            )

        self.recorder.record(
            EntityKind.NOTIFICATION,
            notification.id,
            AuditAction.UPDATE,
            prior_state=prior,
            new_state=snapshot(notification, EntityKind.NOTIFICATION),
            correlation_id=notification.correlation_id,
            reason=reason,
            now=now,
        )
        return notification
