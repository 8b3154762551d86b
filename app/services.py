"""Caller-facing operations.

``Engine`` wires the queue, worker, escalation tracker and change recorder
to one session factory.  Each public method runs in its own transaction
and returns plain dicts (see ``app.schemas``), so callers such as an HTTP
layer never hold ORM objects or sessions.

``startup()`` must run before background processing: it checks that every
channel in use has a provider and that a renderer exists, then returns
items stranded in ``sending`` by a previous crash to ``retry_pending``.
"""
from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from app.audit.audit_log import (
    ChangeRecorder,
    audit_gaps,
    get_correlation_chain,
    get_entity_history,
    search_audit_trail,
)
from app.core.clock import utcnow
from app.core.constants import NOTIFICATION_TERMINAL
from app.core.errors import ConfigurationError
from app.core.policies import AuditPolicy, RetryPolicy, SlaPolicy
from app.core.settings import Settings, get_settings
from app.db.models import Notification
from app.db.repositories import NotificationRepository
from app.db.session import get_session_factory, session_scope
from app.escalation.roster import ContactResolver, EscalationRoster
from app.escalation.tracker import EscalationTracker, SweepGuard
from app.notification.providers import ProviderRegistry, TemplateRenderer
from app.notification.queue import NotificationQueue
from app.notification.worker import BatchReport, DeliveryWorker
from app.schemas import (
    CreateCaseBody,
    CreateNotificationBody,
    UpdateCaseBody,
    serialize_audit_entry,
    serialize_case,
    serialize_notification,
)

logger = logging.getLogger(__name__)


class Engine:
    """Notification delivery, case escalation and audit trail behind one facade."""

    def __init__(
        self,
        providers: ProviderRegistry,
        renderer: TemplateRenderer | None,
        session_factory: sessionmaker | None = None,
        settings: Settings | None = None,
        contact_resolver: ContactResolver | None = None,
        rng: random.Random | None = None,
        name: str = "engine",
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.providers = providers
        self.renderer = renderer
        self.contact_resolver = contact_resolver
        self.rng = rng
        self.name = name

        self.retry_policy = RetryPolicy.from_settings(self.settings)
        self.audit_policy = AuditPolicy.from_settings(self.settings)
        self.sla_policy = SlaPolicy.from_settings(self.settings)
        self.roster = EscalationRoster.from_settings(self.settings)
        self.sweep_guard = SweepGuard(
            self.session_factory,
            holder=f"{name}-{uuid4().hex[:8]}",
            lease_seconds=self.settings.sweep_lease_seconds,
        )
        self._worker: DeliveryWorker | None = None

    # -- wiring -------------------------------------------------------------

    def _recorder(self, db: Session) -> ChangeRecorder:
        return ChangeRecorder(db, policy=self.audit_policy)

    def _queue(self, db: Session) -> NotificationQueue:
        return NotificationQueue(
            db,
            recorder=self._recorder(db),
            retry_policy=self.retry_policy,
            dedup_window=timedelta(seconds=self.settings.dedup_window_seconds),
            default_max_attempts=self.settings.default_max_attempts,
            rng=self.rng,
        )

    def _tracker(self, db: Session) -> EscalationTracker:
        queue = self._queue(db)
        return EscalationTracker(
            db,
            sla_policy=self.sla_policy,
            recorder=queue.recorder,
            queue=queue,
            roster=self.roster,
            contact_resolver=self.contact_resolver,
        )

    def worker(self, name: str | None = None) -> DeliveryWorker:
        if self.renderer is None:
            raise ConfigurationError("No template renderer configured")
        return DeliveryWorker(
            self.session_factory,
            self.providers,
            self.renderer,
            settings=self.settings,
            name=name or f"{self.name}-worker",
            rng=self.rng,
        )

    # -- lifecycle ----------------------------------------------------------

    def startup(self, now: datetime | None = None) -> int:
        """Validate collaborators and run the crash-recovery pass.

        Returns the number of notifications recovered from ``sending``.
        """
        if self.renderer is None:
            raise ConfigurationError("No template renderer configured")
        if not self.providers.channels:
            raise ConfigurationError("No delivery providers registered")

        in_use = {tier.channel for tier in self.roster.tiers}
        with session_scope(self.session_factory) as db:
            stmt = select(Notification.channel).where(
                Notification.status.not_in(sorted(NOTIFICATION_TERMINAL))
            ).distinct()
            in_use.update(db.execute(stmt).scalars().all())
        self.providers.require(in_use)

        with session_scope(self.session_factory) as db:
            recovered = self._queue(db).recover_in_flight(now or utcnow())
        logger.info(
            "Engine %s started: channels=%s recovered=%d",
            self.name, sorted(self.providers.channels), recovered,
        )
        return recovered

    def shutdown(self) -> None:
        if self._worker is not None:
            self._worker.close()
            self._worker = None

    # -- notifications ------------------------------------------------------

    def create_notification(
        self,
        body: CreateNotificationBody | dict[str, Any],
        actor_id: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        if isinstance(body, dict):
            body = CreateNotificationBody.model_validate(body)
        with session_scope(self.session_factory) as db:
            queue = self._queue(db)
            notification_id = queue.enqueue(body.to_model(), actor_id=actor_id, now=now)
            return serialize_notification(queue.get(notification_id))

    def mark_notification_read(
        self,
        notification_id: int | None = None,
        *,
        provider_tracking_id: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        if (notification_id is None) == (provider_tracking_id is None):
            raise ValueError("Pass exactly one of notification_id or provider_tracking_id")
        with session_scope(self.session_factory) as db:
            queue = self._queue(db)
            if notification_id is not None:
                notification = queue.mark_read(notification_id, now)
            else:
                notification = queue.mark_read_by_tracking_id(provider_tracking_id, now)
            return serialize_notification(notification)

    def get_notification(self, notification_id: int) -> dict[str, Any]:
        with session_scope(self.session_factory) as db:
            return serialize_notification(self._queue(db).get(notification_id))

    def find_notifications(self, **filters: Any) -> list[dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            return [serialize_notification(n) for n in self._queue(db).find(**filters)]

    def delivery_stats(
        self,
        batch_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> dict[str, dict[str, int]]:
        with session_scope(self.session_factory) as db:
            return NotificationRepository(db).delivery_stats(batch_id=batch_id, since=since, until=until)

    def run_delivery_batch(self, now: datetime | None = None) -> BatchReport:
        if self._worker is None:
            self._worker = self.worker()
        return self._worker.run_once(now)

    # -- cases --------------------------------------------------------------

    def open_case(
        self,
        body: CreateCaseBody | dict[str, Any],
        actor_id: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        if isinstance(body, dict):
            body = CreateCaseBody.model_validate(body)
        with session_scope(self.session_factory) as db:
            case = self._tracker(db).open_case(
                body.subject,
                body.priority,
                description=body.description,
                category=body.category,
                resident_ref=body.resident_ref,
                assignee_id=body.assignee_id,
                actor_id=actor_id,
                correlation_id=uuid4().hex,
                now=now,
            )
            return serialize_case(case)

    def update_case(
        self,
        case_id: UUID | str,
        body: UpdateCaseBody | dict[str, Any],
        actor_id: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Apply priority, assignee and status changes as one operation.

        Every resulting audit entry shares one correlation id.
        """
        if isinstance(body, dict):
            body = UpdateCaseBody.model_validate(body)
        now = now or utcnow()
        correlation_id = uuid4().hex
        with session_scope(self.session_factory) as db:
            tracker = self._tracker(db)
            case = tracker.get(case_id)
            if body.priority is not None and body.priority != case.priority:
                case = tracker.change_priority(
                    case.id, body.priority, actor_id=actor_id, correlation_id=correlation_id, now=now
                )
            if body.assignee_id is not None and body.assignee_id != case.assignee_id:
                case = tracker.assign(
                    case.id, body.assignee_id, actor_id=actor_id, correlation_id=correlation_id, now=now
                )
            if body.status is not None and body.status != case.status:
                case = tracker.transition(
                    case.id,
                    body.status,
                    actor_id=actor_id,
                    resolution_notes=body.resolution_notes,
                    reason=body.reason,
                    correlation_id=correlation_id,
                    now=now,
                )
            return serialize_case(case)

    def escalate_case(
        self,
        case_id: UUID | str,
        reason: str,
        actor_id: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        with session_scope(self.session_factory) as db:
            return serialize_case(self._tracker(db).escalate(case_id, reason, actor_id=actor_id, now=now))

    def reopen_case(
        self,
        case_id: UUID | str,
        actor_id: str | None = None,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        with session_scope(self.session_factory) as db:
            return serialize_case(
                self._tracker(db).reopen(case_id, actor_id=actor_id, reason=reason, now=now)
            )

    def get_case(self, case_id: UUID | str) -> dict[str, Any]:
        with session_scope(self.session_factory) as db:
            tracker = self._tracker(db)
            case = tracker.get(case_id)
            view = serialize_case(case)
            view["days_open"] = tracker.days_open(case)
            view["sla_breached"] = tracker.is_breached(case)
            return view

    def find_cases(self, **filters: Any) -> list[dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            return [serialize_case(c) for c in self._tracker(db).find(**filters)]

    def overdue_cases(self, now: datetime | None = None) -> list[dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            return [serialize_case(c) for c in self._tracker(db).overdue(now)]

    def run_escalation_sweep(self, now: datetime | None = None) -> list[str]:
        """Run one guarded sweep; returns escalated case ids (empty if skipped)."""
        now = now or utcnow()
        with self.sweep_guard.hold(now) as acquired:
            if not acquired:
                return []
            with session_scope(self.session_factory) as db:
                return [str(case_id) for case_id in self._tracker(db).sweep(now)]

    # -- audit --------------------------------------------------------------

    def entity_history(self, entity_kind: str, entity_id: object) -> list[dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            return [serialize_audit_entry(e) for e in get_entity_history(db, entity_kind, entity_id)]

    def correlation_chain(self, correlation_id: str) -> list[dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            return [serialize_audit_entry(e) for e in get_correlation_chain(db, correlation_id)]

    def search_audit(self, **filters: Any) -> list[dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            return [serialize_audit_entry(e) for e in search_audit_trail(db, **filters)]

    # -- operations ---------------------------------------------------------

    def metrics(self) -> dict[str, Any]:
        """Operational counters, including dropped audit writes."""
        stats = self.delivery_stats()
        return {
            "audit_gaps": audit_gaps.value,
            "notifications_by_status": stats["by_status"],
            "notifications_by_channel": stats["by_channel"],
        }
