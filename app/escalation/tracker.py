"""Case lifecycle and SLA-driven escalation.

Manages per-case ``status`` transitions:

    open → in_progress → pending → resolved → closed

Cases only move forward (skipping steps is allowed).  Any non-terminal
status may be closed directly; ``resolved`` can only be closed.  Reopening
creates a new case pointing at the old one.

The escalation sweep looks at ``open`` and ``in_progress`` cases.  When
the time since the last status change or escalation exceeds the SLA
target for the case priority, the level goes up by one, the assignee is
cleared and the next tier is alerted.  A failed alert never undoes the
escalation: the case row is the source of truth.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.audit.audit_log import ChangeRecorder, snapshot
from app.core.clock import ensure_utc, utcnow
from app.core.constants import (
    CASE_ESCALATABLE,
    CASE_TRANSITIONS,
    TEMPLATE_CASE_ASSIGNED,
    TEMPLATE_CASE_ESCALATED,
    AuditAction,
    CaseStatus,
    EntityKind,
    Priority,
)
from app.core.errors import EngineError, InvalidTransition, NotFound
from app.core.policies import SlaPolicy
from app.core.settings import get_settings
from app.db.models import AuditEntry, Case, Notification, SweepLease
from app.db.repositories import CaseRepository
from app.db.session import session_scope
from app.escalation.roster import ContactResolver, EscalationRoster, Recipient
from app.notification.queue import NotificationQueue, derive_idempotency_key

logger = logging.getLogger(__name__)

_TERMINAL: frozenset[str] = frozenset({CaseStatus.CLOSED})
_VALID_PRIORITIES = frozenset(p.value for p in Priority)

SLA_BREACH_REASON = "SLA target exceeded"


class EscalationTracker:
    """Open, move and escalate cases with audit logging."""

    def __init__(
        self,
        db_session: Session,
        sla_policy: SlaPolicy | None = None,
        recorder: ChangeRecorder | None = None,
        queue: NotificationQueue | None = None,
        roster: EscalationRoster | None = None,
        contact_resolver: ContactResolver | None = None,
    ) -> None:
        self.db = db_session
        self.repo = CaseRepository(db_session)
        self.sla_policy = sla_policy or SlaPolicy.from_settings(get_settings())
        self.recorder = recorder or ChangeRecorder(db_session)
        self.queue = queue or NotificationQueue(db_session, recorder=self.recorder)
        self.roster = roster or EscalationRoster()
        self.contact_resolver = contact_resolver

    # -- lifecycle ----------------------------------------------------------

    def open_case(
        self,
        subject: str,
        priority: str = Priority.MEDIUM,
        *,
        description: str | None = None,
        category: str = "other",
        resident_ref: str | None = None,
        assignee_id: str | None = None,
        actor_id: str | None = None,
        correlation_id: str | None = None,
        now: datetime | None = None,
    ) -> Case:
        """Create an ``open`` case with its SLA target derived from *priority*."""
        now = now or utcnow()
        if not subject or not subject.strip():
            raise ValueError("subject must be a non-empty string")
        self._check_priority(priority)

        case = Case(
            id=uuid4(),
            subject=subject,
            description=description,
            category=category,
            resident_ref=resident_ref,
            priority=str(priority),
            status=CaseStatus.OPEN.value,
            escalation_level=0,
            assignee_id=assignee_id,
            sla_target_minutes=self._sla_minutes(priority),
            opened_at=now,
            status_changed_at=now,
        )
        self.db.add(case)
        self.db.flush()

        self._audit(case, AuditAction.CREATE, None, actor_id, correlation_id, now)
        logger.info("Case %s opened: priority=%s", case.id, case.priority)
        if assignee_id:
            self._alert_assignee(case, assignee_id, correlation_id, None, now)
        return case

    def transition(
        self,
        case_id: UUID | str,
        to_status: str,
        *,
        actor_id: str | None = None,
        resolution_notes: str | None = None,
        reason: str | None = None,
        correlation_id: str | None = None,
        now: datetime | None = None,
    ) -> Case:
        """Move a case to *to_status* if the transition is allowed."""
        now = now or utcnow()
        case = self.get(case_id)
        current = case.status
        if to_status not in CASE_TRANSITIONS.get(current, frozenset()):
            raise InvalidTransition("case", current, to_status)

        prior = snapshot(case, EntityKind.CASE)
        case.status = str(to_status)
        case.status_changed_at = now
        if to_status == CaseStatus.RESOLVED and case.resolved_at is None:
            case.resolved_at = now
        if to_status == CaseStatus.CLOSED:
            case.closed_at = now
        if resolution_notes is not None:
            case.resolution_notes = resolution_notes
        self.db.flush()

        self._audit(case, AuditAction.UPDATE, prior, actor_id, correlation_id, now, reason=reason)
        logger.info("Case %s: %s → %s", case.id, current, to_status)
        return case

    def close(self, case_id: UUID | str, **kwargs) -> Case:
        return self.transition(case_id, CaseStatus.CLOSED, **kwargs)

    def assign(
        self,
        case_id: UUID | str,
        assignee_id: str,
        *,
        actor_id: str | None = None,
        correlation_id: str | None = None,
        now: datetime | None = None,
    ) -> Case:
        """Set the assignee and alert them when a contact can be resolved."""
        now = now or utcnow()
        case = self.get(case_id)
        if case.status in _TERMINAL:
            raise InvalidTransition("case", case.status, "assign")
        if not assignee_id:
            raise ValueError("assignee_id must be a non-empty string")

        prior = snapshot(case, EntityKind.CASE)
        case.assignee_id = assignee_id
        self.db.flush()

        entry = self._audit(case, AuditAction.UPDATE, prior, actor_id, correlation_id, now)
        self._alert_assignee(case, assignee_id, correlation_id, entry, now)
        return case

    def change_priority(
        self,
        case_id: UUID | str,
        priority: str,
        *,
        actor_id: str | None = None,
        correlation_id: str | None = None,
        now: datetime | None = None,
    ) -> Case:
        now = now or utcnow()
        self._check_priority(priority)
        case = self.get(case_id)
        if case.status in _TERMINAL:
            raise InvalidTransition("case", case.status, "change_priority")

        prior = snapshot(case, EntityKind.CASE)
        case.priority = str(priority)
        case.sla_target_minutes = self._sla_minutes(priority)
        self.db.flush()

        self._audit(case, AuditAction.UPDATE, prior, actor_id, correlation_id, now)
        return case

    def reopen(
        self,
        case_id: UUID | str,
        *,
        actor_id: str | None = None,
        reason: str | None = None,
        correlation_id: str | None = None,
        now: datetime | None = None,
    ) -> Case:
        """Open a follow-up case for a resolved or closed one.

        The original case is left untouched so its resolution timestamp
        stays final.
        """
        now = now or utcnow()
        original = self.get(case_id)
        if original.status not in {CaseStatus.RESOLVED, CaseStatus.CLOSED}:
            raise InvalidTransition("case", original.status, "reopen")

        case = Case(
            id=uuid4(),
            subject=original.subject,
            description=original.description,
            category=original.category,
            resident_ref=original.resident_ref,
            priority=original.priority,
            status=CaseStatus.OPEN.value,
            escalation_level=0,
            sla_target_minutes=self._sla_minutes(original.priority),
            opened_at=now,
            status_changed_at=now,
            reopened_from_id=original.id,
        )
        self.db.add(case)
        self.db.flush()

        self._audit(
            case, AuditAction.CREATE, None, actor_id, correlation_id, now,
            reason=reason or f"reopened from case {original.id}",
        )
        logger.info("Case %s reopened as %s", original.id, case.id)
        return case

    # -- escalation ---------------------------------------------------------

    def is_breached(self, case: Case, now: datetime | None = None) -> bool:
        """Whether an ``open``/``in_progress`` case has outlived its SLA target."""
        if case.status not in CASE_ESCALATABLE:
            return False
        now = now or utcnow()
        anchor = ensure_utc(case.status_changed_at)
        escalated_at = ensure_utc(case.escalated_at)
        if escalated_at is not None and escalated_at > anchor:
            anchor = escalated_at
        return now - anchor > timedelta(minutes=case.sla_target_minutes)

    def sweep(self, now: datetime | None = None) -> list[UUID]:
        """Escalate every breached case once.  Returns the escalated ids.

        Callers must serialize sweeps (see ``SweepGuard``).
        """
        now = now or utcnow()
        escalated: list[UUID] = []
        for case in self.repo.list_escalation_candidates():
            if self.is_breached(case, now):
                self._escalate(case, SLA_BREACH_REASON, None, now)
                escalated.append(case.id)
        if escalated:
            logger.info("Escalation sweep escalated %d case(s)", len(escalated))
        return escalated

    def escalate(
        self,
        case_id: UUID | str,
        reason: str,
        *,
        actor_id: str | None = None,
        now: datetime | None = None,
    ) -> Case:
        """Escalate a non-terminal case by hand."""
        now = now or utcnow()
        case = self.get(case_id)
        if case.status in _TERMINAL or case.status == CaseStatus.RESOLVED:
            raise InvalidTransition("case", case.status, "escalate")
        return self._escalate(case, reason, actor_id, now)

    def _escalate(self, case: Case, reason: str, actor_id: str | None, now: datetime) -> Case:
        prior = snapshot(case, EntityKind.CASE)
        level = case.escalation_level + 1
        recipient = self.roster.recipient_for(level)

        case.escalation_level = level
        case.assignee_id = None
        case.escalated_at = now
        case.escalation_reason = reason
        case.escalated_to = recipient.label if recipient is not None else None
        self.db.flush()

        correlation_id = f"case-escalation:{case.id}:{level}"
        entry = self._audit(case, AuditAction.UPDATE, prior, actor_id, correlation_id, now, reason=reason)
        logger.warning("Case %s escalated to level %d: %s", case.id, level, reason)

        if recipient is None:
            logger.warning("No escalation tier configured for level %d; case %s not alerted", level, case.id)
            return case

        self._enqueue_alert(
            case,
            recipient,
            TEMPLATE_CASE_ESCALATED,
            {
                "case_id": str(case.id),
                "subject": case.subject,
                "priority": case.priority,
                "escalation_level": level,
                "reason": reason,
            },
            idempotency_key=f"case-escalation:{case.id}:{level}",
            correlation_id=correlation_id,
            parent_entry=entry,
            now=now,
        )
        return case

    # -- notifications ------------------------------------------------------

    def _alert_assignee(
        self,
        case: Case,
        assignee_id: str,
        correlation_id: str | None,
        parent_entry: AuditEntry | None,
        now: datetime,
    ) -> int | None:
        if self.contact_resolver is None:
            return None
        recipient = self.contact_resolver(assignee_id)
        if recipient is None:
            logger.info("No contact for assignee of case %s; assignment alert skipped", case.id)
            return None
        return self._enqueue_alert(
            case,
            recipient,
            TEMPLATE_CASE_ASSIGNED,
            {
                "case_id": str(case.id),
                "subject": case.subject,
                "priority": case.priority,
                "assignee_id": assignee_id,
            },
            # One alert per case and recipient; other cases for the same officer still alert.
            idempotency_key=derive_idempotency_key(
                TEMPLATE_CASE_ASSIGNED, recipient.channel, recipient.address, f"case:{case.id}"
            ),
            correlation_id=correlation_id,
            parent_entry=parent_entry,
            now=now,
        )

    def _enqueue_alert(
        self,
        case: Case,
        recipient: Recipient,
        template_id: str,
        variables: dict,
        *,
        idempotency_key: str | None,
        correlation_id: str | None,
        parent_entry: AuditEntry | None,
        now: datetime,
    ) -> int | None:
        """Enqueue inside a SAVEPOINT; a failure is logged and leaves the case as is."""
        notification = Notification(
            channel=recipient.channel,
            recipient_address=recipient.address,
            recipient_name=recipient.name,
            template_id=template_id,
            variables=variables,
            priority=case.priority,
            correlation_id=correlation_id,
            idempotency_key=idempotency_key,
            metadata_json={"case_id": str(case.id)},
        )
        try:
            with self.db.begin_nested():
                return self.queue.enqueue(
                    notification,
                    parent_audit_id=parent_entry.id if parent_entry is not None else None,
                    now=now,
                )
        except (EngineError, ValueError, SQLAlchemyError) as exc:
            logger.warning(
                "Alert %s for case %s could not be enqueued: %s",
                template_id, case.id, type(exc).__name__,
            )
            return None

    # -- query --------------------------------------------------------------

    def get(self, case_id: UUID | str) -> Case:
        cid = UUID(case_id) if isinstance(case_id, str) else case_id
        case = self.repo.get(cid)
        if case is None:
            raise NotFound("Case", case_id)
        return case

    def find(
        self,
        *,
        status: str | None = None,
        assignee_id: str | None = None,
        priority: str | None = None,
        resident_ref: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Case]:
        return self.repo.filter_by(
            limit=limit,
            offset=offset,
            status=status,
            assignee_id=assignee_id,
            priority=priority,
            resident_ref=resident_ref,
        )

    def overdue(self, now: datetime | None = None) -> list[Case]:
        now = now or utcnow()
        return [case for case in self.repo.list_escalation_candidates() if self.is_breached(case, now)]

    @staticmethod
    def days_open(case: Case, now: datetime | None = None) -> int:
        """Whole days between opening and closure (or *now* for live cases)."""
        end = ensure_utc(case.closed_at or case.resolved_at) or now or utcnow()
        return max(0, (end - ensure_utc(case.opened_at)).days)

    # -- internals ----------------------------------------------------------

    def _check_priority(self, priority: str) -> None:
        if priority not in _VALID_PRIORITIES:
            raise ValueError(
                f"Unknown priority {priority!r}; must be one of {sorted(_VALID_PRIORITIES)}"
            )

    def _sla_minutes(self, priority: str) -> int:
        return int(self.sla_policy.target_for(priority).total_seconds() // 60)

    def _audit(
        self,
        case: Case,
        action: str,
        prior: dict | None,
        actor_id: str | None,
        correlation_id: str | None,
        now: datetime,
        reason: str | None = None,
    ) -> AuditEntry | None:
        return self.recorder.record(
            EntityKind.CASE,
            case.id,
            action,
            prior_state=prior,
            new_state=snapshot(case, EntityKind.CASE),
            actor_id=actor_id,
            correlation_id=correlation_id,
            reason=reason,
            now=now,
        )


# ---------------------------------------------------------------------------
# SweepGuard
# ---------------------------------------------------------------------------

_process_locks: dict[str, threading.Lock] = {}
_process_locks_guard = threading.Lock()


def _process_lock(name: str) -> threading.Lock:
    with _process_locks_guard:
        return _process_locks.setdefault(name, threading.Lock())


class SweepGuard:
    """Allow one active sweep per name: a thread lock plus a leased DB row.

    The lease expires on its own, so a crashed holder cannot block sweeps
    for longer than ``lease_seconds``.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        holder: str | None = None,
        name: str = "case-escalation",
        lease_seconds: int = 300,
    ) -> None:
        self.session_factory = session_factory
        self.holder = holder or uuid4().hex
        self.name = name
        self.lease_seconds = lease_seconds
        self._lock = _process_lock(name)

    def acquire(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        if not self._lock.acquire(blocking=False):
            return False
        try:
            acquired = self._take_lease(now)
        except SQLAlchemyError:
            self._lock.release()
            raise
        if not acquired:
            self._lock.release()
        return acquired

    def release(self) -> None:
        try:
            with session_scope(self.session_factory) as db:
                db.execute(
                    update(SweepLease)
                    .where(SweepLease.name == self.name, SweepLease.holder == self.holder)
                    .values(holder=None, expires_at=None)
                )
        finally:
            self._lock.release()

    @contextmanager
    def hold(self, now: datetime | None = None) -> Iterator[bool]:
        """Yield whether the guard was acquired; release on exit if it was."""
        acquired = self.acquire(now)
        try:
            yield acquired
        finally:
            if acquired:
                self.release()

    def _take_lease(self, now: datetime) -> bool:
        expires_at = now + timedelta(seconds=self.lease_seconds)
        try:
            with session_scope(self.session_factory) as db:
                result = db.execute(
                    update(SweepLease)
                    .where(
                        SweepLease.name == self.name,
                        or_(
                            SweepLease.holder.is_(None),
                            SweepLease.holder == self.holder,
                            SweepLease.expires_at <= now,
                        ),
                    )
                    .values(holder=self.holder, expires_at=expires_at)
                )
                if result.rowcount == 1:
                    return True
                if db.get(SweepLease, self.name) is not None:
                    logger.info("Escalation sweep skipped: lease %s held elsewhere", self.name)
                    return False
                db.add(SweepLease(name=self.name, holder=self.holder, expires_at=expires_at))
                db.flush()
                return True
        except IntegrityError:
            # Another process created the lease row first.
            return False
