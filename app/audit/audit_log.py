"""Append-only change recorder.

``ChangeRecorder.record()`` persists one immutable ``AuditEntry`` per
tracked mutation.  The write happens inside a SAVEPOINT so a storage
failure is rolled back on its own: the caller's transaction carries on,
the failure is logged, and the audit gap counter goes up.  Audit capture
is best effort and never blocks the operation being audited.

Safety: snapshot contents are never logged — only kind, id and action.
"""
from __future__ import annotations

import logging
import threading
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.audit.events import SNAPSHOT_FIELDS, VALID_ACTIONS, VALID_ENTITY_KINDS
from app.core.clock import ensure_utc, utcnow
from app.core.errors import AuditWriteFailure
from app.core.policies import AuditPolicy
from app.db.models import AuditEntry
from app.db.repositories import AuditEntryRepository

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Gap counter
# ---------------------------------------------------------------------------

class AuditGapCounter:
    """Thread-safe count of audit writes that were dropped."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0

    def increment(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def reset(self) -> None:
        with self._lock:
            self._value = 0


audit_gaps = AuditGapCounter()


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(v) for v in value]
    return value


def snapshot(entity: object, entity_kind: str) -> dict[str, Any]:
    """Return the JSON-safe audited fields of *entity*."""
    return {name: _json_safe(getattr(entity, name)) for name in SNAPSHOT_FIELDS[entity_kind]}


def compute_changed_fields(
    prior_state: dict[str, Any] | None,
    new_state: dict[str, Any] | None,
) -> list[str]:
    """Return sorted field names whose value differs between the two states.

    A key present on only one side counts as changed.  With no prior state
    (create) every new key is changed; with no new state (delete) every
    prior key is changed.
    """
    if prior_state is None and new_state is None:
        return []
    if prior_state is None:
        return sorted(new_state)
    if new_state is None:
        return sorted(prior_state)

    missing = object()
    changed = {
        key
        for key in set(prior_state) | set(new_state)
        if prior_state.get(key, missing) != new_state.get(key, missing)
    }
    return sorted(changed)


# ---------------------------------------------------------------------------
# ChangeRecorder
# ---------------------------------------------------------------------------

class ChangeRecorder:
    """Persist audit entries for tracked mutations without ever failing the caller."""

    def __init__(
        self,
        db_session: Session,
        policy: AuditPolicy | None = None,
        gap_counter: AuditGapCounter | None = None,
    ) -> None:
        self.db = db_session
        self.policy = policy or AuditPolicy()
        self.gap_counter = gap_counter or audit_gaps

    def record(
        self,
        entity_kind: str,
        entity_id: object,
        action: str,
        prior_state: dict[str, Any] | None,
        new_state: dict[str, Any] | None,
        actor_id: str | None = None,
        correlation_id: str | None = None,
        parent_id: int | None = None,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> AuditEntry | None:
        """Store an ``AuditEntry`` and return it.

        Returns ``None`` when the entity kind is not audited by policy or
        when the write was dropped.  Raises ``ValueError`` for an unknown
        entity kind or action, which is a programming error.
        """
        if entity_kind not in VALID_ENTITY_KINDS:
            raise ValueError(
                f"Invalid entity_kind {entity_kind!r}; "
                f"must be one of {sorted(VALID_ENTITY_KINDS)}"
            )
        if action not in VALID_ACTIONS:
            raise ValueError(
                f"Invalid action {action!r}; must be one of {sorted(VALID_ACTIONS)}"
            )
        if not self.policy.is_enabled(entity_kind):
            return None

        prior = _json_safe(prior_state) if prior_state is not None else None
        new = _json_safe(new_state) if new_state is not None else None

        try:
            entry = self._persist(
                entity_kind=str(entity_kind),
                entity_id=str(entity_id),
                action=str(action),
                actor_id=actor_id,
                prior_state=prior,
                new_state=new,
                changed_fields=compute_changed_fields(prior, new),
                correlation_id=correlation_id,
                parent_id=parent_id,
                reason=reason,
                timestamp=now or utcnow(),
            )
        except AuditWriteFailure as exc:
            gaps = self.gap_counter.increment()
            logger.warning(
                "Audit write dropped: kind=%s id=%s action=%s gaps=%d (%s)",
                entity_kind, entity_id, action, gaps, exc,
            )
            return None

        logger.info(
            "Audit entry recorded: kind=%s id=%s action=%s", entity_kind, entity_id, action
        )
        return entry

    def _persist(self, **fields: Any) -> AuditEntry:
        # Pending caller changes belong to the caller's transaction, not the savepoint.
        self.db.flush()
        try:
            with self.db.begin_nested():
                entry = AuditEntry(**fields)
                self.db.add(entry)
                self.db.flush()
        except SQLAlchemyError as exc:
            raise AuditWriteFailure(type(exc).__name__) from exc
        return entry


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get_entity_history(
    db_session: Session,
    entity_kind: str,
    entity_id: object,
) -> list[AuditEntry]:
    """Return every entry for one entity, oldest first."""
    if entity_kind not in VALID_ENTITY_KINDS:
        raise ValueError(
            f"Invalid entity_kind {entity_kind!r}; "
            f"must be one of {sorted(VALID_ENTITY_KINDS)}"
        )
    return AuditEntryRepository(db_session).search(
        entity_kind=entity_kind, entity_id=str(entity_id)
    )


def get_correlation_chain(db_session: Session, correlation_id: str) -> list[AuditEntry]:
    """Return every entry produced by one logical operation, oldest first."""
    return AuditEntryRepository(db_session).search(correlation_id=correlation_id)


def search_audit_trail(
    db_session: Session,
    *,
    entity_kind: str | None = None,
    entity_id: object | None = None,
    correlation_id: str | None = None,
    actor_id: str | None = None,
    action: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 500,
) -> list[AuditEntry]:
    if action is not None and action not in VALID_ACTIONS:
        raise ValueError(
            f"Invalid action {action!r}; must be one of {sorted(VALID_ACTIONS)}"
        )
    return AuditEntryRepository(db_session).search(
        entity_kind=entity_kind,
        entity_id=str(entity_id) if entity_id is not None else None,
        correlation_id=correlation_id,
        actor_id=actor_id,
        action=action,
        since=since,
        until=until,
        limit=limit,
    )
