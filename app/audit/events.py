"""Audit vocabulary.

Entity kinds and actions accepted by the change recorder, and the fields
captured in each entity kind's before/after snapshot.
"""
from __future__ import annotations

from app.core.constants import AuditAction, EntityKind

VALID_ENTITY_KINDS: frozenset[str] = frozenset(kind.value for kind in EntityKind)
VALID_ACTIONS: frozenset[str] = frozenset(action.value for action in AuditAction)

NOTIFICATION_SNAPSHOT_FIELDS: tuple[str, ...] = (
    "status",
    "attempt_count",
    "scheduled_for",
    "last_failure_reason",
    "provider_tracking_id",
)

CASE_SNAPSHOT_FIELDS: tuple[str, ...] = (
    "status",
    "priority",
    "escalation_level",
    "assignee_id",
    "resolved_at",
    "closed_at",
)

SNAPSHOT_FIELDS: dict[str, tuple[str, ...]] = {
    EntityKind.NOTIFICATION: NOTIFICATION_SNAPSHOT_FIELDS,
    EntityKind.CASE: CASE_SNAPSHOT_FIELDS,
}
