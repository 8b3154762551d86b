"""Canonical enumerations and transition tables.

Notification lifecycle
----------------------
    pending → sending → delivered → read
                      ↘ retry_pending → pending
                      ↘ failed

``delivered`` is terminal unless a read receipt arrives; ``read`` and
``failed`` are always terminal.

Case lifecycle
--------------
    open → in_progress → pending → resolved → closed

Cases only move forward.  Any non-terminal status may be closed directly
(administrative closure); ``resolved`` can only move to ``closed``.
Reopening creates a new Case that references the old one.
"""
from __future__ import annotations

from enum import StrEnum


class EntityKind(StrEnum):
    NOTIFICATION = "notification"
    CASE = "case"


class AuditAction(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ACCESS = "access"


class Channel(StrEnum):
    SMS = "sms"
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    PUSH = "push"
    VOICE = "voice"
    IN_APP = "in_app"


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class NotificationStatus(StrEnum):
    PENDING = "pending"
    SENDING = "sending"
    RETRY_PENDING = "retry_pending"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class CaseStatus(StrEnum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    PENDING = "pending"
    RESOLVED = "resolved"
    CLOSED = "closed"


# Higher rank is dequeued first.
PRIORITY_RANK: dict[str, int] = {
    Priority.LOW: 0,
    Priority.MEDIUM: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}

NOTIFICATION_TRANSITIONS: dict[str, frozenset[str]] = {
    NotificationStatus.PENDING: frozenset({NotificationStatus.SENDING, NotificationStatus.FAILED}),
    NotificationStatus.SENDING: frozenset({
        NotificationStatus.DELIVERED,
        NotificationStatus.RETRY_PENDING,
        NotificationStatus.FAILED,
    }),
    NotificationStatus.RETRY_PENDING: frozenset({NotificationStatus.PENDING, NotificationStatus.FAILED}),
    NotificationStatus.DELIVERED: frozenset({NotificationStatus.READ}),
    NotificationStatus.READ: frozenset(),
    NotificationStatus.FAILED: frozenset(),
}

NOTIFICATION_TERMINAL: frozenset[str] = frozenset({
    NotificationStatus.DELIVERED,
    NotificationStatus.READ,
    NotificationStatus.FAILED,
})

_CASE_ORDER: tuple[str, ...] = (
    CaseStatus.OPEN,
    CaseStatus.IN_PROGRESS,
    CaseStatus.PENDING,
    CaseStatus.RESOLVED,
    CaseStatus.CLOSED,
)

CASE_TRANSITIONS: dict[str, frozenset[str]] = {
    status: frozenset(_CASE_ORDER[index + 1:])
    for index, status in enumerate(_CASE_ORDER)
}
CASE_TRANSITIONS[CaseStatus.RESOLVED] = frozenset({CaseStatus.CLOSED})

# Statuses whose SLA clock can trigger an automatic escalation.
CASE_ESCALATABLE: frozenset[str] = frozenset({CaseStatus.OPEN, CaseStatus.IN_PROGRESS})

# Failure reasons
REASON_EXPIRED = "expired"
REASON_MAX_ATTEMPTS = "max attempts exceeded"
REASON_PROVIDER_TIMEOUT = "provider timeout"

# Template ids emitted by the escalation workflow
TEMPLATE_CASE_ESCALATED = "case_escalated"
TEMPLATE_CASE_ASSIGNED = "case_assigned"
