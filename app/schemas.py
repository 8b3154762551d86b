"""Request bodies and serializers for caller-facing operations.

Serializers return plain dicts so results stay usable after the session
that loaded them is closed.  Recipient addresses are returned to callers
but never logged.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from app.core.clock import ensure_utc
from app.core.constants import CaseStatus, Channel, Priority
from app.db.models import AuditEntry, Case, Notification


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class CreateNotificationBody(BaseModel):
    channel: Channel
    recipient_address: str = Field(min_length=1)
    recipient_name: str | None = None
    template_id: str = Field(min_length=1)
    variables: dict[str, Any] = Field(default_factory=dict)
    subject: str | None = None
    language: str = "en"
    priority: Priority = Priority.MEDIUM
    scheduled_for: datetime | None = None
    expires_at: datetime | None = None
    max_attempts: int | None = Field(default=None, ge=1)
    batch_id: str | None = None
    correlation_id: str | None = None
    idempotency_key: str | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("scheduled_for", "expires_at")
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _expiry_after_schedule(self) -> CreateNotificationBody:
        if self.scheduled_for and self.expires_at and self.expires_at <= self.scheduled_for:
            raise ValueError("expires_at must be later than scheduled_for")
        return self

    def to_model(self) -> Notification:
        return Notification(
            channel=self.channel.value,
            recipient_address=self.recipient_address,
            recipient_name=self.recipient_name,
            template_id=self.template_id,
            variables=self.variables,
            subject=self.subject,
            language=self.language,
            priority=self.priority.value,
            scheduled_for=self.scheduled_for,
            expires_at=self.expires_at,
            max_attempts=self.max_attempts,
            batch_id=self.batch_id,
            correlation_id=self.correlation_id,
            idempotency_key=self.idempotency_key,
            metadata_json=self.metadata,
        )


class CreateCaseBody(BaseModel):
    subject: str = Field(min_length=1)
    priority: Priority = Priority.MEDIUM
    description: str | None = None
    category: str = "other"
    resident_ref: str | None = None
    assignee_id: str | None = None


class UpdateCaseBody(BaseModel):
    """Partial case update; fields left unset are not touched."""

    status: CaseStatus | None = None
    priority: Priority | None = None
    assignee_id: str | None = None
    resolution_notes: str | None = None
    reason: str | None = None


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------

def _iso(value: datetime | None) -> str | None:
    return ensure_utc(value).isoformat() if value is not None else None


def serialize_notification(notification: Notification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "channel": notification.channel,
        "recipient_address": notification.recipient_address,
        "recipient_name": notification.recipient_name,
        "template_id": notification.template_id,
        "subject": notification.subject,
        "language": notification.language,
        "priority": notification.priority,
        "status": notification.status,
        "attempt_count": notification.attempt_count,
        "max_attempts": notification.max_attempts,
        "scheduled_for": _iso(notification.scheduled_for),
        "expires_at": _iso(notification.expires_at),
        "last_failure_reason": notification.last_failure_reason,
        "last_error_code": notification.last_error_code,
        "provider_tracking_id": notification.provider_tracking_id,
        "batch_id": notification.batch_id,
        "correlation_id": notification.correlation_id,
        "sent_at": _iso(notification.sent_at),
        "delivered_at": _iso(notification.delivered_at),
        "read_at": _iso(notification.read_at),
        "failed_at": _iso(notification.failed_at),
        "created_at": _iso(notification.created_at),
    }


def serialize_case(case: Case) -> dict[str, Any]:
    return {
        "id": str(case.id),
        "subject": case.subject,
        "description": case.description,
        "category": case.category,
        "resident_ref": case.resident_ref,
        "priority": case.priority,
        "status": case.status,
        "escalation_level": case.escalation_level,
        "assignee_id": case.assignee_id,
        "escalated_to": case.escalated_to,
        "escalation_reason": case.escalation_reason,
        "escalated_at": _iso(case.escalated_at),
        "sla_target_minutes": case.sla_target_minutes,
        "opened_at": _iso(case.opened_at),
        "status_changed_at": _iso(case.status_changed_at),
        "resolved_at": _iso(case.resolved_at),
        "closed_at": _iso(case.closed_at),
        "resolution_notes": case.resolution_notes,
        "reopened_from_id": str(case.reopened_from_id) if case.reopened_from_id else None,
    }


def serialize_audit_entry(entry: AuditEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "entity_kind": entry.entity_kind,
        "entity_id": entry.entity_id,
        "action": entry.action,
        "actor_id": entry.actor_id,
        "prior_state": entry.prior_state,
        "new_state": entry.new_state,
        "changed_fields": list(entry.changed_fields or []),
        "correlation_id": entry.correlation_id,
        "parent_id": entry.parent_id,
        "reason": entry.reason,
        "timestamp": _iso(entry.timestamp),
    }
