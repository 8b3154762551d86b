from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, event, func, text as sql_text
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from app.db.base import Base


class Notification(Base):
    """One unit of outbound communication tracked through the delivery state machine.

    Rows are never deleted; terminal rows stay for audit and delivery statistics.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_due", "status", "scheduled_for"),
        Index("ix_notifications_idempotency", "idempotency_key", "created_at"),
    )

    # Integer key doubles as insertion order for the dequeue tie-break.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    recipient_address: Mapped[str] = mapped_column(String(512), nullable=False)
    recipient_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    template_id: Mapped[str] = mapped_column(String(128), nullable=False)
    variables: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    subject: Mapped[str | None] = mapped_column(String(512), nullable=True)
    language: Mapped[str] = mapped_column(String(16), nullable=False, default="en", server_default=sql_text("'en'"))
    priority: Mapped[str] = mapped_column(
        String(16), nullable=False, default="medium", server_default=sql_text("'medium'")
    )
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="pending", server_default=sql_text("'pending'")
    )
    scheduled_for: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3, server_default=sql_text("3"))
    last_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider_tracking_id: Mapped[str | None] = mapped_column(String(256), nullable=True, index=True)
    batch_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class Case(Base):
    """A support conversation progressing open → resolved/closed under an SLA clock.

    ``escalation_level`` never decreases and ``resolved_at`` is written once.
    """

    __tablename__ = "cases"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    subject: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(64), nullable=False, default="other", server_default=sql_text("'other'"))
    resident_ref: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    priority: Mapped[str] = mapped_column(
        String(16), nullable=False, default="medium", server_default=sql_text("'medium'")
    )
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="open", server_default=sql_text("'open'"), index=True
    )
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    assignee_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    escalated_to: Mapped[str | None] = mapped_column(String(256), nullable=True)
    escalation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    escalated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sla_target_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reopened_from_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("cases.id", ondelete="SET NULL"), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    reopened_from: Mapped[Case | None] = relationship(remote_side="Case.id")


class AuditEntry(Base):
    """Append-only record of one change to a tracked entity.

    Rows are never updated or deleted.  ``parent_id`` optionally points at
    the previous entry in the same correlation chain.
    """

    __tablename__ = "audit_entries"
    __table_args__ = (
        Index("ix_audit_entries_entity", "entity_kind", "entity_id"),
        Index("ix_audit_entries_actor_time", "actor_id", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    prior_state: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_state: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    changed_fields: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    parent_id: Mapped[int | None] = mapped_column(
        ForeignKey("audit_entries.id", ondelete="RESTRICT"), nullable=True,
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )

    def has_field_changed(self, field_name: str) -> bool:
        return field_name in (self.changed_fields or [])

    def old_value(self, field_name: str) -> object:
        return (self.prior_state or {}).get(field_name)

    def new_value(self, field_name: str) -> object:
        return (self.new_state or {}).get(field_name)


class SweepLease(Base):
    """Cross-process guard so only one escalation sweep runs at a time."""

    __tablename__ = "sweep_leases"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    holder: Mapped[str | None] = mapped_column(String(128), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


@event.listens_for(Session, "before_flush")
def _reject_audit_mutation(session: Session, flush_context, instances) -> None:
    for obj in session.deleted:
        if isinstance(obj, AuditEntry):
            raise ValueError("Audit entries are append-only and cannot be deleted")
    for obj in session.dirty:
        if isinstance(obj, AuditEntry) and session.is_modified(obj):
            raise ValueError("Audit entries are append-only and cannot be modified")
