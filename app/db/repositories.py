from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, TypeVar

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.constants import CASE_ESCALATABLE
from app.db import models

ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    """Create/read/update helpers.  Nothing in this engine is physically deleted."""

    model: type[ModelT]

    def __init__(self, db: Session):
        self.db = db

    def create(self, **kwargs) -> ModelT:
        entity = self.model(**kwargs)
        self.db.add(entity)
        self.db.flush()
        return entity

    def get(self, entity_id: Any) -> ModelT | None:
        return self.db.get(self.model, entity_id)

    def list(self, limit: int = 100, offset: int = 0) -> list[ModelT]:
        stmt = select(self.model).offset(offset).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def update(self, entity: ModelT, **kwargs) -> ModelT:
        for key, value in kwargs.items():
            setattr(entity, key, value)
        self.db.flush()
        return entity

    def filter_by(self, limit: int = 100, offset: int = 0, **criteria) -> list[ModelT]:
        """Return rows matching every non-``None`` equality criterion."""
        stmt = select(self.model)
        for column, value in criteria.items():
            if value is not None:
                stmt = stmt.where(getattr(self.model, column) == value)
        stmt = stmt.order_by(*self._default_order()).offset(offset).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def _default_order(self) -> tuple:
        return ()


class NotificationRepository(BaseRepository[models.Notification]):
    model = models.Notification

    def _default_order(self) -> tuple:
        return (models.Notification.id.asc(),)

    def find_recent_by_idempotency_key(self, key: str, since: datetime) -> models.Notification | None:
        stmt = (
            select(models.Notification)
            .where(
                models.Notification.idempotency_key == key,
                models.Notification.created_at >= since,
            )
            .order_by(models.Notification.id.asc())
            .limit(1)
        )
        return self.db.execute(stmt).scalars().first()

    def find_by_tracking_id(self, provider_tracking_id: str) -> models.Notification | None:
        stmt = select(models.Notification).where(
            models.Notification.provider_tracking_id == provider_tracking_id
        )
        return self.db.execute(stmt).scalars().first()

    def delivery_stats(
        self,
        batch_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> dict[str, dict[str, int]]:
        """Count notifications per status and per channel."""
        stmt = select(
            models.Notification.channel,
            models.Notification.status,
            func.count(models.Notification.id),
        )
        if batch_id is not None:
            stmt = stmt.where(models.Notification.batch_id == batch_id)
        if since is not None:
            stmt = stmt.where(models.Notification.created_at >= since)
        if until is not None:
            stmt = stmt.where(models.Notification.created_at < until)
        stmt = stmt.group_by(models.Notification.channel, models.Notification.status)

        by_status: dict[str, int] = {}
        by_channel: dict[str, int] = {}
        for channel, status, count in self.db.execute(stmt).all():
            by_status[status] = by_status.get(status, 0) + count
            by_channel[channel] = by_channel.get(channel, 0) + count
        return {"by_status": by_status, "by_channel": by_channel}


class CaseRepository(BaseRepository[models.Case]):
    model = models.Case

    def _default_order(self) -> tuple:
        return (models.Case.opened_at.asc(),)

    def list_escalation_candidates(self) -> list[models.Case]:
        stmt = (
            select(models.Case)
            .where(models.Case.status.in_(sorted(CASE_ESCALATABLE)))
            .order_by(models.Case.opened_at.asc())
        )
        return list(self.db.execute(stmt).scalars().all())


class AuditEntryRepository(BaseRepository[models.AuditEntry]):
    model = models.AuditEntry

    def _default_order(self) -> tuple:
        return (models.AuditEntry.id.asc(),)

    def update(self, entity, **kwargs):
        raise TypeError("Audit entries are immutable")

    def search(
        self,
        *,
        entity_kind: str | None = None,
        entity_id: str | None = None,
        correlation_id: str | None = None,
        actor_id: str | None = None,
        action: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 500,
    ) -> list[models.AuditEntry]:
        stmt = select(models.AuditEntry)
        if entity_kind is not None:
            stmt = stmt.where(models.AuditEntry.entity_kind == entity_kind)
        if entity_id is not None:
            stmt = stmt.where(models.AuditEntry.entity_id == entity_id)
        if correlation_id is not None:
            stmt = stmt.where(models.AuditEntry.correlation_id == correlation_id)
        if actor_id is not None:
            stmt = stmt.where(models.AuditEntry.actor_id == actor_id)
        if action is not None:
            stmt = stmt.where(models.AuditEntry.action == action)
        if since is not None:
            stmt = stmt.where(models.AuditEntry.timestamp >= since)
        if until is not None:
            stmt = stmt.where(models.AuditEntry.timestamp < until)
        stmt = stmt.order_by(models.AuditEntry.id.asc()).limit(limit)
        return list(self.db.execute(stmt).scalars().all())


class SweepLeaseRepository(BaseRepository[models.SweepLease]):
    model = models.SweepLease
