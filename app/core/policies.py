from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from app.core.constants import EntityKind, Priority
from app.core.errors import ConfigurationError
from app.core.settings import Settings


@dataclass(slots=True)
class RetryPolicy:
    """Exponential backoff with bounded full-range jitter.

    ``delay(n) = min(cap, base * factor ** (n - 1))`` scaled by a random
    factor in ``[1 - jitter_ratio, 1 + jitter_ratio]`` and clamped to
    ``[0, cap]``.
    """

    base_seconds: float = 30.0
    factor: float = 2.0
    cap_seconds: float = 3600.0
    jitter_ratio: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            base_seconds=settings.backoff_base_seconds,
            factor=settings.backoff_factor,
            cap_seconds=settings.backoff_cap_seconds,
            jitter_ratio=settings.backoff_jitter_ratio,
        )

    def backoff(self, attempt: int, rng: random.Random | None = None) -> timedelta:
        exponent = max(0, attempt - 1)
        delay = min(self.cap_seconds, self.base_seconds * (self.factor ** exponent))
        if self.jitter_ratio > 0:
            source = rng or random
            delay *= 1 + source.uniform(-self.jitter_ratio, self.jitter_ratio)
        return timedelta(seconds=max(0.0, min(self.cap_seconds, delay)))

    def next_attempt_at(self, now: datetime, attempt: int, rng: random.Random | None = None) -> datetime:
        return now + self.backoff(attempt, rng)


@dataclass(slots=True)
class AuditPolicy:
    enabled_kinds: frozenset[str] = field(
        default_factory=lambda: frozenset({EntityKind.NOTIFICATION, EntityKind.CASE})
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> AuditPolicy:
        valid = {kind.value for kind in EntityKind}
        unknown = sorted(set(settings.audit_entity_kinds) - valid)
        if unknown:
            raise ConfigurationError(f"Unknown audit entity kinds: {unknown}")
        return cls(enabled_kinds=frozenset(settings.audit_entity_kinds))

    def is_enabled(self, entity_kind: str) -> bool:
        return entity_kind in self.enabled_kinds


@dataclass(slots=True)
class SlaPolicy:
    targets: dict[str, timedelta]

    @classmethod
    def from_settings(cls, settings: Settings) -> SlaPolicy:
        missing = sorted(p.value for p in Priority if p.value not in settings.sla_targets_minutes)
        if missing:
            raise ConfigurationError(f"No SLA target configured for priorities: {missing}")
        return cls(
            targets={
                priority: timedelta(minutes=minutes)
                for priority, minutes in settings.sla_targets_minutes.items()
            }
        )

    def target_for(self, priority: str) -> timedelta:
        try:
            return self.targets[priority]
        except KeyError:
            raise ConfigurationError(f"No SLA target configured for priority {priority!r}") from None
