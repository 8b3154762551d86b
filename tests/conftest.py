from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.audit.audit_log import audit_gaps
from app.core.settings import Settings, get_settings
from app.db import models  # noqa: F401
from app.db.base import Base
from app.db.session import create_db_engine
from app.notification.providers import DeliveryResult, StringTemplateRenderer

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

TEMPLATES = {
    "welcome": "Hello $name",
    "case_escalated": "Case $case_id escalated to level $escalation_level: $reason",
    "case_assigned": "Case $case_id is now assigned to $assignee_id",
}

DUTY_TIERS = [
    {"channel": "sms", "address": "+15550100100", "name": "duty-supervisor"},
    {"channel": "email", "address": "ward-office@example.org", "name": "ward-office"},
]


class FakeProvider:
    """Scripted provider: returns (or raises) each outcome in turn, repeating the last."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [DeliveryResult.success("trk-1")]
        self.calls: list[tuple[str, str]] = []

    def send(self, address: str, message: str) -> DeliveryResult:
        self.calls.append((address, message))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture()
def engine():
    engine = create_db_engine("sqlite+pysqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db_session(session_factory):
    with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Settings and collaborators
# ---------------------------------------------------------------------------

@pytest.fixture()
def settings():
    get_settings.cache_clear()
    yield Settings(
        database_url="sqlite+pysqlite:///:memory:",
        backoff_jitter_ratio=0.0,
        provider_timeout_seconds=2.0,
        worker_poll_interval_seconds=0.01,
        escalation_sweep_interval_seconds=60.0,
        escalation_tiers=DUTY_TIERS,
    )
    get_settings.cache_clear()


@pytest.fixture()
def renderer():
    return StringTemplateRenderer(TEMPLATES)


@pytest.fixture(autouse=True)
def _reset_audit_gaps():
    audit_gaps.reset()
    yield
    audit_gaps.reset()
