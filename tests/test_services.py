"""Tests for app/services.py — the caller-facing Engine."""
from __future__ import annotations

import random
from datetime import timedelta

import pytest
from pydantic import ValidationError

from app.audit.audit_log import audit_gaps
from app.core.errors import ConfigurationError, InvalidTransition, NotFound
from app.db.models import Notification
from app.db.session import session_scope
from app.notification.providers import DeliveryResult, ProviderRegistry
from app.notification.queue import NotificationQueue
from app.services import Engine

from conftest import NOW, FakeProvider


@pytest.fixture()
def sms():
    return FakeProvider(DeliveryResult.success("SM-1"))


@pytest.fixture()
def mail():
    return FakeProvider(DeliveryResult.success("EM-1"))


@pytest.fixture()
def engine_(session_factory, settings, renderer, sms, mail):
    engine = Engine(
        ProviderRegistry({"sms": sms, "email": mail}),
        renderer,
        session_factory=session_factory,
        settings=settings,
        rng=random.Random(0),
    )
    yield engine
    engine.shutdown()


def _sms_body(**overrides) -> dict:
    body = {
        "channel": "sms",
        "recipient_address": "+15550001111",
        "template_id": "welcome",
        "variables": {"name": "Ada"},
    }
    body.update(overrides)
    return body


# ===========================================================================
# startup
# ===========================================================================

class TestStartup:
    def test_missing_renderer(self, session_factory, settings):
        engine = Engine(ProviderRegistry({"sms": FakeProvider()}), None, session_factory=session_factory, settings=settings)
        with pytest.raises(ConfigurationError, match="renderer"):
            engine.startup()

    def test_no_providers(self, session_factory, settings, renderer):
        engine = Engine(ProviderRegistry(), renderer, session_factory=session_factory, settings=settings)
        with pytest.raises(ConfigurationError, match="No delivery providers"):
            engine.startup()

    def test_escalation_tier_channel_needs_provider(self, session_factory, settings, renderer):
        engine = Engine(
            ProviderRegistry({"email": FakeProvider()}), renderer, session_factory=session_factory, settings=settings
        )
        with pytest.raises(ConfigurationError, match="sms"):
            engine.startup()

    def test_queued_channel_needs_provider(self, session_factory, settings, renderer):
        no_tiers = settings.model_copy(update={"escalation_tiers": []})
        with session_scope(session_factory) as db:
            NotificationQueue(db).enqueue(
                Notification(channel="push", recipient_address="device-1", template_id="welcome"), now=NOW
            )
        engine = Engine(
            ProviderRegistry({"sms": FakeProvider()}), renderer, session_factory=session_factory, settings=no_tiers
        )
        with pytest.raises(ConfigurationError, match="push"):
            engine.startup()

    def test_recovers_stranded_items(self, engine_, session_factory):
        created = engine_.create_notification(_sms_body(), now=NOW)
        with session_scope(session_factory) as db:
            NotificationQueue(db).dequeue_due(10, NOW)

        assert engine_.startup(NOW + timedelta(minutes=1)) == 1
        assert engine_.get_notification(created["id"])["status"] == "retry_pending"


# ===========================================================================
# Notifications
# ===========================================================================

class TestNotifications:
    def test_create_returns_view(self, engine_):
        view = engine_.create_notification(_sms_body(priority="high", batch_id="ward-4"), actor_id="clerk-1", now=NOW)
        assert view["status"] == "pending"
        assert view["priority"] == "high"
        assert view["batch_id"] == "ward-4"
        assert view["created_at"] == NOW.isoformat()

    def test_create_validates_body(self, engine_):
        with pytest.raises(ValidationError):
            engine_.create_notification(_sms_body(channel="fax"))
        with pytest.raises(ValidationError):
            engine_.create_notification(
                _sms_body(scheduled_for=NOW.isoformat(), expires_at=(NOW - timedelta(hours=1)).isoformat())
            )

    def test_duplicate_create_returns_same_notification(self, engine_):
        first = engine_.create_notification(_sms_body(batch_id="b-1"), now=NOW)
        second = engine_.create_notification(_sms_body(batch_id="b-1"), now=NOW + timedelta(seconds=10))
        assert first["id"] == second["id"]
        assert len(engine_.find_notifications(batch_id="b-1")) == 1

    def test_delivery_and_audit_trail(self, engine_, sms):
        view = engine_.create_notification(_sms_body(), now=NOW)
        report = engine_.run_delivery_batch(NOW)

        assert report.delivered == 1
        assert sms.calls == [("+15550001111", "Hello Ada")]
        assert engine_.get_notification(view["id"])["status"] == "delivered"

        history = engine_.entity_history("notification", view["id"])
        assert [e["changed_fields"] for e in history[1:]] == [
            ["attempt_count", "status"],
            ["provider_tracking_id", "status"],
        ]
        assert [e["new_state"]["status"] for e in history] == ["pending", "sending", "delivered"]

    def test_read_receipt_by_tracking_id(self, engine_):
        view = engine_.create_notification(_sms_body(), now=NOW)
        engine_.run_delivery_batch(NOW)

        read = engine_.mark_notification_read(provider_tracking_id="SM-1", now=NOW + timedelta(minutes=2))
        assert read["id"] == view["id"]
        assert read["status"] == "read"

    def test_read_needs_exactly_one_key(self, engine_):
        with pytest.raises(ValueError):
            engine_.mark_notification_read()
        with pytest.raises(ValueError):
            engine_.mark_notification_read(1, provider_tracking_id="SM-1")

    def test_unknown_notification(self, engine_):
        with pytest.raises(NotFound):
            engine_.get_notification(404)

    def test_delivery_stats(self, engine_):
        engine_.create_notification(_sms_body(batch_id="ward-4"), now=NOW)
        engine_.create_notification(
            _sms_body(channel="email", recipient_address="a@example.org", batch_id="ward-4"), now=NOW
        )
        engine_.create_notification(_sms_body(recipient_address="+15550002222"), now=NOW)
        engine_.run_delivery_batch(NOW)

        stats = engine_.delivery_stats(batch_id="ward-4")
        assert stats["by_status"] == {"delivered": 2}
        assert stats["by_channel"] == {"sms": 1, "email": 1}


# ===========================================================================
# Cases
# ===========================================================================

class TestCases:
    def test_open_and_get(self, engine_):
        view = engine_.open_case({"subject": "Broken water main", "priority": "urgent"}, actor_id="clerk-1", now=NOW)
        fetched = engine_.get_case(view["id"])

        assert fetched["status"] == "open"
        assert fetched["sla_target_minutes"] == 60
        assert "days_open" in fetched
        assert "sla_breached" in fetched

    def test_update_shares_one_correlation_id(self, engine_):
        view = engine_.open_case({"subject": "Broken water main"}, now=NOW)
        updated = engine_.update_case(
            view["id"],
            {"status": "in_progress", "assignee_id": "officer-2", "priority": "high"},
            actor_id="lead-1",
            now=NOW + timedelta(minutes=5),
        )

        assert updated["status"] == "in_progress"
        assert updated["assignee_id"] == "officer-2"
        assert updated["priority"] == "high"

        history = engine_.entity_history("case", view["id"])
        updates = [e for e in history if e["action"] == "update"]
        assert len(updates) == 3
        assert len({e["correlation_id"] for e in updates}) == 1
        assert len(engine_.correlation_chain(updates[0]["correlation_id"])) == 3

    def test_update_rejects_backward_status(self, engine_):
        view = engine_.open_case({"subject": "Broken water main"}, now=NOW)
        engine_.update_case(view["id"], {"status": "resolved"}, now=NOW)
        with pytest.raises(InvalidTransition):
            engine_.update_case(view["id"], {"status": "open"}, now=NOW)
        assert engine_.get_case(view["id"])["status"] == "resolved"

    def test_reopen(self, engine_):
        view = engine_.open_case({"subject": "Broken water main"}, now=NOW)
        engine_.update_case(view["id"], {"status": "closed"}, now=NOW)
        reopened = engine_.reopen_case(view["id"], reason="leak returned", now=NOW + timedelta(days=2))
        assert reopened["reopened_from_id"] == view["id"]

    def test_sweep_then_deliver_escalation_alert(self, engine_, sms):
        view = engine_.open_case({"subject": "Broken water main", "priority": "urgent"}, now=NOW)

        escalated = engine_.run_escalation_sweep(NOW + timedelta(hours=2))
        assert escalated == [view["id"]]
        assert engine_.get_case(view["id"])["escalation_level"] == 1
        assert engine_.run_escalation_sweep(NOW + timedelta(hours=2)) == []

        engine_.run_delivery_batch(NOW + timedelta(hours=2))
        address, message = sms.calls[-1]
        assert address == "+15550100100"
        assert message == f"Case {view['id']} escalated to level 1: SLA target exceeded"

    def test_sweep_skipped_while_guard_is_held(self, engine_):
        engine_.open_case({"subject": "Broken water main", "priority": "urgent"}, now=NOW)
        with engine_.sweep_guard.hold(NOW) as acquired:
            assert acquired
            assert engine_.run_escalation_sweep(NOW + timedelta(hours=2)) == []

    def test_overdue_cases(self, engine_):
        view = engine_.open_case({"subject": "Broken water main", "priority": "urgent"}, now=NOW)
        engine_.open_case({"subject": "Graffiti", "priority": "low"}, now=NOW)
        assert [c["id"] for c in engine_.overdue_cases(NOW + timedelta(hours=2))] == [view["id"]]


# ===========================================================================
# Audit queries and metrics
# ===========================================================================

class TestAuditAndMetrics:
    def test_search_audit_by_actor(self, engine_):
        engine_.open_case({"subject": "Broken water main"}, actor_id="clerk-1", now=NOW)
        engine_.create_notification(_sms_body(), actor_id="clerk-2", now=NOW)

        entries = engine_.search_audit(actor_id="clerk-1")
        assert [e["entity_kind"] for e in entries] == ["case"]

    def test_metrics_report_audit_gaps(self, engine_):
        engine_.create_notification(_sms_body(), now=NOW)
        audit_gaps.increment()

        metrics = engine_.metrics()
        assert metrics["audit_gaps"] == 1
        assert metrics["notifications_by_status"] == {"pending": 1}
