"""Tests for app/escalation — case lifecycle, SLA sweep, sweep guard."""
from __future__ import annotations

import logging
from datetime import timedelta
from unittest import mock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.audit.audit_log import get_correlation_chain, get_entity_history
from app.core.clock import ensure_utc
from app.core.errors import ConfigurationError, InvalidTransition, NotFound
from app.core.policies import SlaPolicy
from app.core.settings import Settings
from app.db.models import Notification, SweepLease
from app.db.session import session_scope
from app.escalation.roster import EscalationRoster, Recipient
from app.escalation.tracker import EscalationTracker, SweepGuard

from conftest import DUTY_TIERS, NOW


@pytest.fixture()
def roster():
    return EscalationRoster.from_settings(Settings(escalation_tiers=DUTY_TIERS))


@pytest.fixture()
def tracker(db_session, roster):
    return EscalationTracker(db_session, sla_policy=SlaPolicy.from_settings(Settings()), roster=roster)


def _notifications(db_session) -> list[Notification]:
    return list(db_session.execute(select(Notification).order_by(Notification.id)).scalars().all())


# ===========================================================================
# Roster
# ===========================================================================

class TestRoster:
    def test_levels_map_to_tiers(self, roster):
        assert roster.recipient_for(1).name == "duty-supervisor"
        assert roster.recipient_for(2).name == "ward-office"

    def test_levels_beyond_last_tier_use_last(self, roster):
        assert roster.recipient_for(7).name == "ward-office"

    def test_level_zero_and_empty_roster(self, roster):
        assert roster.recipient_for(0) is None
        assert EscalationRoster().recipient_for(1) is None

    def test_invalid_tier_is_configuration_error(self):
        with pytest.raises(ConfigurationError, match="tier 1"):
            EscalationRoster.from_settings(Settings(escalation_tiers=[{"channel": "fax", "address": "x"}]))


# ===========================================================================
# Lifecycle
# ===========================================================================

class TestOpenCase:
    def test_open_sets_sla_from_priority(self, tracker, db_session):
        case = tracker.open_case("Street light out", "urgent", actor_id="clerk-1", now=NOW)

        assert case.status == "open"
        assert case.escalation_level == 0
        assert case.sla_target_minutes == 60
        assert case.resolved_at is None
        history = get_entity_history(db_session, "case", case.id)
        assert [e.action for e in history] == ["create"]
        assert history[0].actor_id == "clerk-1"

    def test_blank_subject_raises(self, tracker):
        with pytest.raises(ValueError, match="subject"):
            tracker.open_case("  ", now=NOW)

    def test_unknown_priority_raises(self, tracker):
        with pytest.raises(ValueError, match="Unknown priority"):
            tracker.open_case("Pothole", "critical", now=NOW)

    def test_get_unknown_case(self, tracker):
        with pytest.raises(NotFound):
            tracker.get("00000000-0000-0000-0000-000000000000")


class TestTransition:
    def test_forward_path_sets_resolved_at_once(self, tracker):
        case = tracker.open_case("Pothole", now=NOW)
        tracker.transition(case.id, "in_progress", now=NOW + timedelta(hours=1))
        tracker.transition(case.id, "pending", now=NOW + timedelta(hours=2))
        tracker.transition(case.id, "resolved", resolution_notes="Patched", now=NOW + timedelta(hours=3))
        tracker.transition(case.id, "closed", now=NOW + timedelta(hours=4))

        assert case.status == "closed"
        assert ensure_utc(case.resolved_at) == NOW + timedelta(hours=3)
        assert ensure_utc(case.closed_at) == NOW + timedelta(hours=4)
        assert case.resolution_notes == "Patched"

    def test_steps_may_be_skipped(self, tracker):
        case = tracker.open_case("Pothole", now=NOW)
        tracker.transition(case.id, "resolved", now=NOW + timedelta(hours=1))
        assert ensure_utc(case.resolved_at) == NOW + timedelta(hours=1)

    def test_administrative_close_leaves_resolved_at_unset(self, tracker):
        case = tracker.open_case("Duplicate report", now=NOW)
        tracker.close(case.id, reason="duplicate", now=NOW + timedelta(minutes=5))

        assert case.status == "closed"
        assert case.resolved_at is None
        assert ensure_utc(case.closed_at) == NOW + timedelta(minutes=5)

    @pytest.mark.parametrize(
        "path, target",
        [
            (["in_progress"], "open"),
            (["pending"], "in_progress"),
            (["resolved"], "pending"),
            (["resolved"], "in_progress"),
            (["closed"], "open"),
            (["closed"], "resolved"),
        ],
    )
    def test_backward_transitions_rejected(self, tracker, path, target):
        case = tracker.open_case("Pothole", now=NOW)
        for status in path:
            tracker.transition(case.id, status, now=NOW)
        with pytest.raises(InvalidTransition):
            tracker.transition(case.id, target, now=NOW)

    def test_transition_audit_records_change(self, tracker, db_session):
        case = tracker.open_case("Pothole", now=NOW)
        tracker.transition(case.id, "in_progress", actor_id="officer-2", correlation_id="req-5", now=NOW)

        entry = get_entity_history(db_session, "case", case.id)[-1]
        assert entry.changed_fields == ["status"]
        assert entry.actor_id == "officer-2"
        assert entry.correlation_id == "req-5"


class TestReopen:
    def test_reopen_creates_linked_case(self, tracker):
        original = tracker.open_case("Garbage not collected", "high", resident_ref="R-88", now=NOW)
        tracker.transition(original.id, "resolved", now=NOW + timedelta(hours=1))

        follow_up = tracker.reopen(original.id, reason="resident called back", now=NOW + timedelta(days=1))

        assert follow_up.id != original.id
        assert follow_up.reopened_from_id == original.id
        assert follow_up.status == "open"
        assert follow_up.resident_ref == "R-88"
        assert original.status == "resolved"
        assert ensure_utc(original.resolved_at) == NOW + timedelta(hours=1)

    def test_open_case_cannot_be_reopened(self, tracker):
        case = tracker.open_case("Pothole", now=NOW)
        with pytest.raises(InvalidTransition):
            tracker.reopen(case.id, now=NOW)


class TestAssignAndPriority:
    def test_assign_alerts_resolved_contact(self, db_session, roster):
        contacts = {"officer-2": Recipient("email", "officer2@example.org", "Officer Two")}
        tracker = EscalationTracker(
            db_session,
            sla_policy=SlaPolicy.from_settings(Settings()),
            roster=roster,
            contact_resolver=contacts.get,
        )
        case = tracker.open_case("Pothole", "high", now=NOW)
        tracker.assign(case.id, "officer-2", actor_id="lead-1", correlation_id="req-7", now=NOW)

        assert case.assignee_id == "officer-2"
        (alert,) = _notifications(db_session)
        assert alert.template_id == "case_assigned"
        assert alert.channel == "email"
        assert alert.variables["assignee_id"] == "officer-2"
        assert alert.correlation_id == "req-7"

    def test_each_case_assigned_to_one_officer_alerts(self, db_session, roster):
        contacts = {"officer-7": Recipient("sms", "+15550107777", "Officer Seven")}
        tracker = EscalationTracker(
            db_session,
            sla_policy=SlaPolicy.from_settings(Settings()),
            roster=roster,
            contact_resolver=contacts.get,
        )
        first = tracker.open_case("Pothole", now=NOW)
        second = tracker.open_case("Broken bench", now=NOW)
        tracker.assign(first.id, "officer-7", now=NOW)
        tracker.assign(second.id, "officer-7", now=NOW + timedelta(minutes=1))

        alerts = _notifications(db_session)
        assert sorted(a.variables["case_id"] for a in alerts) == sorted([str(first.id), str(second.id)])

    def test_reassigning_same_case_within_window_alerts_once(self, db_session, roster):
        contacts = {"officer-7": Recipient("sms", "+15550107777", "Officer Seven")}
        tracker = EscalationTracker(
            db_session,
            sla_policy=SlaPolicy.from_settings(Settings()),
            roster=roster,
            contact_resolver=contacts.get,
        )
        case = tracker.open_case("Pothole", now=NOW)
        tracker.assign(case.id, "officer-7", now=NOW)
        tracker.assign(case.id, "officer-7", now=NOW + timedelta(minutes=1))

        assert len(_notifications(db_session)) == 1

    def test_assign_without_resolver_sends_nothing(self, tracker, db_session):
        case = tracker.open_case("Pothole", now=NOW)
        tracker.assign(case.id, "officer-2", now=NOW)
        assert _notifications(db_session) == []

    def test_closed_case_cannot_be_assigned(self, tracker):
        case = tracker.open_case("Pothole", now=NOW)
        tracker.close(case.id, now=NOW)
        with pytest.raises(InvalidTransition):
            tracker.assign(case.id, "officer-2", now=NOW)

    def test_change_priority_updates_sla(self, tracker):
        case = tracker.open_case("Pothole", "low", now=NOW)
        tracker.change_priority(case.id, "high", now=NOW)
        assert case.priority == "high"
        assert case.sla_target_minutes == 240


# ===========================================================================
# SLA sweep
# ===========================================================================

class TestSweep:
    def test_breach_escalates_once_per_sla_period(self, tracker, db_session):
        case = tracker.open_case("Flooded underpass", "urgent", assignee_id="officer-2", now=NOW)

        assert tracker.sweep(NOW + timedelta(hours=2)) == [case.id]
        assert case.escalation_level == 1
        assert case.assignee_id is None
        assert case.escalated_to == "duty-supervisor"
        assert ensure_utc(case.escalated_at) == NOW + timedelta(hours=2)

        (alert,) = _notifications(db_session)
        assert alert.template_id == "case_escalated"
        assert alert.recipient_address == "+15550100100"
        assert alert.priority == "urgent"
        assert alert.idempotency_key == f"case-escalation:{case.id}:1"

        assert tracker.sweep(NOW + timedelta(hours=2)) == []
        assert tracker.sweep(NOW + timedelta(hours=2, minutes=59)) == []
        assert case.escalation_level == 1

        assert tracker.sweep(NOW + timedelta(hours=3, minutes=1)) == [case.id]
        assert case.escalation_level == 2
        assert _notifications(db_session)[-1].recipient_address == "ward-office@example.org"

    def test_status_change_restarts_clock(self, tracker):
        case = tracker.open_case("Flooded underpass", "urgent", now=NOW)
        tracker.transition(case.id, "in_progress", now=NOW + timedelta(minutes=50))

        assert tracker.sweep(NOW + timedelta(minutes=90)) == []
        assert tracker.sweep(NOW + timedelta(minutes=111)) == [case.id]

    def test_only_open_and_in_progress_escalate(self, tracker):
        waiting = tracker.open_case("Awaiting resident", "urgent", now=NOW)
        tracker.transition(waiting.id, "pending", now=NOW)
        resolved = tracker.open_case("Fixed", "urgent", now=NOW)
        tracker.transition(resolved.id, "resolved", now=NOW)

        assert tracker.sweep(NOW + timedelta(days=2)) == []
        assert waiting.escalation_level == 0
        assert resolved.escalation_level == 0

    def test_exactly_at_target_is_not_a_breach(self, tracker):
        case = tracker.open_case("Pothole", "urgent", now=NOW)
        assert not tracker.is_breached(case, NOW + timedelta(hours=1))
        assert tracker.is_breached(case, NOW + timedelta(hours=1, seconds=1))

    def test_level_never_decreases(self, tracker):
        case = tracker.open_case("Pothole", "urgent", now=NOW)
        levels = []
        for hours in (0, 2, 2, 3, 5, 5, 30):
            tracker.sweep(NOW + timedelta(hours=hours))
            levels.append(case.escalation_level)
        assert levels == sorted(levels)
        assert levels == [0, 1, 1, 1, 2, 2, 3]

    def test_escalation_audit_and_alert_share_correlation(self, tracker, db_session):
        case = tracker.open_case("Pothole", "urgent", now=NOW)
        tracker.sweep(NOW + timedelta(hours=2))

        chain = get_correlation_chain(db_session, f"case-escalation:{case.id}:1")
        assert [(e.entity_kind, e.action) for e in chain] == [("case", "update"), ("notification", "create")]
        assert chain[0].reason == "SLA target exceeded"
        assert set(chain[0].changed_fields) == {"escalation_level"}
        assert chain[1].parent_id == chain[0].id

    def test_enqueue_failure_keeps_escalation(self, tracker, db_session, caplog):
        case = tracker.open_case("Pothole", "urgent", now=NOW)
        failure = OperationalError("INSERT INTO notifications", {}, Exception("database is locked"))

        with caplog.at_level(logging.WARNING, logger="app.escalation.tracker"):
            with mock.patch.object(tracker.queue, "enqueue", side_effect=failure):
                assert tracker.sweep(NOW + timedelta(hours=2)) == [case.id]
        db_session.commit()

        assert case.escalation_level == 1
        assert _notifications(db_session) == []
        assert "could not be enqueued" in caplog.text

    def test_no_tier_escalates_without_alert(self, db_session):
        tracker = EscalationTracker(db_session, sla_policy=SlaPolicy.from_settings(Settings()))
        case = tracker.open_case("Pothole", "urgent", now=NOW)

        tracker.sweep(NOW + timedelta(hours=2))
        assert case.escalation_level == 1
        assert case.escalated_to is None
        assert _notifications(db_session) == []

    def test_manual_escalation(self, tracker):
        case = tracker.open_case("Pothole", "low", now=NOW)
        tracker.transition(case.id, "pending", now=NOW)
        tracker.escalate(case.id, "councillor request", actor_id="lead-1", now=NOW)

        assert case.escalation_level == 1
        assert case.escalation_reason == "councillor request"

    def test_resolved_case_cannot_be_escalated(self, tracker):
        case = tracker.open_case("Pothole", now=NOW)
        tracker.transition(case.id, "resolved", now=NOW)
        with pytest.raises(InvalidTransition):
            tracker.escalate(case.id, "late", now=NOW)


class TestQueries:
    def test_overdue(self, tracker):
        late = tracker.open_case("Pothole", "urgent", now=NOW)
        tracker.open_case("Graffiti", "low", now=NOW)

        assert [c.id for c in tracker.overdue(NOW + timedelta(hours=2))] == [late.id]

    def test_days_open(self, tracker):
        case = tracker.open_case("Pothole", now=NOW)
        assert tracker.days_open(case, NOW + timedelta(days=3, hours=5)) == 3

        tracker.transition(case.id, "resolved", now=NOW + timedelta(days=1))
        assert tracker.days_open(case, NOW + timedelta(days=10)) == 1

    def test_find_by_status_and_assignee(self, tracker):
        tracker.open_case("A", assignee_id="officer-2", now=NOW)
        b = tracker.open_case("B", now=NOW)
        tracker.transition(b.id, "in_progress", now=NOW)

        assert len(tracker.find(assignee_id="officer-2")) == 1
        assert [c.id for c in tracker.find(status="in_progress")] == [b.id]


# ===========================================================================
# SweepGuard
# ===========================================================================

class TestSweepGuard:
    def test_second_holder_in_process_is_refused(self, session_factory):
        first = SweepGuard(session_factory, holder="a", name="test-sweep")
        second = SweepGuard(session_factory, holder="b", name="test-sweep")

        assert first.acquire(NOW)
        try:
            assert not second.acquire(NOW)
        finally:
            first.release()
        assert second.acquire(NOW)
        second.release()

    def test_lease_held_by_other_process(self, session_factory):
        with session_scope(session_factory) as db:
            db.add(SweepLease(name="lease-sweep", holder="other-host", expires_at=NOW + timedelta(minutes=5)))

        guard = SweepGuard(session_factory, holder="me", name="lease-sweep")
        assert not guard.acquire(NOW)
        assert guard.acquire(NOW + timedelta(minutes=6))
        guard.release()

    def test_hold_releases_lease(self, session_factory):
        guard = SweepGuard(session_factory, holder="me", name="hold-sweep")
        with guard.hold(NOW) as acquired:
            assert acquired
        with session_scope(session_factory) as db:
            lease = db.get(SweepLease, "hold-sweep")
            assert lease.holder is None
