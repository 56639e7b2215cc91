# tests/test_domain.py
"""Lead state machine, document mapping and timestamp handling"""
from datetime import datetime, timezone

import pytest

from leadflow.core.domain import (
    CallerContext,
    Closer,
    CloserStatus,
    DispatchType,
    Lead,
    LeadStatus,
    Role,
    can_transition,
    is_terminal,
    parse_ts,
)

from fakes import make_lead


class TestTransitions:
    @pytest.mark.parametrize("prior,new", [
        (LeadStatus.WAITING_ASSIGNMENT, LeadStatus.ACCEPTED),
        (LeadStatus.WAITING_ASSIGNMENT, LeadStatus.SCHEDULED),
        (LeadStatus.SCHEDULED, LeadStatus.WAITING_ASSIGNMENT),
        (LeadStatus.ACCEPTED, LeadStatus.IN_PROCESS),
        (LeadStatus.IN_PROCESS, LeadStatus.SOLD),
        (LeadStatus.IN_PROCESS, LeadStatus.RESCHEDULED),
        (LeadStatus.RESCHEDULED, LeadStatus.SCHEDULED),
    ])
    def test_allowed(self, prior, new):
        assert can_transition(prior, new)

    @pytest.mark.parametrize("prior,new", [
        (LeadStatus.ACCEPTED, LeadStatus.SOLD),
        (LeadStatus.WAITING_ASSIGNMENT, LeadStatus.IN_PROCESS),
        (LeadStatus.SOLD, LeadStatus.IN_PROCESS),
        (LeadStatus.EXPIRED, LeadStatus.SCHEDULED),
    ])
    def test_rejected(self, prior, new):
        assert not can_transition(prior, new)

    def test_same_status_is_always_allowed(self):
        assert can_transition(LeadStatus.SOLD, LeadStatus.SOLD)

    def test_waiting_assignment_override_from_any_open_state(self):
        assert can_transition(LeadStatus.IN_PROCESS, LeadStatus.WAITING_ASSIGNMENT)
        assert can_transition(LeadStatus.ACCEPTED, LeadStatus.WAITING_ASSIGNMENT)

    def test_nothing_leaves_a_terminal_state(self):
        assert not can_transition(LeadStatus.CANCELED, LeadStatus.WAITING_ASSIGNMENT)

    def test_terminal_set(self):
        assert is_terminal(LeadStatus.CREDIT_FAIL)
        assert not is_terminal(LeadStatus.RESCHEDULED)


class TestLeadLoad:
    def test_unverified_scheduled_lead_is_a_soft_hold(self):
        lead = make_lead(status=LeadStatus.SCHEDULED, setter_verified=False)
        assert not lead.counts_as_active
        assert not lead.is_assignable

    def test_verified_scheduled_lead_counts(self):
        lead = make_lead(status=LeadStatus.SCHEDULED, setter_verified=True)
        assert lead.counts_as_active
        assert lead.is_assignable

    @pytest.mark.parametrize("status,active", [
        (LeadStatus.WAITING_ASSIGNMENT, True),
        (LeadStatus.ACCEPTED, True),
        (LeadStatus.IN_PROCESS, True),
        (LeadStatus.RESCHEDULED, False),
        (LeadStatus.SOLD, False),
    ])
    def test_counts_as_active(self, status, active):
        assert make_lead(status=status).counts_as_active is active


class TestLeadDocument:
    def test_from_doc_parses_enums_and_timestamps(self):
        lead = Lead.from_doc({
            "id": "l1",
            "team_id": "t1",
            "status": "scheduled",
            "dispatch_type": "scheduled",
            "scheduled_appointment_time": "2025-03-10T16:00:00Z",
            "setter_verified": True,
        })
        assert lead.status is LeadStatus.SCHEDULED
        assert lead.dispatch_type is DispatchType.SCHEDULED
        assert lead.scheduled_appointment_time == datetime(2025, 3, 10, 16, 0, tzinfo=timezone.utc)

    def test_missing_dispatch_type_defaults_to_immediate(self):
        lead = Lead.from_doc({"id": "l1", "team_id": "t1", "status": "waiting_assignment"})
        assert lead.dispatch_type is DispatchType.IMMEDIATE
        assert lead.setter_verified is False

    def test_unknown_fields_survive_a_round_trip(self):
        doc = {
            "id": "l1",
            "team_id": "t1",
            "status": "waiting_assignment",
            "lead_source": "door_knock",
            "notes": ["gate code 1234"],
        }
        out = Lead.from_doc(doc).to_doc()
        assert out["lead_source"] == "door_knock"
        assert out["notes"] == ["gate code 1234"]
        assert out["status"] == "waiting_assignment"

    def test_unknown_status_is_rejected(self):
        with pytest.raises(ValueError):
            Lead.from_doc({"id": "l1", "team_id": "t1", "status": "lost"})


class TestCloserDocument:
    def test_defaults(self):
        closer = Closer.from_doc({"uid": "c1", "team_id": "t1"})
        assert closer.status is CloserStatus.OFF_DUTY
        assert closer.lineup_order == 0
        assert not closer.on_duty

    def test_round_trip(self):
        closer = Closer.from_doc({"uid": "c1", "team_id": "t1", "name": "Ann", "status": "On Duty", "lineup_order": 3000})
        doc = closer.to_doc()
        assert doc["status"] == "On Duty"
        assert doc["lineup_order"] == 3000
        assert closer.on_duty


class TestParseTs:
    def test_naive_datetime_is_utc(self):
        assert parse_ts(datetime(2025, 1, 1, 12, 0)).tzinfo == timezone.utc

    def test_epoch_seconds(self):
        assert parse_ts(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)

    def test_offset_is_normalized(self):
        assert parse_ts("2025-01-01T14:00:00+02:00") == datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_empty(self):
        assert parse_ts(None) is None
        assert parse_ts("") is None

    def test_unsupported_type(self):
        with pytest.raises(ValueError):
            parse_ts(["2025"])


def test_manager_and_admin_are_managers():
    assert CallerContext("u", Role.ADMIN).is_manager
    assert CallerContext("u", Role.MANAGER).is_manager
    assert not CallerContext("u", Role.CLOSER).is_manager
