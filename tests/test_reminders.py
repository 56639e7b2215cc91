# tests/test_reminders.py
from datetime import timedelta

import pytest

from leadflow.core.dispatch.reminders import (
    PROMOTION_REASON,
    ReminderScheduler,
    ReminderSweeper,
    ScheduledLeadPromoter,
)
from leadflow.core.domain import DispatchType, LeadStatus, ReminderTask
from leadflow.infra.metrics import get_metrics_collector

from fakes import NOW, TEAM, FailingNotifier, make_lead

APPOINTMENT = NOW + timedelta(hours=2)


def scheduled_lead(lead_id="lead-1", *, appointment=APPOINTMENT, **kwargs):
    kwargs.setdefault("status", LeadStatus.SCHEDULED)
    kwargs.setdefault("assigned_closer_id", "ann")
    return make_lead(
        lead_id,
        dispatch_type=DispatchType.SCHEDULED,
        scheduled_appointment_time=appointment,
        **kwargs,
    )


def due_task(lead_id="lead-1", *, closer="ann", appointment=APPOINTMENT):
    return ReminderTask(
        lead_id=lead_id,
        assigned_closer_id=closer,
        appointment_time=appointment,
        reminder_time=NOW - timedelta(minutes=1),
        customer_name="Jane Customer",
    )


# =============================================================================
# Scheduling
# =============================================================================

class TestReminderScheduler:
    @pytest.mark.asyncio
    async def test_new_appointment_gets_reminder(self, repo):
        lead = scheduled_lead()

        task = await ReminderScheduler(repo).on_lead_updated(None, lead, now=NOW)

        assert task.id == "rem-1"
        assert task.reminder_time == APPOINTMENT - timedelta(minutes=30)
        assert task.assigned_closer_id == "ann"
        assert list(repo.reminders) == ["rem-1"]
        assert get_metrics_collector().get_counter("reminders_scheduled_total") == 1

    @pytest.mark.asyncio
    async def test_unchanged_appointment_is_ignored(self, repo):
        lead = scheduled_lead()
        assert await ReminderScheduler(repo).on_lead_updated(lead, lead, now=NOW) is None
        assert repo.reminders == {}

    @pytest.mark.asyncio
    async def test_unassigned_lead_is_ignored(self, repo):
        lead = scheduled_lead(assigned_closer_id=None)
        assert await ReminderScheduler(repo).on_lead_updated(None, lead, now=NOW) is None

    @pytest.mark.asyncio
    async def test_reminder_time_already_passed(self, repo):
        lead = scheduled_lead(appointment=NOW + timedelta(minutes=20))
        assert await ReminderScheduler(repo).on_lead_updated(None, lead, now=NOW) is None
        assert repo.reminders == {}

    @pytest.mark.asyncio
    async def test_moved_appointment_supersedes_old_reminder(self, repo):
        scheduler = ReminderScheduler(repo)
        first = scheduled_lead()
        moved = scheduled_lead(appointment=APPOINTMENT + timedelta(hours=1))

        await scheduler.on_lead_updated(None, first, now=NOW)
        await scheduler.on_lead_updated(first, moved, now=NOW)

        assert repo.reminders["rem-1"].superseded is True
        assert repo.reminders["rem-2"].processed is False
        assert repo.reminders["rem-2"].appointment_time == APPOINTMENT + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_keep_old_reminders_when_not_superseding(self, repo):
        scheduler = ReminderScheduler(repo, supersede_stale=False)
        first = scheduled_lead()
        moved = scheduled_lead(appointment=APPOINTMENT + timedelta(hours=1))

        await scheduler.on_lead_updated(None, first, now=NOW)
        await scheduler.on_lead_updated(first, moved, now=NOW)

        assert not repo.reminders["rem-1"].processed


# =============================================================================
# Sweeping
# =============================================================================

class TestReminderSweeper:
    @pytest.mark.asyncio
    async def test_due_reminder_is_sent_once(self, repo, notifier):
        repo.add_lead(scheduled_lead())
        await repo.add_reminder(due_task())
        sweeper = ReminderSweeper(repo, notifier)

        result = await sweeper.sweep(NOW)
        again = await sweeper.sweep(NOW)

        assert (result.due, result.sent) == (1, 1)
        assert again.due == 0
        assert notifier.kinds == ["appointment_reminder"]
        assert notifier.sent[0][0] == ["ann"]
        assert notifier.sent[0][1].body == "Appointment with Jane Customer at 17:00 UTC"
        assert repo.reminders["rem-1"].processed

    @pytest.mark.asyncio
    async def test_future_reminder_is_not_due(self, repo, notifier):
        repo.add_lead(scheduled_lead())
        task = due_task()
        task.reminder_time = NOW + timedelta(minutes=5)
        await repo.add_reminder(task)

        result = await ReminderSweeper(repo, notifier).sweep(NOW)

        assert result.due == 0
        assert notifier.sent == []

    @pytest.mark.parametrize("lead_kwargs", [
        {"status": LeadStatus.CANCELED},
        {"assigned_closer_id": "bob"},
        {"appointment": APPOINTMENT + timedelta(hours=1)},
    ])
    @pytest.mark.asyncio
    async def test_stale_reminder_is_skipped(self, repo, notifier, lead_kwargs):
        repo.add_lead(scheduled_lead(**lead_kwargs))
        await repo.add_reminder(due_task())

        result = await ReminderSweeper(repo, notifier).sweep(NOW)

        assert result.skipped == 1
        assert notifier.sent == []
        assert repo.reminders["rem-1"].superseded

    @pytest.mark.asyncio
    async def test_stale_reminder_sent_when_skipping_disabled(self, repo, notifier):
        repo.add_lead(scheduled_lead(status=LeadStatus.CANCELED))
        await repo.add_reminder(due_task())

        result = await ReminderSweeper(repo, notifier, skip_stale=False).sweep(NOW)

        assert result.sent == 1
        assert notifier.kinds == ["appointment_reminder"]

    @pytest.mark.asyncio
    async def test_failed_push_still_marks_processed(self, repo):
        repo.add_lead(scheduled_lead())
        await repo.add_reminder(due_task())

        result = await ReminderSweeper(repo, FailingNotifier()).sweep(NOW)

        assert result.failed == 1
        assert repo.reminders["rem-1"].processed
        assert get_metrics_collector().get_counter("reminders_fired_total", status="failed") == 1

    @pytest.mark.asyncio
    async def test_storage_error_is_recorded_and_sweep_continues(self, repo, notifier):
        repo.add_lead(scheduled_lead())
        repo.add_lead(scheduled_lead("lead-2"))
        await repo.add_reminder(due_task())
        await repo.add_reminder(due_task("lead-2"))
        repo.fail_on.add("mark_reminder_processed")

        result = await ReminderSweeper(repo, notifier).sweep(NOW)

        assert result.errors == 2
        assert [e.function for e in repo.errors] == ["processAppointmentReminders"] * 2
        assert {e.entity_id for e in repo.errors} == {"rem-1", "rem-2"}


# =============================================================================
# Promotion
# =============================================================================

class TestScheduledLeadPromoter:
    @pytest.mark.asyncio
    async def test_verified_lead_inside_window_is_promoted(self, repo):
        repo.add_lead(scheduled_lead("soon", appointment=NOW + timedelta(minutes=30), setter_verified=True))
        repo.add_lead(scheduled_lead("edge", appointment=NOW + timedelta(minutes=45), setter_verified=True))

        promoted = await ScheduledLeadPromoter(repo).run(NOW)

        assert sorted(promoted) == ["edge", "soon"]
        soon = repo.leads["soon"]
        assert soon["status"] == "waiting_assignment"
        assert soon["transition_reason"] == PROMOTION_REASON
        assert soon["transitioned_to_waiting_at"] == NOW.isoformat()

        assert repo.activity_types() == ["scheduled_lead_transition"]
        assert repo.activities[0].metadata["count"] == 2
        assert repo.activities[0].team_id == TEAM

    @pytest.mark.parametrize("lead_kwargs", [
        {"setter_verified": False, "appointment": NOW + timedelta(minutes=30)},
        {"setter_verified": True, "appointment": NOW + timedelta(minutes=46)},
        {"setter_verified": True, "appointment": NOW - timedelta(minutes=5)},
        {"setter_verified": True, "appointment": NOW + timedelta(minutes=30), "status": LeadStatus.ACCEPTED},
    ])
    @pytest.mark.asyncio
    async def test_lead_outside_rule_is_left_alone(self, repo, lead_kwargs):
        repo.add_lead(scheduled_lead(**lead_kwargs))

        assert await ScheduledLeadPromoter(repo).run(NOW) == []
        assert repo.activities == []

    @pytest.mark.asyncio
    async def test_one_activity_per_team(self, repo):
        repo.add_lead(scheduled_lead("a", appointment=NOW + timedelta(minutes=10), setter_verified=True))
        repo.add_lead(scheduled_lead("b", team_id="team-2", appointment=NOW + timedelta(minutes=10), setter_verified=True))

        await ScheduledLeadPromoter(repo).run(NOW)

        assert sorted(a.team_id for a in repo.activities) == [TEAM, "team-2"]

    @pytest.mark.asyncio
    async def test_failed_update_is_recorded(self, repo):
        repo.add_lead(scheduled_lead(appointment=NOW + timedelta(minutes=10), setter_verified=True))
        repo.fail_on.add("update_lead")

        assert await ScheduledLeadPromoter(repo).run(NOW) == []
        assert repo.errors[0].function == "processScheduledLeadTransitions"
        assert repo.errors[0].entity_id == "lead-1"
