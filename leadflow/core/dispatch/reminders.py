# leadflow/core/dispatch/reminders.py
"""
Time-driven dispatch work.

- ``ReminderScheduler``: persists a reminder task when a lead's appointment
  time is set or moved.
- ``ReminderSweeper``: fires due reminders (tick ``reminder_sweep``).
- ``ScheduledLeadPromoter``: moves verified scheduled leads into the
  assignment queue shortly before the appointment (tick
  ``scheduled_transitions``).
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from leadflow.core.dispatch import notifications
from leadflow.core.dispatch.assignment import send_best_effort
from leadflow.core.domain import (
    ActivityLogEntry,
    FunctionError,
    Lead,
    LeadStatus,
    ReminderTask,
    is_terminal,
    utcnow,
)
from leadflow.core.ports import AsyncDispatchRepository, Notifier
from leadflow.infra.logging_config import LogContext, get_logger
from leadflow.infra.metrics import DispatchMetrics, observe_histogram

logger = get_logger(__name__)

PROMOTION_REASON = "45_minute_rule"


class ReminderScheduler:
    def __init__(
        self,
        repo: AsyncDispatchRepository,
        *,
        lead_minutes: int = 30,
        supersede_stale: bool = True,
    ):
        self._repo = repo
        self._lead_time = timedelta(minutes=lead_minutes)
        self._supersede = supersede_stale

    async def on_lead_updated(
        self,
        before: Optional[Lead],
        after: Lead,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[ReminderTask]:
        """Schedule a reminder if the appointment time was set or changed."""
        appointment = after.scheduled_appointment_time
        if appointment is None or not after.assigned_closer_id:
            return None
        if before is not None and before.scheduled_appointment_time == appointment:
            return None

        ctx = LogContext(logger, team_id=after.team_id, lead_id=after.id, closer_id=after.assigned_closer_id)
        reminder_time = appointment - self._lead_time
        if reminder_time <= (now or utcnow()):
            ctx.info(f"Reminder time {reminder_time.isoformat()} already passed, not scheduling")
            return None

        if self._supersede:
            retired = await self._repo.supersede_reminders(after.id)
            if retired:
                ctx.info(f"Superseded {retired} earlier reminder(s)")

        task = ReminderTask(
            lead_id=after.id,
            assigned_closer_id=after.assigned_closer_id,
            appointment_time=appointment,
            reminder_time=reminder_time,
            customer_name=after.customer_name,
            address=after.address,
        )
        task.id = await self._repo.add_reminder(task)
        DispatchMetrics.reminder_scheduled()
        ctx.info(f"Reminder scheduled for {reminder_time.isoformat()}")
        return task


@dataclass
class SweepResult:
    due: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0


class ReminderSweeper:
    """
    Fires due reminder tasks.

    A task is marked processed even when its push fails: each reminder
    gets at most one delivery attempt.
    """

    def __init__(
        self,
        repo: AsyncDispatchRepository,
        notifier: Notifier,
        *,
        batch_size: int = 50,
        skip_stale: bool = True,
    ):
        self._repo = repo
        self._notifier = notifier
        self._batch_size = batch_size
        self._skip_stale = skip_stale

    async def _is_stale(self, task: ReminderTask) -> bool:
        lead = await self._repo.get_lead(task.lead_id)
        if lead is None or is_terminal(lead.status):
            return True
        if lead.assigned_closer_id != task.assigned_closer_id:
            return True
        return lead.scheduled_appointment_time != task.appointment_time

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        tasks = await self._repo.due_reminders(now or utcnow(), self._batch_size)
        result = SweepResult(due=len(tasks))

        for task in tasks:
            try:
                if self._skip_stale and await self._is_stale(task):
                    await self._repo.mark_reminder_processed(task.id, superseded=True)
                    DispatchMetrics.reminder_fired("skipped")
                    result.skipped += 1
                    continue

                push = notifications.appointment_reminder(task.lead_id, task.customer_name, task.appointment_time)
                delivered = await send_best_effort(self._notifier, [task.assigned_closer_id], push)
                await self._repo.mark_reminder_processed(task.id)
            except Exception as exc:
                logger.error(f"Reminder {task.id} for lead {task.lead_id} failed: {exc}", exc_info=True)
                result.errors += 1
                await self._repo.record_error(FunctionError(
                    function="processAppointmentReminders",
                    entity_id=task.id or task.lead_id,
                    message=str(exc),
                ))
                continue

            if delivered:
                result.sent += 1
                DispatchMetrics.reminder_fired("sent")
            else:
                result.failed += 1
                DispatchMetrics.reminder_fired("failed")

        observe_histogram("reminder_sweep_size", result.due)
        if result.due:
            logger.info(
                f"Reminder sweep: due={result.due} sent={result.sent} failed={result.failed} "
                f"skipped={result.skipped} errors={result.errors}"
            )
        return result


class ScheduledLeadPromoter:
    """Moves verified scheduled leads to waiting_assignment near the appointment."""

    def __init__(
        self,
        repo: AsyncDispatchRepository,
        *,
        window_minutes: int = 45,
        batch_size: int = 100,
    ):
        self._repo = repo
        self._window = timedelta(minutes=window_minutes)
        self._batch_size = batch_size

    async def run(self, now: Optional[datetime] = None) -> list[str]:
        """Returns the ids of the promoted leads."""
        now = now or utcnow()
        leads = await self._repo.due_scheduled_leads(now, now + self._window, self._batch_size)

        promoted: dict[str, list[str]] = defaultdict(list)
        for lead in leads:
            appointment = lead.scheduled_appointment_time
            # The query already filters; re-check against partially indexed stores
            if not lead.setter_verified or appointment is None or not (now < appointment <= now + self._window):
                continue
            if lead.status not in (LeadStatus.SCHEDULED, LeadStatus.RESCHEDULED):
                continue

            minutes_left = int((appointment - now).total_seconds() // 60)
            try:
                await self._repo.update_lead(lead.id, {
                    "status": LeadStatus.WAITING_ASSIGNMENT.value,
                    "updated_at": now.isoformat(),
                    "transitioned_to_waiting_at": now.isoformat(),
                    "transition_reason": PROMOTION_REASON,
                })
            except Exception as exc:
                logger.error(f"Promotion of lead {lead.id} failed: {exc}", extra={"lead_id": lead.id})
                await self._repo.record_error(FunctionError(
                    function="processScheduledLeadTransitions",
                    entity_id=lead.id,
                    message=str(exc),
                ))
                continue

            LogContext(logger, team_id=lead.team_id, lead_id=lead.id).info(
                f"Promoted to waiting_assignment, {minutes_left} min before appointment"
            )
            promoted[lead.team_id].append(lead.id)

        for team_id, lead_ids in promoted.items():
            await self._repo.append_activity(ActivityLogEntry(
                type="scheduled_lead_transition",
                team_id=team_id,
                timestamp=now,
                metadata={
                    "count": len(lead_ids),
                    "lead_ids": lead_ids,
                    "reason": PROMOTION_REASON,
                    "description": f"Automatically moved {len(lead_ids)} verified scheduled leads to waiting assignment",
                },
            ))

        return [lead_id for ids in promoted.values() for lead_id in ids]
