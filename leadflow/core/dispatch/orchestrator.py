# leadflow/core/dispatch/orchestrator.py
"""
Dispatch Orchestrator.

Entry point for every trigger (lead created/updated, closer updated,
periodic ticks). Reactions never raise: failures are logged, written to
the ``function_errors`` sink and reported in the returned
``ReactionResult``, so the trigger layer can always acknowledge.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from leadflow.core.dispatch import notifications
from leadflow.core.dispatch.assignment import AssignmentExecutor, send_best_effort
from leadflow.core.dispatch.reminders import ReminderScheduler, ReminderSweeper, ScheduledLeadPromoter
from leadflow.core.dispatch.rotation import RotationManager
from leadflow.core.dispatch.selector import CloserSelector
from leadflow.core.domain import (
    Alert,
    Closer,
    CloserStatus,
    FunctionError,
    Lead,
    LeadStatus,
    can_transition,
    is_terminal,
    utcnow,
)
from leadflow.core.errors import AssignmentConflictError
from leadflow.core.ports import AsyncDispatchRepository, Notifier
from leadflow.infra.logging_config import LogContext, get_logger, mask_phone
from leadflow.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

TICK_REMINDER_SWEEP = "reminder_sweep"
TICK_SCHEDULED_TRANSITIONS = "scheduled_transitions"

# Leads pulled back from a closer who goes off duty
OFF_DUTY_REASSIGN_STATUSES = (LeadStatus.IN_PROCESS, LeadStatus.SCHEDULED)


@dataclass
class ReactionResult:
    ok: bool = True
    errors: list[str] = field(default_factory=list)
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass
class AssignOutcome:
    """
    ``assigned``: lead written to a closer; ``no_closer``: nobody eligible;
    ``superseded``: the lead changed under us and needs nothing more.
    """
    status: str
    lead: Optional[Lead] = None


class DispatchOrchestrator:
    def __init__(
        self,
        repo: AsyncDispatchRepository,
        notifier: Notifier,
        *,
        selector: CloserSelector,
        executor: AssignmentExecutor,
        rotation: RotationManager,
        reminder_scheduler: ReminderScheduler,
        reminder_sweeper: ReminderSweeper,
        promoter: ScheduledLeadPromoter,
        max_attempts: int = 3,
    ):
        self.repo = repo
        self.notifier = notifier
        self.selector = selector
        self.executor = executor
        self.rotation = rotation
        self.reminder_scheduler = reminder_scheduler
        self.reminder_sweeper = reminder_sweeper
        self.promoter = promoter
        self.max_attempts = max(1, max_attempts)

    @classmethod
    def build(cls, repo: AsyncDispatchRepository, notifier: Notifier, settings) -> "DispatchOrchestrator":
        """Wire all components from application settings."""
        return cls(
            repo,
            notifier,
            selector=CloserSelector(repo, strict_round_robin=settings.strict_round_robin),
            executor=AssignmentExecutor(repo, notifier),
            rotation=RotationManager(
                repo,
                spacing=settings.lineup_spacing,
                default_order=settings.lineup_default_order,
            ),
            reminder_scheduler=ReminderScheduler(
                repo,
                lead_minutes=settings.reminder_lead_minutes,
                supersede_stale=settings.reminder_supersede_stale,
            ),
            reminder_sweeper=ReminderSweeper(
                repo,
                notifier,
                batch_size=settings.reminder_sweep_batch_size,
                skip_stale=settings.reminder_supersede_stale,
            ),
            promoter=ScheduledLeadPromoter(
                repo,
                window_minutes=settings.promotion_window_minutes,
                batch_size=settings.promotion_batch_size,
            ),
            max_attempts=settings.assignment_max_attempts,
        )

    # ------------------------------------------------------------------
    # Error isolation
    # ------------------------------------------------------------------

    async def _record(
        self,
        result: ReactionResult,
        function: str,
        entity_id: str,
        exc: BaseException,
        context: Optional[dict] = None,
    ) -> None:
        result.ok = False
        result.errors.append(f"{function}: {exc}")
        DispatchMetrics.reaction_error(function)
        logger.error(f"{function} failed for {entity_id}: {exc}", exc_info=exc, extra={"lead_id": entity_id})
        try:
            await self.repo.record_error(FunctionError(
                function=function,
                entity_id=entity_id,
                message=f"{exc.__class__.__name__}: {exc}",
                context=context or {},
            ))
        except Exception as sink_exc:
            # The sink is the last resort; losing a record must not fail the trigger
            logger.critical(f"Error sink write failed for {function}/{entity_id}: {sink_exc}")

    async def _guard(
        self,
        result: ReactionResult,
        function: str,
        entity_id: str,
        step: Callable[[], Awaitable[Any]],
        context: Optional[dict] = None,
    ) -> Any:
        try:
            with DispatchMetrics.track_reaction_time(function):
                return await step()
        except Exception as exc:
            await self._record(result, function, entity_id, exc, context)
            return None

    # ------------------------------------------------------------------
    # Auto-assignment with conflict retry
    # ------------------------------------------------------------------

    async def assign_with_retry(
        self,
        lead: Lead,
        *,
        source: str,
        exclude_uid: Optional[str] = None,
    ) -> AssignOutcome:
        """
        Selector + executor, re-selecting when the conditional write loses a race.

        Raises:
            AssignmentConflictError: still conflicting after ``max_attempts``
        """
        original_assignee = lead.assigned_closer_id
        ctx = LogContext(logger, team_id=lead.team_id, lead_id=lead.id)

        for attempt in range(1, self.max_attempts + 1):
            selection = await self.selector.select(lead.team_id, exclude_uid=exclude_uid)
            if selection is None:
                return AssignOutcome("no_closer")

            try:
                assigned = await self.executor.assign(
                    lead, selection.closer, expected_load=selection.active_count, source=source,
                )
                return AssignOutcome("assigned", assigned)
            except AssignmentConflictError as exc:
                DispatchMetrics.assignment_conflict(lead.team_id)
                ctx.warning(f"Assignment conflict (attempt {attempt}/{self.max_attempts}): {exc}")

            fresh = await self.repo.get_lead(lead.id)
            if fresh is None or is_terminal(fresh.status) or fresh.assigned_closer_id != original_assignee:
                ctx.info("Lead changed concurrently, nothing left to assign")
                return AssignOutcome("superseded", fresh)
            lead = fresh

        raise AssignmentConflictError(
            f"Lead {lead.id} still conflicting after {self.max_attempts} assignment attempts"
        )

    async def _auto_assign(self, lead: Lead, *, source: str) -> Optional[Lead]:
        outcome = await self.assign_with_retry(lead, source=source)
        if outcome.status == "no_closer":
            DispatchMetrics.no_available_closer(lead.team_id)
            LogContext(logger, team_id=lead.team_id, lead_id=lead.id).warning("No available closers")
            await self.repo.add_alert(Alert(
                type="no_available_closers",
                team_id=lead.team_id,
                lead_id=lead.id,
                message=f"No available closers for lead {lead.customer_name or lead.id}",
            ))
            return None
        return outcome.lead

    # ------------------------------------------------------------------
    # Lead triggers
    # ------------------------------------------------------------------

    async def on_lead_created(self, lead: Lead) -> ReactionResult:
        result = ReactionResult()
        if lead.assigned_closer_id or lead.status != LeadStatus.WAITING_ASSIGNMENT:
            logger.debug(f"Lead {lead.id} created as {lead.status.value}, not auto-assigning")
            return result

        LogContext(logger, team_id=lead.team_id, lead_id=lead.id).info(
            f"New lead {lead.customer_name!r} phone={mask_phone(lead.customer_phone)}, auto-assigning"
        )
        await self._guard(result, "assign_on_create", lead.id, lambda: self._auto_assign(lead, source="created"))
        return result

    async def on_lead_updated(self, before: Lead, after: Lead) -> ReactionResult:
        """
        Runs, each step isolated from the others:

        1. status-change push to the assigned closer
        2. lineup rotation on exception/completion
        3. appointment reminder scheduling
        4. auto-assignment when the lead re-enters waiting_assignment
        """
        result = ReactionResult()
        status_changed = before.status != after.status

        if status_changed and not can_transition(before.status, after.status):
            DispatchMetrics.unexpected_transition(before.status.value, after.status.value)
            LogContext(logger, team_id=after.team_id, lead_id=after.id).warning(
                f"Unexpected status transition {before.status.value} -> {after.status.value}"
            )

        if status_changed and after.assigned_closer_id:
            await send_best_effort(
                self.notifier,
                [after.assigned_closer_id],
                notifications.lead_updated(after, after.status),
            )

        closer_uid = before.assigned_closer_id or after.assigned_closer_id
        if status_changed and closer_uid:
            await self._guard(
                result,
                "rotate_on_disposition",
                after.id,
                lambda: self.rotation.on_disposition(closer_uid, after.id, before.status, after.status),
                context={"closer_id": closer_uid, "status": after.status.value},
            )

        await self._guard(
            result,
            "schedule_reminder",
            after.id,
            lambda: self.reminder_scheduler.on_lead_updated(before, after),
        )

        if (
            before.status != LeadStatus.WAITING_ASSIGNMENT
            and after.status == LeadStatus.WAITING_ASSIGNMENT
            and not after.assigned_closer_id
        ):
            await self._guard(result, "assign_on_update", after.id, lambda: self._auto_assign(after, source="updated"))

        return result

    # ------------------------------------------------------------------
    # Closer triggers
    # ------------------------------------------------------------------

    async def on_closer_updated(self, before: Closer, after: Closer) -> ReactionResult:
        result = ReactionResult()

        if before.status == CloserStatus.OFF_DUTY and after.status == CloserStatus.ON_DUTY:
            await self._guard(result, "closer_on_duty", after.uid, lambda: self.rotation.on_duty_started(after))

        elif before.status == CloserStatus.ON_DUTY and after.status == CloserStatus.OFF_DUTY:
            leads = await self._guard(
                result,
                "closer_off_duty",
                after.uid,
                lambda: self.repo.list_leads_for_closer(after.uid, OFF_DUTY_REASSIGN_STATUSES),
            )
            if leads:
                await self._release_leads(after, leads, result)

        return result

    async def _release_lead(self, closer: Closer, lead: Lead) -> str:
        outcome = await self.assign_with_retry(lead, source="reassigned", exclude_uid=closer.uid)
        if outcome.status != "no_closer":
            return outcome.status

        await self.repo.update_lead(lead.id, {
            "assigned_closer_id": None,
            "assigned_closer_name": None,
            "status": LeadStatus.WAITING_ASSIGNMENT.value,
            "accepted_at": None,
            "accepted_by": None,
            "updated_at": utcnow().isoformat(),
        })
        LogContext(logger, team_id=lead.team_id, lead_id=lead.id, closer_id=closer.uid).warning(
            "No closer available for reassignment, lead returned to waiting_assignment"
        )
        return "released"

    async def _release_leads(self, closer: Closer, leads: list[Lead], result: ReactionResult) -> None:
        outcomes = await asyncio.gather(
            *(self._release_lead(closer, lead) for lead in leads),
            return_exceptions=True,
        )
        summary: dict[str, int] = {}
        for lead, outcome in zip(leads, outcomes):
            if isinstance(outcome, BaseException):
                await self._record(result, "closer_off_duty", lead.id, outcome, context={"closer_id": closer.uid})
                continue
            summary[outcome] = summary.get(outcome, 0) + 1

        result.detail["off_duty"] = summary
        LogContext(logger, team_id=closer.team_id, closer_id=closer.uid).info(
            f"Off-duty handling for {closer.name}: {len(leads)} lead(s), {summary}"
        )

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    async def on_tick(self, name: str) -> ReactionResult:
        result = ReactionResult()
        if name == TICK_REMINDER_SWEEP:
            sweep = await self._guard(result, name, name, self.reminder_sweeper.sweep)
            if sweep is not None:
                result.detail = {"due": sweep.due, "sent": sweep.sent, "failed": sweep.failed, "skipped": sweep.skipped}
        elif name == TICK_SCHEDULED_TRANSITIONS:
            promoted = await self._guard(result, name, name, self.promoter.run)
            if promoted is not None:
                result.detail = {"promoted": len(promoted)}
        else:
            logger.warning(f"Unknown tick: {name}")
            result.ok = False
            result.errors.append(f"unknown tick: {name}")
        return result
