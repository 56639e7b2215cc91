# leadflow/core/dispatch/rpc.py
"""
User-invoked operations: manual assign, self assign, accept job, team stats.

Every method raises only ``DispatchError`` subtypes; the HTTP layer turns
them into ``{"error": {"code", "message"}}`` responses.
"""
from __future__ import annotations

from collections import Counter
from typing import Any, Optional

from leadflow.core.dispatch import notifications
from leadflow.core.dispatch.assignment import send_best_effort
from leadflow.core.dispatch.orchestrator import DispatchOrchestrator
from leadflow.core.domain import (
    ActivityLogEntry,
    CallerContext,
    CloserStatus,
    Lead,
    LeadStatus,
    Role,
    is_terminal,
    utcnow,
)
from leadflow.core.errors import (
    AssignmentConflictError,
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
    UnauthenticatedError,
    UnavailableError,
)
from leadflow.infra.audit_log import audit_event
from leadflow.infra.logging_config import LogContext, get_logger

logger = get_logger(__name__)


def _require_caller(caller: Optional[CallerContext]) -> CallerContext:
    if caller is None or not caller.uid:
        raise UnauthenticatedError("User must be authenticated")
    return caller


def _require_id(value: Optional[str], label: str) -> str:
    if not value or not str(value).strip():
        raise InvalidArgumentError(f"{label} is required")
    return str(value).strip()


class DispatchRpcService:
    def __init__(self, orchestrator: DispatchOrchestrator):
        self._orchestrator = orchestrator
        self._repo = orchestrator.repo
        self._notifier = orchestrator.notifier

    async def _load_lead(self, lead_id: str) -> Lead:
        lead = await self._repo.get_lead(lead_id)
        if lead is None:
            raise NotFoundError("Lead not found")
        return lead

    async def manual_assign(self, lead_id: Optional[str], caller: Optional[CallerContext]) -> dict[str, Any]:
        caller = _require_caller(caller)
        lead_id = _require_id(lead_id, "Lead ID")
        lead = await self._load_lead(lead_id)

        if caller.team_id != lead.team_id and not caller.is_manager:
            raise PermissionDeniedError("Insufficient permissions")
        if lead.status == LeadStatus.SCHEDULED and not lead.setter_verified:
            raise FailedPreconditionError("Cannot assign scheduled lead - setter verification required")
        if is_terminal(lead.status):
            raise FailedPreconditionError(f"Cannot assign a {lead.status.value} lead")

        try:
            outcome = await self._orchestrator.assign_with_retry(lead, source="manual")
        except AssignmentConflictError:
            raise UnavailableError("Closers are busy with other assignments, try again shortly") from None
        if outcome.status == "no_closer":
            raise UnavailableError("No available closers found for this team")
        if outcome.status != "assigned":
            raise FailedPreconditionError("Lead was changed by someone else, reload and retry")

        assigned = outcome.lead
        audit_event(
            "lead.manual_assign",
            caller_uid=caller.uid,
            caller_role=caller.role.value,
            team_id=lead.team_id,
            lead_id=lead.id,
            detail=f"-> {assigned.assigned_closer_id}",
        )
        return {
            "success": True,
            "message": f"Lead successfully assigned to {assigned.assigned_closer_name}",
            "assigned_closer": {"uid": assigned.assigned_closer_id, "name": assigned.assigned_closer_name},
        }

    async def self_assign(self, lead_id: Optional[str], caller: Optional[CallerContext]) -> dict[str, Any]:
        caller = _require_caller(caller)
        lead_id = _require_id(lead_id, "Lead ID")
        lead = await self._load_lead(lead_id)

        if caller.team_id != lead.team_id:
            raise PermissionDeniedError("You can only assign leads from your team")
        if caller.role not in (Role.CLOSER, Role.MANAGER):
            raise PermissionDeniedError("Only closers and managers can self-assign leads")
        if not lead.is_assignable:
            if lead.status == LeadStatus.SCHEDULED:
                raise FailedPreconditionError("Scheduled leads must be verified by the setter before they can be assigned")
            raise FailedPreconditionError("Lead is not available for assignment")
        if lead.assigned_closer_id:
            raise FailedPreconditionError("Lead is already assigned to another closer")

        closer = await self._repo.get_closer(caller.uid)
        if closer is None:
            raise NotFoundError("Closer profile not found")
        if closer.status != CloserStatus.ON_DUTY:
            raise FailedPreconditionError("You must be on duty to self-assign leads")

        try:
            await self._orchestrator.executor.assign(lead, closer, expected_load=None, source="self")
        except AssignmentConflictError:
            raise FailedPreconditionError("Lead is already assigned to another closer") from None

        audit_event(
            "lead.self_assign",
            caller_uid=caller.uid,
            caller_role=caller.role.value,
            team_id=lead.team_id,
            lead_id=lead.id,
        )
        return {"success": True, "assigned_closer": {"uid": closer.uid, "name": closer.name}}

    async def accept_job(self, lead_id: Optional[str], caller: Optional[CallerContext]) -> dict[str, Any]:
        """
        Accept an assigned lead. Only the assigned closer may accept;
        repeating the call is a no-op that reports ``already_accepted``.
        """
        caller = _require_caller(caller)
        lead_id = _require_id(lead_id, "Lead ID")
        lead = await self._load_lead(lead_id)
        ctx = LogContext(logger, team_id=lead.team_id, lead_id=lead.id, closer_id=caller.uid)

        if lead.assigned_closer_id != caller.uid:
            raise PermissionDeniedError("Only the assigned closer can accept this job")

        if lead.status == LeadStatus.ACCEPTED or (lead.accepted_at is not None and lead.accepted_by == caller.uid):
            ctx.info("Job already accepted")
            return {
                "success": True,
                "already_accepted": True,
                "accepted_at": lead.accepted_at.isoformat() if lead.accepted_at else None,
                "message": "Job was already accepted",
            }

        if not lead.is_assignable:
            if lead.status == LeadStatus.SCHEDULED:
                raise FailedPreconditionError("Cannot accept scheduled appointment - setter verification required")
            raise FailedPreconditionError(
                f"Cannot accept job with status: {lead.status.value}. "
                "Valid statuses: waiting_assignment, scheduled"
            )

        now = utcnow()
        await self._repo.update_lead(lead.id, {
            "status": LeadStatus.ACCEPTED.value,
            "accepted_at": now.isoformat(),
            "accepted_by": caller.uid,
            "updated_at": now.isoformat(),
        })
        ctx.info("Job accepted")

        try:
            await self._repo.append_activity(ActivityLogEntry(
                type="job_accepted",
                team_id=lead.team_id,
                lead_id=lead.id,
                closer_id=caller.uid,
                timestamp=now,
                metadata={
                    "accepted_by": caller.uid,
                    "accepted_by_role": caller.role.value,
                    "closer_name": lead.assigned_closer_name,
                    "customer_name": lead.customer_name,
                },
            ))
        except Exception as exc:
            ctx.warning(f"job_accepted activity not written: {exc}")

        if lead.setter_id:
            push = notifications.job_accepted(lead, lead.assigned_closer_name or "Closer")
            await send_best_effort(self._notifier, [lead.setter_id], push)

        audit_event(
            "lead.accept",
            caller_uid=caller.uid,
            caller_role=caller.role.value,
            team_id=lead.team_id,
            lead_id=lead.id,
        )
        return {
            "success": True,
            "already_accepted": False,
            "accepted_at": now.isoformat(),
            "message": "Job accepted successfully",
        }

    async def team_stats(self, team_id: Optional[str], caller: Optional[CallerContext]) -> dict[str, Any]:
        caller = _require_caller(caller)
        team_id = _require_id(team_id, "Team ID")
        if caller.team_id != team_id and not caller.is_manager:
            raise PermissionDeniedError("Insufficient permissions")

        leads = await self._repo.list_team_leads(team_id)
        closers = await self._repo.list_team_closers(team_id)

        by_status = Counter(lead.status.value for lead in leads)
        by_closer = Counter(lead.assigned_closer_id for lead in leads if lead.assigned_closer_id)
        closer_stats = [
            {
                "uid": c.uid,
                "name": c.name,
                "status": c.status.value,
                "lineup_order": c.lineup_order,
                "assigned_leads": by_closer.get(c.uid, 0),
            }
            for c in sorted(closers, key=lambda c: (c.lineup_order, c.name))
        ]
        return {
            "team_id": team_id,
            "total_leads": len(leads),
            "leads_by_status": dict(by_status),
            "closers": closer_stats,
            "on_duty_closers": sum(1 for c in closers if c.on_duty),
            "timestamp": utcnow().isoformat(),
        }
