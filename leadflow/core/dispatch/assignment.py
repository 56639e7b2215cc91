# leadflow/core/dispatch/assignment.py
"""
Assignment Executor.

One lead -> closer assignment with its side effects, in this order:

1. conditional lead write (the only step inside the consistency boundary)
2. ``lead_assigned`` activity (best-effort)
3. push notification to the closer (best-effort)
"""
from __future__ import annotations

from dataclasses import replace
from typing import Optional

from leadflow.core.dispatch import notifications
from leadflow.core.domain import (
    ActivityLogEntry,
    Closer,
    DispatchType,
    Lead,
    LeadStatus,
    is_terminal,
    utcnow,
)
from leadflow.core.errors import FailedPreconditionError
from leadflow.core.ports import AsyncDispatchRepository, Notifier
from leadflow.infra.logging_config import LogContext, get_logger
from leadflow.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


def target_status(lead: Lead) -> LeadStatus:
    """Status an assigned lead lands in."""
    if lead.status == LeadStatus.SCHEDULED and lead.setter_verified:
        return LeadStatus.WAITING_ASSIGNMENT
    if lead.dispatch_type == DispatchType.IMMEDIATE:
        return LeadStatus.WAITING_ASSIGNMENT
    return LeadStatus.SCHEDULED


class AssignmentExecutor:
    def __init__(self, repo: AsyncDispatchRepository, notifier: Notifier):
        self._repo = repo
        self._notifier = notifier

    async def assign(
        self,
        lead: Lead,
        closer: Closer,
        *,
        expected_load: Optional[int] = None,
        source: str = "auto",
    ) -> Lead:
        """
        Assign ``lead`` to ``closer`` and return the updated lead.

        Raises:
            FailedPreconditionError: lead is terminal
            AssignmentConflictError: closer load or lead assignee changed
                since they were read
            RepositoryError: the lead write failed
        """
        if is_terminal(lead.status):
            raise FailedPreconditionError(f"Lead {lead.id} is {lead.status.value} and cannot be assigned")

        ctx = LogContext(logger, team_id=lead.team_id, lead_id=lead.id, closer_id=closer.uid)
        now = utcnow()
        status = target_status(lead)
        changes = {
            "assigned_closer_id": closer.uid,
            "assigned_closer_name": closer.name,
            "status": status.value,
            "updated_at": now.isoformat(),
        }
        handover = lead.assigned_closer_id != closer.uid
        if handover:
            # A previous closer's acceptance does not carry over
            changes["accepted_at"] = None
            changes["accepted_by"] = None

        await self._repo.assign_lead(
            lead.id,
            closer.uid,
            changes,
            expected_active_count=expected_load,
            expected_assignee=lead.assigned_closer_id,
        )
        assigned = replace(
            lead,
            assigned_closer_id=closer.uid,
            assigned_closer_name=closer.name,
            status=status,
            updated_at=now,
        )
        if handover:
            assigned = replace(assigned, accepted_at=None, accepted_by=None)
        DispatchMetrics.lead_assigned(lead.team_id, source)
        ctx.info(f"Lead assigned to {closer.name} ({source}), status={status.value}")

        try:
            await self._repo.append_activity(ActivityLogEntry(
                type="lead_assigned",
                team_id=lead.team_id,
                lead_id=lead.id,
                closer_id=closer.uid,
                timestamp=now,
                metadata={
                    "closer_name": closer.name,
                    "previous_closer_id": lead.assigned_closer_id,
                    "status": status.value,
                    "source": source,
                },
            ))
        except Exception as exc:
            ctx.warning(f"lead_assigned activity not written: {exc}")

        await send_best_effort(self._notifier, [closer.uid], notifications.lead_assigned(assigned))
        return assigned


async def send_best_effort(notifier: Notifier, user_ids: list[str], notification) -> bool:
    """Deliver a push; failures are logged and counted, never raised."""
    user_ids = [uid for uid in user_ids if uid]
    if not user_ids:
        return False
    try:
        await notifier.notify(user_ids, notification)
    except Exception as exc:
        logger.warning(f"Push '{notification.kind}' to {user_ids} failed: {exc}")
        DispatchMetrics.notification(notification.kind, "failed")
        return False
    DispatchMetrics.notification(notification.kind, "sent")
    return True
