# leadflow/core/dispatch/rotation.py
"""
Rotation Manager: keeps each team's lineup fair.

Lineup orders are spaced by ``spacing`` (1000) so moving a closer to the
front or back is a single write and never renumbers the team.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

from leadflow.core.domain import (
    COMPLETION_STATUSES,
    EXCEPTION_STATUSES,
    WORKING_STATUSES,
    ActivityLogEntry,
    Closer,
    LeadStatus,
    utcnow,
)
from leadflow.core.ports import AsyncDispatchRepository
from leadflow.infra.logging_config import LogContext, get_logger
from leadflow.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


class Disposition(str, Enum):
    EXCEPTION = "exception"
    COMPLETION = "completion"


def classify(prior: LeadStatus, new: LeadStatus) -> Optional[Disposition]:
    """Exception / completion / None for a lead status transition."""
    if prior not in WORKING_STATUSES:
        return None
    if new in EXCEPTION_STATUSES:
        return Disposition.EXCEPTION
    if new in COMPLETION_STATUSES:
        return Disposition.COMPLETION
    return None


class RotationManager:
    def __init__(
        self,
        repo: AsyncDispatchRepository,
        *,
        spacing: int = 1000,
        default_order: int = 100000,
    ):
        self._repo = repo
        self._spacing = spacing
        self._default_order = default_order

    async def _team_orders(self, team_id: str, *, exclude_uid: Optional[str] = None) -> list[int]:
        closers = await self._repo.list_team_closers(team_id)
        return [c.lineup_order for c in closers if c.uid != exclude_uid]

    async def on_duty_started(self, closer: Closer) -> int:
        """Append a closer who just came on duty to the back of the lineup."""
        others = await self._team_orders(closer.team_id, exclude_uid=closer.uid)
        new_order = max(others) + self._spacing if others else self._default_order

        await self._repo.update_closer(closer.uid, {"lineup_order": new_order})
        await self._repo.append_activity(ActivityLogEntry(
            type="closer_added_to_lineup",
            team_id=closer.team_id,
            closer_id=closer.uid,
            metadata={
                "closer_name": closer.name,
                "previous_lineup_order": closer.lineup_order,
                "new_lineup_order": new_order,
            },
        ))
        DispatchMetrics.rotation(closer.team_id, "duty_on")
        LogContext(logger, team_id=closer.team_id, closer_id=closer.uid).info(
            f"{closer.name} added to lineup at {new_order}"
        )
        return new_order

    async def on_disposition(
        self,
        closer_uid: str,
        lead_id: str,
        prior: LeadStatus,
        new: LeadStatus,
    ) -> Optional[int]:
        """
        Reorder after a lead disposition.

        Exception (canceled/rescheduled) moves the closer to the front,
        completion (sold/no_sale/credit_fail) to the back. Returns the new
        order, or None when nothing moved.
        """
        kind = classify(prior, new)
        if kind is None:
            return None

        closer = await self._repo.get_closer(closer_uid)
        ctx = LogContext(logger, lead_id=lead_id, closer_id=closer_uid)
        if closer is None:
            ctx.warning(f"Closer {closer_uid} not found, lineup unchanged")
            return None

        orders = await self._team_orders(closer.team_id) or [closer.lineup_order]
        now = utcnow()

        if kind is Disposition.EXCEPTION:
            new_order = max(0, min(orders) - self._spacing)
            changes = {
                "lineup_order": new_order,
                "last_exception_timestamp": now.isoformat(),
                "last_exception_reason": new.value,
            }
            activity_type = "round_robin_exception"
        else:
            new_order = max(orders) + self._spacing
            changes = {"lineup_order": new_order}
            activity_type = "round_robin_completion"

        await self._repo.update_closer(closer.uid, changes)
        await self._repo.append_activity(ActivityLogEntry(
            type=activity_type,
            team_id=closer.team_id,
            lead_id=lead_id,
            closer_id=closer.uid,
            timestamp=now,
            metadata={
                "closer_name": closer.name,
                "previous_lineup_order": closer.lineup_order,
                "new_lineup_order": new_order,
                "reason": new.value,
                "previous_status": prior.value,
            },
        ))
        DispatchMetrics.rotation(closer.team_id, kind.value)
        ctx.info(f"{closer.name} moved {closer.lineup_order} -> {new_order} ({kind.value}: {new.value})")
        return new_order
