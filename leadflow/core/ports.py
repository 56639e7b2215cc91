# leadflow/core/ports.py
from __future__ import annotations
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol, TYPE_CHECKING

from leadflow.core.domain import (
    ActivityLogEntry,
    Alert,
    Closer,
    FunctionError,
    Lead,
    LeadStatus,
    ReminderTask,
)

if TYPE_CHECKING:
    from leadflow.core.dispatch.notifications import PushNotification


class AsyncDispatchRepository(Protocol):
    """
    Document store used by the dispatch engine.

    Every lead/closer write also produces the matching trigger
    (``lead_updated`` / ``closer_updated``) for the orchestrator.
    """

    # -- reads ---------------------------------------------------------------
    async def get_lead(self, lead_id: str) -> Optional[Lead]: ...
    async def get_closer(self, uid: str) -> Optional[Closer]: ...

    async def list_on_duty_closers(self, team_id: str) -> list[Closer]:
        """On Duty closers of the team ordered by lineup_order ascending"""
        ...

    async def list_team_closers(self, team_id: str) -> list[Closer]: ...
    async def count_active_assignments(self, uid: str) -> int: ...
    async def list_leads_for_closer(self, uid: str, statuses: Iterable[LeadStatus]) -> list[Lead]: ...
    async def list_team_leads(self, team_id: str) -> list[Lead]: ...

    async def due_scheduled_leads(self, now: datetime, window_end: datetime, limit: int) -> list[Lead]:
        """Verified scheduled/rescheduled leads with now < appointment <= window_end"""
        ...

    # -- writes --------------------------------------------------------------
    async def update_lead(self, lead_id: str, changes: dict[str, Any]) -> None: ...

    async def assign_lead(
        self,
        lead_id: str,
        closer_uid: str,
        changes: dict[str, Any],
        *,
        expected_active_count: Optional[int],
        expected_assignee: Optional[str],
    ) -> None:
        """
        Conditional assignment transaction.

        Locks the closer, recounts its active leads and re-reads the lead's
        assignee; writes ``changes`` only when both match the expectations
        (``expected_active_count=None`` skips the load check). Raises
        ``AssignmentConflictError`` otherwise.
        """
        ...

    async def update_closer(self, uid: str, changes: dict[str, Any]) -> None: ...
    async def append_activity(self, entry: ActivityLogEntry) -> None: ...
    async def add_alert(self, alert: Alert) -> None: ...
    async def record_error(self, error: FunctionError) -> None: ...

    # -- reminders -----------------------------------------------------------
    async def add_reminder(self, task: ReminderTask) -> str: ...
    async def supersede_reminders(self, lead_id: str) -> int: ...
    async def due_reminders(self, now: datetime, limit: int) -> list[ReminderTask]: ...
    async def mark_reminder_processed(self, task_id: str, *, superseded: bool = False) -> None: ...


class Notifier(Protocol):
    async def notify(self, user_ids: list[str], notification: "PushNotification") -> None:
        """One-way push to users' devices. Raises on transport failure."""
        ...
