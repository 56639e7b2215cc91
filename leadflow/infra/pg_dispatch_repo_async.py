# leadflow/infra/pg_dispatch_repo_async.py
"""
Async PostgreSQL implementation of ``AsyncDispatchRepository`` (asyncpg).

Leads and closers are JSONB documents; partial updates merge into the
stored document (``doc || changes``) and row triggers derive the query
columns and append the outbox job. See sql/001_init.sql.
"""
from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Iterable, Optional

import asyncpg

from leadflow.core.domain import (
    ActivityLogEntry,
    Alert,
    Closer,
    CloserStatus,
    FunctionError,
    Lead,
    LeadStatus,
    ReminderTask,
)
from leadflow.core.errors import AssignmentConflictError, DispatchError, NotFoundError, RepositoryError
from leadflow.infra.db_resilience_async import safe_db_conn
from leadflow.infra.logging_config import get_logger
from leadflow.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

# Mirrors Lead.counts_as_active
_ACTIVE_LOAD = (
    "(status IN ('waiting_assignment', 'accepted', 'in_process')"
    " OR (status = 'scheduled' AND setter_verified))"
)


def _load(value: Any) -> dict:
    return json.loads(value) if isinstance(value, str) else dict(value)


def _dump(doc: dict) -> str:
    return json.dumps(doc, default=str)


def _affected(status: Optional[str]) -> int:
    return int(status.split()[-1]) if status else 0


class AsyncPostgresDispatchRepository:

    @asynccontextmanager
    async def _conn(self, operation: str, *, autocommit: bool = True):
        """Connection whose driver errors surface as ``RepositoryError``."""
        try:
            async with safe_db_conn(autocommit=autocommit) as conn:
                yield conn
        except DispatchError:
            raise
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as exc:
            DispatchMetrics.database_error(operation)
            logger.error(f"Database error in {operation}: {exc}")
            raise RepositoryError(f"{operation} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Leads
    # ------------------------------------------------------------------

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        async with self._conn("get_lead") as conn:
            row = await conn.fetchrow("SELECT doc FROM leads WHERE id = $1", lead_id)
        return Lead.from_doc(_load(row["doc"])) if row else None

    async def create_lead(self, lead: Lead) -> None:
        """Intake path; the insert trigger emits ``lead_created``."""
        async with self._conn("create_lead") as conn:
            await conn.execute(
                "INSERT INTO leads (id, doc) VALUES ($1, $2::jsonb)",
                lead.id,
                _dump(lead.to_doc()),
            )

    async def update_lead(self, lead_id: str, changes: dict[str, Any]) -> None:
        async with self._conn("update_lead") as conn:
            status = await conn.execute(
                "UPDATE leads SET doc = doc || $2::jsonb WHERE id = $1",
                lead_id,
                _dump(changes),
            )
        if _affected(status) == 0:
            raise NotFoundError(f"Lead {lead_id} not found")

    async def assign_lead(
        self,
        lead_id: str,
        closer_uid: str,
        changes: dict[str, Any],
        *,
        expected_active_count: Optional[int],
        expected_assignee: Optional[str],
    ) -> None:
        # Lock order is always closer, then lead
        async with self._conn("assign_lead", autocommit=False) as conn:
            closer_status = await conn.fetchval(
                "SELECT status FROM closers WHERE uid = $1 FOR UPDATE",
                closer_uid,
            )
            if closer_status is None:
                raise AssignmentConflictError(f"Closer {closer_uid} no longer exists")
            if closer_status != CloserStatus.ON_DUTY.value:
                raise AssignmentConflictError(f"Closer {closer_uid} went {closer_status}")

            lead_row = await conn.fetchrow(
                "SELECT assigned_closer_id FROM leads WHERE id = $1 FOR UPDATE",
                lead_id,
            )
            if lead_row is None:
                raise NotFoundError(f"Lead {lead_id} not found")
            if lead_row["assigned_closer_id"] != expected_assignee:
                raise AssignmentConflictError(
                    f"Lead {lead_id} is now assigned to {lead_row['assigned_closer_id']}, "
                    f"expected {expected_assignee}"
                )

            if expected_active_count is not None:
                active = await conn.fetchval(
                    f"SELECT count(*) FROM leads WHERE assigned_closer_id = $1 AND {_ACTIVE_LOAD}",
                    closer_uid,
                )
                if active != expected_active_count:
                    raise AssignmentConflictError(
                        f"Closer {closer_uid} load changed: {active} active, expected {expected_active_count}"
                    )

            await conn.execute(
                "UPDATE leads SET doc = doc || $2::jsonb WHERE id = $1",
                lead_id,
                _dump(changes),
            )

    async def count_active_assignments(self, uid: str) -> int:
        async with self._conn("count_active_assignments") as conn:
            return await conn.fetchval(
                f"SELECT count(*) FROM leads WHERE assigned_closer_id = $1 AND {_ACTIVE_LOAD}",
                uid,
            )

    async def list_leads_for_closer(self, uid: str, statuses: Iterable[LeadStatus]) -> list[Lead]:
        async with self._conn("list_leads_for_closer") as conn:
            rows = await conn.fetch(
                "SELECT doc FROM leads WHERE assigned_closer_id = $1 AND status = ANY($2::text[])",
                uid,
                [LeadStatus(s).value for s in statuses],
            )
        return [Lead.from_doc(_load(r["doc"])) for r in rows]

    async def list_team_leads(self, team_id: str) -> list[Lead]:
        async with self._conn("list_team_leads") as conn:
            rows = await conn.fetch("SELECT doc FROM leads WHERE team_id = $1", team_id)
        return [Lead.from_doc(_load(r["doc"])) for r in rows]

    async def due_scheduled_leads(self, now: datetime, window_end: datetime, limit: int) -> list[Lead]:
        async with self._conn("due_scheduled_leads") as conn:
            rows = await conn.fetch(
                """
                SELECT doc FROM leads
                WHERE status IN ('scheduled', 'rescheduled')
                  AND setter_verified
                  AND scheduled_appointment_time > $1
                  AND scheduled_appointment_time <= $2
                ORDER BY scheduled_appointment_time
                LIMIT $3
                """,
                now,
                window_end,
                limit,
            )
        return [Lead.from_doc(_load(r["doc"])) for r in rows]

    # ------------------------------------------------------------------
    # Closers
    # ------------------------------------------------------------------

    async def get_closer(self, uid: str) -> Optional[Closer]:
        async with self._conn("get_closer") as conn:
            row = await conn.fetchrow("SELECT doc FROM closers WHERE uid = $1", uid)
        return Closer.from_doc(_load(row["doc"])) if row else None

    async def upsert_closer(self, closer: Closer) -> None:
        async with self._conn("upsert_closer") as conn:
            await conn.execute(
                """
                INSERT INTO closers (uid, doc) VALUES ($1, $2::jsonb)
                ON CONFLICT (uid) DO UPDATE SET doc = EXCLUDED.doc
                """,
                closer.uid,
                _dump(closer.to_doc()),
            )

    async def update_closer(self, uid: str, changes: dict[str, Any]) -> None:
        async with self._conn("update_closer") as conn:
            status = await conn.execute(
                "UPDATE closers SET doc = doc || $2::jsonb WHERE uid = $1",
                uid,
                _dump(changes),
            )
        if _affected(status) == 0:
            raise NotFoundError(f"Closer {uid} not found")

    async def list_on_duty_closers(self, team_id: str) -> list[Closer]:
        async with self._conn("list_on_duty_closers") as conn:
            rows = await conn.fetch(
                "SELECT doc FROM closers WHERE team_id = $1 AND status = $2 ORDER BY lineup_order, name",
                team_id,
                CloserStatus.ON_DUTY.value,
            )
        return [Closer.from_doc(_load(r["doc"])) for r in rows]

    async def list_team_closers(self, team_id: str) -> list[Closer]:
        async with self._conn("list_team_closers") as conn:
            rows = await conn.fetch(
                "SELECT doc FROM closers WHERE team_id = $1 ORDER BY lineup_order, name",
                team_id,
            )
        return [Closer.from_doc(_load(r["doc"])) for r in rows]

    # ------------------------------------------------------------------
    # Append-only records
    # ------------------------------------------------------------------

    async def append_activity(self, entry: ActivityLogEntry) -> None:
        async with self._conn("append_activity") as conn:
            await conn.execute(
                """
                INSERT INTO activities (type, team_id, lead_id, closer_id, timestamp, metadata)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                """,
                entry.type,
                entry.team_id,
                entry.lead_id,
                entry.closer_id,
                entry.timestamp,
                _dump(entry.metadata),
            )

    async def add_alert(self, alert: Alert) -> None:
        async with self._conn("add_alert") as conn:
            await conn.execute(
                "INSERT INTO notifications (type, team_id, lead_id, message, created_at) VALUES ($1, $2, $3, $4, $5)",
                alert.type,
                alert.team_id,
                alert.lead_id,
                alert.message,
                alert.created_at,
            )

    async def record_error(self, error: FunctionError) -> None:
        async with self._conn("record_error") as conn:
            await conn.execute(
                """
                INSERT INTO function_errors (function, entity_id, message, context, timestamp)
                VALUES ($1, $2, $3, $4::jsonb, $5)
                """,
                error.function,
                error.entity_id,
                error.message[:2000],
                _dump(error.context),
                error.timestamp,
            )

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    async def add_reminder(self, task: ReminderTask) -> str:
        async with self._conn("add_reminder") as conn:
            task_id = await conn.fetchval(
                """
                INSERT INTO appointment_reminders
                    (lead_id, assigned_closer_id, appointment_time, reminder_time,
                     customer_name, address, processed, superseded, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                RETURNING id
                """,
                task.lead_id,
                task.assigned_closer_id,
                task.appointment_time,
                task.reminder_time,
                task.customer_name,
                task.address,
                task.processed,
                task.superseded,
                task.created_at,
            )
        return str(task_id)

    async def supersede_reminders(self, lead_id: str) -> int:
        async with self._conn("supersede_reminders") as conn:
            status = await conn.execute(
                """
                UPDATE appointment_reminders
                SET processed = true, superseded = true
                WHERE lead_id = $1 AND NOT processed
                """,
                lead_id,
            )
        return _affected(status)

    async def due_reminders(self, now: datetime, limit: int) -> list[ReminderTask]:
        async with self._conn("due_reminders") as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM appointment_reminders
                WHERE NOT processed AND reminder_time <= $1
                ORDER BY reminder_time
                LIMIT $2
                """,
                now,
                limit,
            )
        return [ReminderTask.from_doc(dict(r), task_id=str(r["id"])) for r in rows]

    async def mark_reminder_processed(self, task_id: str, *, superseded: bool = False) -> None:
        async with self._conn("mark_reminder_processed") as conn:
            await conn.execute(
                "UPDATE appointment_reminders SET processed = true, superseded = superseded OR $2 WHERE id = $1",
                task_id,
                superseded,
            )


_dispatch_repo: AsyncPostgresDispatchRepository | None = None


def get_dispatch_repo() -> AsyncPostgresDispatchRepository:
    global _dispatch_repo
    if _dispatch_repo is None:
        _dispatch_repo = AsyncPostgresDispatchRepository()
    return _dispatch_repo
