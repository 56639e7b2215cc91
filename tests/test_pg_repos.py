# tests/test_pg_repos.py
"""
asyncpg repositories against a mocked connection.

``safe_db_conn`` is replaced by a context manager yielding an AsyncMock,
so these tests pin down the statements and result handling without a
database.
"""
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from leadflow.core.domain import LeadStatus, ReminderTask
from leadflow.core.errors import AssignmentConflictError, NotFoundError, RepositoryError
from leadflow.infra import pg_dispatch_repo_async, pg_job_repo_async
from leadflow.infra.metrics import get_metrics_collector
from leadflow.infra.pg_dispatch_repo_async import AsyncPostgresDispatchRepository
from leadflow.infra.pg_job_repo_async import AsyncPostgresJobRepository

from fakes import make_lead

APPT = datetime(2025, 3, 10, 17, 0, tzinfo=timezone.utc)


@pytest.fixture
def conn():
    return AsyncMock()


@pytest.fixture
def dispatch_repo(conn, monkeypatch):
    opened = []

    @asynccontextmanager
    async def fake_safe_db_conn(autocommit=True, **kwargs):
        opened.append(autocommit)
        yield conn

    monkeypatch.setattr(pg_dispatch_repo_async, "safe_db_conn", fake_safe_db_conn)
    repo = AsyncPostgresDispatchRepository()
    repo.opened = opened
    return repo


@pytest.fixture
def job_repo(conn, monkeypatch):
    @asynccontextmanager
    async def fake_safe_db_conn(autocommit=True, **kwargs):
        yield conn

    monkeypatch.setattr(pg_job_repo_async, "safe_db_conn", fake_safe_db_conn)
    return AsyncPostgresJobRepository()


# =============================================================================
# Conditional assignment
# =============================================================================

class TestAssignLead:
    CHANGES = {"assigned_closer_id": "ann", "status": "waiting_assignment"}

    @pytest.mark.asyncio
    async def test_writes_when_everything_matches(self, dispatch_repo, conn):
        conn.fetchval.side_effect = ["On Duty", 2]
        conn.fetchrow.return_value = {"assigned_closer_id": None}

        await dispatch_repo.assign_lead(
            "lead-1", "ann", self.CHANGES, expected_active_count=2, expected_assignee=None,
        )

        assert dispatch_repo.opened == [False]
        sql, lead_id, payload = conn.execute.await_args.args
        assert "doc || $2::jsonb" in sql
        assert lead_id == "lead-1"
        assert json.loads(payload) == self.CHANGES

    @pytest.mark.asyncio
    async def test_closer_locked_before_lead(self, dispatch_repo, conn):
        conn.fetchval.side_effect = ["On Duty", 0]
        conn.fetchrow.return_value = {"assigned_closer_id": None}

        await dispatch_repo.assign_lead(
            "lead-1", "ann", self.CHANGES, expected_active_count=0, expected_assignee=None,
        )

        first_sql = conn.fetchval.await_args_list[0].args[0]
        assert "FROM closers" in first_sql and "FOR UPDATE" in first_sql
        assert "FOR UPDATE" in conn.fetchrow.await_args.args[0]

    @pytest.mark.asyncio
    async def test_closer_off_duty(self, dispatch_repo, conn):
        conn.fetchval.side_effect = ["Off Duty"]

        with pytest.raises(AssignmentConflictError):
            await dispatch_repo.assign_lead(
                "lead-1", "ann", self.CHANGES, expected_active_count=0, expected_assignee=None,
            )
        conn.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_closer_missing(self, dispatch_repo, conn):
        conn.fetchval.side_effect = [None]

        with pytest.raises(AssignmentConflictError):
            await dispatch_repo.assign_lead(
                "lead-1", "ann", self.CHANGES, expected_active_count=None, expected_assignee=None,
            )

    @pytest.mark.asyncio
    async def test_lead_missing(self, dispatch_repo, conn):
        conn.fetchval.side_effect = ["On Duty"]
        conn.fetchrow.return_value = None

        with pytest.raises(NotFoundError):
            await dispatch_repo.assign_lead(
                "lead-1", "ann", self.CHANGES, expected_active_count=None, expected_assignee=None,
            )

    @pytest.mark.asyncio
    async def test_assignee_changed(self, dispatch_repo, conn):
        conn.fetchval.side_effect = ["On Duty"]
        conn.fetchrow.return_value = {"assigned_closer_id": "bob"}

        with pytest.raises(AssignmentConflictError, match="bob"):
            await dispatch_repo.assign_lead(
                "lead-1", "ann", self.CHANGES, expected_active_count=None, expected_assignee=None,
            )
        conn.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_load_changed(self, dispatch_repo, conn):
        conn.fetchval.side_effect = ["On Duty", 3]
        conn.fetchrow.return_value = {"assigned_closer_id": None}

        with pytest.raises(AssignmentConflictError, match="load changed"):
            await dispatch_repo.assign_lead(
                "lead-1", "ann", self.CHANGES, expected_active_count=2, expected_assignee=None,
            )
        conn.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_load_not_checked_when_not_expected(self, dispatch_repo, conn):
        conn.fetchval.side_effect = ["On Duty"]
        conn.fetchrow.return_value = {"assigned_closer_id": None}

        await dispatch_repo.assign_lead(
            "lead-1", "ann", self.CHANGES, expected_active_count=None, expected_assignee=None,
        )

        assert conn.fetchval.await_count == 1
        conn.execute.assert_awaited_once()


# =============================================================================
# Documents
# =============================================================================

class TestDocuments:
    @pytest.mark.asyncio
    async def test_get_lead_decodes_json_text(self, dispatch_repo, conn):
        conn.fetchrow.return_value = {"doc": json.dumps(make_lead().to_doc())}

        lead = await dispatch_repo.get_lead("lead-1")

        assert lead.id == "lead-1"
        assert lead.status is LeadStatus.WAITING_ASSIGNMENT

    @pytest.mark.asyncio
    async def test_get_missing_lead(self, dispatch_repo, conn):
        conn.fetchrow.return_value = None
        assert await dispatch_repo.get_lead("ghost") is None

    @pytest.mark.asyncio
    async def test_update_missing_lead(self, dispatch_repo, conn):
        conn.execute.return_value = "UPDATE 0"
        with pytest.raises(NotFoundError):
            await dispatch_repo.update_lead("ghost", {"status": "sold"})

    @pytest.mark.asyncio
    async def test_update_missing_closer(self, dispatch_repo, conn):
        conn.execute.return_value = "UPDATE 0"
        with pytest.raises(NotFoundError):
            await dispatch_repo.update_closer("ghost", {"lineup_order": 1000})

    @pytest.mark.asyncio
    async def test_update_merges_changes(self, dispatch_repo, conn):
        conn.execute.return_value = "UPDATE 1"

        await dispatch_repo.update_lead("lead-1", {"status": "accepted"})

        sql, _, payload = conn.execute.await_args.args
        assert "doc || $2::jsonb" in sql
        assert json.loads(payload) == {"status": "accepted"}

    @pytest.mark.asyncio
    async def test_leads_for_closer_passes_status_values(self, dispatch_repo, conn):
        conn.fetch.return_value = [{"doc": make_lead(assigned_closer_id="ann").to_doc()}]

        leads = await dispatch_repo.list_leads_for_closer("ann", [LeadStatus.IN_PROCESS, LeadStatus.SCHEDULED])

        assert conn.fetch.await_args.args[2] == ["in_process", "scheduled"]
        assert leads[0].assigned_closer_id == "ann"

    @pytest.mark.asyncio
    async def test_driver_error_becomes_repository_error(self, dispatch_repo, conn):
        conn.fetchrow.side_effect = ConnectionResetError("connection reset by peer")

        with pytest.raises(RepositoryError, match="get_lead failed"):
            await dispatch_repo.get_lead("lead-1")
        assert get_metrics_collector().get_counter("database_errors_total", operation="get_lead") == 1


# =============================================================================
# Reminders
# =============================================================================

class TestReminders:
    @pytest.mark.asyncio
    async def test_add_returns_text_id(self, dispatch_repo, conn):
        conn.fetchval.return_value = 41
        task = ReminderTask("lead-1", "ann", APPT, APPT.replace(hour=16, minute=30))

        assert await dispatch_repo.add_reminder(task) == "41"

    @pytest.mark.asyncio
    async def test_supersede_returns_count(self, dispatch_repo, conn):
        conn.execute.return_value = "UPDATE 2"
        assert await dispatch_repo.supersede_reminders("lead-1") == 2

    @pytest.mark.asyncio
    async def test_due_reminders_mapping(self, dispatch_repo, conn):
        conn.fetch.return_value = [{
            "id": 7,
            "lead_id": "lead-1",
            "assigned_closer_id": "ann",
            "appointment_time": APPT,
            "reminder_time": APPT.replace(hour=16, minute=30),
            "customer_name": None,
            "address": "1 Elm St",
            "processed": False,
            "superseded": False,
            "created_at": APPT.replace(hour=9),
        }]

        [task] = await dispatch_repo.due_reminders(APPT, 50)

        assert task.id == "7"
        assert task.customer_name == ""
        assert task.address == "1 Elm St"


# =============================================================================
# Job queue
# =============================================================================

class TestJobRepository:
    def _row(self, seq, job_id):
        return {
            "id": job_id,
            "seq": seq,
            "team_id": "team-1",
            "job_type": "lead_updated",
            "payload": {"entity_id": "lead-1"},
            "status": "running",
            "attempts": 0,
            "max_attempts": 5,
            "error_message": None,
            "scheduled_at": APPT,
            "created_at": APPT,
        }

    @pytest.mark.asyncio
    async def test_claim_returns_jobs_in_insert_order(self, job_repo, conn):
        conn.fetch.return_value = [self._row(9, "b"), self._row(3, "a")]

        jobs = await job_repo.claim_batch(10)

        assert [j.id for j in jobs] == ["a", "b"]
        assert "SKIP LOCKED" in conn.fetch.await_args.args[0]

    @pytest.mark.asyncio
    async def test_fail_truncates_message(self, job_repo, conn):
        await job_repo.fail("j1", "x" * 5000, base_delay=1.5)

        _, job_id, message, delay = conn.execute.await_args.args
        assert job_id == "j1"
        assert len(message) == 2000
        assert delay == 1.5

    @pytest.mark.asyncio
    async def test_count_by_status(self, job_repo, conn):
        conn.fetch.return_value = [{"status": "pending", "cnt": 4}, {"status": "failed", "cnt": 1}]
        assert await job_repo.count_by_status() == {"pending": 4, "failed": 1}

    @pytest.mark.asyncio
    async def test_stale_reset_counts(self, job_repo, conn):
        conn.execute.return_value = "UPDATE 2"
        assert await job_repo.reset_stale_running(60) == 2
        assert get_metrics_collector().get_counter("jobs_stale_reset") == 1
