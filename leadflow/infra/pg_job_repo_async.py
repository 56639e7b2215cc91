# leadflow/infra/pg_job_repo_async.py
"""
Trigger outbox: DB-backed job queue (asyncpg).

Row triggers on ``leads`` and ``closers`` (sql/001_init.sql) insert a
``lead_created`` / ``lead_updated`` / ``closer_updated`` job in the same
transaction as the document write, whoever the writer is. The job worker
claims them with FOR UPDATE SKIP LOCKED, so several worker processes can
drain one queue.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from leadflow.infra.db_resilience_async import safe_db_conn
from leadflow.infra.logging_config import get_logger
from leadflow.infra.metrics import inc_counter

logger = get_logger(__name__)

JOB_LEAD_CREATED = "lead_created"
JOB_LEAD_UPDATED = "lead_updated"
JOB_CLOSER_UPDATED = "closer_updated"


@dataclass
class Job:
    """One row of the jobs table."""

    id: str
    team_id: str
    job_type: str
    payload: dict[str, Any]
    status: str
    attempts: int
    max_attempts: int
    error_message: str | None
    scheduled_at: datetime
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


def _row_to_job(row) -> Job:
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return Job(
        id=str(row["id"]),
        team_id=row["team_id"],
        job_type=row["job_type"],
        payload=payload,
        status=row["status"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        error_message=row["error_message"],
        scheduled_at=row["scheduled_at"],
        created_at=row["created_at"],
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
    )


def _affected(status: str | None) -> int:
    """Row count from an asyncpg command tag ('DELETE 3' -> 3)"""
    return int(status.split()[-1]) if status else 0


class AsyncPostgresJobRepository:
    """Claim/complete/fail over the jobs table."""

    async def claim_batch(self, batch_size: int = 10) -> list[Job]:
        """
        Claim up to ``batch_size`` due jobs, oldest first.

        Rows come back in ``seq`` (insert) order, which the worker relies
        on to replay one document's triggers in write order.
        """
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                WITH claimed AS (
                    SELECT id FROM jobs
                    WHERE status = 'pending'
                      AND scheduled_at <= now()
                    ORDER BY seq
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE jobs
                SET status = 'running', started_at = now()
                WHERE id IN (SELECT id FROM claimed)
                RETURNING *
                """,
                batch_size,
            )
        return [_row_to_job(row) for row in sorted(rows, key=lambda r: r["seq"])]

    async def complete(self, job_id: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                "UPDATE jobs SET status = 'completed', completed_at = now() WHERE id = $1",
                job_id,
            )

    async def fail(self, job_id: str, error_message: str, *, base_delay: float = 5.0) -> None:
        """
        Record a failed attempt.

        Retries back off as ``base_delay * 2^attempts`` until
        ``max_attempts`` is reached; then the job is parked as 'failed'.
        """
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE jobs
                SET
                  attempts = attempts + 1,
                  error_message = $2,
                  status = CASE WHEN attempts + 1 < max_attempts THEN 'pending' ELSE 'failed' END,
                  scheduled_at = CASE
                    WHEN attempts + 1 < max_attempts
                      THEN now() + make_interval(secs => $3 * power(2, attempts))
                    ELSE scheduled_at
                  END,
                  completed_at = CASE WHEN attempts + 1 >= max_attempts THEN now() ELSE NULL END
                WHERE id = $1
                """,
                job_id,
                error_message[:2000],
                base_delay,
            )

    async def count_by_status(self) -> dict[str, int]:
        """{status: count}, served on /metrics"""
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT status, count(*)::int AS cnt FROM jobs GROUP BY status")
        return {row["status"]: row["cnt"] for row in rows}

    async def cleanup(self, completed_ttl_days: int = 7, failed_ttl_days: int = 30) -> int:
        """Delete finished jobs past their TTL. Returns rows deleted."""
        async with safe_db_conn() as conn:
            status = await conn.execute(
                """
                DELETE FROM jobs
                WHERE (status = 'completed' AND completed_at < now() - make_interval(days => $1))
                   OR (status = 'failed' AND completed_at < now() - make_interval(days => $2))
                """,
                completed_ttl_days,
                failed_ttl_days,
            )
        count = _affected(status)
        if count:
            logger.info(f"Cleaned up {count} finished jobs")
        return count

    async def reset_stale_running(self, timeout_seconds: int = 300) -> int:
        """Requeue jobs left 'running' by a crashed worker."""
        async with safe_db_conn() as conn:
            status = await conn.execute(
                """
                UPDATE jobs
                SET status = 'pending', scheduled_at = now()
                WHERE status = 'running'
                  AND started_at < now() - make_interval(secs => $1)
                """,
                timeout_seconds,
            )
        count = _affected(status)
        if count:
            logger.warning(f"Reset {count} stale running jobs (stuck > {timeout_seconds}s)")
            inc_counter("jobs_stale_reset")
        return count


_job_repo: AsyncPostgresJobRepository | None = None


def get_job_repo() -> AsyncPostgresJobRepository:
    global _job_repo
    if _job_repo is None:
        _job_repo = AsyncPostgresJobRepository()
    return _job_repo
