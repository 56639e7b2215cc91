# leadflow/core/dispatch/jobs.py
"""
Job handlers for the trigger outbox.

Payloads carry document snapshots as written:
``lead_created {lead}``, ``lead_updated {before, after}``,
``closer_updated {before, after}``.
"""
from __future__ import annotations

from typing import Awaitable, Callable

from leadflow.core.dispatch.orchestrator import DispatchOrchestrator, ReactionResult
from leadflow.core.domain import Closer, Lead
from leadflow.infra.logging_config import get_logger
from leadflow.infra.pg_job_repo_async import (
    JOB_CLOSER_UPDATED,
    JOB_LEAD_CREATED,
    JOB_LEAD_UPDATED,
    Job,
)

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[None]]


def _log_result(job: Job, result: ReactionResult) -> None:
    if not result.ok:
        # Errors are already in the error sink; the job itself is done
        logger.warning(
            f"Job {job.id[:8]} ({job.job_type}) finished with {len(result.errors)} recorded error(s)",
            extra={"job_id": job.id, "team_id": job.team_id},
        )


def build_job_handlers(orchestrator: DispatchOrchestrator) -> dict[str, JobHandler]:
    """Handlers keyed by job type, ready for ``JobWorker.register``."""

    async def handle_lead_created(job: Job) -> None:
        lead = Lead.from_doc(job.payload["lead"])
        _log_result(job, await orchestrator.on_lead_created(lead))

    async def handle_lead_updated(job: Job) -> None:
        before = Lead.from_doc(job.payload["before"])
        after = Lead.from_doc(job.payload["after"])
        _log_result(job, await orchestrator.on_lead_updated(before, after))

    async def handle_closer_updated(job: Job) -> None:
        before = Closer.from_doc(job.payload["before"])
        after = Closer.from_doc(job.payload["after"])
        _log_result(job, await orchestrator.on_closer_updated(before, after))

    return {
        JOB_LEAD_CREATED: handle_lead_created,
        JOB_LEAD_UPDATED: handle_lead_updated,
        JOB_CLOSER_UPDATED: handle_closer_updated,
    }
