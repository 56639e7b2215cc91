# leadflow/infra/job_worker.py
"""
In-process async worker draining the trigger outbox.

Jobs of one claimed batch run concurrently across documents, but jobs
that touch the same document (same ``entity_id`` in the payload) run one
after another in write order.
"""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

from leadflow.infra.logging_config import get_logger
from leadflow.infra.metrics import inc_counter
from leadflow.infra.pg_job_repo_async import AsyncPostgresJobRepository, Job

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[None]]

# Housekeeping periods, seconds
STALE_RESET_PERIOD = 60.0
CLEANUP_PERIOD = 3600.0

# Pause between back-to-back non-empty batches
DRAIN_PAUSE = 0.1


def group_by_entity(jobs: list[Job]) -> list[list[Job]]:
    """Split a batch into per-document chains, preserving order."""
    chains: dict[str, list[Job]] = {}
    for job in jobs:
        chains.setdefault(str(job.payload.get("entity_id") or job.id), []).append(job)
    return list(chains.values())


class JobWorker:
    """
    Usage:
        worker = JobWorker(repo=get_job_repo())
        for job_type, handler in build_job_handlers(orchestrator).items():
            worker.register(job_type, handler)
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        repo: AsyncPostgresJobRepository,
        *,
        poll_interval: float = 1.0,
        batch_size: int = 10,
        base_retry_delay: float = 5.0,
        stale_timeout: int = 300,
        completed_ttl_days: int = 7,
        failed_ttl_days: int = 30,
    ):
        self._repo = repo
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._base_retry_delay = base_retry_delay
        self._stale_timeout = stale_timeout
        self._ttl_days = (completed_ttl_days, failed_ttl_days)
        self._handlers: dict[str, JobHandler] = {}
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()
        # Both chores are due on the first loop
        self._next_stale_reset = 0.0
        self._next_cleanup = 0.0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stopping.is_set()

    def register(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    async def start(self) -> None:
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop(), name="job_worker")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Job worker polling every {self._poll_interval}s "
            f"(batch={self._batch_size}, types={','.join(sorted(self._handlers))})"
        )

    async def stop(self) -> None:
        """Stop polling; the batch in flight is cancelled and its jobs reset later as stale."""
        self._stopping.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Job worker stopped")

    async def run_once(self) -> int:
        """Claim and execute one batch. Returns the number of jobs claimed."""
        jobs = await self._repo.claim_batch(self._batch_size)
        if jobs:
            await asyncio.gather(*(self._run_chain(chain) for chain in group_by_entity(jobs)))
        return len(jobs)

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self._chores()
                claimed = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Job worker iteration failed: {exc}", exc_info=True)
                inc_counter("job_worker_loop_errors")
                await asyncio.sleep(self._poll_interval * 2)
                continue
            await asyncio.sleep(DRAIN_PAUSE if claimed else self._poll_interval)

    async def _chores(self) -> None:
        now = time.monotonic()

        if now >= self._next_stale_reset:
            self._next_stale_reset = now + STALE_RESET_PERIOD
            try:
                await self._repo.reset_stale_running(self._stale_timeout)
            except Exception as exc:
                logger.warning(f"Could not requeue stale jobs: {exc}")

        if now >= self._next_cleanup:
            self._next_cleanup = now + CLEANUP_PERIOD
            try:
                await self._repo.cleanup(*self._ttl_days)
            except Exception as exc:
                logger.warning(f"Could not prune finished jobs: {exc}")

    async def _run_chain(self, chain: list[Job]) -> None:
        for job in chain:
            try:
                await self._run(job)
            except Exception as exc:
                # complete()/fail() themselves failed; the row stays 'running' until the stale reset
                logger.error(f"Could not record outcome of job {job.id}: {exc}", extra={"job_id": job.id})

    async def _run(self, job: Job) -> None:
        log_extra = {"job_id": job.id, "team_id": job.team_id}
        handler = self._handlers.get(job.job_type)
        if handler is None:
            inc_counter("jobs_unknown_type")
            logger.error(f"Job {job.id} has unregistered type {job.job_type}", extra=log_extra)
            await self._repo.fail(job.id, f"No handler registered for job_type={job.job_type}",
                                  base_delay=self._base_retry_delay)
            return

        try:
            await handler(job)
        except Exception as exc:
            reason = f"{exc.__class__.__name__}: {exc}"[:500]
            inc_counter("jobs_failed_attempt", job_type=job.job_type)
            logger.warning(
                f"{job.job_type} job {job.id} failed on attempt {job.attempts + 1}/{job.max_attempts}: {reason[:100]}",
                extra=log_extra,
            )
            await self._repo.fail(job.id, reason, base_delay=self._base_retry_delay)
            return

        await self._repo.complete(job.id)
        inc_counter("jobs_completed", job_type=job.job_type)
        logger.debug(f"{job.job_type} job {job.id} done", extra=log_extra)

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        exc = task.exception()
        logger.error(f"Job worker task exited: {exc}", exc_info=(type(exc), exc, exc.__traceback__))
