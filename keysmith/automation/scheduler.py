"""
Job Scheduler — bounded background automation with time-boxed leases.

submit() reserves a slot, hands the job an exclusive resource and starts
the action as an asyncio task; it returns the job id straight away. Callers
poll for the outcome. Every job holds its resource under a lease that ends at
its deadline: past it, the resource is reclaimed (by a poll or the sweeper)
and any late result from the task is discarded.

Job lifecycle:
    running → completed | failed → purged (after result_retention)
    running → reclaimed (deadline passed) → purged
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from keysmith.automation.actions import Action, ActionRegistry, validate_name
from keysmith.automation.models import (
    AutomationJob,
    JobContext,
    JobPoll,
    JobPollStatus,
    JobStatus,
)
from keysmith.automation.resources import PlaywrightBrowserPool, ResourcePool
from keysmith.config import AutomationConfig
from keysmith.errors import CapacityExceededError, ResourceError, ValidationError

logger = logging.getLogger(__name__)

JOB_ID_BYTES = 8


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JobScheduler:
    """Runs automation actions with a fixed concurrency ceiling."""

    def __init__(
        self,
        config: AutomationConfig | None = None,
        *,
        pool: ResourcePool | None = None,
        registry: ActionRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or AutomationConfig()
        self.pool = pool or PlaywrightBrowserPool(self.config)
        self.registry = registry or ActionRegistry(self.config.plugins_dir)
        self._now = clock or _utcnow
        self._jobs: dict[str, AutomationJob] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._sweeper: asyncio.Task[None] | None = None

    # ── Lifecycle ────────────────────────────────────────────────────

    @property
    def running_count(self) -> int:
        return sum(1 for job in self._jobs.values() if job.status is JobStatus.RUNNING)

    def start(self) -> None:
        """Start the expiry sweeper. Called lazily by submit()."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="job-sweeper")

    async def stop(self) -> None:
        """Cancel the sweeper and every task, release all resources, close the pool."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        for job in list(self._jobs.values()):
            await self._release(job)
        self._jobs.clear()

        try:
            await self.pool.close()
        except Exception as e:
            logger.warning("Failed to close resource pool: %s", e)
        logger.info("Job scheduler stopped")

    # ── Submit / poll ────────────────────────────────────────────────

    async def submit(
        self,
        service_name: str,
        action_name: str,
        params: dict[str, Any] | None = None,
    ) -> str:
        """Start ``service_name.action_name`` in the background; return its job id."""
        validate_name("service", service_name)
        validate_name("action", action_name)
        if params is not None and not isinstance(params, dict):
            raise ValidationError("params must be an object")

        action = self.registry.resolve(service_name, action_name)
        if action is None:
            raise ValidationError(f"No automation available for {service_name}.{action_name}")

        if self.running_count >= self.config.max_concurrent_jobs:
            await self.sweep()
            if self.running_count >= self.config.max_concurrent_jobs:
                raise CapacityExceededError(
                    "Maximum number of concurrent automation jobs reached. Please try again later."
                )

        now = self._now()
        job = AutomationJob(
            id=secrets.token_hex(JOB_ID_BYTES),
            service_name=service_name,
            action_name=action_name,
            created_at=now,
            expires_at=now + timedelta(seconds=self.config.job_timeout),
        )
        self._jobs[job.id] = job

        try:
            resource = await self.pool.acquire(job.id)
        except ResourceError:
            self._jobs.pop(job.id, None)
            raise
        except Exception as e:
            self._jobs.pop(job.id, None)
            raise ResourceError(
                f"Could not acquire resource for {service_name}.{action_name}: {e}"
            ) from e

        if self._jobs.get(job.id) is not job:
            await self.pool.release(resource)
            raise ResourceError("Job was reclaimed before it started")
        job.resource = resource

        ctx = JobContext(
            job_id=job.id,
            service_name=service_name,
            action_name=action_name,
            resource=resource,
            deadline=job.expires_at,
            params=dict(params or {}),
            user_agent=self.config.user_agent,
        )
        task = asyncio.create_task(self._run(job, action, ctx), name=f"job-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))

        self.start()
        logger.info("Job %s started: %s.%s", job.id, service_name, action_name)
        return job.id

    async def poll_status(self, job_id: str) -> JobPoll:
        job = self._jobs.get(job_id)
        if job is None:
            return JobPoll(JobPollStatus.NOT_FOUND, error="Job not found")

        now = self._now()
        if job.is_overdue(now):
            await self._reclaim(job, reason="Job has expired")
            return JobPoll(JobPollStatus.EXPIRED, error="Job has expired")

        if job.status is JobStatus.RUNNING:
            return JobPoll(JobPollStatus.RUNNING)

        if self._retention_over(job, now):
            self._jobs.pop(job_id, None)
            return JobPoll(JobPollStatus.NOT_FOUND, error="Job not found")

        if job.status is JobStatus.COMPLETED:
            return JobPoll(JobPollStatus.COMPLETED, result=job.result)
        return JobPoll(JobPollStatus.FAILED, error=job.error)

    def get_job(self, job_id: str) -> AutomationJob | None:
        return self._jobs.get(job_id)

    # ── Execution ────────────────────────────────────────────────────

    async def _run(self, job: AutomationJob, action: Action, ctx: JobContext) -> None:
        try:
            result = await action(ctx)
        except Exception as e:
            logger.warning("Job %s (%s.%s) failed: %s", job.id, job.service_name, job.action_name, e)
            self._finish(job, JobStatus.FAILED, error=str(e) or type(e).__name__)
        else:
            self._finish(job, JobStatus.COMPLETED, result=result)
        finally:
            await self._release(job)

    def _finish(
        self,
        job: AutomationJob,
        status: JobStatus,
        *,
        result: Any = None,
        error: str | None = None,
    ) -> None:
        if self._jobs.get(job.id) is not job or job.status is not JobStatus.RUNNING:
            logger.info("Discarding late outcome for reclaimed job %s", job.id)
            return
        if self._now() > job.expires_at:
            # Stays RUNNING until the next poll or sweep reclaims it as expired.
            logger.info("Discarding outcome of job %s finished past its deadline", job.id)
            return
        job.status = status
        job.result = result
        job.error = error
        job.completed_at = self._now()
        logger.info("Job %s %s", job.id, status.value)

    async def _release(self, job: AutomationJob) -> None:
        resource, job.resource = job.resource, None
        if resource is None:
            return
        try:
            await self.pool.release(resource)
        except Exception as e:
            logger.warning("Failed to release resource for job %s: %s", job.id, e)

    async def _reclaim(self, job: AutomationJob, reason: str) -> None:
        job.status = JobStatus.FAILED
        job.error = reason
        job.completed_at = self._now()
        self._jobs.pop(job.id, None)
        await self._release(job)
        logger.info("Reclaimed job %s: %s", job.id, reason)

    def _retention_over(self, job: AutomationJob, now: datetime) -> bool:
        if job.completed_at is None:
            return False
        return now > job.completed_at + timedelta(seconds=self.config.result_retention)

    # ── Cleanup ──────────────────────────────────────────────────────

    async def sweep(self) -> int:
        """Reclaim overdue running jobs and purge terminal ones past retention."""
        now = self._now()
        removed = 0
        for job in list(self._jobs.values()):
            if job.is_overdue(now):
                await self._reclaim(job, reason="Job timed out")
                removed += 1
            elif job.terminal and self._retention_over(job, now):
                self._jobs.pop(job.id, None)
                removed += 1
        if removed:
            logger.info("Swept %d automation jobs", removed)
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.warning("Automation job sweep failed: %s", e)
