"""
Keysmith Automation — background browser jobs that fetch credentials.

Public API:
    scheduler = JobScheduler(config.automation)
    job_id = await scheduler.submit("openai", "fetchKey", params)
    await scheduler.poll_status(job_id)  → running | completed | failed | expired | not_found
    await scheduler.stop()
"""

from __future__ import annotations

from keysmith.automation.actions import ActionRegistry
from keysmith.automation.models import AutomationJob, JobContext, JobPoll, JobPollStatus, JobStatus
from keysmith.automation.resources import PlaywrightBrowserPool, ResourcePool
from keysmith.automation.scheduler import JobScheduler

__all__ = [
    "ActionRegistry",
    "AutomationJob",
    "JobContext",
    "JobPoll",
    "JobPollStatus",
    "JobScheduler",
    "JobStatus",
    "PlaywrightBrowserPool",
    "ResourcePool",
]
