"""
Data models for background automation jobs.

Plain dataclasses, like the rest of the runtime state: jobs live only in
memory and never outlive the process.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class JobStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPollStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


@dataclass
class AutomationJob:
    """One submitted action. ``resource`` is owned by this job alone."""

    id: str
    service_name: str
    action_name: str
    created_at: datetime
    expires_at: datetime
    status: JobStatus = JobStatus.RUNNING
    result: Any = None
    error: str | None = None
    completed_at: datetime | None = None
    resource: Any = None

    @property
    def terminal(self) -> bool:
        return self.status is not JobStatus.RUNNING

    def is_overdue(self, now: datetime) -> bool:
        return self.status is JobStatus.RUNNING and now > self.expires_at


@dataclass(frozen=True)
class JobPoll:
    status: JobPollStatus
    result: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value}
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class JobContext:
    """What an action gets to work with."""

    job_id: str
    service_name: str
    action_name: str
    resource: Any
    deadline: datetime
    params: dict[str, Any] = field(default_factory=dict)
    user_agent: str = ""
