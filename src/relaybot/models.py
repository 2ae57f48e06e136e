from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

from .utils import new_job_id, now_ms

JOB_NAMESPACE = "job"
KEY_SEPARATOR = ":"


class WorkerState(IntEnum):
    INITIALIZING = 0
    IDLE = 1
    BUSY = 2
    TERMINATING = 3


class JobAction(str, Enum):
    STATUS = "status"
    TERMINATE = "terminate"
    CHAT = "chat"
    GENERATE = "generate"
    EMBED = "embed"


class PoolAction(str, Enum):
    """Messages sent from the pool to a worker."""

    STATUS = "status"
    TERMINATE = "terminate"


class WorkerResponse(str, Enum):
    """Messages sent from a worker back to the pool."""

    READY = "response:ready"
    COMPLETE = "response:complete"
    STATUS = "response:status"
    TERMINATE = "response:terminate"
    UNKNOWN = "response:unknown"
    ERROR = "response:error"
    # the worker could not claim the job; it stays pending
    RELEASE = "response:release"
    # synthesized by the worker handle when the process goes away
    EXIT = "response:exit"


@dataclass(frozen=True, slots=True)
class Job:
    data: dict[str, Any]
    engine: str
    priority: int = 0
    job_id: str = field(default_factory=new_job_id)
    created_at: int = field(default_factory=now_ms)

    @property
    def key(self) -> str:
        return job_key(self.job_id, self.priority, self.created_at)

    @property
    def action(self) -> JobAction:
        return JobAction(self.data.get("action"))

    @property
    def payload(self) -> dict[str, Any]:
        payload = self.data.get("payload")
        return payload if isinstance(payload, dict) else {}

    @property
    def reply_to(self) -> dict[str, Any]:
        reply_to = self.data.get("reply_to")
        return reply_to if isinstance(reply_to, dict) else {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "data": self.data,
            "engine": self.engine,
            "priority": self.priority,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any], job_id: str | None = None) -> Job:
        return cls(
            data=dict(raw.get("data") or {}),
            engine=str(raw["engine"]),
            priority=int(raw.get("priority", 0)),
            job_id=job_id or str(raw["jobId"]),
            created_at=int(raw["createdAt"]),
        )


@dataclass(frozen=True, slots=True)
class JobKey:
    job_id: str
    key: str
    priority: int
    created_at: int

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.priority, self.created_at)


def job_key(job_id: str, priority: int, created_at: int) -> str:
    return KEY_SEPARATOR.join([JOB_NAMESPACE, job_id, str(priority), str(created_at)])


def parse_job_key(key: str) -> JobKey | None:
    parts = key.split(KEY_SEPARATOR)
    if len(parts) != 4 or parts[0] != JOB_NAMESPACE:
        return None
    _, job_id, priority, created_at = parts
    if not job_id or not priority or not created_at:
        return None
    try:
        return JobKey(job_id=job_id, key=key, priority=int(priority), created_at=int(created_at))
    except ValueError:
        return None


def sort_list_by_keys(keys: Iterable[str]) -> list[JobKey]:
    """Order storage keys by numeric (priority, created_at), dropping malformed keys."""
    parsed = [job for job in (parse_job_key(key) for key in keys) if job is not None]
    return sorted(parsed, key=lambda job: job.sort_key)
