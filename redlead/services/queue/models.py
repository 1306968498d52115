"""Job queue state models.

Jobs are stored as Redis hashes; every field round-trips through strings.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class JobStatus(str, Enum):
    """Job lifecycle.

        WAITING -> ACTIVE -> COMPLETED
                          -> DELAYED (retry with backoff) -> WAITING
                          -> FAILED (attempts exhausted or unrecoverable)
        DELAYED is also the state of a repeat occurrence not yet due.
    """
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class UnrecoverableJobError(Exception):
    """Raise from a processor to fail the job without further retries."""


class StalledJobError(Exception):
    """Recorded as the failure reason of a job whose worker stopped renewing its lock."""


@dataclass
class RepeatOptions:
    """Cron-style recurrence (5-field minute pattern)."""
    pattern: str
    tz: str = "UTC"

    def key(self, job_name: str) -> str:
        return f"{job_name}:{self.pattern}:{self.tz}"


@dataclass
class JobOptions:
    """Per-job options; unset fields fall back to the queue defaults."""
    priority: int = 3
    attempts: int = 3
    backoff_delay: float = 1.0  # seconds, doubled per attempt
    delay: float = 0.0          # seconds before the job becomes ready

    def merged(self, **overrides) -> "JobOptions":
        values = {k: v for k, v in overrides.items() if v is not None}
        return JobOptions(
            priority=values.get("priority", self.priority),
            attempts=values.get("attempts", self.attempts),
            backoff_delay=values.get("backoff_delay", self.backoff_delay),
            delay=values.get("delay", self.delay),
        )

    def backoff_for(self, attempts_made: int) -> float:
        """Exponential backoff before the retry following attempt N."""
        return self.backoff_delay * (2 ** max(attempts_made - 1, 0))


@dataclass
class RetentionPolicy:
    """How many finished jobs each queue keeps for inspection."""
    keep_completed: int = 100
    completed_max_age: int = 24 * 3600  # seconds
    keep_failed: int = 500


@dataclass
class Job:
    """A unit of work owned by one queue."""
    id: str
    queue_name: str
    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    options: JobOptions = field(default_factory=JobOptions)
    status: JobStatus = JobStatus.WAITING
    attempts_made: int = 0
    created_at: int = 0       # epoch ms
    processed_at: Optional[int] = None
    finished_at: Optional[int] = None
    failed_reason: Optional[str] = None
    repeat_key: Optional[str] = None
    scheduled_for: Optional[int] = None  # epoch ms of the repeat occurrence

    @property
    def priority(self) -> int:
        return self.options.priority

    @property
    def attempts(self) -> int:
        return self.options.attempts

    @property
    def has_attempts_left(self) -> bool:
        return self.attempts_made < self.options.attempts

    def to_hash(self) -> Dict[str, str]:
        """Flatten into a Redis hash mapping (no None values)."""
        mapping = {
            "id": self.id,
            "queue": self.queue_name,
            "name": self.name,
            "data": json.dumps(self.data, default=str),
            "priority": str(self.options.priority),
            "attempts": str(self.options.attempts),
            "backoff_delay": str(self.options.backoff_delay),
            "status": self.status.value,
            "attempts_made": str(self.attempts_made),
            "created_at": str(self.created_at),
        }
        optional = {
            "processed_at": self.processed_at,
            "finished_at": self.finished_at,
            "failed_reason": self.failed_reason,
            "repeat_key": self.repeat_key,
            "scheduled_for": self.scheduled_for,
        }
        mapping.update({k: str(v) for k, v in optional.items() if v is not None})
        return mapping

    @classmethod
    def from_hash(cls, raw: Dict[str, str]) -> "Job":
        def _int(name: str) -> Optional[int]:
            value = raw.get(name)
            return int(value) if value not in (None, "") else None

        return cls(
            id=raw["id"],
            queue_name=raw["queue"],
            name=raw["name"],
            data=json.loads(raw.get("data") or "{}"),
            options=JobOptions(
                priority=int(raw.get("priority", 3)),
                attempts=int(raw.get("attempts", 3)),
                backoff_delay=float(raw.get("backoff_delay", 1.0)),
            ),
            status=JobStatus(raw.get("status", JobStatus.WAITING.value)),
            attempts_made=int(raw.get("attempts_made", 0)),
            created_at=int(raw.get("created_at", 0)),
            processed_at=_int("processed_at"),
            finished_at=_int("finished_at"),
            failed_reason=raw.get("failed_reason") or None,
            repeat_key=raw.get("repeat_key") or None,
            scheduled_for=_int("scheduled_for"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue_name,
            "name": self.name,
            "data": self.data,
            "priority": self.options.priority,
            "attempts": self.options.attempts,
            "attempts_made": self.attempts_made,
            "status": self.status.value,
            "created_at": self.created_at,
            "processed_at": self.processed_at,
            "finished_at": self.finished_at,
            "failed_reason": self.failed_reason,
            "repeat_key": self.repeat_key,
        }
