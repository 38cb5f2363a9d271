from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobType(str, Enum):
    ARTICLE_SAVE = "article_save"
    PASTE_SAVE = "paste_save"
    BATCH_SAVE = "batch_save"
    CLEANUP = "cleanup"


class JobEvent(str, Enum):
    ADDED = "job_added"
    STARTED = "job_started"
    COMPLETED = "job_completed"
    FAILED = "job_failed"
    RETRY_SCHEDULED = "job_retry_scheduled"
    CANCELLED = "job_cancelled"


PRIORITY_RANK = {"low": 0, "normal": 1, "high": 2, "urgent": 3}


@dataclass(frozen=True)
class JobError:
    """Serializable projection of a handler failure."""

    message: str
    classification: str


@dataclass
class JobStatusView:
    job_id: str
    job_type: str
    status: str
    progress: int
    attempts: int
    max_attempts: int
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    cancelled_at: datetime | None = None
    result: dict | None = None
    error: JobError | None = None


@dataclass
class TaskJob:
    id: str
    job_type: str
    payload: dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    priority: str = "normal"
    progress: int = 0
    attempts: int = 0
    max_attempts: int = 3
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    cancelled_at: datetime | None = None
    result: dict | None = None
    error: JobError | None = None
    # Monotonic clock reading before which the dispatch loop must not pick
    # this job up. In-memory only.
    not_before: float = 0.0

    @property
    def priority_rank(self) -> int:
        return PRIORITY_RANK.get(self.priority, PRIORITY_RANK["normal"])

    def to_view(self) -> JobStatusView:
        return JobStatusView(
            job_id=self.id,
            job_type=self.job_type,
            status=self.status.value,
            progress=self.progress,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            failed_at=self.failed_at,
            cancelled_at=self.cancelled_at,
            result=self.result,
            error=self.error,
        )


@dataclass(frozen=True)
class JobNotification:
    event: JobEvent
    job_id: str
    job_type: str
    status: str
    snapshot: JobStatusView
