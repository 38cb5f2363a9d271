from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from luogu_archive.models.content import ContentEntity, ContentKind
from luogu_archive.models.job import JobStatusView, TaskJob


class AbstractContentRepository(ABC):
    @abstractmethod
    def find_entity(self, kind: ContentKind, source_id: str) -> ContentEntity | None:
        """Return the entity stored under (kind, source_id), or None."""

    @abstractmethod
    def upsert_entity(
        self, kind: ContentKind, source_id: str, fields: dict[str, Any]
    ) -> ContentEntity:
        """Create or update-in-place the entity keyed by (kind, source_id). Returns the stored row."""


class AbstractJobRepository(ABC):
    @abstractmethod
    def create_job(self, job: TaskJob) -> None:
        """Persist a newly submitted job."""

    @abstractmethod
    def update_job_status(self, job_id: str, fields: dict[str, Any]) -> None:
        """Write the given status fields onto an existing job row."""

    @abstractmethod
    def find_job(self, job_id: str) -> JobStatusView | None:
        """Return the persisted projection of a job, or None."""

    @abstractmethod
    def find_pending_jobs(self, limit: int) -> list[TaskJob]:
        """Return up to `limit` pending jobs, oldest first."""

    @abstractmethod
    def count_jobs_by_status(self, status: str) -> int:
        """Count persisted jobs in the given status."""

    @abstractmethod
    def delete_completed_jobs_before(self, cutoff: datetime) -> int:
        """Delete completed jobs finished before `cutoff`. Returns the number removed."""

    @abstractmethod
    def fail_stranded_jobs(
        self, started_before: datetime, exclude_ids: set[str], message: str
    ) -> int:
        """Mark `processing` jobs started before the cutoff as failed. Returns the number touched."""
