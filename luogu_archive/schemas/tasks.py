from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from luogu_archive.models.content import SOURCE_ID_PATTERN, ContentKind


def _check_source_id(v: str) -> str:
    v = (v or "").strip()
    if not SOURCE_ID_PATTERN.match(v):
        raise ValueError("source id must be 8 alphanumeric characters")
    return v


class SavePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    source_id: str = Field(alias="sourceId")
    cookie: str | None = None

    @field_validator("source_id")
    @classmethod
    def source_id_must_be_valid(cls, v: str) -> str:
        return _check_source_id(v)


class BatchSavePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kind: ContentKind
    source_ids: list[str] = Field(alias="sourceIds", min_length=1, max_length=50)
    cookie: str | None = None

    @field_validator("source_ids")
    @classmethod
    def source_ids_must_be_valid(cls, v: list[str]) -> list[str]:
        return [_check_source_id(s) for s in v]


class CleanupPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    older_than_days: int = Field(30, alias="olderThanDays", ge=1)
    reconcile_stranded: bool = Field(False, alias="reconcileStranded")
    stranded_after_minutes: int = Field(60, alias="strandedAfterMinutes", ge=1)


class SaveRequest(BaseModel):
    cookie: str | None = None


class SubmitTaskRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    payload: dict = {}
    max_attempts: int | None = Field(None, alias="maxAttempts", ge=1, le=10)
    priority: Literal["low", "normal", "high", "urgent"] = "normal"

    @field_validator("type")
    @classmethod
    def type_must_not_be_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("type must not be empty")
        return v.strip()


class SubmitTaskResponse(BaseModel):
    job_id: str
    status: str = "queued"


class MetadataResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    word_count: int
    reading_time: int
    has_images: bool
    has_code: bool


class EntityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: ContentKind
    source_id: str
    source_url: str
    title: str
    body: str
    author_id: str
    author_name: str
    category: str
    tags: list[str]
    published_at: datetime | None
    status: str
    metadata: MetadataResponse
    crawled_at: datetime | None


class SaveResponse(BaseModel):
    status: Literal["saved", "failed"]
    message: str
    action: str | None = None
    failure_class: str | None = None
    entity: EntityResponse | None = None


class JobErrorResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    message: str
    classification: str


class JobStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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
    error: JobErrorResponse | None = None


class QueueStatsResponse(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int


class CancelResponse(BaseModel):
    cancelled: bool
