from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from luogu_archive.models.content import ContentEntity, ContentMetadata, ContentRecord


class FailureClass(str, Enum):
    AUTH_REQUIRED = "auth_required"
    AUTH_EXPIRED = "auth_expired"
    CHALLENGE_REQUIRED = "challenge_required"
    BLOCKED = "blocked"
    NOT_FOUND = "not_found"
    UNEXPECTED_REDIRECT = "unexpected_redirect"
    HTTP_ERROR = "http_error"
    PARSE_FAILED = "parse_failed"


@dataclass
class CrawlOutcome:
    success: bool
    message: str = ""
    record: "ContentRecord | None" = None
    metadata: "ContentMetadata | None" = None
    failure_class: FailureClass | None = None
    http_status: int | None = None

    @classmethod
    def failed(
        cls, failure_class: FailureClass, message: str, http_status: int | None = None
    ) -> "CrawlOutcome":
        return cls(
            success=False,
            message=message,
            failure_class=failure_class,
            http_status=http_status,
        )

    @property
    def rate_limited(self) -> bool:
        return self.failure_class is FailureClass.BLOCKED and self.http_status == 451


@dataclass
class SaveResult:
    success: bool
    message: str
    entity: "ContentEntity | None" = None
    action: str | None = None
    failure_class: FailureClass | None = None
    attempts: int = 1
