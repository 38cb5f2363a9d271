import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from luogu_archive.config import settings

SOURCE_ID_PATTERN = re.compile(r"^[A-Za-z0-9]{8}$")

UNKNOWN_AUTHOR_ID = "unknown"
UNKNOWN_AUTHOR_NAME = "未知作者"
UNCATEGORIZED = "未分类"


class ContentKind(str, Enum):
    ARTICLE = "article"
    PASTE = "paste"

    @property
    def untitled(self) -> str:
        return "未命名文章" if self is ContentKind.ARTICLE else "未命名剪切板"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CrawlTarget:
    kind: ContentKind
    source_id: str

    @property
    def source_url(self) -> str:
        return f"{settings.BASE_URL.rstrip('/')}/{self.kind.value}/{self.source_id}"


@dataclass
class ContentRecord:
    title: str
    body: str
    author_id: str = UNKNOWN_AUTHOR_ID
    author_name: str = UNKNOWN_AUTHOR_NAME
    category: str = UNCATEGORIZED
    tags: list[str] = field(default_factory=list)
    published_at: datetime = field(default_factory=_utcnow)


@dataclass
class ContentMetadata:
    word_count: int = 0
    reading_time: int = 0
    has_images: bool = False
    has_code: bool = False


@dataclass
class ContentEntity:
    kind: ContentKind
    source_id: str
    title: str
    body: str
    author_id: str
    author_name: str
    category: str = UNCATEGORIZED
    tags: list[str] = field(default_factory=list)
    published_at: datetime | None = None
    status: str = "pending"
    metadata: ContentMetadata = field(default_factory=ContentMetadata)
    crawled_at: datetime | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def source_url(self) -> str:
        return CrawlTarget(self.kind, self.source_id).source_url
