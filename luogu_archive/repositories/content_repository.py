import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any

from luogu_archive.db.connection import get_connection
from luogu_archive.models.content import ContentEntity, ContentKind, ContentMetadata
from luogu_archive.repositories.base import AbstractContentRepository

logger = logging.getLogger(__name__)

_MUTABLE_FIELDS = (
    "title",
    "body",
    "author_id",
    "author_name",
    "category",
    "tags",
    "published_at",
    "status",
    "word_count",
    "reading_time",
    "has_images",
    "has_code",
    "crawled_at",
)


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, bool):
        return int(value)
    return value


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_entity(row: sqlite3.Row) -> ContentEntity:
    return ContentEntity(
        kind=ContentKind(row["kind"]),
        source_id=row["source_id"],
        title=row["title"],
        body=row["body"],
        author_id=row["author_id"],
        author_name=row["author_name"],
        category=row["category"],
        tags=json.loads(row["tags"] or "[]"),
        published_at=_parse_dt(row["published_at"]),
        status=row["status"],
        metadata=ContentMetadata(
            word_count=row["word_count"],
            reading_time=row["reading_time"],
            has_images=bool(row["has_images"]),
            has_code=bool(row["has_code"]),
        ),
        crawled_at=_parse_dt(row["crawled_at"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


class ContentRepository(AbstractContentRepository):
    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def find_entity(self, kind: ContentKind, source_id: str) -> ContentEntity | None:
        with get_connection(self._db_path) as conn:
            row = conn.execute(
                "SELECT * FROM content_entities WHERE kind = ? AND source_id = ?",
                (ContentKind(kind).value, source_id),
            ).fetchone()
        return _row_to_entity(row) if row else None

    def upsert_entity(
        self, kind: ContentKind, source_id: str, fields: dict[str, Any]
    ) -> ContentEntity:
        """
        Insert or update the entity keyed by (kind, source_id).
        Preserves created_at on update; only the supplied fields are overwritten.
        """
        unknown = set(fields) - set(_MUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"unknown entity fields: {sorted(unknown)}")

        now = datetime.now(timezone.utc).isoformat()
        columns = list(fields)
        values = [_to_db(fields[c]) for c in columns]
        assignments = ",\n                    ".join(f"{c} = excluded.{c}" for c in columns)
        # crawled_at alone does not count as a content change
        content_changed = " OR ".join(
            f"content_entities.{c} IS NOT excluded.{c}" for c in columns if c != "crawled_at"
        ) or "0"

        with get_connection(self._db_path) as conn:
            conn.execute(
                f"""
                INSERT INTO content_entities
                    (kind, source_id, {", ".join(columns)}, created_at, updated_at)
                VALUES (?, ?, {", ".join("?" for _ in columns)}, ?, ?)
                ON CONFLICT(kind, source_id) DO UPDATE SET
                    {assignments},
                    created_at = content_entities.created_at,
                    updated_at = CASE WHEN {content_changed}
                        THEN excluded.updated_at ELSE content_entities.updated_at END
                """,
                (ContentKind(kind).value, source_id, *values, now, now),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM content_entities WHERE kind = ? AND source_id = ?",
                (ContentKind(kind).value, source_id),
            ).fetchone()
        logger.debug("[store] entity upserted | kind=%s | source_id=%s", kind, source_id)
        return _row_to_entity(row)
