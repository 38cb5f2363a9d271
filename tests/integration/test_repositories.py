"""Integration tests for the SQLite-backed repositories."""
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from luogu_archive.db.connection import run_migrations
from luogu_archive.models.content import ContentKind
from luogu_archive.models.job import JobStatus, TaskJob
from luogu_archive.repositories.content_repository import ContentRepository
from luogu_archive.repositories.job_repository import JobRepository


@pytest.fixture
def db_path():
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    run_migrations(path)
    return path


def _count(db_path: str, table: str) -> int:
    conn = sqlite3.connect(db_path)
    row = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
    conn.close()
    return row[0]


def _fields(**overrides):
    fields = {
        "title": "Title",
        "body": "<p>body</p>",
        "author_id": "1",
        "author_name": "someone",
        "category": "未分类",
        "tags": ["dp"],
        "published_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "status": "completed",
        "word_count": 4,
        "reading_time": 1,
        "has_images": False,
        "has_code": True,
        "crawled_at": datetime.now(timezone.utc),
    }
    fields.update(overrides)
    return fields


def test_migrations_are_idempotent(db_path):
    run_migrations(db_path)
    conn = sqlite3.connect(db_path)
    applied = conn.execute("SELECT COUNT(*) FROM _schema_migrations").fetchone()[0]
    conn.close()
    assert applied == 1


def test_upsert_updates_in_place(db_path):
    repo = ContentRepository(db_path)

    first = repo.upsert_entity(ContentKind.ARTICLE, "abcd1234", _fields())
    second = repo.upsert_entity(ContentKind.ARTICLE, "abcd1234", _fields(title="Renamed"))

    assert _count(db_path, "content_entities") == 1
    assert second.title == "Renamed"
    assert second.created_at == first.created_at
    assert second.updated_at >= first.updated_at
    assert second.tags == ["dp"]
    assert second.metadata.has_code is True
    assert second.metadata.has_images is False


def test_upsert_same_content_only_moves_crawled_at(db_path):
    repo = ContentRepository(db_path)
    first_crawl = datetime(2024, 1, 1, tzinfo=timezone.utc)
    second_crawl = first_crawl + timedelta(hours=1)

    first = repo.upsert_entity(ContentKind.ARTICLE, "abcd1234", _fields(crawled_at=first_crawl))
    second = repo.upsert_entity(ContentKind.ARTICLE, "abcd1234", _fields(crawled_at=second_crawl))

    assert second.crawled_at == second_crawl
    first.crawled_at = second.crawled_at = None
    assert second == first


def test_same_id_different_kind_are_separate(db_path):
    repo = ContentRepository(db_path)
    repo.upsert_entity(ContentKind.ARTICLE, "abcd1234", _fields())
    repo.upsert_entity(ContentKind.PASTE, "abcd1234", _fields())
    assert _count(db_path, "content_entities") == 2


def test_find_entity(db_path):
    repo = ContentRepository(db_path)
    assert repo.find_entity(ContentKind.PASTE, "abcd1234") is None

    repo.upsert_entity(ContentKind.PASTE, "abcd1234", _fields(title="中文标题"))
    entity = repo.find_entity(ContentKind.PASTE, "abcd1234")

    assert entity.kind is ContentKind.PASTE
    assert entity.title == "中文标题"
    assert entity.published_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert entity.source_url.endswith("/paste/abcd1234")


def test_upsert_rejects_unknown_fields(db_path):
    repo = ContentRepository(db_path)
    with pytest.raises(ValueError):
        repo.upsert_entity(ContentKind.ARTICLE, "abcd1234", {"title": "t", "votes": 3})


def test_job_round_trip(db_path):
    repo = JobRepository(db_path)
    job = TaskJob(id="task_1", job_type="article_save", payload={"sourceId": "abcd1234"}, priority="high")
    repo.create_job(job)

    view = repo.find_job("task_1")
    assert view.status == "pending"
    assert view.job_type == "article_save"
    assert view.error is None

    repo.update_job_status(
        "task_1",
        {
            "status": "failed",
            "attempts": 3,
            "error_message": "requires login",
            "error_classification": "auth_required",
            "result": {"partial": True},
        },
    )
    view = repo.find_job("task_1")
    assert view.status == "failed"
    assert view.attempts == 3
    assert view.error.message == "requires login"
    assert view.error.classification == "auth_required"
    assert view.result == {"partial": True}


def test_update_job_rejects_unknown_fields(db_path):
    repo = JobRepository(db_path)
    repo.create_job(TaskJob(id="task_1", job_type="cleanup", payload={}))
    with pytest.raises(ValueError):
        repo.update_job_status("task_1", {"payload": {}})


def test_find_pending_jobs_oldest_first_with_limit(db_path):
    repo = JobRepository(db_path)
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for n in (3, 1, 2):
        repo.create_job(
            TaskJob(id=f"task_{n}", job_type="cleanup", payload={}, created_at=base + timedelta(minutes=n))
        )
    repo.update_job_status("task_2", {"status": "processing"})

    assert [j.id for j in repo.find_pending_jobs(10)] == ["task_1", "task_3"]
    assert [j.id for j in repo.find_pending_jobs(1)] == ["task_1"]
    assert repo.count_jobs_by_status(JobStatus.PENDING.value) == 2


def test_delete_completed_jobs_before(db_path):
    repo = JobRepository(db_path)
    now = datetime.now(timezone.utc)
    for job_id, age in (("task_old", 40), ("task_new", 2)):
        repo.create_job(TaskJob(id=job_id, job_type="cleanup", payload={}))
        repo.update_job_status(job_id, {"status": "completed", "completed_at": now - timedelta(days=age)})
    repo.create_job(TaskJob(id="task_failed", job_type="cleanup", payload={}))
    repo.update_job_status("task_failed", {"status": "failed", "completed_at": now - timedelta(days=90)})

    assert repo.delete_completed_jobs_before(now - timedelta(days=30)) == 1
    assert repo.find_job("task_old") is None
    assert repo.find_job("task_new") is not None
    assert repo.find_job("task_failed") is not None


def test_fail_stranded_jobs_skips_excluded(db_path):
    repo = JobRepository(db_path)
    started = datetime.now(timezone.utc) - timedelta(hours=2)
    for job_id in ("task_a", "task_b"):
        repo.create_job(TaskJob(id=job_id, job_type="cleanup", payload={}))
        repo.update_job_status(job_id, {"status": "processing", "started_at": started})

    count = repo.fail_stranded_jobs(datetime.now(timezone.utc) - timedelta(hours=1), {"task_b"}, "stranded")

    assert count == 1
    assert repo.find_job("task_a").status == "failed"
    assert repo.find_job("task_a").error.classification == "stranded"
    assert repo.find_job("task_b").status == "processing"
