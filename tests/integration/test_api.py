"""Integration tests for the HTTP surface."""
import tempfile
import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from luogu_archive.config import settings
from luogu_archive.main import create_app
from luogu_archive.models.content import ContentKind, ContentMetadata
from luogu_archive.models.crawl import FailureClass, SaveResult
from luogu_archive.repositories.content_repository import ContentRepository


@pytest.fixture
def db_path(monkeypatch):
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    monkeypatch.setattr(settings, "DB_PATH", path)
    return path


@pytest.fixture
def client(db_path):
    app = create_app()
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


def _store_article(db_path: str):
    return ContentRepository(db_path).upsert_entity(
        ContentKind.ARTICLE,
        "abcd1234",
        {
            "title": "Stored",
            "body": "<p>hi</p>",
            "author_id": "7",
            "author_name": "someone",
            "category": "未分类",
            "tags": ["math"],
            "published_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
            "status": "completed",
            "word_count": 2,
            "reading_time": 1,
            "has_images": False,
            "has_code": False,
            "crawled_at": datetime.now(timezone.utc),
        },
    )


def _mock_save(result: SaveResult):
    return patch(
        "luogu_archive.services.crawler_service.CrawlerService.save_directly",
        AsyncMock(return_value=result),
    )


def _wait_for_status(client, job_id: str, status: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/tasks/{job_id}").json()
        if body.get("status") == status or time.monotonic() > deadline:
            return body
        time.sleep(0.05)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "queue_running": True}


def test_save_article(client, db_path):
    entity = _store_article(db_path)
    with _mock_save(SaveResult(success=True, message="article created", entity=entity, action="created")) as mock:
        response = client.post("/articles/abcd1234/save", json={"cookie": "uid=7"})

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "saved"
    assert data["action"] == "created"
    assert data["entity"]["title"] == "Stored"
    assert data["entity"]["metadata"]["word_count"] == 2
    target, cookie = mock.await_args.args
    assert target.kind is ContentKind.ARTICLE
    assert cookie == "uid=7"


def test_save_paste_without_body(client):
    failed = SaveResult(success=False, message="rate-limited/blocked", failure_class=FailureClass.BLOCKED, attempts=3)
    with _mock_save(failed) as mock:
        response = client.post("/pastes/abcd1234/save")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "failed"
    assert data["failure_class"] == "blocked"
    assert data["entity"] is None
    target, cookie = mock.await_args.args
    assert target.kind is ContentKind.PASTE
    assert cookie is None


def test_save_rejects_invalid_id(client):
    with _mock_save(SaveResult(success=True, message="unused")) as mock:
        response = client.post("/articles/short/save")
    assert response.status_code == 422
    mock.assert_not_awaited()


def test_get_article(client, db_path):
    assert client.get("/articles/abcd1234").status_code == 404

    _store_article(db_path)
    response = client.get("/articles/abcd1234")

    assert response.status_code == 200
    data = response.json()
    assert data["title"] == "Stored"
    assert data["tags"] == ["math"]
    assert data["source_url"].endswith("/article/abcd1234")
    assert client.get("/pastes/abcd1234").status_code == 404


def test_submit_cleanup_task(client):
    response = client.post("/tasks", json={"type": "cleanup", "payload": {"olderThanDays": 7}})
    assert response.status_code == 202
    job_id = response.json()["job_id"]

    body = _wait_for_status(client, job_id, "completed")

    assert body["status"] == "completed"
    assert body["result"]["deleted_count"] == 0
    assert body["progress"] == 100

    stats = client.get("/tasks/stats").json()
    assert stats["completed"] == 1
    assert stats["failed"] == 0


def test_submit_task_validation(client):
    assert client.post("/tasks", json={"type": "reindex"}).status_code == 422
    assert client.post("/tasks", json={"type": "article_save", "payload": {"sourceId": "x"}}).status_code == 422
    assert client.post("/tasks", json={"payload": {}}).status_code == 422
    assert client.post("/tasks", json={"type": "cleanup", "priority": "asap"}).status_code == 422


def test_unknown_task(client):
    assert client.get("/tasks/task_missing").status_code == 404
    response = client.delete("/tasks/task_missing")
    assert response.status_code == 200
    assert response.json() == {"cancelled": False}
