import asyncio
import logging
import math
import random
import re
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable
from urllib.parse import urlencode

import httpx
from bs4 import BeautifulSoup

from luogu_archive.config import settings
from luogu_archive.errors import NetworkError, NotFoundError, ValidationError
from luogu_archive.models.content import (
    SOURCE_ID_PATTERN,
    ContentEntity,
    ContentKind,
    ContentMetadata,
    ContentRecord,
    CrawlTarget,
)
from luogu_archive.models.crawl import CrawlOutcome, FailureClass, SaveResult
from luogu_archive.repositories.base import AbstractContentRepository
from luogu_archive.services import content_parser
from luogu_archive.services.session_fetcher import SessionFetcher

logger = logging.getLogger(__name__)

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
]

FAILURE_MESSAGES = {
    FailureClass.AUTH_REQUIRED: "requires login",
    FailureClass.AUTH_EXPIRED: "requires login: session cookie expired",
    FailureClass.CHALLENGE_REQUIRED: "requires human verification",
    FailureClass.BLOCKED: "rate-limited/blocked",
    FailureClass.NOT_FOUND: "not found",
    FailureClass.UNEXPECTED_REDIRECT: "unexpected redirect",
    FailureClass.HTTP_ERROR: "upstream HTTP error",
    FailureClass.PARSE_FAILED: "could not parse content",
}

_VERIFICATION_KEYWORDS = ("安全验证", "验证码", "安全检查", "安全检测")
_CONTINUE_LABEL = "继续访问"
_TAG = re.compile(r"<[^>]*>")
_IMG = re.compile(r"<img[^>]*>", re.IGNORECASE)
_CODE = re.compile(r"<pre[^>]*>|<code[^>]*>", re.IGNORECASE)

WORDS_PER_MINUTE = 200

Sleep = Callable[[float], Awaitable[None]]


def make_target(kind: ContentKind | str, source_id: str) -> CrawlTarget:
    """Validate caller input into a CrawlTarget. Raises ValidationError."""
    try:
        kind = ContentKind(kind)
    except ValueError as exc:
        raise ValidationError(f"unknown content kind: {kind!r}") from exc
    source_id = (source_id or "").strip()
    if not SOURCE_ID_PATTERN.match(source_id):
        raise ValidationError(f"invalid {kind.value} id: {source_id!r}")
    return CrawlTarget(kind=kind, source_id=source_id)


def compute_metadata(body: str) -> ContentMetadata:
    word_count = len(_TAG.sub("", body or ""))
    return ContentMetadata(
        word_count=word_count,
        reading_time=math.ceil(word_count / WORDS_PER_MINUTE),
        has_images=bool(_IMG.search(body or "")),
        has_code=bool(_CODE.search(body or "")),
    )


def detect_challenge(html: str) -> str | None:
    """Return a reason string if a 200 page is a login/verification wall rather than content."""
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text() if soup.title else ""

    if "登录" in title or soup.select_one('input[name="username"]') is not None:
        return "login form"

    if soup.select_one("#go") is not None:
        for element in soup.find_all(["a", "button", "p"]):
            if _CONTINUE_LABEL in element.get_text():
                return "continue-to-visit control"

    body_text = soup.body.get_text() if soup.body else ""
    for keyword in _VERIFICATION_KEYWORDS:
        if keyword in title or keyword in body_text:
            return f"verification keyword {keyword!r}"

    if soup.select_one('#captcha, .captcha, input[name="captcha"], input[name="code"]') is not None:
        return "captcha input"
    return None


def classify_status(response: httpx.Response) -> CrawlOutcome | None:
    """Map a non-200 response onto a FailureClass. Returns None for 200."""
    status = response.status_code
    if status == 200:
        return None
    if 300 <= status < 400:
        location = response.headers.get("location", "")
        if "login" in location:
            return CrawlOutcome.failed(
                FailureClass.AUTH_REQUIRED, FAILURE_MESSAGES[FailureClass.AUTH_REQUIRED], status
            )
        return CrawlOutcome.failed(
            FailureClass.UNEXPECTED_REDIRECT,
            f"unexpected redirect: {status} -> {location or '?'}",
            status,
        )
    if status == 404:
        return CrawlOutcome.failed(FailureClass.NOT_FOUND, FAILURE_MESSAGES[FailureClass.NOT_FOUND], status)
    if status in (403, 451):
        return CrawlOutcome.failed(FailureClass.BLOCKED, FAILURE_MESSAGES[FailureClass.BLOCKED], status)
    if status == 401:
        return CrawlOutcome.failed(
            FailureClass.AUTH_EXPIRED, FAILURE_MESSAGES[FailureClass.AUTH_EXPIRED], status
        )
    return CrawlOutcome.failed(FailureClass.HTTP_ERROR, f"upstream HTTP error: {status}", status)


class CrawlerService:
    def __init__(
        self,
        repository: AbstractContentRepository,
        fetcher: SessionFetcher | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        jitter: tuple[float, float] | None = None,
    ) -> None:
        self._repository = repository
        self._fetcher = fetcher or SessionFetcher()
        self._sleep = sleep
        self._jitter = jitter or (settings.CRAWL_JITTER_MIN, settings.CRAWL_JITTER_MAX)

    def build_headers(self, cookie: str | None = None) -> dict[str, str]:
        headers = {
            "User-Agent": random.choice(USER_AGENTS),
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8,zh-TW;q=0.7",
            "Cache-Control": "no-cache",
            "Pragma": "no-cache",
            "Referer": f"{settings.BASE_URL.rstrip('/')}/",
            "Sec-Fetch-Dest": "document",
            "Sec-Fetch-Mode": "navigate",
            "Sec-Fetch-Site": "none",
            "Upgrade-Insecure-Requests": "1",
            "x-luogu-type": "content-only",
        }
        cookie = cookie or settings.DEFAULT_COOKIE
        if cookie:
            headers["Cookie"] = cookie
        return headers

    async def _fetch(self, target: CrawlTarget, headers: dict[str, str]) -> httpx.Response:
        """Try the content-only JSON variant first, then the plain page."""
        api_url = target.source_url + "?" + urlencode(
            {"_contentOnly": "1", "_format": "json", "_timestamp": str(int(time.time() * 1000))}
        )
        api_headers = {
            **headers,
            "Accept": "application/json, text/plain, */*",
            "X-Requested-With": "XMLHttpRequest",
        }
        try:
            response, _ = await self._fetcher.fetch(
                api_url, api_headers, cookie_mode=settings.COOKIE_MODE
            )
            return response
        except (NetworkError, httpx.HTTPError) as exc:
            logger.warning(
                "[crawl] json api request failed, falling back to page | url=%s | error=%s",
                target.source_url,
                exc,
            )
        response, _ = await self._fetcher.fetch(
            target.source_url, headers, cookie_mode=settings.COOKIE_MODE
        )
        return response

    async def crawl(self, target: CrawlTarget, cookie: str | None = None) -> CrawlOutcome:
        """
        Fetch and parse one target. Classified failures come back as data;
        transport failures raise NetworkError.
        """
        low, high = self._jitter
        await self._sleep(random.uniform(low, high))

        response = await self._fetch(target, self.build_headers(cookie))
        logger.debug("[crawl] fetched | url=%s | status=%d", target.source_url, response.status_code)

        failure = classify_status(response)
        if failure is not None:
            logger.info(
                "[crawl] %s | url=%s | status=%d",
                failure.failure_class.value,
                target.source_url,
                response.status_code,
            )
            return failure

        content_type = response.headers.get("content-type", "")
        body = response.text
        if "json" not in content_type.lower():
            reason = detect_challenge(body)
            if reason is not None:
                logger.info("[crawl] challenge page | url=%s | reason=%s", target.source_url, reason)
                return CrawlOutcome.failed(
                    FailureClass.CHALLENGE_REQUIRED,
                    f"{FAILURE_MESSAGES[FailureClass.CHALLENGE_REQUIRED]}: {reason}",
                    response.status_code,
                )

        record = content_parser.extract(body, content_type, target.kind)
        if record is None:
            logger.info("[crawl] parse failed | url=%s", target.source_url)
            return CrawlOutcome.failed(
                FailureClass.PARSE_FAILED,
                FAILURE_MESSAGES[FailureClass.PARSE_FAILED],
                response.status_code,
            )

        return CrawlOutcome(
            success=True,
            message="ok",
            record=record,
            metadata=compute_metadata(record.body),
            http_status=response.status_code,
        )

    async def upsert(
        self, target: CrawlTarget, record: ContentRecord, metadata: ContentMetadata
    ) -> tuple[ContentEntity, str]:
        """Create or overwrite the entity for `target`. Returns (entity, "created" | "updated")."""
        existing = await asyncio.to_thread(
            self._repository.find_entity, target.kind, target.source_id
        )
        fields = {
            "title": record.title,
            "body": record.body,
            "author_id": record.author_id,
            "author_name": record.author_name,
            "category": record.category,
            "tags": list(record.tags),
            "published_at": record.published_at,
            "status": "completed",
            "word_count": metadata.word_count,
            "reading_time": metadata.reading_time,
            "has_images": metadata.has_images,
            "has_code": metadata.has_code,
            "crawled_at": datetime.now(timezone.utc),
        }
        entity = await asyncio.to_thread(
            self._repository.upsert_entity, target.kind, target.source_id, fields
        )
        action = "updated" if existing else "created"
        logger.info(
            "[crawl] entity %s | kind=%s | source_id=%s", action, target.kind.value, target.source_id
        )
        return entity, action

    async def crawl_and_save(self, target: CrawlTarget, cookie: str | None = None) -> SaveResult:
        outcome = await self.crawl(target, cookie)
        if not outcome.success:
            return SaveResult(
                success=False, message=outcome.message, failure_class=outcome.failure_class
            )
        entity, action = await self.upsert(target, outcome.record, outcome.metadata)
        return SaveResult(
            success=True,
            message=f"{target.kind.value} {action}",
            entity=entity,
            action=action,
        )

    async def save_directly(
        self, target: CrawlTarget, cookie: str | None = None, max_retries: int | None = None
    ) -> SaveResult:
        """
        Immediate save with the rate-limit policy: a 451 waits attempt × backoff
        and retries, anything else returns at once.
        """
        max_retries = settings.CRAWLER_MAX_RETRIES if max_retries is None else max_retries
        last = SaveResult(success=False, message="save failed", attempts=0)

        for attempt in range(1, max_retries + 1):
            logger.info(
                "[save] attempt %d/%d | kind=%s | source_id=%s",
                attempt,
                max_retries,
                target.kind.value,
                target.source_id,
            )
            try:
                outcome = await self.crawl(target, cookie)
            except NetworkError as exc:
                logger.error("[save] network failure | source_id=%s | error=%s", target.source_id, exc)
                return SaveResult(success=False, message=str(exc), attempts=attempt)

            if outcome.success:
                entity, action = await self.upsert(target, outcome.record, outcome.metadata)
                return SaveResult(
                    success=True,
                    message=f"{target.kind.value} {action}",
                    entity=entity,
                    action=action,
                    attempts=attempt,
                )

            last = SaveResult(
                success=False,
                message=outcome.message,
                failure_class=outcome.failure_class,
                attempts=attempt,
            )
            if not outcome.rate_limited or attempt == max_retries:
                return last

            wait = attempt * settings.BLOCKED_BACKOFF_SECONDS
            logger.info("[save] rate limited, waiting %.0fs | source_id=%s", wait, target.source_id)
            await self._sleep(wait)

        return last

    async def get_entity(self, kind: ContentKind | str, source_id: str) -> ContentEntity:
        target = make_target(kind, source_id)
        entity = await asyncio.to_thread(
            self._repository.find_entity, target.kind, target.source_id
        )
        if entity is None:
            raise NotFoundError(f"{target.kind.value} {target.source_id} has not been saved")
        return entity
