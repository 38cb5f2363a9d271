"""Canonical record extraction; tiers in TIERS are tried in order and the first hit wins."""
import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from functools import cached_property
from typing import Any, Callable
from urllib.parse import unquote

from bs4 import BeautifulSoup

from luogu_archive.config import settings
from luogu_archive.models.content import (
    UNCATEGORIZED,
    UNKNOWN_AUTHOR_ID,
    UNKNOWN_AUTHOR_NAME,
    ContentKind,
    ContentRecord,
)

logger = logging.getLogger(__name__)

CONTEXT_ELEMENT_ID = "lentille-context"

# JSON.parse(decodeURIComponent("...")) must be tried before the plain form.
_ENCODED_PARSE_CALL = re.compile(
    r'JSON\.parse\(\s*decodeURIComponent\(\s*"((?:[^"\\]|\\.)*)"\s*\)\s*\)'
)
_ESCAPED_PARSE_CALL = re.compile(r'JSON\.parse\(\s*"((?:[^"\\]|\\.)*)"\s*\)')
_STATE_ASSIGNMENT = re.compile(
    r"window\.(?:__INITIAL_STATE__|_feInjection|__NUXT_STATE__)\s*=\s*(?=\{)"
)

_CLOCK = re.compile(r"(\d{1,2}):(\d{2})")
_ABSOLUTE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y-%m-%d",
    "%Y/%m/%d",
)

_DOM_SELECTORS: dict[ContentKind, dict[str, list[str]]] = {
    ContentKind.ARTICLE: {
        "title": ["h1", ".article-title", ".title"],
        "body": [".article-content", "article"],
        "time": [".article-time", ".time", ".created-at", ".date"],
    },
    ContentKind.PASTE: {
        "title": ["h1", ".paste-title", ".title"],
        "body": [".paste-content", "pre", "code", ".content", ".paste"],
        "time": [".paste-time", ".time", ".created-at", ".date"],
    },
}
_AUTHOR_SELECTORS = [".user-name a", ".author a", ".user a"]
_CATEGORY_SELECTORS = [".article-category", ".category"]
_TAG_SELECTOR = ".tag"
_NOISE_SELECTORS = "script, style, .ad, .ads"


def truncate_utf8(text: str, max_bytes: int) -> str:
    """
    Cut `text` so its UTF-8 encoding is at most `max_bytes` long, backing off
    to the previous character boundary instead of splitting a sequence.
    """
    if max_bytes < 0:
        raise ValueError("max_bytes must be non-negative")
    data = (text or "").encode("utf-8", errors="replace")
    if len(data) <= max_bytes:
        return data.decode("utf-8")
    cut = max_bytes
    while cut > 0 and (data[cut] & 0xC0) == 0x80:
        cut -= 1
    return data[:cut].decode("utf-8")


def site_timezone() -> timezone:
    return timezone(timedelta(hours=settings.SITE_UTC_OFFSET_HOURS))


def parse_time_text(text: str, now: datetime | None = None) -> datetime:
    """
    Resolve a timestamp as the site renders it. Relative "today/yesterday HH:MM"
    forms are anchored on the site's wall-clock date; unparseable text yields `now`.
    """
    tz = site_timezone()
    now = now or datetime.now(tz)
    local_now = now.astimezone(tz) if now.tzinfo else now.replace(tzinfo=tz)
    text = (text or "").strip()
    lowered = text.lower()

    day: date | None = None
    if "今天" in text or "today" in lowered:
        day = local_now.date()
    elif "昨天" in text or "yesterday" in lowered:
        day = local_now.date() - timedelta(days=1)
    if day is not None:
        clock = _CLOCK.search(text)
        if clock and int(clock.group(1)) < 24 and int(clock.group(2)) < 60:
            return datetime.combine(day, time(int(clock.group(1)), int(clock.group(2))), tzinfo=tz)
        return now

    if text:
        parsed: datetime | None = None
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            for fmt in _ABSOLUTE_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=tz)

    logger.debug("[parser] unparseable time text, using now | text=%r", text)
    return now


def _epoch(value: Any, now: datetime) -> datetime:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return now
    return now


def _nested_content(obj: Any, kind: ContentKind) -> dict | None:
    """Look for the content object at ``currentData.<kind>`` or ``data.<kind>``."""
    if not isinstance(obj, dict):
        return None
    for root in ("currentData", "data"):
        section = obj.get(root)
        if not isinstance(section, dict):
            continue
        candidate = section.get(kind.value)
        if isinstance(candidate, dict) and isinstance(candidate.get("content"), str):
            return candidate
    return None


def _record_from_object(obj: dict, kind: ContentKind, now: datetime) -> ContentRecord:
    author = obj.get("author") if isinstance(obj.get("author"), dict) else {}
    # uid 0 is a real id; only None and "" count as missing
    author_id = next((v for v in (author.get("uid"), obj.get("uid")) if v not in (None, "")), None)
    author_name = author.get("name") or obj.get("name")
    tags = obj.get("tags")
    category = obj.get("category")
    return ContentRecord(
        title=str(obj.get("title") or kind.untitled),
        body=obj.get("content") or "",
        author_id=str(author_id) if author_id not in (None, "") else UNKNOWN_AUTHOR_ID,
        author_name=str(author_name) if author_name else UNKNOWN_AUTHOR_NAME,
        category=str(category) if category not in (None, "") else UNCATEGORIZED,
        tags=[str(t) for t in tags if t] if isinstance(tags, list) else [],
        published_at=_epoch(obj.get("time"), now),
    )


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


@dataclass
class ResponseDocument:
    text: str
    content_type: str = ""

    @cached_property
    def soup(self) -> BeautifulSoup:
        return BeautifulSoup(self.text, "html.parser")


def from_json_payload(doc: ResponseDocument, kind: ContentKind, now: datetime) -> ContentRecord | None:
    if "json" not in doc.content_type.lower():
        return None
    obj = _nested_content(_loads(doc.text), kind)
    return _record_from_object(obj, kind, now) if obj else None


def from_context_element(doc: ResponseDocument, kind: ContentKind, now: datetime) -> ContentRecord | None:
    element = doc.soup.find(id=CONTEXT_ELEMENT_ID)
    if element is None:
        return None
    data = _loads(element.get_text().strip())
    if data is None:
        logger.warning("[parser] context element is not valid JSON | kind=%s", kind.value)
        return None
    obj = _nested_content(data, kind)
    return _record_from_object(obj, kind, now) if obj else None


def _script_candidates(script: str):
    for match in _ENCODED_PARSE_CALL.finditer(script):
        literal = _loads(f'"{match.group(1)}"')
        if isinstance(literal, str):
            yield _loads(unquote(literal))
    for match in _ESCAPED_PARSE_CALL.finditer(script):
        literal = _loads(f'"{match.group(1)}"')
        if isinstance(literal, str):
            yield _loads(literal)
    decoder = json.JSONDecoder()
    for match in _STATE_ASSIGNMENT.finditer(script):
        try:
            obj, _ = decoder.raw_decode(script, match.end())
        except ValueError:
            continue
        yield obj


def from_script_state(doc: ResponseDocument, kind: ContentKind, now: datetime) -> ContentRecord | None:
    for script in doc.soup.find_all("script"):
        if script.get("id") == CONTEXT_ELEMENT_ID:
            continue
        source = script.get_text()
        if not source or kind.value not in source:
            continue
        for candidate in _script_candidates(source):
            obj = _nested_content(candidate, kind)
            if obj:
                return _record_from_object(obj, kind, now)
    return None


def _first_text(soup: BeautifulSoup, selectors: list[str]) -> str:
    for selector in selectors:
        element = soup.select_one(selector)
        if element is not None:
            text = element.get_text(strip=True)
            if text:
                return text
    return ""


def from_dom(doc: ResponseDocument, kind: ContentKind, now: datetime) -> ContentRecord | None:
    # Work on a private copy; noise removal mutates the tree.
    soup = BeautifulSoup(doc.text, "html.parser")
    selectors = _DOM_SELECTORS[kind]

    body = ""
    for selector in selectors["body"]:
        element = soup.select_one(selector)
        if element is None:
            continue
        if kind is ContentKind.ARTICLE:
            for noise in element.select(_NOISE_SELECTORS):
                noise.decompose()
            body = element.decode_contents().strip()
        else:
            body = element.get_text().strip()
        if body:
            break
    if not body:
        return None

    author_id = UNKNOWN_AUTHOR_ID
    author_name = UNKNOWN_AUTHOR_NAME
    for selector in _AUTHOR_SELECTORS:
        link = soup.select_one(selector)
        if link is None:
            continue
        name = link.get_text(strip=True)
        href = (link.get("href") or "").rstrip("/")
        if name or href:
            author_name = name or UNKNOWN_AUTHOR_NAME
            author_id = href.rsplit("/", 1)[-1] if href else UNKNOWN_AUTHOR_ID
            break

    tags = [t.get_text(strip=True) for t in soup.select(_TAG_SELECTOR)]
    return ContentRecord(
        title=_first_text(soup, selectors["title"]) or kind.untitled,
        body=body,
        author_id=author_id or UNKNOWN_AUTHOR_ID,
        author_name=author_name,
        category=_first_text(soup, _CATEGORY_SELECTORS) or UNCATEGORIZED,
        tags=[t for t in tags if t],
        published_at=parse_time_text(_first_text(soup, selectors["time"]), now),
    )


Tier = Callable[[ResponseDocument, ContentKind, datetime], "ContentRecord | None"]

TIERS: list[Tier] = [from_json_payload, from_context_element, from_script_state, from_dom]


def extract(
    body: bytes | str,
    content_type: str | None,
    kind: ContentKind,
    *,
    now: datetime | None = None,
    max_bytes: int | None = None,
) -> ContentRecord | None:
    """Return the canonical record for a response, or None when no tier recognizes it."""
    kind = ContentKind(kind)
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else (body or "")
    doc = ResponseDocument(text=text, content_type=content_type or "")
    now = now or datetime.now(timezone.utc)
    limit = settings.MAX_CONTENT_BYTES if max_bytes is None else max_bytes

    for tier in TIERS:
        record = tier(doc, kind, now)
        if record is not None:
            record.body = truncate_utf8(record.body, limit)
            logger.debug("[parser] extracted | kind=%s | tier=%s", kind.value, tier.__name__)
            return record
    return None
