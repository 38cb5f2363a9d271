"""HTTP GET with the site's "legacy" (C3VK token) and "new" (Set-Cookie redirect) cookie handshakes."""
import logging
import re
from dataclasses import dataclass, field

import httpx

from luogu_archive.config import settings
from luogu_archive.errors import NetworkError

logger = logging.getLogger(__name__)

COOKIE_MODES = ("legacy", "new")

_LEGACY_TOKEN = re.compile(r"C3VK=([a-zA-Z0-9]+);")

# Timeout, refused connection, DNS failure and reset all land in these.
_TRANSPORT_ERRORS = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
)


@dataclass
class FetchContext:
    headers: dict[str, str] = field(default_factory=dict)
    cookie_mode: str = "new"
    timeout: float = 30.0


def parse_cookie_header(cookie: str | None) -> dict[str, str]:
    """Split a ``k=v; k2=v2`` header into an ordered dict. Malformed pairs are dropped."""
    pairs: dict[str, str] = {}
    for chunk in (cookie or "").split(";"):
        name, sep, value = chunk.strip().partition("=")
        if sep and name and value:
            pairs[name] = value
    return pairs


def format_cookie_header(pairs: dict[str, str]) -> str:
    return "; ".join(f"{k}={v}" for k, v in pairs.items())


def merge_set_cookie(set_cookie_values: list[str], headers: dict[str, str]) -> dict[str, str]:
    """
    Return a copy of `headers` whose Cookie carries every pair from the
    Set-Cookie values. Newly issued values override same-named old ones.
    """
    cookies = parse_cookie_header(headers.get("Cookie"))
    for raw in set_cookie_values:
        pair = raw.split(";", 1)[0]
        name, sep, value = pair.strip().partition("=")
        if sep and name and value:
            cookies[name] = value
    merged = dict(headers)
    if cookies:
        merged["Cookie"] = format_cookie_header(cookies)
    return merged


class SessionFetcher:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        # A shared client is optional; without one each call opens its own.
        self._client = client

    async def fetch(
        self,
        url: str,
        headers: dict[str, str],
        *,
        cookie_mode: str = "new",
        timeout: float | None = None,
    ) -> tuple[httpx.Response, dict[str, str]]:
        """
        Issue one GET, negotiate at most one cookie challenge, and return the
        final response with the header set that produced it.
        Raises NetworkError on transport failure; the caller's dict is left untouched.
        """
        if cookie_mode not in COOKIE_MODES:
            raise ValueError(f"unsupported cookie mode: {cookie_mode!r}")
        ctx = FetchContext(
            headers=dict(headers),
            cookie_mode=cookie_mode,
            timeout=settings.REQUEST_TIMEOUT if timeout is None else timeout,
        )
        logger.debug("[fetch] GET | url=%s | mode=%s", url, ctx.cookie_mode)

        response = await self._get(url, ctx)

        if ctx.cookie_mode == "legacy":
            match = _LEGACY_TOKEN.search(response.text or "")
            if match:
                cookies = parse_cookie_header(ctx.headers.get("Cookie"))
                cookies["C3VK"] = match.group(1)
                ctx.headers["Cookie"] = format_cookie_header(cookies)
                logger.debug("[fetch] legacy token found, replaying | url=%s", url)
                response = await self._get(url, ctx)

        elif 300 <= response.status_code < 400:
            set_cookie = response.headers.get_list("set-cookie")
            if set_cookie:
                ctx.headers = merge_set_cookie(set_cookie, ctx.headers)
                logger.debug(
                    "[fetch] redirect with cookies, replaying | url=%s | status=%d",
                    url,
                    response.status_code,
                )
                response = await self._get(url, ctx)

        logger.debug("[fetch] done | url=%s | status=%d", url, response.status_code)
        if response.status_code == 401:
            logger.debug("[fetch] cookies expired | url=%s", url)
        return response, ctx.headers

    async def _get(self, url: str, ctx: FetchContext) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.get(
                    url, headers=ctx.headers, timeout=ctx.timeout, follow_redirects=False
                )
            async with httpx.AsyncClient(timeout=ctx.timeout, follow_redirects=False) as client:
                return await client.get(url, headers=ctx.headers)
        except _TRANSPORT_ERRORS as exc:
            raise NetworkError(f"network request failed: {type(exc).__name__}: {exc}") from exc
