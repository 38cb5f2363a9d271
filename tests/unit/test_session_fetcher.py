import httpx
import pytest
import respx

from luogu_archive.errors import NetworkError
from luogu_archive.services.session_fetcher import (
    SessionFetcher,
    format_cookie_header,
    merge_set_cookie,
    parse_cookie_header,
)

URL = "https://www.luogu.com/article/abcd1234"


def test_parse_cookie_header_drops_malformed_pairs():
    assert parse_cookie_header("a=1; junk; b=2;  ; =x; c=") == {"a": "1", "b": "2"}
    assert parse_cookie_header(None) == {}


def test_format_cookie_header_keeps_order():
    assert format_cookie_header({"b": "2", "a": "1"}) == "b=2; a=1"


def test_merge_set_cookie_overrides_and_appends():
    headers = {"Cookie": "a=0; c=3", "User-Agent": "ua"}
    merged = merge_set_cookie(["a=1; Path=/; HttpOnly", "b=2"], headers)
    assert merged["Cookie"] == "a=1; c=3; b=2"
    assert merged["User-Agent"] == "ua"
    # the input dict is not mutated
    assert headers["Cookie"] == "a=0; c=3"


def test_merge_set_cookie_without_existing_cookie():
    assert merge_set_cookie(["sid=xyz; Path=/"], {})["Cookie"] == "sid=xyz"


@pytest.mark.asyncio
@respx.mock
async def test_new_mode_replays_redirect_with_cookies():
    route = respx.get(URL).mock(
        side_effect=[
            httpx.Response(302, headers=[("set-cookie", "a=1; Path=/"), ("set-cookie", "b=2")]),
            httpx.Response(200, html="<html>ok</html>"),
        ]
    )
    caller_headers = {"Cookie": "a=0; c=3"}

    response, used = await SessionFetcher().fetch(URL, caller_headers, cookie_mode="new")

    assert response.status_code == 200
    assert route.call_count == 2
    assert route.calls.last.request.headers["cookie"] == "a=1; c=3; b=2"
    assert used["Cookie"] == "a=1; c=3; b=2"
    assert caller_headers == {"Cookie": "a=0; c=3"}


@pytest.mark.asyncio
@respx.mock
async def test_new_mode_redirect_without_cookies_is_returned():
    route = respx.get(URL).mock(
        return_value=httpx.Response(302, headers={"location": "/auth/login"})
    )

    response, _ = await SessionFetcher().fetch(URL, {}, cookie_mode="new")

    assert response.status_code == 302
    assert route.call_count == 1


@pytest.mark.asyncio
@respx.mock
async def test_new_mode_replays_only_once():
    route = respx.get(URL).mock(
        return_value=httpx.Response(302, headers={"set-cookie": "a=1"})
    )

    response, _ = await SessionFetcher().fetch(URL, {}, cookie_mode="new")

    assert response.status_code == 302
    assert route.call_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_legacy_mode_replays_with_token():
    route = respx.get(URL).mock(
        side_effect=[
            httpx.Response(200, html="<script>document.cookie='C3VK=a1b2c3;path=/';location.reload()</script>"),
            httpx.Response(200, html="<html>content</html>"),
        ]
    )

    response, used = await SessionFetcher().fetch(URL, {"Cookie": "uid=7"}, cookie_mode="legacy")

    assert response.text == "<html>content</html>"
    assert route.call_count == 2
    assert route.calls.last.request.headers["cookie"] == "uid=7; C3VK=a1b2c3"
    assert used["Cookie"] == "uid=7; C3VK=a1b2c3"


@pytest.mark.asyncio
@respx.mock
async def test_legacy_mode_without_token_makes_one_request():
    route = respx.get(URL).mock(return_value=httpx.Response(200, html="<html>plain</html>"))

    response, _ = await SessionFetcher().fetch(URL, {}, cookie_mode="legacy")

    assert response.status_code == 200
    assert route.call_count == 1


@pytest.mark.asyncio
@respx.mock
async def test_transport_failure_raises_network_error():
    respx.get(URL).mock(side_effect=httpx.ConnectError("connection refused"))

    with pytest.raises(NetworkError):
        await SessionFetcher().fetch(URL, {})


@pytest.mark.asyncio
@respx.mock
async def test_timeout_raises_network_error():
    respx.get(URL).mock(side_effect=httpx.ReadTimeout("timed out"))

    with pytest.raises(NetworkError):
        await SessionFetcher().fetch(URL, {}, timeout=0.5)


@pytest.mark.asyncio
@respx.mock
async def test_shared_client_is_used():
    route = respx.get(URL).mock(return_value=httpx.Response(200, text="hi"))

    async with httpx.AsyncClient() as client:
        response, _ = await SessionFetcher(client).fetch(URL, {"User-Agent": "ua"})

    assert response.text == "hi"
    assert route.calls.last.request.headers["user-agent"] == "ua"


@pytest.mark.asyncio
async def test_unknown_cookie_mode_rejected():
    with pytest.raises(ValueError):
        await SessionFetcher().fetch(URL, {}, cookie_mode="bogus")
