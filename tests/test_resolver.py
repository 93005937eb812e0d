from __future__ import annotations

import asyncio
import json

import httpx

from pubparts.services.resolver import (
    EXHAUSTED_ERROR,
    MetadataResolver,
    ResolveResult,
    extract_page_metadata,
    parse_proxy,
)

PRINTABLES_URL = "https://www.printables.com/model/555-motor-mount"
PAGE_URL = "https://example.com/things/mount"
PAGE_HTML = """
<html><head>
<title>Fallback title</title>
<meta property="og:title" content="Motor Mount &amp; Spacer">
<meta name="description" content="  A sturdy
  mount ">
<meta property="og:image" content="/img/mount.png">
<meta name="keywords" content="meepo, mount, meepo">
</head><body></body></html>
"""


def _resolve(handler, url: str, **kwargs) -> ResolveResult:
    async def run() -> ResolveResult:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            resolver = MetadataResolver(client=client, **kwargs)
            return await resolver.resolve(url)

    return asyncio.run(run())


def test_extract_page_metadata_prefers_open_graph() -> None:
    metadata = extract_page_metadata(PAGE_HTML, PAGE_URL)

    assert metadata.title == "Motor Mount & Spacer"
    assert metadata.description == "A sturdy mount"
    assert metadata.image == "https://example.com/img/mount.png"
    assert metadata.tags == ["meepo", "mount"]


def test_extract_page_metadata_falls_back_to_title_element() -> None:
    metadata = extract_page_metadata("<title>Only &lt;title&gt;</title>", PAGE_URL)
    assert metadata.title == "Only <title>"
    assert metadata.image is None


def test_parse_proxy() -> None:
    assert parse_proxy("allorigins=https://api.allorigins.win/raw?url={url}") == (
        "allorigins",
        "https://api.allorigins.win/raw?url={url}",
    )
    assert parse_proxy("https://proxy.example/?u={url}") == ("proxy.example", "https://proxy.example/?u={url}")


def test_firecrawl_result_wins_when_configured() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.host == "api.firecrawl.dev"
        assert request.headers["authorization"] == "Bearer fc-key"
        payload = {
            "success": True,
            "data": {"extract": {"title": "Deck", "image": "https://cdn.example/deck.png", "tags": ["deck"]}},
        }
        return httpx.Response(200, json=payload, request=request)

    result = _resolve(handler, PAGE_URL, firecrawl_api_key="fc-key")

    assert result.success
    assert result.source == "firecrawl"
    assert result.title == "Deck"
    assert result.tags == ["deck"]
    assert [attempt.strategy for attempt in result.attempts] == ["firecrawl"]


def test_printables_graphql_before_page_fetch() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.printables.com":
            body = json.loads(request.content)
            assert body["variables"] == {"id": "555"}
            payload = {
                "data": {
                    "print": {
                        "name": "Motor mount",
                        "description": "<p>Fits Meepo</p>",
                        "images": [{"filePath": "media/prints/555/mount.png"}],
                        "tags": [{"name": "meepo"}, {"name": "mount"}],
                    }
                }
            }
            return httpx.Response(200, json=payload, request=request)
        raise AssertionError(f"unexpected request {request.url}")

    result = _resolve(handler, PRINTABLES_URL)

    assert result.success
    assert result.source == "printables"
    assert result.description == "<p>Fits Meepo</p>"
    assert result.image == "https://media.printables.com/media/prints/555/mount.png"
    assert result.tags == ["meepo", "mount"]


def test_proxy_used_when_direct_fetch_is_blocked() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "example.com":
            return httpx.Response(403, text="<html>Just a moment...</html>", request=request)
        if request.url.host == "proxy.example":
            return httpx.Response(200, text=PAGE_HTML, request=request)
        return httpx.Response(404, request=request)

    result = _resolve(handler, PAGE_URL, proxies=["mirror=https://proxy.example/raw?url={url}"])

    assert result.success
    assert result.source == "proxy:mirror"
    assert result.image == "https://example.com/img/mount.png"
    direct = result.attempts[0]
    assert direct.strategy == "direct"
    assert direct.status_code == 403
    assert direct.snippet == "<html>Just a moment...</html>"


def test_exhausted_chain_reports_every_attempt() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            text="<html><div class='cf-browser-verification'>checking</div></html>",
            request=request,
        )

    result = _resolve(handler, PAGE_URL, proxies=["mirror=https://proxy.example/raw?url={url}"])

    assert not result.success
    assert result.error == EXHAUSTED_ERROR
    assert [attempt.strategy for attempt in result.attempts] == ["direct", "proxy:mirror"]
    assert all(attempt.error == "anti-bot protection suspected" for attempt in result.attempts)


def test_invalid_url_makes_no_requests() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    result = _resolve(handler, "not-a-url")

    assert not result.success
    assert result.attempts == []
