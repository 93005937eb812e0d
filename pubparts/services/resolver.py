from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from html import unescape
from typing import Any
from urllib.parse import quote

import httpx
from fastapi import Depends
from opentelemetry import trace

from pubparts.core.config import Settings, get_settings
from pubparts.core.urls import is_http_url, printables_model_id, resolve_against

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
SNIPPET_LENGTH = 200
EXHAUSTED_ERROR = "Scrape failed: the site is protected or returned no metadata. Please enter the details manually."

EXTRACT_SCHEMA = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "description": {"type": "string"},
        "image": {"type": "string"},
        "tags": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["title", "image"],
}

PRINTABLES_QUERY = """
query PrintResults($id: ID!) {
  print(id: $id) {
    name
    description
    images {
      filePath
    }
    tags {
      name
    }
  }
}
"""

_META_TAG_RE = re.compile(r"<meta\b[^>]*>", re.IGNORECASE)
_ATTRIBUTE_RE = re.compile(r"""([a-zA-Z_:.-]+)\s*=\s*(?:"([^"]*)"|'([^']*)')""")
_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_WHITESPACE_RE = re.compile(r"\s+")
_BOT_WALL_MARKERS = (
    "cf-browser-verification",
    "challenge-platform",
    "just a moment...",
    "attention required! | cloudflare",
    "captcha",
)

TITLE_KEYS = ("og:title", "twitter:title")
DESCRIPTION_KEYS = ("og:description", "twitter:description", "description")
IMAGE_KEYS = ("og:image", "og:image:url", "og:image:secure_url", "twitter:image", "twitter:image:src")


@dataclass(slots=True)
class ResolveAttempt:
    strategy: str
    target: str
    status_code: int | None = None
    snippet: str | None = None
    error: str | None = None


@dataclass(slots=True)
class ResolveResult:
    success: bool
    title: str | None = None
    description: str | None = None
    image: str | None = None
    tags: list[str] = field(default_factory=list)
    source: str | None = None
    error: str | None = None
    attempts: list[ResolveAttempt] = field(default_factory=list)


@dataclass(slots=True)
class PageMetadata:
    title: str | None
    description: str | None
    image: str | None
    tags: list[str]


class _StageFailed(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, snippet: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.snippet = snippet


def parse_proxy(spec: str) -> tuple[str, str]:
    """``name=template`` or a bare template; templates contain ``{url}``."""
    name, separator, template = spec.partition("=")
    if separator and "{url}" in template and "://" not in name:
        return name.strip(), template.strip()
    host = spec.split("/")[2] if "://" in spec else spec
    return host, spec


def extract_page_metadata(html: str, page_url: str) -> PageMetadata:
    meta: dict[str, str] = {}
    tags: list[str] = []
    for tag in _META_TAG_RE.findall(html):
        attributes = {
            match.group(1).lower(): match.group(2) if match.group(2) is not None else match.group(3)
            for match in _ATTRIBUTE_RE.finditer(tag)
        }
        key = (attributes.get("property") or attributes.get("name") or "").strip().lower()
        content = attributes.get("content")
        if not key or content is None:
            continue
        content = _clean_text(content)
        if key == "article:tag":
            tags.append(content)
        elif key == "keywords":
            tags.extend(part.strip() for part in content.split(","))
        else:
            meta.setdefault(key, content)

    title = _first(meta, TITLE_KEYS)
    if not title:
        title_match = _TITLE_RE.search(html)
        title = _clean_text(title_match.group(1)) if title_match else None

    image = _first(meta, IMAGE_KEYS)
    return PageMetadata(
        title=title or None,
        description=_first(meta, DESCRIPTION_KEYS),
        image=resolve_against(image, page_url),
        tags=_unique([tag for tag in tags if tag]),
    )


def looks_like_bot_wall(html: str) -> bool:
    lowered = html[:20000].lower()
    return any(marker in lowered for marker in _BOT_WALL_MARKERS)


class MetadataResolver:
    """Best-effort title/description/image/tags for a model page.

    Strategies run in order and stop at the first usable title; ``resolve``
    never raises.
    """

    def __init__(
        self,
        *,
        firecrawl_api_key: str | None = None,
        firecrawl_url: str = "https://api.firecrawl.dev/v1/scrape",
        printables_graphql_url: str = "https://api.printables.com/graphql/",
        printables_media_url: str = "https://media.printables.com",
        proxies: list[str] | None = None,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.firecrawl_api_key = firecrawl_api_key
        self.firecrawl_url = firecrawl_url
        self.printables_graphql_url = printables_graphql_url
        self.printables_media_url = printables_media_url.rstrip("/")
        self.proxies = [parse_proxy(spec) for spec in proxies or []]
        self.timeout_seconds = timeout_seconds
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings, *, client: httpx.AsyncClient | None = None) -> MetadataResolver:
        return cls(
            firecrawl_api_key=settings.firecrawl_api_key,
            firecrawl_url=settings.firecrawl_url,
            printables_graphql_url=settings.printables_graphql_url,
            printables_media_url=settings.printables_media_url,
            proxies=list(settings.resolver_proxies),
            timeout_seconds=settings.resolver_timeout_seconds,
            client=client,
        )

    async def resolve(self, url: str) -> ResolveResult:
        source_url = (url or "").strip()
        if not is_http_url(source_url):
            return ResolveResult(success=False, error="A valid http(s) URL is required")

        if self._client is not None:
            return await self._run_chain(self._client, source_url)
        async with httpx.AsyncClient(follow_redirects=True, timeout=self.timeout_seconds) as client:
            return await self._run_chain(client, source_url)

    async def _run_chain(self, client: httpx.AsyncClient, url: str) -> ResolveResult:
        attempts: list[ResolveAttempt] = []
        stages: list[tuple[str, str, Callable[[], Awaitable[PageMetadata | None]]]] = []

        if self.firecrawl_api_key:
            stages.append(("firecrawl", self.firecrawl_url, lambda: self._firecrawl(client, url)))

        model_id = printables_model_id(url)
        if model_id:
            stages.append(
                ("printables", self.printables_graphql_url, lambda: self._printables(client, model_id))
            )

        stages.append(("direct", url, lambda: self._fetch_page(client, url, url)))
        for name, template in self.proxies:
            proxied = template.replace("{url}", quote(url, safe=""))
            stages.append(
                (f"proxy:{name}", proxied, lambda proxied=proxied: self._fetch_page(client, proxied, url))
            )

        for strategy, target, run in stages:
            metadata = await self._attempt(strategy, target, run, attempts)
            if metadata is not None and metadata.title:
                logger.info("metadata resolved url=%s source=%s", url, strategy)
                return ResolveResult(
                    success=True,
                    title=metadata.title,
                    description=metadata.description,
                    image=metadata.image,
                    tags=metadata.tags,
                    source=strategy,
                    attempts=attempts,
                )

        logger.warning("metadata resolution exhausted url=%s attempts=%s", url, len(attempts))
        return ResolveResult(success=False, error=EXHAUSTED_ERROR, attempts=attempts)

    async def _attempt(
        self,
        strategy: str,
        target: str,
        run: Callable[[], Awaitable[PageMetadata | None]],
        attempts: list[ResolveAttempt],
    ) -> PageMetadata | None:
        with tracer.start_as_current_span(f"resolver.{strategy.split(':', 1)[0]}") as span:
            span.set_attribute("resolver.target", target)
            try:
                metadata = await asyncio.wait_for(run(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                attempt = ResolveAttempt(strategy=strategy, target=target, error=f"timed out after {self.timeout_seconds:g}s")
            except _StageFailed as exc:
                attempt = ResolveAttempt(
                    strategy=strategy,
                    target=target,
                    status_code=exc.status_code,
                    snippet=exc.snippet,
                    error=str(exc),
                )
            except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
                attempt = ResolveAttempt(strategy=strategy, target=target, error=f"{type(exc).__name__}: {exc}")
            else:
                if metadata is not None and metadata.title:
                    attempts.append(ResolveAttempt(strategy=strategy, target=target))
                    return metadata
                attempt = ResolveAttempt(strategy=strategy, target=target, error="no usable title")

        attempts.append(attempt)
        logger.info(
            "resolver attempt failed strategy=%s target=%s status=%s error=%s snippet=%r",
            attempt.strategy,
            attempt.target,
            attempt.status_code,
            attempt.error,
            attempt.snippet,
        )
        return None

    async def _firecrawl(self, client: httpx.AsyncClient, url: str) -> PageMetadata | None:
        response = await client.post(
            self.firecrawl_url,
            headers={"Authorization": f"Bearer {self.firecrawl_api_key}"},
            json={"url": url, "formats": ["extract"], "extract": {"schema": EXTRACT_SCHEMA}},
        )
        _raise_for_status(response)
        payload = response.json()
        if not isinstance(payload, dict):
            raise _StageFailed("unexpected response shape", status_code=response.status_code, snippet=_snippet(response.text))
        data = payload.get("data")
        extracted = data.get("extract") if isinstance(data, dict) else None
        if not payload.get("success") or not isinstance(extracted, dict):
            raise _StageFailed("extraction missing from response", status_code=response.status_code, snippet=_snippet(response.text))

        return PageMetadata(
            title=_text_or_none(extracted.get("title")),
            description=_text_or_none(extracted.get("description")),
            image=resolve_against(_text_or_none(extracted.get("image")), url),
            tags=_string_list(extracted.get("tags")),
        )

    async def _printables(self, client: httpx.AsyncClient, model_id: str) -> PageMetadata | None:
        response = await client.post(
            self.printables_graphql_url,
            json={"query": PRINTABLES_QUERY, "variables": {"id": model_id}},
        )
        _raise_for_status(response)
        payload = response.json()
        data = payload.get("data") if isinstance(payload, dict) else None
        model = data.get("print") if isinstance(data, dict) else None
        if not isinstance(model, dict):
            raise _StageFailed("model not found", status_code=response.status_code, snippet=_snippet(response.text))

        image = None
        images = model.get("images") or []
        if images and isinstance(images[0], dict):
            image = self._printables_image(_text_or_none(images[0].get("filePath")))

        tags = [tag.get("name") for tag in model.get("tags") or [] if isinstance(tag, dict)]
        return PageMetadata(
            title=_text_or_none(model.get("name")),
            # Markup is passed through; consumers decide whether to sanitize.
            description=model.get("description") if isinstance(model.get("description"), str) else None,
            image=image,
            tags=_string_list(tags),
        )

    def _printables_image(self, file_path: str | None) -> str | None:
        if not file_path:
            return None
        if is_http_url(file_path):
            return file_path
        return f"{self.printables_media_url}/{file_path.lstrip('/')}"

    async def _fetch_page(self, client: httpx.AsyncClient, fetch_url: str, page_url: str) -> PageMetadata | None:
        response = await client.get(
            fetch_url,
            headers={
                "User-Agent": BROWSER_USER_AGENT,
                "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
            },
        )
        _raise_for_status(response)
        html = response.text
        if looks_like_bot_wall(html):
            raise _StageFailed("anti-bot protection suspected", status_code=response.status_code, snippet=_snippet(html))
        return extract_page_metadata(html, page_url)


def _raise_for_status(response: httpx.Response) -> None:
    if not response.is_success:
        raise _StageFailed(
            f"HTTP {response.status_code}",
            status_code=response.status_code,
            snippet=_snippet(response.text),
        )


def _snippet(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text[: SNIPPET_LENGTH * 2]).strip()[:SNIPPET_LENGTH]


def _clean_text(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", unescape(value)).strip()


def _first(meta: dict[str, str], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = meta.get(key)
        if value:
            return value
    return None


def _text_or_none(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return _unique([item.strip() for item in value if isinstance(item, str) and item.strip()])


def _unique(values: list[str]) -> list[str]:
    seen: set[str] = set()
    unique: list[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            unique.append(value)
    return unique


def get_metadata_resolver(settings: Settings = Depends(get_settings)) -> MetadataResolver:
    return MetadataResolver.from_settings(settings)
