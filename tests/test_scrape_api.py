from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from pubparts.main import app
from pubparts.services.resolver import MetadataResolver, get_metadata_resolver

PAGE_HTML = '<html><head><meta property="og:title" content="Battery box"></head></html>'


def _install_resolver(handler) -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    app.dependency_overrides[get_metadata_resolver] = lambda: MetadataResolver(proxies=[], client=client)


@pytest.fixture
def scrape_client() -> TestClient:
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def test_preflight(scrape_client: TestClient) -> None:
    response = scrape_client.options("/api/scrape")
    assert response.status_code == 204
    assert response.headers["access-control-allow-origin"] == "*"
    assert "GET" in response.headers["access-control-allow-methods"]


def test_missing_url(scrape_client: TestClient) -> None:
    response = scrape_client.get("/api/scrape")
    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.headers["access-control-allow-origin"] == "*"


def test_scrape_success(scrape_client: TestClient) -> None:
    _install_resolver(lambda request: httpx.Response(200, text=PAGE_HTML, request=request))

    response = scrape_client.get("/api/scrape", params={"url": "https://example.com/battery"})

    assert response.status_code == 200
    body = response.json()
    assert body["title"] == "Battery box"
    assert body["source"] == "direct"


def test_scrape_exhausted(scrape_client: TestClient) -> None:
    _install_resolver(lambda request: httpx.Response(503, text="unavailable", request=request))

    response = scrape_client.get("/api/scrape", params={"url": "https://example.com/battery"})

    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert body["attempts"][0]["status_code"] == 503
    assert response.headers["access-control-allow-origin"] == "*"
