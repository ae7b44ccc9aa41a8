"""Image proxy tests — upstream fetches are served by an httpx.MockTransport."""

import httpx
import pytest
import pytest_asyncio

from channelcast.api.image_proxy import get_http_client
from channelcast.config import settings
from channelcast.main import app

PNG = b"\x89PNG\r\n\x1a\nfake"


def _upstream(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/logo.png":
        return httpx.Response(200, content=PNG, headers={"content-type": "image/png"})
    if path == "/page":
        return httpx.Response(200, text="<html></html>", headers={"content-type": "text/html"})
    if path == "/boom":
        raise httpx.ConnectError("connection refused", request=request)
    return httpx.Response(404)


@pytest_asyncio.fixture()
async def proxy_client(client):
    upstream = httpx.AsyncClient(transport=httpx.MockTransport(_upstream))

    async def override():
        yield upstream

    app.dependency_overrides[get_http_client] = override
    yield client
    await upstream.aclose()


@pytest.mark.asyncio
async def test_relays_image(proxy_client):
    r = await proxy_client.get("/api/v1/image-proxy", params={"url": "https://cdn.example.com/logo.png"})
    assert r.status_code == 200
    assert r.content == PNG
    assert r.headers["content-type"] == "image/png"
    assert r.headers["cross-origin-resource-policy"] == "cross-origin"
    assert "max-age" in r.headers["cache-control"]


@pytest.mark.asyncio
async def test_rejects_non_image(proxy_client):
    r = await proxy_client.get("/api/v1/image-proxy", params={"url": "https://cdn.example.com/page"})
    assert r.status_code == 415


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/missing.png", "/boom"])
async def test_upstream_failures_are_bad_gateway(proxy_client, path):
    r = await proxy_client.get("/api/v1/image-proxy", params={"url": f"https://cdn.example.com{path}"})
    assert r.status_code == 502


@pytest.mark.asyncio
@pytest.mark.parametrize("url", ["ftp://cdn.example.com/a.png", "/relative.png", "https://"])
async def test_rejects_non_http_urls(proxy_client, url):
    r = await proxy_client.get("/api/v1/image-proxy", params={"url": url})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_host_allowlist(proxy_client, monkeypatch):
    monkeypatch.setattr(settings, "image_proxy_allowed_hosts", ["cdn.example.com"])

    ok = await proxy_client.get("/api/v1/image-proxy", params={"url": "https://CDN.example.com/logo.png"})
    assert ok.status_code == 200

    denied = await proxy_client.get("/api/v1/image-proxy", params={"url": "https://evil.example.net/logo.png"})
    assert denied.status_code == 403


# ─── Size cap and redirects ───────────────────────────────


async def _chunks(count: int, size: int):
    for _ in range(count):
        yield b"\x00" * size


def _large_upstream(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/declared.png":
        return httpx.Response(200, content=PNG, headers={"content-type": "image/png", "content-length": "999999"})
    if path == "/chunked.png":
        return httpx.Response(200, content=_chunks(10, 64), headers={"content-type": "image/png"})
    if path == "/small.png":
        return httpx.Response(200, content=_chunks(1, 64), headers={"content-type": "image/png"})
    if path == "/hop":
        return httpx.Response(302, headers={"location": "https://cdn.example.com/small.png"})
    if path == "/escape":
        return httpx.Response(302, headers={"location": "http://169.254.169.254/latest/meta-data"})
    if path == "/loop":
        return httpx.Response(302, headers={"location": "/loop"})
    return httpx.Response(404)


@pytest_asyncio.fixture()
async def capped_client(client, monkeypatch):
    monkeypatch.setattr(settings, "image_proxy_max_bytes", 256)
    upstream = httpx.AsyncClient(transport=httpx.MockTransport(_large_upstream))

    async def override():
        yield upstream

    app.dependency_overrides[get_http_client] = override
    yield client
    await upstream.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["/declared.png", "/chunked.png"])
async def test_oversized_images_are_refused(capped_client, path):
    r = await capped_client.get("/api/v1/image-proxy", params={"url": f"https://cdn.example.com{path}"})
    assert r.status_code == 502
    assert "too large" in r.json()["detail"]


@pytest.mark.asyncio
async def test_streamed_image_under_the_cap(capped_client):
    r = await capped_client.get("/api/v1/image-proxy", params={"url": "https://cdn.example.com/small.png"})
    assert r.status_code == 200
    assert len(r.content) == 64


@pytest.mark.asyncio
async def test_redirects_are_followed(capped_client):
    r = await capped_client.get("/api/v1/image-proxy", params={"url": "https://cdn.example.com/hop"})
    assert r.status_code == 200
    assert len(r.content) == 64


@pytest.mark.asyncio
async def test_redirect_hops_are_checked_against_allowlist(capped_client, monkeypatch):
    monkeypatch.setattr(settings, "image_proxy_allowed_hosts", ["cdn.example.com"])
    r = await capped_client.get("/api/v1/image-proxy", params={"url": "https://cdn.example.com/escape"})
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_redirect_loop_is_bad_gateway(capped_client):
    r = await capped_client.get("/api/v1/image-proxy", params={"url": "https://cdn.example.com/loop"})
    assert r.status_code == 502
