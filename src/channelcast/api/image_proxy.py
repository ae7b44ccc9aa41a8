"""Image proxy — serves the images that view messages point at.

Learn: The view transform rewrites image URLs inside initial_view /
view_change messages to /api/v1/image-proxy?url=<original>. This route
fetches the original with httpx and relays the bytes, so displays only
ever talk to this server.

Only image/* responses are relayed, and only up to
CHANNELCAST_IMAGE_PROXY_MAX_BYTES. The body is streamed, so an oversized
upstream is cut off instead of being buffered whole.
CHANNELCAST_IMAGE_PROXY_ALLOWED_HOSTS restricts which upstream hosts may
be fetched. Redirects are followed by hand so every hop is checked
against that list too.
"""

from collections.abc import AsyncIterator
from urllib.parse import urlsplit

import httpx
import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from channelcast.config import settings

logger = structlog.get_logger()
router = APIRouter()

MAX_REDIRECTS = 5


async def get_http_client() -> AsyncIterator[httpx.AsyncClient]:
    """Per-request upstream client — override in tests."""
    async with httpx.AsyncClient(
        timeout=settings.image_proxy_timeout_seconds,
        follow_redirects=False,
    ) as client:
        yield client


def _check_target(url: str) -> None:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise HTTPException(status_code=400, detail="url must be an absolute http(s) URL")
    allowed = {h.lower() for h in settings.image_proxy_allowed_hosts}
    if allowed and parts.hostname.lower() not in allowed:
        raise HTTPException(status_code=403, detail=f"Host not allowed: {parts.hostname}")


async def _open_upstream(client: httpx.AsyncClient, url: str) -> httpx.Response:
    """Send the GET with a streamed body, following redirects hop by hop."""
    for _ in range(MAX_REDIRECTS + 1):
        _check_target(url)
        upstream = await client.send(client.build_request("GET", url), stream=True)
        if not upstream.is_redirect:
            return upstream
        location = upstream.headers.get("location", "")
        await upstream.aclose()
        url = str(upstream.url.join(location))
    raise HTTPException(status_code=502, detail="Too many upstream redirects")


def _too_large(url: str, size: int) -> HTTPException:
    logger.warning(
        "image_proxy.too_large", url=url, size=size, limit=settings.image_proxy_max_bytes,
    )
    return HTTPException(status_code=502, detail="Upstream image too large")


@router.get("/image-proxy")
async def image_proxy(
    url: str = Query(..., min_length=1, max_length=4096),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    """Fetch an upstream image and relay it."""
    _check_target(url)
    limit = settings.image_proxy_max_bytes

    try:
        upstream = await _open_upstream(client, url)
    except httpx.HTTPError as e:
        logger.warning("image_proxy.fetch_failed", url=url, error=str(e))
        raise HTTPException(status_code=502, detail="Upstream fetch failed")

    try:
        if not upstream.is_success:
            logger.warning("image_proxy.upstream_error", url=url, status=upstream.status_code)
            raise HTTPException(
                status_code=502,
                detail=f"Upstream returned {upstream.status_code}",
            )

        content_type = upstream.headers.get("content-type", "").split(";")[0].strip().lower()
        if not content_type.startswith("image/"):
            raise HTTPException(status_code=415, detail=f"Not an image: {content_type or 'unknown'}")

        declared = upstream.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > limit:
            raise _too_large(url, int(declared))

        body = bytearray()
        async for chunk in upstream.aiter_bytes():
            body.extend(chunk)
            if len(body) > limit:
                raise _too_large(url, len(body))
    except httpx.HTTPError as e:
        logger.warning("image_proxy.fetch_failed", url=url, error=str(e))
        raise HTTPException(status_code=502, detail="Upstream fetch failed")
    finally:
        await upstream.aclose()

    return Response(
        content=bytes(body),
        media_type=content_type,
        headers={"Cache-Control": "public, max-age=3600"},
    )
