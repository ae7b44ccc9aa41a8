"""View content transform — route embedded image URLs through the proxy.

Learn: Displays subscribed to a channel often can't reach the hosts a
view's images live on (mixed content, private CDNs, hotlink blocking).
Before an initial_view / view_change goes out, every image URL inside
the view is rewritten to point at our own /image-proxy endpoint.

The transform is pure: it builds new dicts/lists and never touches the
publisher's message. Anything that isn't an image URL passes through.
"""

from collections.abc import Callable
from typing import Any
from urllib.parse import quote, urlsplit

from channelcast.events.types import TRANSFORMABLE_KINDS, VIEW_FIELD

Transform = Callable[[Any], Any]

IMAGE_EXTENSIONS = (
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".bmp", ".avif",
)

IMAGE_KEYS = frozenset({
    "image", "img", "src", "thumbnail", "icon", "logo", "poster", "background",
})


def _is_image_key(key: str) -> bool:
    k = key.lower()
    if k in IMAGE_KEYS:
        return True
    return k.endswith("image") or k.endswith("_img")


def _is_http_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def _looks_like_image(url: str) -> bool:
    path = urlsplit(url).path.lower()
    return path.endswith(IMAGE_EXTENSIONS)


def _is_proxied(value: str, proxy_path: str) -> bool:
    """True for a URL that already targets the proxy, relative or absolute."""
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.path.rstrip("/") == proxy_path and "url=" in parts.query


def proxied_url(url: str, proxy_base: str) -> str:
    """Build the proxy URL for an upstream image."""
    return f"{proxy_base}?url={quote(url, safe='')}"


def rewrite_image_urls(view: Any, proxy_base: str) -> Any:
    """Return a copy of ``view`` with image URLs pointing at ``proxy_base``.

    A string is rewritten when it is an absolute http(s) URL and either
    its path has an image extension or it sits under an image-ish key
    (``image``, ``logo``, ``heroImage``, ...). URLs already pointing at
    the proxy are left alone.
    """
    if not proxy_base:
        return view
    proxy_path = urlsplit(proxy_base).path.rstrip("/")

    def _walk(value: Any, image_context: bool) -> Any:
        if isinstance(value, dict):
            return {
                k: _walk(v, image_context or (isinstance(k, str) and _is_image_key(k)))
                for k, v in value.items()
            }
        if isinstance(value, list):
            return [_walk(item, image_context) for item in value]
        if isinstance(value, str):
            if not _is_http_url(value) or _is_proxied(value, proxy_path):
                return value
            if image_context or _looks_like_image(value):
                return proxied_url(value, proxy_base)
        return value

    return _walk(view, False)


def make_image_proxy_transform(proxy_base: str) -> Transform:
    """One-argument transformer bound to a proxy base (identity when empty)."""
    if not proxy_base:
        return lambda view: view
    return lambda view: rewrite_image_urls(view, proxy_base)


def apply_transform(message: dict, transform: Transform) -> dict:
    """Rewrite the view of transformable kinds; return others untouched."""
    if message.get("type") not in TRANSFORMABLE_KINDS:
        return message
    if not message.get(VIEW_FIELD):
        return message
    return {**message, VIEW_FIELD: transform(message[VIEW_FIELD])}
