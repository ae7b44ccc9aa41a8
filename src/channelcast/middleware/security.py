"""Security headers middleware.

Learn: Adds standard security headers to every response:
- X-Content-Type-Options: prevents MIME-type sniffing (matters for
  the image proxy, which relays third-party bytes)
- X-Frame-Options / Referrer-Policy: clickjacking + referrer leakage
- Cross-Origin-Resource-Policy: proxied images are meant to be embedded
  by displays served from other origins, everything else stays same-site
- Strict-Transport-Security: forces HTTPS (only on HTTPS connections)

Headers a route already set win over these defaults.
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

DEFAULT_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

IMAGE_PROXY_PATH = "/api/v1/image-proxy"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response: Response = await call_next(request)
        for name, value in DEFAULT_HEADERS.items():
            response.headers.setdefault(name, value)

        corp = "cross-origin" if request.url.path == IMAGE_PROXY_PATH else "same-site"
        response.headers.setdefault("Cross-Origin-Resource-Policy", corp)

        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response
