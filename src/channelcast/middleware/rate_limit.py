"""Rate limiting middleware — Redis-based sliding window.

Learn: Uses a per-minute window counter stored in Redis.
Each IP gets a counter key like "channelcast:rl:{ip}:{bucket}:{minute}".
Stream endpoints get a stricter limit: a misbehaving display that
reconnects in a tight loop would otherwise evict and re-subscribe
itself hundreds of times a minute.

Gracefully skips rate limiting if Redis is unavailable (e.g., in tests).
"""

import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Redis-based rate limiting per IP per minute."""

    def __init__(self, app, default_rpm: int = 100, stream_rpm: int = 30):
        super().__init__(app)
        self.default_rpm = default_rpm
        self.stream_rpm = stream_rpm

    async def dispatch(self, request: Request, call_next) -> Response:
        # Try to get Redis — skip rate limiting if unavailable
        try:
            from channelcast.realtime.relay import get_redis

            redis = get_redis()
        except Exception:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path

        is_stream = path.startswith("/api/v1/channels/") and path.endswith("/stream")
        rpm = self.stream_rpm if is_stream else self.default_rpm

        # Window key: per IP, per bucket type, per minute
        window = int(time.time() // 60)
        bucket = "stream" if is_stream else "api"
        key = f"channelcast:rl:{client_ip}:{bucket}:{window}"

        try:
            count = await redis.incr(key)
            if count == 1:
                await redis.expire(key, 120)  # 2-min TTL for safety
        except Exception:
            # Redis error — don't block the request
            return await call_next(request)

        if count > rpm:
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later."},
                headers={"Retry-After": "60"},
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(rpm)
        response.headers["X-RateLimit-Remaining"] = str(max(0, rpm - count))
        return response
