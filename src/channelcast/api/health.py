"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running,
reports whether the optional Redis relay is reachable, and gives a
rough picture of the live streams.
"""

from fastapi import APIRouter, Depends

from channelcast import __version__
from channelcast.realtime.registry import SubscriptionRegistry, get_registry

router = APIRouter()


@router.get("/health")
async def health_check(registry: SubscriptionRegistry = Depends(get_registry)):
    """Check server health and relay connectivity."""
    checks = {"server": "ok", "version": __version__}

    # Check Redis (optional)
    from channelcast.realtime.relay import get_redis, relay_enabled

    if relay_enabled():
        try:
            await get_redis().ping()
            checks["redis"] = "ok"
        except Exception as e:
            checks["redis"] = f"error: {e}"
    else:
        checks["redis"] = "disabled"

    status = "healthy" if checks["redis"] in ("ok", "disabled") else "degraded"

    return {
        "status": status,
        **checks,
        "channels": len(registry.channels()),
        "subscribers": registry.subscriber_count(),
    }
